'''
LSMR algorithm of Fong and Saunders (2011), written against the SolverVector/SolverOperator interfaces so that it runs directly on a FixedEffectMatrix, and LSMRState, the reusable workspace used to absorb fixed effects from one column at a time.
'''
import numpy as np
from pyabsorb.linalg import FixedEffectVector

# Description of each stopping code
istop_messages = {
    0: 'x = 0 is the exact solution',
    1: 'Ax - b is small enough, given atol and btol',
    2: 'the least-squares solution is good enough, given atol',
    3: 'the estimate of cond(A) has exceeded conlim',
    4: 'Ax - b is small enough for this machine',
    5: 'the least-squares solution is good enough for this machine',
    6: 'cond(A) seems to be too large for this machine',
    7: 'the iteration limit has been reached'
}

def _sym_ortho(a, b):
    '''
    Stable implementation of Givens rotation.

    Arguments:
        a (float): first entry
        b (float): second entry

    Returns:
        (tuple of floats): (c, s, r) such that [c s; -s c] @ [a; b] = [r; 0]
    '''
    if b == 0:
        return np.sign(a), 0, abs(a)
    if a == 0:
        return 0, np.sign(b), abs(b)
    if abs(b) > abs(a):
        tau = a / b
        s = np.sign(b) / np.sqrt(1 + tau * tau)
        c = s * tau
        r = b / s
    else:
        tau = b / a
        c = np.sign(a) / np.sqrt(1 + tau * tau)
        s = c * tau
        r = a / c
    return c, s, r

def lsmr(x, A, u, v, h, hbar, atol=1e-8, btol=1e-8, conlim=1e8, maxiter=100, callback=None):
    '''
    Solve min ||b - A @ x||_2 with LSMR, starting from x = 0.

    Arguments:
        x (SolverVector): on exit, the solution; must be zero on entry
        A (SolverOperator): linear operator
        u (NumPy Array): on entry, b; overwritten
        v (SolverVector): workspace
        h (SolverVector): workspace
        hbar (SolverVector): workspace
        atol (float): stopping tolerance on the relative residual and on the normal equations
        btol (float): stopping tolerance on the relative residual
        conlim (float): stop if the estimate of cond(A) exceeds conlim; 0 disables the test
        maxiter (int): maximum number of iterations
        callback (function or None): if not None, called as callback(itn, normr) after each iteration

    Returns:
        (tuple of ints): (istop --> reason for stopping (see istop_messages), itn --> number of iterations)
    '''
    # Bidiagonalization: beta u = b, alpha v = A.T u
    normb = np.linalg.norm(u)
    beta = normb
    if beta > 0:
        u *= (1 / beta)
        A.rmul(1.0, u, 0.0, v)
        alpha = v.norm()
    else:
        v.fill(0)
        alpha = 0
    if alpha > 0:
        v.scale(1 / alpha)

    itn = 0
    zetabar = alpha * beta
    alphabar = alpha
    rho = 1
    rhobar = 1
    cbar = 1
    sbar = 0

    h.assign(v)
    hbar.fill(0)

    # Variables for estimation of ||r||
    betadd = beta
    betad = 0
    rhodold = 1
    tautildeold = 0
    thetatilde = 0
    zeta = 0
    d = 0

    # Variables for estimation of ||A|| and cond(A)
    normA2 = alpha ** 2
    maxrbar = 0
    minrbar = 1e+100
    normA = np.sqrt(normA2)
    condA = 1
    normx = 0

    istop = 0
    ctol = 0
    if conlim > 0:
        ctol = 1 / conlim
    normr = beta

    # A.T b = 0, so x = 0 is the solution
    normar = alpha * beta
    if normar == 0:
        return istop, itn

    while itn < maxiter:
        itn += 1

        # Continue the bidiagonalization: beta u = A v - alpha u, alpha v = A.T u - beta v
        A.mul(1.0, v, -alpha, u)
        beta = np.linalg.norm(u)
        if beta > 0:
            u *= (1 / beta)
            A.rmul(1.0, u, -beta, v)
            alpha = v.norm()
            if alpha > 0:
                v.scale(1 / alpha)

        # Construct rotation Qhat_{k, 2k + 1} (no damping, so this is the identity)
        chat, shat, alphahat = 1, 0, alphabar

        # Use a plane rotation (Q_i) to turn B_i to R_i
        rhoold = rho
        c, s, rho = _sym_ortho(alphahat, beta)
        thetanew = s * alpha
        alphabar = c * alpha

        # Use a plane rotation (Qbar_i) to turn R_i^T to R_i^bar
        rhobarold = rhobar
        zetaold = zeta
        thetabar = sbar * rho
        rhotemp = cbar * rho
        cbar, sbar, rhobar = _sym_ortho(cbar * rho, thetanew)
        zeta = cbar * zetabar
        zetabar = - sbar * zetabar

        # Update h, hbar, x
        hbar.scale(- (thetabar * rho / (rhoold * rhobarold)))
        hbar.axpy(1.0, h)
        x.axpy(zeta / (rho * rhobar), hbar)
        h.scale(- (thetanew / rho))
        h.axpy(1.0, v)

        # Estimate ||r||
        # Apply rotation Qhat_{k, 2k + 1}
        betaacute = chat * betadd
        betacheck = - shat * betadd
        # Apply rotation Q_{k, k + 1}
        betahat = c * betaacute
        betadd = - s * betaacute
        # Apply rotation Qtilde_{k - 1}
        thetatildeold = thetatilde
        ctildeold, stildeold, rhotildeold = _sym_ortho(rhodold, thetabar)
        thetatilde = stildeold * rhobar
        rhodold = ctildeold * rhobar
        betad = - stildeold * betad + ctildeold * betahat
        tautildeold = (zetaold - thetatildeold * tautildeold) / rhotildeold
        taud = (zeta - thetatilde * tautildeold) / rhodold
        d = d + betacheck * betacheck
        normr = np.sqrt(d + (betad - taud) ** 2 + betadd * betadd)

        # Estimate ||A||
        normA2 = normA2 + beta * beta
        normA = np.sqrt(normA2)
        normA2 = normA2 + alpha * alpha

        # Estimate cond(A)
        maxrbar = max(maxrbar, rhobarold)
        if itn > 1:
            minrbar = min(minrbar, rhobarold)
        condA = max(maxrbar, rhotemp) / min(minrbar, rhotemp)

        # Test for convergence
        normar = abs(zetabar)
        normx = x.norm()

        if callback is not None:
            callback(itn, normr)

        test1 = normr / normb
        if (normA * normr) != 0:
            test2 = normar / (normA * normr)
        else:
            test2 = np.inf
        test3 = 1 / condA
        t1 = test1 / (1 + normA * normx / normb)
        rtol = btol + atol * normA * normx / normb

        # The order matters: lower codes take priority
        if itn >= maxiter:
            istop = 7
        if 1 + test3 <= 1:
            istop = 6
        if 1 + test2 <= 1:
            istop = 5
        if 1 + t1 <= 1:
            istop = 4
        if test3 <= ctol:
            istop = 3
        if test2 <= atol:
            istop = 2
        if test1 <= rtol:
            istop = 1

        if istop > 0:
            break

    return istop, itn

class LSMRState:
    '''
    Workspace for solving A.T @ A @ x = A.T @ r with LSMR, reused across columns. Not safe to share between threads or processes: each concurrent worker needs its own LSMRState.

    Arguments:
        A (FixedEffectMatrix): design matrix
    '''

    def __init__(self, A):
        fes = A.fes
        self.A = A
        self.x = FixedEffectVector.zeros(fes)
        self.v = FixedEffectVector.zeros(fes)
        self.h = FixedEffectVector.zeros(fes)
        self.hbar = FixedEffectVector.zeros(fes)
        self.u = np.zeros(A.size(1))

    def reset(self):
        '''
        Zero the workspace without reallocating it.
        '''
        self.x.fill(0)
        self.v.fill(0)
        self.h.fill(0)
        self.hbar.fill(0)
        self.u.fill(0)

    def solve(self, r, tol=1e-8, maxiter=10000, conlim=1e8):
        '''
        Solve the least squares problem min ||r - A @ x||_2. The solution is stored in self.x.

        Arguments:
            r (NumPy Array): column to project; not modified
            tol (float): tolerance, used for both atol and btol
            maxiter (int): maximum number of iterations
            conlim (float): limit on the estimate of cond(A)

        Returns:
            (tuple): (iterations --> number of iterations, converged --> True if a stopping test other than the iteration limit was met)
        '''
        self.reset()
        self.u[:] = r
        istop, itn = lsmr(self.x, self.A, self.u, self.v, self.h, self.hbar, atol=tol, btol=tol, conlim=conlim, maxiter=maxiter)
        # Each iteration takes one product with A and one with A.T
        mvps = 1 + 2 * itn
        return mvps // 2, (istop != 7)

    def solve_residuals(self, r, **kwargs):
        '''
        Replace r by its residual after projecting out the fixed effects.

        Arguments:
            r (NumPy Array): column to residualize; modified in place
            **kwargs: keyword arguments for solve()

        Returns:
            (tuple): (r, iterations, converged)
        '''
        iterations, converged = self.solve(r, **kwargs)
        self.A.mul(-1.0, self.x, 1.0, r)
        return r, iterations, converged

    def solve_coefficients(self, r, **kwargs):
        '''
        Estimate fixed effect coefficients for r, undoing the Jacobi scaling.

        Arguments:
            r (NumPy Array): column to project; not modified
            **kwargs: keyword arguments for solve()

        Returns:
            (tuple): (list of NumPy Arrays --> coefficients for each fixed effect, iterations, converged)
        '''
        iterations, converged = self.solve(r, **kwargs)
        coefficients = [x_k * fe.scale for x_k, fe in zip(self.x.subvectors, self.A.fes)]
        return coefficients, iterations, converged
