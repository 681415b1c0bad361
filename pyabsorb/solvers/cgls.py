'''
Preconditioned conjugate gradient on the normal equations (CGLS), with the stopping rule of Arioli and Gratton, "Least-squares problems, normal equations, and stopping criteria for the conjugate gradient method" (also used by Stata's reghdfe).
'''
import numpy as np
from pyabsorb.linalg import FixedEffectVector
from pyabsorb import preconditioners as pcd

def cgls_converged(iteration, psi, ssr, nu, tol):
    '''
    Check the CGLS stopping rule. Converged if (a) on the first iteration psi_1 <= tol^2 * nu; or (b) ssr <= eps; or (c) the last psi <= eps; or (d) from the third iteration on, the sum of the last three psi <= tol^2 * nu.

    Arguments:
        iteration (int): current iteration, starting at 1
        psi (list of floats): alpha * (s.T @ z) for each iteration so far
        ssr (float): s.T @ z after the current iteration
        nu (float): running estimate of the remaining energy ||r||^2
        tol (float): tolerance

    Returns:
        (bool): True if converged
    '''
    eps = np.finfo(np.float64).eps
    return (iteration == 1 and psi[-1] <= tol ** 2 * nu) \
        or (ssr <= eps) \
        or (psi[-1] <= eps) \
        or (iteration >= 3 and sum(psi[-3:]) <= tol ** 2 * nu)

def cgls(x, r, A, q, invdiag, s, p, z, ptmp, tol=1e-8, maxiter=100):
    '''
    Solve A.T @ A @ x = A.T @ b by conjugate gradient with a Jacobi preconditioner.

    Arguments:
        x (SolverVector or None): initial guess, updated in place; None to skip tracking x
        r (NumPy Array): b - A @ x0, updated in place to the residual
        A (SolverOperator): linear operator
        q (NumPy Array): workspace with length size(A, 1)
        invdiag (SolverVector): inverse of the diagonal of A.T @ A
        s (SolverVector): workspace (gradient)
        p (SolverVector): workspace (search direction)
        z (SolverVector): workspace (preconditioned gradient)
        ptmp (SolverVector): workspace (A.T @ A @ p)
        tol (float): tolerance
        maxiter (int): maximum number of iterations

    Returns:
        (tuple): (iterations --> number of iterations, converged --> True if the stopping rule was met)
    '''
    converged = False
    iterations = maxiter

    A.rmul(1.0, r, 0.0, s)
    z.assign(s).multiply(invdiag)
    p.assign(z)
    ssr0 = s.dot(z)
    if ssr0 == 0:
        # r is exactly orthogonal to the columns of A
        return 0, True
    ssrold = ssr0
    nu = np.dot(r, r)
    psi = []
    iteration = 0
    while iteration < maxiter:
        iteration += 1
        A.mul(1.0, p, 0.0, q)
        A.rmul(1.0, q, 0.0, ptmp)
        alpha = ssrold / ptmp.dot(p)
        psi.append(alpha * ssrold)
        nu -= alpha * ssrold
        if x is not None:
            x.axpy(alpha, p)
        r -= alpha * q
        s.axpy(-alpha, ptmp)
        z.assign(s).multiply(invdiag)
        ssr = s.dot(z)
        if cgls_converged(iteration, psi, ssr, nu, tol):
            iterations = iteration
            converged = True
            break
        beta = ssr / ssrold
        # p <- z + beta * p
        p.scale(beta)
        p.axpy(1.0, z)
        ssrold = ssr
    return iterations, converged

class CGLSState:
    '''
    Workspace for solving A.T @ A @ x = A.T @ r with CGLS, reused across columns.

    Arguments:
        A (FixedEffectMatrix): design matrix
    '''

    def __init__(self, A):
        fes = A.fes
        self.A = A
        self.x = FixedEffectVector.zeros(fes)
        self.s = FixedEffectVector.zeros(fes)
        self.p = FixedEffectVector.zeros(fes)
        self.z = FixedEffectVector.zeros(fes)
        self.ptmp = FixedEffectVector.zeros(fes)
        self.q = np.zeros(A.size(1))
        self.invdiag = pcd.jacobi(A).inverse_diagonal

    def reset(self):
        '''
        Zero the workspace without reallocating it.
        '''
        for vec in (self.x, self.s, self.p, self.z, self.ptmp):
            vec.fill(0)
        self.q.fill(0)

    def _run(self, r, track_x, tol, maxiter):
        self.reset()
        x = self.x if track_x else None
        return cgls(x, r, self.A, self.q, self.invdiag, self.s, self.p, self.z, self.ptmp, tol=tol, maxiter=maxiter)

    def solve_residuals(self, r, tol=1e-8, maxiter=10000):
        '''
        Replace r by its residual after projecting out the fixed effects.

        Arguments:
            r (NumPy Array): column to residualize; modified in place
            tol (float): tolerance
            maxiter (int): maximum number of iterations

        Returns:
            (tuple): (r, iterations, converged)
        '''
        iterations, converged = self._run(r, False, tol, maxiter)
        return r, iterations, converged

    def solve_coefficients(self, r, tol=1e-8, maxiter=10000):
        '''
        Estimate fixed effect coefficients for r, undoing the Jacobi scaling.

        Arguments:
            r (NumPy Array): column to project; not modified
            tol (float): tolerance
            maxiter (int): maximum number of iterations

        Returns:
            (tuple): (list of NumPy Arrays --> coefficients for each fixed effect, iterations, converged)
        '''
        iterations, converged = self._run(np.array(r, dtype=np.float64), True, tol, maxiter)
        coefficients = [x_k * fe.scale for x_k, fe in zip(self.x.subvectors, self.A.fes)]
        return coefficients, iterations, converged
