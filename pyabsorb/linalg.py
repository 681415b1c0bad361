'''
Vector and operator types used by the iterative solvers. FixedEffectVector stores the unknown of the normal equations, one subvector per fixed effect, and FixedEffectMatrix is the Jacobi-preconditioned design matrix of all fixed effects, applied without ever being formed.
'''
from abc import ABC, abstractmethod
import numpy as np
from scipy.sparse.linalg import LinearOperator
from pyabsorb.fixedeffect import check_fixed_effects
from pyabsorb.util import design_matrix

class SolverVector(ABC):
    '''
    Vector operations required by the LSMR and CGLS algorithms for vectors in the coefficient space.
    '''

    @abstractmethod
    def __len__(self):
        pass

    @abstractmethod
    def copy(self):
        '''
        Return an independent copy.
        '''

    @abstractmethod
    def assign(self, other):
        '''
        Copy the entries of other into self.
        '''

    @abstractmethod
    def fill(self, value):
        pass

    @abstractmethod
    def scale(self, alpha):
        pass

    @abstractmethod
    def axpy(self, alpha, other):
        '''
        Update self <- self + alpha * other.
        '''

    @abstractmethod
    def norm(self):
        pass

    @abstractmethod
    def dot(self, other):
        pass

    @abstractmethod
    def multiply(self, other):
        '''
        Elementwise product, in place.
        '''

class SolverOperator(ABC):
    '''
    Linear operator A mapping the coefficient space (SolverVector) into the observation space (NumPy Array).
    '''

    @abstractmethod
    def size(self, dim):
        pass

    @property
    def shape(self):
        return (self.size(1), self.size(2))

    @abstractmethod
    def mul(self, alpha, x, beta, y):
        '''
        Update y <- alpha * A @ x + beta * y in place.
        '''

    @abstractmethod
    def rmul(self, alpha, y, beta, x):
        '''
        Update x <- alpha * A.T @ y + beta * x in place.
        '''

def safe_scale(x, beta):
    '''
    Scale x by beta in place. If beta is 0, x is zero-filled (so NaN and inf entries are cleared); if beta is 1, x is left unchanged.

    Arguments:
        x (NumPy Array or SolverVector): vector to scale
        beta (float): scalar
    '''
    if beta == 1:
        return
    if isinstance(x, SolverVector):
        if beta == 0:
            x.fill(0)
        else:
            x.scale(beta)
    else:
        if beta == 0:
            x.fill(0)
        else:
            x *= beta

class FixedEffectVector(SolverVector):
    '''
    Concatenation of one coefficient vector per fixed effect.

    Arguments:
        subvectors (list of NumPy Arrays): coefficient vector for each fixed effect; arrays are used without copying
    '''

    def __init__(self, subvectors):
        self.subvectors = subvectors

    @classmethod
    def zeros(cls, fes):
        '''
        Construct a zero vector with one subvector per fixed effect.

        Arguments:
            fes (list of FixedEffect): fixed effects

        Returns:
            (FixedEffectVector): zero vector
        '''
        return cls([np.zeros(fe.n_groups) for fe in fes])

    @classmethod
    def from_numpy(cls, fes, a):
        '''
        Split a flat array into one subvector per fixed effect.

        Arguments:
            fes (list of FixedEffect): fixed effects
            a (NumPy Array): flat array with length equal to the total number of groups

        Returns:
            (FixedEffectVector): vector with a copy of the entries of a
        '''
        sizes = [fe.n_groups for fe in fes]
        if len(a) != sum(sizes):
            raise ValueError(f'Input has length {len(a)}, but fixed effects have {sum(sizes)} groups in total.')
        return cls([sub.copy() for sub in np.split(np.asarray(a, dtype=np.float64), np.cumsum(sizes)[:-1])])

    def to_numpy(self):
        '''
        Return the concatenation of all subvectors.

        Returns:
            (NumPy Array): flat copy of the vector
        '''
        return np.concatenate(self.subvectors)

    def __len__(self):
        return sum(len(sub) for sub in self.subvectors)

    def copy(self):
        return FixedEffectVector([sub.copy() for sub in self.subvectors])

    def assign(self, other):
        for sub, other_sub in zip(self.subvectors, other.subvectors):
            sub[:] = other_sub
        return self

    def fill(self, value):
        for sub in self.subvectors:
            sub.fill(value)
        return self

    def scale(self, alpha):
        for sub in self.subvectors:
            sub *= alpha
        return self

    def axpy(self, alpha, other):
        for sub, other_sub in zip(self.subvectors, other.subvectors):
            sub += alpha * other_sub
        return self

    def norm(self):
        return np.sqrt(sum(np.dot(sub, sub) for sub in self.subvectors))

    def dot(self, other):
        return sum(np.dot(sub, other_sub) for sub, other_sub in zip(self.subvectors, other.subvectors))

    def multiply(self, other):
        for sub, other_sub in zip(self.subvectors, other.subvectors):
            sub *= other_sub
        return self

    def __repr__(self):
        return f'FixedEffectVector(sizes={[len(sub) for sub in self.subvectors]})'

class FixedEffectMatrix(SolverOperator):
    '''
    Implicit design matrix A = [D_1 ... D_K], where D_k has entry scale_k[g] * interaction_k[i] * sqrtw_k[i] in row i and column g if observation i is in group g of fixed effect k. The fixed effects are borrowed, not copied.

    Arguments:
        fes (list of FixedEffect): fixed effects
    '''

    def __init__(self, fes):
        m = check_fixed_effects(fes)
        self.fes = fes
        self.m = m
        self.n = sum(fe.n_groups for fe in fes)
        # Effective contribution of each row
        self.cache = [fe.scale[fe.refs] * fe.interaction * fe.sqrtw for fe in fes]

    def size(self, dim):
        if dim == 1:
            return self.m
        if dim == 2:
            return self.n
        return 1

    def mul(self, alpha, x, beta, y):
        safe_scale(y, beta)
        for fe, x_k, cache_k in zip(self.fes, x.subvectors, self.cache):
            y += alpha * x_k[fe.refs] * cache_k
        return y

    def rmul(self, alpha, y, beta, x):
        safe_scale(x, beta)
        for fe, x_k, cache_k in zip(self.fes, x.subvectors, self.cache):
            # Observations sharing a group write into the same slot, so reduce by group
            x_k += alpha * np.bincount(fe.refs, weights=y * cache_k, minlength=fe.n_groups)
        return x

    def aslinearoperator(self):
        '''
        Wrap the matrix in a SciPy LinearOperator acting on flat coefficient vectors.

        Returns:
            (LinearOperator): SciPy linear operator with shape (m, n)
        '''
        def matvec(v):
            x = FixedEffectVector.from_numpy(self.fes, np.ravel(v))
            return self.mul(1.0, x, 0.0, np.zeros(self.m))

        def rmatvec(v):
            x = FixedEffectVector.zeros(self.fes)
            return self.rmul(1.0, np.ravel(v).astype(np.float64), 0.0, x).to_numpy()

        return LinearOperator(self.shape, matvec=matvec, rmatvec=rmatvec, dtype=np.float64)

    def tosparse(self):
        '''
        Explicitly construct the matrix. Only use this for small problems.

        Returns:
            (CSC Matrix): sparse (m x n) matrix
        '''
        return design_matrix(self.fes, scaled=True)

    def __repr__(self):
        return f'FixedEffectMatrix(m={self.m}, n={self.n}, n_fes={len(self.fes)})'
