import numpy as np
from pyabsorb.linalg import FixedEffectVector

class jacobi():
    '''
    Compute the Jacobi preconditioner for the normal equations A.T @ A @ x = A.T @ b, where A is a FixedEffectMatrix. The diagonal of A.T @ A is computed group by group from the matrix's cache, without forming A.T @ A.

    Arguments:
        A (FixedEffectMatrix): design matrix

    Example:
        >>> import pyabsorb as ab
        >>> fe = ab.FixedEffect([0, 0, 1], scale=[1, 1])
        >>> preconditioner = ab.preconditioners.jacobi(ab.FixedEffectMatrix([fe]))
        >>> preconditioner.inverse_diagonal.to_numpy()
        array([0.5, 1. ])
    '''

    def __init__(self, A):
        diagonal = [np.bincount(fe.refs, weights=cache_k ** 2, minlength=fe.n_groups) for fe, cache_k in zip(A.fes, A.cache)]
        inverse_diagonal = []
        for diagonal_k in diagonal:
            inverse_diagonal_k = np.zeros(len(diagonal_k))
            # Empty groups stay at 0, so they never enter the search direction
            nonzero = (diagonal_k > 0)
            inverse_diagonal_k[nonzero] = 1.0 / diagonal_k[nonzero]
            inverse_diagonal.append(inverse_diagonal_k)
        self.inverse_diagonal = FixedEffectVector(inverse_diagonal)

    def precondition(self, x, out):
        '''
        Compute out <- x * inverse_diagonal in place.

        Arguments:
            x (FixedEffectVector): vector to precondition
            out (FixedEffectVector): output vector

        Returns:
            (FixedEffectVector): out
        '''
        return out.assign(x).multiply(self.inverse_diagonal)
