'''
Utility functions
'''
import numpy as np
from scipy.sparse import csc_matrix, hstack

def weighted_mean(v, w=None, axis=0):
    '''
    Compute weighted mean.

    Arguments:
        v (NumPy Array): vector or matrix to weight
        w (NumPy Array or float or None): weights; None is equivalent to no weights
        axis (int): axis along which to take the mean

    Returns:
        (NumPy Array or float): weighted mean
    '''
    if (w is None) or isinstance(w, (float, int)):
        return np.mean(v, axis=axis)
    if v.ndim == 2:
        w = w.reshape(-1, 1)
    return np.sum(w * v, axis=axis) / np.sum(w)

def design_matrix(fes, scaled=True):
    '''
    Explicitly construct the sparse design matrix of a list of fixed effects. Only use this for small problems and for testing.

    Arguments:
        fes (list of FixedEffect): fixed effects
        scaled (bool): if True, multiply each group's column by its Jacobi scale, giving the matrix applied by FixedEffectMatrix

    Returns:
        (CSC Matrix): design matrix with one row per observation and one column per group
    '''
    blocks = []
    for fe in fes:
        data = fe.interaction * fe.sqrtw
        if scaled:
            data = data * fe.scale[fe.refs]
        rows = np.arange(len(fe))
        blocks.append(csc_matrix((data, (rows, fe.refs)), shape=(len(fe), fe.n_groups)))
    return hstack(blocks, format='csc')
