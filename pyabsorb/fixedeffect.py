'''
Defines class FixedEffect, which stores the data required to absorb one categorical variable: group codes, interaction weights, square root weights, and the per-group Jacobi scale.
'''
import numpy as np
import pandas as pd

def _as_vector(a, name, dtype):
    '''
    Convert input to a read-only 1-dimensional NumPy array.

    Arguments:
        a (NumPy Array or list or Pandas Series): input
        name (str): name of input, used in error messages
        dtype (type): dtype of output

    Returns:
        (NumPy Array): read-only copy of input
    '''
    out = np.array(a, dtype=dtype)
    if out.ndim != 1:
        raise ValueError(f'{name!r} must be 1-dimensional, but has {out.ndim} dimensions.')
    out.setflags(write=False)
    return out

def default_scale(refs, n_groups, interaction, sqrtw):
    '''
    Compute the Jacobi scale for each group, i.e. the inverse of the norm of the group's column in the weighted design matrix. Groups with zero norm get scale 0.

    Arguments:
        refs (NumPy Array): group codes
        n_groups (int): number of groups
        interaction (NumPy Array): interaction weights
        sqrtw (NumPy Array): square root of observation weights

    Returns:
        (NumPy Array): scale for each group
    '''
    sumsq = np.bincount(refs, weights=(interaction * sqrtw) ** 2, minlength=n_groups)
    scale = np.zeros(n_groups)
    nonzero = (sumsq > 0)
    scale[nonzero] = 1 / np.sqrt(sumsq[nonzero])
    return scale

class FixedEffect:
    '''
    Immutable description of a fixed effect. Codes are 0-based, so refs[i] must be in [0, n_groups).

    Arguments:
        refs (NumPy Array): integer group code for each observation
        interaction (NumPy Array or None): interaction weight for each observation; None is equivalent to all ones
        sqrtw (NumPy Array or None): square root of the analytic weight for each observation; None is equivalent to all ones
        scale (NumPy Array or None): per-group Jacobi scale; None computes the inverse column norm of each group
        n_groups (int or None): number of groups; None is equivalent to max(refs) + 1
    '''

    def __init__(self, refs, interaction=None, sqrtw=None, scale=None, n_groups=None):
        refs_in = np.asarray(refs)
        if refs_in.dtype.kind == 'f' and not np.all(np.isfinite(refs_in) & (refs_in == np.floor(refs_in))):
            raise ValueError("Group codes in 'refs' must be integers.")
        refs = _as_vector(refs_in, 'refs', np.int64)
        m = len(refs)
        if m == 0:
            raise ValueError('FixedEffect requires at least one observation.')
        if interaction is None:
            interaction = np.ones(m)
        if sqrtw is None:
            sqrtw = np.ones(m)
        interaction = _as_vector(interaction, 'interaction', np.float64)
        sqrtw = _as_vector(sqrtw, 'sqrtw', np.float64)
        if len(interaction) != m:
            raise ValueError(f"'interaction' has length {len(interaction)}, but 'refs' has length {m}.")
        if len(sqrtw) != m:
            raise ValueError(f"'sqrtw' has length {len(sqrtw)}, but 'refs' has length {m}.")

        if n_groups is None:
            n_groups = int(refs.max()) + 1
        if refs.min() < 0 or refs.max() >= n_groups:
            raise ValueError(f"Group codes must be in [0, {n_groups}), but 'refs' has range [{refs.min()}, {refs.max()}].")

        if scale is None:
            scale = default_scale(refs, n_groups, interaction, sqrtw)
        scale = _as_vector(scale, 'scale', np.float64)
        if len(scale) != n_groups:
            raise ValueError(f"'scale' has length {len(scale)}, but there are {n_groups} groups.")

        self.refs = refs
        self.interaction = interaction
        self.sqrtw = sqrtw
        self.scale = scale

    @classmethod
    def from_labels(cls, labels, interaction=None, sqrtw=None):
        '''
        Construct a FixedEffect from arbitrary group labels. Labels are converted to consecutive codes in order of first appearance.

        Arguments:
            labels (NumPy Array or list or Pandas Series): group label for each observation
            interaction (NumPy Array or None): interaction weight for each observation; None is equivalent to all ones
            sqrtw (NumPy Array or None): square root of the analytic weight for each observation; None is equivalent to all ones

        Returns:
            (FixedEffect): fixed effect with default scale
        '''
        codes, uniques = pd.factorize(np.asarray(labels), use_na_sentinel=True)
        if np.any(codes < 0):
            raise ValueError('Group labels must not contain missing values.')
        return cls(codes, interaction=interaction, sqrtw=sqrtw, n_groups=len(uniques))

    @property
    def n_groups(self):
        '''
        Number of groups.
        '''
        return len(self.scale)

    def __len__(self):
        return len(self.refs)

    def __repr__(self):
        return f'FixedEffect(nobs={len(self)}, n_groups={self.n_groups})'

def check_fixed_effects(fes):
    '''
    Check that a list of fixed effects is non-empty and that all fixed effects have the same number of observations.

    Arguments:
        fes (list of FixedEffect): fixed effects

    Returns:
        (int): number of observations
    '''
    if len(fes) == 0:
        raise ValueError('At least one fixed effect is required.')
    for fe in fes:
        if not isinstance(fe, FixedEffect):
            raise ValueError(f'Fixed effects must be FixedEffect objects, but input includes an object of type {type(fe).__name__}.')
    m = len(fes[0])
    for k, fe in enumerate(fes):
        if len(fe) != m:
            raise ValueError(f'Fixed effect {k} has {len(fe)} observations, but fixed effect 0 has {m} observations.')
    return m
