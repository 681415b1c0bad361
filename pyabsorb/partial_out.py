'''
Partial out fixed effects from columns of a Pandas DataFrame.
'''
import numpy as np
import pandas as pd
from scipy.linalg import lstsq
from bipartitepandas.util import ParamsDict, to_list
from pyabsorb.fixedeffect import FixedEffect
from pyabsorb.problem import _problem_params_options, fixed_effect_problem, residualize
from pyabsorb.util import weighted_mean

# Define default parameter dictionary
_partial_out_params_default = ParamsDict({
    **_problem_params_options,
    'add_mean': (False, 'type', bool,
        '''
            (default=False) If True, add the weighted mean of each original (unweighted) column back to its residuals, so the weighted mean of the output equals the weighted mean of the input. With weights, this is the weighted mean of the raw column, not the mean of the column multiplied by the square root of the weights.
        ''', None)
})

def partial_out_params(update_dict=None):
    '''
    Dictionary of default partial_out_params. Run ab.partial_out_params().describe_all() for descriptions of all valid parameters.

    Arguments:
        update_dict (dict or None): user parameter values; None is equivalent to {}

    Returns:
        (ParamsDict) dictionary of partial_out_params
    '''
    new_dict = _partial_out_params_default.copy()
    if update_dict is not None:
        new_dict.update(update_dict)
    return new_dict

def _fixed_effects(df, fe, sqrtw):
    '''
    Construct the fixed effects from columns of a dataframe.

    Arguments:
        df (Pandas DataFrame): data
        fe (list): each entry is either a column name or a tuple (group column, interaction column)
        sqrtw (NumPy Array): square root of analytic weights

    Returns:
        (list of FixedEffect): fixed effects
    '''
    fes = []
    for fe_k in fe:
        if isinstance(fe_k, tuple):
            group_col, interaction_col = fe_k
            fes.append(FixedEffect.from_labels(df.loc[:, group_col], interaction=df.loc[:, interaction_col].to_numpy(dtype=np.float64), sqrtw=sqrtw))
        else:
            fes.append(FixedEffect.from_labels(df.loc[:, fe_k], sqrtw=sqrtw))
    return fes

def partial_out(df, columns, fe=None, regressors=None, weights=None, params=None):
    '''
    Residualize columns of a dataframe on a set of fixed effects and regressors. The fixed effects are absorbed from both the columns and the regressors, and the residualized regressors are then projected out of the residualized columns. An intercept is included among the regressors unless some fixed effect is a pure group effect (i.e. not interacted), since such a fixed effect already absorbs it. Missing values must be handled before calling this function.

    Arguments:
        df (Pandas DataFrame): data
        columns (str or list of str): columns to residualize
        fe (str or list or None): fixed effects; each entry is either a column name, giving a fixed effect for each group in that column, or a tuple (group column, interaction column), giving a fixed effect interacted with a continuous variable; None is equivalent to no fixed effects, in which case columns are (weighted) demeaned and regressed on the regressors
        regressors (str or list of str or None): columns to project out after absorbing the fixed effects; None is equivalent to []
        weights (str or None): column with analytic weights; None is equivalent to equal weights
        params (ParamsDict or None): dictionary of parameters for partialing out. Run ab.partial_out_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.partial_out_params().

    Returns:
        (Pandas DataFrame): residualized columns, with the same index as df; the number of iterations and convergence flag for each residualized column (first the columns, then the regressors) are stored in its attrs['iterations'] and attrs['converged']
    '''
    if params is None:
        params = partial_out_params()
    columns = to_list(columns)
    if fe is None:
        fe = []
    elif isinstance(fe, (str, tuple)):
        fe = [fe]
    if regressors is None:
        regressors = []
    regressors = to_list(regressors)

    ## Check input columns ##
    used_cols = list(columns) + list(regressors)
    for fe_k in fe:
        used_cols += list(fe_k) if isinstance(fe_k, tuple) else [fe_k]
    if weights is not None:
        used_cols.append(weights)
    missing_cols = [col for col in used_cols if col not in df.columns]
    if len(missing_cols) > 0:
        raise ValueError(f'Columns {missing_cols} are not in the dataframe.')
    if df.loc[:, used_cols].isna().to_numpy().any():
        raise ValueError('Input columns must not contain missing values.')
    if len(df) == 0:
        raise ValueError('Input dataframe is empty.')

    ## Weights ##
    if weights is None:
        w = None
        sqrtw = np.ones(len(df))
    else:
        w = df.loc[:, weights].to_numpy(dtype=np.float64)
        if np.any(w <= 0):
            raise ValueError('Weights must be strictly positive.')
        sqrtw = np.sqrt(w)

    ## Fixed effects ##
    if len(fe) > 0:
        problem = fixed_effect_problem(_fixed_effects(df, fe, sqrtw), params)
    else:
        problem = None
    # A fixed effect that isn't interacted absorbs the intercept
    intercept = all(isinstance(fe_k, tuple) for fe_k in fe)

    ## Residualize columns ##
    Y = df.loc[:, columns].to_numpy(dtype=np.float64, copy=True)
    if params['add_mean']:
        means = weighted_mean(Y, w)
    Y *= sqrtw.reshape(-1, 1)
    iterations, converged = residualize(Y, problem)

    ## Residualize regressors and project them out ##
    if intercept or len(regressors) > 0:
        X = df.loc[:, regressors].to_numpy(dtype=np.float64, copy=True)
        if intercept:
            X = np.hstack([np.ones((len(df), 1)), X])
        X *= sqrtw.reshape(-1, 1)
        residualize(X, problem, iterations, converged)
        Y -= X @ lstsq(X, Y)[0]

    Y /= sqrtw.reshape(-1, 1)
    if params['add_mean']:
        Y += means

    res = pd.DataFrame(Y, index=df.index, columns=columns)
    res.attrs['iterations'] = iterations
    res.attrs['converged'] = converged
    return res
