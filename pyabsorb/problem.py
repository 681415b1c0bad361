'''
Defines the fixed effect problem classes, which absorb fixed effects from columns of observations. The class is selected by the 'method' parameter: 'lsmr' (sequential LSMR), 'lsmr_parallel' (LSMR with one process per column), 'lsmr_threads' (LSMR with a thread pool), 'cgls' (sequential CGLS), or 'qr' (dense pivoted QR, for small problems).
'''
from concurrent.futures import ThreadPoolExecutor, as_completed
from tqdm.auto import tqdm, trange
try:
    from multiprocess import Pool
except ImportError:
    from multiprocessing import Pool
import numpy as np
from scipy.linalg import lstsq
from bipartitepandas.util import ParamsDict, logger_init
from pyabsorb.fixedeffect import check_fixed_effects
from pyabsorb.linalg import FixedEffectMatrix
from pyabsorb.solvers import LSMRState, CGLSState
from pyabsorb.util import design_matrix

# NOTE: multiprocessing isn't compatible with lambda functions
def _gteq1(a):
    return a >= 1
def _gt0(a):
    return a > 0
def _gteq0(a):
    return a >= 0

# Define default parameter options
_problem_params_options = {
    'method': ('lsmr', 'set', ['lsmr', 'lsmr_parallel', 'lsmr_threads', 'cgls', 'qr'],
        '''
            (default='lsmr') Method used to absorb fixed effects. Options are:
                lsmr: LSMR, solving columns one after the other and reusing the same workspace
                lsmr_parallel: LSMR, solving columns in separate processes
                lsmr_threads: LSMR, solving columns in a thread pool, with a private workspace per thread
                cgls: Conjugate Gradient on the normal equations, with a Jacobi preconditioner
                qr: dense QR decomposition with column pivoting; only for small problems
        ''', None),
    'tol': (1e-8, 'type_constrained', ((float, int), _gt0),
        '''
            (default=1e-8) Tolerance for convergence of the iterative solver. For LSMR, used for both the residual (atol) and normal equation (btol) tests. A lower tolerance will achieve more precise residuals at the cost of computation time.
        ''', '> 0'),
    'maxiter': (10000, 'type_constrained', (int, _gteq1),
        '''
            (default=10000) Maximum number of iterations for each column. If the limit is reached, the column is flagged as not converged, but no error is raised.
        ''', '>= 1'),
    'conlim': (1e8, 'type_constrained', ((float, int), _gteq0),
        '''
            (default=1e8) LSMR stops if its estimate of the condition number of the design matrix exceeds conlim. If 0, the test is not used.
        ''', '>= 0'),
    'ncore': (1, 'type_constrained', (int, _gteq1),
        '''
            (default=1) Number of processes (for 'lsmr_parallel') or threads (for 'lsmr_threads') to use.
        ''', '>= 1'),
    'progress_bars': (False, 'type', bool,
        '''
            (default=False) If True, display progress bars when residualizing multiple columns.
        ''', None),
    'verbose': (True, 'type', bool,
        '''
            (default=True) If True, log a warning for each column that does not converge.
        ''', None)
}

# Define default parameter dictionary
_problem_params_default = ParamsDict(_problem_params_options)

def problem_params(update_dict=None):
    '''
    Dictionary of default problem_params. Run ab.problem_params().describe_all() for descriptions of all valid parameters.

    Arguments:
        update_dict (dict or None): user parameter values; None is equivalent to {}

    Returns:
        (ParamsDict) dictionary of problem_params
    '''
    new_dict = _problem_params_default.copy()
    if update_dict is not None:
        new_dict.update(update_dict)
    return new_dict

def _solve_residuals(state, r, kwargs):
    '''
    Residualize one column with a solver state, skipping columns with non-finite values.

    Arguments:
        state (LSMRState or CGLSState): solver workspace
        r (NumPy Array): column to residualize; modified in place
        kwargs (dict): keyword arguments for state.solve_residuals()

    Returns:
        (tuple): (r, iterations, converged)
    '''
    if not np.all(np.isfinite(r)):
        return r, 0, False
    return state.solve_residuals(r, **kwargs)

def _solve_coefficients(state, r, kwargs):
    '''
    Estimate fixed effect coefficients for one column with a solver state. Columns with non-finite values are not iterated, and their coefficients are NaN.

    Arguments:
        state (LSMRState or CGLSState): solver workspace
        r (NumPy Array): column to project; not modified
        kwargs (dict): keyword arguments for state.solve_coefficients()

    Returns:
        (tuple): (coefficients, iterations, converged)
    '''
    if not np.all(np.isfinite(r)):
        return [np.full(fe.n_groups, np.nan) for fe in state.A.fes], 0, False
    return state.solve_coefficients(r, **kwargs)

def _solve_residuals_worker(args):
    '''
    Residualize one column in a separate process, using a fresh workspace.

    Arguments:
        args (tuple): (fes --> list of FixedEffect, r --> column to residualize, kwargs --> keyword arguments for LSMRState.solve_residuals())

    Returns:
        (tuple): (r, iterations, converged)
    '''
    fes, r, kwargs = args
    return _solve_residuals(LSMRState(FixedEffectMatrix(fes)), r, kwargs)

def _solve_residuals_chunk(fes, X, columns, kwargs):
    '''
    Residualize a subset of the columns of X in place, using one private workspace for the whole subset.

    Arguments:
        fes (list of FixedEffect): fixed effects
        X (NumPy Array): matrix to residualize; only the given columns are modified
        columns (NumPy Array): indices of the columns to residualize
        kwargs (dict): keyword arguments for LSMRState.solve_residuals()

    Returns:
        (list of tuples): (column, iterations, converged) for each column
    '''
    state = LSMRState(FixedEffectMatrix(fes))
    res = []
    for j in columns:
        _, iterations, converged = _solve_residuals(state, X[:, j], kwargs)
        res.append((j, iterations, converged))
    return res

class FixedEffectProblem:
    '''
    Base class for fixed effect problems. Subclasses implement solve_residuals() and solve_coefficients().

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb; all must have the same number of observations
        params (ParamsDict or None): dictionary of parameters for absorbing fixed effects. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = None

    def __init__(self, fes, params=None):
        # Start logger
        logger_init(self)

        if params is None:
            params = problem_params()

        # Fail before any iteration if the fixed effects are inconsistent
        self.nobs = check_fixed_effects(fes)
        self.fes = fes
        self.params = params

        ### Save some commonly used parameters as attributes ###
        # Solver options
        self.tol = params['tol']
        self.maxiter = params['maxiter']
        self.conlim = params['conlim']
        # Number of cores to use
        self.ncore = params['ncore']
        # Progress bars
        self.no_pbars = (not params['progress_bars'])
        # Verbose
        self.verbose = params['verbose']

        self.logger.info(f'{self.method} problem with {len(fes)} fixed effects, {self.nobs} observations, and {sum(fe.n_groups for fe in fes)} groups')

    def get_fes(self):
        '''
        Return the fixed effects.

        Returns:
            (list of FixedEffect): fixed effects
        '''
        return self.fes

    def _solver_kwargs(self):
        '''
        Keyword arguments passed to LSMRState.solve().

        Returns:
            (dict): solver keyword arguments
        '''
        return {'tol': self.tol, 'maxiter': self.maxiter, 'conlim': self.conlim}

    def _check_column(self, r):
        '''
        Check that r is a column with one entry per observation.

        Arguments:
            r (NumPy Array): column
        '''
        if np.ndim(r) != 1:
            raise ValueError(f'Column must be 1-dimensional, but has {np.ndim(r)} dimensions.')
        if len(r) != self.nobs:
            raise ValueError(f'Column has {len(r)} rows, but fixed effects have {self.nobs} observations.')

    def _check_matrix(self, X):
        '''
        Check that X can be residualized in place, and return it as a 2-dimensional view.

        Arguments:
            X (NumPy Array): vector or matrix

        Returns:
            (NumPy Array): 2-dimensional view of X
        '''
        if not isinstance(X, np.ndarray) or X.dtype != np.float64:
            raise ValueError('X must be a NumPy array with dtype float64, since it is residualized in place.')
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2:
            raise ValueError(f'X must be 1- or 2-dimensional, but has {X.ndim} dimensions.')
        if X.shape[0] != self.nobs:
            raise ValueError(f'X has {X.shape[0]} rows, but fixed effects have {self.nobs} observations.')
        return X

    def _log_column(self, j, r, iterations, converged):
        '''
        Log the outcome for one column.

        Arguments:
            j (int): column index
            r (NumPy Array): residualized column
            iterations (int): number of iterations
            converged (bool): True if the solver converged
        '''
        self.logger.debug(f'column {j}: iterations={iterations}, converged={converged}')
        if (not converged) and self.verbose:
            if not np.all(np.isfinite(r)):
                self.logger.warning(f'column {j} contains non-finite values and was not residualized')
            else:
                self.logger.warning(f'column {j} did not converge after {iterations} iterations')

    def solve_residuals(self, r):
        '''
        Replace r by its residual after projecting out the fixed effects.

        Arguments:
            r (NumPy Array): column to residualize; modified in place

        Returns:
            (tuple): (r --> residualized column, iterations --> number of iterations, converged --> True if the solver converged)
        '''
        raise NotImplementedError

    def solve_coefficients(self, r):
        '''
        Estimate fixed effect coefficients for r.

        Arguments:
            r (NumPy Array): column to project; not modified

        Returns:
            (tuple): (list of NumPy Arrays --> coefficients for each fixed effect, iterations --> number of iterations, converged --> True if the solver converged)
        '''
        raise NotImplementedError

    def residualize(self, X, iterations=None, converged=None):
        '''
        Residualize each column of X in place. Columns that do not converge are flagged, and the remaining columns are still residualized.

        Arguments:
            X (NumPy Array): vector or matrix with one row per observation; modified in place
            iterations (list or None): if not None, the number of iterations for each column is appended to it
            converged (list or None): if not None, whether each column converged is appended to it

        Returns:
            (tuple of lists): (iterations, converged)
        '''
        if iterations is None:
            iterations = []
        if converged is None:
            converged = []
        X = self._check_matrix(X)
        iterations_X, converged_X = self._residualize(X)
        for j in range(X.shape[1]):
            self._log_column(j, X[:, j], iterations_X[j], converged_X[j])
        iterations.extend(iterations_X)
        converged.extend(converged_X)
        return iterations, converged

    def _residualize(self, X):
        '''
        Residualize the columns of X one after the other.

        Arguments:
            X (NumPy Array): 2-dimensional matrix; modified in place

        Returns:
            (tuple of lists): (iterations, converged) for each column
        '''
        iterations_X = []
        converged_X = []
        for j in trange(X.shape[1], disable=self.no_pbars):
            _, iterations_j, converged_j = self.solve_residuals(X[:, j])
            iterations_X.append(iterations_j)
            converged_X.append(converged_j)
        return iterations_X, converged_X

class LSMRFixedEffectProblem(FixedEffectProblem):
    '''
    Absorb fixed effects with LSMR, solving columns one after the other with a single workspace. Inherits from FixedEffectProblem.

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = 'lsmr'

    def __init__(self, fes, params=None):
        super().__init__(fes, params)
        self.A = FixedEffectMatrix(fes)
        self.state = LSMRState(self.A)

    def solve_residuals(self, r):
        self._check_column(r)
        return _solve_residuals(self.state, r, self._solver_kwargs())

    def solve_coefficients(self, r):
        self._check_column(r)
        return _solve_coefficients(self.state, r, self._solver_kwargs())

class LSMRParallelFixedEffectProblem(FixedEffectProblem):
    '''
    Absorb fixed effects with LSMR, distributing columns across 'ncore' processes. Each process builds its own design matrix and workspace, and results are copied back into the input matrix. Inherits from FixedEffectProblem.

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = 'lsmr_parallel'

    def solve_residuals(self, r):
        self._check_column(r)
        return _solve_residuals(LSMRState(FixedEffectMatrix(self.fes)), r, self._solver_kwargs())

    def solve_coefficients(self, r):
        self._check_column(r)
        return _solve_coefficients(LSMRState(FixedEffectMatrix(self.fes)), r, self._solver_kwargs())

    def _residualize(self, X):
        kwargs = self._solver_kwargs()
        tasks = [(self.fes, X[:, j].copy(), kwargs) for j in range(X.shape[1])]
        with Pool(processes=self.ncore) as pool:
            # Multiprocessing tqdm source: https://stackoverflow.com/a/45276885/17333120
            all_res = list(tqdm(pool.imap(_solve_residuals_worker, tasks), total=len(tasks), disable=self.no_pbars))

        iterations_X = []
        converged_X = []
        for j, (r, iterations_j, converged_j) in enumerate(all_res):
            X[:, j] = r
            iterations_X.append(iterations_j)
            converged_X.append(converged_j)
        return iterations_X, converged_X

class LSMRThreadsFixedEffectProblem(FixedEffectProblem):
    '''
    Absorb fixed effects with LSMR, splitting columns across 'ncore' threads. Each thread has its own design matrix and workspace and writes only into its own columns. Inherits from FixedEffectProblem.

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = 'lsmr_threads'

    def solve_residuals(self, r):
        self._check_column(r)
        return _solve_residuals(LSMRState(FixedEffectMatrix(self.fes)), r, self._solver_kwargs())

    def solve_coefficients(self, r):
        self._check_column(r)
        return _solve_coefficients(LSMRState(FixedEffectMatrix(self.fes)), r, self._solver_kwargs())

    def _residualize(self, X):
        kwargs = self._solver_kwargs()
        n_cols = X.shape[1]
        iterations_X = [0] * n_cols
        converged_X = [False] * n_cols
        chunks = [chunk for chunk in np.array_split(np.arange(n_cols), self.ncore) if len(chunk) > 0]

        with ThreadPoolExecutor(max_workers=self.ncore) as executor:
            futures = [executor.submit(_solve_residuals_chunk, self.fes, X, chunk, kwargs) for chunk in chunks]
            for future in tqdm(as_completed(futures), total=len(futures), disable=self.no_pbars):
                for j, iterations_j, converged_j in future.result():
                    iterations_X[j] = iterations_j
                    converged_X[j] = converged_j
        return iterations_X, converged_X

class CGLSFixedEffectProblem(FixedEffectProblem):
    '''
    Absorb fixed effects with Jacobi-preconditioned CGLS, solving columns one after the other with a single workspace. Inherits from FixedEffectProblem.

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = 'cgls'

    def __init__(self, fes, params=None):
        super().__init__(fes, params)
        self.A = FixedEffectMatrix(fes)
        self.state = CGLSState(self.A)

    def _solver_kwargs(self):
        # CGLS has no condition number test
        return {'tol': self.tol, 'maxiter': self.maxiter}

    def solve_residuals(self, r):
        self._check_column(r)
        return _solve_residuals(self.state, r, self._solver_kwargs())

    def solve_coefficients(self, r):
        self._check_column(r)
        return _solve_coefficients(self.state, r, self._solver_kwargs())

class QRFixedEffectProblem(FixedEffectProblem):
    '''
    Absorb fixed effects by explicitly constructing the design matrix and solving with a QR decomposition with column pivoting. The design matrix is dense, so only use this for small problems. Inherits from FixedEffectProblem.

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().
    '''
    method = 'qr'

    def __init__(self, fes, params=None):
        super().__init__(fes, params)
        self.A = design_matrix(fes, scaled=True).toarray()

    def _solve(self, r):
        '''
        Compute least squares coefficients of r on the scaled design matrix.

        Arguments:
            r (NumPy Array): column

        Returns:
            (NumPy Array): coefficients
        '''
        return lstsq(self.A, r, lapack_driver='gelsy')[0]

    def solve_residuals(self, r):
        self._check_column(r)
        if not np.all(np.isfinite(r)):
            return r, 0, False
        r -= self.A @ self._solve(r)
        return r, 1, True

    def solve_coefficients(self, r):
        self._check_column(r)
        if not np.all(np.isfinite(r)):
            return [np.full(fe.n_groups, np.nan) for fe in self.fes], 0, False
        x = self._solve(r)
        sizes = [fe.n_groups for fe in self.fes]
        coefficients = [x_k * fe.scale for x_k, fe in zip(np.split(x, np.cumsum(sizes)[:-1]), self.fes)]
        return coefficients, 1, True

# Problem class for each method
_problem_classes = {
    'lsmr': LSMRFixedEffectProblem,
    'lsmr_parallel': LSMRParallelFixedEffectProblem,
    'lsmr_threads': LSMRThreadsFixedEffectProblem,
    'cgls': CGLSFixedEffectProblem,
    'qr': QRFixedEffectProblem
}

def fixed_effect_problem(fes, params=None):
    '''
    Construct the fixed effect problem for the method given by params['method'].

    Arguments:
        fes (list of FixedEffect): fixed effects to absorb
        params (ParamsDict or None): dictionary of parameters. Run ab.problem_params().describe_all() for descriptions of all valid parameters. None is equivalent to ab.problem_params().

    Returns:
        (FixedEffectProblem): problem for the selected method
    '''
    if params is None:
        params = problem_params()
    return _problem_classes[params['method']](fes, params)

def solve_residuals(problem, r):
    '''
    Replace r by its residual after projecting out the fixed effects of problem.

    Arguments:
        problem (FixedEffectProblem): fixed effect problem
        r (NumPy Array): column to residualize; modified in place

    Returns:
        (tuple): (r, iterations, converged)
    '''
    return problem.solve_residuals(r)

def solve_coefficients(problem, r):
    '''
    Estimate the fixed effect coefficients of r.

    Arguments:
        problem (FixedEffectProblem): fixed effect problem
        r (NumPy Array): column to project; not modified

    Returns:
        (tuple): (list of NumPy Arrays --> coefficients for each fixed effect, iterations, converged)
    '''
    return problem.solve_coefficients(r)

def residualize(X, problem, iterations=None, converged=None):
    '''
    Residualize each column of X in place. If problem is None, there are no fixed effects to absorb and X is left unchanged.

    Arguments:
        X (NumPy Array): vector or matrix with one row per observation; modified in place
        problem (FixedEffectProblem or None): fixed effect problem
        iterations (list or None): if not None, the number of iterations for each column is appended to it
        converged (list or None): if not None, whether each column converged is appended to it

    Returns:
        (tuple of lists): (iterations, converged)
    '''
    if problem is None:
        if iterations is None:
            iterations = []
        if converged is None:
            converged = []
        return iterations, converged
    return problem.residualize(X, iterations, converged)
