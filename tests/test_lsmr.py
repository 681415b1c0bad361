'''
Tests for the LSMR solver.
'''
import pytest
import numpy as np
from scipy.linalg import lstsq
import pyabsorb as ab
from pyabsorb.solvers import lsmr, LSMRState
from pyabsorb.util import design_matrix

def _two_way_fes(rng, nobs=200, n_firms=15, n_years=8):
    sqrtw = np.sqrt(rng.uniform(0.5, 3, size=nobs))
    firm = ab.FixedEffect(rng.integers(n_firms, size=nobs), sqrtw=sqrtw, n_groups=n_firms)
    year = ab.FixedEffect(rng.integers(n_years, size=nobs), sqrtw=sqrtw, n_groups=n_years)
    return [firm, year]

def _exact_residuals(fes, y):
    D = design_matrix(fes, scaled=False).toarray()
    return y - D @ lstsq(D, y)[0]

def test_lsmr_group_means():
    # Groups [1, 1, 2, 2, 3, 3] and y = [1, 3, 2, 4, 5, 7] have means [2, 3, 6].
    fe = ab.FixedEffect.from_labels([1, 1, 2, 2, 3, 3])
    state = LSMRState(ab.FixedEffectMatrix([fe]))
    y = np.array([1., 3., 2., 4., 5., 7.])

    coefficients, iterations, converged = state.solve_coefficients(y)
    assert converged
    assert len(coefficients) == 1
    assert np.allclose(coefficients[0], [2., 3., 6.])
    # solve_coefficients doesn't modify the column
    assert np.allclose(y, [1., 3., 2., 4., 5., 7.])

    r, iterations, converged = state.solve_residuals(y)
    assert converged
    assert r is y
    assert np.allclose(y, [-1., 1., -1., 1., -1., 1.])

def test_lsmr_group_means_with_noise():
    # Recover known group means when the residual is orthogonal to the group indicators.
    rng = np.random.default_rng(1234)
    refs = np.repeat(np.arange(20), 10)
    means = rng.normal(size=20)
    noise = rng.normal(size=200)
    # Demean the noise within each group
    noise -= (np.bincount(refs, weights=noise) / 10)[refs]
    fe = ab.FixedEffect(refs)
    state = LSMRState(ab.FixedEffectMatrix([fe]))

    coefficients, iterations, converged = state.solve_coefficients(means[refs] + noise)
    assert converged
    assert np.allclose(coefficients[0], means, atol=1e-7)

def test_lsmr_already_orthogonal():
    # A column orthogonal to the fixed effects is left unchanged, without iterating.
    fe = ab.FixedEffect.from_labels([1, 1, 2, 2, 3, 3])
    state = LSMRState(ab.FixedEffectMatrix([fe]))
    y = np.array([-1., 1., -1., 1., -1., 1.])

    r, iterations, converged = state.solve_residuals(y)
    assert converged
    assert iterations == 0
    assert np.allclose(r, [-1., 1., -1., 1., -1., 1.])

def test_lsmr_idempotent():
    # Residualizing residuals converges within one iteration and leaves them unchanged.
    rng = np.random.default_rng(2345)
    fes = _two_way_fes(rng)
    y = _exact_residuals(fes, rng.normal(size=200) * fes[0].sqrtw)
    state = LSMRState(ab.FixedEffectMatrix(fes))

    r, iterations, converged = state.solve_residuals(y.copy())
    assert converged
    assert iterations <= 1
    assert np.allclose(r, y)

def test_lsmr_zero_column():
    fe = ab.FixedEffect.from_labels([1, 1, 2, 2, 3, 3])
    state = LSMRState(ab.FixedEffectMatrix([fe]))
    r, iterations, converged = state.solve_residuals(np.zeros(6))
    assert converged
    assert iterations == 0
    assert np.all(r == 0)

def test_lsmr_two_way_matches_lstsq():
    # Two way fixed effects residuals match a dense least squares solution.
    rng = np.random.default_rng(3456)
    fes = _two_way_fes(rng)
    y = rng.normal(size=200)
    expected = _exact_residuals(fes, y)
    state = LSMRState(ab.FixedEffectMatrix(fes))

    r, iterations, converged = state.solve_residuals(y.copy())
    assert converged
    assert iterations > 1
    assert np.allclose(r, expected, atol=1e-6)

def test_lsmr_coefficients_fit_data():
    # Coefficients reproduce the fitted values, even though they are not unique with two fixed effects.
    rng = np.random.default_rng(4567)
    fes = _two_way_fes(rng)
    y = rng.normal(size=200)
    fitted = y - _exact_residuals(fes, y)
    state = LSMRState(ab.FixedEffectMatrix(fes))

    coefficients, iterations, converged = state.solve_coefficients(y)
    assert converged
    D = design_matrix(fes, scaled=False).toarray()
    assert np.allclose(D @ np.concatenate(coefficients), fitted, atol=1e-6)

def test_lsmr_residual_norm_non_increasing():
    # The residual norm never increases from one iteration to the next.
    rng = np.random.default_rng(5678)
    fes = _two_way_fes(rng)
    y = rng.normal(size=200)
    A = ab.FixedEffectMatrix(fes)

    normr = []
    x, v, h, hbar = [ab.FixedEffectVector.zeros(fes) for _ in range(4)]
    istop, itn = lsmr(x, A, y.copy(), v, h, hbar, atol=1e-12, btol=1e-12, conlim=0, maxiter=50, callback=lambda itn, normr_itn: normr.append(normr_itn))
    assert len(normr) == itn
    normr = np.array(normr)
    assert np.all(np.diff(normr) <= 1e-10 * normr[0])

    # The norm of the actual residual after k iterations
    state = LSMRState(A)
    actual = []
    for k in range(1, 8):
        r, _, _ = state.solve_residuals(y.copy(), tol=1e-14, maxiter=k, conlim=0)
        actual.append(np.linalg.norm(r))
    actual = np.array(actual)
    assert np.all(np.diff(actual) <= 1e-10 * actual[0])

def test_lsmr_iteration_limit():
    # Reaching the iteration limit is reported, not raised.
    rng = np.random.default_rng(6789)
    fes = _two_way_fes(rng)
    state = LSMRState(ab.FixedEffectMatrix(fes))
    r, iterations, converged = state.solve_residuals(rng.normal(size=200), tol=1e-14, maxiter=2)
    assert not converged
    assert iterations == 2

def test_lsmr_state_reuse():
    # Reusing the workspace gives the same answer as a fresh workspace.
    rng = np.random.default_rng(7890)
    fes = _two_way_fes(rng)
    A = ab.FixedEffectMatrix(fes)
    y1 = rng.normal(size=200)
    y2 = rng.normal(size=200)

    state = LSMRState(A)
    state.solve_residuals(y1.copy())
    r2_reused = state.solve_residuals(y2.copy())[0]
    r2_fresh = LSMRState(A).solve_residuals(y2.copy())[0]
    assert np.allclose(r2_reused, r2_fresh)

def test_lsmr_matches_scipy():
    # The solution matches scipy.sparse.linalg.lsmr on the same operator.
    from scipy.sparse.linalg import lsmr as scipy_lsmr
    rng = np.random.default_rng(8901)
    fes = _two_way_fes(rng)
    A = ab.FixedEffectMatrix(fes)
    y = rng.normal(size=200)

    state = LSMRState(A)
    iterations, converged = state.solve(y, tol=1e-10, maxiter=1000)
    res = scipy_lsmr(A.aslinearoperator(), y, atol=1e-10, btol=1e-10, conlim=1e8, maxiter=1000)
    assert np.allclose(state.x.to_numpy(), res[0], atol=1e-6)
