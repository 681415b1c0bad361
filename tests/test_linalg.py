'''
Tests for FixedEffect, FixedEffectVector, FixedEffectMatrix, and the Jacobi preconditioner.
'''
import pytest
import numpy as np
import pyabsorb as ab
from pyabsorb.util import design_matrix

def _random_fes(rng, nobs=40, groups=(5, 7, 3)):
    # Random fixed effects with interactions and weights; some groups may be empty
    sqrtw = rng.uniform(0.5, 2, size=nobs)
    fes = []
    for n_groups in groups:
        refs = rng.integers(n_groups, size=nobs)
        interaction = rng.normal(size=nobs)
        fes.append(ab.FixedEffect(refs, interaction=interaction, sqrtw=sqrtw, n_groups=n_groups))
    return fes

#######################
##### FixedEffect #####
#######################

def test_fixed_effect_default_scale():
    # Default scale is the inverse norm of each group's column.
    fe = ab.FixedEffect([0, 0, 1, 2, 2, 2], interaction=[1, 2, 3, 1, 1, 1], sqrtw=[1, 1, 2, 1, 1, 2])
    assert fe.n_groups == 3
    assert len(fe) == 6
    assert np.allclose(fe.scale, [1 / np.sqrt(5), 1 / 6, 1 / np.sqrt(6)])

def test_fixed_effect_empty_group_scale():
    # Groups without observations get scale 0.
    fe = ab.FixedEffect([0, 0, 2], n_groups=4)
    assert np.allclose(fe.scale, [1 / np.sqrt(2), 0, 1, 0])

def test_fixed_effect_from_labels():
    # Labels are converted to codes in order of first appearance.
    fe = ab.FixedEffect.from_labels(['b', 'a', 'b', 'c'])
    assert np.all(fe.refs == [0, 1, 0, 2])
    assert fe.n_groups == 3

def test_fixed_effect_immutable():
    fe = ab.FixedEffect([0, 1, 1])
    with pytest.raises(ValueError):
        fe.refs[0] = 1
    with pytest.raises(ValueError):
        fe.scale[0] = 2.

def test_fixed_effect_invalid():
    # Invalid descriptors fail at construction.
    with pytest.raises(ValueError):
        ab.FixedEffect([0, 1, 1], interaction=[1, 1])
    with pytest.raises(ValueError):
        ab.FixedEffect([0, 1, 1], sqrtw=[1, 1, 1, 1])
    with pytest.raises(ValueError):
        ab.FixedEffect([0, 1, 3], n_groups=3)
    with pytest.raises(ValueError):
        ab.FixedEffect([-1, 0, 1])
    with pytest.raises(ValueError):
        ab.FixedEffect([0, 1, 1], scale=[1, 1, 1])
    with pytest.raises(ValueError):
        ab.FixedEffect([])
    with pytest.raises(ValueError):
        ab.FixedEffect([[0, 1], [1, 0]])
    with pytest.raises(ValueError):
        ab.FixedEffect.from_labels(['a', None, 'b'])
    # Non-integer codes aren't truncated
    with pytest.raises(ValueError):
        ab.FixedEffect([0.7, 1.2])
    with pytest.raises(ValueError):
        ab.FixedEffect(np.array([0., np.nan, 1.]))

def test_fixed_effect_integral_float_codes():
    fe = ab.FixedEffect(np.array([0., 1., 1., 2.]))
    assert fe.refs.dtype == np.int64
    assert np.all(fe.refs == [0, 1, 1, 2])
    assert fe.n_groups == 3

#############################
##### FixedEffectVector #####
#############################

def test_fixed_effect_vector_operations():
    fes = [ab.FixedEffect([0, 1, 1, 0]), ab.FixedEffect([0, 1, 2, 2])]
    x = ab.FixedEffectVector.from_numpy(fes, np.array([1., 2., 3., 4., 5.]))
    y = ab.FixedEffectVector.from_numpy(fes, np.array([1., 1., 1., 1., 1.]))

    assert len(x) == 5
    assert np.isclose(x.norm(), np.sqrt(55))
    assert np.isclose(x.dot(y), 15)

    x.axpy(2., y)
    assert np.allclose(x.to_numpy(), [3., 4., 5., 6., 7.])

    x.scale(0.5)
    assert np.allclose(x.to_numpy(), [1.5, 2., 2.5, 3., 3.5])

    x.multiply(ab.FixedEffectVector.from_numpy(fes, np.array([2., 0., 1., 1., 2.])))
    assert np.allclose(x.to_numpy(), [3., 0., 2.5, 3., 7.])

    x.fill(0)
    assert x.norm() == 0

def test_fixed_effect_vector_copy_does_not_alias():
    fes = [ab.FixedEffect([0, 1, 1, 0]), ab.FixedEffect([0, 1, 2, 2])]
    x = ab.FixedEffectVector.from_numpy(fes, np.arange(5.))
    y = x.copy()
    y.fill(7)
    assert np.allclose(x.to_numpy(), np.arange(5.))

    z = ab.FixedEffectVector.zeros(fes)
    z.assign(x)
    x.scale(2)
    assert np.allclose(z.to_numpy(), np.arange(5.))

def test_fixed_effect_vector_from_numpy_wrong_length():
    fes = [ab.FixedEffect([0, 1, 1, 0])]
    with pytest.raises(ValueError):
        ab.FixedEffectVector.from_numpy(fes, np.zeros(3))

#############################
##### FixedEffectMatrix #####
#############################

def test_fixed_effect_matrix_size():
    fes = _random_fes(np.random.default_rng(1234))
    A = ab.FixedEffectMatrix(fes)
    assert A.size(1) == 40
    assert A.size(2) == 15
    assert A.size(3) == 1
    assert A.shape == (40, 15)

def test_fixed_effect_matrix_cache():
    fe = ab.FixedEffect([0, 0, 1], interaction=[2., 3., 4.], sqrtw=[1., 2., 3.], scale=[0.5, 0.25])
    A = ab.FixedEffectMatrix([fe])
    assert np.allclose(A.cache[0], [0.5 * 2 * 1, 0.5 * 3 * 2, 0.25 * 4 * 3])

@pytest.mark.parametrize('alpha', [1., -1., 0.37])
@pytest.mark.parametrize('beta', [0., 1., -2.5])
def test_fixed_effect_matrix_mul_matches_dense(alpha, beta):
    # Forward product matches the explicitly constructed design matrix.
    rng = np.random.default_rng(1234)
    fes = _random_fes(rng)
    A = ab.FixedEffectMatrix(fes)
    D = design_matrix(fes).toarray()

    x = rng.normal(size=A.size(2))
    y0 = rng.normal(size=A.size(1))
    y = y0.copy()
    A.mul(alpha, ab.FixedEffectVector.from_numpy(fes, x), beta, y)

    assert np.allclose(y, alpha * D @ x + beta * y0)

@pytest.mark.parametrize('alpha', [1., -1., 0.37])
@pytest.mark.parametrize('beta', [0., 1., -2.5])
def test_fixed_effect_matrix_rmul_matches_dense(alpha, beta):
    # Adjoint product matches the explicitly constructed design matrix.
    rng = np.random.default_rng(5678)
    fes = _random_fes(rng)
    A = ab.FixedEffectMatrix(fes)
    D = design_matrix(fes).toarray()

    y = rng.normal(size=A.size(1))
    x0 = rng.normal(size=A.size(2))
    x = ab.FixedEffectVector.from_numpy(fes, x0)
    A.rmul(alpha, y, beta, x)

    assert np.allclose(x.to_numpy(), alpha * D.T @ y + beta * x0)

def test_fixed_effect_matrix_beta_zero_clears_nan():
    # beta = 0 overwrites the output, even if it contains NaN.
    fes = [ab.FixedEffect([0, 1, 1])]
    A = ab.FixedEffectMatrix(fes)
    y = np.array([np.nan, np.inf, 1.])
    A.mul(1., ab.FixedEffectVector.from_numpy(fes, np.array([1., 2.])), 0., y)
    assert np.all(np.isfinite(y))

def test_fixed_effect_matrix_linear_operator():
    rng = np.random.default_rng(4321)
    fes = _random_fes(rng)
    A = ab.FixedEffectMatrix(fes)
    D = A.tosparse().toarray()
    L = A.aslinearoperator()

    x = rng.normal(size=A.size(2))
    y = rng.normal(size=A.size(1))
    assert L.shape == D.shape
    assert np.allclose(L.matvec(x), D @ x)
    assert np.allclose(L.rmatvec(y), D.T @ y)

def test_fixed_effect_matrix_invalid():
    with pytest.raises(ValueError):
        ab.FixedEffectMatrix([])
    with pytest.raises(ValueError):
        ab.FixedEffectMatrix([ab.FixedEffect([0, 1, 1]), ab.FixedEffect([0, 1])])

##################
##### Jacobi #####
##################

def test_jacobi_inverse_diagonal():
    # Inverse diagonal of A.T @ A, with 0 for empty groups.
    rng = np.random.default_rng(1111)
    fes = _random_fes(rng, groups=(4, 6))
    fes.append(ab.FixedEffect([0] * 40, n_groups=2))
    A = ab.FixedEffectMatrix(fes)
    D = design_matrix(fes).toarray()
    diag = np.sum(D ** 2, axis=0)
    expected = np.zeros(len(diag))
    expected[diag > 0] = 1 / diag[diag > 0]

    preconditioner = ab.preconditioners.jacobi(A)
    assert np.allclose(preconditioner.inverse_diagonal.to_numpy(), expected)

    x = ab.FixedEffectVector.from_numpy(fes, np.ones(A.size(2)))
    out = ab.FixedEffectVector.zeros(fes)
    preconditioner.precondition(x, out)
    assert np.allclose(out.to_numpy(), expected)
