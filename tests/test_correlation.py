import logging

import numpy as np
import pytest

from cdoloss import FactorLoadings, ValidationError, correlation_error, factorize_correlation


def random_correlation(n, rank=None, seed=1):
    rng = np.random.default_rng(seed)
    a = rng.normal(size=(n, rank or n))
    c = a @ a.T
    d = np.sqrt(np.diag(c))
    return c / np.outer(d, d)


def test_full_rank_factorization_is_exact():
    c = random_correlation(6)
    f = factorize_correlation(c)
    assert f.shape == (6, 6)
    assert correlation_error(f, c) < 1e-9
    np.testing.assert_allclose(np.sqrt((f * f).sum(axis=1)), 1.0)


def test_reduced_factorization_beats_truncation():
    c = 0.9 * random_correlation(8, rank=2, seed=3) + 0.1 * np.eye(8)
    full = factorize_correlation(c)
    truncated = full[:, :2] / np.sqrt((full[:, :2] ** 2).sum(axis=1, keepdims=True))
    refined = factorize_correlation(c, 2)
    assert refined.shape == (8, 2)
    np.testing.assert_allclose(np.sqrt((refined * refined).sum(axis=1)), 1.0)
    assert correlation_error(refined, c) < correlation_error(truncated, c)


def test_noisy_matrix_is_repaired(caplog):
    c = np.array([[1.0, 0.9, 0.9],
                  [0.9, 1.0, -0.9],
                  [0.9, -0.9, 1.0]])
    with caplog.at_level(logging.WARNING, logger="cdoloss.correlation"):
        f = factorize_correlation(c)
    assert any(r.levelno == logging.WARNING for r in caplog.records)
    assert np.all(np.isfinite(f))
    np.testing.assert_allclose(np.sqrt((f * f).sum(axis=1)), 1.0)


@pytest.mark.parametrize("matrix", [
    np.ones((2, 3)),
    np.array([[1.0, 0.2], [0.3, 1.0]]),
    np.array([[2.0, 0.2], [0.2, 1.0]]),
    np.array([[1.0, np.nan], [np.nan, 1.0]]),
])
def test_malformed_matrix(matrix):
    with pytest.raises(ValidationError):
        factorize_correlation(matrix)


@pytest.mark.parametrize("n_factors", [0, 4])
def test_factor_count_out_of_range(n_factors):
    with pytest.raises(ValidationError):
        factorize_correlation(np.eye(3), n_factors)


def test_scalar_loadings():
    loadings = FactorLoadings.create(0.25, 4)
    assert loadings.values.shape == (4, 1)
    np.testing.assert_allclose(loadings.values, 0.5)
    np.testing.assert_allclose(loadings.idiosyncratic, np.sqrt(0.75))
    assert loadings.is_uniform


def test_factor_matrix_is_transposed():
    m = np.array([[0.3, 0.4, 0.5], [0.1, 0.2, 0.0]])
    loadings = FactorLoadings.create(m, 3)
    assert loadings.n_factors == 2
    np.testing.assert_array_equal(loadings.values, m.T)


def test_one_factor_structure_is_recovered():
    b = np.array([0.3, 0.5, 0.6, 0.7, 0.4])
    c = np.outer(b, b)
    np.fill_diagonal(c, 1.0)
    loadings = FactorLoadings.create(c, 5, n_factors=1)
    assert loadings.n_factors == 1
    np.testing.assert_allclose(loadings.correlation(), c, atol=1e-6)


@pytest.mark.parametrize("value, n_names", [
    (np.ones(3) * 0.2, 4),
    (np.ones((2, 5)) * 0.1, 4),
    (1.5, 3),
    (-0.1, 3),
])
def test_loadings_validation(value, n_names):
    with pytest.raises(ValidationError):
        FactorLoadings.create(value, n_names)


def test_loading_norm_above_one():
    with pytest.raises(ValidationError):
        FactorLoadings(np.array([[0.8, 0.8]]))


def test_scaled_loadings():
    loadings = FactorLoadings.create(0.36, 3).scaled(0.5)
    np.testing.assert_allclose(loadings.values, 0.3)
