"""Tests for the generalized-inverse least squares and residualization."""

import numpy as np
import pytest
from scipy import sparse

from kcmeans import ginv_ols, residualize, SingularDesignError, InvalidArgumentError
from kcmeans.common import one_hot


def test_ginv_ols_full_rank_matches_lstsq():
    """On a full-rank design the generalized inverse is ordinary least squares."""
    np.random.seed(42)
    X = np.random.randn(100, 3)
    y = X @ np.array([1.0, -2.0, 0.5]) + 0.1 * np.random.randn(100)

    beta = ginv_ols(y, X)
    expected, _, _, _ = np.linalg.lstsq(X, y, rcond=None)
    np.testing.assert_allclose(beta, expected, rtol=1e-10)


def test_ginv_ols_collinear_minimum_norm():
    """Duplicated columns share the coefficient equally (minimum-norm solution)."""
    np.random.seed(1)
    x = np.random.randn(50)
    X = np.column_stack([x, x])
    beta = ginv_ols(2.0 * x, X)
    np.testing.assert_allclose(beta, [1.0, 1.0], atol=1e-10)


def test_ginv_ols_sparse_dense_identical():
    np.random.seed(3)
    X = np.random.randn(60, 4)
    X[:, 3] = X[:, 0] + X[:, 1]
    y = np.random.randn(60)
    np.testing.assert_allclose(
        ginv_ols(y, sparse.csr_matrix(X)), ginv_ols(y, X), atol=1e-10
    )


def test_ginv_ols_degenerate_design_raises():
    with pytest.raises(SingularDesignError):
        ginv_ols(np.array([]), np.empty((0, 2)))
    with pytest.raises(SingularDesignError):
        ginv_ols(np.ones(3), np.empty((3, 0)))
    with pytest.raises(SingularDesignError, match="non-finite"):
        ginv_ols(np.ones(3), np.array([[1.0], [np.inf], [2.0]]))


def test_one_hot_full_expansion():
    """Every level gets a column; no reference category is dropped."""
    z = np.array([3, 1, 3, 7])
    Z_mat, levels = one_hot(z)
    np.testing.assert_array_equal(levels, [1, 3, 7])
    np.testing.assert_array_equal(
        Z_mat.toarray(),
        [[0, 1, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]]
    )


def test_residualize_without_covariates_is_identity():
    y = np.array([1.0, 2.0, 3.0])
    z = np.array([1, 1, 2])
    y_tilde, pi = residualize(y, None, z)
    assert pi is None
    np.testing.assert_array_equal(y_tilde, y)

    y_tilde, pi = residualize(y, np.empty((3, 0)), z)
    assert pi is None
    np.testing.assert_array_equal(y_tilde, y)


def test_residualize_recovers_slope_within_levels():
    """The covariate slope is estimated net of level effects."""
    np.random.seed(42)
    n = 2000
    z = np.random.randint(0, 30, n)
    level_effect = np.random.randn(30) * 3
    # x is correlated with the level effect, so omitting levels would bias pi
    x = level_effect[z] + np.random.randn(n)
    y = level_effect[z] + 2.0 * x + 0.5 * np.random.randn(n)

    y_tilde, pi = residualize(y, x[:, np.newaxis], z)

    assert pi.shape == (1,)
    assert abs(pi[0] - 2.0) < 0.05
    np.testing.assert_allclose(y_tilde, y - x * pi[0])


def test_residualize_collinear_covariate_does_not_fail():
    """A constant covariate is absorbed by the category indicators."""
    np.random.seed(5)
    z = np.random.randint(0, 5, 100)
    y = z + np.random.randn(100)
    X = np.ones((100, 1))
    y_tilde, pi = residualize(y, X, z)
    assert np.all(np.isfinite(pi))
    # Within-level variation is untouched by a constant shift
    for level in range(5):
        mask = z == level
        np.testing.assert_allclose(
            y_tilde[mask] - y_tilde[mask].mean(), y[mask] - y[mask].mean(), atol=1e-10
        )


def test_residualize_rejects_missing_covariates():
    X = np.array([[1.0], [np.nan], [2.0]])
    with pytest.raises(InvalidArgumentError):
        residualize(np.ones(3), X, np.array([1, 2, 1]))


def test_residualize_many_levels_stays_sparse(monkeypatch):
    """Only the square cross-product of the design is made dense."""
    densified = []
    for cls in (sparse.csr_matrix, sparse.csc_matrix, sparse.coo_matrix):
        original = cls.toarray

        def recording_toarray(self, *args, _original=original, **kwargs):
            densified.append(self.shape)
            return _original(self, *args, **kwargs)

        monkeypatch.setattr(cls, "toarray", recording_toarray)

    np.random.seed(42)
    n, n_levels = 6000, 1500
    z = np.random.randint(0, n_levels, n)
    level_effect = np.random.randn(n_levels)
    x = level_effect[z] + np.random.randn(n)
    y = 2.0 * level_effect[z] + 1.5 * x + np.random.randn(n)

    _, pi = residualize(y, x[:, np.newaxis], z)

    # Within-level slope: regress level-demeaned y on level-demeaned x
    counts = np.bincount(z, minlength=n_levels)
    x_dm = x - (np.bincount(z, weights=x, minlength=n_levels) / np.maximum(counts, 1))[z]
    y_dm = y - (np.bincount(z, weights=y, minlength=n_levels) / np.maximum(counts, 1))[z]
    within = (x_dm @ y_dm) / (x_dm @ x_dm)

    np.testing.assert_allclose(pi, [within], rtol=1e-8)
    assert densified
    assert all(rows == cols for rows, cols in densified)


def test_ginv_ols_scaled_covariate_not_dropped():
    """Rescaling a covariate rescales its coefficient instead of zeroing it."""
    np.random.seed(11)
    n = 500
    z = np.random.randint(0, 10, n)
    x = np.random.randn(n)
    y = z + 0.7 * x + np.random.randn(n) * 0.1

    _, pi = residualize(y, x[:, np.newaxis], z)
    _, pi_big = residualize(y, 1e4 * x[:, np.newaxis], z)

    assert pi[0] == pytest.approx(0.7, abs=0.05)
    np.testing.assert_allclose(pi_big * 1e4, pi, rtol=1e-4)
