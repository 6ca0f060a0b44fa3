"""Tests for per-level summaries with Polars and DuckDB."""

import numpy as np
import polars as pl
import pytest

from kcmeans import summarize_levels_polars, summarize_levels_duckdb


SUMMARIZERS = [summarize_levels_polars, summarize_levels_duckdb]


@pytest.mark.parametrize("summarize", SUMMARIZERS)
def test_means_and_shares(summarize):
    y = np.array([1.0, 2.0, 3.0, 10.0, 20.0, 5.0])
    z = np.array([2, 2, 2, 9, 9, 4])

    levels = summarize(y, z)

    assert levels.columns == ["level", "mean", "share"]
    assert levels["level"].to_list() == [2, 4, 9]
    np.testing.assert_allclose(levels["mean"].to_numpy(), [2.0, 5.0, 15.0])
    np.testing.assert_allclose(levels["share"].to_numpy(), [0.5, 1 / 6, 1 / 3])


@pytest.mark.parametrize("summarize", SUMMARIZERS)
def test_shares_sum_to_one(summarize):
    np.random.seed(42)
    z = np.random.randint(0, 50, 1000)
    y = np.random.randn(1000)

    levels = summarize(y, z)

    assert levels.height == len(np.unique(z))
    assert levels["share"].sum() == pytest.approx(1.0)
    assert levels["level"].n_unique() == levels.height


@pytest.mark.parametrize("summarize", SUMMARIZERS)
def test_singleton_level(summarize):
    """A level observed once has its own residual as mean and share 1/n."""
    y = np.array([0.5, 1.5, 7.25])
    z = np.array([1, 1, 3])
    levels = summarize(y, z)
    row = levels.filter(pl.col("level") == 3)
    assert row["mean"].item() == pytest.approx(7.25)
    assert row["share"].item() == pytest.approx(1 / 3)


@pytest.mark.parametrize("summarize", SUMMARIZERS)
def test_string_levels_sorted(summarize):
    y = np.array([1.0, 2.0, 3.0, 4.0])
    z = np.array(["b", "a", "c", "a"], dtype=object)
    levels = summarize(y, z)
    assert levels["level"].to_list() == ["a", "b", "c"]
    np.testing.assert_allclose(levels["mean"].to_numpy(), [3.0, 1.0, 3.0])


def test_backends_identical():
    """Polars and DuckDB summaries agree row for row."""
    np.random.seed(0)
    z = np.random.randint(1, 21, 500).astype(float)
    y = np.random.randn(500)

    lf = summarize_levels_polars(y, z)
    ld = summarize_levels_duckdb(y, z)

    assert lf["level"].to_list() == ld["level"].to_list()
    np.testing.assert_allclose(lf["mean"].to_numpy(), ld["mean"].to_numpy(), rtol=1e-12)
    np.testing.assert_allclose(lf["share"].to_numpy(), ld["share"].to_numpy(), rtol=1e-12)
