"""
K-Conditional-Means estimation and prediction.

Main entry points for the package with support for Polars and DuckDB backends.
"""

import logging
import numpy as np
import polars as pl
from typing import Optional, Literal

from ._config import resolve_backend
from .common import (
    check_columns,
    check_outcome,
    column_values,
    fit_arrays,
    split_design
)
from .duckdb_impl import lookup_duckdb, summarize_levels_duckdb
from .errors import InvalidArgumentError
from .polars_impl import lookup_polars, summarize_levels_polars
from .result import KCMeansResult, UNASSIGNED_CLUSTER

logger = logging.getLogger(__name__)


def kcmeans(
    y,
    X,
    which_is_cat: int = 0,
    K: int = 2,
    backend: Optional[Literal["polars", "duckdb"]] = None,
    method: Literal["loglinear", "quadratic"] = "loglinear",
    con=None
) -> KCMeansResult:
    """
    K-Conditional-Means estimator.

    Partitions the levels of a categorical predictor into K groups with
    similar conditional means of the outcome, after removing the best linear
    prediction of the continuous covariates.

    Parameters
    ----------
    y : array-like
        Outcome, shape (n,).
    X : array-like
        Either the categorical predictor alone, shape (n,), or a matrix of
        shape (n, 1 + p) whose column ``which_is_cat`` is the categorical
        predictor and whose remaining p columns are continuous covariates.
    which_is_cat : int, default 0
        Column of ``X`` holding the categorical predictor.
    K : int, default 2
        Number of support points. Reduced, with a warning, when there are
        fewer distinct level means than K.
    backend : {"polars", "duckdb"}, optional
        Engine for the level summaries. Defaults to the configured backend
        (see :func:`kcmeans.set_backend`), "polars" unless overridden.
    method : {"loglinear", "quadratic"}, default "loglinear"
        Dynamic programming variant used for the clustering. Both return a
        globally optimal partition.
    con : duckdb.DuckDBPyConnection, optional
        Connection used by the DuckDB backend.

    Returns
    -------
    KCMeansResult
        Fitted model with the cluster map, the unconditional residual mean
        ``mean_y``, covariate coefficients ``pi`` and pass-through arguments.

    Notes
    -----
    Estimation proceeds in three steps:

    1. ``pi`` is taken from the least squares fit (generalized inverse) of
       y on the covariates and a full set of category indicators, and
       ``y_tilde = y - X pi``.
    2. For each category level x, the sample mean of ``y_tilde`` and the
       sample share of x are computed.
    3. The level means are clustered into K ordered groups minimizing the
       share-weighted within-group sum of squares, exactly, by dynamic
       programming.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> X = rng.normal(size=800)
    >>> Z = rng.integers(1, 21, size=800)
    >>> y = Z % 4 + X + rng.normal(size=800)
    >>> fit = kcmeans(y, np.column_stack([Z, X]), K=4)
    >>> fit.support_points.shape
    (4,)
    >>> fitted_values = fit.predict(np.column_stack([Z, X]))
    >>> clusters = fit.predict(np.column_stack([Z, X]), clusters=True)
    """
    backend = resolve_backend(backend)
    y = check_outcome(y)
    z, covariates = split_design(X, which_is_cat, n_obs=len(y))
    n_cols = 1 if np.ndim(X) == 1 else np.shape(X)[1]
    which_is_cat = int(which_is_cat) % n_cols

    if backend == "polars":
        summarize = summarize_levels_polars
    else:
        def summarize(y_tilde, labels):
            return summarize_levels_duckdb(y_tilde, labels, con=con)

    return fit_arrays(
        y, z, covariates, K,
        summarize_levels=summarize,
        method=method,
        which_is_cat=which_is_cat
    )


def _prediction_inputs(
    fit: KCMeansResult,
    newdata,
    clusters: bool
) -> tuple[np.ndarray, np.ndarray | None]:
    """Categorical labels and (when needed) covariates of the new data."""
    if isinstance(newdata, pl.LazyFrame):
        newdata = newdata.collect()

    if isinstance(newdata, pl.DataFrame) and fit.cat_col is not None:
        need_x = fit.pi is not None and not clusters
        x_cols = list(fit.x_cols) if need_x else []
        check_columns(newdata.columns, [fit.cat_col] + x_cols)
        if newdata.height == 0:
            raise InvalidArgumentError("newdata has no rows")
        z = column_values(newdata, fit.cat_col)
        covariates = newdata.select(x_cols).to_numpy().astype(float) if need_x else None
        return z, covariates

    if isinstance(newdata, pl.DataFrame):
        newdata = newdata.to_numpy()

    z, covariates = split_design(newdata, fit.which_is_cat)
    if fit.pi is not None:
        n_x = 0 if covariates is None else covariates.shape[1]
        if n_x != len(fit.pi):
            raise InvalidArgumentError(
                f"newdata has {n_x} covariate columns, the model was fitted with {len(fit.pi)}"
            )
    return z, covariates


def predict(
    fit: KCMeansResult,
    newdata,
    clusters: bool = False,
    backend: Optional[Literal["polars", "duckdb"]] = None,
    con=None
) -> np.ndarray:
    """
    Predictions of a fitted K-Conditional-Means estimator.

    Parameters
    ----------
    fit : KCMeansResult
        Fitted model.
    newdata : array-like or polars.DataFrame
        Predictors laid out as in fitting: a matrix with the categorical
        predictor at ``fit.which_is_cat``, or a DataFrame containing the
        fitted column names when the model was fitted from a DataFrame.
    clusters : bool, default False
        Return estimated cluster ids instead of fitted values.
    backend : {"polars", "duckdb"}, optional
        Engine for the cluster-map lookup.
    con : duckdb.DuckDBPyConnection, optional
        Connection used by the DuckDB backend.

    Returns
    -------
    np.ndarray
        One entry per row of ``newdata``, in the same order:

        - fitted values (float): the cluster mean of the row's level plus
          the covariate contribution. Levels not seen in fitting get the
          unconditional mean ``fit.mean_y`` instead of a cluster mean.
        - cluster ids (int): 1..n_clusters; levels not seen in fitting get
          ``UNASSIGNED_CLUSTER`` (0).
    """
    if not isinstance(fit, KCMeansResult):
        raise InvalidArgumentError(f"fit must be a KCMeansResult, got {type(fit).__name__}")
    backend = resolve_backend(backend)
    z, covariates = _prediction_inputs(fit, newdata, clusters)

    if backend == "polars":
        def lookup(column, default):
            return lookup_polars(fit.cluster_map, z, column, default)
    else:
        def lookup(column, default):
            return lookup_duckdb(fit.cluster_map, z, column, default, con=con)

    if clusters:
        return np.asarray(lookup("cluster", UNASSIGNED_CLUSTER), dtype=np.int64)

    fitted = np.asarray(lookup("cluster_mean", fit.mean_y), dtype=float)
    if fit.pi is not None:
        if not np.all(np.isfinite(covariates)):
            raise InvalidArgumentError("newdata covariates contain missing or non-finite values")
        fitted = fitted + covariates @ fit.pi
    return fitted
