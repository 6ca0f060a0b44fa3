"""
Polars-based kcmeans implementation.

Level summaries are a single group_by; cluster-map lookups are a left join
on the category level, re-sorted by row index so that predictions come back
in input order.
"""

import numpy as np
import polars as pl
from typing import List, Optional, Union

from .common import (
    align_join_keys,
    check_columns,
    fit_arrays,
    frame_arrays,
    label_series,
    resolve_columns
)
from .errors import InvalidArgumentError, KCMeansError
from .result import KCMeansResult


def summarize_levels_polars(y_tilde: np.ndarray, z: np.ndarray) -> pl.DataFrame:
    """
    Mean of the residualized outcome and sample share of every category level.

    Parameters
    ----------
    y_tilde : np.ndarray
        Residualized outcome (n,)
    z : np.ndarray
        Category labels (n,)

    Returns
    -------
    pl.DataFrame
        Columns level, mean, share; one row per distinct level, sorted by level
    """
    n_obs = len(y_tilde)
    df = pl.DataFrame([
        label_series(z, "level"),
        pl.Series("y", np.asarray(y_tilde, dtype=float)),
    ])
    return (
        df.group_by("level")
        .agg([
            pl.col("y").mean().alias("mean"),
            (pl.len() / n_obs).alias("share"),
        ])
        .sort("level")
    )


def lookup_polars(
    cluster_map: pl.DataFrame,
    z: np.ndarray,
    column: str,
    default: Union[int, float]
) -> np.ndarray:
    """
    Look up ``column`` of the cluster map for each label in ``z``.

    Labels absent from the cluster map get ``default``. The result is in the
    order of ``z``.
    """
    labels = align_join_keys(cluster_map["level"], label_series(z, "level"))
    table = cluster_map.select("level", column)
    rows = pl.DataFrame([labels]).with_row_index("_row")
    joined = (
        rows.join(table, on="level", how="left")
        .sort("_row")
    )
    if joined.height != rows.height:
        raise KCMeansError(
            f"Cluster-map lookup returned {joined.height} rows for {rows.height} labels"
        )
    return joined[column].fill_null(default).to_numpy()


def _load_frame(
    data: Union[str, pl.DataFrame, pl.LazyFrame],
    needed_cols: List[str]
) -> pl.DataFrame:
    if isinstance(data, str):
        return pl.scan_parquet(data).select(needed_cols).collect()
    if isinstance(data, pl.LazyFrame):
        check_columns(data.collect_schema().names(), needed_cols)
        return data.select(needed_cols).collect()
    if isinstance(data, pl.DataFrame):
        check_columns(data.columns, needed_cols)
        return data.select(needed_cols)
    raise InvalidArgumentError(
        f"data must be a Parquet path, polars.DataFrame or polars.LazyFrame, got {type(data).__name__}"
    )


def kcmeans_polars(
    data: Union[str, pl.DataFrame, pl.LazyFrame],
    y_col: Optional[str] = None,
    x_cols: Optional[List[str]] = None,
    cat_col: Optional[str] = None,
    formula: Optional[str] = None,
    K: int = 2,
    method: str = "loglinear"
) -> KCMeansResult:
    """
    K-Conditional-Means estimator on a Polars DataFrame.

    Parameters
    ----------
    data : str, polars.DataFrame or polars.LazyFrame
        Input data: DataFrame, LazyFrame or path to a Parquet file
    y_col : str, optional
        Outcome column name (optional if formula provided)
    x_cols : list of str, optional
        Continuous covariate column names
    cat_col : str, optional
        Categorical predictor column name (optional if formula provided)
    formula : str, optional
        R-style formula: "y ~ x1 + x2 | z", or "y ~ 1 | z" without covariates
    K : int, default 2
        Number of support points of the categorical predictor
    method : {"loglinear", "quadratic"}, default "loglinear"
        Dynamic programming variant used for the clustering

    Returns
    -------
    KCMeansResult
        Fitted model; its ``predict`` accepts DataFrames with the same columns
    """
    y_col, x_cols, cat_col = resolve_columns(y_col, x_cols, cat_col, formula)
    df = _load_frame(data, [y_col, cat_col] + x_cols)
    y, z, covariates = frame_arrays(df, y_col, x_cols, cat_col)

    return fit_arrays(
        y, z, covariates, K,
        summarize_levels=summarize_levels_polars,
        method=method,
        which_is_cat=0,
        y_col=y_col,
        x_cols=x_cols,
        cat_col=cat_col
    )
