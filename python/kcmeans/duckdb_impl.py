"""
DuckDB-based kcmeans implementation.

Level summaries and cluster-map lookups are SQL GROUP BY / LEFT JOIN
queries. Useful when the data already lives in DuckDB or a Parquet file.
"""

import duckdb
import logging
import numpy as np
import polars as pl
import uuid
from functools import partial

from .common import (
    align_join_keys,
    check_columns,
    fit_arrays,
    label_series,
    resolve_columns
)
from .errors import InvalidArgumentError, KCMeansError
from .result import KCMeansResult

logger = logging.getLogger(__name__)


def _mk_tmp(name: str) -> str:
    return f"kcmeans_{name}_{uuid.uuid4().hex[:8]}"


def _fetch_column(result: dict, name: str) -> np.ndarray:
    """Column of a fetchnumpy() result; NULLs come back masked and are rejected."""
    values = result[name]
    if np.ma.is_masked(values):
        raise InvalidArgumentError(f"Column '{name}' contains missing values")
    return np.ma.getdata(values)


def summarize_levels_duckdb(
    y_tilde: np.ndarray,
    z: np.ndarray,
    con: duckdb.DuckDBPyConnection | None = None
) -> pl.DataFrame:
    """
    Mean of the residualized outcome and sample share of every category level.

    Same output as :func:`kcmeans.polars_impl.summarize_levels_polars`,
    computed with a SQL GROUP BY.
    """
    own_con = con is None
    if own_con:
        con = duckdb.connect()
    src = _mk_tmp("levels")
    n_obs = len(y_tilde)
    try:
        con.register(src, pl.DataFrame([
            label_series(z, "level"),
            pl.Series("y", np.asarray(y_tilde, dtype=float)),
        ]))
        query = f"""
        SELECT
            level,
            AVG(y) AS mean,
            COUNT(*)::DOUBLE / {n_obs} AS share
        FROM "{src}"
        GROUP BY level
        ORDER BY level
        """
        # Use fetchnumpy() to avoid pandas dependency
        result = con.execute(query).fetchnumpy()
    finally:
        con.unregister(src)
        if own_con:
            con.close()

    return pl.DataFrame([
        label_series(_fetch_column(result, "level"), "level"),
        pl.Series("mean", _fetch_column(result, "mean"), dtype=pl.Float64),
        pl.Series("share", _fetch_column(result, "share"), dtype=pl.Float64),
    ])


def lookup_duckdb(
    cluster_map: pl.DataFrame,
    z: np.ndarray,
    column: str,
    default: int | float,
    con: duckdb.DuckDBPyConnection | None = None
) -> np.ndarray:
    """
    Look up ``column`` of the cluster map for each label in ``z``.

    Labels absent from the cluster map get ``default``. The result is in the
    order of ``z``.
    """
    labels = align_join_keys(cluster_map["level"], label_series(z, "level"))
    own_con = con is None
    if own_con:
        con = duckdb.connect()
    rows_name = _mk_tmp("rows")
    map_name = _mk_tmp("map")
    try:
        con.register(rows_name, pl.DataFrame([labels]).with_row_index("_row"))
        con.register(map_name, cluster_map.select("level", column))
        query = f"""
        SELECT COALESCE(m."{column}", ?) AS value
        FROM "{rows_name}" r
        LEFT JOIN "{map_name}" m ON r.level = m.level
        ORDER BY r._row
        """
        result = con.execute(query, [default]).fetchnumpy()
    finally:
        con.unregister(rows_name)
        con.unregister(map_name)
        if own_con:
            con.close()
    values = _fetch_column(result, "value")
    if len(values) != len(labels):
        raise KCMeansError(
            f"Cluster-map lookup returned {len(values)} rows for {len(labels)} labels"
        )
    return values


def kcmeans_duckdb(
    data: str | pl.DataFrame | pl.LazyFrame,
    y_col: str | None = None,
    x_cols: list[str] | None = None,
    cat_col: str | None = None,
    formula: str | None = None,
    K: int = 2,
    method: str = "loglinear",
    con: duckdb.DuckDBPyConnection | None = None
) -> KCMeansResult:
    """
    K-Conditional-Means estimator with DuckDB level summaries.

    Parameters are as for :func:`kcmeans.polars_impl.kcmeans_polars`, plus
    an optional ``con``; a private in-memory connection is used (and closed)
    when none is given. A Parquet path is read with DuckDB's read_parquet.
    """
    y_col, x_cols, cat_col = resolve_columns(y_col, x_cols, cat_col, formula)
    needed_cols = [y_col, cat_col] + x_cols

    own_con = con is None
    if own_con:
        con = duckdb.connect()

    tmp_table = _mk_tmp("data")
    src_name = None
    try:
        col_list = ', '.join([f'"{c}"' for c in needed_cols])
        if isinstance(data, str):
            path = data.replace("'", "''")
            con.execute(
                f"CREATE TEMPORARY TABLE \"{tmp_table}\" AS "
                f"SELECT {col_list} FROM read_parquet('{path}')"
            )
        elif isinstance(data, (pl.DataFrame, pl.LazyFrame)):
            df = data.collect() if isinstance(data, pl.LazyFrame) else data
            check_columns(df.columns, needed_cols)
            df = df.select(needed_cols)
            df = df.with_columns([
                pl.col(c).cast(pl.String) for c in needed_cols
                if isinstance(df.schema[c], (pl.Categorical, pl.Enum))
            ])
            src_name = _mk_tmp("src")
            con.register(src_name, df)
            con.execute(f'CREATE TEMPORARY TABLE "{tmp_table}" AS SELECT * FROM "{src_name}"')
        else:
            raise InvalidArgumentError(
                f"data must be a Parquet path, polars.DataFrame or polars.LazyFrame, got {type(data).__name__}"
            )

        result = con.execute(f'SELECT {col_list} FROM "{tmp_table}"').fetchnumpy()
        y = _fetch_column(result, y_col)
        if len(y) == 0:
            raise InvalidArgumentError("Data has no rows")
        z = _fetch_column(result, cat_col)
        covariates = None
        if x_cols:
            covariates = np.column_stack(
                [_fetch_column(result, c) for c in x_cols]
            ).astype(float)

        logger.debug("Loaded %d rows into DuckDB table %s", len(y), tmp_table)

        return fit_arrays(
            y, z, covariates, K,
            summarize_levels=partial(summarize_levels_duckdb, con=con),
            method=method,
            which_is_cat=0,
            y_col=y_col,
            x_cols=x_cols,
            cat_col=cat_col
        )
    finally:
        con.execute(f'DROP TABLE IF EXISTS "{tmp_table}"')
        if src_name is not None:
            con.unregister(src_name)
        if own_con:
            con.close()
