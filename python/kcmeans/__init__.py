"""kcmeans: K-Conditional-Means estimation of a categorical predictor using Polars and DuckDB."""

import logging

from .kcmeans import kcmeans, predict
from .polars_impl import kcmeans_polars, summarize_levels_polars
from .duckdb_impl import kcmeans_duckdb, summarize_levels_duckdb
from .partition import weighted_partition, PartitionResult
from .common import ginv_ols, residualize, parse_formula
from .result import KCMeansResult, UNASSIGNED_CLUSTER
from .errors import KCMeansError, InvalidArgumentError, SingularDesignError
from ._config import get_backend, set_backend

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    "kcmeans",
    "predict",
    "kcmeans_polars",
    "kcmeans_duckdb",
    "summarize_levels_polars",
    "summarize_levels_duckdb",
    "weighted_partition",
    "PartitionResult",
    "ginv_ols",
    "residualize",
    "parse_formula",
    "KCMeansResult",
    "UNASSIGNED_CLUSTER",
    "KCMeansError",
    "InvalidArgumentError",
    "SingularDesignError",
    "get_backend",
    "set_backend",
]
