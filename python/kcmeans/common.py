"""
Common utilities shared between the Polars and DuckDB backends.

Contains input validation, formula parsing, the generalized-inverse least
squares used to residualize the outcome, and the estimation pipeline.
"""

import logging
import re
import numpy as np
import polars as pl
from typing import Callable, NamedTuple
from scipy import sparse

from .errors import InvalidArgumentError, SingularDesignError
from .partition import METHODS, check_K, weighted_partition
from .result import KCMeansResult, build_result

logger = logging.getLogger(__name__)


class FormulaComponents(NamedTuple):
    y_col: str
    x_cols: list[str]
    cat_col: str


def parse_formula(formula: str) -> FormulaComponents:
    """
    Parse R-style formula into components.

    Supports:
    - With covariates: 'y ~ x1 + x2 | z'
    - Without covariates: 'y ~ 1 | z' or 'y ~ | z'

    The single term after the bar is the categorical predictor.

    Parameters
    ----------
    formula : str
        R-style formula string

    Returns
    -------
    FormulaComponents
        (y_col, x_cols, cat_col)
    """
    parts = formula.split('|')
    if len(parts) != 2:
        raise InvalidArgumentError(
            "Formula must name exactly one categorical predictor: 'y ~ x1 + x2 | z'"
        )

    lhs_rhs = parts[0].split('~')
    if len(lhs_rhs) != 2:
        raise InvalidArgumentError("Formula must have exactly one '~' separating y and x variables")

    y_col = lhs_rhs[0].strip()
    if not y_col:
        raise InvalidArgumentError(f"Formula has no outcome variable: {formula}")

    x_cols = []
    for term in lhs_rhs[1].split('+'):
        term = term.strip()
        if term in ("", "1", "0"):
            continue
        if not re.fullmatch(r'\w+', term):
            raise InvalidArgumentError(f"Invalid covariate term: {term}")
        x_cols.append(term)

    cat_terms = [c.strip() for c in parts[1].split('+') if c.strip()]
    if len(cat_terms) != 1:
        raise InvalidArgumentError(
            f"Exactly one categorical predictor expected after '|', got {cat_terms}"
        )

    return FormulaComponents(y_col, x_cols, cat_terms[0])


def split_design(
    X: np.ndarray,
    which_is_cat: int,
    n_obs: int | None = None
) -> tuple[np.ndarray, np.ndarray | None]:
    """
    Split a predictor matrix into the categorical column and the covariates.

    A one-dimensional ``X`` (or a single-column matrix) is the categorical
    predictor alone and yields ``None`` covariates.

    Returns
    -------
    tuple
        (z, covariates) where covariates is (n, p) or None
    """
    X = np.asarray(X)
    if X.ndim == 1:
        X = X[:, np.newaxis]
    if X.ndim != 2:
        raise InvalidArgumentError(f"X must be a vector or a matrix, got {X.ndim} dimensions")
    if X.shape[0] == 0:
        raise InvalidArgumentError("X has no rows")
    if n_obs is not None and X.shape[0] != n_obs:
        raise InvalidArgumentError(
            f"X has {X.shape[0]} rows but y has {n_obs} observations"
        )

    n_cols = X.shape[1]
    if isinstance(which_is_cat, bool) or not isinstance(which_is_cat, (int, np.integer)):
        raise InvalidArgumentError(f"which_is_cat must be an integer, got {which_is_cat!r}")
    if not -n_cols <= which_is_cat < n_cols:
        raise InvalidArgumentError(
            f"which_is_cat={which_is_cat} is out of range for X with {n_cols} columns"
        )

    z = X[:, which_is_cat]
    if n_cols == 1:
        return z, None

    covariates = np.delete(X, which_is_cat, axis=1)
    try:
        covariates = covariates.astype(float)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"Covariates must be numeric: {exc}") from exc
    return z, covariates


def check_outcome(y) -> np.ndarray:
    """Return ``y`` as a finite float vector."""
    try:
        y = np.asarray(y, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"y must be numeric: {exc}") from exc
    if y.ndim == 2 and y.shape[1] == 1:
        y = y.ravel()
    if y.ndim != 1:
        raise InvalidArgumentError(f"y must be a vector, got shape {y.shape}")
    if y.size == 0:
        raise InvalidArgumentError("y is empty")
    if not np.all(np.isfinite(y)):
        raise InvalidArgumentError("y contains missing or non-finite values")
    return y


def check_labels(z: np.ndarray) -> np.ndarray:
    """Reject missing category labels."""
    z = np.asarray(z)
    if z.dtype.kind == 'f':
        missing = np.isnan(z)
    elif z.dtype.kind == 'O':
        missing = np.array([v is None or (isinstance(v, float) and np.isnan(v)) for v in z])
    else:
        missing = np.zeros(z.shape, dtype=bool)
    if missing.any():
        raise InvalidArgumentError(
            f"Categorical predictor has {int(missing.sum())} missing values"
        )
    return z


def one_hot(z: np.ndarray) -> tuple[sparse.csr_matrix, np.ndarray]:
    """
    Build the full (no reference category) indicator matrix of ``z``.

    Returns
    -------
    tuple
        (Z_mat, levels) with Z_mat of shape (n, n_levels), columns ordered as levels
    """
    levels, level_map = np.unique(z, return_inverse=True)
    n_obs = len(z)
    Z_mat = sparse.csr_matrix(
        (np.ones(n_obs), (np.arange(n_obs), level_map.ravel())),
        shape=(n_obs, len(levels))
    )
    return Z_mat, levels


def ginv_ols(y: np.ndarray, X) -> np.ndarray:
    """
    Least squares with a generalized inverse.

    Returns the minimum-norm solution ``pinv(X) y``, computed from the
    normal equations ``X'X b = X'y`` so that only the (k x k) cross-product
    is ever dense. A sparse design with many indicator columns is never
    expanded to (n x k).

    The rank is decided on the column-equilibrated cross-product with a
    relative tolerance of sqrt(machine epsilon), so badly scaled covariates
    are not mistaken for collinear ones. Rank-deficient and collinear
    designs still give a coefficient for every column.

    Parameters
    ----------
    y : np.ndarray
        Response vector (n,)
    X : np.ndarray or scipy.sparse matrix
        Design matrix (n, k)

    Returns
    -------
    np.ndarray
        Coefficient vector (k,)
    """
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise SingularDesignError(f"Cannot solve least squares with design of shape {X.shape}")

    y = np.asarray(y, dtype=float)
    if sparse.issparse(X):
        X = sparse.csr_matrix(X, dtype=float)
        finite = np.all(np.isfinite(X.data))
    else:
        X = np.asarray(X, dtype=float)
        finite = np.all(np.isfinite(X))
    if not (finite and np.all(np.isfinite(y))):
        raise SingularDesignError("Design matrix contains non-finite values")

    # X'X is dense (k x k is small next to n x k)
    XtX = X.T @ X
    if sparse.issparse(XtX):
        XtX = XtX.toarray()
    Xty = np.asarray(X.T @ y, dtype=float).ravel()

    n_cols = XtX.shape[0]
    scale = np.sqrt(np.diag(XtX))
    scale[scale == 0] = 1.0
    try:
        scaled_evals = np.linalg.eigvalsh(XtX / np.outer(scale, scale))
        rank = int(np.sum(scaled_evals > np.sqrt(np.finfo(float).eps) * scaled_evals[-1]))
        evals, evecs = np.linalg.eigh(XtX)
    except np.linalg.LinAlgError as exc:
        raise SingularDesignError(f"Generalized inverse failed: {exc}") from exc

    if rank == 0:
        beta = np.zeros(n_cols)
    else:
        # eigh sorts ascending; the null space is spanned by the smallest ones
        V = evecs[:, n_cols - rank:]
        beta = V @ ((V.T @ Xty) / evals[n_cols - rank:])

    if not np.all(np.isfinite(beta)):
        raise SingularDesignError("Generalized inverse produced non-finite coefficients")
    if rank < n_cols:
        logger.debug("Design is rank deficient (rank %d < %d columns)", rank, n_cols)
    return beta


def residualize(
    y: np.ndarray,
    X: np.ndarray | None,
    z: np.ndarray
) -> tuple[np.ndarray, np.ndarray | None]:
    """
    Remove the linear contribution of the covariates from the outcome.

    The best linear projection of ``y`` on the covariates and a full set of
    category indicators is computed; only the covariate slopes are kept.
    The indicators absorb the intercept, so no constant is added.

    Parameters
    ----------
    y : np.ndarray
        Outcome (n,)
    X : np.ndarray or None
        Covariates (n, p); None or p = 0 means nothing to remove
    z : np.ndarray
        Category labels (n,)

    Returns
    -------
    tuple
        (y_tilde, pi) where pi is None when there are no covariates
    """
    if X is None or X.shape[1] == 0:
        return y, None

    if not np.all(np.isfinite(X)):
        raise InvalidArgumentError("Covariates contain missing or non-finite values")

    n_x = X.shape[1]
    Z_mat, levels = one_hot(z)
    design = sparse.hstack([sparse.csr_matrix(X), Z_mat], format="csr")
    coef = ginv_ols(y, design)
    pi = coef[:n_x]
    logger.debug(
        "Residualized outcome on %d covariates and %d category indicators", n_x, len(levels)
    )
    return y - X @ pi, pi


def label_series(z, name: str = "level") -> pl.Series:
    """Category labels as a Polars Series."""
    z = np.asarray(z)
    if z.dtype.kind == 'O':
        return pl.Series(name, z.tolist())
    return pl.Series(name, z)


def align_join_keys(levels: pl.Series, labels: pl.Series) -> pl.Series:
    """
    Cast new labels to the type of the fitted levels for joining.

    The join always runs on the fitted levels' own type, which holds each
    level exactly once, so every new label matches at most one level.

    - Integer levels with float labels: only integral labels can match
      (2.0 matches 2, 2.5 matches nothing).
    - Float levels with integer labels: labels are cast to float.
    - Numeric levels with string labels, or the reverse: no label matches,
      "2" is not the level 2.

    Labels that cannot be cast become null and are treated as unseen.
    """
    if labels.dtype == levels.dtype:
        return labels

    if levels.dtype.is_numeric() and labels.dtype.is_numeric():
        if levels.dtype.is_integer() and labels.dtype.is_float():
            col = pl.col(labels.name)
            labels = (
                pl.DataFrame([labels])
                .select(pl.when(col.is_finite() & (col == col.floor())).then(col))
                .to_series()
            )
        return labels.cast(levels.dtype, strict=False)

    if levels.dtype.is_numeric() or labels.dtype.is_numeric():
        return pl.Series(labels.name, [None] * len(labels), dtype=levels.dtype)

    return labels.cast(levels.dtype, strict=False)


def fit_arrays(
    y,
    z,
    covariates: np.ndarray | None,
    K: int,
    summarize_levels: Callable[[np.ndarray, np.ndarray], pl.DataFrame],
    method: str = "loglinear",
    which_is_cat: int = 0,
    y_col: str | None = None,
    x_cols: list[str] | None = None,
    cat_col: str | None = None
) -> KCMeansResult:
    """
    Run the estimation pipeline on arrays.

    1. Residualize y on the covariates (best linear projection with a full
       set of category indicators).
    2. Summarize the residualized outcome by category level.
    3. Cluster the level means into K ordered groups, weighting by share.
    4. Assemble the cluster map.

    ``summarize_levels`` is the backend-specific level summary.
    """
    K = check_K(K)
    if method not in METHODS:
        raise InvalidArgumentError(f"method must be one of {METHODS}, got '{method}'")
    y = check_outcome(y)
    z = check_labels(z)
    if len(z) != len(y):
        raise InvalidArgumentError(
            f"Categorical predictor has {len(z)} rows but y has {len(y)} observations"
        )
    if covariates is not None and covariates.shape[0] != len(y):
        raise InvalidArgumentError(
            f"Covariates have {covariates.shape[0]} rows but y has {len(y)} observations"
        )

    logger.debug(
        "Fitting kcmeans: n_obs=%d, n_covariates=%d, K=%d",
        len(y), 0 if covariates is None else covariates.shape[1], K
    )

    y_tilde, pi = residualize(y, covariates, z)
    levels = summarize_levels(y_tilde, z)
    logger.debug("Found %d category levels", levels.height)

    partition = weighted_partition(
        levels["mean"].to_numpy(),
        levels["share"].to_numpy(),
        K=K,
        method=method
    )

    return build_result(
        levels=levels,
        partition=partition,
        y_tilde=y_tilde,
        pi=pi,
        K=K,
        which_is_cat=which_is_cat,
        method=method,
        y_col=y_col,
        x_cols=x_cols,
        cat_col=cat_col
    )


def resolve_columns(
    y_col: str | None,
    x_cols: list[str] | None,
    cat_col: str | None,
    formula: str | None
) -> FormulaComponents:
    """Column names from a formula or from explicit arguments."""
    if formula is not None:
        return parse_formula(formula)
    if y_col is None or cat_col is None:
        raise InvalidArgumentError("Must provide either 'formula' or (y_col, cat_col)")
    return FormulaComponents(y_col, list(x_cols or []), cat_col)


def column_values(df: pl.DataFrame, name: str) -> np.ndarray:
    """Column as a numpy array; categorical columns come back as strings."""
    s = df[name]
    if isinstance(s.dtype, (pl.Categorical, pl.Enum)):
        s = s.cast(pl.String)
    return s.to_numpy()


def frame_arrays(
    df: pl.DataFrame,
    y_col: str,
    x_cols: list[str],
    cat_col: str
) -> tuple[np.ndarray, np.ndarray, np.ndarray | None]:
    """
    Extract outcome, categorical predictor and covariates from a DataFrame.

    Returns
    -------
    tuple
        (y, z, covariates) where covariates is None without x_cols
    """
    if df.height == 0:
        raise InvalidArgumentError("Data has no rows")
    y = column_values(df, y_col)
    z = column_values(df, cat_col)
    covariates = None
    if x_cols:
        try:
            covariates = df.select(x_cols).to_numpy().astype(float)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(f"Covariates must be numeric: {exc}") from exc
    return y, z, covariates


def check_columns(available: list[str], needed: list[str]) -> None:
    missing = [c for c in needed if c not in available]
    if missing:
        raise InvalidArgumentError(f"Columns not found in data: {missing}")
