"""
Optimal weighted k-means clustering in one dimension.

Points are sorted by value and split into K contiguous groups so that the
total weighted within-group sum of squares is globally minimal. Follows
Wang and Song (2011), "Ckmeans.1d.dp: optimal k-means clustering in one
dimension by dynamic programming", The R Journal 3(2).

Recurrence over the sorted points (0-based, inclusive ranges):

    D[0, j] = SSQ(0, j)
    D[k, j] = min_{k <= s <= j} D[k-1, s-1] + SSQ(s, j)

SSQ is answered in O(1) from prefix sums of w, w*x and w*x^2. Two methods
fill the table:

- "quadratic": scan every split point, O(K n^2).
- "loglinear": divide and conquer over j, O(K n log n). The weighted SSQ
  satisfies the quadrangle inequality, so the leftmost optimal split point
  is non-decreasing in j and each scan can be restricted.

Both take the leftmost minimizing split point, so results are reproducible.
"""

import logging
import warnings
import numpy as np
from typing import NamedTuple

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)

METHODS = ("loglinear", "quadratic")


def check_K(K) -> int:
    """Validate the number of clusters."""
    if isinstance(K, bool) or not isinstance(K, (int, np.integer)):
        raise InvalidArgumentError(f"K must be an integer, got {K!r}")
    if K < 1:
        raise InvalidArgumentError(f"K must be at least 1, got {K}")
    return int(K)


class PartitionResult(NamedTuple):
    cluster: np.ndarray       # cluster id in 1..k for each input point, input order
    centers: np.ndarray       # weighted mean of each cluster (k,)
    withinss: np.ndarray      # weighted within-cluster sum of squares (k,)
    size: np.ndarray          # number of points in each cluster (k,)
    tot_withinss: float
    k: int


class _PrefixSums:
    """O(1) weighted sum of squares for any range of sorted points."""

    def __init__(self, x: np.ndarray, w: np.ndarray):
        # Shift by the median for numerical stability of sum(w*x^2) - sum(w*x)^2/sum(w)
        self.shift = float(np.median(x))
        xs = x - self.shift
        self.cw = np.concatenate(([0.0], np.cumsum(w)))
        self.cwx = np.concatenate(([0.0], np.cumsum(w * xs)))
        self.cwx2 = np.concatenate(([0.0], np.cumsum(w * xs * xs)))

    def ssq(self, s, j):
        """Weighted SSQ of points s..j; either argument may be an array."""
        sw = self.cw[j + 1] - self.cw[s]
        swx = self.cwx[j + 1] - self.cwx[s]
        swx2 = self.cwx2[j + 1] - self.cwx2[s]
        with np.errstate(divide="ignore", invalid="ignore"):
            sse = np.where(sw > 0, swx2 - swx * swx / sw, 0.0)
        return np.maximum(sse, 0.0)


def _fill_row_quadratic(k: int, D: np.ndarray, B: np.ndarray, sums: _PrefixSums) -> None:
    n = D.shape[1]
    for j in range(k, n):
        s = np.arange(k, j + 1)
        cost = D[k - 1, s - 1] + sums.ssq(s, j)
        i = int(np.argmin(cost))
        D[k, j] = cost[i]
        B[k, j] = s[i]


def _fill_row_loglinear(k: int, D: np.ndarray, B: np.ndarray, sums: _PrefixSums) -> None:
    n = D.shape[1]
    stack = [(k, n - 1, k, n - 1)]
    while stack:
        j_lo, j_hi, s_lo, s_hi = stack.pop()
        if j_lo > j_hi:
            continue
        mid = (j_lo + j_hi) // 2
        s = np.arange(s_lo, min(mid, s_hi) + 1)
        cost = D[k - 1, s - 1] + sums.ssq(s, mid)
        i = int(np.argmin(cost))
        best = int(s[i])
        D[k, mid] = cost[i]
        B[k, mid] = best
        stack.append((j_lo, mid - 1, s_lo, best))
        stack.append((mid + 1, j_hi, best, s_hi))


def _check_points(means, weights) -> tuple[np.ndarray, np.ndarray]:
    try:
        x = np.asarray(means, dtype=float).ravel()
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"means must be numeric: {exc}") from exc
    if x.size == 0:
        raise InvalidArgumentError("Cannot partition an empty set of points")
    if not np.all(np.isfinite(x)):
        raise InvalidArgumentError("means contain missing or non-finite values")

    if weights is None:
        return x, np.ones_like(x)

    try:
        w = np.asarray(weights, dtype=float).ravel()
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"weights must be numeric: {exc}") from exc
    if w.shape != x.shape:
        raise InvalidArgumentError(
            f"Got {w.size} weights for {x.size} points"
        )
    if not np.all(np.isfinite(w)):
        raise InvalidArgumentError("weights contain missing or non-finite values")
    if np.any(w < 0):
        raise InvalidArgumentError("weights must be non-negative")
    return x, w


def weighted_partition(
    means,
    weights=None,
    K: int = 2,
    method: str = "loglinear"
) -> PartitionResult:
    """
    Globally optimal weighted 1-D clustering into K ordered groups.

    Parameters
    ----------
    means : array-like
        Values to cluster (n,), in any order.
    weights : array-like, optional
        Non-negative weight of each value (n,). Defaults to equal weights.
    K : int, default 2
        Number of clusters. If K exceeds the number of distinct values it is
        reduced to that number and a UserWarning is emitted.
    method : {"loglinear", "quadratic"}, default "loglinear"
        Algorithm used to fill the dynamic programming table.

    Returns
    -------
    PartitionResult
        Cluster ids are 1..k and increase with the cluster center, so every
        cluster is an interval of the sorted values.
    """
    K = check_K(K)
    if method not in METHODS:
        raise InvalidArgumentError(f"method must be one of {METHODS}, got '{method}'")
    x, w = _check_points(means, weights)

    n_distinct = np.unique(x).size
    if K > n_distinct:
        warnings.warn(
            f"K={K} exceeds the number of distinct values ({n_distinct}); using K={n_distinct}",
            UserWarning,
            stacklevel=2,
        )
        K = n_distinct

    order = np.argsort(x, kind="stable")
    xs = x[order]
    ws = w[order]
    n = xs.size
    sums = _PrefixSums(xs, ws)

    D = np.full((K, n), np.inf)
    B = np.zeros((K, n), dtype=np.int64)
    D[0] = sums.ssq(0, np.arange(n))

    fill_row = _fill_row_loglinear if method == "loglinear" else _fill_row_quadratic
    for k in range(1, K):
        fill_row(k, D, B, sums)

    # Backtrack cluster boundaries
    cluster_sorted = np.empty(n, dtype=np.int64)
    centers = np.empty(K)
    withinss = np.empty(K)
    size = np.empty(K, dtype=np.int64)
    j = n - 1
    for k in range(K - 1, -1, -1):
        s = int(B[k, j]) if k > 0 else 0
        cluster_sorted[s:j + 1] = k + 1
        sw = sums.cw[j + 1] - sums.cw[s]
        if sw > 0:
            centers[k] = (sums.cwx[j + 1] - sums.cwx[s]) / sw + sums.shift
        else:
            centers[k] = xs[s:j + 1].mean()
        withinss[k] = float(sums.ssq(s, j))
        size[k] = j + 1 - s
        j = s - 1

    cluster = np.empty(n, dtype=np.int64)
    cluster[order] = cluster_sorted

    tot_withinss = float(D[K - 1, n - 1])
    logger.debug(
        "Partitioned %d points into %d clusters (method=%s, tot_withinss=%.6g)",
        n, K, method, tot_withinss
    )
    return PartitionResult(
        cluster=cluster,
        centers=centers,
        withinss=withinss,
        size=size,
        tot_withinss=tot_withinss,
        k=K,
    )
