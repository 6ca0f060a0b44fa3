"""
Result class for kcmeans fits.

Holds the cluster map and everything needed to predict on new data.
"""

import numpy as np
import polars as pl
from dataclasses import dataclass

# Cluster id reported for categories never seen during fitting. Fitted
# cluster ids are 1..K, so 0 is never a real cluster.
UNASSIGNED_CLUSTER = 0

CLUSTER_MAP_COLUMNS = ("level", "mean", "share", "cluster", "cluster_mean")


@dataclass(frozen=True, eq=False)
class KCMeansResult:
    """
    Fitted K-Conditional-Means estimator.

    Immutable once built; prediction never changes it, so a single fit can be
    shared between threads.

    Attributes
    ----------
    cluster_map : polars.DataFrame
        One row per category level seen in fitting, sorted by level:
        - level: value of the categorical predictor
        - mean: sample mean of the residualized outcome for that level
        - share: sample share of the level
        - cluster: estimated cluster id in 1..n_clusters
        - cluster_mean: share-weighted mean of ``mean`` over the cluster
    mean_y : float
        Unconditional sample mean of the residualized outcome, used for
        category levels not seen in fitting.
    pi : np.ndarray or None
        Best linear prediction coefficients of the covariates (read-only),
        None when the model has no covariates.
    which_is_cat : int
        Column position of the categorical predictor in ``X``.
    K : int
        Number of support points requested.
    n_clusters : int
        Number of clusters estimated; smaller than K when there are fewer
        distinct level means than K.
    n_obs : int
        Number of observations used.
    tot_withinss : float
        Share-weighted within-cluster sum of squares of the level means.
    method : str
        Partitioning method used.
    y_col, x_cols, cat_col : str, tuple of str, str or None
        Column names when fitted from a DataFrame.
    """

    cluster_map: pl.DataFrame
    mean_y: float
    pi: np.ndarray | None
    which_is_cat: int
    K: int
    n_clusters: int
    n_obs: int
    tot_withinss: float
    method: str = "loglinear"
    y_col: str | None = None
    x_cols: tuple[str, ...] | None = None
    cat_col: str | None = None

    @property
    def n_levels(self) -> int:
        """Number of distinct category levels seen in fitting."""
        return self.cluster_map.height

    @property
    def support_points(self) -> np.ndarray:
        """Cluster means ordered by cluster id."""
        centers = (
            self.cluster_map
            .group_by("cluster")
            .agg(pl.col("cluster_mean").first())
            .sort("cluster")
        )
        return centers["cluster_mean"].to_numpy()

    def coef(self, var: str | None = None):
        """Covariate coefficients as a dict, or one of them if var is given."""
        if self.pi is None:
            coefs = {}
        else:
            names = self.x_cols or [f"x{i}" for i in range(len(self.pi))]
            coefs = dict(zip(names, self.pi.tolist()))
        if var is None:
            return coefs
        return coefs.get(var)

    def predict(self, newdata, clusters: bool = False, backend: str | None = None) -> np.ndarray:
        """Predict on new data. See :func:`kcmeans.predict`."""
        from .kcmeans import predict
        return predict(self, newdata, clusters=clusters, backend=backend)

    def __repr__(self) -> str:
        n_cov = 0 if self.pi is None else len(self.pi)
        return (
            f"KCMeansResult(n_obs={self.n_obs:,}, n_levels={self.n_levels}, "
            f"K={self.K}, n_clusters={self.n_clusters}, n_covariates={n_cov})"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'cluster_map': self.cluster_map,
            'mean_y': self.mean_y,
            'pi': self.pi,
            'which_is_cat': self.which_is_cat,
            'K': self.K,
            'n_clusters': self.n_clusters,
            'n_obs': self.n_obs,
            'tot_withinss': self.tot_withinss,
            'method': self.method,
        }


def build_result(
    levels: pl.DataFrame,
    partition,
    y_tilde: np.ndarray,
    pi: np.ndarray | None,
    K: int,
    which_is_cat: int,
    method: str,
    y_col: str | None = None,
    x_cols: list[str] | None = None,
    cat_col: str | None = None
) -> KCMeansResult:
    """
    Build KCMeansResult object.

    Row i of ``levels`` is the point i that was passed to the partitioner,
    so the cluster assignment is attached positionally.

    Parameters
    ----------
    levels : polars.DataFrame
        Level summaries with columns level, mean, share
    partition : PartitionResult
        Output of :func:`kcmeans.partition.weighted_partition` on
        ``levels["mean"]`` weighted by ``levels["share"]``
    y_tilde : np.ndarray
        Residualized outcome

    Returns
    -------
    KCMeansResult
    """
    if len(partition.cluster) != levels.height:
        raise ValueError(
            f"Partition has {len(partition.cluster)} points for {levels.height} levels"
        )

    cluster = np.asarray(partition.cluster, dtype=np.int64)
    cluster_map = levels.with_columns(
        pl.Series("cluster", cluster, dtype=pl.Int64),
        pl.Series("cluster_mean", partition.centers[cluster - 1], dtype=pl.Float64),
    ).select(list(CLUSTER_MAP_COLUMNS))

    if pi is not None:
        pi = np.array(pi, dtype=float)
        pi.setflags(write=False)

    return KCMeansResult(
        cluster_map=cluster_map,
        mean_y=float(np.mean(y_tilde)),
        pi=pi,
        which_is_cat=int(which_is_cat),
        K=int(K),
        n_clusters=int(partition.k),
        n_obs=int(len(y_tilde)),
        tot_withinss=float(partition.tot_withinss),
        method=method,
        y_col=y_col,
        x_cols=tuple(x_cols) if x_cols is not None else None,
        cat_col=cat_col,
    )
