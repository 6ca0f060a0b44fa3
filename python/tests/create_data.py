import numpy as np
import polars as pl


def generate_kcmeans_data(
    n_obs: int = 800,
    n_levels: int = 20,
    n_groups: int = 4,
    slope: float = 1.0,
    sigma_e: float = 1.0,
    seed: int = 42
) -> pl.DataFrame:
    """
    Simulate an outcome driven by a coarse grouping of a categorical predictor.

    Mechanics:
    1. z is uniform over 1..n_levels.
    2. The latent group is z0 = z mod n_groups, so several levels share one
       conditional mean.
    3. y = z0 + slope * x + e with x, e ~ N(0, 1) and N(0, sigma_e^2).
    """
    rng = np.random.default_rng(seed)
    z = rng.integers(1, n_levels + 1, n_obs)
    x = rng.normal(0.0, 1.0, n_obs)
    z0 = z % n_groups
    y = z0 + slope * x + rng.normal(0.0, sigma_e, n_obs)
    return pl.DataFrame({
        "y": y,
        "z": z,
        "x": x,
        "z0": z0,
    })


def brute_force_withinss(x: np.ndarray, w: np.ndarray, K: int) -> float:
    """Smallest weighted SSQ over every contiguous partition of sorted x into at most K groups."""
    from itertools import combinations

    order = np.argsort(x, kind="stable")
    xs, ws = x[order], w[order]
    n = len(xs)
    best = np.inf
    for k in range(1, min(K, n) + 1):
        for cuts in combinations(range(1, n), k - 1):
            bounds = (0,) + cuts + (n,)
            total = 0.0
            for lo, hi in zip(bounds[:-1], bounds[1:]):
                xg, wg = xs[lo:hi], ws[lo:hi]
                sw = wg.sum()
                if sw > 0:
                    m = (wg * xg).sum() / sw
                    total += (wg * (xg - m) ** 2).sum()
            best = min(best, total)
    return best
