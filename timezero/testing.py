"""Benjamini-Hochberg adjustment and CI reconstruction for adjusted p-values."""
from __future__ import annotations

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

Z_95 = 1.96


def z_for_level(level: float = 0.95) -> float:
    return float(stats.norm.ppf(0.5 + level / 2.0))


def bh_adjust(p_values, alpha: float = 0.05) -> np.ndarray:
    """BH-adjusted p-values; NaN inputs stay NaN and are left out of the family."""
    p = pd.to_numeric(pd.Series(p_values, dtype="float64"), errors="coerce").to_numpy(dtype=np.float64)
    out = np.full(p.shape, np.nan, dtype=np.float64)
    mask = np.isfinite(p)
    if int(mask.sum()) > 0:
        _, q, _, _ = multipletests(p[mask], alpha=alpha, method="fdr_bh")
        out[mask] = q
    return out


def sem_from_ci(ci_lower, ci_upper, z: float = Z_95) -> np.ndarray:
    """Standard error implied by a symmetric normal 95% interval."""
    lo = np.asarray(ci_lower, dtype=np.float64)
    hi = np.asarray(ci_upper, dtype=np.float64)
    return (hi - lo) / 2.0 / z


def adjusted_ci(mean, p_adjusted, level: float = 0.95):
    """Interval around ``mean`` whose implied two-sided p-value is ``p_adjusted``.

    The half-width is rebuilt as ``z_level * |mean| / z_adj`` with
    ``z_adj = Phi^-1(1 - p_adjusted / 2)``; ``p_adjusted == 1`` gives an
    unbounded interval.
    """
    mean = np.asarray(mean, dtype=np.float64)
    p_adj = np.clip(np.asarray(p_adjusted, dtype=np.float64), 0.0, 1.0)
    z_adj = stats.norm.isf(p_adj / 2.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        se_adj = np.where(z_adj > 0.0, np.abs(mean) / z_adj, np.inf)
    se_adj = np.where(np.isfinite(p_adj) & np.isfinite(mean), se_adj, np.nan)
    half = z_for_level(level) * se_adj
    return mean - half, mean + half
