"""Random-effects pooling of per-cohort correlations per symptom category.

Coefficients are first put on a common polarity (positive = later diagnosis).
Each category is then pooled across every (outcome, cohort) observation with an
inverse-variance random-effects model whose between-study variance is the REML
estimate, once for all cohorts ("overall") and once within each cohort.
BH adjustment is applied across categories inside each pooling group.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .config import PipelineConfig
from .registry import OutcomeRegistry
from .testing import adjusted_ci, bh_adjust, z_for_level

log = logging.getLogger(__name__)

OVERALL = "overall"
CONDITION_NUMBER_LIMIT = 1e12

TABLE_COLUMNS = [
    "Category",
    "Group",
    "Mean",
    "CI_Lower",
    "CI_Upper",
    "P_Value",
    "K",
    "N",
    "Tau2",
    "P_FDR",
    "CI_Lower_Adj",
    "CI_Upper_Adj",
    "Label",
]

ForestPlotter = Callable[[str, pd.DataFrame, pd.DataFrame], None]


@dataclass
class PooledEstimate:
    mean: float
    se: float
    ci_lower: float
    ci_upper: float
    p_value: float
    tau2: float
    k: int
    n: int


# ------------------------- REML between-study variance -------------------------

def _solve_weighted_normal_equations(XtWX: np.ndarray, XtWy: np.ndarray) -> Tuple[np.ndarray, float]:
    """Solve XtWX beta = XtWy while guarding against ill-conditioning."""
    cond = np.linalg.cond(XtWX)
    if not np.isfinite(cond) or cond > CONDITION_NUMBER_LIMIT:
        raise np.linalg.LinAlgError("XtWX is ill-conditioned")
    sign, logdet = np.linalg.slogdet(XtWX)
    if sign <= 0.0 or not math.isfinite(logdet):
        raise np.linalg.LinAlgError("XtWX is not positive definite")
    return np.linalg.solve(XtWX, XtWy), logdet


def reml_negloglik_tau2(tau2: float, y: np.ndarray, s2: np.ndarray, X: np.ndarray) -> float:
    if tau2 < 0.0:
        return 1e300
    v = s2 + tau2
    if np.any(v <= 0.0):
        return 1e300
    w = 1.0 / v
    XtW = X.T * w
    try:
        beta_hat, logdetXtWX = _solve_weighted_normal_equations(XtW @ X, XtW @ y)
    except np.linalg.LinAlgError:
        return 1e300
    resid = y - X @ beta_hat
    sse = float(np.sum(w * resid * resid))
    return 0.5 * (float(np.sum(np.log(v))) + sse + logdetXtWX)


def estimate_tau2_reml(y: np.ndarray, s2: np.ndarray, max_iter: int = 80, tol: float = 1e-6) -> float:
    """Golden-section search for the REML tau^2 of an intercept-only model."""
    y = np.asarray(y, dtype=np.float64)
    s2 = np.asarray(s2, dtype=np.float64)
    if y.size < 2:
        return 0.0
    X = np.ones((y.size, 1), dtype=np.float64)
    base_upper = max(1e-8, float(np.var(y)) + float(np.mean(s2)) * 10.0)

    def golden_section_search(upper: float) -> Tuple[float, bool]:
        a, b = 0.0, upper
        invphi = 0.6180339887498949
        c = b - invphi * (b - a)
        d = a + invphi * (b - a)
        fc = reml_negloglik_tau2(c, y, s2, X)
        fd = reml_negloglik_tau2(d, y, s2, X)
        for _ in range(max_iter):
            if abs(b - a) < tol * (1.0 + a + b):
                break
            if fc < fd:
                b, d, fd = d, c, fc
                c = b - invphi * (b - a)
                fc = reml_negloglik_tau2(c, y, s2, X)
            else:
                a, c, fc = c, d, fd
                d = a + invphi * (b - a)
                fd = reml_negloglik_tau2(d, y, s2, X)
        est = max(0.0, (a + b) * 0.5)
        return est, est >= 0.95 * upper

    upper = base_upper
    tau2 = 0.0
    for _ in range(6):
        tau2, hits_upper = golden_section_search(upper)
        if not hits_upper:
            break
        upper *= 4.0
    # the search never lands exactly on the boundary; compare against tau2 = 0
    if reml_negloglik_tau2(0.0, y, s2, X) <= reml_negloglik_tau2(tau2, y, s2, X):
        tau2 = 0.0
    return float(tau2) if math.isfinite(tau2) else 0.0


def pool_random_effects(y, se, n=None, level: float = 0.95) -> PooledEstimate:
    y = np.asarray(y, dtype=np.float64)
    se = np.asarray(se, dtype=np.float64)
    if y.size == 0:
        raise ValueError("cannot pool an empty set of estimates")
    s2 = se * se
    tau2 = estimate_tau2_reml(y, s2)
    w = 1.0 / (s2 + tau2)
    mean = float(np.sum(w * y) / np.sum(w))
    pooled_se = float(math.sqrt(1.0 / np.sum(w)))
    z = z_for_level(level)
    p = float(2.0 * stats.norm.sf(abs(mean) / pooled_se)) if pooled_se > 0 else float("nan")
    return PooledEstimate(
        mean=mean,
        se=pooled_se,
        ci_lower=mean - z * pooled_se,
        ci_upper=mean + z * pooled_se,
        p_value=p,
        tau2=float(tau2),
        k=int(y.size),
        n=int(np.sum(n)) if n is not None else 0,
    )


# ------------------------- inputs -------------------------

def normalize_polarity(correlations: pd.DataFrame, registry: OutcomeRegistry) -> pd.DataFrame:
    """Flip inverted outcomes so a positive coefficient always means later diagnosis."""
    out = correlations.copy()
    invert = out["Outcome"].map(lambda o: registry[o].invert if o in registry else False).astype(bool)
    lo = out["CI_Lower"].astype(np.float64)
    hi = out["CI_Upper"].astype(np.float64)
    out["Coef"] = np.where(invert, -out["Coef"].astype(np.float64), out["Coef"].astype(np.float64))
    out["CI_Lower"] = np.where(invert, -hi, lo)
    out["CI_Upper"] = np.where(invert, -lo, hi)
    out["Inverted"] = invert.to_numpy()
    return out


def meta_inputs(correlations: pd.DataFrame, registry: OutcomeRegistry) -> pd.DataFrame:
    """Per-observation mean, spread and SE in the form the pooling expects.

    The SEM is widened to an effective SD (``SEM * sqrt(n)``) and the pooled
    standard error is recovered as ``SD / sqrt(n)``.
    """
    df = normalize_polarity(correlations, registry)
    df = df.loc[df["Outcome"].isin(registry.outcomes)].copy()
    df["Category"] = df["Outcome"].map(registry.category_for)
    n = df["N"].astype(np.float64)
    df["SD"] = df["SEM"].astype(np.float64) * np.sqrt(n)
    df["SE"] = df["SD"] / np.sqrt(n)
    usable = np.isfinite(df["Coef"]) & np.isfinite(df["SE"]) & (df["SE"] > 0.0) & (n > 0)
    dropped = int((~usable).sum())
    if dropped:
        log.warning("[meta] dropping %d observations without a usable standard error", dropped)
    return df.loc[usable].reset_index(drop=True)


# ------------------------- analysis -------------------------

def _pooled_row(category: str, group: str, est: PooledEstimate, label: str) -> dict:
    return {
        "Category": category,
        "Group": group,
        "Mean": est.mean,
        "CI_Lower": est.ci_lower,
        "CI_Upper": est.ci_upper,
        "P_Value": est.p_value,
        "K": est.k,
        "N": est.n,
        "Tau2": est.tau2,
        "Label": label,
    }


def adjust_within_groups(pooled: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """BH across categories separately inside "overall" and inside each cohort."""
    out = pooled.copy()
    out["P_FDR"] = np.nan
    for _, idx in out.groupby("Group", sort=False).groups.items():
        out.loc[idx, "P_FDR"] = bh_adjust(out.loc[idx, "P_Value"], alpha=float(config.fdr_alpha))
    lo, hi = adjusted_ci(out["Mean"], out["P_FDR"], level=float(config.confidence_level))
    out["CI_Lower_Adj"] = lo
    out["CI_Upper_Adj"] = hi
    return out


class MetaAnalyzer:
    def __init__(
        self,
        registry: OutcomeRegistry,
        config: PipelineConfig,
        forest_plotter: Optional[ForestPlotter] = None,
    ):
        self.registry = registry
        self.config = config
        self.forest_plotter = forest_plotter

    def pool_category(self, category: str, studies: pd.DataFrame) -> List[dict]:
        level = float(self.config.confidence_level)
        rows = [
            _pooled_row(
                category,
                OVERALL,
                pool_random_effects(studies["Coef"], studies["SE"], studies["N"], level),
                category,
            )
        ]
        for cohort, sub in studies.groupby("Cohort", sort=True):
            est = pool_random_effects(sub["Coef"], sub["SE"], sub["N"], level)
            rows.append(_pooled_row(category, str(cohort), est, category))
        return rows

    def run(self, correlations: pd.DataFrame) -> pd.DataFrame:
        inputs = meta_inputs(correlations, self.registry)
        rows: List[dict] = []
        for category, studies in inputs.groupby("Category", sort=True):
            category_rows = self.pool_category(str(category), studies)
            rows.extend(category_rows)
            log.info(
                "[meta] category=%s k=%d cohorts=%d overall=%.4f",
                category,
                len(studies),
                studies["Cohort"].nunique(),
                category_rows[0]["Mean"],
            )
            if self.forest_plotter is not None:
                self.forest_plotter(str(category), studies, pd.DataFrame(category_rows))
        if not rows:
            return pd.DataFrame(columns=TABLE_COLUMNS)
        return adjust_within_groups(pd.DataFrame(rows), self.config)[TABLE_COLUMNS]
