"""Correlate time-zero predictions with diagnostic delay, one cohort at a time."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterable, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .config import PipelineConfig
from .models import PATIENT, DegenerateCorrelationError, fit_outcome, prepare_outcome_frame
from .predict import predict
from .registry import BINARY, LINEAR, ORDINAL, OutcomeSpec
from .testing import bh_adjust, sem_from_ci, z_for_level

# Fieller, Hartley & Pearson (1957) variance constant for atanh(Kendall tau).
KENDALL_FHP_VARIANCE = 0.437

TABLE_COLUMNS = [
    "Outcome",
    "Cohort",
    "Kind",
    "Method",
    "Coef",
    "P_Value",
    "CI_Lower",
    "CI_Upper",
    "N",
    "P_FDR",
    "SEM",
]


@dataclass
class CorrelationResult:
    outcome: str
    cohort: str
    kind: str
    method: str
    coef: float
    p_value: float
    ci_lower: float
    ci_upper: float
    n: int

    def as_row(self) -> dict:
        row = asdict(self)
        return {
            "Outcome": row["outcome"],
            "Cohort": row["cohort"],
            "Kind": row["kind"],
            "Method": row["method"],
            "Coef": row["coef"],
            "P_Value": row["p_value"],
            "CI_Lower": row["ci_lower"],
            "CI_Upper": row["ci_upper"],
            "N": row["n"],
        }


def pearson_with_ci(x, y, level: float = 0.95) -> Tuple[float, float, float, float]:
    """Pearson r, two-sided p and Fisher-z interval."""
    res = stats.pearsonr(x, y)
    ci = res.confidence_interval(confidence_level=level)
    return float(res.statistic), float(res.pvalue), float(ci.low), float(ci.high)


def kendall_with_ci(x, y, level: float = 0.95) -> Tuple[float, float, float, float]:
    """Kendall tau-b, two-sided p and a Fieller-Hartley-Pearson interval."""
    tau, p_value = stats.kendalltau(x, y)
    tau = float(tau)
    n = int(np.asarray(x).size)
    if n <= 4 or not np.isfinite(tau):
        return tau, float(p_value), float("nan"), float("nan")
    z = math.atanh(float(np.clip(tau, -0.999999, 0.999999)))
    half = z_for_level(level) * math.sqrt(KENDALL_FHP_VARIANCE / (n - 4))
    return tau, float(p_value), math.tanh(z - half), math.tanh(z + half)


CORRELATORS: Dict[str, Tuple[str, Callable[..., Tuple[float, float, float, float]]]] = {
    LINEAR: ("pearson", pearson_with_ci),
    BINARY: ("point_biserial", pearson_with_ci),
    ORDINAL: ("kendall", kendall_with_ci),
}


def baseline_delays(baseline: pd.DataFrame, config: PipelineConfig) -> pd.Series:
    """Diagnostic delay per patient; one baseline row per patient is required."""
    for col in (config.patient_col, config.delay_col):
        if col not in baseline.columns:
            raise KeyError(f"baseline table is missing required column {col!r}")
    ids = baseline[config.patient_col]
    if ids.duplicated().any():
        dups = ids[ids.duplicated()].astype(str).unique()[:5]
        raise ValueError(f"Duplicate {config.patient_col} in baseline table: {', '.join(dups)}")
    delays = pd.to_numeric(baseline[config.delay_col], errors="coerce")
    return pd.Series(delays.to_numpy(dtype=np.float64), index=pd.Index(ids, name=PATIENT), name="delay")


def correlate_predictions(
    predictions: pd.DataFrame,
    delays: pd.Series,
    spec: OutcomeSpec,
    cohort: str,
    config: PipelineConfig,
) -> CorrelationResult:
    joined = predictions.merge(delays.rename("delay"), left_on=PATIENT, right_index=True, how="inner")
    joined = joined.dropna(subset=["predicted", "delay"])
    if joined["predicted"].nunique() < 2:
        raise DegenerateCorrelationError(spec.outcome, cohort, "fewer than two distinct predicted values")
    if joined["delay"].nunique() < 2 or len(joined) < 3:
        raise DegenerateCorrelationError(spec.outcome, cohort, "diagnostic delay is constant or n < 3")

    method, fn = CORRELATORS[spec.kind]
    coef, p, lo, hi = fn(
        joined["delay"].to_numpy(dtype=np.float64),
        joined["predicted"].to_numpy(dtype=np.float64),
        float(config.confidence_level),
    )
    return CorrelationResult(
        outcome=spec.outcome,
        cohort=cohort,
        kind=spec.kind,
        method=method,
        coef=coef,
        p_value=p,
        ci_lower=lo,
        ci_upper=hi,
        n=int(len(joined)),
    )


def correlate_outcome(
    visits: pd.DataFrame,
    delays: pd.Series,
    spec: OutcomeSpec,
    cohort: str,
    config: PipelineConfig,
) -> CorrelationResult:
    """Fit on every record, predict at disease time 0 and correlate with delay."""
    frame = prepare_outcome_frame(visits, spec.outcome, config, cohort=cohort)
    model = fit_outcome(frame, spec, cohort, config)
    return correlate_predictions(predict(model, spec), delays, spec, cohort, config)


def finalize_cohort_table(results: Iterable[CorrelationResult], config: PipelineConfig) -> pd.DataFrame:
    """Collect a cohort's results, BH-adjust across its outcomes and derive SEM."""
    df = pd.DataFrame([r.as_row() for r in results], columns=TABLE_COLUMNS[:-2])
    df = df.sort_values("Outcome", kind="mergesort").reset_index(drop=True)
    df["P_FDR"] = bh_adjust(df["P_Value"], alpha=float(config.fdr_alpha))
    df["SEM"] = sem_from_ci(df["CI_Lower"], df["CI_Upper"])
    return df[TABLE_COLUMNS]
