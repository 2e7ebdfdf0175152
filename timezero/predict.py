"""Evaluate fitted outcome models at a disease time (time zero by default)."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd
from scipy.special import expit

from .models import PATIENT, TIME, FittedModel
from .registry import BINARY, LINEAR, ORDINAL, OutcomeSpec

log = logging.getLogger(__name__)

Times = Union[None, float, pd.Series, Mapping[object, float], pd.DataFrame]


def evaluation_times(model: FittedModel, times: Times = None) -> pd.Series:
    """Normalise ``times`` to a Series of disease times indexed by patient.

    ``None`` means time zero for every patient known to the model and a scalar
    means that time for every known patient.  A DataFrame must carry
    ``patient`` and ``time`` columns.
    """
    if times is None:
        times = 0.0
    if isinstance(times, pd.DataFrame):
        series = pd.Series(times[TIME].to_numpy(dtype=np.float64), index=pd.Index(times[PATIENT], name=PATIENT))
    elif isinstance(times, pd.Series):
        series = times.astype(np.float64)
    elif isinstance(times, Mapping):
        series = pd.Series(dict(times), dtype=np.float64)
    else:
        series = pd.Series(float(times), index=model.patients, dtype=np.float64)
    series.index.name = PATIENT
    return series


def _random_effects_for(model: FittedModel, patients: pd.Index) -> pd.DataFrame:
    re = model.random_effects.reindex(patients)
    unknown = re.index[re.isna().all(axis=1)]
    if len(unknown):
        log.debug(
            "[predict] outcome=%s cohort=%s %d patients without random effects; using fixed effects only",
            model.outcome,
            model.cohort,
            len(unknown),
        )
    if "slope" not in re.columns:
        re["slope"] = 0.0
    return re.fillna(0.0)


def _linear_predictor(model: FittedModel, times: pd.Series) -> np.ndarray:
    re = _random_effects_for(model, times.index)
    t = times.to_numpy(dtype=np.float64)
    intercept = float(model.fixed_effects.get("intercept", 0.0))
    slope = float(model.fixed_effects.get("slope", 0.0))
    return (
        intercept
        + slope * t
        + re["intercept"].to_numpy(dtype=np.float64)
        + re["slope"].to_numpy(dtype=np.float64) * t
    )


def clip_to_bound(values: np.ndarray, spec: OutcomeSpec) -> np.ndarray:
    """Cap at ``min_value`` for inverted scales, floor at it otherwise."""
    values = np.asarray(values, dtype=np.float64)
    if spec.invert:
        return np.minimum(values, spec.min_value)
    return np.maximum(values, spec.min_value)


def _predict_linear(model: FittedModel, spec: OutcomeSpec, times: pd.Series) -> np.ndarray:
    return clip_to_bound(_linear_predictor(model, times), spec)


def _predict_binary(model: FittedModel, spec: OutcomeSpec, times: pd.Series) -> np.ndarray:
    prob = expit(_linear_predictor(model, times))
    return np.where(prob >= 0.5, 1.0, 0.0)


def decode_thresholds(latent: np.ndarray, thresholds: np.ndarray, levels: np.ndarray) -> np.ndarray:
    """Map latent scores to ordered categories.

    A score is placed in the category right after the last cut-point it
    exceeds; scores at or below the first cut-point get the lowest category.
    """
    thresholds = np.asarray(thresholds, dtype=np.float64)
    if thresholds.size and np.any(np.diff(thresholds) < 0):
        raise ValueError("ordinal cut-points must be non-decreasing")
    idx = np.searchsorted(thresholds, np.asarray(latent, dtype=np.float64), side="left")
    return np.asarray(levels)[idx]


def _predict_ordinal(model: FittedModel, spec: OutcomeSpec, times: pd.Series) -> np.ndarray:
    if model.thresholds is None or model.levels is None:
        raise ValueError(f"{model.outcome}: ordinal model carries no cut-points")
    # no fixed intercept: location lives in the cut-points
    re = _random_effects_for(model, times.index)
    t = times.to_numpy(dtype=np.float64)
    latent = (
        float(model.fixed_effects["slope"]) * t
        + re["intercept"].to_numpy(dtype=np.float64)
        + re["slope"].to_numpy(dtype=np.float64) * t
    )
    return decode_thresholds(latent, model.thresholds, model.levels).astype(np.float64)


PREDICTORS: Dict[str, Callable[[FittedModel, OutcomeSpec, pd.Series], np.ndarray]] = {
    LINEAR: _predict_linear,
    BINARY: _predict_binary,
    ORDINAL: _predict_ordinal,
}


def predict(model: FittedModel, spec: OutcomeSpec, times: Times = None) -> pd.DataFrame:
    """Predict ``spec.outcome`` for each patient at the requested disease times."""
    if model.kind != spec.kind:
        raise ValueError(f"{spec.outcome}: model kind {model.kind} does not match registry kind {spec.kind}")
    series = evaluation_times(model, times)
    values = PREDICTORS[spec.kind](model, spec, series)
    return pd.DataFrame(
        {
            PATIENT: series.index.to_numpy(),
            "outcome": spec.outcome,
            TIME: series.to_numpy(dtype=np.float64),
            "predicted": values,
        }
    )


def predict_at_zero(model: FittedModel, spec: OutcomeSpec, patients: Optional[pd.Index] = None) -> pd.DataFrame:
    if patients is None:
        return predict(model, spec)
    return predict(model, spec, pd.Series(0.0, index=pd.Index(patients, name=PATIENT)))
