"""Leave-future-out sanity check of the fitted model families.

Each patient's first observation is held out; the model is fitted on that
patient's observations at least ``config.validation_gap`` after it and asked to
predict back to the held-out disease time. The null predictor is the value of
the patient's earliest training observation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .models import (
    PATIENT,
    TIME,
    VALUE,
    InsufficientDataError,
    ValidationHaltError,
    fit_outcome,
    prepare_outcome_frame,
)
from .predict import predict
from .registry import OutcomeSpec

TABLE_COLUMNS = [
    "Outcome",
    "Kind",
    "N",
    "SSE",
    "Null_SSE",
    "SST",
    "R2",
    "Null_R2",
    "Improvement",
    "Structure",
    "Fallback",
]


@dataclass
class ValidationResult:
    outcome: str
    cohort: str
    kind: str
    n: int
    sse: float
    null_sse: float
    sst: float
    structure: str
    fallback: bool

    @staticmethod
    def _ratio(num: float, den: float) -> float:
        return float(num / den) if den > 0 else float("nan")

    @property
    def r2(self) -> float:
        return 1.0 - self._ratio(self.sse, self.sst)

    @property
    def null_r2(self) -> float:
        return 1.0 - self._ratio(self.null_sse, self.sst)

    @property
    def improvement(self) -> float:
        return 1.0 - self._ratio(self.sse, self.null_sse)

    def as_row(self) -> dict:
        return {
            "Outcome": self.outcome,
            "Kind": self.kind,
            "N": self.n,
            "SSE": self.sse,
            "Null_SSE": self.null_sse,
            "SST": self.sst,
            "R2": self.r2,
            "Null_R2": self.null_r2,
            "Improvement": self.improvement,
            "Structure": self.structure,
            "Fallback": self.fallback,
        }


def leave_future_out_split(frame: pd.DataFrame, config: PipelineConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split into (training, test) frames.

    Training rows lie at least ``validation_gap`` after the patient's first
    observation; a patient is eligible with ``min_training_observations``
    distinct such times. The test frame has each eligible patient's first row.
    """
    frame = frame.sort_values([PATIENT, TIME], kind="mergesort")
    first_time = frame.groupby(PATIENT)[TIME].transform("min")
    later = frame.loc[frame[TIME] >= first_time + float(config.validation_gap)]

    distinct_later = later.groupby(PATIENT)[TIME].nunique()
    eligible = distinct_later.index[distinct_later >= int(config.min_training_observations)]

    train = later.loc[later[PATIENT].isin(eligible)].reset_index(drop=True)
    test = (
        frame.loc[frame[PATIENT].isin(eligible)]
        .groupby(PATIENT, sort=True)
        .head(1)
        .reset_index(drop=True)
    )
    return train, test


def score_predictions(truth, predicted, null_predicted) -> Tuple[float, float, float]:
    """Return (SSE, null SSE, SST) against the held-out values."""
    truth = np.asarray(truth, dtype=np.float64)
    sse = float(np.sum((truth - np.asarray(predicted, dtype=np.float64)) ** 2))
    null_sse = float(np.sum((truth - np.asarray(null_predicted, dtype=np.float64)) ** 2))
    sst = float(np.sum((truth - truth.mean()) ** 2)) if truth.size else float("nan")
    return sse, null_sse, sst


def validate_outcome(visits: pd.DataFrame, spec: OutcomeSpec, cohort: str, config: PipelineConfig) -> ValidationResult:
    frame = prepare_outcome_frame(visits, spec.outcome, config, cohort=cohort)
    train, test = leave_future_out_split(frame, config)

    n_patients = int(test[PATIENT].nunique())
    if n_patients < int(config.min_validation_patients):
        raise ValidationHaltError(spec.outcome, cohort, n_patients, int(config.min_validation_patients))
    if len(train) < int(config.min_observations):
        raise InsufficientDataError(
            spec.outcome, cohort, f"{len(train)} training observations < {int(config.min_observations)}"
        )

    model = fit_outcome(train, spec, cohort, config)
    preds = predict(model, spec, test[[PATIENT, TIME]])
    null_baseline = train.groupby(PATIENT)[VALUE].first().reindex(test[PATIENT])

    sse, null_sse, sst = score_predictions(test[VALUE], preds["predicted"], null_baseline)
    return ValidationResult(
        outcome=spec.outcome,
        cohort=cohort,
        kind=spec.kind,
        n=n_patients,
        sse=sse,
        null_sse=null_sse,
        sst=sst,
        structure=model.structure,
        fallback=model.fallback,
    )


def validation_table(results: Iterable[ValidationResult]) -> pd.DataFrame:
    df = pd.DataFrame([r.as_row() for r in results], columns=TABLE_COLUMNS)
    return df.sort_values("Outcome", kind="mergesort").reset_index(drop=True)
