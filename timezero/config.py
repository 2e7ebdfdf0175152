"""Run configuration threaded explicitly through every pipeline stage."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Callable, Mapping, Optional

import pandas as pd

from .logging_utils import sanitize_component

# Boolean mask over a cohort's baseline table selecting the patients to keep.
FilterPredicate = Callable[[pd.DataFrame], pd.Series]

DEFAULTS = {
    "output_dir": "results",
    "log_dir": "logs",
    "output_suffix": "",
    "patient_col": "patient_id",
    "time_col": "disease_time",
    "cohort_col": "cohort",
    "delay_col": "diagnostic_delay",
    "min_observations": 30,
    "min_distinct_times": 2,
    "validation_gap": 1.0,  # one year on the disease-time axis
    "min_training_observations": 2,
    "min_validation_patients": 3,
    "confidence_level": 0.95,
    "fdr_alpha": 0.05,
    "degenerate_tol": 1e-8,
    "mixedlm_maxiter": 200,
    "ordinal_quadrature_points": 9,
    "show_progress": True,
    "write_outputs": True,
}


@dataclass(frozen=True)
class PipelineConfig:
    output_dir: str = DEFAULTS["output_dir"]
    log_dir: str = DEFAULTS["log_dir"]
    output_suffix: str = DEFAULTS["output_suffix"]
    patient_col: str = DEFAULTS["patient_col"]
    time_col: str = DEFAULTS["time_col"]
    cohort_col: str = DEFAULTS["cohort_col"]
    delay_col: str = DEFAULTS["delay_col"]
    min_observations: int = DEFAULTS["min_observations"]
    min_distinct_times: int = DEFAULTS["min_distinct_times"]
    validation_gap: float = DEFAULTS["validation_gap"]
    min_training_observations: int = DEFAULTS["min_training_observations"]
    min_validation_patients: int = DEFAULTS["min_validation_patients"]
    confidence_level: float = DEFAULTS["confidence_level"]
    fdr_alpha: float = DEFAULTS["fdr_alpha"]
    degenerate_tol: float = DEFAULTS["degenerate_tol"]
    mixedlm_maxiter: int = DEFAULTS["mixedlm_maxiter"]
    ordinal_quadrature_points: int = DEFAULTS["ordinal_quadrature_points"]
    show_progress: bool = DEFAULTS["show_progress"]
    write_outputs: bool = DEFAULTS["write_outputs"]
    filter_predicate: Optional[FilterPredicate] = None

    def __post_init__(self) -> None:
        if int(self.min_observations) <= 0:
            raise ValueError("min_observations must be a positive integer")
        if int(self.min_distinct_times) < 2:
            raise ValueError("min_distinct_times must be at least 2")
        if not 0.0 < float(self.confidence_level) < 1.0:
            raise ValueError("confidence_level must lie strictly between 0 and 1")

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir)

    def table_path(self, stage: str, cohort: str) -> Path:
        return self.output_path / f"{stage}_{sanitize_component(cohort)}{self.output_suffix}.tsv"

    def with_overrides(self, **overrides) -> "PipelineConfig":
        return replace(self, **overrides)


def get_config(overrides: Optional[Mapping[str, object]] = None) -> PipelineConfig:
    """Build a config from :data:`DEFAULTS` plus ``overrides``."""
    cfg = dict(DEFAULTS)
    if overrides:
        known = {f.name for f in fields(PipelineConfig)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise KeyError(f"Unknown configuration keys: {unknown}")
        cfg.update(overrides)
    return PipelineConfig(**cfg)


def apply_filter(df: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """Apply ``config.filter_predicate`` to ``df``; identity when unset."""
    if config.filter_predicate is None or df.empty:
        return df
    mask = config.filter_predicate(df)
    mask = pd.Series(mask, index=df.index).fillna(False).astype(bool)
    return df.loc[mask]
