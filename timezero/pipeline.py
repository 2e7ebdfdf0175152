"""Cohort x outcome loops for the validation, correlation and meta stages."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import pandas as pd
from tqdm import tqdm

from .config import PipelineConfig, apply_filter
from .correlation import baseline_delays, correlate_outcome, finalize_cohort_table
from .logging_utils import SkipLog
from .meta import ForestPlotter, MetaAnalyzer
from .models import OutcomeSkipError, ValidationHaltError
from .registry import OutcomeRegistry
from .validation import validate_outcome, validation_table

log = logging.getLogger(__name__)


@dataclass
class StageResult:
    stage: str
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    skipped: Optional[SkipLog] = None
    paths: Dict[str, Path] = field(default_factory=dict)


def write_table(df: pd.DataFrame, path: Path) -> Path:
    """Write ``df`` as TSV in one step so readers never see a partial table."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    df.to_csv(tmp, sep="\t", index=False)
    os.replace(tmp, path)
    return path


def split_by_cohort(df: pd.DataFrame, config: PipelineConfig) -> Dict[str, pd.DataFrame]:
    if config.cohort_col not in df.columns:
        raise KeyError(f"table is missing cohort column {config.cohort_col!r}")
    return {str(k): sub.reset_index(drop=True) for k, sub in df.groupby(config.cohort_col, sort=True)}


def restrict_cohort(
    visits: pd.DataFrame,
    baseline: Optional[pd.DataFrame],
    config: PipelineConfig,
):
    """Apply the configured filter predicate to a cohort's baseline and visits.

    The predicate selects patients from the baseline table, so a configured
    predicate without a baseline is an error rather than a silent no-op.
    """
    if config.filter_predicate is None:
        return visits, baseline
    if baseline is None:
        raise ValueError("filter_predicate is set but no baseline table was given to select patients")
    kept = apply_filter(baseline, config)
    keep_ids = set(kept[config.patient_col])
    return visits.loc[visits[config.patient_col].isin(keep_ids)], kept


def _progress(registry: OutcomeRegistry, stage: str, cohort: str, config: PipelineConfig):
    return tqdm(list(registry), desc=f"{stage}:{cohort}", unit="outcome", disable=not config.show_progress)


def _skip_log(stage: str, config: PipelineConfig) -> SkipLog:
    return SkipLog(
        stage=stage,
        directory=config.log_path if config.write_outputs else None,
        suffix=config.output_suffix,
    )


def _finish_stage(result: StageResult, config: PipelineConfig) -> StageResult:
    if config.write_outputs and result.skipped is not None:
        path = config.output_path / f"skipped_{result.stage}{config.output_suffix}.tsv"
        result.paths["skipped"] = write_table(result.skipped.to_frame(), path)
    log.info(
        "[%s] finished cohorts=%d skipped=%d",
        result.stage,
        len(result.tables),
        len(result.skipped) if result.skipped is not None else 0,
    )
    return result


def run_validation(
    registry: OutcomeRegistry,
    visits_by_cohort: Mapping[str, pd.DataFrame],
    config: PipelineConfig,
    baseline_by_cohort: Optional[Mapping[str, pd.DataFrame]] = None,
) -> StageResult:
    """Leave-future-out validation for every cohort and outcome.

    A :class:`ValidationHaltError` is not caught and ends the run; cohorts
    finished before it keep their written tables.
    """
    result = StageResult(stage="validation", skipped=_skip_log("validation", config))
    for cohort in sorted(visits_by_cohort):
        baseline = (baseline_by_cohort or {}).get(cohort)
        visits, _ = restrict_cohort(visits_by_cohort[cohort], baseline, config)
        rows = []
        for spec in _progress(registry, "validation", cohort, config):
            try:
                rows.append(validate_outcome(visits, spec, cohort, config))
            except OutcomeSkipError as exc:
                result.skipped.record(cohort, spec.outcome, exc.reason, exc)
            except ValidationHaltError:
                raise
            except Exception as exc:  # any other per-outcome failure skips only that outcome
                result.skipped.record(cohort, spec.outcome, "error", exc)
        table = validation_table(rows)
        result.tables[cohort] = table
        if config.write_outputs:
            result.paths[cohort] = write_table(table, config.table_path("validation", cohort))
    return _finish_stage(result, config)


def run_correlation(
    registry: OutcomeRegistry,
    visits_by_cohort: Mapping[str, pd.DataFrame],
    baseline_by_cohort: Mapping[str, pd.DataFrame],
    config: PipelineConfig,
) -> StageResult:
    """Time-zero prediction vs diagnostic delay for every cohort and outcome."""
    result = StageResult(stage="correlation", skipped=_skip_log("correlation", config))
    for cohort in sorted(visits_by_cohort):
        if cohort not in baseline_by_cohort:
            raise KeyError(f"no baseline table for cohort {cohort!r}")
        visits, baseline = restrict_cohort(visits_by_cohort[cohort], baseline_by_cohort[cohort], config)
        delays = baseline_delays(baseline, config)
        found = []
        for spec in _progress(registry, "correlation", cohort, config):
            try:
                found.append(correlate_outcome(visits, delays, spec, cohort, config))
            except OutcomeSkipError as exc:
                result.skipped.record(cohort, spec.outcome, exc.reason, exc)
            except ValidationHaltError:
                raise
            except Exception as exc:  # any other per-outcome failure skips only that outcome
                result.skipped.record(cohort, spec.outcome, "error", exc)
        table = finalize_cohort_table(found, config)
        result.tables[cohort] = table
        if config.write_outputs:
            result.paths[cohort] = write_table(table, config.table_path("correlation", cohort))
    return _finish_stage(result, config)


def run_meta(
    registry: OutcomeRegistry,
    correlation_tables: Mapping[str, pd.DataFrame],
    config: PipelineConfig,
    forest_plotter: Optional[ForestPlotter] = None,
) -> pd.DataFrame:
    frames = [df for df in correlation_tables.values() if not df.empty]
    if not frames:
        log.warning("[meta] no correlation results to pool")
        combined = pd.DataFrame(columns=["Outcome", "Cohort", "Coef", "CI_Lower", "CI_Upper", "N", "SEM"])
    else:
        combined = pd.concat(frames, ignore_index=True, sort=False)
    combined = combined.sort_values(["Outcome", "Cohort"], kind="mergesort").reset_index(drop=True)
    table = MetaAnalyzer(registry, config, forest_plotter=forest_plotter).run(combined)
    if config.write_outputs:
        write_table(table, config.output_path / f"meta_analysis{config.output_suffix}.tsv")
    return table
