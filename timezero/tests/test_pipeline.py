"""End-to-end runs of the three pipeline stages on small synthetic cohorts."""
import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
import timezero.pipeline as pipeline
from timezero.meta import OVERALL
from timezero.models import ValidationHaltError
from timezero.pipeline import run_correlation, run_meta, run_validation, split_by_cohort
from timezero.registry import LINEAR, OutcomeRegistry, OutcomeSpec
from timezero.tests.synthetic import (
    by_cohort,
    make_baseline,
    make_linear_visits,
    make_registry,
    true_levels,
    quiet_config,
)

pytestmark = pytest.mark.timeout(300)


def _cohorts():
    frames = []
    for cohort, seed in (("A", 1), ("B", 2)):
        motor = make_linear_visits(40, cohort=cohort, seed=seed)
        speech = make_linear_visits(40, cohort=cohort, seed=seed + 10, intercept=40.0, slope=-1.5, column="speech")
        visits = motor.copy()
        visits["speech"] = speech["speech"].to_numpy()
        baseline = make_baseline(motor, seed=seed, signal=true_levels(motor))
        frames.append((visits, baseline))
    visits_by_cohort = by_cohort(*(v for v, _ in frames))
    baseline_by_cohort = by_cohort(*(b for _, b in frames))
    return visits_by_cohort, baseline_by_cohort


def _registry_with_missing_outcome():
    rows = [
        {"outcome": "motor", "kind": LINEAR, "invert": False, "min_value": 0.0, "category": "Motor", "label": "Motor"},
        {"outcome": "gait", "kind": LINEAR, "invert": False, "min_value": 0.0, "category": "Motor", "label": "Gait"},
        {"outcome": "speech", "kind": LINEAR, "invert": True, "min_value": 48.0, "category": "Bulbar", "label": "Speech"},
    ]
    return make_registry(rows)


def test_correlation_skips_missing_outcome_and_writes_tables(tmp_path):
    visits, baseline = _cohorts()
    cfg = quiet_config(tmp_path, output_suffix="_test")
    result = run_correlation(_registry_with_missing_outcome(), visits, baseline, cfg)

    assert sorted(result.tables) == ["A", "B"]
    for cohort, table in result.tables.items():
        assert table["Outcome"].tolist() == ["motor", "speech"]
        assert (table["Cohort"] == cohort).all()
        assert (table["P_FDR"] >= table["P_Value"]).all()
    assert result.skipped.outcomes() == ["gait", "gait"]
    assert set(result.skipped.to_frame()["Reason"]) == {"missing_outcome"}

    written = pd.read_csv(tmp_path / "results" / "correlation_A_test.tsv", sep="\t")
    assert written["Outcome"].tolist() == ["motor", "speech"]
    assert (tmp_path / "results" / "skipped_correlation_test.tsv").exists()
    assert "outcome=gait" in (tmp_path / "logs" / "skipped_correlation_test.log").read_text()

    # motor delay was built to rise with the patient's level
    motor_a = result.tables["A"].set_index("Outcome").loc["motor"]
    assert motor_a["Coef"] > 0.3
    assert motor_a["N"] == 40


def test_filter_predicate_restricts_patients():
    visits, baseline = _cohorts()
    cfg = quiet_config(filter_predicate=lambda df: df["sex"] == "F")
    result = run_correlation(make_registry(), visits, baseline, cfg)
    for table in result.tables.values():
        assert (table["N"] == 20).all()


def test_meta_pools_both_cohorts(tmp_path):
    visits, baseline = _cohorts()
    cfg = quiet_config(tmp_path)
    registry = make_registry()
    correlation = run_correlation(registry, visits, baseline, cfg)
    table = run_meta(registry, correlation.tables, cfg)

    assert set(table["Category"]) == {"Motor", "Bulbar"}
    assert set(table["Group"]) == {OVERALL, "A", "B"}
    assert (table.loc[table["Group"] == OVERALL, "K"] == 2).all()
    assert (tmp_path / "results" / "meta_analysis.tsv").exists()


def test_meta_with_no_results_returns_empty_table():
    table = run_meta(make_registry(), {"A": pd.DataFrame()}, quiet_config())
    assert table.empty


def test_validation_runs_every_cohort(tmp_path):
    visits, _ = _cohorts()
    cfg = quiet_config(tmp_path)
    result = run_validation(_registry_with_missing_outcome(), visits, cfg)
    assert sorted(result.tables) == ["A", "B"]
    for table in result.tables.values():
        assert table["Outcome"].tolist() == ["motor", "speech"]
        assert (table["N"] == 40).all()
    assert result.skipped.outcomes() == ["gait", "gait"]
    assert (tmp_path / "results" / "validation_A.tsv").exists()


def _two_patient_cohort():
    rows = [
        {"patient_id": pid, "disease_time": float(t), "cohort": "tiny", "motor": 10.0 + t + offset}
        for pid, offset in (("p1", 0.0), ("p2", 3.0))
        for t in range(20)
    ]
    visits = pd.DataFrame(rows)
    baseline = pd.DataFrame({"patient_id": ["p1", "p2"], "cohort": "tiny", "diagnostic_delay": [4.0, 9.0]})
    return visits, baseline


def test_validation_halts_where_correlation_skips():
    visits, baseline = _two_patient_cohort()
    registry = OutcomeRegistry([OutcomeSpec("motor", LINEAR, False, 0.0, "Motor", "Motor")])
    cfg = quiet_config()

    with pytest.raises(ValidationHaltError):
        run_validation(registry, {"tiny": visits}, cfg)

    result = run_correlation(registry, {"tiny": visits}, {"tiny": baseline}, cfg)
    assert result.tables["tiny"].empty
    assert result.skipped.outcomes("tiny") == ["motor"]
    assert result.skipped.to_frame()["Reason"].iloc[0] in {"degenerate_correlation", "fit_failure"}


def test_split_by_cohort():
    visits, _ = _cohorts()
    combined = pd.concat(visits.values(), ignore_index=True)
    split = split_by_cohort(combined, quiet_config())
    assert sorted(split) == ["A", "B"]
    assert len(split["A"]) == len(visits["A"])


def test_validation_applies_filter_through_baseline():
    visits, baseline = _cohorts()
    cfg = quiet_config(filter_predicate=lambda df: df["sex"] == "F")
    with pytest.raises(ValueError, match="filter_predicate"):
        run_validation(make_registry(), visits, cfg)

    result = run_validation(make_registry(), visits, cfg, baseline_by_cohort=baseline)
    for table in result.tables.values():
        assert table["Outcome"].tolist() == ["motor", "speech"]
        assert (table["N"] == 20).all()


def test_unexpected_outcome_errors_skip_only_that_outcome(monkeypatch):
    visits, baseline = _cohorts()
    real_correlate = pipeline.correlate_outcome
    real_validate = pipeline.validate_outcome

    def correlate(visits, delays, spec, cohort, config):
        if spec.outcome == "motor":
            raise KeyError("motor")
        return real_correlate(visits, delays, spec, cohort, config)

    def validate(visits, spec, cohort, config):
        if spec.outcome == "speech":
            raise TypeError("unsupported operand")
        return real_validate(visits, spec, cohort, config)

    monkeypatch.setattr(pipeline, "correlate_outcome", correlate)
    monkeypatch.setattr(pipeline, "validate_outcome", validate)
    cfg = quiet_config()

    corr = run_correlation(make_registry(), visits, baseline, cfg)
    assert all(t["Outcome"].tolist() == ["speech"] for t in corr.tables.values())
    skipped = corr.skipped.to_frame()
    assert skipped["Outcome"].tolist() == ["motor", "motor"]
    assert set(skipped["Reason"]) == {"error"}
    assert skipped["Detail"].str.startswith("KeyError").all()

    val = run_validation(make_registry(), visits, cfg)
    assert all(t["Outcome"].tolist() == ["motor"] for t in val.tables.values())
    assert val.skipped.outcomes() == ["speech", "speech"]


def test_skip_logs_are_kept_apart_per_output_suffix(tmp_path):
    visits, baseline = _cohorts()
    registry = _registry_with_missing_outcome()
    for suffix in ("_all", "_female"):
        cfg = quiet_config(tmp_path, output_suffix=suffix)
        run_correlation(registry, {"A": visits["A"]}, baseline, cfg)
    for suffix in ("_all", "_female"):
        lines = (tmp_path / "logs" / f"skipped_correlation{suffix}.log").read_text().splitlines()
        assert len(lines) == 1
        assert "outcome=gait" in lines[0]
