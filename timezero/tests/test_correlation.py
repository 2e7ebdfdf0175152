import os
import sys

import numpy as np
import pandas as pd
import pytest
from scipy import stats

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
from timezero.correlation import (
    TABLE_COLUMNS,
    CorrelationResult,
    baseline_delays,
    correlate_outcome,
    correlate_predictions,
    finalize_cohort_table,
    kendall_with_ci,
    pearson_with_ci,
)
from timezero.models import DegenerateCorrelationError
from timezero.registry import LINEAR, ORDINAL, OutcomeSpec
from timezero.testing import Z_95, adjusted_ci, bh_adjust, sem_from_ci
from timezero.tests.synthetic import make_baseline, make_linear_visits, quiet_config, true_levels

pytestmark = pytest.mark.timeout(60)

MOTOR = OutcomeSpec("motor", LINEAR, False, 0.0, "Motor", "Motor score")


def test_bh_adjust_is_monotone_and_never_below_raw():
    rng = np.random.default_rng(42)
    p = rng.uniform(0.0, 0.2, size=60)
    q = bh_adjust(p)
    assert np.all(q >= p - 1e-15)
    order = np.argsort(p)
    assert np.all(np.diff(q[order]) >= -1e-15)
    assert np.all(q <= 1.0)


def test_bh_adjust_keeps_missing_values_out_of_the_family():
    q = bh_adjust([0.01, np.nan, 0.04])
    assert np.isnan(q[1])
    assert q[[0, 2]] == pytest.approx([0.02, 0.04])


def test_sem_from_ci():
    assert sem_from_ci(0.1, 0.5) == pytest.approx(0.4 / 2 / Z_95)


def test_adjusted_ci_matches_original_when_p_unchanged():
    mean, se = 0.3, 0.1
    p = 2 * stats.norm.sf(mean / se)
    lo, hi = adjusted_ci([mean], [p])
    assert lo[0] == pytest.approx(mean - Z_95 * se, rel=1e-3)
    assert hi[0] == pytest.approx(mean + Z_95 * se, rel=1e-3)

    lo_wide, hi_wide = adjusted_ci([mean], [min(1.0, 3 * p)])
    assert lo_wide[0] < lo[0] and hi_wide[0] > hi[0]

    lo_inf, hi_inf = adjusted_ci([mean], [1.0])
    assert np.isneginf(lo_inf[0]) and np.isposinf(hi_inf[0])


def test_pearson_with_ci_matches_scipy():
    rng = np.random.default_rng(1)
    x = rng.normal(size=50)
    y = 0.5 * x + rng.normal(size=50)
    r, p, lo, hi = pearson_with_ci(x, y)
    expected = stats.pearsonr(x, y)
    assert r == pytest.approx(expected.statistic)
    assert p == pytest.approx(expected.pvalue)
    assert lo < r < hi


def test_kendall_with_ci_brackets_tau():
    rng = np.random.default_rng(2)
    x = rng.normal(size=60)
    y = np.round(x + rng.normal(size=60))
    tau, p, lo, hi = kendall_with_ci(x, y)
    assert -1.0 <= lo < tau < hi <= 1.0
    assert 0.0 <= p <= 1.0


def test_baseline_delays_rejects_duplicate_patients():
    baseline = pd.DataFrame({"patient_id": ["a", "a"], "diagnostic_delay": [1.0, 2.0]})
    with pytest.raises(ValueError, match="Duplicate"):
        baseline_delays(baseline, quiet_config())


def test_constant_predictions_are_degenerate():
    preds = pd.DataFrame({"patient": list("abcde"), "predicted": [1.0] * 5})
    delays = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0], index=pd.Index(list("abcde"), name="patient"))
    with pytest.raises(DegenerateCorrelationError) as excinfo:
        correlate_predictions(preds, delays, MOTOR, "A", quiet_config())
    assert excinfo.value.reason == "degenerate_correlation"

    preds["predicted"] = [1.0, 2.0, 3.0, 4.0, 5.0]
    with pytest.raises(DegenerateCorrelationError):
        correlate_predictions(preds, delays * 0.0 + 7.0, MOTOR, "A", quiet_config())


def test_correlate_predictions_uses_kendall_for_ordinal():
    spec = OutcomeSpec("walking", ORDINAL, False, 0.0, "Motor", "Walking")
    preds = pd.DataFrame({"patient": list("abcdefgh"), "predicted": [0, 0, 1, 1, 1, 2, 2, 2]})
    delays = pd.Series(np.arange(8, dtype=float), index=pd.Index(list("abcdefgh"), name="patient"))
    result = correlate_predictions(preds, delays, spec, "A", quiet_config())
    assert result.method == "kendall"
    assert result.coef > 0.8
    assert result.n == 8


def test_correlate_outcome_detects_delay_signal():
    visits = make_linear_visits(40)
    baseline = make_baseline(visits, signal=true_levels(visits))
    cfg = quiet_config()
    result = correlate_outcome(visits, baseline_delays(baseline, cfg), MOTOR, "A", cfg)
    assert result.method == "pearson"
    assert result.n == 40
    assert result.coef > 0
    assert result.ci_lower < result.coef < result.ci_upper


def test_finalize_cohort_table_adds_fdr_and_sem():
    results = [
        CorrelationResult("b", "A", LINEAR, "pearson", 0.2, 0.04, 0.01, 0.39, 100),
        CorrelationResult("a", "A", LINEAR, "pearson", -0.3, 0.01, -0.48, -0.12, 100),
    ]
    table = finalize_cohort_table(results, quiet_config())
    assert list(table.columns) == TABLE_COLUMNS
    assert table["Outcome"].tolist() == ["a", "b"]
    assert (table["P_FDR"] >= table["P_Value"]).all()
    assert table.loc[0, "SEM"] == pytest.approx(0.36 / 2 / 1.96)

    empty = finalize_cohort_table([], quiet_config())
    assert empty.empty
    assert list(empty.columns) == TABLE_COLUMNS
