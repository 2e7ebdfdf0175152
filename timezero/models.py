"""Per-outcome longitudinal model fitting with random-effect fallback ladders."""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import sparse
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .config import PipelineConfig
from .ordinal import STRUCTURE_INTERCEPT, STRUCTURE_SLOPE, CumulativeLinkMixedModel
from .registry import BINARY, LINEAR, ORDINAL, OutcomeSpec

log = logging.getLogger(__name__)

PATIENT = "patient"
TIME = "time"
VALUE = "value"

FALLBACK_FIT_FAILURE = "fit_failure"
FALLBACK_SINGULAR = "singular"


class OutcomeSkipError(RuntimeError):
    """Raised when one (outcome, cohort) unit cannot be analysed; the pipeline skips it."""

    reason = "skipped"

    def __init__(self, outcome: str, cohort: str, detail: str):
        self.outcome = outcome
        self.cohort = cohort
        self.detail = detail
        super().__init__(f"{outcome} [{cohort}] {self.reason}: {detail}")


class MissingOutcomeError(OutcomeSkipError):
    reason = "missing_outcome"


class InsufficientDataError(OutcomeSkipError):
    reason = "insufficient_data"


class FitFailureError(OutcomeSkipError):
    reason = "fit_failure"


class DegenerateCorrelationError(OutcomeSkipError):
    reason = "degenerate_correlation"


class ValidationHaltError(Exception):
    """Too few patients survive the leave-future-out split; stops the cohort loop.

    Not an :class:`OutcomeSkipError` so per-outcome handlers let it through.
    """

    def __init__(self, outcome: str, cohort: str, n_patients: int, required: int):
        self.outcome = outcome
        self.cohort = cohort
        self.n_patients = n_patients
        self.required = required
        super().__init__(
            f"{outcome} [{cohort}] only {n_patients} patients eligible for validation (need {required})"
        )


@dataclass
class FittedModel:
    outcome: str
    cohort: str
    kind: str
    fixed_effects: pd.Series
    random_effects: pd.DataFrame
    structure: str
    fallback: bool = False
    fallback_reason: Optional[str] = None
    thresholds: Optional[np.ndarray] = None
    levels: Optional[np.ndarray] = None
    n_obs: int = 0
    n_patients: int = 0
    result: object = field(default=None, repr=False)

    @property
    def patients(self) -> pd.Index:
        return self.random_effects.index

    @property
    def has_random_slope(self) -> bool:
        return "slope" in self.random_effects.columns


@dataclass
class FitAttempt:
    """Outcome of one rung of the fit ladder: a model or the reason it failed."""

    structure: str
    model: Optional[FittedModel] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.model is not None


# --------------------------- data preparation ---------------------------

def prepare_outcome_frame(
    visits: pd.DataFrame,
    outcome: str,
    config: PipelineConfig,
    *,
    cohort: str = "",
    enforce_minimum: bool = True,
) -> pd.DataFrame:
    """Return ``patient, time, value`` rows usable for fitting ``outcome``.

    Rows with a missing value in any used field are dropped and only patients
    with at least ``config.min_distinct_times`` distinct disease times are kept.
    """
    if outcome not in visits.columns:
        raise MissingOutcomeError(outcome, cohort, "column absent from visit table")
    for col in (config.patient_col, config.time_col):
        if col not in visits.columns:
            raise KeyError(f"visit table is missing required column {col!r}")

    frame = visits[[config.patient_col, config.time_col, outcome]].rename(
        columns={config.patient_col: PATIENT, config.time_col: TIME, outcome: VALUE}
    )
    frame = frame.assign(
        **{TIME: pd.to_numeric(frame[TIME], errors="coerce"), VALUE: pd.to_numeric(frame[VALUE], errors="coerce")}
    ).dropna()

    distinct = frame.groupby(PATIENT)[TIME].nunique()
    keep = distinct.index[distinct >= int(config.min_distinct_times)]
    frame = frame.loc[frame[PATIENT].isin(keep)]
    frame = frame.sort_values([PATIENT, TIME], kind="mergesort").reset_index(drop=True)

    if enforce_minimum and len(frame) < int(config.min_observations):
        raise InsufficientDataError(
            outcome, cohort, f"{len(frame)} qualifying observations < {int(config.min_observations)}"
        )
    return frame


# --------------------------- helpers ---------------------------

def _suppress_fit_warnings() -> None:
    """Ignore benign numerical warnings raised inside optimisers."""
    warnings.filterwarnings("ignore", message="overflow encountered in exp", category=RuntimeWarning)
    warnings.filterwarnings("ignore", message="divide by zero encountered in log", category=RuntimeWarning)
    warnings.filterwarnings("ignore", message="invalid value encountered", category=RuntimeWarning)
    warnings.filterwarnings("ignore", category=FutureWarning)


def _convergence_messages(caught) -> List[str]:
    return [str(w.message) for w in caught if issubclass(w.category, ConvergenceWarning)]


def _non_convergence(messages: List[str]) -> Optional[str]:
    for msg in messages:
        low = msg.lower()
        if "did not converge" in low or "optimization failed" in low:
            return msg
    return None


def _degenerate_intercepts(model: FittedModel, tol: float) -> bool:
    """True when every patient received the same random intercept (a singular fit)."""
    intercepts = model.random_effects["intercept"].to_numpy(dtype=np.float64)
    if intercepts.size == 0:
        return True
    return bool(np.ptp(intercepts) <= tol)


def _print_fit_diag(model: FittedModel) -> None:
    fe = " ".join(f"{k}={v:.4g}" for k, v in model.fixed_effects.items())
    log.info(
        "[fit] outcome=%s cohort=%s kind=%s structure=%s fallback=%s reason=%s N=%d patients=%d %s",
        model.outcome,
        model.cohort,
        model.kind,
        model.structure,
        model.fallback,
        model.fallback_reason or "",
        model.n_obs,
        model.n_patients,
        fe,
    )


def _attempt(fit_fn: Callable[..., FittedModel], frame, spec, cohort, structure, config) -> FitAttempt:
    try:
        model = fit_fn(frame, spec, cohort, structure, config)
    except Exception as exc:  # every failure becomes a structured reason for the ladder
        return FitAttempt(structure=structure, reason=f"{type(exc).__name__}: {exc}")
    return FitAttempt(structure=structure, model=model)


def _mark_fallback(model: FittedModel, reason: str) -> FittedModel:
    model.fallback = True
    model.fallback_reason = reason if model.fallback_reason is None else f"{model.fallback_reason}|{reason}"
    return model


# --------------------------- single fits ---------------------------

def _fit_linear(frame, spec: OutcomeSpec, cohort: str, structure: str, config: PipelineConfig) -> FittedModel:
    re_formula = f"~{TIME}" if structure == STRUCTURE_SLOPE else "1"
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        _suppress_fit_warnings()
        model = smf.mixedlm(f"{VALUE} ~ {TIME}", frame, groups=frame[PATIENT], re_formula=re_formula)
        result = model.fit(reml=True, maxiter=int(config.mixedlm_maxiter))

    fe = np.asarray(result.fe_params, dtype=np.float64)
    if not getattr(result, "converged", False):
        msgs = _convergence_messages(caught)
        raise RuntimeError("MixedLM did not converge" + (f" ({msgs[-1]})" if msgs else ""))
    if not np.all(np.isfinite(fe)):
        raise RuntimeError("MixedLM produced non-finite fixed effects")

    re = pd.DataFrame.from_dict(result.random_effects, orient="index")
    renamed = {re.columns[0]: "intercept"}
    if TIME in re.columns:
        renamed[TIME] = "slope"
    re = re.rename(columns=renamed)[list(renamed.values())]
    re.index.name = PATIENT

    return FittedModel(
        outcome=spec.outcome,
        cohort=cohort,
        kind=LINEAR,
        fixed_effects=pd.Series({"intercept": fe[0], "slope": fe[1]}),
        random_effects=re.astype(np.float64),
        structure=structure,
        n_obs=int(len(frame)),
        n_patients=int(frame[PATIENT].nunique()),
        result=result,
    )


def _binary_design(frame: pd.DataFrame):
    codes, patients = pd.factorize(frame[PATIENT], sort=True)
    n, p = len(frame), len(patients)
    rows = np.arange(n)
    time = frame[TIME].to_numpy(dtype=np.float64)
    indicator = sparse.csr_matrix((np.ones(n), (rows, codes)), shape=(n, p))
    slope = sparse.csr_matrix((time, (rows, codes)), shape=(n, p))
    exog_vc = sparse.hstack([indicator, slope], format="csr")
    ident = np.concatenate([np.zeros(p, dtype=int), np.ones(p, dtype=int)])
    exog = np.column_stack([np.ones(n), time])
    return exog, exog_vc, ident, patients


def _fit_binary(frame, spec: OutcomeSpec, cohort: str, structure: str, config: PipelineConfig) -> FittedModel:
    endog = frame[VALUE].to_numpy(dtype=np.float64)
    if not np.isin(endog, (0.0, 1.0)).all():
        raise ValueError("binary outcome must be coded 0/1")
    if np.unique(endog).size < 2:
        raise ValueError("binary outcome has a single observed class")

    exog, exog_vc, ident, patients = _binary_design(frame)
    p = len(patients)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        _suppress_fit_warnings()
        model = BinomialBayesMixedGLM(
            endog,
            exog,
            exog_vc,
            ident,
            vcp_p=1.0,
            fe_p=2.0,
            fep_names=["intercept", "slope"],
            vcp_names=["intercept", "slope"],
            vc_names=[f"{pid}|intercept" for pid in patients] + [f"{pid}|slope" for pid in patients],
        )
        result = model.fit_vb()

    # VB reports BFGS precision loss as non-convergence; only non-finite estimates fail the fit.
    notes = _non_convergence([str(w.message) for w in caught])
    if notes:
        log.debug("[fit] outcome=%s cohort=%s vb note: %s", spec.outcome, cohort, notes)
    fe = np.asarray(result.fe_mean, dtype=np.float64)
    vc = np.asarray(result.vc_mean, dtype=np.float64)
    if not (np.all(np.isfinite(fe)) and np.all(np.isfinite(vc))):
        raise RuntimeError("variational fit produced non-finite estimates")

    re = pd.DataFrame(
        {"intercept": vc[:p], "slope": vc[p:]},
        index=pd.Index(patients, name=PATIENT),
    )
    return FittedModel(
        outcome=spec.outcome,
        cohort=cohort,
        kind=BINARY,
        fixed_effects=pd.Series({"intercept": fe[0], "slope": fe[1]}),
        random_effects=re,
        structure=structure,
        n_obs=int(len(frame)),
        n_patients=p,
        result=result,
    )


def _fit_ordinal(frame, spec: OutcomeSpec, cohort: str, structure: str, config: PipelineConfig) -> FittedModel:
    with warnings.catch_warnings():
        _suppress_fit_warnings()
        model = CumulativeLinkMixedModel(
            frame[VALUE].to_numpy(),
            frame[TIME].to_numpy(dtype=np.float64),
            frame[PATIENT].to_numpy(),
            structure=structure,
            n_points=int(config.ordinal_quadrature_points),
        )
        result = model.fit()
    if not result.converged:
        raise RuntimeError(f"cumulative-link mixed model did not converge ({result.message})")

    return FittedModel(
        outcome=spec.outcome,
        cohort=cohort,
        kind=ORDINAL,
        fixed_effects=pd.Series({"slope": result.beta}),
        random_effects=result.random_effects,
        structure=structure,
        thresholds=result.thresholds,
        levels=result.levels,
        n_obs=result.n_obs,
        n_patients=result.n_groups,
        result=result,
    )


# --------------------------- fit ladders ---------------------------

def _ladder_linear(frame, spec, cohort, config) -> FittedModel:
    first = _attempt(_fit_linear, frame, spec, cohort, STRUCTURE_SLOPE, config)
    if first.ok:
        chosen = first.model
    else:
        log.info("[fit] outcome=%s cohort=%s slope model failed: %s", spec.outcome, cohort, first.reason)
        retry = _attempt(_fit_linear, frame, spec, cohort, STRUCTURE_INTERCEPT, config)
        if not retry.ok:
            raise FitFailureError(spec.outcome, cohort, f"{first.reason} | {retry.reason}")
        chosen = _mark_fallback(retry.model, FALLBACK_FIT_FAILURE)

    if _degenerate_intercepts(chosen, float(config.degenerate_tol)):
        if chosen.structure == STRUCTURE_INTERCEPT:
            return _mark_fallback(chosen, FALLBACK_SINGULAR)
        retry = _attempt(_fit_linear, frame, spec, cohort, STRUCTURE_INTERCEPT, config)
        if not retry.ok:
            raise FitFailureError(spec.outcome, cohort, f"singular fit, intercept-only refit failed: {retry.reason}")
        chosen = _mark_fallback(retry.model, FALLBACK_SINGULAR)
    return chosen


def _ladder_binary(frame, spec, cohort, config) -> FittedModel:
    only = _attempt(_fit_binary, frame, spec, cohort, STRUCTURE_SLOPE, config)
    if not only.ok:
        raise FitFailureError(spec.outcome, cohort, only.reason)
    return only.model


def _ladder_ordinal(frame, spec, cohort, config) -> FittedModel:
    first = _attempt(_fit_ordinal, frame, spec, cohort, STRUCTURE_SLOPE, config)
    if first.ok:
        return first.model
    log.info("[fit] outcome=%s cohort=%s slope model failed: %s", spec.outcome, cohort, first.reason)
    retry = _attempt(_fit_ordinal, frame, spec, cohort, STRUCTURE_INTERCEPT, config)
    if not retry.ok:
        raise FitFailureError(spec.outcome, cohort, f"{first.reason} | {retry.reason}")
    return _mark_fallback(retry.model, FALLBACK_FIT_FAILURE)


FIT_LADDERS: Dict[str, Callable[..., FittedModel]] = {
    LINEAR: _ladder_linear,
    BINARY: _ladder_binary,
    ORDINAL: _ladder_ordinal,
}


def fit_outcome(frame: pd.DataFrame, spec: OutcomeSpec, cohort: str, config: PipelineConfig) -> FittedModel:
    """Fit the mixed model for ``spec.kind`` on a frame from :func:`prepare_outcome_frame`."""
    if len(frame) < int(config.min_observations):
        raise InsufficientDataError(
            spec.outcome, cohort, f"{len(frame)} qualifying observations < {int(config.min_observations)}"
        )
    model = FIT_LADDERS[spec.kind](frame, spec, cohort, config)
    _print_fit_diag(model)
    return model
