"""Cumulative-link (proportional odds) mixed model for ordinal outcomes.

statsmodels ships a fixed-effects ``OrderedModel`` but no mixed version, so the
per-patient random intercept (and optional random slope on time) is integrated
out here with Gauss-Hermite quadrature on the standard-normal scale:

    P(Y_ij <= k | b_i) = expit(theta_k - (beta * t_ij + b_i0 + b_i1 * t_ij))

The linear predictor has no fixed intercept; location is carried by the ordered
thresholds ``theta``.  Thresholds are parameterised as the first cut-point plus
log increments, as ``OrderedModel`` does, so they stay strictly increasing.
Patient-level random effects are reported as empirical-Bayes posterior means.
"""
from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy import optimize, sparse
from scipy.special import expit, logsumexp
from statsmodels.miscmodels.ordinal_model import OrderedModel

STRUCTURE_SLOPE = "intercept_slope"
STRUCTURE_INTERCEPT = "intercept"

_LOG_FLOOR = 1e-300


def transform_thresholds(raw: np.ndarray) -> np.ndarray:
    """Map unconstrained threshold params to strictly increasing cut-points."""
    raw = np.asarray(raw, dtype=np.float64)
    if raw.size == 0:
        return raw
    return np.concatenate(([raw[0]], raw[0] + np.cumsum(np.exp(raw[1:]))))


def untransform_thresholds(thresholds: np.ndarray) -> np.ndarray:
    thresholds = np.asarray(thresholds, dtype=np.float64)
    if thresholds.size == 0:
        return thresholds
    steps = np.maximum(np.diff(thresholds), 1e-6)
    return np.concatenate(([thresholds[0]], np.log(steps)))


def _quadrature(n_points: int, dim: int):
    nodes, weights = np.polynomial.hermite_e.hermegauss(int(n_points))
    weights = weights / math.sqrt(2.0 * math.pi)
    if dim == 1:
        return nodes[:, None], np.log(weights)
    z0, z1 = np.meshgrid(nodes, nodes, indexing="ij")
    w0, w1 = np.meshgrid(weights, weights, indexing="ij")
    return np.column_stack([z0.ravel(), z1.ravel()]), np.log((w0 * w1).ravel())


@dataclass
class CumulativeLinkMixedResults:
    levels: np.ndarray
    thresholds: np.ndarray
    beta: float
    re_cov: np.ndarray
    random_effects: pd.DataFrame
    structure: str
    llf: float
    converged: bool
    n_obs: int
    n_groups: int
    message: str = ""

    @property
    def params(self) -> pd.Series:
        names = [f"theta_{i}" for i in range(self.thresholds.size)] + ["time"]
        return pd.Series(np.append(self.thresholds, self.beta), index=names)


class CumulativeLinkMixedModel:
    """Proportional-odds logit model with per-group random effects.

    Parameters
    ----------
    endog : array-like
        Ordinal responses; the sorted distinct values define the categories.
    time : array-like
        Single fixed-effect covariate (disease time).
    groups : array-like
        Patient identifiers.
    structure : {"intercept_slope", "intercept"}
        Random-effect structure.
    """

    def __init__(self, endog, time, groups, *, structure: str = STRUCTURE_SLOPE, n_points: int = 9):
        if structure not in (STRUCTURE_SLOPE, STRUCTURE_INTERCEPT):
            raise ValueError(f"unknown random-effect structure: {structure}")
        endog = np.asarray(endog)
        self.time = np.asarray(time, dtype=np.float64)
        groups = pd.Index(np.asarray(groups))
        if not (endog.shape[0] == self.time.shape[0] == len(groups)):
            raise ValueError("endog, time and groups must have the same length")

        self.levels, self.codes = np.unique(endog, return_inverse=True)
        if self.levels.size < 2:
            raise ValueError("ordinal outcome needs at least two observed categories")
        self.n_cat = int(self.levels.size)
        self.structure = structure
        self.dim = 2 if structure == STRUCTURE_SLOPE else 1

        self.group_labels, group_codes = np.unique(np.asarray(groups), return_inverse=True)
        n = self.codes.shape[0]
        self.group_matrix = sparse.csr_matrix(
            (np.ones(n), (group_codes, np.arange(n))),
            shape=(self.group_labels.size, n),
        )
        self.z, self.log_w = _quadrature(n_points, self.dim)

    # -- parameter layout: [threshold raw (K-1), beta, covariance raw] --
    @property
    def k_thresholds(self) -> int:
        return self.n_cat - 1

    @property
    def k_cov(self) -> int:
        return 3 if self.dim == 2 else 1

    def _unpack(self, params):
        k = self.k_thresholds
        thresholds = transform_thresholds(params[:k])
        beta = float(params[k])
        cov_raw = params[k + 1:]
        if self.dim == 1:
            chol = np.array([[math.exp(cov_raw[0])]])
        else:
            chol = np.array([[math.exp(cov_raw[0]), 0.0], [cov_raw[1], math.exp(cov_raw[2])]])
        return thresholds, beta, chol

    def _node_effects(self, chol: np.ndarray) -> np.ndarray:
        return self.z @ chol.T

    def _patient_loglik(self, params) -> np.ndarray:
        """Per-patient conditional log-likelihood at every quadrature node."""
        thresholds, beta, chol = self._unpack(params)
        b = self._node_effects(chol)
        eta = beta * self.time[:, None] + b[None, :, 0]
        if self.dim == 2:
            eta = eta + self.time[:, None] * b[None, :, 1]

        cuts = np.concatenate(([-np.inf], thresholds, [np.inf]))
        upper = cuts[self.codes + 1][:, None] - eta
        lower = cuts[self.codes][:, None] - eta
        prob = expit(upper) - expit(lower)
        logp = np.log(np.clip(prob, _LOG_FLOOR, 1.0))
        return np.asarray(self.group_matrix @ logp)

    def loglike(self, params) -> float:
        per_node = self._patient_loglik(params) + self.log_w[None, :]
        return float(np.sum(logsumexp(per_node, axis=1)))

    def start_params(self) -> np.ndarray:
        """Starting values from a fixed-effects ``OrderedModel`` fit."""
        thresholds = None
        beta = 0.0
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                exog = pd.DataFrame({"time": self.time})
                fe = OrderedModel(self.codes, exog, distr="logit").fit(method="bfgs", disp=False, maxiter=200)
            params = np.asarray(fe.params, dtype=np.float64)
            if np.all(np.isfinite(params)):
                beta = float(params[0])
                thresholds = fe.model.transform_threshold_params(params)[1:-1]
        except (ValueError, np.linalg.LinAlgError):
            thresholds = None
        if thresholds is None or not np.all(np.isfinite(thresholds)):
            cum = np.cumsum(np.bincount(self.codes, minlength=self.n_cat))[:-1] / self.codes.size
            cum = np.clip(cum, 1e-3, 1 - 1e-3)
            thresholds = np.log(cum / (1.0 - cum))
        cov = [0.0] if self.dim == 1 else [0.0, 0.0, -1.0]
        return np.concatenate((untransform_thresholds(thresholds), [beta], cov))

    def fit(self, start_params: Optional[np.ndarray] = None, maxiter: int = 500) -> CumulativeLinkMixedResults:
        x0 = self.start_params() if start_params is None else np.asarray(start_params, dtype=np.float64)

        def objective(p):
            value = -self.loglike(p)
            return value if np.isfinite(value) else 1e300

        with np.errstate(over="ignore", under="ignore", invalid="ignore"):
            res = optimize.minimize(objective, x0, method="BFGS", options={"maxiter": int(maxiter), "gtol": 1e-5})
        # status 2 is BFGS precision loss at an otherwise stationary point
        converged = bool(np.all(np.isfinite(res.x)) and np.isfinite(res.fun) and res.status in (0, 2))

        thresholds, beta, chol = self._unpack(res.x)
        return CumulativeLinkMixedResults(
            levels=self.levels,
            thresholds=thresholds,
            beta=beta,
            re_cov=chol @ chol.T,
            random_effects=self._posterior_means(res.x),
            structure=self.structure,
            llf=float(-res.fun),
            converged=converged,
            n_obs=int(self.codes.size),
            n_groups=int(self.group_labels.size),
            message=str(res.message),
        )

    def _posterior_means(self, params) -> pd.DataFrame:
        _, _, chol = self._unpack(params)
        b = self._node_effects(chol)
        per_node = self._patient_loglik(params) + self.log_w[None, :]
        post = np.exp(per_node - logsumexp(per_node, axis=1, keepdims=True))
        means = post @ b
        columns = ["intercept", "slope"][: self.dim]
        return pd.DataFrame(means, index=pd.Index(self.group_labels, name="patient"), columns=columns)
