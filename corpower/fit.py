"""
Logistic working model for one simulated replicate.

Case status is regressed on the observed biomarker in the active arm:
- binary:       logit P(case) = a + b * 1[S = high]
- trichotomous: logit P(case) = a + b * S,  S in {0, 1, 2} (ordinal trend)
- continuous:   logit P(case) = a + b * S

``b`` is the CoR log odds ratio; its Wald statistic b / se(b) drives the
power estimate.

Discrete biomarkers are fitted on the category-by-status table with a
binomial GLM. When a category has no cases or no controls every cell gets a
Haldane 0.5 correction, so a category that only controls reach (the largest
effects) still yields a finite estimate. Replicates that cannot be fitted at
all, e.g. an empty category or a constant continuous biomarker, are reported
as :class:`DegenerateReplicateError`.
"""

from __future__ import annotations

import math
import threading
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from corpower.design import BiomarkerType
from corpower.errors import DegenerateReplicateError
from corpower.simulate import ReplicateData


HALDANE = 0.5

_FIT_FAILURES = (
    np.linalg.LinAlgError,
    PerfectSeparationError,
    PerfectSeparationWarning,
    ConvergenceWarning,
    HessianInversionWarning,
)
_CATEGORIES = {
    BiomarkerType.BINARY: (0, 2),
    BiomarkerType.TRICHOTOMOUS: (0, 1, 2),
}
_SCORES = {
    BiomarkerType.BINARY: (0.0, 1.0),
    BiomarkerType.TRICHOTOMOUS: (0.0, 1.0, 2.0),
}

# Warning filters are process-wide; the thread-pool fallback shares them.
_WARNINGS_LOCK = threading.Lock()


@dataclass(frozen=True)
class FitResult:
    estimate: float
    std_error: float

    @property
    def wald(self) -> float:
        return self.estimate / self.std_error


def biomarker_covariate(data: ReplicateData, biom_type: BiomarkerType) -> np.ndarray:
    """Working-model covariate, after checking the replicate can be fitted."""
    y = data.y
    n_cases = int(y.sum())
    if n_cases == 0 or n_cases == len(y):
        raise DegenerateReplicateError("replicate needs both cases and controls")

    if biom_type is BiomarkerType.CONTINUOUS:
        s = np.asarray(data.s, dtype=float)
        if not np.all(np.isfinite(s)) or np.ptp(s) == 0.0:
            raise DegenerateReplicateError("continuous biomarker is constant or non-finite")
        return s

    codes = np.asarray(data.s, dtype=int)
    for category in _CATEGORIES[biom_type]:
        if not np.any(codes == category):
            raise DegenerateReplicateError(f"biomarker category {category} has no observations")
    if biom_type is BiomarkerType.BINARY:
        return (codes == 2).astype(float)
    return codes.astype(float)


def category_counts(data: ReplicateData, biom_type: BiomarkerType) -> Tuple[np.ndarray, np.ndarray]:
    """Cases and controls per observed category, Haldane-corrected if any cell is zero."""
    codes = np.asarray(data.s, dtype=int)
    is_case = np.asarray(data.y) == 1
    categories = _CATEGORIES[biom_type]
    cases = np.array([np.sum(is_case & (codes == c)) for c in categories], dtype=float)
    controls = np.array([np.sum(~is_case & (codes == c)) for c in categories], dtype=float)
    if np.any(cases == 0) or np.any(controls == 0):
        cases += HALDANE
        controls += HALDANE
    return cases, controls


@contextmanager
def _fit_failures_as_errors():
    with _WARNINGS_LOCK, warnings.catch_warnings():
        for category in (PerfectSeparationWarning, ConvergenceWarning, HessianInversionWarning):
            warnings.simplefilter("error", category)
        try:
            yield
        except _FIT_FAILURES as exc:
            raise DegenerateReplicateError(f"logistic fit failed: {exc}") from exc


def _checked(estimate: float, std_error: float, converged: bool) -> FitResult:
    if not converged:
        raise DegenerateReplicateError("logistic fit did not converge")
    if not (math.isfinite(estimate) and math.isfinite(std_error) and std_error > 0.0):
        raise DegenerateReplicateError(f"non-finite estimate or standard error ({estimate}, {std_error})")
    return FitResult(estimate=estimate, std_error=std_error)


def _fit_grouped(cases: np.ndarray, controls: np.ndarray, scores, maxiter: int) -> FitResult:
    x = np.concatenate([scores, scores])
    X = np.column_stack([np.ones(len(x)), x])
    y = np.concatenate([np.ones(len(scores)), np.zeros(len(scores))])
    with _fit_failures_as_errors():
        fit = sm.GLM(y, X, family=sm.families.Binomial(), freq_weights=np.concatenate([cases, controls])).fit(
            maxiter=maxiter
        )
        estimate = float(fit.params[1])
        std_error = float(fit.bse[1])
    return _checked(estimate, std_error, bool(fit.converged))


def _fit_individual(x: np.ndarray, y: np.ndarray, maxiter: int) -> FitResult:
    X = np.column_stack([np.ones(len(x)), x])
    with _fit_failures_as_errors():
        fit = sm.Logit(np.asarray(y, dtype=float), X).fit(disp=0, maxiter=maxiter)
        estimate = float(fit.params[1])
        std_error = float(fit.bse[1])
    return _checked(estimate, std_error, bool(fit.mle_retvals.get("converged", True)))


def fit_replicate(data: ReplicateData, biom_type: BiomarkerType, maxiter: int = 100) -> FitResult:
    """Fit the logistic working model and return the CoR slope and its SE."""
    x = biomarker_covariate(data, biom_type)
    if biom_type is BiomarkerType.CONTINUOUS:
        return _fit_individual(x, data.y, maxiter)
    cases, controls = category_counts(data, biom_type)
    return _fit_grouped(cases, controls, np.asarray(_SCORES[biom_type]), maxiter)
