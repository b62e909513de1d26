"""
Expected at-risk, case and control counts at the biomarker sampling time.

Time-to-event T and dropout C are taken as independent exponentials in the
hypothetical placebo arm, P(T <= t) = 1 - exp(-theta_t t) and
P(C <= t) = 1 - exp(-theta_c t). The vaccine-to-placebo relative risk is
RR0toTau before tau and RRoverall between tau and taumax (the latter is held
constant over (tau, taumax], which only holds approximately).

Given n_rand vaccine recipients:
- N = n_rand * P(X > tau | vaccine), X = min(T, C), is the at-risk count at tau.
- n_cases = N * P(T <= taumax, T <= C | X > tau, vaccine).
- n_controls = n_rand * P(T > taumax | vaccine) * P(C > taumax).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from scipy import optimize

from corpower.design import validate_positive, validate_probability
from corpower.errors import InputValidationError, NumericalRootError


@dataclass(frozen=True)
class SampleSizeEstimate:
    n: int                  # vaccine recipients at risk at tau
    n_cases: int            # cases between tau and taumax
    n_controls: int         # endpoint-free through taumax
    n_cases_with_s: int     # cases with the biomarker measured


def _pexp(t: float, rate: float) -> float:
    """Exponential CDF, finite at rate 0."""
    return -math.expm1(-rate * t)


def incidence_residual(rate: float, risk0: float, tau: float, taumax: float) -> float:
    """P(T <= taumax | T > tau) at ``rate`` minus the target ``risk0``."""
    return (_pexp(taumax, rate) - _pexp(tau, rate)) / (1.0 - _pexp(tau, rate)) - risk0


def solve_incidence_rate(risk0: float, tau: float, taumax: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Back-solve the placebo event rate from the conditional risk over (tau, taumax]."""
    try:
        return float(optimize.brentq(incidence_residual, lower, upper, args=(risk0, tau, taumax), xtol=1e-14))
    except ValueError as exc:
        raise NumericalRootError(
            f"no event rate in [{lower}, {upper}] gives risk0={risk0} over ({tau}, {taumax}]"
        ) from exc


def dropout_rate(dropout_risk: float, taumax: float) -> float:
    return -math.log(1.0 - dropout_risk) / taumax


def compute_n(
    n_rand: int,
    tau: float,
    taumax: float,
    ve_tau_to_taumax: float,
    ve_0_to_tau: float,
    risk0: float,
    dropout_risk: float,
    prop_cases_with_s: float,
) -> SampleSizeEstimate:
    """Expected vaccine-arm counts at the biomarker sampling timepoint ``tau``.

    Intermediate quantities are kept unrounded; only the returned counts are
    rounded, except that ``n_cases_with_s`` scales the rounded case count.
    """
    validate_positive(n_rand, "n_rand")
    validate_positive(taumax, "taumax")
    if not (0 <= tau < taumax):
        raise InputValidationError(f"need 0 <= tau < taumax, got tau={tau}, taumax={taumax}")
    validate_probability(ve_tau_to_taumax, "ve_tau_to_taumax", allow_one=False)
    validate_probability(ve_0_to_tau, "ve_0_to_tau", allow_one=False)
    validate_probability(risk0, "risk0", allow_zero=False, allow_one=False)
    validate_probability(dropout_risk, "dropout_risk", allow_one=False)
    validate_probability(prop_cases_with_s, "prop_cases_with_s")

    rr_overall = 1.0 - ve_tau_to_taumax
    rr_early = 1.0 - ve_0_to_tau
    theta_t = solve_incidence_rate(risk0, tau, taumax)
    theta_c = dropout_rate(dropout_risk, taumax)
    theta_tc = theta_t + theta_c

    surv_tau = 1.0 - rr_early * _pexp(tau, theta_t)
    n_at_risk = n_rand * surv_tau * (1.0 - _pexp(tau, theta_c))

    # events before dropout inside (tau, taumax]
    censored_part = rr_overall * surv_tau * (
        (_pexp(taumax, theta_c) - _pexp(tau, theta_c))
        - (theta_c / (theta_tc * math.exp(-theta_t * tau))) * (_pexp(taumax, theta_tc) - _pexp(tau, theta_tc))
    )
    # events for those still under follow-up at taumax
    retained_part = rr_overall * surv_tau * (
        (_pexp(taumax, theta_t) - _pexp(tau, theta_t)) / math.exp(-theta_t * tau)
    ) * (1.0 - _pexp(taumax, theta_c))
    at_risk_prob = surv_tau * (1.0 - _pexp(tau, theta_c))

    n_cases = int(round(n_at_risk * (censored_part + retained_part) / at_risk_prob))
    n_controls = int(round(n_rand * (1.0 - rr_overall * _pexp(taumax, theta_t)) * (1.0 - _pexp(taumax, theta_c))))
    return SampleSizeEstimate(
        n=int(round(n_at_risk)),
        n_cases=n_cases,
        n_controls=n_controls,
        n_cases_with_s=int(round(prop_cases_with_s * n_cases)),
    )
