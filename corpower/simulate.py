"""
Simulation of case/control biomarker data for one replicate trial.

Each efficacy-grid point resolves into a scenario holding everything a worker
needs to draw a replicate, so scenarios are what get shipped to worker
processes. Discrete biomarkers first draw the latent subgroup by Bayes' rule
and then either misclassify it or categorize a correlated Normal; continuous
biomarkers draw the latent trait from the case or control distribution and
add measurement noise.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
import scipy.stats as sps
from scipy import special

from corpower.design import Approach, BiomarkerType, DesignParameters
from corpower.risk_model import ContinuousRiskSummary, DiscreteRiskSummary, latent_risk, summarize


@dataclass(frozen=True)
class Sampling:
    """How many cases and controls carry a biomarker measurement."""

    n_cases: int
    n_controls: int                 # fixed count for case-control sampling
    cohort: bool = False
    cohort_p: Optional[float] = None
    n_controls_tx: int = 0

    def draw_n_controls(self, rng: np.random.Generator) -> int:
        if not self.cohort:
            return self.n_controls
        # Bernoulli sub-cohort indicator; unselected controls have no biomarker.
        selected = rng.random(self.n_controls_tx) < self.cohort_p
        return int(selected.sum())


@dataclass(frozen=True)
class DiscreteScenario:
    biom_type: BiomarkerType
    approach: Approach
    sampling: Sampling
    case_probs: np.ndarray          # P(X* = k | case)
    control_probs: np.ndarray       # P(X* = k | control)
    classification: np.ndarray      # C[s, k], used by the misclassification approach
    latent_cuts: Tuple[float, ...]  # subgroup boundaries on the latent Normal scale
    observed_cuts: Tuple[float, float]
    rho: float


@dataclass(frozen=True)
class ContinuousScenario:
    sampling: Sampling
    risk_low: float                 # risk1 for z <= nu
    beta: float
    nu: float
    plat: float
    risk_mean: float
    rho: float
    sigma2obs: float

    @property
    def biom_type(self) -> BiomarkerType:
        return BiomarkerType.CONTINUOUS


Scenario = Union[DiscreteScenario, ContinuousScenario]


@dataclass(frozen=True)
class ReplicateData:
    y: np.ndarray    # 1 = case, 0 = control
    s: np.ndarray    # observed category code 0/1/2, or observed value


# ---------- Scenario construction ----------

def _sampling_for(design: DesignParameters) -> Sampling:
    if design.cohort:
        return Sampling(
            n_cases=design.n_cases_tx_with_s,
            n_controls=0,
            cohort=True,
            cohort_p=float(design.p),
            n_controls_tx=design.n_controls_tx,
        )
    return Sampling(n_cases=design.n_cases_tx_with_s, n_controls=design.n_controls_with_s)


def _normalize(weights: np.ndarray) -> np.ndarray:
    return weights / weights.sum()


def _discrete_scenarios(design: DesignParameters, summary: DiscreteRiskSummary) -> List[DiscreteScenario]:
    binary = design.biom_type is BiomarkerType.BINARY
    lower = float(special.ndtri(design.plat0))
    upper = lower if binary else float(special.ndtri(1.0 - design.plat2))
    latent_cuts = (-math.inf, lower, upper, math.inf)
    observed_cuts = (math.inf, math.inf)
    if design.approach is Approach.LATENT_CORRELATION:
        s_lower = float(special.ndtri(design.p0))
        s_upper = s_lower if binary else float(special.ndtri(1.0 - design.p2))
        observed_cuts = (s_lower, s_upper)

    sampling = _sampling_for(design)
    scenarios = []
    for j in range(summary.risk_lat.shape[1]):
        risk = summary.risk_lat[:, j]
        scenarios.append(DiscreteScenario(
            biom_type=design.biom_type,
            approach=design.approach,
            sampling=sampling,
            case_probs=_normalize(risk * summary.prevalence),
            control_probs=_normalize((1.0 - risk) * summary.prevalence),
            classification=summary.classification,
            latent_cuts=latent_cuts,
            observed_cuts=observed_cuts,
            rho=float(design.rho),
        ))
    return scenarios


def _continuous_scenarios(design: DesignParameters, summary: ContinuousRiskSummary) -> List[ContinuousScenario]:
    sampling = _sampling_for(design)
    return [
        ContinuousScenario(
            sampling=sampling,
            risk_low=float(r_low),
            beta=float(beta),
            nu=summary.nu,
            plat=float(design.plat_ve_lowest),
            risk_mean=summary.risk_mean,
            rho=float(design.rho),
            sigma2obs=float(design.sigma2obs),
        )
        for r_low, beta in zip(summary.risk_low, summary.beta)
    ]


def scenarios_for(design: DesignParameters, summary=None) -> List[Scenario]:
    """One scenario per efficacy-grid point of ``design``."""
    if summary is None:
        summary = summarize(design)
    if isinstance(summary, DiscreteRiskSummary):
        return _discrete_scenarios(design, summary)
    if isinstance(summary, ContinuousRiskSummary):
        return _continuous_scenarios(design, summary)
    raise TypeError(f"unsupported risk summary {type(summary).__name__}")


# ---------- Draws ----------

def _draw_categories(probs: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
    """Draw ``n`` codes 0..len(probs)-1 by inverting the cumulative distribution."""
    cum = np.cumsum(probs)
    codes = np.searchsorted(cum / cum[-1], rng.random(n), side="right")
    return np.minimum(codes, len(probs) - 1)


def _misclassify(latent: np.ndarray, C: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    cum = np.cumsum(C[:, latent].T, axis=1)
    u = rng.random(len(latent))[:, None] * cum[:, -1:]
    return np.minimum((u >= cum).sum(axis=1), 2)


def _categorize_latent(latent: np.ndarray, sc: DiscreteScenario, rng: np.random.Generator) -> np.ndarray:
    cuts = np.asarray(sc.latent_cuts)
    z = sps.truncnorm.rvs(cuts[latent], cuts[latent + 1], random_state=rng) if len(latent) else np.empty(0)
    s = math.sqrt(sc.rho) * z + math.sqrt(1.0 - sc.rho) * rng.standard_normal(len(latent))
    low, high = sc.observed_cuts
    return (s > low).astype(int) + (s > high).astype(int)


def _observe(latent: np.ndarray, sc: DiscreteScenario, rng: np.random.Generator) -> np.ndarray:
    if sc.approach is Approach.MISCLASSIFICATION:
        return _misclassify(latent, sc.classification, rng)
    if sc.approach is Approach.LATENT_CORRELATION:
        return _categorize_latent(latent, sc, rng)
    raise ValueError(f"unsupported approach {sc.approach!r}")


def _simulate_discrete(sc: DiscreteScenario, n_cases: int, n_controls: int,
                       rng: np.random.Generator) -> np.ndarray:
    latent = np.concatenate([
        _draw_categories(sc.case_probs, n_cases, rng),
        _draw_categories(sc.control_probs, n_controls, rng),
    ])
    return _observe(latent, sc, rng)


def _latent_cases(sc: ContinuousScenario, n: int, rng: np.random.Generator) -> np.ndarray:
    # risk1(z) phi(z) is a two-piece mixture: flat below nu, N(beta, 1) tilted above it.
    low_mass = sc.plat * sc.risk_low
    high_mass = sc.risk_low * math.exp(-sc.beta * sc.nu + 0.5 * sc.beta ** 2 + special.log_ndtr(sc.beta - sc.nu))
    below = rng.random(n) < low_mass / (low_mass + high_mass)
    z = np.empty(n)
    n_below = int(below.sum())
    if n_below:
        z[below] = sps.truncnorm.rvs(-np.inf, sc.nu, size=n_below, random_state=rng)
    if n - n_below:
        z[~below] = sps.truncnorm.rvs(sc.nu - sc.beta, np.inf, loc=sc.beta, size=n - n_below, random_state=rng)
    return z


def _latent_controls(sc: ContinuousScenario, n: int, rng: np.random.Generator) -> np.ndarray:
    accepted: List[np.ndarray] = []
    remaining = n
    while remaining > 0:
        batch = int(remaining / (1.0 - sc.risk_low)) + 16
        z = rng.standard_normal(batch)
        keep = rng.random(batch) >= latent_risk(z, 1.0, 0.0, sc.beta, sc.nu) * sc.risk_low
        accepted.append(z[keep][:remaining])
        remaining -= len(accepted[-1])
    return np.concatenate(accepted) if accepted else np.empty(0)


def _simulate_continuous(sc: ContinuousScenario, n_cases: int, n_controls: int,
                         rng: np.random.Generator) -> np.ndarray:
    z = np.concatenate([_latent_cases(sc, n_cases, rng), _latent_controls(sc, n_controls, rng)])
    noise = rng.standard_normal(len(z))
    return math.sqrt(sc.sigma2obs) * (math.sqrt(sc.rho) * z + math.sqrt(1.0 - sc.rho) * noise)


def simulate_replicate(scenario: Scenario, rng: np.random.Generator) -> ReplicateData:
    """Draw one replicate's (label, biomarker) data under ``scenario``."""
    n_cases = scenario.sampling.n_cases
    n_controls = scenario.sampling.draw_n_controls(rng)
    if isinstance(scenario, DiscreteScenario):
        s = _simulate_discrete(scenario, n_cases, n_controls, rng)
    elif isinstance(scenario, ContinuousScenario):
        s = _simulate_continuous(scenario, n_cases, n_controls, rng)
    else:
        raise TypeError(f"unsupported scenario {type(scenario).__name__}")
    y = np.concatenate([np.ones(n_cases, dtype=int), np.zeros(n_controls, dtype=int)])
    return ReplicateData(y=y, s=s)
