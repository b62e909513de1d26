"""
Closed-form risk model for latent protection subgroups.

Discrete biomarkers
-------------------
Active-arm recipients fall in latent subgroups k = 0 (lower protected),
1 (medium) and 2 (higher protected) with prevalences Plat_k. Subgroup k has
risk1lat_k = risk0 * (1 - VElat_k); VElat2 is pinned by requiring the
prevalence-weighted VE to equal VEoverall.

The observed category S relates to X* through a classification matrix
C[s, k] = P(S = s | X* = k), built either from misclassification rates or
from a bivariate Normal with corr(S, X*)^2 = rho. The CoR relative risk is
RRt = risk1(S=2) / risk1(S=0).

Continuous biomarker
--------------------
On the standardized latent scale z, risk1(z) is flat at risk0*(1 - VElowest)
for z <= nu = Phi^-1(PlatVElowest) and log-linear above it, continuous at nu,
with its slope solved so that E[risk1(Z)] = risk0*(1 - VEoverall).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import numpy as np
from scipy import integrate, optimize, special

from corpower.design import Approach, BiomarkerType, DesignParameters
from corpower.errors import InputValidationError, InvariantViolationError, NumericalRootError


_PROB_TOL = 1e-10
_SLOPE_FLOOR = -1e8


def _check_unit_interval(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if np.any(~np.isfinite(arr)) or np.any(arr < -_PROB_TOL) or np.any(arr > 1.0 + _PROB_TOL):
        raise InvariantViolationError(f"{name} left [0,1]: {arr}")
    return arr


# ---------- Subgroup risks ----------

def relative_risk(ve) -> np.ndarray:
    return 1.0 - np.asarray(ve, dtype=float)


def subgroup_risk(risk0: float, ve) -> np.ndarray:
    """Active-arm risk of a subgroup with vaccine efficacy ``ve``."""
    return _check_unit_interval(risk0 * relative_risk(ve), "subgroup risk")


def latent_ve_high(ve_overall: float, plat0: float, plat2: float, ve_lat0, ve_lat1=None) -> np.ndarray:
    """VE of the higher-protected subgroup implied by VEoverall.

    ``ve_lat1`` is None for a binary biomarker (no medium subgroup).
    """
    ve_lat0 = np.asarray(ve_lat0, dtype=float)
    medium = 0.0
    if ve_lat1 is not None:
        medium = (1.0 - plat0 - plat2) * np.asarray(ve_lat1, dtype=float)
    ve_lat2 = (ve_overall - plat0 * ve_lat0 - medium) / plat2
    if np.any(ve_lat2 > 1.0 + _PROB_TOL):
        raise InputValidationError(
            f"implied VE in the higher-protected subgroup exceeds 1 ({ve_lat2.max():.4g}); "
            "lower ve_overall or raise ve_lat0/ve_lat1"
        )
    return ve_lat2


# ---------- Classification matrices ----------

def misclassification_matrix(biom_type: BiomarkerType, plat0: float, plat2: float, p0: float, p2: float,
                             sens: float, spec: float, fp0: float = 0.0, fn2: float = 0.0) -> np.ndarray:
    """C[s, k] from sensitivity/specificity and the false-positive/negative rates.

    The medium column is solved so the observed marginals equal ``p0``/``p2``.
    For a binary biomarker ``p0``/``p2`` are implied and may be None.
    """
    C = np.zeros((3, 3))
    if biom_type is BiomarkerType.BINARY:
        C[:, 0] = (spec, 0.0, 1.0 - spec)
        C[:, 2] = (1.0 - sens, 0.0, sens)
        return C

    plat1 = 1.0 - plat0 - plat2
    C[:, 0] = (spec, 1.0 - spec - fp0, fp0)
    C[:, 2] = (fn2, 1.0 - sens - fn2, sens)
    low = (p0 - spec * plat0 - fn2 * plat2) / plat1
    high = (p2 - sens * plat2 - fp0 * plat0) / plat1
    C[:, 1] = (low, 1.0 - low - high, high)
    if np.any(C < -_PROB_TOL) or np.any(C > 1.0 + _PROB_TOL):
        raise InputValidationError(
            "sens/spec/fp0/fn2 are inconsistent with p0/p2 and plat0/plat2: "
            f"medium-subgroup classification probabilities {C[:, 1].round(6).tolist()}"
        )
    return C


def _cell_probability(s_lo: float, s_hi: float, k_lo: float, k_hi: float, r: float) -> float:
    """P(s_lo < S <= s_hi, k_lo < X <= k_hi) for a standard bivariate Normal with correlation r."""
    if s_hi <= s_lo or k_hi <= k_lo:
        return 0.0
    if r >= 1.0:
        lo, hi = max(s_lo, k_lo), min(s_hi, k_hi)
        if hi <= lo:
            return 0.0
        return float(special.ndtr(hi) - special.ndtr(lo))

    # Integrate over u = Phi(x) so the range is finite; the inner band jumps near Phi(s/r).
    scale = math.sqrt(1.0 - r * r)
    u_lo, u_hi = float(special.ndtr(k_lo)), float(special.ndtr(k_hi))

    def band(u: float) -> float:
        x = special.ndtri(u)
        return special.ndtr((s_hi - r * x) / scale) - special.ndtr((s_lo - r * x) / scale)

    breaks = [float(b) for b in special.ndtr(np.array([s_lo, s_hi]) / r) if u_lo < b < u_hi]
    value, _err = integrate.quad(band, u_lo, u_hi, points=breaks or None, epsabs=1e-13, epsrel=1e-10, limit=200)
    return float(value)


def _cutpoints(low: float, high: float, binary: bool) -> Tuple[float, float, float, float]:
    lower = float(special.ndtri(low))
    upper = lower if binary else float(special.ndtri(1.0 - high))
    return (-math.inf, lower, upper, math.inf)


def latent_correlation_matrix(biom_type: BiomarkerType, plat0: float, plat2: float, p0: float, p2: float,
                              rho: float) -> np.ndarray:
    """C[s, k] when S and X* are standard bivariate Normal with corr = sqrt(rho)."""
    binary = biom_type is BiomarkerType.BINARY
    r = math.sqrt(rho)
    k_cuts = _cutpoints(plat0, plat2, binary)
    s_cuts = _cutpoints(p0, p2, binary)
    C = np.zeros((3, 3))
    for k in range(3):
        mass = float(special.ndtr(k_cuts[k + 1]) - special.ndtr(k_cuts[k]))
        if mass <= 0.0:
            continue
        for s in range(3):
            C[s, k] = _cell_probability(s_cuts[s], s_cuts[s + 1], k_cuts[k], k_cuts[k + 1], r) / mass
    return _check_unit_interval(C, "classification matrix")


def classification_matrix(design: DesignParameters) -> np.ndarray:
    if design.approach is Approach.MISCLASSIFICATION:
        return misclassification_matrix(
            design.biom_type, design.plat0, design.plat2, design.p0, design.p2,
            design.sens, design.spec, design.fp0, design.fn2,
        )
    if design.approach is Approach.LATENT_CORRELATION:
        return latent_correlation_matrix(
            design.biom_type, design.plat0, design.plat2, design.p0, design.p2, design.rho,
        )
    raise InputValidationError(f"unsupported approach {design.approach!r}")


@dataclass(frozen=True)
class ClassificationAccuracy:
    sens: float
    spec: float
    fp0: float
    fn2: float


def classification_accuracy(biom_type: BiomarkerType, plat0: float, plat2: float, p0: float, p2: float,
                            rho: float) -> ClassificationAccuracy:
    """Misclassification rates implied by the latent-correlation model (one ROC point)."""
    C = latent_correlation_matrix(biom_type, plat0, plat2, p0, p2, rho)
    return ClassificationAccuracy(sens=C[2, 2], spec=C[0, 0], fp0=C[2, 0], fn2=C[0, 2])


# ---------- Discrete summary ----------

@dataclass(frozen=True)
class DiscreteRiskSummary:
    prevalence: np.ndarray       # Plat_k, shape (3,)
    classification: np.ndarray   # C[s, k], shape (3, 3)
    ve_lat: np.ndarray           # shape (3, G)
    risk_lat: np.ndarray         # risk1 by latent subgroup, shape (3, G)
    risk_obs: np.ndarray         # risk1 by observed category, NaN for an empty category
    rr_t: np.ndarray             # shape (G,)

    @property
    def observed_prevalence(self) -> np.ndarray:
        return self.classification @ self.prevalence

    @property
    def rr_lat_ratio(self) -> np.ndarray:
        """RRlat2 / RRlat0, the relative efficacy between the extreme subgroups."""
        rr = relative_risk(self.ve_lat)
        with np.errstate(divide="ignore", invalid="ignore"):
            return rr[2] / rr[0]

    def theory(self) -> Dict[str, Tuple[float, ...]]:
        return {
            "ve_lat2": tuple(self.ve_lat[2].tolist()),
            "rr_t": tuple(self.rr_t.tolist()),
            "risk1_low": tuple(self.risk_obs[0].tolist()),
            "risk1_med": tuple(self.risk_obs[1].tolist()),
            "risk1_high": tuple(self.risk_obs[2].tolist()),
            "rr_lat_ratio": tuple(self.rr_lat_ratio.tolist()),
        }


def discrete_risk_summary(design: DesignParameters) -> DiscreteRiskSummary:
    trichotomous = design.biom_type is BiomarkerType.TRICHOTOMOUS
    ve_lat0 = np.asarray(design.ve_lat0, dtype=float)
    ve_lat1 = np.asarray(design.ve_lat1, dtype=float) if trichotomous else np.zeros_like(ve_lat0)
    ve_lat2 = latent_ve_high(design.ve_overall, design.plat0, design.plat2, ve_lat0,
                             ve_lat1 if trichotomous else None)
    prevalence = np.array([design.plat0, design.plat1 if trichotomous else 0.0, design.plat2])

    ve_lat = np.vstack([ve_lat0, ve_lat1, ve_lat2])
    risk_lat = subgroup_risk(design.risk0, ve_lat)
    C = classification_matrix(design)

    joint = C @ (risk_lat * prevalence[:, None])
    observed = C @ prevalence
    risk_obs = np.full_like(joint, np.nan)
    present = observed > _PROB_TOL
    risk_obs[present] = joint[present] / observed[present, None]
    _check_unit_interval(risk_obs[present], "observed-category risk")
    with np.errstate(divide="ignore", invalid="ignore"):
        rr_t = risk_obs[2] / risk_obs[0]

    return DiscreteRiskSummary(
        prevalence=prevalence,
        classification=C,
        ve_lat=ve_lat,
        risk_lat=risk_lat,
        risk_obs=risk_obs,
        rr_t=rr_t,
    )


# ---------- Continuous model ----------

def solve_latent_slope(ve_overall: float, ve_lowest: float, plat_ve_lowest: float) -> float:
    """Slope of log risk per latent SD above nu; risk0 cancels out.

    Solves plat*rr_low + rr_low * E[exp(beta (Z - nu)); Z > nu] = 1 - ve_overall
    for beta <= 0, using the closed form of the truncated Normal moment.
    """
    nu = float(special.ndtri(plat_ve_lowest))
    rr_low = 1.0 - ve_lowest
    rr_overall = 1.0 - ve_overall
    if plat_ve_lowest * rr_low >= rr_overall:
        raise InputValidationError(
            f"plat_ve_lowest * (1 - ve_lowest) = {plat_ve_lowest * rr_low:.4g} must be below 1 - ve_overall"
        )

    def excess(beta: float) -> float:
        upper = rr_low * math.exp(-beta * nu + 0.5 * beta * beta + special.log_ndtr(beta - nu))
        return plat_ve_lowest * rr_low + upper - rr_overall

    if rr_low <= rr_overall or excess(0.0) <= 0.0:
        return 0.0
    lo = -1.0
    while excess(lo) >= 0.0:
        lo *= 2.0
        if lo < _SLOPE_FLOOR:
            raise NumericalRootError(f"no latent slope found for ve_lowest={ve_lowest}")
    return float(optimize.brentq(excess, lo, 0.0, xtol=1e-12))


def latent_risk(z, risk0: float, ve_lowest: float, beta: float, nu: float) -> np.ndarray:
    """Active-arm risk at standardized latent value ``z``."""
    z = np.asarray(z, dtype=float)
    r_low = risk0 * (1.0 - ve_lowest)
    return np.where(z <= nu, r_low, r_low * np.exp(beta * (np.maximum(z, nu) - nu)))


def latent_ve_curve(z, risk0: float, ve_lowest: float, beta: float, nu: float) -> np.ndarray:
    """VE as a function of the latent biomarker."""
    return 1.0 - latent_risk(z, risk0, ve_lowest, beta, nu) / risk0


def _normal_moment(func, nu: float) -> float:
    pdf = lambda z: math.exp(-0.5 * z * z) / math.sqrt(2.0 * math.pi)  # noqa: E731
    below, _ = integrate.quad(lambda z: func(z) * pdf(z), -math.inf, nu, epsabs=1e-13, limit=200)
    above, _ = integrate.quad(lambda z: func(z) * pdf(z), nu, math.inf, epsabs=1e-13, limit=200)
    return below + above


def cor_relative_risk(risk0: float, ve_lowest: float, beta: float, nu: float, rho: float) -> float:
    """CoR odds ratio per SD of the observed biomarker.

    exp(sqrt(rho) * (E[Z | case] - E[Z | control])), the discriminant
    approximation to the slope the logistic working model targets.
    """
    risk = lambda z: float(latent_risk(z, risk0, ve_lowest, beta, nu))  # noqa: E731
    mean_risk = _normal_moment(risk, nu)
    tilt = _normal_moment(lambda z: z * risk(z), nu)
    _check_unit_interval(mean_risk, "mean active-arm risk")
    gap = tilt / mean_risk + tilt / (1.0 - mean_risk)
    return math.exp(math.sqrt(rho) * gap)


@dataclass(frozen=True)
class ContinuousRiskSummary:
    nu: float
    risk_low: np.ndarray     # risk1 for z <= nu, shape (G,)
    beta: np.ndarray         # slope of log risk1 above nu, shape (G,)
    rr_c: np.ndarray         # shape (G,)
    risk_mean: float         # risk0 * (1 - ve_overall)

    @property
    def alpha(self) -> np.ndarray:
        """Intercept of log risk1 above nu."""
        return np.log(self.risk_low) - self.beta * self.nu

    def theory(self) -> Dict[str, Tuple[float, ...]]:
        return {
            "rr_c": tuple(self.rr_c.tolist()),
            "beta_lat": tuple(self.beta.tolist()),
            "alpha_lat": tuple(self.alpha.tolist()),
            "nu": (self.nu,) * len(self.beta),
        }


def continuous_risk_summary(design: DesignParameters) -> ContinuousRiskSummary:
    nu = float(special.ndtri(design.plat_ve_lowest))
    ve_lowest = np.asarray(design.ve_lowest, dtype=float)
    betas = np.array([solve_latent_slope(design.ve_overall, v, design.plat_ve_lowest) for v in ve_lowest])
    risk_low = subgroup_risk(design.risk0, ve_lowest)
    rr_c = np.array([
        cor_relative_risk(design.risk0, v, b, nu, design.rho) for v, b in zip(ve_lowest, betas)
    ])
    return ContinuousRiskSummary(
        nu=nu,
        risk_low=risk_low,
        beta=betas,
        rr_c=rr_c,
        risk_mean=float(_check_unit_interval(design.risk0 * (1.0 - design.ve_overall), "mean risk")),
    )


RiskSummary = Union[DiscreteRiskSummary, ContinuousRiskSummary]


def summarize(design: DesignParameters) -> RiskSummary:
    """Theoretical risk quantities for every point of the efficacy grid."""
    if design.biom_type is BiomarkerType.CONTINUOUS:
        return continuous_risk_summary(design)
    return discrete_risk_summary(design)
