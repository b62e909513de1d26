"""
Design parameters for correlate-of-risk (CoR) power calculations.

A design describes one active-treatment arm of an efficacy trial: how many
cases and controls carry a biomarker measurement, the overall vaccine efficacy
(VE) and placebo risk, and how protection is spread across latent subgroups.

Biomarker types
---------------
- binary: two latent subgroups (lower 0, higher 2), two observed categories.
- trichotomous: three latent subgroups (0, 1, 2) and three observed categories.
- continuous: a latent Normal trait X*; VE is flat at ``ve_lowest`` for the
  ``plat_ve_lowest`` fraction with the lowest X* and rises above it.

Approaches for linking the observed biomarker S to the latent trait
-------------------------------------------------------------------
1) misclassification: S is X* passed through sensitivity/specificity and
   false-positive/false-negative rates (discrete biomarkers only).
2) latent correlation: S and X* are bivariate Normal with corr^2 = rho.

Sweeps
------
The efficacy grid (``ve_lat0``/``ve_lat1`` or ``ve_lowest``) is the x-axis of
every power curve. At most one other argument may be swept, and it is named
explicitly through :class:`VaryingArgument`.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from corpower.errors import InputValidationError


GRID_FIELDS = ("ve_lat0", "ve_lat1", "ve_lowest")
COUNT_FIELDS = ("n_cases_tx", "n_controls_tx", "n_cases_tx_with_s", "sims")

# Fields that move together when a sweep is requested under the group name.
VARYING_GROUPS: Dict[str, Tuple[str, ...]] = {
    "rho": ("rho",),
    "sens": ("sens", "spec", "fp0", "fn2"),
    "plat": ("plat0", "plat2", "p0", "p2"),
    "n_cases_tx": ("n_cases_tx", "n_controls_tx", "n_cases_tx_with_s"),
    "control_case_ratio": ("control_case_ratio",),
    "p": ("p",),
    "plat_ve_lowest": ("plat_ve_lowest",),
}
_GROUP_OF_FIELD = {name: group for group, members in VARYING_GROUPS.items() for name in members}

_SUM_TOL = 1e-9


class BiomarkerType(str, Enum):
    BINARY = "binary"
    TRICHOTOMOUS = "trichotomous"
    CONTINUOUS = "continuous"

    @property
    def is_discrete(self) -> bool:
        return self is not BiomarkerType.CONTINUOUS


class Approach(Enum):
    MISCLASSIFICATION = 1
    LATENT_CORRELATION = 2


# ---------- Validation helpers ----------

def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Check that ``value`` is a real number in [0,1], optionally open at either end."""
    if value is None or not math.isfinite(value):
        raise InputValidationError(f"{name} must be a real number in [0,1], got {value!r}")
    above = value >= 0.0 if allow_zero else value > 0.0
    below = value <= 1.0 if allow_one else value < 1.0
    if not (above and below):
        lo = "[" if allow_zero else "("
        hi = "]" if allow_one else ")"
        raise InputValidationError(f"{name} must lie in {lo}0,1{hi}, got {value}")


def validate_positive(value: float, name: str) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise InputValidationError(f"{name} must be a positive real number, got {value!r}")


def _is_vector(value: Any) -> bool:
    return isinstance(value, (list, tuple, np.ndarray))


def _as_grid(value: Any, name: str) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    try:
        arr = np.ravel(np.asarray(value, dtype=float))
    except (TypeError, ValueError) as exc:
        raise InputValidationError(f"{name} must contain real numbers, got {value!r}") from exc
    if arr.size == 0:
        raise InputValidationError(f"{name} must contain at least one value")
    if not np.all(np.isfinite(arr)):
        raise InputValidationError(f"{name} must contain only finite values")
    return tuple(float(v) for v in arr)


def _is_real(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _as_count(value: Any, name: str) -> int:
    if not _is_real(value):
        raise InputValidationError(f"{name} must be a positive integer, got {value!r}")
    as_float = float(value)
    if not math.isfinite(as_float) or as_float != math.floor(as_float) or as_float < 1:
        raise InputValidationError(f"{name} must be a positive integer, got {value!r}")
    return int(as_float)


def _coerce_biom_type(value: Any) -> BiomarkerType:
    if isinstance(value, BiomarkerType):
        return value
    try:
        return BiomarkerType(str(value).lower())
    except ValueError:
        choices = ", ".join(b.value for b in BiomarkerType)
        raise InputValidationError(f"biom_type must be one of {choices}, got {value!r}") from None


def _coerce_approach(value: Any) -> Approach:
    if isinstance(value, Approach):
        return value
    try:
        if isinstance(value, str):
            return Approach[value.upper()]
        return Approach(int(value))
    except (KeyError, ValueError, TypeError):
        raise InputValidationError(
            f"approach must be 1/'misclassification' or 2/'latent_correlation', got {value!r}"
        ) from None


# ---------- Design record ----------

@dataclass(frozen=True)
class DesignParameters:
    n_cases_tx: int
    n_controls_tx: int
    n_cases_tx_with_s: int
    ve_overall: float
    risk0: float
    biom_type: BiomarkerType = BiomarkerType.CONTINUOUS
    approach: Optional[Approach] = None
    control_case_ratio: float = 5.0
    cohort: bool = False
    p: Optional[float] = None           # sub-cohort sampling probability (cohort=True)

    # Discrete biomarkers
    ve_lat0: Optional[Tuple[float, ...]] = None
    ve_lat1: Optional[Tuple[float, ...]] = None  # defaults to ve_overall at every grid point
    plat0: Optional[float] = None
    plat2: Optional[float] = None
    p0: Optional[float] = None
    p2: Optional[float] = None
    sens: Optional[float] = None
    spec: Optional[float] = None
    fp0: float = 0.0
    fn2: float = 0.0

    # Continuous biomarker
    ve_lowest: Optional[Tuple[float, ...]] = None
    plat_ve_lowest: Optional[float] = None

    # Latent-correlation approach
    sigma2obs: float = 1.0
    rho: float = 1.0

    sims: int = 100
    alpha: float = 0.05
    seed: Optional[int] = 12345

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.name not in GRID_FIELDS and _is_vector(getattr(self, f.name)):
                raise InputValidationError(
                    f"{f.name} must be a scalar; sweep it with VaryingArgument instead"
                )
        for name in COUNT_FIELDS:
            object.__setattr__(self, name, _as_count(getattr(self, name), name))
        for name in GRID_FIELDS:
            object.__setattr__(self, name, _as_grid(getattr(self, name), name))
        biom_type = _coerce_biom_type(self.biom_type)
        object.__setattr__(self, "biom_type", biom_type)

        if self.approach is None:
            if biom_type.is_discrete and self.sens is not None:
                approach = Approach.MISCLASSIFICATION
            else:
                approach = Approach.LATENT_CORRELATION
        else:
            approach = _coerce_approach(self.approach)
        object.__setattr__(self, "approach", approach)

        if biom_type is BiomarkerType.TRICHOTOMOUS and self.ve_lat1 is None and self.ve_lat0 is not None:
            object.__setattr__(self, "ve_lat1", (float(self.ve_overall),) * len(self.ve_lat0))
        self.validate()

    # -- derived sizes --

    @property
    def grid(self) -> Tuple[float, ...]:
        """Efficacy axis of the power curve."""
        return self.ve_lowest if self.biom_type is BiomarkerType.CONTINUOUS else self.ve_lat0

    @property
    def n_controls_with_s(self) -> int:
        """Controls with biomarker data in a case-control (non-cohort) sample."""
        return int(round(self.control_case_ratio * self.n_cases_tx_with_s))

    @property
    def expected_controls_with_s(self) -> float:
        if self.cohort:
            return float(self.p) * self.n_controls_tx
        return float(self.n_controls_with_s)

    @property
    def plat1(self) -> float:
        return 1.0 - self.plat0 - self.plat2

    # -- validation --

    def validate(self) -> None:
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)
        validate_probability(self.risk0, "risk0", allow_zero=False, allow_one=False)
        validate_probability(self.ve_overall, "ve_overall", allow_one=False)
        if self.n_cases_tx_with_s > self.n_cases_tx:
            raise InputValidationError("n_cases_tx_with_s cannot exceed n_cases_tx")
        if self.cohort:
            if self.p is None:
                raise InputValidationError("p is required when cohort=True")
            validate_probability(self.p, "p", allow_zero=False)
        else:
            validate_positive(self.control_case_ratio, "control_case_ratio")
            if self.n_controls_with_s < 1:
                raise InputValidationError("control_case_ratio * n_cases_tx_with_s must be at least 1")
            if self.n_controls_with_s > self.n_controls_tx:
                raise InputValidationError(
                    f"control_case_ratio * n_cases_tx_with_s = {self.n_controls_with_s} "
                    f"exceeds n_controls_tx = {self.n_controls_tx}"
                )
        if self.seed is not None and (
            not _is_real(self.seed) or not math.isfinite(self.seed) or int(self.seed) != self.seed or self.seed < 0
        ):
            raise InputValidationError(f"seed must be a non-negative integer or None, got {self.seed!r}")
        if self.approach is Approach.LATENT_CORRELATION:
            validate_positive(self.sigma2obs, "sigma2obs")
            validate_probability(self.rho, "rho", allow_zero=False)

        if self.biom_type is BiomarkerType.CONTINUOUS:
            self._validate_continuous()
        else:
            self._validate_discrete()

    def _validate_discrete(self) -> None:
        if self.ve_lat0 is None:
            raise InputValidationError(f"ve_lat0 is required for a {self.biom_type.value} biomarker")
        for value in self.ve_lat0:
            validate_probability(value, "ve_lat0")
        if self.biom_type is BiomarkerType.TRICHOTOMOUS:
            if len(self.ve_lat1) != len(self.ve_lat0):
                raise InputValidationError(
                    f"ve_lat0 and ve_lat1 must have the same length "
                    f"({len(self.ve_lat0)} != {len(self.ve_lat1)})"
                )
            for value in self.ve_lat1:
                validate_probability(value, "ve_lat1")

        for name in ("plat0", "plat2"):
            value = getattr(self, name)
            if value is None:
                raise InputValidationError(f"{name} is required for a {self.biom_type.value} biomarker")
            validate_probability(value, name, allow_zero=False, allow_one=False)
        self._validate_partition(self.plat0, self.plat2, "plat0 + plat2")

        implied_observed = (
            self.biom_type is BiomarkerType.BINARY and self.approach is Approach.MISCLASSIFICATION
        )
        if not implied_observed or self.p0 is not None or self.p2 is not None:
            for name in ("p0", "p2"):
                value = getattr(self, name)
                if value is None:
                    raise InputValidationError(f"{name} is required for a {self.biom_type.value} biomarker")
                validate_probability(value, name, allow_zero=False, allow_one=False)
            self._validate_partition(self.p0, self.p2, "p0 + p2")

        if self.approach is Approach.MISCLASSIFICATION:
            for name in ("sens", "spec"):
                value = getattr(self, name)
                if value is None:
                    raise InputValidationError(f"{name} is required for the misclassification approach")
                validate_probability(value, name)
            validate_probability(self.fp0, "fp0")
            validate_probability(self.fn2, "fn2")
            if self.spec + self.fp0 > 1.0 + _SUM_TOL:
                raise InputValidationError("spec + fp0 must not exceed 1")
            if self.sens + self.fn2 > 1.0 + _SUM_TOL:
                raise InputValidationError("sens + fn2 must not exceed 1")
            if implied_observed and self.p0 is not None:
                implied = self.spec * self.plat0 + (1.0 - self.sens) * self.plat2
                if abs(implied - self.p0) > 1e-6:
                    raise InputValidationError(
                        f"for a binary biomarker p0 is implied by sens/spec ({implied:.6g}); got {self.p0}"
                    )

    def _validate_partition(self, low: float, high: float, label: str) -> None:
        total = low + high
        if self.biom_type is BiomarkerType.BINARY:
            if abs(total - 1.0) > _SUM_TOL:
                raise InputValidationError(f"{label} must equal 1 for a binary biomarker, got {total}")
        elif total >= 1.0:
            raise InputValidationError(f"{label} must be < 1 for a trichotomous biomarker, got {total}")

    def _validate_continuous(self) -> None:
        if self.approach is not Approach.LATENT_CORRELATION:
            raise InputValidationError("continuous biomarkers support only the latent-correlation approach")
        if self.ve_lowest is None:
            raise InputValidationError("ve_lowest is required for a continuous biomarker")
        if self.plat_ve_lowest is None:
            raise InputValidationError("plat_ve_lowest is required for a continuous biomarker")
        validate_probability(self.plat_ve_lowest, "plat_ve_lowest", allow_zero=False, allow_one=False)
        for value in self.ve_lowest:
            validate_probability(value, "ve_lowest")
            if value > self.ve_overall + _SUM_TOL:
                raise InputValidationError(f"ve_lowest ({value}) cannot exceed ve_overall ({self.ve_overall})")
            if self.plat_ve_lowest * (1.0 - value) >= 1.0 - self.ve_overall:
                raise InputValidationError(
                    f"ve_lowest={value} with plat_ve_lowest={self.plat_ve_lowest} leaves no risk "
                    f"for the remaining recipients to reach ve_overall={self.ve_overall}"
                )

    def with_point(self, varying: "VaryingArgument", index: int) -> "DesignParameters":
        """Return a validated copy with the ``index``-th sweep value applied."""
        return replace(self, **varying.point(index))


# ---------- Sweep specification ----------

def _format_value(value: float) -> str:
    return f"{value:g}"


@dataclass(frozen=True)
class VaryingArgument:
    """The single swept argument: a group name and per-field value sequences."""

    name: str
    values: Mapping[str, Tuple[float, ...]]

    def __post_init__(self) -> None:
        members = VARYING_GROUPS.get(self.name)
        if members is None:
            choices = ", ".join(VARYING_GROUPS)
            raise InputValidationError(f"unrecognized varying argument {self.name!r}; expected one of {choices}")
        if not self.values:
            raise InputValidationError(f"varying argument {self.name!r} has no values")
        normalized: Dict[str, Tuple[float, ...]] = {}
        for key, seq in self.values.items():
            if key not in members:
                raise InputValidationError(f"{key} cannot vary as part of {self.name!r} (allowed: {members})")
            normalized[key] = _as_grid(seq, key)
        lengths = {len(v) for v in normalized.values()}
        if len(lengths) != 1:
            raise InputValidationError(f"all fields of varying argument {self.name!r} must have the same length")
        object.__setattr__(self, "values", normalized)

    @classmethod
    def of(cls, name: str, **values: Sequence[float]) -> "VaryingArgument":
        return cls(name, values)

    def __len__(self) -> int:
        return len(next(iter(self.values.values())))

    def point(self, index: int) -> Dict[str, float]:
        return {key: seq[index] for key, seq in self.values.items()}

    def label(self, index: int) -> str:
        """Short tag for the ``index``-th value, e.g. ``rho_0.9``."""
        lead = self.name if self.name in self.values else next(iter(self.values))
        return f"{self.name}_{_format_value(self.values[lead][index])}"


def expand_sweep(design: DesignParameters, varying: Optional[VaryingArgument]) -> List[DesignParameters]:
    """Resolve and validate every sweep point up front."""
    if varying is None:
        return [design]
    return [design.with_point(varying, i) for i in range(len(varying))]


def resolve_config(config: Mapping[str, Any]) -> Tuple[DesignParameters, Optional[VaryingArgument]]:
    """Build a design from a flat mapping in which at most one argument is a vector.

    Efficacy grids may always be sequences. Any other length>1 sequence names
    the sweep; fields belonging to different sweep groups raise
    :class:`InputValidationError`.
    """
    known = {f.name for f in fields(DesignParameters)}
    unknown = sorted(set(config) - known)
    if unknown:
        raise InputValidationError(f"unrecognized design option(s): {', '.join(unknown)}")

    scalars: Dict[str, Any] = {}
    vectors: Dict[str, List[Any]] = {}
    for key, value in config.items():
        if key in GRID_FIELDS or not _is_vector(value):
            scalars[key] = value
            continue
        flat = list(np.ravel(np.asarray(value)))
        if len(flat) == 1:
            scalars[key] = flat[0]
        else:
            vectors[key] = flat

    if not vectors:
        return DesignParameters(**scalars), None

    groups = set()
    for key in vectors:
        group = _GROUP_OF_FIELD.get(key)
        if group is None:
            raise InputValidationError(f"{key} cannot be supplied as a vector")
        groups.add(group)
    if len(groups) > 1:
        raise InputValidationError(
            f"only one argument may vary per call; got vectors for {', '.join(sorted(vectors))}"
        )
    varying = VaryingArgument(groups.pop(), vectors)
    base = dict(scalars)
    base.update({key: seq[0] for key, seq in vectors.items()})
    design = DesignParameters(**base)
    expand_sweep(design, varying)
    return design, varying
