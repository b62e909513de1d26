"""
Power to detect a correlate of risk (CoR) in the active arm of an efficacy trial.

This module estimates, by simulation, the power of a two-sided Wald test for
an association between a biomarker S measured in vaccine recipients and the
clinical endpoint, across a grid of latent-subgroup efficacy assumptions.

Approach
--------
- Risk model: latent subgroups (or a latent Normal trait) with their own VE,
  constrained to average to VEoverall; see ``corpower.risk_model``.
- Measurement model: S is a misclassified version of the latent subgroup, or
  a Normal variable with corr(S, X*)^2 = rho; see ``corpower.simulate``.
- Sampling: all cases with S (n_cases_tx_with_s) plus either
  control_case_ratio controls per case, or a Bernoulli(p) sub-cohort of the
  n_controls_tx controls (case-cohort design).
- Analysis: logistic regression of case status on S; see ``corpower.fit``.
  The CoR is detected when |estimate / SE| exceeds the Normal critical value.
- Power at a grid point is the rejection rate over ``sims`` replicates.
  Replicates that cannot be fitted count as non-rejections and are tallied.

Reproducibility
---------------
Replicate r at grid point j draws from SeedSequence(seed, spawn_key=(j, r)),
so results do not depend on n_jobs or chunk_size, and every value of a sweep
reuses the same random streams.

Usage
-----
1) Expected case/control counts at the sampling timepoint:
   python3 -m corpower.power_cor --mode n --n-rand 4100 --tau 3.5 --taumax 24 \
     --ve-tau-to-taumax 0.75 --ve-0-to-tau 0.375 --risk0 0.034 \
     --dropout-risk 0.1 --prop-cases-with-s 1

2) Power curves for a design stored as JSON (one key per DesignParameters
   field; at most one non-grid field may be a list):
   python3 -m corpower.power_cor --mode power --config design.json \
     --n-jobs -1 --save-dir out --save-file tri.pkl
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.stats as sps

import corpower.simulate as biomarker_sim
from corpower import risk_model
from corpower.compute_n import compute_n
from corpower.design import (
    BiomarkerType,
    DesignParameters,
    VaryingArgument,
    expand_sweep,
    resolve_config,
    validate_probability,
)
from corpower.errors import DegenerateReplicateError, InputValidationError
from corpower.fit import fit_replicate


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64
_DEGENERATE_WARN_SHARE = 0.05


# ---------- Result bundle ----------

@dataclass(frozen=True)
class DesignEcho:
    """Inputs that produced a result: the resolved design and the sweep value."""

    design: DesignParameters
    varying_arg: Optional[str] = None
    varying_value: Tuple[Tuple[str, float], ...] = ()


@dataclass(frozen=True)
class PowerResult:
    echo: DesignEcho
    power: Tuple[float, ...]
    n_rejected: Tuple[int, ...]
    n_degenerate: Tuple[int, ...]
    mean_estimate: Tuple[float, ...]
    theory_items: Tuple[Tuple[str, Tuple[float, ...]], ...]

    @property
    def theory(self) -> Dict[str, Tuple[float, ...]]:
        """Theoretical quantities by name, one value per grid point (a fresh copy)."""
        return dict(self.theory_items)

    @property
    def grid(self) -> Tuple[float, ...]:
        return self.echo.design.grid

    @property
    def grid_name(self) -> str:
        return "ve_lowest" if self.echo.design.biom_type is BiomarkerType.CONTINUOUS else "ve_lat0"

    @property
    def n_controls_with_s(self) -> float:
        return self.echo.design.expected_controls_with_s

    def to_frame(self, alpha_ci: float = 0.05) -> pd.DataFrame:
        """One row per grid point: power with Wilson interval and theoretical quantities."""
        sims = self.echo.design.sims
        rows = []
        for j, value in enumerate(self.grid):
            low, high = binomial_wilson_ci(self.n_rejected[j], sims, alpha=alpha_ci)
            row = {
                self.grid_name: value,
                "power": self.power[j],
                "ci_low": low,
                "ci_high": high,
                "n_degenerate": self.n_degenerate[j],
            }
            row.update({name: values[j] for name, values in self.theory.items()})
            rows.append(row)
        df = pd.DataFrame(rows)
        for name, value in self.echo.varying_value:
            df[name] = value
        return df


@dataclass(frozen=True)
class ReplicateOutcome:
    rejected: bool
    degenerate: bool
    estimate: float = float("nan")


# ---------- Worker plumbing ----------

@dataclass(frozen=True)
class _ChunkInput:
    scenario: biomarker_sim.Scenario
    grid_index: int
    start: int
    count: int
    entropy: int
    z_crit: float


@dataclass
class _ChunkResult:
    grid_index: int
    rejected: int
    degenerate: int
    estimate_sum: float
    valid_count: int


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """None/0/1 run serially; -1 uses every core, -2 all but one, and so on."""
    if not n_jobs:
        return 1
    if n_jobs < 0:
        return max(1, (os.cpu_count() or 1) + 1 + n_jobs)
    return max(1, int(n_jobs))


def _effective_chunk_size(sims: int, chunk_size: Optional[int]) -> int:
    size = DEFAULT_CHUNK_SIZE if chunk_size is None or chunk_size <= 0 else int(chunk_size)
    return min(size, max(1, sims))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    return [(start, min(chunk_size, total - start)) for start in range(0, max(0, total), chunk_size)]


def replicate_seed(entropy: int, grid_index: int, replicate: int) -> np.random.SeedSequence:
    return np.random.SeedSequence(entropy, spawn_key=(grid_index, replicate))


def run_replicate(scenario: biomarker_sim.Scenario, seed: np.random.SeedSequence, z_crit: float) -> ReplicateOutcome:
    """Simulate and fit one replicate trial."""
    rng = np.random.default_rng(seed)
    data = biomarker_sim.simulate_replicate(scenario, rng)
    try:
        fit = fit_replicate(data, scenario.biom_type)
    except DegenerateReplicateError as exc:
        logger.debug("degenerate replicate: %s", exc)
        return ReplicateOutcome(rejected=False, degenerate=True)
    return ReplicateOutcome(rejected=abs(fit.wald) > z_crit, degenerate=False, estimate=fit.estimate)


def _run_chunk(payload: _ChunkInput) -> _ChunkResult:
    result = _ChunkResult(grid_index=payload.grid_index, rejected=0, degenerate=0, estimate_sum=0.0, valid_count=0)
    for replicate in range(payload.start, payload.start + payload.count):
        seed = replicate_seed(payload.entropy, payload.grid_index, replicate)
        outcome = run_replicate(payload.scenario, seed, payload.z_crit)
        result.rejected += int(outcome.rejected)
        if outcome.degenerate:
            result.degenerate += 1
        else:
            result.estimate_sum += outcome.estimate
            result.valid_count += 1
    return result


def _execute(payloads: List[_ChunkInput], worker_count: int) -> List[_ChunkResult]:
    if worker_count <= 1 or len(payloads) <= 1:
        return [_run_chunk(payload) for payload in payloads]
    max_workers = min(worker_count, len(payloads))
    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_run_chunk, payloads))
    except (PermissionError, NotImplementedError, OSError):
        logger.info("process pool unavailable, running %d chunks on threads", len(payloads))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_run_chunk, payloads))


# ---------- Power ----------

def _z_two_sided(alpha: float) -> float:
    return float(sps.norm.ppf(1.0 - alpha / 2.0))


def _with_concrete_seed(design: DesignParameters) -> DesignParameters:
    if design.seed is not None:
        return design
    return replace(design, seed=int(np.random.SeedSequence().entropy))


def _simulate_power(
    design: DesignParameters,
    summary: risk_model.RiskSummary,
    echo: DesignEcho,
    n_jobs: Optional[int],
    chunk_size: Optional[int],
) -> PowerResult:
    scenarios = biomarker_sim.scenarios_for(design, summary)
    z_crit = _z_two_sided(design.alpha)
    chunks = _chunk_indices(design.sims, _effective_chunk_size(design.sims, chunk_size))
    payloads = [
        _ChunkInput(scenario=scenario, grid_index=j, start=start, count=count, entropy=int(design.seed), z_crit=z_crit)
        for j, scenario in enumerate(scenarios)
        for start, count in chunks
    ]

    n_grid = len(scenarios)
    rejected = np.zeros(n_grid, dtype=int)
    degenerate = np.zeros(n_grid, dtype=int)
    estimate_sum = np.zeros(n_grid)
    valid = np.zeros(n_grid, dtype=int)
    for chunk in _execute(payloads, _resolve_n_jobs(n_jobs)):
        rejected[chunk.grid_index] += chunk.rejected
        degenerate[chunk.grid_index] += chunk.degenerate
        estimate_sum[chunk.grid_index] += chunk.estimate_sum
        valid[chunk.grid_index] += chunk.valid_count

    for j in np.flatnonzero(degenerate > _DEGENERATE_WARN_SHARE * design.sims):
        logger.warning(
            "grid point %d: %d of %d replicates could not be fitted and count as non-rejections",
            j, degenerate[j], design.sims,
        )
    with np.errstate(invalid="ignore", divide="ignore"):
        mean_estimate = np.where(valid > 0, estimate_sum / np.maximum(valid, 1), np.nan)
    return PowerResult(
        echo=echo,
        power=tuple((rejected / design.sims).tolist()),
        n_rejected=tuple(int(v) for v in rejected),
        n_degenerate=tuple(int(v) for v in degenerate),
        mean_estimate=tuple(mean_estimate.tolist()),
        theory_items=tuple(summary.theory().items()),
    )


def iter_power_sweep(
    design: DesignParameters,
    varying: Optional[VaryingArgument] = None,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Iterator[PowerResult]:
    """Yield one PowerResult per sweep value, in order.

    Every sweep point, including its derived risks, is validated before the
    first replicate is simulated. Stopping the iteration early leaves the
    results already yielded intact.
    """
    design = _with_concrete_seed(design)
    points = expand_sweep(design, varying)
    summaries = [risk_model.summarize(point) for point in points]
    for i, (point, summary) in enumerate(zip(points, summaries)):
        if varying is None:
            echo = DesignEcho(design=point)
        else:
            echo = DesignEcho(design=point, varying_arg=varying.name, varying_value=tuple(varying.point(i).items()))
            logger.info("%s: sweep value %d/%d %s", varying.name, i + 1, len(points), dict(echo.varying_value))
        yield _simulate_power(point, summary, echo, n_jobs, chunk_size)


def compute_power_sweep(
    design: DesignParameters,
    varying: Optional[VaryingArgument] = None,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> List[PowerResult]:
    return list(iter_power_sweep(design, varying, n_jobs=n_jobs, chunk_size=chunk_size))


def compute_power(
    design: DesignParameters,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> PowerResult:
    """Power curve over the efficacy grid of a single design."""
    return compute_power_sweep(design, None, n_jobs=n_jobs, chunk_size=chunk_size)[0]


def compute_power_from_config(
    config: Mapping[str, object],
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> List[PowerResult]:
    """Power for a flat option mapping in which at most one argument is a vector."""
    design, varying = resolve_config(config)
    return compute_power_sweep(design, varying, n_jobs=n_jobs, chunk_size=chunk_size)


# ---------- Analytic companions ----------

def _two_sided_power_normal(lam: float, alpha: float) -> float:
    z = _z_two_sided(alpha)
    return float(sps.norm.sf(z - lam) + sps.norm.cdf(-z - lam))


def asymptotic_power_binary(scenario: biomarker_sim.DiscreteScenario, alpha: float = 0.05) -> float:
    """Large-sample Wald power for the log odds ratio of a binary biomarker.

    Uses the observed high-response probabilities among cases and controls and
    the usual 2x2 variance 1/a + 1/b + 1/c + 1/d with expected cell counts.
    """
    validate_probability(alpha, "alpha", allow_zero=False, allow_one=False)
    if not isinstance(scenario, biomarker_sim.DiscreteScenario) or scenario.biom_type is not BiomarkerType.BINARY:
        raise InputValidationError("asymptotic power is available for binary biomarkers only")
    if scenario.sampling.cohort:
        raise InputValidationError("asymptotic power assumes a fixed number of controls (cohort=False)")

    q_case = float(scenario.classification[2] @ scenario.case_probs)
    q_control = float(scenario.classification[2] @ scenario.control_probs)
    n_case, n_control = scenario.sampling.n_cases, scenario.sampling.n_controls
    log_or = math.log(q_case / (1.0 - q_case)) - math.log(q_control / (1.0 - q_control))
    var = (1.0 / (n_case * q_case) + 1.0 / (n_case * (1.0 - q_case))
           + 1.0 / (n_control * q_control) + 1.0 / (n_control * (1.0 - q_control)))
    return _two_sided_power_normal(log_or / math.sqrt(var), alpha)


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for the proportion k/n."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z2 = _z_two_sided(alpha) ** 2
    phat = k / n
    denom = 1.0 + z2 / n
    center = (phat + z2 / (2.0 * n)) / denom
    half = math.sqrt(z2) / denom * math.sqrt(phat * (1.0 - phat) / n + z2 / (4.0 * n * n))
    return max(0.0, center - half), min(1.0, center + half)


# ---------- CLI ----------

def _print_result(result: PowerResult) -> None:
    design = result.echo.design
    print(f"Power for a {design.biom_type.value} CoR (approach {design.approach.value})")
    if result.echo.varying_arg is not None:
        values = ", ".join(f"{k}={v:g}" for k, v in result.echo.varying_value)
        print(f"  Varying {result.echo.varying_arg}: {values}")
    print(f"  cases with S: {design.n_cases_tx_with_s}, controls with S (expected): {result.n_controls_with_s:.1f}")
    print(f"  VEoverall={design.ve_overall}, risk0={design.risk0}, alpha={design.alpha}, sims={design.sims}")
    print(result.to_frame().to_string(index=False, float_format=lambda v: f"{v:.4f}"))
    print()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Power to detect a correlate of risk in a vaccine efficacy trial")
    parser.add_argument("--mode", choices=["power", "n"], default="power")
    parser.add_argument("--config", help="JSON file with DesignParameters fields (mode=power)")
    parser.add_argument("--n-jobs", type=int, default=1, help="Worker processes (-1 uses all cores)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Replicates per worker task")
    parser.add_argument("--save-dir", help="Directory for pickled results (mode=power)")
    parser.add_argument("--save-file", default="corpower.pkl", help="File name for pickled results")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    # Sample-size projection
    parser.add_argument("--n-rand", type=int, default=4100, help="Participants randomized to the active arm")
    parser.add_argument("--tau", type=float, default=3.5, help="Biomarker sampling timepoint")
    parser.add_argument("--taumax", type=float, default=24.0, help="End of follow-up")
    parser.add_argument("--ve-tau-to-taumax", type=float, default=0.75, help="VE between tau and taumax")
    parser.add_argument("--ve-0-to-tau", type=float, default=0.375, help="VE between 0 and tau")
    parser.add_argument("--risk0", type=float, default=0.034, help="Placebo risk between tau and taumax")
    parser.add_argument("--dropout-risk", type=float, default=0.1, help="Dropout risk between 0 and taumax")
    parser.add_argument("--prop-cases-with-s", type=float, default=1.0, help="Proportion of cases with S measured")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.mode == "n":
        est = compute_n(
            n_rand=args.n_rand,
            tau=args.tau,
            taumax=args.taumax,
            ve_tau_to_taumax=args.ve_tau_to_taumax,
            ve_0_to_tau=args.ve_0_to_tau,
            risk0=args.risk0,
            dropout_risk=args.dropout_risk,
            prop_cases_with_s=args.prop_cases_with_s,
        )
        print("Expected counts in the active arm")
        print(f"  At risk at tau={args.tau}: {est.n}")
        print(f"  Cases between tau and taumax={args.taumax}: {est.n_cases}")
        print(f"  Controls through taumax: {est.n_controls}")
        print(f"  Cases with S measured: {est.n_cases_with_s}")
        return

    if not args.config:
        parser.error("--config is required when --mode power")
    with open(args.config, "r", encoding="utf-8") as fh:
        config = json.load(fh)
    results = compute_power_from_config(config, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
    for result in results:
        _print_result(result)
    if args.save_dir:
        from corpower import storage

        for path in storage.save_results(results, args.save_dir, args.save_file):
            print(f"Saved {path}")


if __name__ == "__main__":
    main()
