"""
Sampling Engine Adapter.

A narrow contract around a posterior-sampling engine: given a model, one
session's trials and a sampler configuration, return per-quantity
summaries (mean, sd, 2.5%/97.5% quantiles, R-hat across chains).

Two engines implement the contract:

* ``CmdStanEngine`` runs the package's Stan programs through cmdstanpy.
* ``MetropolisEngine`` is an in-process random-walk Metropolis sampler over
  the pure likelihoods in :mod:`model_definitions`, for machines without a
  CmdStan toolchain and for tests.

Chains never share state, so R-hat remains a between/within-chain ratio.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import arviz as az
import numpy as np

from .data_preparation import Session, build_stan_data
from .model_definitions import ModelSpec, log_density

logger = logging.getLogger(__name__)

_MODULE_DIR = Path(__file__).resolve().parent
DEFAULT_STAN_DIR = _MODULE_DIR / "models"

LOWER_QUANTILE = 0.025
UPPER_QUANTILE = 0.975


class SamplerFailure(RuntimeError):
    """Raised when a sampling run diverges, crashes or returns non-finite output."""
    pass


@dataclass(frozen=True)
class SamplerConfig:
    chains: int = 4
    draws: int = 4000
    warmup: int = 2000


@dataclass(frozen=True)
class ParameterSummary:
    mean: float
    sd: float
    lower: float
    upper: float
    rhat: float

    @property
    def width(self) -> float:
        """Width of the 95% credible interval."""
        return self.upper - self.lower


@dataclass(frozen=True)
class FitAttempt:
    """Output of one sampling run."""

    summaries: Dict[str, ParameterSummary]
    seed: int = 0
    engine: str = ""

    def diagnostic(self, params: Iterable[str]) -> float:
        """Maximum R-hat over ``params``; NaN if any of them is undefined."""
        values = [self.summaries[p].rhat for p in params]
        if not values or any(not np.isfinite(v) for v in values):
            return float("nan")
        return float(max(values))


# ──────────────────────────────────────────────────────────────────────
# Summaries
# ──────────────────────────────────────────────────────────────────────

def summarize_draws(draws_by_name: Mapping[str, np.ndarray]) -> Dict[str, ParameterSummary]:
    """
    Summarize ``(chain, draw)`` arrays.

    R-hat is the rank-normalized split R-hat from arviz.

    Raises:
        SamplerFailure: If any draw is non-finite.
    """
    summaries: Dict[str, ParameterSummary] = {}
    for name, draws in draws_by_name.items():
        draws = np.asarray(draws, dtype=float)
        if draws.ndim != 2:
            raise ValueError(f"{name}: expected (chain, draw) array, got {draws.shape}")
        if not np.all(np.isfinite(draws)):
            raise SamplerFailure(f"non-finite draws for {name}")
        flat = draws.ravel()
        summaries[name] = ParameterSummary(
            mean=float(np.mean(flat)),
            sd=float(np.std(flat, ddof=1)),
            lower=float(np.quantile(flat, LOWER_QUANTILE)),
            upper=float(np.quantile(flat, UPPER_QUANTILE)),
            rhat=float(az.rhat(draws, method="rank")),
        )
    return summaries


def with_derived(model: ModelSpec, draws_by_name: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """Add natural-scale draws for the model's derived quantities."""
    out = dict(draws_by_name)
    for name, source in model.derived:
        if name not in out:
            out[name] = np.exp(out[source])
    return out


# ──────────────────────────────────────────────────────────────────────
# Base engine
# ──────────────────────────────────────────────────────────────────────

class SamplingEngine:
    """Abstract base for sampling engines."""

    name = "base"

    def prepare(self, model: ModelSpec) -> None:
        """One-time setup per model (e.g. compilation). Optional."""

    def sample(
        self,
        model: ModelSpec,
        session: Session,
        sampler: SamplerConfig,
        seed: int,
    ) -> FitAttempt:
        """Run one fresh, independent sampling run.  Subclasses must override."""
        raise NotImplementedError


# ──────────────────────────────────────────────────────────────────────
# CmdStan
# ──────────────────────────────────────────────────────────────────────

class CmdStanEngine(SamplingEngine):
    """
    Runs the Stan programs under ``models/`` through cmdstanpy.

    With ``output_dir`` set, chain CSVs are kept under
    ``<output_dir>/<subject>/day<N>/<task>/seed_<seed>/``; without it
    cmdstanpy writes each run to a fresh temporary folder.  Any
    post-warm-up divergent transition fails the attempt.
    """

    name = "cmdstan"

    def __init__(self, stan_dir: Optional[Union[str, Path]] = None, output_dir: Optional[Union[str, Path]] = None):
        self.stan_dir = Path(stan_dir) if stan_dir else DEFAULT_STAN_DIR
        self.output_dir = str(output_dir) if output_dir else None
        self._models: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def prepare(self, model: ModelSpec) -> None:
        self._compiled(model)

    def _compiled(self, model: ModelSpec):
        # compile once even when several workers ask at the same time
        with self._lock:
            if model.name not in self._models:
                from cmdstanpy import CmdStanModel

                stan_file = self.stan_dir / model.stan_file
                if not stan_file.exists():
                    raise FileNotFoundError(f"Stan model not found: {stan_file}")
                logger.info("Compiling Stan model: %s", stan_file)
                self._models[model.name] = CmdStanModel(stan_file=str(stan_file))
            return self._models[model.name]

    def _run_dir(self, session: Session, seed: int) -> Optional[str]:
        # cmdstanpy names chain files by model and start second only,
        # so every attempt writes to its own folder
        if self.output_dir is None:
            return None
        key = session.key
        path = Path(self.output_dir) / key.subject / f"day{key.day}" / key.task.value / f"seed_{seed}"
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    def sample(self, model, session, sampler, seed):
        stan_model = self._compiled(model)
        data = build_stan_data(session, model)
        try:
            fit = stan_model.sample(
                data=data,
                chains=sampler.chains,
                iter_warmup=sampler.warmup,
                iter_sampling=sampler.draws,
                seed=seed,
                output_dir=self._run_dir(session, seed),
                show_progress=False,
            )
            frame = fit.draws_pd()
        except (RuntimeError, ValueError) as e:
            raise SamplerFailure(f"{session.key.label()}: {e}") from e

        divergent = fit.divergences
        if divergent is not None and int(np.sum(divergent)) > 0:
            raise SamplerFailure(
                f"{session.key.label()}: {int(np.sum(divergent))} divergent transitions"
            )

        names = model.quantity_names
        missing = [n for n in names if n not in frame.columns]
        if missing:
            raise SamplerFailure(f"{session.key.label()}: draws missing {missing}")

        draws = {
            name: np.stack([
                group[name].to_numpy() for _, group in frame.groupby("chain__", sort=True)
            ])
            for name in names
        }
        return FitAttempt(summarize_draws(draws), seed=seed, engine=self.name)


# ──────────────────────────────────────────────────────────────────────
# Random-walk Metropolis
# ──────────────────────────────────────────────────────────────────────

@dataclass
class _ChainState:
    rng: np.random.Generator
    position: np.ndarray
    log_p: float
    scale: np.ndarray
    accepted: int = 0
    draws: list = field(default_factory=list)


class MetropolisEngine(SamplingEngine):
    """
    Random-walk Metropolis with per-chain step-size tuning during warm-up.

    Each chain owns its RNG stream (spawned from the attempt seed) and its
    proposal scale, so chains are fully independent.
    """

    name = "metropolis"

    def __init__(self, tune_interval: int = 100, target_acceptance: float = 0.35, max_init_tries: int = 100):
        self.tune_interval = tune_interval
        self.target_acceptance = target_acceptance
        self.max_init_tries = max_init_tries

    def _log_p(self, model: ModelSpec, design, position: np.ndarray) -> float:
        params = dict(zip(model.parameter_names, position))
        return float(log_density(model, params, design)[0])

    def _init_chain(self, model, design, rng) -> _ChainState:
        lower = np.array([p.lower for p in model.parameters])
        upper = np.array([p.upper for p in model.parameters])
        span = upper - lower
        for _ in range(self.max_init_tries):
            # start in the central half of the support
            position = lower + span * rng.uniform(0.25, 0.75, size=len(span))
            log_p = self._log_p(model, design, position)
            if np.isfinite(log_p):
                return _ChainState(rng, position, log_p, span / 20.0)
        raise SamplerFailure("could not find a finite starting point")

    def sample(self, model, session, sampler, seed):
        design = session.design_arrays()
        streams = np.random.SeedSequence(seed).spawn(sampler.chains)
        chains = [
            self._init_chain(model, design, np.random.default_rng(s)) for s in streams
        ]

        total = sampler.warmup + sampler.draws
        for it in range(total):
            warming_up = it < sampler.warmup
            for chain in chains:
                proposal = chain.position + chain.scale * chain.rng.standard_normal(chain.position.size)
                log_p = self._log_p(model, design, proposal)
                if np.isnan(log_p):
                    raise SamplerFailure(
                        f"{session.key.label()}: log density is NaN at {proposal}"
                    )
                if np.log(chain.rng.uniform()) < log_p - chain.log_p:
                    chain.position, chain.log_p = proposal, log_p
                    chain.accepted += 1
                if warming_up:
                    if (it + 1) % self.tune_interval == 0:
                        rate = chain.accepted / self.tune_interval
                        chain.scale = chain.scale * np.exp(rate - self.target_acceptance)
                        chain.accepted = 0
                else:
                    chain.draws.append(chain.position.copy())

        stacked = np.stack([np.asarray(c.draws) for c in chains])  # (chain, draw, param)
        draws = {
            name: stacked[:, :, i] for i, name in enumerate(model.parameter_names)
        }
        draws = with_derived(model, draws)
        return FitAttempt(summarize_draws(draws), seed=seed, engine=self.name)


ENGINES = {
    CmdStanEngine.name: CmdStanEngine,
    MetropolisEngine.name: MetropolisEngine,
}


def create_engine(name: str, **kwargs: Any) -> SamplingEngine:
    """Instantiate an engine by name (``"cmdstan"`` or ``"metropolis"``)."""
    try:
        cls = ENGINES[name]
    except KeyError:
        raise ValueError(f"Unknown sampling engine: {name}") from None
    return cls(**kwargs)
