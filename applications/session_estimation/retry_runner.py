"""
Convergence-Retry Runner.

Drives the sampling engine for one session until the convergence
diagnostic (max R-hat over the model's convergence parameters) drops below
the acceptance threshold, or the attempt budget is spent:

    PENDING → ATTEMPTING → {CONVERGED, EXHAUSTED}

Every attempt is a fresh, independent run with its own seed.  The best
attempt seen so far is kept, so an exhausted session still yields a
best-effort estimate flagged ``converged=False``.
"""
from __future__ import annotations

import logging
import math
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .data_preparation import Session, SessionKey
from .model_definitions import ModelSpec, Task
from .sampling import FitAttempt, ParameterSummary, SamplerConfig, SamplerFailure, SamplingEngine

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = ("mean", "sd", "lower", "upper", "rhat")


class RunnerState(Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


class NoUsableAttemptError(RuntimeError):
    """Raised when every attempt for a session failed, leaving no estimate."""

    def __init__(self, key: SessionKey, attempts: int):
        super().__init__(f"{key.label()}: all {attempts} sampling attempts failed")
        self.key = key
        self.attempts = attempts


@dataclass(frozen=True)
class FitResult:
    """The retained best attempt for a session plus bookkeeping."""

    key: SessionKey
    model_name: str
    summaries: Dict[str, ParameterSummary]
    attempts: int
    failures: int
    diagnostic: float
    converged: bool
    seed: int
    best_trace: Tuple[float, ...] = ()

    def estimate(self, name: str) -> float:
        return self.summaries[name].mean

    def to_record(self) -> Dict[str, Any]:
        """Flat row for the per-task store."""
        record: Dict[str, Any] = {
            "subject": self.key.subject,
            "day": self.key.day,
            "task": self.key.task.value,
            "model": self.model_name,
            "attempts": self.attempts,
            "failures": self.failures,
            "diagnostic": self.diagnostic,
            "converged": self.converged,
            "seed": self.seed,
        }
        for name, summary in self.summaries.items():
            for f in SUMMARY_FIELDS:
                record[f"{name}_{f}"] = getattr(summary, f)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any], model: ModelSpec) -> "FitResult":
        """
        Rebuild a result from a store row.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field cannot be converted.
        """
        summaries = {
            name: ParameterSummary(
                **{f: float(record[f"{name}_{f}"]) for f in SUMMARY_FIELDS}
            )
            for name in model.quantity_names
        }
        converged = record["converged"]
        if isinstance(converged, str):
            if converged not in ("True", "False"):
                raise ValueError(f"invalid converged flag: {converged!r}")
            converged = converged == "True"
        return cls(
            key=SessionKey(str(record["subject"]), int(record["day"]), Task(record["task"])),
            model_name=str(record["model"]),
            summaries=summaries,
            attempts=int(record["attempts"]),
            failures=int(record["failures"]),
            diagnostic=float(record["diagnostic"]),
            converged=bool(converged),
            seed=int(record["seed"]),
        )


def attempt_seed(base_seed: int, key: SessionKey, attempt: int) -> int:
    """Deterministic, per-session, per-attempt seed."""
    entropy = [
        base_seed,
        zlib.crc32(key.subject.encode()),
        key.day & 0xFFFFFFFF,
        zlib.crc32(key.task.value.encode()),
        attempt,
    ]
    state = np.random.SeedSequence(entropy).generate_state(1)[0]
    return int(state % (2**31 - 1))


class ConvergenceRetryRunner:
    """
    Repeats sampling attempts for one session until convergence.

    Args:
        engine: Sampling engine adapter.
        model: Model definition; its ``convergence_params`` name the
            parameters whose R-hat is checked.
        sampler: Chains, draws and warm-up per attempt.
        rhat_threshold: Accept once the diagnostic is strictly below this.
        attempt_budget: Hard cap on attempts per session.
        seed: Base seed for per-attempt seed derivation.
    """

    def __init__(
        self,
        engine: SamplingEngine,
        model: ModelSpec,
        sampler: SamplerConfig,
        *,
        rhat_threshold: float = 1.01,
        attempt_budget: int = 100,
        seed: int = 12345,
    ):
        if attempt_budget < 1:
            raise ValueError("attempt_budget must be ≥ 1")
        self.engine = engine
        self.model = model
        self.sampler = sampler
        self.rhat_threshold = rhat_threshold
        self.attempt_budget = attempt_budget
        self.seed = seed

    def run(self, session: Session) -> FitResult:
        """
        Estimate one session.

        Returns:
            The best attempt's summaries, flagged converged or not.

        Raises:
            NoUsableAttemptError: If no attempt produced a finite diagnostic.
        """
        key = session.key
        state = RunnerState.PENDING
        attempts = 0
        failures = 0
        best: Optional[FitAttempt] = None
        best_diagnostic = math.inf
        trace: List[float] = []

        state = self._next_state(state)
        while state is RunnerState.ATTEMPTING:
            seed = attempt_seed(self.seed, key, attempts)
            diagnostic = math.nan
            try:
                attempt = self.engine.sample(self.model, session, self.sampler, seed)
                diagnostic = attempt.diagnostic(self.model.convergence_params)
            except SamplerFailure as e:
                logger.warning("%s attempt %d failed: %s", key.label(), attempts + 1, e)
            attempts += 1

            if math.isnan(diagnostic):
                failures += 1
            elif diagnostic < best_diagnostic:
                best, best_diagnostic = attempt, diagnostic
            trace.append(best_diagnostic)

            logger.debug(
                "%s attempt %d: R-hat=%.4f (best %.4f)",
                key.label(),
                attempts,
                diagnostic,
                best_diagnostic,
            )
            state = self._next_state(state, diagnostic, attempts)

        if best is None:
            raise NoUsableAttemptError(key, attempts)

        converged = state is RunnerState.CONVERGED
        if converged:
            logger.info("%s converged after %d attempt(s), R-hat=%.4f", key.label(), attempts, best_diagnostic)
        else:
            logger.warning(
                "%s exhausted %d attempts; best R-hat=%.4f",
                key.label(),
                attempts,
                best_diagnostic,
            )

        return FitResult(
            key=key,
            model_name=self.model.name,
            summaries=dict(best.summaries),
            attempts=attempts,
            failures=failures,
            diagnostic=best_diagnostic,
            converged=converged,
            seed=best.seed,
            best_trace=tuple(trace),
        )

    def _next_state(
        self,
        state: RunnerState,
        diagnostic: float = math.nan,
        attempts: int = 0,
    ) -> RunnerState:
        """Transition table; CONVERGED and EXHAUSTED are terminal."""
        if state is RunnerState.PENDING:
            return RunnerState.ATTEMPTING
        if state is not RunnerState.ATTEMPTING:
            return state
        if not math.isnan(diagnostic) and diagnostic < self.rhat_threshold:
            return RunnerState.CONVERGED
        if attempts >= self.attempt_budget:
            return RunnerState.EXHAUSTED
        return RunnerState.ATTEMPTING
