"""
Shared test fixtures for the session estimation test suite.
"""
import math
import threading
import time

import numpy as np
import pytest

from applications.session_estimation.config import EstimationConfig
from applications.session_estimation.data_preparation import SessionKey
from applications.session_estimation.model_definitions import Task, get_model
from applications.session_estimation.retry_runner import FitResult
from applications.session_estimation.sampling import (
    FitAttempt,
    ParameterSummary,
    SamplerFailure,
    SamplingEngine,
)
from applications.session_estimation.simulation import simulate_population, simulate_session


# ── Fake engines ─────────────────────────────────────────────────────


def scripted_summaries(model, diagnostic, seed=0):
    """Summaries at the middle of each parameter's support with a fixed R-hat."""
    summaries = {}
    for p in model.parameters:
        mid = (p.lower + p.upper) / 2.0
        summaries[p.name] = ParameterSummary(
            mean=mid,
            sd=0.1,
            lower=mid - 0.2,
            upper=mid + 0.2,
            rhat=diagnostic,
        )
    for name, source in model.derived:
        s = summaries[source]
        summaries[name] = ParameterSummary(
            mean=math.exp(s.mean),
            sd=0.1,
            lower=math.exp(s.lower),
            upper=math.exp(s.upper),
            rhat=diagnostic,
        )
    return summaries


class ScriptedEngine(SamplingEngine):
    """
    Engine whose per-attempt diagnostic follows a script.

    ``script`` is either a list of outcomes, replayed per session, or a
    callable ``(session, attempt_index) -> outcome``.  An outcome is an R-hat
    value, or ``"fail"`` to raise SamplerFailure.  Past the end of a list
    the last outcome repeats; an empty list always converges.
    """

    name = "scripted"

    def __init__(self, script=(), delay=0.0):
        self.script = script
        self.delay = delay
        self.calls = 0
        self.calls_by_session = {}
        self.active = 0
        self.max_active = 0
        self.on_sample = None
        self._lock = threading.Lock()

    def _outcome(self, session, index):
        if callable(self.script):
            return self.script(session, index)
        if not self.script:
            return 1.001
        return self.script[min(index, len(self.script) - 1)]

    def sample(self, model, session, sampler, seed):
        with self._lock:
            index = self.calls_by_session.get(session.key, 0)
            self.calls_by_session[session.key] = index + 1
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.on_sample is not None:
                self.on_sample(session)
            if self.delay:
                time.sleep(self.delay)
            outcome = self._outcome(session, index)
            if outcome == "fail":
                raise SamplerFailure("scripted failure")
            return FitAttempt(scripted_summaries(model, outcome, seed), seed=seed, engine=self.name)
        finally:
            with self._lock:
                self.active -= 1


# ── Factories ────────────────────────────────────────────────────────


def make_result(subject, day, task=Task.DISCOUNTING, widths=None, converged=True, diagnostic=1.001):
    """
    A FitResult with controllable credible-interval widths.

    ``widths`` maps parameter name to interval width (default 1.0).
    """
    model = get_model(task)
    widths = widths or {}
    summaries = {}
    for p in model.parameters:
        mid = (p.lower + p.upper) / 2.0
        half = widths.get(p.name, 1.0) / 2.0
        summaries[p.name] = ParameterSummary(mid, half / 2.0, mid - half, mid + half, diagnostic)
    for name, source in model.derived:
        s = summaries[source]
        summaries[name] = ParameterSummary(
            math.exp(s.mean), s.sd, math.exp(s.lower), math.exp(s.upper), diagnostic
        )
    return FitResult(
        key=SessionKey(str(subject), int(day), Task(task)),
        model_name=model.name,
        summaries=summaries,
        attempts=1,
        failures=0,
        diagnostic=diagnostic,
        converged=converged,
        seed=7,
    )


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def discounting_session():
    """One simulated discounting session with default parameters."""
    return simulate_session("S001", 1, Task.DISCOUNTING, n_trials=60, seed=3)


@pytest.fixture
def risk_session():
    """One simulated risk/ambiguity session with default parameters."""
    return simulate_session("S001", 1, Task.RISK_AMBIGUITY, n_trials=60, seed=4)


@pytest.fixture
def many_sessions():
    """Twenty discounting sessions (S001-S010, days 1 and 2)."""
    sessions, _ = simulate_population(
        Task.DISCOUNTING, n_subjects=10, days=(1, 2), n_trials=20, seed=11
    )
    return sessions


@pytest.fixture
def fast_config(tmp_path):
    """Small sampler settings so the Metropolis engine runs in well under a second."""
    return EstimationConfig(
        chain_count=2,
        draws_per_chain=200,
        warmup_draws=200,
        attempt_budget=2,
        rhat_threshold=1.05,
        concurrency=2,
        engine="metropolis",
        results_dir=str(tmp_path / "results"),
        show_progress=False,
    )


@pytest.fixture
def scripted_engine():
    return ScriptedEngine()


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def result_factory():
    return make_result


@pytest.fixture
def engine_factory():
    return ScriptedEngine
