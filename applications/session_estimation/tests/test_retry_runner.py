"""
Tests for the convergence-retry runner.

Most tests script the per-attempt R-hat through a fake engine; the last
class runs the real Metropolis engine, including a small parameter
recovery check.
"""
import math

import numpy as np
import pytest

from applications.session_estimation.data_preparation import SessionKey
from applications.session_estimation.model_definitions import (
    HYPERBOLIC_DISCOUNTING,
    RISK_AMBIGUITY,
    Task,
)
from applications.session_estimation.retry_runner import (
    ConvergenceRetryRunner,
    FitResult,
    NoUsableAttemptError,
    RunnerState,
    attempt_seed,
)
from applications.session_estimation.sampling import (
    FitAttempt,
    MetropolisEngine,
    ParameterSummary,
    SamplerConfig,
    SamplingEngine,
)
from applications.session_estimation.simulation import simulate_session


def _runner(engine, budget=100, threshold=1.01, model=HYPERBOLIC_DISCOUNTING):
    return ConvergenceRetryRunner(
        engine,
        model,
        SamplerConfig(2, 10, 10),
        rhat_threshold=threshold,
        attempt_budget=budget,
        seed=1,
    )


class TestRetryLoop:

    def test_converges_first_attempt(self, engine_factory, discounting_session):
        engine = engine_factory([1.004])
        result = _runner(engine).run(discounting_session)
        assert result.converged
        assert result.attempts == 1
        assert result.diagnostic == pytest.approx(1.004)
        assert engine.calls == 1

    def test_retries_until_converged(self, engine_factory, discounting_session):
        engine = engine_factory([1.5, 1.2, 1.3, 1.005])
        result = _runner(engine).run(discounting_session)
        assert result.converged
        assert result.attempts == 4
        assert result.best_trace == pytest.approx((1.5, 1.2, 1.2, 1.005))

    def test_best_trace_never_increases(self, engine_factory, discounting_session):
        rng = np.random.default_rng(0)
        script = list(1.02 + rng.uniform(0, 0.5, size=30))
        result = _runner(engine_factory(script), budget=30).run(discounting_session)
        assert all(b <= a for a, b in zip(result.best_trace, result.best_trace[1:]))
        assert result.diagnostic == pytest.approx(min(script))

    def test_threshold_is_strict(self, engine_factory, discounting_session):
        result = _runner(engine_factory([1.01]), budget=3).run(discounting_session)
        assert not result.converged
        assert result.attempts == 3

    def test_exhausted_keeps_best_attempt(self, engine_factory, discounting_session):
        engine = engine_factory([1.3, 1.1, 1.2, 1.4, 1.25])
        result = _runner(engine, budget=5).run(discounting_session)
        assert not result.converged
        assert result.attempts == 5
        assert result.diagnostic == pytest.approx(1.1)
        assert result.seed == attempt_seed(1, discounting_session.key, 1)

    def test_budget_of_one(self, engine_factory, discounting_session):
        result = _runner(engine_factory([1.5]), budget=1).run(discounting_session)
        assert result.attempts == 1
        assert not result.converged

    def test_failures_count_as_attempts(self, engine_factory, discounting_session):
        engine = engine_factory(["fail", "fail", 1.002])
        result = _runner(engine).run(discounting_session)
        assert result.converged
        assert result.attempts == 3
        assert result.failures == 2
        assert result.best_trace[0] == math.inf

    def test_nan_diagnostic_is_a_failure(self, engine_factory, discounting_session):
        engine = engine_factory([float("nan"), 1.3])
        result = _runner(engine, budget=2).run(discounting_session)
        assert result.failures == 1
        assert result.diagnostic == pytest.approx(1.3)

    def test_all_attempts_failed(self, engine_factory, discounting_session):
        with pytest.raises(NoUsableAttemptError) as exc:
            _runner(engine_factory(["fail"]), budget=4).run(discounting_session)
        assert exc.value.attempts == 4
        assert exc.value.key == discounting_session.key

    def test_convergence_subset_ignores_other_params(self, risk_session):
        class NoisyTemperatureEngine(SamplingEngine):
            def sample(self, model, session, sampler, seed):
                summaries = {
                    name: ParameterSummary(0.5, 0.1, 0.3, 0.7, 1.001)
                    for name in model.quantity_names
                }
                summaries["log_inverse_temperature"] = ParameterSummary(0.0, 1.0, -2.0, 2.0, 1.8)
                return FitAttempt(summaries, seed=seed)

        result = _runner(NoisyTemperatureEngine(), model=RISK_AMBIGUITY).run(risk_session)
        assert result.converged
        assert result.diagnostic == pytest.approx(1.001)

        strict = RISK_AMBIGUITY.with_convergence_params(
            ["risk_exponent", "ambiguity_weight", "log_inverse_temperature"]
        )
        result = _runner(NoisyTemperatureEngine(), budget=2, model=strict).run(risk_session)
        assert not result.converged

    def test_invalid_budget(self, engine_factory):
        with pytest.raises(ValueError):
            _runner(engine_factory(), budget=0)

    def test_states(self):
        assert {s.value for s in RunnerState} == {"pending", "attempting", "converged", "exhausted"}

    def test_transition_table(self, engine_factory):
        runner = _runner(engine_factory(), budget=3)
        assert runner._next_state(RunnerState.PENDING) is RunnerState.ATTEMPTING
        assert runner._next_state(RunnerState.ATTEMPTING, 1.005, 1) is RunnerState.CONVERGED
        assert runner._next_state(RunnerState.ATTEMPTING, 1.02, 1) is RunnerState.ATTEMPTING
        assert runner._next_state(RunnerState.ATTEMPTING, math.nan, 2) is RunnerState.ATTEMPTING
        assert runner._next_state(RunnerState.ATTEMPTING, 1.02, 3) is RunnerState.EXHAUSTED
        assert runner._next_state(RunnerState.ATTEMPTING, 1.005, 3) is RunnerState.CONVERGED
        for terminal in (RunnerState.CONVERGED, RunnerState.EXHAUSTED):
            assert runner._next_state(terminal, 1.5, 1) is terminal


class TestSeeds:

    def test_deterministic(self):
        key = SessionKey("S1", 1, Task.DISCOUNTING)
        assert attempt_seed(5, key, 0) == attempt_seed(5, key, 0)

    def test_distinct_per_attempt_and_session(self):
        key = SessionKey("S1", 1, Task.DISCOUNTING)
        other = SessionKey("S2", 1, Task.DISCOUNTING)
        seeds = {attempt_seed(5, key, i) for i in range(50)}
        assert len(seeds) == 50
        assert attempt_seed(5, key, 0) != attempt_seed(5, other, 0)

    def test_within_int32(self):
        key = SessionKey("S1", 1, Task.RISK_AMBIGUITY)
        assert 0 <= attempt_seed(2**40, key, 3) < 2**31 - 1

    def test_each_attempt_gets_its_own_seed(self, engine_factory, discounting_session):
        seen = []
        engine = engine_factory(lambda session, i: 1.5)
        original = engine.sample

        def recording(model, session, sampler, seed):
            seen.append(seed)
            return original(model, session, sampler, seed)

        engine.sample = recording
        _runner(engine, budget=5).run(discounting_session)
        assert len(set(seen)) == 5


class TestFitResultRecord:

    def test_record_round_trip(self, result_factory):
        result = result_factory("S1", 2, widths={"log_discount_rate": 3.0})
        record = result.to_record()
        assert record["subject"] == "S1"
        assert record["task"] == "discounting"
        assert record["log_discount_rate_upper"] - record["log_discount_rate_lower"] == pytest.approx(3.0)
        restored = FitResult.from_record(record, HYPERBOLIC_DISCOUNTING)
        assert restored.key == result.key
        assert restored.summaries == result.summaries
        assert restored.converged is True

    def test_from_record_string_flag(self, result_factory):
        record = result_factory("S1", 2).to_record()
        record["converged"] = "False"
        assert FitResult.from_record(record, HYPERBOLIC_DISCOUNTING).converged is False
        record["converged"] = "maybe"
        with pytest.raises(ValueError):
            FitResult.from_record(record, HYPERBOLIC_DISCOUNTING)


class TestWithMetropolis:

    def test_estimates_within_bounds(self, discounting_session):
        runner = ConvergenceRetryRunner(
            MetropolisEngine(),
            HYPERBOLIC_DISCOUNTING,
            SamplerConfig(4, 300, 300),
            rhat_threshold=1.05,
            attempt_budget=3,
            seed=3,
        )
        result = runner.run(discounting_session)
        assert 1 <= result.attempts <= 3
        for p in HYPERBOLIC_DISCOUNTING.parameters:
            assert p.lower <= result.estimate(p.name) <= p.upper

    def test_parameter_recovery_is_seed_stable(self):
        session = simulate_session("R01", 1, Task.DISCOUNTING, n_trials=120, seed=2024)
        means = []
        for seed in (1, 2):
            runner = ConvergenceRetryRunner(
                MetropolisEngine(),
                HYPERBOLIC_DISCOUNTING,
                SamplerConfig(4, 2000, 1000),
                rhat_threshold=1.05,
                attempt_budget=2,
                seed=seed,
            )
            result = runner.run(session)
            means.append(result.estimate("log_discount_rate"))

            summary = result.summaries["log_discount_rate"]
            # true log k is -4.0
            assert summary.lower - 0.5 <= -4.0 <= summary.upper + 0.5

        assert abs(means[0] - means[1]) < 0.05
