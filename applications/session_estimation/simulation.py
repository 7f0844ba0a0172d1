"""
Synthetic sessions from known parameter values.

Draws random task designs and Bernoulli-logit choices from the same
likelihood the estimator fits, for parameter recovery checks, tests and
the ``simulate`` CLI command.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy.special import expit

from .data_preparation import TRIAL_TYPES, Session
from .model_definitions import DESIGN_COLUMNS, ModelSpec, Task, choice_logit, get_model

logger = logging.getLogger(__name__)

# Typical design grids of the two tasks
DELAYS = np.array([1, 7, 14, 30, 60, 90, 180])
PROBABILITIES = np.array([0.13, 0.25, 0.38, 0.5, 0.75])
AMBIGUITIES = np.array([0.0, 0.24, 0.5, 0.74])
VARIABLE_AMOUNTS = np.array([5, 8, 12, 20, 30, 45, 65, 100])

DEFAULT_PARAMS: Dict[Task, Dict[str, float]] = {
    Task.DISCOUNTING: {"log_discount_rate": -4.0, "log_inverse_temperature": -1.0},
    Task.RISK_AMBIGUITY: {
        "risk_exponent": 0.7,
        "ambiguity_weight": 0.4,
        "log_inverse_temperature": -0.5,
    },
}


def discounting_design(n_trials: int, rng: np.random.Generator) -> Dict[str, np.ndarray]:
    ll_amount = rng.choice(np.arange(25, 86, 5), size=n_trials).astype(float)
    ss_amount = np.round(ll_amount * rng.uniform(0.2, 0.95, size=n_trials), 2)
    return {
        "ss_amount": ss_amount,
        "ss_delay": np.zeros(n_trials),
        "ll_amount": ll_amount,
        "ll_delay": rng.choice(DELAYS, size=n_trials).astype(float),
    }


def risk_ambiguity_design(n_trials: int, rng: np.random.Generator) -> Dict[str, np.ndarray]:
    ambiguity = rng.choice(AMBIGUITIES, size=n_trials)
    # ambiguous lotteries are presented at p = 0.5
    probability = np.where(
        ambiguity > 0, 0.5, rng.choice(PROBABILITIES, size=n_trials)
    )
    return {
        "fixed_amount": np.full(n_trials, 5.0),
        "variable_amount": rng.choice(VARIABLE_AMOUNTS, size=n_trials).astype(float),
        "probability": probability,
        "ambiguity": ambiguity,
    }


DESIGNS = {
    Task.DISCOUNTING: discounting_design,
    Task.RISK_AMBIGUITY: risk_ambiguity_design,
}


def simulate_choices(
    model: ModelSpec,
    params: Mapping[str, float],
    design: Mapping[str, np.ndarray],
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw 0/1 choices from the model's Bernoulli-logit rule."""
    p_one = expit(choice_logit(model, params, design)[0])
    return (rng.uniform(size=p_one.shape) < p_one).astype(int)


def simulate_session(
    subject: str,
    day: int,
    task: Task,
    params: Optional[Mapping[str, float]] = None,
    n_trials: int = 120,
    seed: int = 0,
) -> Session:
    """Simulate one session with a random design and known parameters."""
    task = Task(task)
    model = get_model(task)
    params = dict(params or DEFAULT_PARAMS[task])
    rng = np.random.default_rng(seed)

    design = DESIGNS[task](n_trials, rng)
    choices = simulate_choices(model, params, design, rng)

    cls = TRIAL_TYPES[task]
    trials = tuple(
        cls(
            index=i + 1,
            choice=int(choices[i]),
            **{col: float(design[col][i]) for col in DESIGN_COLUMNS[task]},
        )
        for i in range(n_trials)
    )
    return Session(str(subject), int(day), task, trials)


def simulate_population(
    task: Task,
    n_subjects: int = 10,
    days: Tuple[int, ...] = (1,),
    n_trials: int = 120,
    seed: int = 0,
    jitter: float = 0.3,
) -> Tuple[List[Session], Dict[Tuple[str, int], Dict[str, float]]]:
    """
    Simulate sessions for several subjects and days.

    Each session's parameters are the task defaults plus Gaussian jitter,
    clipped to the model bounds.

    Returns:
        ``(sessions, true_params)`` with ``true_params`` keyed by (subject, day).
    """
    task = Task(task)
    model = get_model(task)
    rng = np.random.default_rng(seed)
    sessions: List[Session] = []
    true_params: Dict[Tuple[str, int], Dict[str, float]] = {}

    for s in range(n_subjects):
        subject = f"S{s + 1:03d}"
        for day in days:
            params = {
                p.name: float(np.clip(
                    DEFAULT_PARAMS[task][p.name] + jitter * rng.standard_normal(),
                    p.lower,
                    p.upper,
                ))
                for p in model.parameters
            }
            session_seed = int(rng.integers(0, 2**31 - 1))
            sessions.append(simulate_session(subject, day, task, params, n_trials, session_seed))
            true_params[(subject, day)] = params

    logger.info("Simulated %d %s sessions", len(sessions), task.value)
    return sessions, true_params
