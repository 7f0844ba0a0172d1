"""
Model Definitions for the Session Estimation pipeline.

Declares, per task type, the parameter set, the uniform prior support of
each parameter and the trial-level Bernoulli-logit likelihood:

* Hyperbolic discounting: SV = amount / (1 + exp(log_k) * delay)
* Risk/ambiguity weighting: SV = (p - beta * A / 2) * amount ** alpha

Everything in this module is pure so that a sampling engine can evaluate
the likelihood repeatedly and from several chains at once.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Mapping, Tuple, Union

import numpy as np
from scipy.special import log_expit

ArrayLike = Union[float, np.ndarray]


class Task(str, Enum):
    """Choice task types; the value doubles as the on-disk name."""

    DISCOUNTING = "discounting"
    RISK_AMBIGUITY = "risk_ambiguity"


@dataclass(frozen=True)
class ParameterSpec:
    """A sampled parameter with hard uniform support ``[lower, upper]``."""

    name: str
    lower: float
    upper: float


@dataclass(frozen=True)
class ModelSpec:
    """
    Immutable description of one choice model.

    Attributes:
        name: Model identifier (also the Stan program stem).
        task: Task the model is fitted to.
        parameters: Sampled parameters, in Stan declaration order.
        convergence_params: Parameters whose R-hat decides convergence.
        outlier_params: Parameters whose credible-interval width is
            screened by the outlier filter.
        derived: Positive-only natural-scale quantities, mapped to the
            sampled log parameter they exponentiate.
    """

    name: str
    task: Task
    parameters: Tuple[ParameterSpec, ...]
    convergence_params: Tuple[str, ...]
    outlier_params: Tuple[str, ...]
    derived: Tuple[Tuple[str, str], ...] = ()

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.parameters)

    @property
    def derived_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.derived)

    @property
    def quantity_names(self) -> Tuple[str, ...]:
        """Sampled parameters followed by derived quantities."""
        return self.parameter_names + self.derived_names

    @property
    def stan_file(self) -> str:
        return f"{self.name}.stan"

    def with_convergence_params(self, names: Iterable[str]) -> "ModelSpec":
        names = tuple(names)
        unknown = [n for n in names if n not in self.parameter_names]
        if unknown or not names:
            raise ValueError(
                f"Invalid convergence parameters for {self.name}: {names}"
            )
        return replace(self, convergence_params=names)


HYPERBOLIC_DISCOUNTING = ModelSpec(
    name="hyperbolic_discounting",
    task=Task.DISCOUNTING,
    parameters=(
        ParameterSpec("log_discount_rate", -12.0, 4.0),
        ParameterSpec("log_inverse_temperature", -8.0, 6.0),
    ),
    convergence_params=("log_discount_rate", "log_inverse_temperature"),
    outlier_params=("log_discount_rate",),
    derived=(
        ("discount_rate", "log_discount_rate"),
        ("inverse_temperature", "log_inverse_temperature"),
    ),
)

RISK_AMBIGUITY = ModelSpec(
    name="risk_ambiguity",
    task=Task.RISK_AMBIGUITY,
    parameters=(
        ParameterSpec("risk_exponent", 0.0, 4.0),
        ParameterSpec("ambiguity_weight", -2.0, 2.0),
        ParameterSpec("log_inverse_temperature", -8.0, 6.0),
    ),
    # choice noise is left out of the convergence check
    convergence_params=("risk_exponent", "ambiguity_weight"),
    outlier_params=("risk_exponent", "ambiguity_weight"),
    derived=(("inverse_temperature", "log_inverse_temperature"),),
)

MODELS: Dict[Task, ModelSpec] = {
    Task.DISCOUNTING: HYPERBOLIC_DISCOUNTING,
    Task.RISK_AMBIGUITY: RISK_AMBIGUITY,
}

# Design columns expected in each task's trial table, in likelihood order
DESIGN_COLUMNS: Dict[Task, Tuple[str, ...]] = {
    Task.DISCOUNTING: ("ss_amount", "ss_delay", "ll_amount", "ll_delay"),
    Task.RISK_AMBIGUITY: (
        "fixed_amount",
        "variable_amount",
        "probability",
        "ambiguity",
    ),
}


def get_model(task: Union[Task, str]) -> ModelSpec:
    return MODELS[Task(task)]


def prior_bounds(model: ModelSpec) -> Dict[str, Tuple[float, float]]:
    """Return ``{param: (low, high)}`` for every sampled parameter."""
    return {p.name: (p.lower, p.upper) for p in model.parameters}


# ──────────────────────────────────────────────────────────────────────
# Subjective value
# ──────────────────────────────────────────────────────────────────────

def hyperbolic_value(amount: ArrayLike, delay: ArrayLike, log_k: ArrayLike) -> np.ndarray:
    """Hyperbolically discounted value of ``amount`` received after ``delay``."""
    return np.asarray(amount) / (1.0 + np.exp(log_k) * np.asarray(delay))


def risk_ambiguity_value(
    amount: ArrayLike,
    probability: ArrayLike,
    ambiguity: ArrayLike,
    risk_exponent: ArrayLike,
    ambiguity_weight: ArrayLike,
) -> np.ndarray:
    """
    Subjective value ``(p - beta * A / 2) * amount ** alpha``.

    A zero amount is worth zero whatever the exponent (``0 ** 0`` would
    otherwise give 1).
    """
    amount = np.asarray(amount, dtype=float)
    weight = np.asarray(probability) - np.asarray(ambiguity_weight) * np.asarray(ambiguity) / 2.0
    with np.errstate(divide="ignore", invalid="ignore"):
        utility = np.power(amount, risk_exponent)
    utility = np.where(amount == 0.0, 0.0, utility)
    return weight * utility


# ──────────────────────────────────────────────────────────────────────
# Likelihood
# ──────────────────────────────────────────────────────────────────────

def _column(params: Mapping[str, ArrayLike], name: str) -> np.ndarray:
    # (chains, 1) so that values broadcast against (trials,)
    return np.atleast_1d(np.asarray(params[name], dtype=float))[:, None]


def choice_logit(
    model: ModelSpec,
    params: Mapping[str, ArrayLike],
    design: Mapping[str, np.ndarray],
) -> np.ndarray:
    """
    Inverse-temperature-scaled value difference (option 1 minus option 0).

    Returns:
        Array of shape ``(n_param_sets, n_trials)``.
    """
    inv_temp = np.exp(_column(params, "log_inverse_temperature"))

    if model.task is Task.DISCOUNTING:
        log_k = _column(params, "log_discount_rate")
        v_ll = hyperbolic_value(design["ll_amount"], design["ll_delay"], log_k)
        v_ss = hyperbolic_value(design["ss_amount"], design["ss_delay"], log_k)
        return inv_temp * (v_ll - v_ss)

    if model.task is Task.RISK_AMBIGUITY:
        alpha = _column(params, "risk_exponent")
        beta = _column(params, "ambiguity_weight")
        v_var = risk_ambiguity_value(
            design["variable_amount"],
            design["probability"],
            design["ambiguity"],
            alpha,
            beta,
        )
        # the fixed option is a certain reward
        v_fix = risk_ambiguity_value(design["fixed_amount"], 1.0, 0.0, alpha, beta)
        return inv_temp * (v_var - v_fix)

    raise ValueError(f"Unknown task: {model.task}")


def log_likelihood_matrix(
    model: ModelSpec,
    params: Mapping[str, ArrayLike],
    design: Mapping[str, np.ndarray],
) -> np.ndarray:
    """Per-trial Bernoulli-logit log-probability of the observed choices."""
    logit = choice_logit(model, params, design)
    choice = np.asarray(design["choice"], dtype=float)
    return choice * log_expit(logit) + (1.0 - choice) * log_expit(-logit)


def log_likelihood(model: ModelSpec, params: Mapping[str, float], trial) -> float:
    """Log-probability of one trial's observed choice under ``params``."""
    design = {
        col: np.array([getattr(trial, col)], dtype=float)
        for col in DESIGN_COLUMNS[model.task] + ("choice",)
    }
    return float(log_likelihood_matrix(model, params, design)[0, 0])


def in_support(model: ModelSpec, params: Mapping[str, ArrayLike]) -> np.ndarray:
    """Boolean mask: which parameter sets lie inside every bound."""
    inside = None
    for p in model.parameters:
        value = np.atleast_1d(np.asarray(params[p.name], dtype=float))
        ok = (value >= p.lower) & (value <= p.upper)
        inside = ok if inside is None else inside & ok
    return inside


def log_density(
    model: ModelSpec,
    params: Mapping[str, ArrayLike],
    design: Mapping[str, np.ndarray],
) -> np.ndarray:
    """
    Unnormalized log-posterior for one or more parameter sets.

    The prior is uniform on the bounds, so it contributes a constant
    inside the support and ``-inf`` outside.
    """
    inside = in_support(model, params)
    log_prior = -sum(math.log(p.upper - p.lower) for p in model.parameters)
    with np.errstate(over="ignore", invalid="ignore"):
        total = log_likelihood_matrix(model, params, design).sum(axis=1) + log_prior
    return np.where(inside, total, -np.inf)
