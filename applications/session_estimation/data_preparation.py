"""
Data Preparation for the Session Estimation pipeline.

Handles:
1. Trial and Session types (immutable once loaded)
2. Validation of design variables and choices
3. Grouping trial tables into per-(subject, day) sessions
4. Stan data assembly per session
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Tuple, Union

import numpy as np
import pandas as pd

from .model_definitions import DESIGN_COLUMNS, ModelSpec, Task, prior_bounds

logger = logging.getLogger(__name__)

ID_COLUMNS = ("subject", "day", "trial")


class SessionDataError(ValueError):
    """Raised when trial data violates the session invariants."""
    pass


class SessionKey(NamedTuple):
    subject: str
    day: int
    task: Task

    def label(self) -> str:
        return f"{self.subject}/day{self.day}/{self.task.value}"


# ──────────────────────────────────────────────────────────────────────
# Trials
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DiscountingTrial:
    """Smaller-sooner vs. larger-later choice; ``choice == 1`` is larger-later."""

    index: int
    ss_amount: float
    ss_delay: float
    ll_amount: float
    ll_delay: float
    choice: int


@dataclass(frozen=True)
class RiskAmbiguityTrial:
    """Fixed reward vs. risky/ambiguous lottery; ``choice == 1`` is the lottery."""

    index: int
    fixed_amount: float
    variable_amount: float
    probability: float
    ambiguity: float
    choice: int


TRIAL_TYPES = {
    Task.DISCOUNTING: DiscountingTrial,
    Task.RISK_AMBIGUITY: RiskAmbiguityTrial,
}

Trial = Union[DiscountingTrial, RiskAmbiguityTrial]


def validate_trial(task: Task, trial: Trial) -> List[str]:
    """
    Check one trial against the data-model invariants.

    Returns:
        List of issue descriptions (empty if the trial is valid).
    """
    issues: List[str] = []
    for col in DESIGN_COLUMNS[task]:
        value = getattr(trial, col)
        if not np.isfinite(value):
            issues.append(f"trial {trial.index}: {col} is not finite")
        elif value < 0:
            issues.append(f"trial {trial.index}: {col}={value} is negative")

    if task is Task.RISK_AMBIGUITY:
        for col in ("probability", "ambiguity"):
            value = getattr(trial, col)
            if np.isfinite(value) and value > 1:
                issues.append(f"trial {trial.index}: {col}={value} outside [0, 1]")

    if trial.choice not in (0, 1):
        issues.append(f"trial {trial.index}: choice={trial.choice} not in {{0, 1}}")
    return issues


# ──────────────────────────────────────────────────────────────────────
# Sessions
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Session:
    """All trials of one subject on one day for one task."""

    subject: str
    day: int
    task: Task
    trials: Tuple[Trial, ...]

    def __post_init__(self):
        if not self.trials:
            raise SessionDataError(f"{self.key.label()}: session has no trials")
        expected = TRIAL_TYPES[self.task]
        issues: List[str] = []
        for trial in self.trials:
            if not isinstance(trial, expected):
                issues.append(f"trial {trial.index}: not a {expected.__name__}")
                continue
            issues.extend(validate_trial(self.task, trial))
        if issues:
            raise SessionDataError(f"{self.key.label()}: " + "; ".join(issues))

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.subject, self.day, self.task)

    @property
    def n_trials(self) -> int:
        return len(self.trials)

    def design_arrays(self) -> Dict[str, np.ndarray]:
        """Column arrays (design variables plus ``choice``) over trials."""
        cols = DESIGN_COLUMNS[self.task]
        arrays = {
            col: np.array([getattr(t, col) for t in self.trials], dtype=float)
            for col in cols
        }
        arrays["choice"] = np.array([t.choice for t in self.trials], dtype=int)
        return arrays


def _trial_from_row(task: Task, row: Dict[str, Any]) -> Trial:
    cls = TRIAL_TYPES[task]
    kwargs = {"index": int(row["trial"]), "choice": row["choice"]}
    for col in DESIGN_COLUMNS[task]:
        kwargs[col] = float(row[col])
    # keep non-integral choices visible to validation instead of truncating
    choice = kwargs["choice"]
    if isinstance(choice, (float, np.floating)) and float(choice).is_integer():
        kwargs["choice"] = int(choice)
    elif isinstance(choice, (np.integer,)):
        kwargs["choice"] = int(choice)
    return cls(**kwargs)


def required_columns(task: Task) -> Tuple[str, ...]:
    return ID_COLUMNS + DESIGN_COLUMNS[task] + ("choice",)


def sessions_from_frame(
    frame: pd.DataFrame,
    task: Union[Task, str],
) -> Tuple[List[Session], Dict[SessionKey, str]]:
    """
    Group a trial table into validated sessions.

    Malformed sessions are rejected here, before anything is scheduled.

    Args:
        frame: One row per trial with ``subject, day, trial``, the task's
            design columns and ``choice``.
        task: Task the table belongs to.

    Returns:
        ``(sessions, rejected)`` where ``rejected`` maps the key of each
        malformed session to the reason it was rejected.

    Raises:
        SessionDataError: If required columns are missing.
    """
    task = Task(task)
    missing = [c for c in required_columns(task) if c not in frame.columns]
    if missing:
        raise SessionDataError(f"{task.value} table missing columns: {missing}")

    frame = frame.copy()
    frame["subject"] = frame["subject"].astype(str)
    frame["day"] = frame["day"].astype(int)

    sessions: List[Session] = []
    rejected: Dict[SessionKey, str] = {}

    for (subject, day), group in frame.groupby(["subject", "day"], sort=True):
        key = SessionKey(str(subject), int(day), task)
        group = group.sort_values("trial", kind="stable")
        try:
            trials = tuple(
                _trial_from_row(task, row) for row in group.to_dict("records")
            )
            sessions.append(Session(key.subject, key.day, task, trials))
        except (SessionDataError, TypeError, ValueError) as e:
            logger.error("Rejected session %s: %s", key.label(), e)
            rejected[key] = str(e)

    logger.info(
        "Loaded %d %s sessions (%d rejected)",
        len(sessions),
        task.value,
        len(rejected),
    )
    return sessions, rejected


def load_trial_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a CSV trial table."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Trial table not found: {path}")
    frame = pd.read_csv(path, dtype={"subject": str})
    logger.info("Read %d trials from %s", len(frame), path)
    return frame


# ──────────────────────────────────────────────────────────────────────
# Stan data
# ──────────────────────────────────────────────────────────────────────

def build_stan_data(session: Session, model: ModelSpec) -> Dict[str, Any]:
    """
    Assemble the Stan data dict for one session.

    The prior bounds travel as data (``lb_<param>``/``ub_<param>``) so a
    single compiled program serves any bound configuration.
    """
    if session.task is not model.task:
        raise ValueError(
            f"Model {model.name} cannot fit a {session.task.value} session"
        )
    arrays = session.design_arrays()
    stan_data: Dict[str, Any] = {"T": session.n_trials}
    for col, values in arrays.items():
        stan_data[col] = values.tolist()
    for name, (low, high) in prior_bounds(model).items():
        stan_data[f"lb_{name}"] = low
        stan_data[f"ub_{name}"] = high
    return stan_data


def trials_to_frame(sessions: List[Session]) -> pd.DataFrame:
    """Flatten sessions back into a trial table (inverse of grouping)."""
    rows = []
    for session in sessions:
        for trial in session.trials:
            row = {"subject": session.subject, "day": session.day}
            for f in fields(trial):
                row["trial" if f.name == "index" else f.name] = getattr(trial, f.name)
            rows.append(row)
    return pd.DataFrame(rows)


def save_json(payload: Dict[str, Any], filepath: Union[str, Path]) -> Path:
    """Save a dict to JSON, converting numpy types."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as f:
        json.dump(_make_serializable(payload), f, indent=2, default=str)
    logger.info("Saved %s", filepath)
    return filepath


def _make_serializable(obj: Any) -> Any:
    """Recursively convert numpy types to Python builtins for JSON."""
    if isinstance(obj, dict):
        return {str(k): _make_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serializable(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return obj
