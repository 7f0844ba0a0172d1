"""
Aggregation and outlier filtering of per-session estimates.

Per task:
1. Flatten FitResults into one row per (subject, day)
2. Log-transform the positive-only quantities
3. Credible-interval width per outlier parameter and its population z-score
4. Exclude sessions whose width z-score reaches the cutoff (upper tail only)

Across tasks, the clean sets are outer-joined on (subject, day).  Nothing
here is random and row order never depends on result arrival order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping

import numpy as np
import pandas as pd

from .model_definitions import ModelSpec, Task
from .retry_runner import FitResult
from .store import record_columns

logger = logging.getLogger(__name__)

JOIN_KEYS = ["subject", "day"]


@dataclass
class TaskAggregate:
    task: Task
    frame: pd.DataFrame
    clean: pd.DataFrame
    summary: Dict[str, int]


def results_frame(results: Iterable[FitResult], model: ModelSpec) -> pd.DataFrame:
    """One row per session of ``model.task``, sorted by (subject, day)."""
    rows = [r.to_record() for r in results if r.key.task is model.task]
    frame = pd.DataFrame(rows, columns=record_columns(model))
    frame["day"] = frame["day"].astype(int)
    frame["converged"] = frame["converged"].astype(bool)
    return frame.sort_values(JOIN_KEYS, kind="stable").reset_index(drop=True)


def add_log_transforms(frame: pd.DataFrame, model: ModelSpec) -> pd.DataFrame:
    """Add ``<q>_log`` for each positive-only derived quantity."""
    frame = frame.copy()
    for name in model.derived_names:
        frame[f"{name}_log"] = np.log(frame[f"{name}_mean"])
    return frame


def credible_width_zscores(width: pd.Series) -> pd.Series:
    """
    ``(width - mean) / sd`` over the task's sessions (sample sd).

    With fewer than two sessions, or no spread at all, every score is 0.
    """
    sd = width.std(ddof=1)
    if len(width) < 2 or not np.isfinite(sd) or sd == 0:
        return pd.Series(0.0, index=width.index)
    return (width - width.mean()) / sd


def flag_outliers(frame: pd.DataFrame, model: ModelSpec, z_cutoff: float = 1.96) -> pd.DataFrame:
    """
    Add ``<p>_ci_width``, ``<p>_ci_z`` and ``excluded``.

    A session is excluded when any outlier parameter's z-score is at or
    above ``z_cutoff``; unusually narrow intervals are never excluded.
    """
    frame = frame.copy()
    excluded = pd.Series(False, index=frame.index)
    for name in model.outlier_params:
        width = frame[f"{name}_upper"] - frame[f"{name}_lower"]
        z = credible_width_zscores(width)
        frame[f"{name}_ci_width"] = width
        frame[f"{name}_ci_z"] = z
        excluded |= z >= z_cutoff
    frame["excluded"] = excluded
    return frame


def aggregate_task(
    results: Iterable[FitResult],
    model: ModelSpec,
    z_cutoff: float = 1.96,
) -> TaskAggregate:
    """Build the flagged per-task table and its clean subset."""
    frame = results_frame(results, model)
    frame = add_log_transforms(frame, model)
    frame = flag_outliers(frame, model, z_cutoff)
    clean = frame[~frame["excluded"]].reset_index(drop=True)

    n_converged = int(frame["converged"].sum())
    summary = {
        "sessions": len(frame),
        "converged": n_converged,
        "exhausted": len(frame) - n_converged,
        "excluded": int(frame["excluded"].sum()),
        "clean": len(clean),
    }
    logger.info(
        "%s: %d sessions, %d converged, %d exhausted, %d excluded as outliers",
        model.task.value,
        summary["sessions"],
        summary["converged"],
        summary["exhausted"],
        summary["excluded"],
    )
    return TaskAggregate(model.task, frame, clean, summary)


def join_tasks(frames: Mapping[Task, pd.DataFrame]) -> pd.DataFrame:
    """
    Outer-join per-task tables on (subject, day).

    Task columns are prefixed with the task name; a session present in only
    one task keeps missing values for the other task's columns.
    """
    joined = None
    for task in sorted(frames, key=lambda t: Task(t).value):
        task = Task(task)
        frame = frames[task].drop(columns=["task"], errors="ignore")
        frame = frame.rename(
            columns={c: f"{task.value}_{c}" for c in frame.columns if c not in JOIN_KEYS}
        )
        if joined is None:
            joined = frame
        else:
            joined = joined.merge(frame, on=JOIN_KEYS, how="outer")

    if joined is None:
        return pd.DataFrame(columns=JOIN_KEYS)
    return joined.sort_values(JOIN_KEYS, kind="stable").reset_index(drop=True)
