"""
Per-task result store.

A key-addressed, append-only store of FitResults keyed by
(subject, day) within each task.  It is both the terminal per-task
artifact and the resumability cache: the scheduler checks a key before
computing it and writes each key exactly once.

Contract (shared by every backend):

* ``put`` of an existing key raises :class:`DuplicateKeyError`.
* A task whose stored rows cannot be trusted raises
  :class:`StoreCorruptionError`; the task must be ``reset`` and
  regenerated in full rather than merged with a new run.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from .data_preparation import SessionKey
from .model_definitions import ModelSpec, Task, get_model
from .retry_runner import SUMMARY_FIELDS, FitResult

logger = logging.getLogger(__name__)

BOOKKEEPING_COLUMNS = (
    "subject",
    "day",
    "task",
    "model",
    "attempts",
    "failures",
    "diagnostic",
    "converged",
    "seed",
)


class DuplicateKeyError(KeyError):
    """Raised when a key is written twice."""
    pass


class StoreCorruptionError(RuntimeError):
    """Raised when a task's persisted results are unreadable or inconsistent."""

    def __init__(self, task: Task, reason: str):
        super().__init__(
            f"Result store for {task.value} is corrupted ({reason}); "
            "reset the task and regenerate it"
        )
        self.task = task
        self.reason = reason


def record_columns(model: ModelSpec) -> List[str]:
    """Column order of a store row for ``model``."""
    cols = list(BOOKKEEPING_COLUMNS)
    for name in model.quantity_names:
        cols.extend(f"{name}_{f}" for f in SUMMARY_FIELDS)
    return cols


class ResultStore:
    """Abstract base for result stores."""

    def _task_index(self, task: Task) -> Dict[Tuple[str, int], FitResult]:
        raise NotImplementedError

    def _write(self, result: FitResult) -> None:
        raise NotImplementedError

    def reset(self, task: Task) -> None:
        raise NotImplementedError

    def mark_complete(self, task: Task) -> None:
        raise NotImplementedError

    def is_complete(self, task: Task) -> bool:
        raise NotImplementedError

    # ---------- shared behaviour ----------

    def contains(self, key: SessionKey) -> bool:
        return (key.subject, key.day) in self._task_index(key.task)

    def get(self, key: SessionKey) -> FitResult:
        return self._task_index(key.task)[(key.subject, key.day)]

    def put(self, result: FitResult) -> None:
        """Write a result; each key may be written once."""
        if self.contains(result.key):
            raise DuplicateKeyError(f"{result.key.label()} already stored")
        self._write(result)
        self._task_index(result.key.task)[(result.key.subject, result.key.day)] = result

    def keys(self, task: Task) -> List[SessionKey]:
        return [SessionKey(s, d, task) for s, d in sorted(self._task_index(task))]

    def load(self, task: Task) -> Dict[SessionKey, FitResult]:
        return {r.key: r for r in self._task_index(task).values()}


class InMemoryResultStore(ResultStore):
    """Process-local store, mainly for tests and one-off runs."""

    def __init__(self):
        self._data: Dict[Task, Dict[Tuple[str, int], FitResult]] = {}
        self._complete: set = set()

    def _task_index(self, task):
        return self._data.setdefault(Task(task), {})

    def _write(self, result):
        self._complete.discard(result.key.task)

    def reset(self, task):
        self._data.pop(Task(task), None)
        self._complete.discard(Task(task))

    def mark_complete(self, task):
        self._complete.add(Task(task))

    def is_complete(self, task):
        return Task(task) in self._complete


class CsvResultStore(ResultStore):
    """
    One append-only CSV per task under ``root``.

    ``fits_<task>.csv`` holds one row per session.  When a task's run
    finishes, ``fits_<task>.complete.json`` records the row count; a file
    that disagrees with its manifest is treated as corrupted.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._index: Dict[Task, Dict[Tuple[str, int], FitResult]] = {}

    def path(self, task: Task) -> Path:
        return self.root / f"fits_{Task(task).value}.csv"

    def manifest_path(self, task: Task) -> Path:
        return self.root / f"fits_{Task(task).value}.complete.json"

    # ---------- loading ----------

    def _task_index(self, task):
        task = Task(task)
        if task not in self._index:
            self._index[task] = self._read(task)
        return self._index[task]

    def _read(self, task: Task) -> Dict[Tuple[str, int], FitResult]:
        path = self.path(task)
        manifest = self._read_manifest(task)
        if not path.exists():
            if manifest is not None:
                raise StoreCorruptionError(task, "manifest present but results file missing")
            return {}

        model = get_model(task)
        try:
            frame = pd.read_csv(path, dtype={"subject": str}, float_precision="round_trip")
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise StoreCorruptionError(task, f"unreadable file: {e}") from e

        missing = [c for c in record_columns(model) if c not in frame.columns]
        if missing:
            raise StoreCorruptionError(task, f"missing columns {missing}")
        if frame[record_columns(model)].isna().to_numpy().any():
            raise StoreCorruptionError(task, "incomplete rows")
        if frame.duplicated(subset=["subject", "day"]).any():
            raise StoreCorruptionError(task, "duplicate keys")
        if (frame["task"] != task.value).any():
            raise StoreCorruptionError(task, "rows from another task")
        if manifest is not None and manifest.get("rows") != len(frame):
            raise StoreCorruptionError(
                task,
                f"{len(frame)} rows but manifest records {manifest.get('rows')}",
            )

        index: Dict[Tuple[str, int], FitResult] = {}
        for record in frame.to_dict("records"):
            try:
                result = FitResult.from_record(record, model)
            except (KeyError, TypeError, ValueError) as e:
                raise StoreCorruptionError(task, f"bad row: {e}") from e
            index[(result.key.subject, result.key.day)] = result

        logger.info("Loaded %d stored %s results from %s", len(index), task.value, path)
        return index

    def _read_manifest(self, task: Task) -> Optional[dict]:
        path = self.manifest_path(task)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreCorruptionError(task, f"unreadable manifest: {e}") from e

    # ---------- writing ----------

    def _write(self, result):
        task = result.key.task
        path = self.path(task)
        # new rows invalidate a previous completion record
        self.manifest_path(task).unlink(missing_ok=True)
        row = pd.DataFrame([result.to_record()], columns=record_columns(get_model(task)))
        row.to_csv(path, mode="a", header=not path.exists(), index=False)

    def reset(self, task):
        task = Task(task)
        self.path(task).unlink(missing_ok=True)
        self.manifest_path(task).unlink(missing_ok=True)
        self._index.pop(task, None)
        logger.info("Reset %s results in %s", task.value, self.root)

    def mark_complete(self, task):
        task = Task(task)
        rows = len(self._task_index(task))
        with open(self.manifest_path(task), "w") as f:
            json.dump({"task": task.value, "rows": rows}, f, indent=2)
        logger.info("Marked %s complete (%d rows)", task.value, rows)

    def is_complete(self, task):
        return self._read_manifest(Task(task)) is not None
