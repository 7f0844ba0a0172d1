"""
Job Scheduler: fans the Convergence-Retry Runner out over sessions.

Runs one runner per session on a fixed-size worker pool.  Workers only
return FitResult values; the scheduler thread alone owns the result
mapping and writes the store, so workers share no mutable state.

Sessions already present in the store are reused rather than recomputed,
which makes re-running the scheduler idempotent.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from tqdm import tqdm

from .config import EstimationConfig
from .data_preparation import Session, SessionKey
from .model_definitions import ModelSpec, Task
from .retry_runner import ConvergenceRetryRunner, FitResult, NoUsableAttemptError
from .sampling import SamplingEngine
from .store import InMemoryResultStore, ResultStore

logger = logging.getLogger(__name__)


class JobScheduler:
    """
    Estimate many sessions with bounded concurrency.

    Args:
        engine: Sampling engine shared by all runners.
        config: Sampler, retry and concurrency settings.
        store: Result store used as cache and output.  Defaults to an
            in-memory store.
        models: Model per task.  Defaults to ``config.model_for(task)``.

    Attributes:
        completed: Sessions finished so far (computed or reused).  Only
            ever increases.
        reused: Sessions served from the store.
        failed: Sessions that produced no usable attempt, with the reason.
    """

    def __init__(
        self,
        engine: SamplingEngine,
        config: EstimationConfig,
        store: Optional[ResultStore] = None,
        models: Optional[Dict[Task, ModelSpec]] = None,
    ):
        self.engine = engine
        self.config = config
        self.store = store if store is not None else InMemoryResultStore()
        self.models = models or {task: config.model_for(task) for task in Task}
        sampler = config.sampler_config()
        self._runners = {
            task: ConvergenceRetryRunner(
                engine,
                model,
                sampler,
                rhat_threshold=config.rhat_threshold,
                attempt_budget=config.attempt_budget,
                seed=config.seed,
            )
            for task, model in self.models.items()
        }

        self.completed = 0
        self.reused = 0
        self.failed: Dict[SessionKey, str] = {}
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Stop between sessions: running sessions finish, queued ones never start."""
        logger.info("Stop requested; no further sessions will start")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _estimate(self, session: Session) -> Optional[FitResult]:
        if self._stop.is_set():
            return None
        return self._runners[session.task].run(session)

    def run(self, sessions: Iterable[Session]) -> Dict[SessionKey, FitResult]:
        """
        Estimate every session not already in the store.

        Returns:
            Mapping from session key to FitResult (reused and new).

        Raises:
            ValueError: If two sessions share a key.
        """
        sessions = list(sessions)
        keys = [s.key for s in sessions]
        if len(set(keys)) != len(keys):
            raise ValueError("Duplicate session keys submitted to the scheduler")

        results: Dict[SessionKey, FitResult] = {}
        pending: List[Session] = []
        for session in sessions:
            if self.store.contains(session.key):
                results[session.key] = self.store.get(session.key)
                self.reused += 1
                self.completed += 1
            else:
                pending.append(session)

        logger.info(
            "Scheduling %d sessions (%d reused from store) on %d workers",
            len(pending),
            len(results),
            self.config.concurrency,
        )

        with ThreadPoolExecutor(max_workers=self.config.concurrency) as pool, tqdm(
            total=len(sessions),
            initial=len(results),
            desc="sessions",
            disable=not self.config.show_progress,
        ) as bar:
            futures = {pool.submit(self._estimate, s): s for s in pending}
            for future in as_completed(futures):
                session = futures[future]
                try:
                    result = future.result()
                except NoUsableAttemptError as e:
                    logger.error("%s", e)
                    self.failed[session.key] = str(e)
                except Exception:
                    # unexpected errors end the run once in-flight sessions finish
                    self._stop.set()
                    raise
                else:
                    if result is None:
                        continue
                    self.store.put(result)
                    results[session.key] = result
                self.completed += 1
                bar.update(1)

        self._mark_complete_tasks(sessions)
        return results

    def _mark_complete_tasks(self, sessions: List[Session]) -> None:
        if self._stop.is_set():
            return
        for task in {s.task for s in sessions}:
            task_keys = [s.key for s in sessions if s.task is task]
            if all(self.store.contains(k) for k in task_keys):
                self.store.mark_complete(task)
