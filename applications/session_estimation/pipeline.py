"""
Estimation Pipeline: end-to-end orchestration.

  Phase 1 → Load trial tables and build validated sessions
  Phase 2 → Schedule convergence-retry estimation for every session
  Phase 3 → Aggregate, filter outliers and join tasks

Supports resume: per-task results live in the result store and are
reused on the next run instead of being recomputed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .aggregation import TaskAggregate, aggregate_task, join_tasks
from .config import EstimationConfig
from .data_preparation import Session, SessionKey, load_trial_table, save_json, sessions_from_frame
from .model_definitions import Task
from .sampling import SamplingEngine, create_engine
from .scheduler import JobScheduler
from .store import CsvResultStore, ResultStore, StoreCorruptionError

logger = logging.getLogger(__name__)


class EstimationPipeline:
    """
    End-to-end pipeline for session estimation.

    Instantiate with an :class:`EstimationConfig`, then call :meth:`run`.
    """

    def __init__(
        self,
        config: EstimationConfig,
        engine: Optional[SamplingEngine] = None,
        store: Optional[ResultStore] = None,
    ):
        self.config = config
        self.results_dir = Path(config.results_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self.engine = engine
        self.store = store if store is not None else CsvResultStore(self.results_dir / "store")
        self.scheduler: Optional[JobScheduler] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        sessions: Optional[List[Session]] = None,
        *,
        rebuild: bool = False,
    ) -> Dict[str, Any]:
        """
        Execute the full pipeline.

        Args:
            sessions: Pre-built sessions.  If None, the trial tables named in
                the config are loaded.
            rebuild: Discard stored results for the tasks being run and
                regenerate them in full.

        Returns:
            Summary dict with per-task counts and output paths.  Tasks whose
            stored results are corrupted are skipped and listed under
            ``"corrupted"``; the remaining tasks still run.
        """
        run_start = datetime.now(timezone.utc)
        summary: Dict[str, Any] = {
            "config": self.config.to_dict(),
            "started_at": run_start.isoformat(),
            "tasks": {},
        }

        # ── Phase 1: Sessions ──
        rejected: Dict[SessionKey, str] = {}
        if sessions is None:
            sessions, rejected = self._load_sessions()
        tasks = sorted({s.task for s in sessions}, key=lambda t: t.value)

        if rebuild:
            for task in tasks:
                self.store.reset(task)

        # a corrupted store is fatal for its own task only
        corrupted = self._check_store(tasks)
        if corrupted:
            tasks = [t for t in tasks if t not in corrupted]
            sessions = [s for s in sessions if s.task not in corrupted]
        summary["corrupted"] = {t.value: reason for t, reason in corrupted.items()}

        # ── Phase 2: Estimation ──
        logger.info("═══ Estimating %d sessions ═══", len(sessions))
        stored = [s.key for s in sessions if self.store.contains(s.key)]
        engine = self._get_engine()
        for task in tasks:
            engine.prepare(self.config.model_for(task))
        self.scheduler = JobScheduler(engine, self.config, self.store)
        results = self.scheduler.run(sessions)

        # ── Phase 3: Aggregation ──
        aggregates = self._aggregate(tasks, list(results.values()))
        outputs = self._write_outputs(aggregates)

        for task in tasks:
            task_summary = dict(aggregates[task].summary)
            task_summary["rejected"] = sum(1 for k in rejected if k.task is task)
            task_summary["failed"] = sum(1 for k in self.scheduler.failed if k.task is task)
            task_summary["reused"] = sum(1 for k in stored if k.task is task)
            summary["tasks"][task.value] = task_summary
        summary["reused_from_store"] = self.scheduler.reused
        summary["failed_sessions"] = {k.label(): v for k, v in self.scheduler.failed.items()}
        summary["rejected_sessions"] = {k.label(): v for k, v in rejected.items()}
        summary["outputs"] = outputs

        run_end = datetime.now(timezone.utc)
        summary["finished_at"] = run_end.isoformat()
        summary["duration_seconds"] = (run_end - run_start).total_seconds()

        self.config.save_yaml(self.results_dir / "estimation_config.yaml")
        save_json(summary, self.results_dir / "run_summary.json")
        logger.info("Run complete. Summary: %s", self.results_dir / "run_summary.json")
        return summary

    def aggregate_only(self) -> Dict[str, Any]:
        """
        Re-run aggregation from completed per-task stores.

        Raises:
            FileNotFoundError: If no task has a completed store.
        """
        tasks = [t for t in Task if self.store.is_complete(t)]
        if not tasks:
            raise FileNotFoundError(
                f"No completed task results in {self.results_dir}. "
                "Run the pipeline first."
            )
        results = []
        for task in tasks:
            results.extend(self.store.load(task).values())
        aggregates = self._aggregate(tasks, results)
        outputs = self._write_outputs(aggregates)
        return {
            "tasks": {t.value: aggregates[t].summary for t in tasks},
            "outputs": outputs,
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _load_sessions(self) -> Tuple[List[Session], Dict[SessionKey, str]]:
        logger.info("═══ Loading sessions ═══")
        sessions: List[Session] = []
        rejected: Dict[SessionKey, str] = {}
        task_data = self.config.task_data()
        if not task_data:
            raise ValueError("No trial tables configured (discounting_data / risk_ambiguity_data)")
        for task_name, path in task_data.items():
            frame = load_trial_table(path)
            task_sessions, task_rejected = sessions_from_frame(frame, Task(task_name))
            sessions.extend(task_sessions)
            rejected.update(task_rejected)
        return sessions, rejected

    def _check_store(self, tasks: List[Task]) -> Dict[Task, str]:
        corrupted: Dict[Task, str] = {}
        for task in tasks:
            try:
                self.store.load(task)
            except StoreCorruptionError as e:
                logger.error("%s; skipping %s sessions", e, task.value)
                corrupted[task] = e.reason
        return corrupted

    def _aggregate(self, tasks, results) -> Dict[Task, TaskAggregate]:
        logger.info("═══ Aggregating estimates ═══")
        return {
            task: aggregate_task(
                results, self.config.model_for(task), self.config.outlier_z_cutoff
            )
            for task in tasks
        }

    def _write_outputs(self, aggregates: Dict[Task, TaskAggregate]) -> Dict[str, str]:
        outputs: Dict[str, str] = {}
        for task, agg in aggregates.items():
            path = self.results_dir / f"task_{task.value}.csv"
            agg.frame.to_csv(path, index=False)
            outputs[f"task_{task.value}"] = str(path)

        clean = join_tasks({t: a.clean for t, a in aggregates.items()})
        clean_path = self.results_dir / "estimates.csv"
        clean.to_csv(clean_path, index=False)
        outputs["estimates"] = str(clean_path)

        full = join_tasks({t: a.frame for t, a in aggregates.items()})
        full_path = self.results_dir / "estimates_all.csv"
        full.to_csv(full_path, index=False)
        outputs["estimates_all"] = str(full_path)

        logger.info("Wrote %d estimate rows to %s", len(clean), clean_path)
        return outputs

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------

    def _get_engine(self) -> SamplingEngine:
        if self.engine is None:
            kwargs = {}
            if self.config.engine == "cmdstan":
                kwargs["output_dir"] = self.results_dir / "stan_output"
            self.engine = create_engine(self.config.engine, **kwargs)
        return self.engine
