"""
Command-line interface for Session Estimation.

Usage:
    python -m applications.session_estimation validate [options]
    python -m applications.session_estimation simulate --task discounting -o trials.csv
    python -m applications.session_estimation run [options]
    python -m applications.session_estimation aggregate [options]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(name)-30s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(args: argparse.Namespace):
    from .config import EstimationConfig

    config = EstimationConfig.from_yaml(args.config)
    overrides = {}
    if getattr(args, "engine", None):
        overrides["engine"] = args.engine
    if getattr(args, "concurrency", None):
        overrides["concurrency"] = args.concurrency
    if getattr(args, "results_dir", None):
        overrides["results_dir"] = args.results_dir
    if overrides:
        config = EstimationConfig.from_dict({**config.to_dict(), **overrides})
    return config


# ── subcommands ─────────────────────────────────────────────────────

def cmd_validate(args: argparse.Namespace) -> None:
    """Validate configuration and input trial tables without sampling."""
    from .data_preparation import SessionDataError, load_trial_table, sessions_from_frame
    from .model_definitions import Task

    config = _load_config(args)
    print(f"✅  Config valid  (engine={config.engine}, "
          f"{config.chain_count}×{config.draws_per_chain} draws, "
          f"R-hat < {config.rhat_threshold}, budget={config.attempt_budget})")

    ok = True
    for task_name, path in config.task_data().items():
        if not Path(path).exists():
            print(f"⚠️   {task_name}: trial table not found at {path}")
            ok = False
            continue
        try:
            sessions, rejected = sessions_from_frame(load_trial_table(path), Task(task_name))
        except SessionDataError as e:
            print(f"❌  {task_name}: {e}")
            ok = False
            continue
        print(f"✅  {task_name}: {len(sessions)} sessions from {Path(path).name}")
        for key, reason in rejected.items():
            print(f"    rejected {key.label()}: {reason}")
    if not ok:
        sys.exit(1)


def cmd_simulate(args: argparse.Namespace) -> None:
    """Write a synthetic trial table for one task."""
    from .data_preparation import save_json, trials_to_frame
    from .simulation import simulate_population

    days = tuple(range(1, args.days + 1))
    sessions, true_params = simulate_population(
        args.task,
        n_subjects=args.subjects,
        days=days,
        n_trials=args.trials,
        seed=args.seed,
    )
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    trials_to_frame(sessions).to_csv(output, index=False)
    truth_path = output.with_suffix(".truth.json")
    save_json(
        {f"{subject}/day{day}": params for (subject, day), params in true_params.items()},
        truth_path,
    )
    print(f"✅  Simulated {len(sessions)} {args.task} sessions → {output}")
    print(f"    True parameters: {truth_path}")


def cmd_run(args: argparse.Namespace) -> None:
    """Run the full estimation pipeline."""
    from .pipeline import EstimationPipeline

    config = _load_config(args)
    pipeline = EstimationPipeline(config)
    summary = pipeline.run(rebuild=args.rebuild)

    print("✅  Run complete.")
    for task_name, info in summary["tasks"].items():
        print(
            f"    {task_name}: {info['sessions']} sessions, "
            f"{info['converged']} converged, {info['exhausted']} exhausted, "
            f"{info['failed']} failed, {info['excluded']} excluded, "
            f"{info['rejected']} rejected, {info['reused']} reused"
        )
    for task_name, reason in summary["corrupted"].items():
        print(f"❌  {task_name}: skipped, {reason}")
    print(f"    Estimates: {summary['outputs']['estimates']}")
    print(f"    Duration: {summary.get('duration_seconds', 0):.1f}s")


def cmd_aggregate(args: argparse.Namespace) -> None:
    """Re-run aggregation from completed result stores."""
    from .pipeline import EstimationPipeline

    config = _load_config(args)
    summary = EstimationPipeline(config).aggregate_only()
    print("✅  Aggregation complete.")
    for task_name, info in summary["tasks"].items():
        print(f"    {task_name}: {info['clean']} of {info['sessions']} sessions kept")
    print(f"    Estimates: {summary['outputs']['estimates']}")


# ── main entry point ────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="session_estimation",
        description="Session Estimation: per-session Bayesian fits with convergence retry",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Debug-level logging"
    )
    sub = parser.add_subparsers(dest="command")

    # validate
    p_val = sub.add_parser("validate", help="Validate config and trial tables")
    p_val.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_val.set_defaults(func=cmd_validate)

    # simulate
    p_sim = sub.add_parser("simulate", help="Write a synthetic trial table")
    p_sim.add_argument(
        "--task",
        choices=["discounting", "risk_ambiguity"],
        required=True,
        help="Task to simulate",
    )
    p_sim.add_argument("-o", "--output", required=True, help="Output CSV path")
    p_sim.add_argument("--subjects", type=int, default=10, help="Number of subjects")
    p_sim.add_argument("--days", type=int, default=1, help="Sessions per subject")
    p_sim.add_argument("--trials", type=int, default=120, help="Trials per session")
    p_sim.add_argument("--seed", type=int, default=0, help="Random seed")
    p_sim.set_defaults(func=cmd_simulate)

    # run
    p_run = sub.add_parser("run", help="Run the full estimation pipeline")
    p_run.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_run.add_argument(
        "--engine",
        choices=["cmdstan", "metropolis"],
        default=None,
        help="Override the configured sampling engine",
    )
    p_run.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Override the number of sessions estimated in parallel",
    )
    p_run.add_argument("--results-dir", default=None, help="Override the output directory")
    p_run.add_argument(
        "--rebuild",
        action="store_true",
        help="Discard stored results and re-estimate every session",
    )
    p_run.set_defaults(func=cmd_run)

    # aggregate
    p_agg = sub.add_parser(
        "aggregate",
        help="Re-run aggregation from completed result stores",
    )
    p_agg.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_agg.add_argument("--results-dir", default=None, help="Override the output directory")
    p_agg.set_defaults(func=cmd_aggregate)

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.func(args)
