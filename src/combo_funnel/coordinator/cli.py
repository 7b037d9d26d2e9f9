"""CLI for local funnel runs."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from combo_funnel.classification import ClassificationBuilder
from combo_funnel.logging_utils import configure_logging
from combo_funnel.runtime import task_log_paths

from .config import load_profile, load_task
from .coordinator import BatchCoordinator
from .models import TaskState


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    base = argparse.ArgumentParser(add_help=False)
    base.add_argument("--profile", required=True, help="Path to funnel profile YAML")

    parser = argparse.ArgumentParser(description="Combination funnel CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import-periods", parents=[base], help="Load periods from a CSV file")
    import_parser.add_argument("--csv", required=True)

    build_parser = subparsers.add_parser(
        "build-classification", parents=[base], help="Build classification entries for target periods"
    )
    build_parser.add_argument("--target", action="append", required=True)
    build_parser.add_argument("--force", action="store_true")

    run_parser = subparsers.add_parser("run", parents=[base], help="Run (or resume) a task")
    run_parser.add_argument("--task", required=True, help="Path to task YAML/JSON")

    explain_parser = subparsers.add_parser("explain", parents=[base], help="Stage that excluded a combination")
    explain_parser.add_argument("--task-id", required=True)
    explain_parser.add_argument("--period", required=True)
    explain_parser.add_argument("--combination-id", required=True, type=int)

    summary_parser = subparsers.add_parser("summary", parents=[base], help="Task status, results and stage totals")
    summary_parser.add_argument("--task-id", required=True)

    rescore_parser = subparsers.add_parser("rescore", parents=[base], help="Score a predicted period once drawn")
    rescore_parser.add_argument("--task-id", required=True)
    rescore_parser.add_argument("--period", required=True)

    return parser.parse_args(argv)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    profile = load_profile(Path(args.profile))
    task = load_task(Path(args.task)) if args.command == "run" else None
    task_id = task.task_id if task is not None else getattr(args, "task_id", None)
    configure_logging(log_paths=task_log_paths(task_id, root=profile.runs_root))
    coordinator = BatchCoordinator(profile)

    if args.command == "import-periods":
        count = coordinator.period_store.import_csv(Path(args.csv))
        _print({"imported": count})
        return
    if args.command == "build-classification":
        builder = ClassificationBuilder(coordinator.primary, profile.thresholds.as_thresholds())
        ledger = coordinator.period_store.load_ledger()
        summary = builder.build_for_targets(ledger, args.target, coordinator.classification_store, force=args.force)
        _print({"generated": summary.generated, "skipped": summary.skipped, "errors": summary.errors})
        return
    if args.command == "run":
        outcome = coordinator.run(task)
        _print(
            {
                "task_id": outcome.task_id,
                "state": outcome.state.value,
                "reason": outcome.reason,
                "health": outcome.health.get("health_state"),
                "metrics": outcome.metrics,
            }
        )
        if outcome.state != TaskState.COMPLETED:
            raise SystemExit(1)
        return
    if args.command == "explain":
        _print(coordinator.explain(args.task_id, args.period, args.combination_id).as_dict())
        return
    if args.command == "summary":
        _print(coordinator.summary(args.task_id))
        return
    if args.command == "rescore":
        _print(coordinator.rescore_period(args.task_id, args.period).summary())
        return
    raise SystemExit(f"unsupported command: {args.command}")


if __name__ == "__main__":
    main()
