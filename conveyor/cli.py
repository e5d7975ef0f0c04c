"""Command-line interface: ``conveyor run|plan|rollback|history|health|init``."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from conveyor.api.facade import Conveyor
from conveyor.errors import ConveyorError

logger = logging.getLogger(__name__)

# Returned for usage and configuration errors, distinct from run statuses
EXIT_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conveyor", add_help=True)
    parser.add_argument("--project", default=".", help="Project root (default: current directory)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline for a branch and commit")
    run.add_argument("pipeline", help="Pipeline definition JSON file")
    run.add_argument("--branch", required=True)
    run.add_argument("--commit", required=True)
    run.add_argument(
        "--no-prune", action="store_true",
        help="Fail stages the branch may not reach instead of dropping them",
    )
    run.add_argument("--fail-fast", action="store_true", help="Cancel a group on its first fatal failure")

    plan = sub.add_parser("plan", help="Show which stages a branch may run")
    plan.add_argument("pipeline")
    plan.add_argument("--branch", required=True)

    rollback = sub.add_parser("rollback", help="Redeploy an environment's previous artifact")
    rollback.add_argument("environment")
    rollback.add_argument("--no-verify", action="store_true")

    history = sub.add_parser("history", help="List an environment's deployments, newest first")
    history.add_argument("environment")
    history.add_argument("--limit", type=int, default=10)

    health = sub.add_parser("health", help="Probe every environment once")
    health.add_argument("--path", default="/")

    sub.add_parser("init", help="Write .env.example with every configuration key")

    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(cv: Conveyor, args: argparse.Namespace) -> int:
    run = cv.trigger(
        args.pipeline,
        args.branch,
        args.commit,
        prune_unreachable=not args.no_prune,
        fail_fast=args.fail_fast,
    )
    for outcome in run.outcomes:
        line = f"{outcome.stage:<24} {outcome.status.value:<8} attempts={outcome.attempts}"
        if outcome.diagnostics:
            line += f" log={outcome.diagnostics}"
        print(line)
    print(run.state.summary())
    return run.status.exit_code


def _plan(cv: Conveyor, args: argparse.Namespace) -> int:
    reachable = [e.name for e in cv.reachable(args.branch)]
    print(f"reachable: {', '.join(reachable) or '(none)'}")
    for stage in cv.plan(args.pipeline, args.branch):
        print(f"pruned: {stage.name} -> {stage.environment}")
    return 0


def _rollback(cv: Conveyor, args: argparse.Namespace) -> int:
    result = cv.rollback(args.environment, verify=not args.no_verify)
    print(f"{result.environment}: {'ok' if result.success else 'failed'}: {result.message}")
    return 0 if result.success else 1


def _history(cv: Conveyor, args: argparse.Namespace) -> int:
    for record in cv.history(args.environment)[: args.limit]:
        print(f"#{record.id} {record.timestamp} {record.artifact_id} run={record.run_id}")
    return 0


def _health(cv: Conveyor, args: argparse.Namespace) -> int:
    report = cv.health(args.path)
    for check in report.checks:
        print(f"{'PASS' if check.passed else 'FAIL'} {check.name}: {check.message}")
    print(report.status)
    return 0 if report.status == "healthy" else 1


def _init(cv: Conveyor, args: argparse.Namespace) -> int:
    print(cv.generate_env_template())
    return 0


_COMMANDS = {
    "run": _run,
    "plan": _plan,
    "rollback": _rollback,
    "history": _history,
    "health": _health,
    "init": _init,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        cv = Conveyor(args.project)
    except ConveyorError as exc:
        print(f"conveyor: {exc}", file=sys.stderr)
        return EXIT_ERROR
    _configure_logging(cv.config.get("CONVEYOR_LOG_LEVEL", "INFO"))

    try:
        return _COMMANDS[args.command](cv, args)
    except ConveyorError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"conveyor: {exc}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        cv.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
