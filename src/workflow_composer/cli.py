"""Command-line interface (CLI) entrypoint.

Objective:
    Provide a human-friendly CLI wrapper around
    :class:`src.workflow_composer.pipeline.DeploymentPipeline`.

Responsibilities:
    - Parse arguments (subcommand, profile id, verbosity, dry-run).
    - Configure logging (including suppressing noisy HTTP connection logs).
    - Invoke the pipeline and print a readable summary.

High-level call tree:
    - :func:`main`
        - :func:`setup_logging`
            - installs :class:`_UrllibConnectionInfoToDebugFilter`
        - instantiate :class:`DeploymentPipeline`
        - ``deploy``: :meth:`DeploymentPipeline.compose_and_deploy` (or
          :meth:`DeploymentPipeline.compose` with ``--dry-run``)
          -> :func:`print_outcome`
        - ``rollback``: :meth:`DeploymentPipeline.rollback` -> :func:`print_outcome`
        - ``history``: :meth:`DeploymentPipeline.get_history` -> :func:`print_history`

Exit codes:
    - 0: deployed, unchanged or rolled back
    - 1: any error, or the graph did not activate
"""

import argparse
import logging
import sys
import time
from typing import Optional

from .config import get_settings
from .errors import PipelineError
from .models import DeploymentOutcome, DeploymentRecord
from .pipeline import DeploymentPipeline


class _UrllibConnectionInfoToDebugFilter(logging.Filter):
    """Hide urllib3 "Starting new HTTP connection" logs unless in DEBUG mode."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("urllib3") and record.levelno <= logging.INFO:
            return logging.getLogger().isEnabledFor(logging.DEBUG)
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    root_logger = logging.getLogger()
    downgrade_filter = _UrllibConnectionInfoToDebugFilter()
    for handler in root_logger.handlers:
        handler.addFilter(downgrade_filter)


def print_outcome(outcome: DeploymentOutcome) -> None:
    """
    Print a deployment outcome to console.

    Args:
        outcome: Result of a deploy or rollback.
    """
    record = outcome.record
    marker = "OK" if outcome.success else "FAILED"

    print(f"\n{'='*60}")
    print(f"DEPLOYMENT {marker}: {outcome.kind.value}")
    print(f"{'='*60}")
    print(f"  Profile:   {record.profile_id}")
    print(f"  Attempt:   {record.attempt_id} ({record.status.value})")
    if outcome.strategy:
        print(f"  Strategy:  {outcome.strategy.value}")
    if outcome.external_graph_id:
        print(f"  Graph id:  {outcome.external_graph_id}")
    if outcome.content_hash:
        print(f"  Hash:      {outcome.content_hash[:12]}")
    if outcome.activation_status:
        print(f"  Live:      {outcome.activation_status.value}")
    if record.error_detail:
        print(f"  Error:     {record.error_detail}")
    print()


def print_history(records: list[DeploymentRecord], verbose: bool = False) -> None:
    """
    Print a profile's deployment history, oldest first.

    Args:
        records: Ledger records.
        verbose: If True, print error details.
    """
    if not records:
        print("\nNo deployments recorded.")
        return

    print(f"\n{'='*60}")
    print(f"DEPLOYMENT HISTORY: {records[0].profile_id} ({len(records)} attempts)")
    print(f"{'='*60}\n")

    for record in records:
        started = record.started_at.strftime("%Y-%m-%d %H:%M:%S")
        content = (record.content_hash or "-")[:12]
        graph_id = record.external_graph_id or "-"
        suffix = f" (rollback of #{record.rollback_of})" if record.rollback_of else ""
        print(
            f"  #{record.attempt_id:<4} {started}  {record.status.value:<12} "
            f"{content:<12} {graph_id}{suffix}"
        )
        if verbose and record.error_detail:
            print(f"        Error: {record.error_detail}")
    print()


def main(args: Optional[list[str]] = None) -> int:
    """
    Main CLI entry point.

    Pass an explicit ``args`` list instead of relying on ``sys.argv`` to call
    it from tests.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        int: Exit code (0 for success, 1 for error).
    """
    parser = argparse.ArgumentParser(
        description="Workflow Composer - compose and deploy tenant email automations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s deploy acme              Compose and deploy profile "acme"
  %(prog)s deploy acme --dry-run    Compose only, print strategy and hash
  %(prog)s rollback acme            Restore the last known-good graph
  %(prog)s history acme --verbose   Show every attempt with errors
        """,
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (defaults to COMPOSER_LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser("deploy", help="Compose and deploy a profile")
    deploy_parser.add_argument("profile_id", help="Business profile id")
    deploy_parser.add_argument(
        "--dry-run",
        "-d",
        action="store_true",
        help="Compose and inject without deploying",
    )
    deploy_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall deadline in seconds",
    )

    rollback_parser = subparsers.add_parser("rollback", help="Roll back a failed deployment")
    rollback_parser.add_argument("profile_id", help="Business profile id")

    history_parser = subparsers.add_parser("history", help="Show deployment history")
    history_parser.add_argument("profile_id", help="Business profile id")

    parsed_args = parser.parse_args(args)

    settings = get_settings()
    log_level = "DEBUG" if parsed_args.verbose else (parsed_args.log_level or settings.log_level)
    setup_logging(log_level)

    logger = logging.getLogger(__name__)

    try:
        pipeline = DeploymentPipeline(settings=settings)

        if parsed_args.command == "history":
            print_history(pipeline.get_history(parsed_args.profile_id), verbose=parsed_args.verbose)
            return 0

        if parsed_args.command == "rollback":
            outcome = pipeline.rollback(parsed_args.profile_id)
            print_outcome(outcome)
            return 0 if outcome.success else 1

        if parsed_args.dry_run:
            template, graph = pipeline.compose(parsed_args.profile_id)
            print(f"\nDRY RUN - profile {parsed_args.profile_id} not deployed")
            print(f"  Strategy:  {template.strategy.value} (score {template.score:.3f})")
            print(f"  Nodes:     {len(graph.graph.get('nodes', []))}")
            print(f"  Hash:      {graph.content_hash[:12]}\n")
            return 0

        deadline = None
        if parsed_args.timeout:
            deadline = time.monotonic() + parsed_args.timeout

        outcome = pipeline.compose_and_deploy(parsed_args.profile_id, deadline=deadline)
        print_outcome(outcome)
        return 0 if outcome.success else 1

    except PipelineError as e:
        logger.error("%s failed: %s", parsed_args.command, e)
        print(f"\nError: {e}\n")
        return 1
    except Exception as e:
        logger.exception("Fatal error")
        print(f"\nError: {e}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
