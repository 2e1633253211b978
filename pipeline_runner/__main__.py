"""
Local entrypoint for running a pipeline on this machine.

Usage:
    python -m pipeline_runner [OPTIONS]
    pipeline-runner [OPTIONS]  (after pip install)

Environment Variables:
    PIPELINE_DB_PATH: Database path (default: pipeline.db)
    PIPELINE_CONTAINER_PREFIX: Container name prefix for namespace isolation (default: "")
    PIPELINE_APPROVAL_TIMEOUT: Seconds to wait at a manual gate (default: wait forever)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from pipeline_common.errors import DefinitionError
from pipeline_common.models import Run, StepResult
from pipeline_definition.loader import DEFAULT_DEFINITION_FILE, load_definition
from pipeline_persistence.sqlite_repository import SQLiteRunRepository

from .container_manager import ContainerManager
from .runner import PipelineRunner

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_DEFINITION_ERROR = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Pipeline Runner - run a bitbucket-pipelines.yml pipeline locally in Docker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  PIPELINE_DB_PATH            Database path (default: pipeline.db)
  PIPELINE_CONTAINER_PREFIX   Container name prefix for namespace isolation
  PIPELINE_APPROVAL_TIMEOUT   Seconds to wait at a manual gate (default: forever)

Note: Command-line arguments override environment variables.

Examples:
  # Run the pipeline selected for the main branch
  pipeline-runner --branch main

  # Run a custom pipeline and approve manual steps automatically
  pipeline-runner --custom release --auto-approve

  # Approve manual steps from another terminal instead
  pipeline approve <run_id>
        """,
    )

    parser.add_argument(
        "--file",
        type=str,
        default=DEFAULT_DEFINITION_FILE,
        help=f"Pipeline definition file (default: {DEFAULT_DEFINITION_FILE})",
    )
    parser.add_argument("--branch", type=str, default=None, help="Branch to select the pipeline for")
    parser.add_argument("--custom", type=str, default=None, help="Name of a custom pipeline to run")
    parser.add_argument("--commit", type=str, default=None, help="Commit hash exposed to steps")
    parser.add_argument(
        "--workspace",
        type=str,
        default=None,
        help="Repository directory mounted into steps (default: directory of --file)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: PIPELINE_DB_PATH env or pipeline.db)",
    )
    parser.add_argument(
        "--container-prefix",
        type=str,
        default=None,
        help="Container name prefix (default: PIPELINE_CONTAINER_PREFIX env or '')",
    )
    parser.add_argument(
        "--approval-timeout",
        type=float,
        default=None,
        help="Seconds to wait for a manual approval (default: PIPELINE_APPROVAL_TIMEOUT env or forever)",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve manual steps without waiting",
    )
    parser.add_argument(
        "--skip-recovery",
        action="store_true",
        help="Do not stop interrupted runs or remove leftover containers on startup",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_database_path(args: argparse.Namespace) -> str:
    if args.db_path:
        return args.db_path
    return os.environ.get("PIPELINE_DB_PATH", "pipeline.db")


def get_container_prefix(args: argparse.Namespace) -> str:
    if args.container_prefix is not None:
        return args.container_prefix
    return os.environ.get("PIPELINE_CONTAINER_PREFIX", "")


def get_approval_timeout(args: argparse.Namespace) -> float | None:
    """
    Get the manual gate timeout from CLI args or environment.

    Returns:
        Seconds to wait, or None to wait until approved or stopped
    """
    if args.approval_timeout is not None:
        if args.approval_timeout <= 0:
            logger.warning(f"Invalid approval timeout={args.approval_timeout}, waiting forever")
            return None
        return args.approval_timeout

    raw = os.environ.get("PIPELINE_APPROVAL_TIMEOUT")
    if not raw:
        return None
    try:
        timeout = float(raw)
    except ValueError:
        logger.warning(f"Invalid PIPELINE_APPROVAL_TIMEOUT={raw}, waiting forever")
        return None
    if timeout <= 0:
        logger.warning(f"Invalid PIPELINE_APPROVAL_TIMEOUT={timeout}, waiting forever")
        return None
    return timeout


async def auto_approve(run: Run, step: StepResult) -> str:
    logger.info(f"Auto-approving manual step '{step.name}'")
    return "local"


async def run_pipeline(args: argparse.Namespace) -> Run:
    """
    Load the definition, select the pipeline and run it to completion.

    Raises:
        DefinitionError: If the definition cannot be loaded or no pipeline matches
    """
    definition = load_definition(args.file)
    pipeline = definition.select(branch=args.branch, custom=args.custom)
    workspace = args.workspace or str(Path(args.file).resolve().parent)

    db_path = get_database_path(args)
    container_prefix = get_container_prefix(args)
    approval_timeout = get_approval_timeout(args)

    logger.info(f"Running pipeline {pipeline.name} from {args.file}")
    logger.info(f"  Workspace: {workspace}")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Container prefix: {container_prefix or '(none)'}")

    repository = SQLiteRunRepository(db_path)
    await repository.initialize()

    runner = PipelineRunner(
        repository=repository,
        container_manager=ContainerManager(container_name_prefix=container_prefix),
        approval_timeout=approval_timeout,
        approver=auto_approve if args.auto_approve else None,
    )
    if not args.skip_recovery:
        await runner.recover()

    loop = asyncio.get_running_loop()
    interrupted = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received interrupt, stopping the run...")
        interrupted.set()
        loop.create_task(runner.stop_all())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        run = await runner.run(
            definition,
            pipeline.name,
            workspace,
            branch=args.branch,
            commit=args.commit,
        )
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await repository.close()

    if interrupted.is_set():
        raise KeyboardInterrupt
    return run


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the runner.

    Returns:
        Exit code (0 success, 1 failed or stopped run, 2 definition error,
        130 interrupted)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        run = asyncio.run(run_pipeline(args))
    except DefinitionError as e:
        logger.error(f"Definition error: {e}")
        return EXIT_DEFINITION_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_FAILURE

    for step in run.steps:
        logger.info(f"  {step.index + 1}. {step.name}: {step.status}")
    logger.info(f"Run {run.id} (build #{run.build_number}) {run.status}")
    return EXIT_SUCCESS if run.success else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
