"""CLI commands for running image batches against a genbatch server.

Usage:
    python -m genbatch.cli run PROMPTS_FILE [OPTIONS]
    python -m genbatch.cli resume [OPTIONS]
    python -m genbatch.cli status [OPTIONS]

Examples:
    # Generate one image per line of prompts.txt
    python -m genbatch.cli run prompts.txt

    # Four parallel calls against a remote server
    python -m genbatch.cli run prompts.txt --server https://genbatch.example.com --concurrency 4

    # Continue an interrupted batch (completed images are not regenerated)
    python -m genbatch.cli resume

Batch state is written to the state file after every update, so a killed
process can always be resumed.
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from datetime import timedelta
from pathlib import Path
from typing import Optional

import structlog

from genbatch.client.session import BatchSession
from genbatch.client.stream_client import BatchApiClient, BatchRunner
from genbatch.core.config import ClientSettings, configure_logging
from genbatch.models.batch import Batch, BatchStatus, InvalidStateTransition, ItemStatus
from genbatch.models.generation import GenerationConfig, parse_prompts
from genbatch.services.prompt_validator import validate_prompts

logger = structlog.get_logger()


def build_parser() -> ArgumentParser:
    """Build the command-line parser."""
    parser = ArgumentParser(
        prog="genbatch",
        description="Run resumable AI image batches against a genbatch server",
    )
    parser.add_argument("--server", help="Server URL (default: GENBATCH_SERVER_URL)")
    parser.add_argument(
        "--state-file", help="Local batch state file (default: GENBATCH_STATE_FILE)"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start a new batch from a prompts file")
    run.add_argument("prompts_file", type=Path, help="One prompt per line; '#' lines are skipped")
    run.add_argument("--name", help="Batch display name")
    run.add_argument("--concurrency", type=int, default=3, help="Parallel provider calls")
    run.add_argument("--provider", help="Generation provider (replicate, kie)")
    run.add_argument("--resolution", choices=["1K", "2K", "4K"], default="1K")
    run.add_argument("--aspect-ratio", default="1:1")
    run.add_argument("--output-format", choices=["png", "jpeg", "webp"], default="png")
    run.add_argument("--prefix", default="", help="Text prepended to every prompt")
    run.add_argument("--suffix", default="", help="Text appended to every prompt")

    commands.add_parser("resume", help="Reconcile and resubmit unfinished or failed items")
    commands.add_parser("status", help="Show the state of the last batch")
    return parser


def print_summary(batch: Batch) -> None:
    counts = batch.counts()
    print("\n" + "=" * 60)
    print(f"Batch {batch.id}: {batch.name}")
    print("=" * 60)
    print(f"Status: {batch.status.value}")
    print(f"Items: {len(batch.items)}")
    print(f"Completed: {counts['completed']}")
    print(f"Failed: {counts['failed']}")
    unfinished = len(batch.items) - counts["completed"] - counts["failed"]
    print(f"Unfinished: {unfinished}")

    failed = [item for item in batch.items if item.status == ItemStatus.FAILED]
    if failed:
        print("\nFailures:")
        for item in failed[:5]:  # Show first 5 errors
            print(f"  - #{item.index}: {item.error}")
        if len(failed) > 5:
            print(f"  ... and {len(failed) - 5} more")

    if batch.status == BatchStatus.INTERRUPTED:
        print("\nBatch was interrupted. Run `python -m genbatch.cli resume` to continue.")
    print("=" * 60 + "\n")


def exit_code_for(batch: Batch) -> int:
    """0 all completed, 2 finished with failures or interrupted, 1 error or cancelled."""
    if batch.status == BatchStatus.COMPLETED:
        return 0 if batch.counts()["failed"] == 0 else 2
    if batch.status == BatchStatus.INTERRUPTED:
        return 2
    return 1


async def run_command(args: Namespace, settings: ClientSettings) -> int:
    state_path = Path(args.state_file or settings.state_file)
    session = BatchSession.load(state_path) if state_path.exists() else BatchSession()

    if args.command == "status":
        if session.batch is None:
            print("No batch recorded", file=sys.stderr)
            return 1
        print_summary(session.batch)
        return exit_code_for(session.batch)

    async def save_state(_: Batch) -> None:
        session.save(state_path)

    api = BatchApiClient(
        args.server or settings.server_url,
        stream_idle_timeout=settings.stale_processing_seconds,
    )
    runner = BatchRunner(
        api,
        session,
        on_change=save_state,
        sleep_threshold=settings.sleep_gap_threshold_seconds,
        stale_window=timedelta(seconds=settings.stale_processing_seconds),
    )

    try:
        if args.command == "run":
            prompts = validate_prompts(parse_prompts(args.prompts_file.read_text(encoding="utf-8")))
            config = GenerationConfig(
                provider=args.provider,
                resolution=args.resolution,
                aspect_ratio=args.aspect_ratio,
                output_format=args.output_format,
                prompt_prefix=args.prefix,
                prompt_suffix=args.suffix,
                concurrency=args.concurrency,
            )
            logger.info("cli.run_started", prompts=len(prompts), server=api.base_url)
            batch = await runner.start(prompts, config, name=args.name)
        else:
            if session.batch is None:
                print("No batch to resume", file=sys.stderr)
                return 1
            logger.info("cli.resume_started", batch_id=session.batch.id, server=api.base_url)
            batch = await runner.resume()
    finally:
        await api.aclose()
        session.save(state_path)

    print_summary(batch)
    return exit_code_for(batch)


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success, resumable), 130 (interrupted)
    """
    args = build_parser().parse_args(argv)

    settings = ClientSettings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    try:
        return asyncio.run(run_command(args, settings))
    except (ValueError, OSError, InvalidStateTransition) as e:
        logger.error("cli.failed", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted. State saved; run `resume` to continue.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT
