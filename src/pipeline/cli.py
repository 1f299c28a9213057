"""
Pipeline CLI.

Commands:
  schedule start [queries...]   Start sweeps + queue loop until Ctrl+C
  schedule stop                 Stop an in-process scheduler (use Ctrl+C or
                                SIGTERM for a running `schedule start`)
  schedule status               Show config, queue stats, running state
  schedule run <query>          Discover one query and drain the queue
  queue stats                   Job counts by status and type
  queue pending                 Pending jobs in dispatch order
  queue clear [status]          Remove jobs (never running ones)
  queue process                 Drain all ready jobs
  pipeline run <url>            generate → deploy → email for one website

Queue state is shared between invocations through QUEUE_PERSIST_PATH.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from src.infra.logging_config import setup_logging
from src.infra.settings import load_settings
from src.scheduler.entities import DrainResult, JobStatus
from src.scheduler.errors import SchedulerError
from src.scheduler.retry_policy import format_retry_delay

from .runner import PipelineRunner


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autowebsites",
        description="Lead pipeline job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  autowebsites schedule start "plumbers in Austin TX" "dentists in Denver CO"
  autowebsites schedule run "roofers in Tampa FL"
  autowebsites queue stats
  autowebsites queue clear failed
  autowebsites pipeline run https://example.com --no-deploy
        """,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Print per-job failure details and retry rationale",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # schedule
    schedule_parser = subparsers.add_parser("schedule", help="Pipeline scheduler")
    schedule_sub = schedule_parser.add_subparsers(dest="action")
    start_parser = schedule_sub.add_parser("start", help="Start the scheduler")
    start_parser.add_argument("queries", nargs="*", help="Discovery queries (override DISCOVERY_QUERIES)")
    schedule_sub.add_parser("stop", help="Stop an in-process scheduler")
    schedule_sub.add_parser("status", help="Show scheduler status")
    run_parser = schedule_sub.add_parser("run", help="Run discovery for one query now")
    run_parser.add_argument("query", help="Discovery query, e.g. 'plumbers in Austin TX'")

    # queue
    queue_parser = subparsers.add_parser("queue", help="Job queue")
    queue_sub = queue_parser.add_subparsers(dest="action")
    queue_sub.add_parser("stats", help="Show queue statistics")
    queue_sub.add_parser("pending", help="List pending jobs")
    clear_parser = queue_sub.add_parser("clear", help="Remove jobs")
    clear_parser.add_argument(
        "status",
        nargs="?",
        default=None,
        help="Only remove jobs with this status (pending, completed, failed)",
    )
    queue_sub.add_parser("process", help="Process all ready jobs")

    # pipeline
    pipeline_parser = subparsers.add_parser("pipeline", help="Single-site pipeline")
    pipeline_sub = pipeline_parser.add_subparsers(dest="action")
    full_parser = pipeline_sub.add_parser("run", help="Run the full pipeline for a URL")
    full_parser.add_argument("url", help="Website URL")
    full_parser.add_argument(
        "--deploy",
        dest="deploy",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Deploy the generated gallery (default: PIPELINE_AUTO_DEPLOY)",
    )
    full_parser.add_argument(
        "--email",
        dest="email",
        action="store_true",
        default=None,
        help="Send the outreach email after deploy",
    )

    return parser


# =============================================================================
# Output
# =============================================================================

def _print_header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _print_stats(stats) -> None:
    print(f"Total: {stats.total}")
    print("By status:")
    for status, count in stats.by_status.items():
        print(f"  {status:<10} {count}")
    print("By type:")
    for job_type, count in stats.by_type.items():
        if count:
            print(f"  {job_type:<10} {count}")


def _print_drain(result: DrainResult) -> None:
    print(f"Done: {result.completed} completed, {result.failed} failed, {result.retried} rescheduled")


def _print_failures(runner: PipelineRunner) -> None:
    """Verbose detail: failed jobs and jobs waiting for a retry."""
    queue = runner.queue
    failed = queue.list_jobs(status=JobStatus.FAILED)
    for job in failed:
        print(f"  FAILED  {job.id} [{job.type.value}] after {job.attempts} attempt(s): {job.last_error}")

    now = runner.clock.now()
    for job in queue.get_pending_jobs():
        context = queue.get_retry_context(job.id)
        if context is None or context.next_retry_at is None:
            continue
        wait_ms = max(0, int((context.next_retry_at - now).total_seconds() * 1000))
        print(
            f"  RETRY   {job.id} [{job.type.value}] in {format_retry_delay(wait_ms)}: "
            f"{context.last_error} ({context.reason})"
        )


# =============================================================================
# Commands
# =============================================================================

async def _schedule_start(runner: PipelineRunner, args) -> int:
    if args.queries:
        runner.configure(discovery_queries=args.queries)

    armed = runner.start_scheduler()
    print("Scheduler started. Press Ctrl+C to stop.")
    for name in armed:
        print(f"  sweep armed: {name}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await stop_event.wait()
    await runner.stop_scheduler()
    print("Scheduler stopped")
    return 0


async def run_command(runner: PipelineRunner, args) -> int:
    """Execute a parsed command against a runner. Returns an exit code."""
    command, action = args.command, getattr(args, "action", None)

    if command == "schedule":
        if action == "start":
            return await _schedule_start(runner, args)

        if action == "stop":
            # Only reaches a scheduler in this process; a separate
            # `schedule start` process stops on Ctrl+C or SIGTERM
            if not runner.get_runner_status().is_running and not runner.queue.is_running:
                print("No scheduler running in this process.")
                print("Stop a running `schedule start` with Ctrl+C or SIGTERM.")
                return 1
            await runner.stop_scheduler()
            print("Scheduler stopped")
            return 0

        if action == "status":
            status = runner.get_runner_status()
            _print_header("Pipeline Runner Status")
            print(f"Running: {status.is_running}")
            _print_stats(status.queue_stats)
            print("Config:")
            print(json.dumps(status.config.to_dict(), indent=2))
            return 0

        if action == "run":
            runner.run_discovery([args.query])
            result = await runner.queue.process_all()
            _print_drain(result)
            if args.verbose:
                _print_failures(runner)
            return 0

    elif command == "queue":
        queue = runner.queue

        if action == "stats":
            _print_header("Queue Stats")
            _print_stats(queue.get_stats())
            if args.verbose:
                _print_failures(runner)
            return 0

        if action == "pending":
            pending = queue.get_pending_jobs()
            _print_header(f"Pending Jobs ({len(pending)})")
            for job in pending:
                print(
                    f"  {job.id} [{job.type.value}] priority={job.priority} "
                    f"attempts={job.attempts} next_run_at={job.next_run_at.isoformat()}"
                )
            return 0

        if action == "clear":
            removed = queue.clear(args.status)
            print(f"Cleared {removed} job(s)")
            return 0

        if action == "process":
            result = await queue.process_all()
            _print_drain(result)
            if args.verbose:
                _print_failures(runner)
            return 0

    elif command == "pipeline" and action == "run":
        print(f"Running pipeline for {args.url}")
        result = await runner.run_full_pipeline(args.url, deploy=args.deploy, email=args.email)
        _print_drain(result)
        if args.verbose or result.failed:
            _print_failures(runner)
        return 0 if result.failed == 0 else 2

    return -1


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None or getattr(args, "action", None) is None:
        parser.print_help()
        return 1

    try:
        settings = load_settings()
        setup_logging(settings.log_level, settings.log_dir)
        runner = PipelineRunner.create(settings)
        code = asyncio.run(run_command(runner, args))
    except (SchedulerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if code < 0:
        parser.print_help()
        return 1
    return code


if __name__ == "__main__":
    sys.exit(main())
