"""CLI command running the video worker pool as a standalone process.

Usage:
    python -m reelcast.cli.run_worker [OPTIONS]

Examples:
    # Run with VIDEO_WORKER_CONCURRENCY slots
    python -m reelcast.cli.run_worker

    # Four concurrent jobs, verbose logging
    python -m reelcast.cli.run_worker --concurrency 4 -v

SIGINT/SIGTERM stop claiming new jobs; the process exits once in-flight jobs
have finished.
"""

import asyncio
import signal
import sys
from argparse import ArgumentParser, Namespace

import structlog

from reelcast.core.config import Settings, configure_logging
from reelcast.core.database import get_database
from reelcast.services.job_queue import VideoJobQueue
from reelcast.services.storage import create_storage
from reelcast.uow import create_uow_factory
from reelcast.workers.video_worker import VideoWorkerPool

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Process queued video render jobs")

    parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum concurrent jobs (default: VIDEO_WORKER_CONCURRENCY)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (clean shutdown), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    database = get_database(settings)
    try:
        session_factory = await database.connect()
        queue = VideoJobQueue(create_uow_factory(session_factory))
        pool = VideoWorkerPool(
            queue,
            create_storage(settings),
            settings,
            concurrency=args.concurrency,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, pool.stop)

        logger.info("cli.worker_started", concurrency=pool.concurrency)
        await pool.run()
        logger.info("cli.worker_stopped")
        return 0

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await database.close()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
