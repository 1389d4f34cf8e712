"""CLI command deleting expired video jobs.

Completed jobs are kept for 24 hours, failed jobs for 7 days.

Usage:
    python -m reelcast.cli.cleanup_jobs [-v]
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from reelcast.core.config import Settings, configure_logging
from reelcast.core.database import get_database
from reelcast.services.job_queue import VideoJobQueue
from reelcast.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Delete expired completed and failed video jobs")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    database = get_database(settings)
    try:
        queue = VideoJobQueue(create_uow_factory(await database.connect()))
        completed, failed = await queue.cleanup()
    except Exception as e:
        logger.error("cli.cleanup_failed", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    finally:
        await database.close()

    print(f"Deleted {completed} completed and {failed} failed jobs")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
