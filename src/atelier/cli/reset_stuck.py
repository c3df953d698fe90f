"""CLI command for force-resetting stuck jobs back to queued.

Usage:
    python -m atelier.cli.reset_stuck [OPTIONS]

Examples:
    # Reset all stuck jobs
    python -m atelier.cli.reset_stuck

    # Reset one owner's stuck jobs
    python -m atelier.cli.reset_stuck --owner user-123

    # Dry run (no database writes)
    python -m atelier.cli.reset_stuck --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from atelier.core import timezone  # noqa: F401
from atelier.core.config import Settings, configure_logging
from atelier.core.database import init_models, setup_db_session
from atelier.engine import build_engine

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reset stuck generation jobs back to queued",
        epilog="Jobs rejected or failed by the provider are never reset",
    )

    parser.add_argument(
        "--owner",
        help="Only reset jobs of this owner (default: all owners)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List candidates without database writes",
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
        Exit code: 0 (success), 1 (error), 2 (some jobs skipped by concurrent updates)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command="reset_stuck", owner_id=args.owner, dry_run=args.dry_run)

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        await init_models(session_factory)
        engine = build_engine(settings, session_factory)

        result = await engine.reconciler.reset_stuck(owner_id=args.owner, dry_run=args.dry_run)

        print("\n" + "=" * 60)
        print("Stuck Job Reset Summary")
        print("=" * 60)
        print(f"Owner: {args.owner or 'all'}")
        print(f"Jobs reset to queued: {result.reset_count}")
        print(f"Jobs skipped (changed concurrently): {result.skipped_count}")
        print(f"Prompt jobs reset: {result.prompt_jobs_reset}")
        for job_id in result.job_ids[:20]:
            print(f"  - {job_id}")
        if len(result.job_ids) > 20:
            print(f"  ... and {len(result.job_ids) - 20} more")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")

        if result.skipped_count:
            logger.warning("cli.partial_success", skipped=result.skipped_count)
            return 2
        logger.info("cli.success", reset=result.reset_count)
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReset interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
