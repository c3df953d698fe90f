"""CLI command for running one reconciliation sweep.

Intended for an external scheduler (cron) when RECONCILE_IN_PROCESS is disabled.

Usage:
    python -m atelier.cli.reconcile [OPTIONS]

Examples:
    # Run one sweep
    python -m atelier.cli.reconcile

    # Verbose logging
    python -m atelier.cli.reconcile -v
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
        description="Run one reconciliation sweep over stuck generation jobs",
        epilog="Requeues stale claims, re-polls stuck submissions and expires overdue jobs",
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
        Exit code: 0 (success), 1 (error), 2 (sweep finished with step errors)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command="reconcile")

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        await init_models(session_factory)
        engine = build_engine(settings, session_factory)

        result = await engine.reconcile()
        await engine.stop()

        print("\n" + "=" * 60)
        print("Reconciliation Summary")
        print("=" * 60)
        print(f"Stale claims requeued: {result.stale_claims_requeued}")
        print(f"Lost submissions requeued: {result.submissions_requeued}")
        print(f"Submissions advanced: {result.submissions_advanced}")
        print(f"Jobs timed out: {result.timed_out}")
        print(f"Jobs finalized: {result.finalized}")
        print(f"Jobs failed: {result.failed}")
        print(f"Prompt jobs retried: {result.prompt_jobs_retried}")
        print(f"Prompt jobs failed: {result.prompt_jobs_failed}")
        print(f"Jobs dispatched: {result.dispatched}")

        if result.errors:
            print(f"\nErrors encountered: {len(result.errors)}")
            for error in result.errors[:5]:
                print(f"  - {error}")

        print("=" * 60 + "\n")

        if result.errors:
            logger.warning("cli.partial_success", errors=len(result.errors))
            return 2
        logger.info("cli.success")
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
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
