"""CLI command for a one-off reconcile and asset retrieval pass.

Useful after an outage: polls every stale submitted job once and retries
retrieval for succeeded jobs, without starting the web application.

Usage:
    python -m genflow.cli [OPTIONS]

Examples:
    # Reconcile all enabled providers
    python -m genflow.cli

    # Only the video provider
    python -m genflow.cli --provider video

    # List stale jobs without polling or writing anything
    python -m genflow.cli --dry-run

    # Verbose logging
    python -m genflow.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genflow.core import timezone  # noqa: F401
from genflow.core.config import Settings, configure_logging
from genflow.core.database import setup_db_session
from genflow.engine import GenerationOrchestrator
from genflow.models.job import ProviderKind
from genflow.services.events import EventPublisher
from genflow.services.exceptions import ConfigurationError
from genflow.services.providers.registry import build_adapters
from genflow.services.storage import LocalAssetStorage
from genflow.uow import create_uow_factory

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Poll stale submitted jobs and retry pending asset retrieval",
        epilog="Runs a single pass with the same transitions as the running engine",
    )

    parser.add_argument(
        "--provider",
        choices=[kind.value for kind in ProviderKind],
        help="Only reconcile this provider family (default: all enabled)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stale jobs without polling providers or writing to the database",
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
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    try:
        adapters = build_adapters(settings)
    except ConfigurationError as e:
        logger.error("cli.configuration_error", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.provider:
        kind = ProviderKind(args.provider)
        if kind not in adapters:
            print(f"Error: provider {kind.value} is not enabled", file=sys.stderr)
            return 1
        adapters = {kind: adapters[kind]}

    logger.info(
        "cli.started",
        providers=[kind.value for kind in adapters],
        dry_run=args.dry_run,
    )

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = GenerationOrchestrator.from_adapters(
        adapters,
        uow_factory,
        EventPublisher(),
        LocalAssetStorage(settings.storage_dir, settings.storage_public_prefix),
        settings,
    )

    stale_total = 0
    changed_total = 0
    completed_total = 0
    errors: list[str] = []

    try:
        for kind, engine in orchestrator.engines.items():
            stale_jobs = await engine.reconciler.find_stale()
            stale_total += len(stale_jobs)

            if args.dry_run:
                for job in stale_jobs:
                    print(f"  [{kind.value}] {job.id} remote={job.remote_id} last_polled={job.last_polled_at}")
                continue

            results = await asyncio.gather(
                *(engine.reconciler.reconcile(job) for job in stale_jobs), return_exceptions=True
            )
            for job, result in zip(stale_jobs, results):
                if isinstance(result, Exception):
                    errors.append(f"{kind.value} {job.id}: {type(result).__name__}: {result}")
                elif result:
                    changed_total += 1

            await engine.retriever.run_once()
            await engine.retriever.drain()
            completed_total += engine.retriever.completed_count

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconcile interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()

    # Print summary
    print("\n" + "=" * 60)
    print("Reconcile Summary")
    print("=" * 60)
    print(f"Stale submitted jobs: {stale_total}")
    if args.dry_run:
        print("\n[DRY RUN] No providers were polled and nothing was written")
    else:
        print(f"Jobs changed state: {changed_total}")
        print(f"Jobs completed by retrieval: {completed_total}")
        if errors:
            print(f"\nErrors encountered: {len(errors)}")
            for error in errors[:5]:  # Show first 5 errors
                print(f"  - {error}")
            if len(errors) > 5:
                print(f"  ... and {len(errors) - 5} more errors")
    print("=" * 60 + "\n")

    if not errors:
        logger.info("cli.success", stale=stale_total, changed=changed_total)
        return 0
    if len(errors) < stale_total:
        logger.warning("cli.partial_success", errors=len(errors))
        return 2
    logger.error("cli.failure", errors=len(errors))
    return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
