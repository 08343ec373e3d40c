"""CLI entry point for unigen.cli module.

Enables execution via: python -m unigen.cli <command> [OPTIONS]

Commands:
    providers list|add|toggle   Manage provider rows
    generate                    Run one generation inline and print the result
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from unigen.cli import generate, providers
from unigen.core import timezone  # noqa: F401
from unigen.core.config import Settings, configure_logging
from unigen.core.database import setup_db_session
from unigen.services.generation.orchestrator import TaskOrchestrator
from unigen.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(prog="unigen", description="UniGen administration")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    providers.add_parser(subparsers)
    generate.add_parser(subparsers)
    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.command == "providers":
            return await providers.run(args, uow_factory)
        orchestrator = TaskOrchestrator.from_settings(uow_factory, settings)
        return await generate.run(args, orchestrator)

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
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
