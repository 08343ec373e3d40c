"""CLI commands for managing provider rows.

Usage:
    python -m unigen.cli providers list [--active-only]
    python -m unigen.cli providers add NAME MODEL_IDENTIFIER ADAPTER ENDPOINT [OPTIONS]
    python -m unigen.cli providers toggle MODEL_IDENTIFIER --enable|--disable

Examples:
    # Register a Flux model that stores outputs in S3
    python -m unigen.cli providers add "Flux Pro" flux-pro flux https://api.bfl.ml --upload-to-s3

    # Disable a provider without deleting it
    python -m unigen.cli providers toggle flux-pro --disable
"""

import sys
from argparse import ArgumentParser, Namespace

import structlog

from unigen.models.provider import GenerationType, Provider
from unigen.services.exceptions import InternalError
from unigen.services.generation.adapters.registry import resolve_adapter_kind
from unigen.uow import UoWFactory

logger = structlog.get_logger()


def add_parser(subparsers) -> None:
    """Register the `providers` command group."""
    parser: ArgumentParser = subparsers.add_parser("providers", help="Manage providers")
    commands = parser.add_subparsers(dest="providers_command", required=True)

    list_parser = commands.add_parser("list", help="List configured providers")
    list_parser.add_argument("--active-only", action="store_true", help="Hide disabled providers")

    add = commands.add_parser("add", help="Register a provider")
    add.add_argument("name", help="Display name")
    add.add_argument("model_identifier", help="Client-facing model name (unique)")
    add.add_argument("adapter", help="Adapter name (flux, openai_image, kling, replicate, ...)")
    add.add_argument("api_endpoint", help="Provider base URL")
    add.add_argument(
        "--generation-type",
        choices=[t.value for t in GenerationType],
        default=GenerationType.IMAGE.value,
    )
    add.add_argument("--api-key", help="Stored credential (otherwise read from the environment)")
    add.add_argument("--model-version", help="Provider-side model or version id")
    add.add_argument("--upload-to-s3", action="store_true", help="Copy outputs to S3")
    add.add_argument("--s3-path-prefix", help="Key prefix for stored outputs")
    add.add_argument("--inactive", action="store_true", help="Create disabled")

    toggle = commands.add_parser("toggle", help="Enable or disable a provider")
    toggle.add_argument("model_identifier")
    state = toggle.add_mutually_exclusive_group(required=True)
    state.add_argument("--enable", dest="active", action="store_true")
    state.add_argument("--disable", dest="active", action="store_false")


def format_provider(provider: Provider) -> str:
    state = "active" if provider.is_active else "disabled"
    return (
        f"{provider.model_identifier:<30} {provider.adapter_name:<14} "
        f"{provider.generation_type.value:<6} {state:<8} calls={provider.call_count}"
    )


async def list_providers(uow_factory: UoWFactory, active_only: bool = False) -> list[Provider]:
    async with await uow_factory() as uow:
        return await uow.providers.list_providers(active_only=active_only)


async def add_provider(uow_factory: UoWFactory, args: Namespace) -> Provider:
    """Create a provider row.

    Raises:
        InternalError: Unknown adapter name
        ValueError: model_identifier already registered
    """
    adapter_kind = resolve_adapter_kind(args.adapter)

    async with await uow_factory() as uow:
        if await uow.providers.get_by_model_identifier(args.model_identifier):
            raise ValueError(f"Provider '{args.model_identifier}' already exists")

        provider = Provider(
            name=args.name,
            model_identifier=args.model_identifier,
            adapter_name=adapter_kind.value,
            generation_type=GenerationType(args.generation_type),
            api_endpoint=args.api_endpoint,
            auth_key=args.api_key,
            model_version=args.model_version,
            upload_to_s3=args.upload_to_s3,
            s3_path_prefix=args.s3_path_prefix,
            is_active=not args.inactive,
        )
        await uow.providers.add(provider)

    logger.info(
        "cli.provider_added", model_identifier=provider.model_identifier, adapter=adapter_kind.value
    )
    return provider


async def toggle_provider(uow_factory: UoWFactory, model_identifier: str, active: bool) -> bool:
    """Enable or disable a provider.

    Returns:
        False if no provider has that model identifier
    """
    async with await uow_factory() as uow:
        provider = await uow.providers.get_by_model_identifier(model_identifier)
        if provider is None:
            return False
        await uow.providers.set_active(provider.id, active)

    logger.info("cli.provider_toggled", model_identifier=model_identifier, is_active=active)
    return True


async def run(args: Namespace, uow_factory: UoWFactory) -> int:
    """Execute a `providers` subcommand.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    if args.providers_command == "list":
        providers = await list_providers(uow_factory, active_only=args.active_only)
        if not providers:
            print("No providers configured")
        for provider in providers:
            print(format_provider(provider))
        return 0

    if args.providers_command == "add":
        try:
            provider = await add_provider(uow_factory, args)
        except (InternalError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(format_provider(provider))
        return 0

    if not await toggle_provider(uow_factory, args.model_identifier, args.active):
        print(f"Error: Provider '{args.model_identifier}' not found", file=sys.stderr)
        return 1
    print(f"{args.model_identifier}: {'enabled' if args.active else 'disabled'}")
    return 0
