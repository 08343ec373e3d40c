"""CLI command for running one generation synchronously.

Usage:
    python -m unigen.cli generate MODEL_IDENTIFIER PROMPT [OPTIONS]

Examples:
    python -m unigen.cli generate flux-pro "a lighthouse at dusk" --param aspect_ratio=16:9

    # Image-to-video from a reference frame
    python -m unigen.cli generate kling-v1 "slow pan" --image https://example.com/a.png -n 1
"""

import json
import sys
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from typing import Any

import structlog

from unigen.models.generation_request import GenerationRequest, GenerationStatus
from unigen.services.exceptions import GenerationError
from unigen.services.generation.orchestrator import TaskOrchestrator

logger = structlog.get_logger()


def parse_param(raw: str) -> tuple[str, Any]:
    """Parse KEY=VALUE; VALUE is decoded as JSON when possible (numbers, booleans)."""
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise ArgumentTypeError(f"expected KEY=VALUE, got '{raw}'")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def add_parser(subparsers) -> None:
    """Register the `generate` command."""
    parser: ArgumentParser = subparsers.add_parser(
        "generate", help="Submit and process one request, then print the result"
    )
    parser.add_argument("model_identifier")
    parser.add_argument("prompt")
    parser.add_argument(
        "--image", action="append", default=[], dest="input_images", help="Input image URL"
    )
    parser.add_argument("-n", "--outputs", type=int, default=1, dest="number_of_outputs")
    parser.add_argument(
        "--param", action="append", default=[], type=parse_param, help="KEY=VALUE parameter"
    )


def build_payload(args: Namespace) -> dict[str, Any]:
    return {
        "model_identifier": args.model_identifier,
        "prompt": args.prompt,
        "input_images": args.input_images,
        "number_of_outputs": args.number_of_outputs,
        "parameters": dict(args.param),
    }


def render(request: GenerationRequest) -> str:
    projection = {
        "id": str(request.id),
        "status": request.status.value,
        "results": request.results,
        "error_kind": request.error_kind,
        "error_message": request.error_message,
        "duration_ms": request.duration_ms,
    }
    return json.dumps(projection, indent=2)


async def run(args: Namespace, orchestrator: TaskOrchestrator) -> int:
    """Run the generation inline.

    Returns:
        Exit code: 0 (SUCCESS), 1 (rejected or failed)
    """
    try:
        request = await orchestrator.run(build_payload(args))
    except GenerationError as e:
        logger.error("cli.generation_rejected", kind=e.kind.value, error=e.message)
        print(f"Error [{e.kind.value}]: {e.message}", file=sys.stderr)
        for detail in e.details.get("errors", []):
            print(f"  - {detail['field']}: {detail['message']}", file=sys.stderr)
        return 1

    print(render(request))
    return 0 if request.status == GenerationStatus.SUCCESS else 1
