"""Request validation for generation requests.

Validates raw client input against a model's declared capabilities before
anything is persisted or dispatched. Every problem found is collected into a
single error so callers can fix a request in one round trip.
"""

import base64
import binascii
import math
import re
from typing import Any
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from unigen.services.exceptions import InvalidParametersError, InvalidRequestError
from unigen.services.generation.parameters import is_recognized_size, normalize_parameters

logger = structlog.get_logger(__name__)

_DATA_URI_PATTERN = re.compile(
    r"^data:image/(png|jpeg|jpg|webp|gif);base64,(?P<payload>[A-Za-z0-9+/=\s]+)$"
)

SIZE_KEYS = ("size_or_ratio", "size", "aspect_ratio")


class ParameterRule(BaseModel):
    """Range and type constraints for one known parameter key."""

    model_config = ConfigDict(frozen=True)

    minimum: float | None = None
    maximum: float | None = None
    integer: bool = False
    choices: tuple[Any, ...] | None = None


COMMON_PARAMETER_RULES: dict[str, ParameterRule] = {
    "seed": ParameterRule(minimum=0, integer=True),
    "duration": ParameterRule(minimum=1, maximum=30, integer=True),
    "safety_tolerance": ParameterRule(minimum=0, maximum=6),
}


class ModelCapabilities(BaseModel):
    """Declared limits of a model, supplied by its adapter."""

    model_config = ConfigDict(frozen=True)

    max_prompt_length: int = 2000
    max_input_images: int = 4
    max_outputs: int = 10
    parameter_rules: dict[str, ParameterRule] = Field(default_factory=dict)

    def rules(self) -> dict[str, ParameterRule]:
        """Common rules overlaid with model-specific ones."""
        return {**COMMON_PARAMETER_RULES, **self.parameter_rules}


class GenerationInput(BaseModel):
    """Raw generation request body."""

    model_identifier: str = Field(min_length=1)
    prompt: str
    input_images: list[str] = Field(default_factory=list)
    number_of_outputs: int = 1
    parameters: dict[str, Any] = Field(default_factory=dict)


class ValidatedRequest(BaseModel):
    """Request that passed validation, with canonical parameters."""

    model_config = ConfigDict(frozen=True)

    model_identifier: str
    prompt: str
    input_images: tuple[str, ...]
    number_of_outputs: int
    parameters: dict[str, Any]


def is_valid_image_reference(value: str) -> bool:
    """True for an absolute http(s) URL or a well-formed base64 image data URI."""
    if not isinstance(value, str) or not value:
        return False

    if value.startswith("data:"):
        match = _DATA_URI_PATTERN.match(value)
        if not match:
            return False
        try:
            base64.b64decode("".join(match.group("payload").split()), validate=True)
        except (binascii.Error, ValueError):
            return False
        return True

    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _check_parameter(key: str, value: Any, rule: ParameterRule) -> str | None:
    if rule.choices is not None:
        if value not in rule.choices:
            allowed = ", ".join(str(c) for c in rule.choices)
            return f"{key} must be one of: {allowed}"
        return None

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{key} must be a number"

    if isinstance(value, float):
        if not math.isfinite(value):
            return f"{key} must be a finite number"
        if rule.integer and not value.is_integer():
            return f"{key} must be an integer"

    if rule.minimum is not None and value < rule.minimum:
        return f"{key} must be >= {rule.minimum:g}"

    if rule.maximum is not None and value > rule.maximum:
        return f"{key} must be <= {rule.maximum:g}"

    return None


def _pydantic_errors(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def parse_input(payload: GenerationInput | dict[str, Any]) -> GenerationInput:
    """Parse a raw body into GenerationInput.

    Raises:
        InvalidRequestError: If required fields are missing or mistyped
    """
    if isinstance(payload, GenerationInput):
        return payload
    try:
        return GenerationInput.model_validate(payload)
    except ValidationError as e:
        errors = _pydantic_errors(e)
        raise InvalidRequestError(
            "Malformed generation request", details={"errors": errors}
        ) from e


def validate_request(
    payload: GenerationInput | dict[str, Any],
    capabilities: ModelCapabilities,
    strict_sizes: bool = False,
) -> ValidatedRequest:
    """Validate a raw request against model capabilities.

    Args:
        payload: Request body (dict or already-parsed GenerationInput)
        capabilities: Limits declared by the model's adapter
        strict_sizes: Reject unrecognized size strings instead of falling back to 1:1

    Returns:
        ValidatedRequest with normalized parameters

    Raises:
        InvalidRequestError: Malformed body, bad prompt or bad input images
        InvalidParametersError: Output count or a known parameter out of range
    """
    data = parse_input(payload)

    request_errors: list[dict[str, str]] = []
    parameter_errors: list[dict[str, str]] = []

    # Prompt
    prompt = data.prompt
    if not prompt.strip():
        request_errors.append({"field": "prompt", "message": "Prompt cannot be empty"})
    elif len(prompt) > capabilities.max_prompt_length:
        request_errors.append(
            {
                "field": "prompt",
                "message": (
                    f"Prompt exceeds maximum length of {capabilities.max_prompt_length} "
                    f"characters (got {len(prompt)})"
                ),
            }
        )

    # Input images
    if len(data.input_images) > capabilities.max_input_images:
        request_errors.append(
            {
                "field": "input_images",
                "message": (
                    f"At most {capabilities.max_input_images} input images allowed "
                    f"(got {len(data.input_images)})"
                ),
            }
        )
    for index, image in enumerate(data.input_images):
        if not is_valid_image_reference(image):
            request_errors.append(
                {
                    "field": f"input_images.{index}",
                    "message": "Must be an http(s) URL or a base64 image data URI",
                }
            )

    # Output count
    if not 1 <= data.number_of_outputs <= capabilities.max_outputs:
        parameter_errors.append(
            {
                "field": "number_of_outputs",
                "message": f"number_of_outputs must be between 1 and {capabilities.max_outputs}",
            }
        )

    # Known parameters; unknown keys pass through untouched
    rules = capabilities.rules()
    for key, value in data.parameters.items():
        if key in SIZE_KEYS:
            if value is None:
                continue
            if not isinstance(value, str):
                parameter_errors.append({"field": key, "message": f"{key} must be a string"})
            elif strict_sizes and not is_recognized_size(value):
                parameter_errors.append(
                    {"field": key, "message": f"Unrecognized size or aspect ratio: {value!r}"}
                )
            continue

        rule = rules.get(key)
        if rule is None or value is None:
            continue
        problem = _check_parameter(key, value, rule)
        if problem:
            parameter_errors.append({"field": key, "message": problem})

    errors = request_errors + parameter_errors
    if request_errors:
        raise InvalidRequestError(_summary(errors), details={"errors": errors})
    if parameter_errors:
        raise InvalidParametersError(_summary(errors), details={"errors": errors})

    validated = ValidatedRequest(
        model_identifier=data.model_identifier,
        prompt=prompt,
        input_images=tuple(data.input_images),
        number_of_outputs=data.number_of_outputs,
        parameters=normalize_parameters(data.parameters),
    )
    logger.debug(
        "validation.passed",
        model_identifier=validated.model_identifier,
        input_images=len(validated.input_images),
        parameters=sorted(validated.parameters),
    )
    return validated


def _summary(errors: list[dict[str, str]]) -> str:
    return "; ".join(f"{e['field']}: {e['message']}" for e in errors)
