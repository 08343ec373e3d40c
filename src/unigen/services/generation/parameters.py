"""Parameter normalization for provider-agnostic generation requests.

Clients describe output shape either with a canonical aspect-ratio token
("16:9") or with a pixel size string ("1920x1080"). Everything is reduced
to one canonical token before it reaches an adapter.
"""

import math
import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_ASPECT_RATIO = "1:1"

CANONICAL_ASPECT_RATIOS: tuple[str, ...] = ("1:1", "4:3", "3:4", "16:9", "9:16", "21:9", "9:21")

# Common pixel sizes, plus every canonical token mapped to itself
SIZE_TO_ASPECT_RATIO: dict[str, str] = {
    "1024x1024": "1:1",
    "512x512": "1:1",
    "768x768": "1:1",
    "1024x768": "4:3",
    "1536x1152": "4:3",
    "768x1024": "3:4",
    "1152x1536": "3:4",
    "1920x1080": "16:9",
    "1792x1008": "16:9",
    "1344x756": "16:9",
    "1080x1920": "9:16",
    "1008x1792": "9:16",
    "756x1344": "9:16",
    "2560x1080": "21:9",
    "1792x756": "21:9",
    "1080x2560": "9:21",
    "756x1792": "9:21",
    **{token: token for token in CANONICAL_ASPECT_RATIOS},
}

# Checked in order; the first ratio within tolerance wins
KNOWN_RATIOS: tuple[tuple[float, str], ...] = (
    (1.0, "1:1"),
    (21 / 9, "21:9"),
    (16 / 9, "16:9"),
    (4 / 3, "4:3"),
    (3 / 4, "3:4"),
    (9 / 16, "9:16"),
    (9 / 21, "9:21"),
)
RATIO_TOLERANCE = 0.1

ASPECT_RATIO_TO_OPENAI_SIZE: dict[str, str] = {
    "1:1": "1024x1024",
    "16:9": "1792x1024",
    "9:16": "1024x1792",
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[xX:]\s*(\d+(?:\.\d+)?)\s*$")


def parse_size_string(value: str) -> tuple[float, float] | None:
    """Parse "WxH" (or "W:H") into positive numeric width and height."""
    match = _SIZE_PATTERN.match(value)
    if not match:
        return None
    width, height = float(match.group(1)), float(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return width, height


def ratio_to_aspect_ratio(ratio: float) -> str:
    """Map a width/height ratio to the closest canonical token.

    Known ratios are matched within ±0.1 first; otherwise ordered range
    checks decide (≥2.0 ultrawide, ≥1.5 widescreen, >1.0 landscape,
    ≥0.7 portrait, ≥0.4 tall, else ultra-tall).
    """
    for known, token in KNOWN_RATIOS:
        if abs(ratio - known) <= RATIO_TOLERANCE:
            return token

    if ratio >= 2.0:
        return "21:9"
    if ratio >= 1.5:
        return "16:9"
    if ratio > 1.0:
        return "4:3"
    if ratio >= 0.7:
        return "3:4"
    if ratio >= 0.4:
        return "9:16"
    return "9:21"


def _lookup_aspect_ratio(value: Any) -> str | None:
    if not isinstance(value, str):
        return None

    key = value.strip()
    direct = SIZE_TO_ASPECT_RATIO.get(key) or SIZE_TO_ASPECT_RATIO.get(key.lower())
    if direct:
        return direct

    parsed = parse_size_string(key)
    if parsed is None:
        return None

    width, height = parsed
    return ratio_to_aspect_ratio(width / height)


def is_recognized_size(value: Any) -> bool:
    """True when the value maps to a ratio without the 1:1 fallback."""
    return _lookup_aspect_ratio(value) is not None


def normalize_aspect_ratio(value: Any) -> str:
    """Convert a size or ratio expression into a canonical aspect-ratio token.

    Never raises: unparseable input falls back to "1:1" with a warning.
    Canonical tokens map to themselves, so the function is idempotent.

    Example:
        >>> normalize_aspect_ratio("1024x768")
        '4:3'
        >>> normalize_aspect_ratio("abc")
        '1:1'
    """
    token = _lookup_aspect_ratio(value)
    if token is None:
        logger.warning(
            "parameters.size_unrecognized", value=value, fallback=DEFAULT_ASPECT_RATIO
        )
        return DEFAULT_ASPECT_RATIO
    return token


def aspect_ratio_to_openai_size(aspect_ratio: str) -> str:
    """Map a canonical token to one of the sizes the OpenAI image API accepts.

    Landscape tokens collapse to 16:9, portrait tokens to 9:16.
    """
    if aspect_ratio in ASPECT_RATIO_TO_OPENAI_SIZE:
        return ASPECT_RATIO_TO_OPENAI_SIZE[aspect_ratio]
    if aspect_ratio in ("4:3", "21:9"):
        return ASPECT_RATIO_TO_OPENAI_SIZE["16:9"]
    if aspect_ratio in ("3:4", "9:21"):
        return ASPECT_RATIO_TO_OPENAI_SIZE["9:16"]
    return ASPECT_RATIO_TO_OPENAI_SIZE[DEFAULT_ASPECT_RATIO]


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def extract_numeric_parameter(
    params: dict[str, Any],
    key: str,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """Read a numeric parameter, clamping it to [minimum, maximum].

    Missing values yield the default. Non-numeric values yield the default
    with a warning. Out-of-range values are clamped, not rejected.
    """
    if key not in params or params[key] is None:
        return default

    number = _to_number(params[key])
    if number is None:
        logger.warning("parameters.not_numeric", key=key, value=params[key], default=default)
        return default

    clamped = number
    if minimum is not None:
        clamped = max(minimum, clamped)
    if maximum is not None:
        clamped = min(maximum, clamped)

    if clamped != number:
        logger.warning(
            "parameters.clamped", key=key, value=number, minimum=minimum, maximum=maximum
        )
    return clamped


def extract_int_parameter(
    params: dict[str, Any],
    key: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Integer variant of extract_numeric_parameter (truncates toward zero)."""
    return int(extract_numeric_parameter(params, key, default, minimum, maximum))


def normalize_parameters(params: dict[str, Any]) -> dict[str, Any]:
    """Return a copy with size expressions replaced by a canonical aspect ratio.

    "size_or_ratio" (or a legacy "size") becomes "aspect_ratio"; an existing
    "aspect_ratio" is re-normalized. All other keys pass through untouched.
    """
    normalized = dict(params)

    source = None
    for key in ("size_or_ratio", "size", "aspect_ratio"):
        if key in normalized:
            value = normalized.pop(key)
            if source is None and value is not None:
                source = value

    if source is not None:
        normalized["aspect_ratio"] = normalize_aspect_ratio(source)

    return normalized
