"""Typed views over the backend's loosely structured usage records.

The backend returns JSON with optional nested fields and numbers that are
sometimes encoded as strings. Records are parsed once into dataclasses with
explicit optional fields; numeric fields go through ``to_int`` so a missing or
malformed value counts as zero instead of failing the batch.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger("usage-telemetry")

UNKNOWN_MODEL = "Unknown"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
# datetime.fromisoformat only accepts up to microsecond precision
_FRACTION = re.compile(r"\.(\d{6})\d+")


def to_int(value) -> int:
    """Coerce a usage field to an int, treating anything unusable as zero.

    Strings yield their leading integer ("123abc" -> 123).
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else 0
    return 0


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp; returns None when absent or unparsable.

    Naive timestamps are interpreted as local time.
    """
    if not value or not isinstance(value, str):
        return None
    text = _FRACTION.sub(r".\1", value.strip().replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Could not parse timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def local_date(value) -> str | None:
    """Local calendar date (YYYY-MM-DD) of an ISO timestamp, or None."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.astimezone().strftime("%Y-%m-%d")


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


@dataclass
class UsageFields:
    """Token counts attached to one model invocation."""

    model: str = UNKNOWN_MODEL
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0

    @classmethod
    def from_raw(cls, raw: dict, fallback_model: str | None = None) -> "UsageFields":
        raw = _dict(raw)
        model = raw.get("model") or fallback_model or UNKNOWN_MODEL
        return cls(
            model=str(model),
            input_tokens=to_int(raw.get("inputTokens")),
            output_tokens=to_int(raw.get("outputTokens")),
            cache_read_tokens=to_int(raw.get("cacheReadTokens")),
        )


@dataclass
class MetadataRecord:
    """A generator-metadata entry: one primary chat model invocation."""

    usage: UsageFields
    timestamp: str | None = None
    session_start: str | None = None
    context_size: int = 0

    @classmethod
    def from_raw(cls, raw: dict) -> "MetadataRecord":
        raw = _dict(raw)
        chat_model = _dict(raw.get("chatModel"))
        usage = _dict(chat_model.get("usage"))
        start = _dict(chat_model.get("chatStartMetadata"))
        context_window = _dict(start.get("contextWindowMetadata"))

        context = context_window.get("estimatedTokensUsed") or usage.get("contextTokens") or 0

        return cls(
            usage=UsageFields.from_raw(usage, fallback_model=chat_model.get("model")),
            timestamp=raw.get("timestamp") or None,
            session_start=start.get("createdAt") or None,
            context_size=to_int(context),
        )


@dataclass
class StepRecord:
    """A trajectory step. Any step type may carry model usage."""

    step_type: str | None = None
    usage: UsageFields | None = None
    created_at: str | None = None

    @classmethod
    def from_raw(cls, raw: dict) -> "StepRecord":
        raw = _dict(raw)
        metadata = _dict(raw.get("metadata"))
        usage_raw = raw.get("modelUsage") or metadata.get("modelUsage")
        return cls(
            step_type=raw.get("type"),
            usage=UsageFields.from_raw(usage_raw) if isinstance(usage_raw, dict) else None,
            created_at=metadata.get("createdAt") or None,
        )


def parse_metadata(items) -> list[MetadataRecord]:
    return [MetadataRecord.from_raw(item) for item in items or []]


def parse_steps(items) -> list[StepRecord]:
    return [StepRecord.from_raw(item) for item in items or []]
