"""Cooldown parsing and wait computation.

The game server reports cooldowns on two channels: successful responses and
character details carry ``cooldown``/``cooldown_expiration`` fields, while a
rejected action carries the remaining time inside its error text. Everything
here is pure so the executor and workers can share it without touching the
network.
"""

import json
import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# Added to every non-zero wait to absorb client/server clock skew
COOLDOWN_BUFFER_SECONDS = 0.5

_COOLDOWN_LEFT_RE = re.compile(r"Character in cooldown: (\d+(?:\.\d+)?) seconds? left")
_COOLDOWN_SHORT_RE = re.compile(r"cooldown: (\d+(?:\.\d+)?)")


class ErrorKind(StrEnum):
    """Classification of an action error message."""

    COOLDOWN = "cooldown"
    RATE_LIMIT = "rate_limit"
    INVENTORY_FULL = "inventory_full"
    RESOURCE_MISSING = "resource_missing"
    MONSTER_MISSING = "monster_missing"
    CHARACTER_DEAD = "character_dead"
    ALREADY_AT_DESTINATION = "already_at_destination"
    UNKNOWN = "unknown"


# Errors the executor must not retry; the worker decides what to do next
DOMAIN_TERMINAL_KINDS = frozenset(
    {
        ErrorKind.INVENTORY_FULL,
        ErrorKind.RESOURCE_MISSING,
        ErrorKind.MONSTER_MISSING,
        ErrorKind.CHARACTER_DEAD,
        ErrorKind.ALREADY_AT_DESTINATION,
    }
)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp as returned by the server (``Z`` suffix ok)."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def compute_wait(snapshot: dict[str, Any] | None, now: datetime | None = None) -> float:
    """Seconds to wait before the character may act again.

    Prefers ``cooldown_expiration`` (wall clock) over the relative
    ``cooldown_seconds``/``cooldown`` value. Non-zero waits include
    COOLDOWN_BUFFER_SECONDS.
    """
    if not snapshot:
        return 0.0

    expiration = snapshot.get("cooldown_expiration")
    if expiration:
        if now is None:
            now = datetime.now(UTC)
        remaining = (parse_timestamp(expiration) - now).total_seconds()
        wait = max(0.0, remaining)
    else:
        seconds = snapshot.get("cooldown_seconds")
        if seconds is None:
            seconds = snapshot.get("cooldown")
        wait = max(0.0, float(seconds or 0))

    if wait > 0:
        wait += COOLDOWN_BUFFER_SECONDS
    return wait


def parse_error(error_message: str | None) -> float:
    """Extract the remaining cooldown in seconds from an error message.

    Returns 0 when the message carries no cooldown.
    """
    if not error_message:
        return 0.0

    match = _COOLDOWN_LEFT_RE.search(error_message)
    if match:
        return float(match.group(1))

    match = _COOLDOWN_SHORT_RE.search(error_message)
    if match:
        return float(match.group(1))

    if "{" in error_message:
        try:
            payload = json.loads(error_message[error_message.index("{") :])
        except ValueError:
            return 0.0
        message = payload.get("error", {}) if isinstance(payload, dict) else {}
        message = message.get("message") if isinstance(message, dict) else None
        if isinstance(message, str):
            match = _COOLDOWN_LEFT_RE.search(message)
            if match:
                return float(match.group(1))

    return 0.0


def format_cooldown_message(seconds: float) -> str:
    """Render a cooldown error the way the server words it."""
    return f"Character in cooldown: {seconds:.3f} seconds left."


def classify_error(error_message: str | None) -> ErrorKind:
    """Map an error message onto the recognized server error kinds."""
    if not error_message:
        return ErrorKind.UNKNOWN

    lowered = error_message.lower()
    if (
        "character in cooldown" in lowered
        or "(499)" in error_message
        or parse_error(error_message) > 0
    ):
        return ErrorKind.COOLDOWN
    if "429" in error_message or "rate limit" in lowered:
        return ErrorKind.RATE_LIMIT
    if "inventory is full" in lowered or "(497)" in error_message:
        return ErrorKind.INVENTORY_FULL
    if "resource not found" in lowered or "no resource on this map" in lowered:
        return ErrorKind.RESOURCE_MISSING
    if "monster not found" in lowered:
        return ErrorKind.MONSTER_MISSING
    if "character is dead" in lowered:
        return ErrorKind.CHARACTER_DEAD
    if "character already at destination" in lowered or "(490)" in error_message:
        return ErrorKind.ALREADY_AT_DESTINATION
    return ErrorKind.UNKNOWN
