"""
EventMapper - converts raw upstream payload fragments into QuakeEvent values.

Fragment fields (upstream naming):
- id, event_time, latitude, longitude, magnitude
- depth, magtype, province, location (flynn region)
"""

from __future__ import annotations

import logging
import math
import re
from datetime import UTC, datetime
from typing import Any

from .models import QuakeEvent, instant_text

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"^\d+$")


class EventMapper:
    """Maps upstream fragments to events; unmappable fragments yield None."""

    def map(self, fragment: Any) -> QuakeEvent | None:
        """
        Convert one payload fragment.

        Args:
            fragment: Decoded JSON object from the upstream payload

        Returns:
            QuakeEvent, or None when the fragment cannot yield a valid event
        """
        if not isinstance(fragment, dict):
            return None

        occurred_at = parse_timestamp(fragment.get("event_time"))
        if occurred_at is None:
            return None

        latitude = _as_float(fragment.get("latitude"))
        longitude = _as_float(fragment.get("longitude"))
        magnitude = _as_float(fragment.get("magnitude"))

        event_id = _as_text(fragment.get("id"))
        if not event_id:
            # Synthesize from origin time and rounded coordinates
            if not (math.isfinite(latitude) and math.isfinite(longitude)):
                return None
            event_id = f"{instant_text(occurred_at)}:{latitude:.3f},{longitude:.3f}"

        if not (math.isfinite(magnitude) and math.isfinite(latitude) and math.isfinite(longitude)):
            return None

        depth = _as_float(fragment.get("depth"))
        return QuakeEvent(
            id=event_id,
            occurred_at=occurred_at,
            latitude=latitude,
            longitude=longitude,
            magnitude=magnitude,
            depth=depth if math.isfinite(depth) else None,
            magnitude_type=_as_text(fragment.get("magtype")),
            province=_as_text(fragment.get("province")),
            region=_as_text(fragment.get("location")),
        )

    def from_payload(self, payload: Any) -> list[QuakeEvent]:
        """Map a single fragment or a list of fragments, skipping failures."""
        if isinstance(payload, list):
            fragments = payload
        elif isinstance(payload, dict):
            fragments = [payload]
        else:
            return []

        events = []
        for fragment in fragments:
            try:
                event = self.map(fragment)
            except Exception as e:
                logger.debug(f"Skipping unmappable fragment: {e}")
                continue
            if event is not None:
                events.append(event)
        return events


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an upstream timestamp.

    Numeric epochs with at most 10 digits are seconds, longer ones are
    milliseconds. Digit-only strings are treated the same way. Any other
    text must be ISO-8601; text without an offset is read as UTC.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int | float):
        if not math.isfinite(value):
            return None
        return _from_epoch(int(value))

    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if _DIGITS.match(text):
        return _from_epoch(int(text))

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _from_epoch(value: int) -> datetime | None:
    if len(str(abs(value))) <= 10:
        value *= 1000
    try:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _as_float(value: Any) -> float:
    """Coerce to float; anything non-numeric becomes NaN."""
    if value is None or isinstance(value, bool):
        return math.nan
    if not isinstance(value, int | float | str):
        return math.nan
    try:
        return float(value)
    except (ValueError, OverflowError):
        return math.nan


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, dict | list):
        return None
    text = str(value).strip()
    return text or None
