"""
Pydantic models for the earthquake feed.

QuakeEvent is the immutable value passed from the upstream client to the
broadcaster. Wire names (unid, time, lat, lon, mag, ...) match what the
overlay UI consumes.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ConnectionStatus(StrEnum):
    """Upstream connection status mirrored to subscribers."""

    OPEN = "OPEN"
    LOST = "LOST"
    CLOSED = "CLOSED"


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------


def instant_text(value: datetime | None) -> str:
    """Render a timestamp as ISO-8601 UTC with a Z suffix.

    Milliseconds are included only when non-zero, e.g.
    ``2024-02-06T03:04:19Z`` or ``2024-02-06T03:04:19.120Z``.
    """
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    millis = value.microsecond // 1000
    if millis:
        text += f".{millis:03d}"
    return text + "Z"


class QuakeEvent(BaseModel):
    """A single seismic notification.

    Never mutated after construction. Later notifications for the same id
    supersede earlier ones; they are not merged.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(alias="unid", description="Feed-assigned or synthesized event id")
    occurred_at: datetime | None = Field(default=None, alias="time", description="Origin time (UTC)")
    latitude: float = Field(alias="lat")
    longitude: float = Field(alias="lon")
    magnitude: float = Field(alias="mag")
    depth: float | None = Field(default=None, description="Hypocentre depth in km")
    magnitude_type: str | None = Field(default=None, alias="magtype")
    province: str | None = None
    region: str | None = Field(default=None, alias="flynn_region")

    @property
    def signature(self) -> str:
        """Deduplication key derived from id, origin time and magnitude."""
        magnitude = self.magnitude if math.isfinite(self.magnitude) else -999.0
        return f"{self.id}::{instant_text(self.occurred_at)}::{magnitude}"

    def is_valid(self) -> bool:
        return (
            bool(self.id and self.id.strip())
            and self.occurred_at is not None
            and math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
            and math.isfinite(self.magnitude)
        )

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict using wire names, nulls omitted."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if self.occurred_at is not None:
            data["time"] = instant_text(self.occurred_at)
        return data


# ---------------------------------------------------------------------------
# Manual injection
# ---------------------------------------------------------------------------


class TestEventRequest(BaseModel):
    """Operator request to push a synthetic event through the broadcaster."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(populate_by_name=True)

    mag: float
    depth: float | None = None
    lat: float
    lon: float
    magtype: str | None = None
    province: str | None = None
    flynn_region: str | None = Field(default=None, alias="flynnRegion")
    respect_filters: bool = Field(default=False, alias="respectFilters")

    def to_event(self, now: datetime | None = None) -> QuakeEvent:
        now = now or datetime.now(UTC)
        event_id = f"TEST-{int(now.timestamp() * 1000)}-{uuid.uuid4()}"
        depth = self.depth if self.depth is not None and math.isfinite(self.depth) else None
        return QuakeEvent(
            id=event_id,
            occurred_at=now,
            latitude=self.lat,
            longitude=self.lon,
            magnitude=self.mag,
            depth=depth,
            magnitude_type=self.magtype,
            province=self.province,
            region=self.flynn_region,
        )
