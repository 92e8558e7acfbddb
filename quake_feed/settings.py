"""
Overlay settings store.

Holds the operator-editable overlay settings, including the filter policy
fields (minMag, streamEnabled) the broadcaster reads on every event.
Settings are persisted as pretty-printed JSON.
"""

from __future__ import annotations

import logging
import math
import threading
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_SOUND_URL = "assets/default_alert.mp3"
DEFAULT_NOTIF_COLOR = "#dc2626"
DEFAULT_MIN_MAG = 3.0


class OverlaySettings(BaseModel):
    """Overlay appearance and filter settings (camelCase on the wire)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_mag: float = Field(default=DEFAULT_MIN_MAG, alias="minMag")
    beep: bool = True
    sound_url: str = Field(default=DEFAULT_SOUND_URL, alias="soundUrl")
    notif_color: str = Field(default=DEFAULT_NOTIF_COLOR, alias="notifColor")
    display_duration_sec: int = Field(default=8, alias="displayDurationSec")
    theme: str = "dark"
    overlay_style: str = Field(default="square", alias="overlayStyle")
    stream_enabled: bool = Field(default=True, alias="streamEnabled")

    def normalize(self) -> OverlaySettings:
        """Clamp and canonicalize every field."""
        min_mag = max(0.0, self.min_mag) if math.isfinite(self.min_mag) else DEFAULT_MIN_MAG
        sound = self.sound_url.strip() if self.sound_url and self.sound_url.strip() else DEFAULT_SOUND_URL
        color = (
            self.notif_color.strip()
            if self.notif_color and self.notif_color.strip()
            else DEFAULT_NOTIF_COLOR
        )
        return OverlaySettings(
            min_mag=min_mag,
            beep=self.beep,
            sound_url=sound,
            notif_color=color,
            display_duration_sec=max(0, self.display_duration_sec),
            theme="light" if (self.theme or "").lower() == "light" else "dark",
            overlay_style="flat" if (self.overlay_style or "").lower() == "flat" else "square",
            stream_enabled=self.stream_enabled,
        )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class SettingsStore:
    """
    File-backed settings with normalization.

    current() is lock-free for readers; update()/reset() serialize writers.
    """

    def __init__(self, path: Path | str = "backend-data/settings.json"):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._current = OverlaySettings()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> OverlaySettings:
        """Load settings from disk, writing defaults if the file is missing or bad."""
        with self._lock:
            if not self._path.exists():
                self._persist(self._current)
                return self._current
            try:
                loaded = OverlaySettings.model_validate_json(self._path.read_text())
                self._current = loaded.normalize()
                logger.info(f"Overlay settings loaded from {self._path}")
            except (OSError, ValidationError) as e:
                logger.warning(f"Failed to load overlay settings from {self._path}: {e}")
                self._persist(self._current)
            return self._current

    def current(self) -> OverlaySettings:
        return self._current

    def update(self, candidate: OverlaySettings | None) -> OverlaySettings:
        normalized = OverlaySettings() if candidate is None else candidate.normalize()
        with self._lock:
            self._current = normalized
            self._persist(normalized)
        return normalized

    def reset(self) -> OverlaySettings:
        with self._lock:
            self._current = OverlaySettings()
            self._persist(self._current)
        return self._current

    def _persist(self, settings: OverlaySettings) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(settings.model_dump_json(by_alias=True, indent=2))
        except OSError as e:
            logger.warning(f"Failed to persist overlay settings to {self._path}: {e}")
