"""
Resume cursor stores.

The cursor is the id of the last accepted event. It is sent as ``after_id``
on every subscribe so the feed can resume after it. Two interchangeable
strategies: in-memory (ephemeral) and a JSON file (survives restarts).
"""

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class CursorStore(Protocol):
    """Read/write contract used by the feed client."""

    def read(self) -> str | None: ...

    def write(self, event_id: str) -> None: ...


class MemoryCursorStore:
    """Cursor held in process memory; lost on restart."""

    def __init__(self, initial: str | None = None):
        self._lock = threading.Lock()
        self._last_event_id = initial or None

    def read(self) -> str | None:
        with self._lock:
            return self._last_event_id

    def write(self, event_id: str) -> None:
        if not event_id or not event_id.strip():
            return
        with self._lock:
            self._last_event_id = event_id


class FileCursorStore:
    """
    Cursor persisted to a JSON file.

    File format: {"last_event_id": "<id>"}
    Writes go through a temp file and an atomic replace.
    """

    def __init__(self, path: Path | str):
        """
        Initialize store.

        Args:
            path: JSON file path (parent directories are created on write)
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        self._last_event_id: str | None = None
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> str | None:
        with self._lock:
            if not self._loaded:
                self._last_event_id = self._load()
                self._loaded = True
            return self._last_event_id

    def write(self, event_id: str) -> None:
        if not event_id or not event_id.strip():
            return
        with self._lock:
            self._last_event_id = event_id
            self._loaded = True
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                temp_path = self._path.with_suffix(".tmp")
                with open(temp_path, "w") as f:
                    json.dump({"last_event_id": event_id}, f)
                temp_path.replace(self._path)
            except OSError as e:
                logger.error(f"Failed to persist resume cursor to {self._path}: {e}")

    def _load(self) -> str | None:
        if not self._path.exists():
            return None
        try:
            with open(self._path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read resume cursor from {self._path}: {e}")
            return None

        value = data.get("last_event_id") if isinstance(data, dict) else None
        if isinstance(value, str) and value.strip():
            logger.info(f"Resuming after event {value}")
            return value
        return None


def create_cursor_store(path: Path | str | None) -> CursorStore:
    """File-backed store when a path is configured, otherwise in-memory."""
    if path:
        return FileCursorStore(path)
    return MemoryCursorStore()
