"""
Health file writer for the sync daemon.

Writes a JSON health file at a configurable path with four fields:
- last_publish_ts: ISO timestamp of the most recent acknowledged publish.
- last_connect_ts: ISO timestamp of the most recent broker connection.
- unsent_count: Records pending in the local queue at the last cycle.
- connected: Whether the broker connection is currently up.

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-16: Track broker connection state (STORY-110)
- 2026-10-12: Initial creation, adapted from the edge daemon (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class HealthWriter:
    """Writes sync daemon health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file. Write failures are logged, never raised.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_publish_ts: str | None = None
        self._last_connect_ts: str | None = None
        self._unsent_count: int = 0
        self._connected: bool = False

    def record_publish(self) -> None:
        """Record an acknowledged publish and write health file."""
        self._last_publish_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_connected(self) -> None:
        """Record a broker connection and write health file."""
        self._last_connect_ts = datetime.now(tz=UTC).isoformat()
        self._connected = True
        self._write()

    def record_disconnected(self) -> None:
        self._connected = False
        self._write()

    def set_unsent_count(self, count: int) -> None:
        """Update the unsent record count and write health file.

        Args:
            count: Number of records pending in the local queue.
        """
        self._unsent_count = count
        self._write()

    def _write(self) -> None:
        data = {
            "last_publish_ts": self._last_publish_ts,
            "last_connect_ts": self._last_connect_ts,
            "unsent_count": self._unsent_count,
            "connected": self._connected,
        }
        try:
            self.path.write_text(json.dumps(data))
        except OSError:
            logger.warning("Failed to write health file %s", self.path, exc_info=True)
