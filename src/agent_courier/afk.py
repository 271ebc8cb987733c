"""AFK ("away from keyboard") state persistence.

Records whether the operator is away and since when, in a small JSON
file, so AFK mode survives restarts.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

logger = logging.getLogger("agent_courier.afk")

AFK_STATE_FILENAME = "afk_state.json"


def format_duration(seconds: float) -> str:
    """Render a duration as a short human string.

    Examples:
        >>> format_duration(42)
        '42s'
        >>> format_duration(3900)
        '1h 5m'
    """
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class AfkState:
    """Persistent AFK flag.

    ``started_at`` is wall-clock time (``time.time()``) so durations stay
    meaningful across restarts.

    Args:
        path: Path to the JSON state file.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._enabled = False
        self._started_at: float | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def started_at(self) -> float | None:
        return self._started_at

    def load(self) -> bool:
        """Load state from disk. Returns whether AFK mode is enabled."""
        if not self._path.exists():
            return self._enabled
        try:
            raw = json.loads(self._path.read_text("utf-8"))
            if not isinstance(raw, dict):
                return self._enabled
            self._enabled = bool(raw.get("enabled", False))
            started = raw.get("started_at")
            self._started_at = float(started) if started is not None else None
            logger.debug("Loaded AFK state: enabled=%s", self._enabled)
        except Exception:
            logger.exception("Failed to load AFK state from %s", self._path)
        return self._enabled

    def save(self) -> None:
        """Save state to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            data = json.dumps(
                {"enabled": self._enabled, "started_at": self._started_at},
                indent=2,
                sort_keys=True,
            )
            self._path.write_text(data + "\n", "utf-8")
        except Exception:
            logger.exception("Failed to save AFK state to %s", self._path)

    def enable(self, now: float | None = None) -> None:
        """Turn AFK mode on and persist."""
        self._enabled = True
        self._started_at = time.time() if now is None else now
        self.save()

    def disable(self, now: float | None = None) -> float | None:
        """Turn AFK mode off and persist.

        Returns how long AFK mode lasted, or None if the start is unknown.
        """
        started = self._started_at
        self._enabled = False
        self._started_at = None
        self.save()
        if started is None:
            return None
        return (time.time() if now is None else now) - started
