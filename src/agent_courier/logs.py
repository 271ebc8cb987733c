"""Logging setup.

Modules log through ``logging.getLogger("agent_courier.<module>")``; this
module only decides where those records go and at which level.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

LOG_FILENAME = "courier.log"
_MAX_LOG_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 3
_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

_LEVELS = {
    "all": logging.DEBUG,
    "errors": logging.ERROR,
}


def configure_logging(level: str = "errors", log_dir: str | Path | None = None) -> logging.Logger:
    """Route ``agent_courier`` logs to a size-rotated file.

    Args:
        level: "all", "errors", or "none" (disables output).
        log_dir: Directory for ``courier.log``. Without one, records go to
            stderr.

    Returns:
        The package root logger.
    """
    root = logging.getLogger("agent_courier")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if level == "none":
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        root.propagate = False
        return root

    if level not in _LEVELS:
        raise ValueError(f"Unknown logging level: {level!r}")

    handler: logging.Handler
    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path / LOG_FILENAME,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))

    root.addHandler(handler)
    root.setLevel(_LEVELS[level])
    root.propagate = False
    return root
