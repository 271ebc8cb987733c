"""Configuration loading and validation.

Configuration lives in the YAML front matter of a markdown file
(``courier.local.md``) so it can sit next to human-readable notes::

    ---
    bot_token: "123456:ABC..."
    chat_id: "987654321"
    batch_window_seconds: 30
    rate_limiting:
      messages_per_minute: 20
      burst_size: 5
    ---

Every value is validated at startup; any problem raises
``ConfigurationError`` listing all of them.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_courier.errors import ConfigurationError

logger = logging.getLogger("agent_courier.config")

CONFIG_FILENAME = "courier.local.md"
CONFIG_DIRNAME = ".agent-courier"
PROJECT_DIR_ENV = "AGENT_COURIER_PROJECT_DIR"

_FRONT_MATTER = re.compile(r"\A---\r?\n(.*?)\r?\n---", re.DOTALL)


class RateLimitSettings(BaseModel):
    """Outbound Telegram API budget."""

    messages_per_minute: int = Field(20, ge=1, le=30)
    burst_size: int = Field(5, ge=1, le=10)


class RetrySettings(BaseModel):
    """Retry policy for transient gateway failures."""

    attempts: int = Field(3, ge=1, le=10)
    backoff_seconds: float = Field(1.0, ge=0, le=60)
    backoff_max_seconds: float = Field(10.0, ge=0, le=600)


class ApprovalSettings(BaseModel):
    """Approval request bookkeeping."""

    retention_hours: float = Field(24, gt=0, le=24 * 7)
    sweep_interval_minutes: float = Field(60, gt=0, le=24 * 60)
    max_pending: int = Field(50, ge=1, le=1000)


class CourierConfig(BaseModel):
    """Validated agent-courier configuration."""

    model_config = ConfigDict(extra="ignore")

    bot_token: str = Field(min_length=10)
    chat_id: str = Field(pattern=r"^-?\d+$")
    timeout_seconds: int = Field(600, ge=10, le=3600)
    logging_level: Literal["all", "errors", "none"] = "errors"
    batch_window_seconds: int = Field(30, ge=5, le=300)
    max_queue_size: int = Field(100, ge=1, le=1000)
    stale_multiplier: float = Field(2.0, ge=1.0, le=10.0)
    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    approvals: ApprovalSettings = Field(default_factory=ApprovalSettings)
    data_dir: Path | None = None

    @field_validator("chat_id", mode="before")
    @classmethod
    def _coerce_chat_id(cls, v: Any) -> Any:
        # YAML reads unquoted ids as integers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("bot_token")
    @classmethod
    def _strip_token(cls, v: str) -> str:
        return v.strip()

    def resolved_data_dir(self) -> Path:
        """Directory for state and log files (default ``~/.agent-courier``)."""
        return self.data_dir or Path.home() / CONFIG_DIRNAME


def find_config_path(project_dir: str | Path | None = None) -> Path:
    """Locate the configuration file.

    Checks the project directory (argument, else ``$AGENT_COURIER_PROJECT_DIR``)
    first, then the user's home directory.

    Raises:
        ConfigurationError: If no configuration file exists.
    """
    project = project_dir or os.environ.get(PROJECT_DIR_ENV)
    candidates: list[Path] = []
    if project:
        candidates.append(Path(project) / CONFIG_DIRNAME / CONFIG_FILENAME)
    candidates.append(Path.home() / CONFIG_DIRNAME / CONFIG_FILENAME)

    for path in candidates:
        if path.exists():
            logger.info("Using config: %s", path)
            return path

    expected = "\n".join(f"  - {p}" for p in candidates)
    raise ConfigurationError(f"No configuration file found. Expected one of:\n{expected}")


def parse_config(text: str) -> CourierConfig:
    """Parse and validate configuration from markdown front matter.

    Raises:
        ConfigurationError: If front matter is missing, not valid YAML, or
            fails validation.
    """
    match = _FRONT_MATTER.match(text)
    if not match:
        raise ConfigurationError("No YAML frontmatter found in configuration file")

    try:
        raw = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in configuration file: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration frontmatter must be a mapping")

    return build_config(raw)


def build_config(raw: dict[str, Any]) -> CourierConfig:
    """Validate a configuration mapping.

    Raises:
        ConfigurationError: Listing every invalid or missing value.
    """
    try:
        return CourierConfig.model_validate(raw)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            key = ".".join(str(p) for p in err["loc"]) or "config"
            problems.append(f"{key}: {err['msg']}")
        raise ConfigurationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(problems)
        ) from exc


def load_config(path: str | Path | None = None) -> CourierConfig:
    """Load configuration from ``path`` (or the discovered default).

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    config_path = Path(path) if path else find_config_path()
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    return parse_config(config_path.read_text("utf-8"))
