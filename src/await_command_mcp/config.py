"""Configuration for await-command-mcp.

Environment variables:
    ACM_LOG_DEBUG: debug logging
        - true/1/yes = on (DEBUG log written to a temp file)
        - false/0/no = off (default, INFO log on stderr)

    ACM_SIGINT_MODE: how SIGINT (Ctrl+C) is handled
        - cancel = cancel running commands (exit if none) (default)
        - exit = exit immediately
        - cancel_then_exit = cancel first, exit on the second SIGINT

    ACM_SIGINT_DOUBLE_TAP_WINDOW: seconds within which a second Ctrl+C forces
        exit (default 1.0)

    ACM_MAX_OUTPUT_BYTES: per-stream capture ceiling (default 10 MiB)

    ACM_GRACE_PERIOD: seconds between SIGTERM and SIGKILL (default 5.0)

    ACM_LOG_RETENTION: seconds a persisted log is kept before its temp
        directory is removed (default 3600, 0 = keep)

    ACM_PROJECT_DIR: directory holding .await-command/config.json
        (default: current directory)

Project file (<project>/.await-command/config.json) supplies defaults for
tool arguments the caller omits:

    {"persist_logs": true, "max_duration": 600, "poll_interval": 10}
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "Config",
    "ProjectConfig",
    "SigintMode",
    "apply_project_defaults",
    "load_config",
    "load_project_config",
]

logger = logging.getLogger(__name__)

PROJECT_CONFIG_PATH = Path(".await-command") / "config.json"

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_LOG_RETENTION = 3600.0


class SigintMode(Enum):
    """SIGINT handling mode.

    - CANCEL: cancel running commands; exit only when nothing is running
    - EXIT: exit immediately
    - CANCEL_THEN_EXIT: cancel on the first SIGINT, exit on the second
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """Parse a mode name; unknown values give CANCEL."""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


class ProjectConfig(BaseModel):
    """Per-project defaults read from .await-command/config.json."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    persist_logs: bool | None = None
    max_duration: float | None = Field(default=None, ge=1, le=1800)
    poll_interval: float | None = Field(default=None, ge=1, le=60)


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float | None = None,
) -> float:
    """Parse a float environment variable, clamped to [minimum, maximum]."""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    number = max(minimum, number)
    if maximum is not None:
        number = min(number, maximum)
    return number


@dataclass(frozen=True)
class Config:
    """Server configuration.

    Loaded once by the entry point and passed explicitly to the server,
    the handlers and the signal manager.

    Attributes:
        log_debug: write a DEBUG log to a temp file
        log_file: path of that file (set when log_debug is on)
        sigint_mode: SIGINT handling mode
        sigint_double_tap_window: seconds for the forced-exit double tap
        max_output_bytes: per-stream capture ceiling
        grace_period: seconds between SIGTERM and SIGKILL
        log_retention: seconds before a persisted log is deleted (0 = keep)
        project_dir: where the project config file is looked up
        project: defaults from the project config file
    """

    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    grace_period: float = DEFAULT_GRACE_PERIOD
    log_retention: float = DEFAULT_LOG_RETENTION
    project_dir: Path = Path(".")
    project: ProjectConfig = field(default_factory=ProjectConfig)

    def __repr__(self) -> str:
        return (
            f"Config(log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window}, "
            f"max_output_bytes={self.max_output_bytes}, "
            f"grace_period={self.grace_period}, "
            f"log_retention={self.log_retention}, "
            f"project_dir={self.project_dir})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped debug log path under the temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "await-command-mcp"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"acm_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_project_config(project_dir: Path) -> ProjectConfig:
    """Read the project config file.

    A missing file gives empty defaults. An unreadable or invalid file is
    logged and ignored.
    """
    config_path = project_dir / PROJECT_CONFIG_PATH
    if not config_path.is_file():
        return ProjectConfig()

    try:
        return ProjectConfig.model_validate_json(config_path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        return ProjectConfig()


def apply_project_defaults(
    arguments: dict[str, Any],
    project: ProjectConfig,
) -> dict[str, Any]:
    """Fill arguments the caller left out from the project config."""
    result = dict(arguments)

    if project.persist_logs is not None and result.get("persist_logs") is None:
        result["persist_logs"] = project.persist_logs

    if project.max_duration is not None and result.get("max_duration") is None:
        result["max_duration"] = project.max_duration

    if project.poll_interval is not None:
        poll_mode = result.get("poll_mode")
        if isinstance(poll_mode, dict) and poll_mode.get("interval") is None:
            result["poll_mode"] = {**poll_mode, "interval": project.poll_interval}

    return result


def load_config() -> Config:
    """Load configuration from environment variables and the project file."""
    log_debug = _parse_bool(os.environ.get("ACM_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    sigint_value = os.environ.get("ACM_SIGINT_MODE")
    project_dir = Path(os.environ.get("ACM_PROJECT_DIR") or ".").expanduser()

    return Config(
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(sigint_value) if sigint_value else SigintMode.CANCEL,
        sigint_double_tap_window=_parse_float(
            os.environ.get("ACM_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
        max_output_bytes=int(
            _parse_float(
                os.environ.get("ACM_MAX_OUTPUT_BYTES"), DEFAULT_MAX_OUTPUT_BYTES, 1
            )
        ),
        grace_period=_parse_float(
            os.environ.get("ACM_GRACE_PERIOD"), DEFAULT_GRACE_PERIOD, 0.0, 60.0
        ),
        log_retention=_parse_float(
            os.environ.get("ACM_LOG_RETENTION"), DEFAULT_LOG_RETENTION, 0.0
        ),
        project_dir=project_dir,
        project=load_project_config(project_dir),
    )
