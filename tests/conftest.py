"""Pytest configuration and fixtures."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path (development checkouts)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_COMMAND_PATH = FIXTURES_DIR / "fake_command.py"

IS_WINDOWS = sys.platform == "win32"


def fake_command(*args: str) -> str:
    """Shell command line running the fake command with ``args``."""
    parts = [sys.executable, str(FAKE_COMMAND_PATH), *args]
    return " ".join(shlex.quote(p) for p in parts)


@pytest.fixture
def project_root() -> Path:
    return PROJECT_ROOT


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Temporary working directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace
