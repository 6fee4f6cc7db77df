"""On-disk log persistence for command output.

Each capture owns a fresh temp directory holding ``output.log``. Chunks are
appended and flushed before ``write`` returns, so the file is always a prefix
of the output seen so far.

Example:
    with LogCapture.create() as capture:
        capture.write("chunk 1")
        capture.write("chunk 2")
    path = capture.log_path       # finalized on exit
    capture.schedule_cleanup(3600)
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType
from typing import IO

__all__ = ["LogCapture"]

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "await-command-"
LOG_FILE_NAME = "output.log"


class LogCapture:
    """Append-only log file in its own temp directory."""

    def __init__(self, temp_dir: Path) -> None:
        self.temp_dir = temp_dir
        self.log_path = temp_dir / LOG_FILE_NAME
        self._file: IO[str] | None = self.log_path.open("a", encoding="utf-8")
        self._cleanup_handle: asyncio.TimerHandle | None = None

    @classmethod
    def create(cls, prefix: str = DEFAULT_PREFIX) -> "LogCapture":
        """Create a capture in a new temp directory."""
        temp_dir = Path(tempfile.mkdtemp(prefix=prefix))
        logger.debug(f"Log capture created: {temp_dir}")
        return cls(temp_dir)

    @property
    def finalized(self) -> bool:
        return self._file is None

    def write(self, chunk: str) -> None:
        """Append a chunk and flush it to disk.

        Raises:
            RuntimeError: If the capture was already finalized
        """
        if self._file is None:
            raise RuntimeError("LogCapture already finalized")
        if not chunk:
            return
        self._file.write(chunk)
        self._file.flush()

    def finalize(self) -> Path:
        """Flush, close and return the log path. Safe to call twice."""
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None
            logger.debug(f"Log capture finalized: {self.log_path}")
        return self.log_path

    def cleanup(self) -> None:
        """Delete the temp directory (best effort)."""
        self.finalize()
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        logger.debug(f"Log capture removed: {self.temp_dir}")

    def schedule_cleanup(self, delay: float) -> None:
        """Delete the temp directory after ``delay`` seconds.

        Must be called from a running event loop. A delay of 0 or less keeps
        the log.
        """
        if delay <= 0:
            return
        loop = asyncio.get_running_loop()
        self._cleanup_handle = loop.call_later(delay, self.cleanup)

    def __enter__(self) -> "LogCapture":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.finalize()
