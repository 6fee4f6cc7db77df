"""Process runner with bounded capture and reliable termination.

await-command-mcp runtime module v0.1.0

This module provides:
- One shell command per invocation, isolated in its own session/process group
- A wall-clock timeout and an external cancellation token, raced against the
  process's natural exit
- Reliable termination (SIGTERM -> grace period -> SIGKILL)
- Concurrent stdout/stderr draining, each capped at a byte ceiling
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so the whole process tree gets the signals
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Expected failures (bad command, non-zero exit, timeout, cancellation, start
  failure) are reported in the result; only malformed requests raise
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .cancellation import CancelToken

__all__ = [
    "InvocationRequest",
    "InvocationResult",
    "ProcessRunner",
    "run_command",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default limits
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024  # per stream, per invocation
DEFAULT_GRACE_PERIOD = 5.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_DRAIN_TIMEOUT = 1.0  # seconds to wait for pipes after exit
READ_CHUNK_SIZE = 64 * 1024
GROUP_POLL_INTERVAL = 0.05

PROC_DIR = Path("/proc")
# /proc/<pid>/stat states of processes that are already dead
_DEAD_STATES = frozenset({"Z", "X", "x"})


def _has_running_member(pgid: int) -> bool:
    """Scan /proc for a live (non-zombie) process in group ``pgid``."""
    for entry in PROC_DIR.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
        except OSError:
            continue
        # Fields after "(comm)": state ppid pgrp ...; comm may contain spaces
        fields = stat[stat.rfind(")") + 1:].split()
        if len(fields) < 3:
            continue
        if fields[2] == str(pgid) and fields[0] not in _DEAD_STATES:
            return True
    return False


@dataclass(frozen=True)
class InvocationRequest:
    """A single command to run.

    Attributes:
        command: Command line handed to the OS shell
        cwd: Working directory (None = caller's)
        env: Environment overrides merged over os.environ
        timeout: Seconds before the run is cancelled (None or 0 = no timeout)
        cancel_token: External cancellation handle
    """

    command: str
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout: float | None = None
    cancel_token: CancelToken | None = None

    def validate(self) -> None:
        """Raise ValueError if the request is malformed."""
        if not isinstance(self.command, str) or not self.command.strip():
            raise ValueError("command must be a non-empty string")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError(f"timeout must be non-negative, got {self.timeout}")


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one invocation.

    Attributes:
        exit_code: Exit status, None if the process never reported one
            (start failure, killed by a signal, not reaped)
        stdout: Captured stdout text
        stderr: Captured stderr text (the OS error on start failure)
        stdout_truncated: stdout hit the byte ceiling
        stderr_truncated: stderr hit the byte ceiling
        timed_out: The timeout fired before the process exited
        cancelled: The external token fired before the process exited
        term_signal: Signal number that ended the process, if any
    """

    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    cancelled: bool = False
    term_signal: int | None = None

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def output(self) -> str:
        """stdout followed by stderr."""
        return self.stdout + self.stderr

    @property
    def reason(self) -> str | None:
        """'cancelled', 'timeout' or None. Cancellation wins over timeout."""
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timeout"
        return None


@dataclass
class _StreamCapture:
    """Byte buffer that keeps at most ``limit`` bytes of a stream."""

    limit: int
    data: bytearray = field(default_factory=bytearray)
    truncated: bool = False

    def feed(self, chunk: bytes) -> None:
        if self.truncated:
            return
        room = self.limit - len(self.data)
        if len(chunk) > room:
            self.data += chunk[:room]
            self.truncated = True
        else:
            self.data += chunk

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass
class ProcessRunner:
    """Cross-platform runner for a single supervised command.

    This class manages subprocess execution with:
    - Process group/session isolation so termination reaches the whole tree
    - A timeout timer and an external CancelToken merged into one stop signal
    - Graceful termination (SIGTERM -> grace period -> SIGKILL)
    - Per-stream output ceilings
    - Cancel-safe cleanup

    Example:
        runner = ProcessRunner()
        result = await runner.run(
            InvocationRequest(command="make test", timeout=600)
        )
        if result.timed_out:
            ...
    """

    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    grace_period: float = DEFAULT_GRACE_PERIOD
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT

    async def run(self, request: InvocationRequest) -> InvocationResult:
        """Run the command to completion or forced termination.

        This method:
        1. Returns immediately if the token is already cancelled
        2. Starts the command through the shell in an isolated process group
        3. Drains stdout and stderr concurrently up to the ceiling
        4. Races process exit against the timeout/cancellation signal
        5. Terminates the process if the signal wins
        6. Releases the timer, the token listener and the process on every path

        Args:
            request: Invocation request

        Returns:
            InvocationResult describing how the run ended

        Raises:
            ValueError: If the request is malformed
        """
        request.validate()

        token = request.cancel_token
        if token is not None and token.cancelled:
            logger.debug(f"Skipping spawn, token already cancelled: {request.command!r}")
            return InvocationResult(cancelled=True)

        loop = asyncio.get_running_loop()
        stop = CancelToken()
        timed_out = False
        cancelled = False

        def on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            stop.cancel("timeout")

        def on_external_cancel() -> None:
            nonlocal cancelled
            cancelled = True
            stop.cancel("cancelled")

        timer: asyncio.TimerHandle | None = None
        remove_listener = None
        process: asyncio.subprocess.Process | None = None
        readers: list[asyncio.Task[None]] = []
        stdout = _StreamCapture(self.max_output_bytes)
        stderr = _StreamCapture(self.max_output_bytes)

        try:
            if request.timeout:
                timer = loop.call_later(request.timeout, on_timeout)
            if token is not None:
                remove_listener = token.add_listener(on_external_cancel)

            try:
                # stdin=DEVNULL: never inherit the server's stdin (the MCP channel)
                process = await asyncio.create_subprocess_shell(
                    request.command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **self._build_subprocess_kwargs(request),
                )
            except OSError as e:
                logger.warning(f"Failed to start command {request.command!r}: {e}")
                return InvocationResult(
                    stderr=str(e),
                    timed_out=timed_out,
                    cancelled=cancelled,
                )

            logger.debug(
                f"Started subprocess pid={process.pid} "
                f"command={request.command!r} timeout={request.timeout}"
            )

            readers = [
                asyncio.create_task(self._drain(process.stdout, stdout, "stdout")),
                asyncio.create_task(self._drain(process.stderr, stderr, "stderr")),
            ]

            if await self._wait_exit_or_stop(process, stop):
                if timer is not None:
                    timer.cancel()
                    timer = None
                await self._finish_readers(readers)
                logger.debug(
                    f"Subprocess completed pid={process.pid} "
                    f"returncode={process.returncode}"
                )
                return self._build_result(process, stdout, stderr)

            logger.info(
                f"Stopping subprocess pid={process.pid} "
                f"(timed_out={timed_out}, cancelled={cancelled})"
            )
            await self._terminate_process(process)
            await self._finish_readers(readers)
            return self._build_result(
                process,
                stdout,
                stderr,
                timed_out=timed_out,
                cancelled=cancelled,
            )

        finally:
            if timer is not None:
                timer.cancel()
            if remove_listener is not None:
                remove_listener()
            # Ensure cleanup with shield to prevent cancel interruption
            await self._safe_cleanup(process, readers)

    def _build_subprocess_kwargs(self, request: InvocationRequest) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            request: Invocation request

        Returns:
            Dict of kwargs for asyncio.create_subprocess_shell
        """
        kwargs: dict[str, Any] = {}

        if request.cwd is not None:
            kwargs["cwd"] = str(request.cwd)

        # Overrides on top of the ambient environment
        if request.env:
            kwargs["env"] = {**os.environ, **request.env}

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    def _build_result(
        process: asyncio.subprocess.Process,
        stdout: _StreamCapture,
        stderr: _StreamCapture,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> InvocationResult:
        returncode = process.returncode
        exit_code: int | None = returncode
        term_signal: int | None = None
        # asyncio reports death by signal N as -N
        if returncode is not None and returncode < 0:
            exit_code = None
            term_signal = -returncode

        return InvocationResult(
            exit_code=exit_code,
            stdout=stdout.text(),
            stderr=stderr.text(),
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            timed_out=timed_out,
            cancelled=cancelled,
            term_signal=term_signal,
        )

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        capture: _StreamCapture,
        name: str,
    ) -> None:
        """Read a pipe to EOF into ``capture``.

        Bytes past the ceiling are read and dropped so the process never
        blocks on a full pipe.
        """
        if stream is None:
            return

        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            was_truncated = capture.truncated
            capture.feed(chunk)
            if capture.truncated and not was_truncated:
                logger.warning(
                    f"{name} reached {self.max_output_bytes} bytes, discarding the rest"
                )

    async def _wait_exit_or_stop(
        self,
        process: asyncio.subprocess.Process,
        stop: CancelToken,
    ) -> bool:
        """Wait for process exit or the stop signal.

        Returns:
            True if the process exited first, False if the signal fired first
        """
        exit_task = asyncio.create_task(process.wait())
        stop_task = asyncio.create_task(stop.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (exit_task, stop_task):
                if not task.done():
                    task.cancel()
        return exit_task in done

    async def _finish_readers(self, readers: list[asyncio.Task[None]]) -> None:
        """Give readers a bounded window to hit EOF, then stop them.

        A background grandchild may keep a pipe open after the main process
        exits; whatever was read so far stays in the capture buffers.
        """
        pending = [task for task in readers if not task.done()]
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=self.drain_timeout)
        for task in still_pending:
            logger.debug("Output pipe still open after exit, stopping reader")
            task.cancel()

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        readers: list[asyncio.Task[None]],
    ) -> None:
        """Safely cleanup subprocess and tasks, shielded from cancellation.

        This method uses asyncio.shield to ensure cleanup completes
        even if the caller is cancelled.

        Args:
            process: The subprocess to terminate
            readers: The stdout/stderr reader tasks
        """
        try:
            await asyncio.shield(self._do_cleanup(process, readers))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, readers)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        readers: list[asyncio.Task[None]],
    ) -> None:
        """Perform actual cleanup.

        Args:
            process: The subprocess to terminate
            readers: The stdout/stderr reader tasks
        """
        if process is not None and process.returncode is None:
            await self._terminate_process(process)

        for task in readers:
            if not task.done():
                task.cancel()
        for task in readers:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Output reader failed: {e}")

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM to the group (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to grace_period for the group to exit
        3. If anything is still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            # Step 1: Graceful termination
            if IS_WINDOWS:
                await self._windows_terminate(process)
            else:
                await self._posix_signal(process, signal.SIGTERM)

            # Step 2: Wait for graceful exit
            if await self._wait_stopped(process, self.grace_period):
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return

            # Step 3: Force kill
            logger.info(f"Subprocess ignored SIGTERM for {self.grace_period}s, killing pid={pid}")
            if IS_WINDOWS:
                await self._windows_kill(process)
            else:
                await self._posix_signal(process, signal.SIGKILL)

            # Step 4: Wait for forced exit
            if await self._wait_stopped(process, self.kill_timeout):
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            else:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            # Process already exited
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _wait_stopped(
        self,
        process: asyncio.subprocess.Process,
        timeout: float,
    ) -> bool:
        """Wait up to ``timeout`` for the process and, on POSIX, its group.

        Returns:
            True if nothing is left running
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False

        if IS_WINDOWS:
            return True

        # The shell can exit before the command it started
        pid = process.pid
        while self._group_alive(pid):
            if loop.time() >= deadline:
                logger.debug(f"Process group {pid} still alive after {timeout}s")
                return False
            await asyncio.sleep(GROUP_POLL_INTERVAL)
        return True

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        """Whether group ``pgid`` still has a member that is not a zombie.

        killpg(pgid, 0) also succeeds for unreaped zombies (orphans waiting
        on an init that may never reap them), so /proc is consulted when
        available.
        """
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

        if not PROC_DIR.is_dir():
            return True
        return _has_running_member(pgid)

    async def _posix_signal(
        self,
        process: asyncio.subprocess.Process,
        sig: signal.Signals,
    ) -> None:
        """Send ``sig`` to the process group on POSIX systems.

        Args:
            process: The subprocess
            sig: SIGTERM or SIGKILL
        """
        try:
            # pgid == pid because of start_new_session; the group outlives
            # the leader while any member is alive
            os.killpg(process.pid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={process.pid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            if process.returncode is None:
                process.send_signal(sig)

    async def _windows_terminate(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Send CTRL_BREAK_EVENT on Windows.

        Args:
            process: The subprocess
        """
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()

    async def _windows_kill(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Force kill on Windows.

        Args:
            process: The subprocess
        """
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass


# Convenience function for simple use cases
async def run_command(
    command: str,
    *,
    timeout: float | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    cancel_token: CancelToken | None = None,
    runner: ProcessRunner | None = None,
) -> InvocationResult:
    """Run one command with a default ProcessRunner.

    Args:
        command: Command line for the shell
        timeout: Optional timeout in seconds
        cwd: Optional working directory
        env: Optional environment overrides
        cancel_token: Optional cancellation token
        runner: Runner to use instead of a default one

    Returns:
        InvocationResult
    """
    runner = runner or ProcessRunner()
    return await runner.run(
        InvocationRequest(
            command=command,
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel_token=cancel_token,
        )
    )
