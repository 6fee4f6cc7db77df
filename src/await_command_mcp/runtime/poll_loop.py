"""Poll loop: re-run a command on a fixed cadence until a stop condition.

Each round runs the command once through the ProcessRunner, appends its
output to a buffer that lives for the whole loop, and then checks, in order:
success pattern, error pattern, natural completion. The total-duration and
cancellation checks happen at the top of every round, before the command is
started.

The accumulated buffer is not capped. Each round's capture is bounded by the
runner's ceiling and the number of rounds by max_duration / interval.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .cancellation import CancelToken
from .process_runner import InvocationRequest, ProcessRunner

__all__ = [
    "PollLoop",
    "PollOutcome",
    "PollReason",
    "PollSpec",
]

logger = logging.getLogger(__name__)

# A single round never gets more than this, whatever the remaining budget
DEFAULT_ROUND_CEILING = 30.0


class PollReason(str, Enum):
    """Why a poll loop stopped."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PollSpec:
    """What to poll and when to stop.

    Attributes:
        command: Command line for the shell, re-run every round
        interval: Seconds between rounds; also the per-round timeout
        max_duration: Total budget in seconds
        success_pattern: Stops with SUCCESS when found in the output
        error_pattern: Stops with ERROR when found in the output
        on_output: Called with each round's new output
        cancel_token: External cancellation handle
        exit_on_complete: Stop with COMPLETED when a round exits on its own
        cwd: Working directory for every round
        env: Environment overrides for every round
    """

    command: str
    interval: float
    max_duration: float
    success_pattern: re.Pattern[str] | None = None
    error_pattern: re.Pattern[str] | None = None
    on_output: Callable[[str], None] | None = None
    cancel_token: CancelToken | None = None
    exit_on_complete: bool = True
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    def validate(self) -> None:
        """Raise ValueError if the spec is malformed."""
        if not isinstance(self.command, str) or not self.command.strip():
            raise ValueError("command must be a non-empty string")
        if self.interval <= 0:
            raise ValueError(f"interval must be positive, got {self.interval}")
        if self.max_duration < 0:
            raise ValueError(f"max_duration must be non-negative, got {self.max_duration}")


@dataclass(frozen=True)
class PollOutcome:
    """Result of a poll loop.

    Attributes:
        exit_code: 0 on SUCCESS, 1 on ERROR, otherwise the last round's code
        output: Output of every round, in round order
        reason: Why the loop stopped
        matched_pattern: Text matched by the pattern that stopped the loop
        rounds: Number of rounds that ran
        truncated: Some round's capture hit the byte ceiling
    """

    exit_code: int | None
    output: str
    reason: PollReason
    matched_pattern: str | None = None
    rounds: int = 0
    truncated: bool = False


@dataclass
class _PollState:
    started_at: float
    chunks: list[str] = field(default_factory=list)
    last_exit_code: int | None = 0
    rounds: int = 0
    truncated: bool = False

    @property
    def output(self) -> str:
        return "".join(self.chunks)


@dataclass
class PollLoop:
    """Runs a PollSpec to completion.

    Example:
        loop = PollLoop()
        outcome = await loop.poll(
            PollSpec(
                command="gh run view 123 --json status",
                interval=10,
                max_duration=600,
                success_pattern=re.compile(r'"status":"completed"'),
            )
        )
    """

    runner: ProcessRunner = field(default_factory=ProcessRunner)
    round_ceiling: float = DEFAULT_ROUND_CEILING
    clock: Callable[[], float] = time.monotonic

    async def poll(self, spec: PollSpec) -> PollOutcome:
        """Poll ``spec.command`` until a stop condition is met.

        Raises:
            ValueError: If the spec is malformed
        """
        spec.validate()
        state = _PollState(started_at=self.clock())
        token = spec.cancel_token

        while True:
            elapsed = self.clock() - state.started_at
            if elapsed >= spec.max_duration:
                logger.info(f"Poll timed out after {elapsed:.1f}s ({state.rounds} rounds)")
                return self._outcome(state, PollReason.TIMEOUT, state.last_exit_code)

            if token is not None and token.cancelled:
                logger.info(f"Poll cancelled after {state.rounds} rounds")
                return self._outcome(state, PollReason.CANCELLED, state.last_exit_code)

            round_timeout = min(
                spec.interval,
                spec.max_duration - elapsed,
                self.round_ceiling,
            )
            result = await self.runner.run(
                InvocationRequest(
                    command=spec.command,
                    cwd=spec.cwd,
                    env=spec.env,
                    timeout=round_timeout,
                    cancel_token=token,
                )
            )

            chunk = result.output
            state.chunks.append(chunk)
            state.rounds += 1
            state.last_exit_code = result.exit_code
            state.truncated = state.truncated or result.truncated
            if spec.on_output is not None:
                spec.on_output(chunk)

            logger.debug(
                f"Poll round {state.rounds}: exit_code={result.exit_code} "
                f"reason={result.reason} bytes={len(chunk)}"
            )

            # Patterns may span rounds, so search everything seen so far
            output = state.output
            if spec.success_pattern is not None:
                match = spec.success_pattern.search(output)
                if match:
                    return self._outcome(state, PollReason.SUCCESS, 0, match.group(0))

            if spec.error_pattern is not None:
                match = spec.error_pattern.search(output)
                if match:
                    return self._outcome(state, PollReason.ERROR, 1, match.group(0))

            if (
                spec.exit_on_complete
                and result.exit_code is not None
                and result.reason is None
            ):
                return self._outcome(state, PollReason.COMPLETED, result.exit_code)

            # Never sleep past the overall budget
            remaining = spec.max_duration - (self.clock() - state.started_at)
            await self._sleep(max(0.0, min(spec.interval, remaining)), token)

    @staticmethod
    async def _sleep(interval: float, token: CancelToken | None) -> None:
        """Sleep between rounds; returns early if the token fires."""
        if interval <= 0:
            return
        if token is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _outcome(
        state: _PollState,
        reason: PollReason,
        exit_code: int | None,
        matched_pattern: str | None = None,
    ) -> PollOutcome:
        return PollOutcome(
            exit_code=exit_code,
            output=state.output,
            reason=reason,
            matched_pattern=matched_pattern,
            rounds=state.rounds,
            truncated=state.truncated,
        )
