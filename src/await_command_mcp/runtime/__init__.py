"""Runtime module for supervised command execution.

This module provides bounded, cancellable execution of a single command
(ProcessRunner) and a poll loop that re-runs a command until an output
pattern, a clean exit, a deadline or a cancellation stops it.
"""

from __future__ import annotations

from .cancellation import CancelToken
from .poll_loop import PollLoop, PollOutcome, PollReason, PollSpec
from .process_runner import (
    InvocationRequest,
    InvocationResult,
    ProcessRunner,
    run_command,
)

__all__ = [
    "CancelToken",
    "InvocationRequest",
    "InvocationResult",
    "PollLoop",
    "PollOutcome",
    "PollReason",
    "PollSpec",
    "ProcessRunner",
    "run_command",
]
