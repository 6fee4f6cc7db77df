"""Tool handler base abstractions.

Defines the handler protocol and the context handed to every call.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcp.types import TextContent

from ..runtime import ProcessRunner

if TYPE_CHECKING:
    from ..config import Config
    from ..orchestrator import RequestRegistry

__all__ = [
    "ToolContext",
    "ToolHandler",
]

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Execution context shared by tool calls.

    Bundles the dependencies a handler needs instead of passing them one by
    one.
    """

    config: "Config"
    registry: "RequestRegistry | None" = None
    background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def make_runner(self) -> ProcessRunner:
        """A ProcessRunner using the configured ceiling and grace period."""
        return ProcessRunner(
            max_output_bytes=self.config.max_output_bytes,
            grace_period=self.config.grace_period,
        )

    def spawn_background(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start a detached task. Its result is dropped and failures are logged."""
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)

        def on_done(t: asyncio.Task[Any]) -> None:
            self.background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning(f"Background task {name} failed: {exc}")

        task.add_done_callback(on_done)
        return task

    async def cancel_background(self) -> None:
        """Cancel and await every background task (used at shutdown)."""
        tasks = list(self.background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class ToolHandler(ABC):
    """Tool handler protocol.

    Every tool handler implements this interface.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description."""
        ...

    @abstractmethod
    def get_input_schema(self) -> dict[str, Any]:
        """Input argument schema."""
        ...

    @abstractmethod
    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> list[TextContent]:
        """Handle one tool call.

        Args:
            arguments: Tool arguments
            ctx: Execution context

        Returns:
            TextContent list
        """
        ...

    def validate(self, arguments: dict[str, Any]) -> str | None:
        """Validate arguments.

        Returns:
            An error message, or None if the arguments are valid
        """
        return None
