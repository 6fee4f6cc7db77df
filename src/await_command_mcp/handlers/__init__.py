"""Tool handlers.

Provides the handler abstraction and the await_command implementation.
"""

from .base import ToolContext, ToolHandler
from .await_command import AwaitCommandHandler, build_options

__all__ = [
    "ToolContext",
    "ToolHandler",
    "AwaitCommandHandler",
    "build_options",
]
