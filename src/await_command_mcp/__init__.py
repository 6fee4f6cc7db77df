"""await-command MCP - supervise shell commands with deadlines and polling.

Environment variables:
    ACM_LOG_DEBUG: debug log to a temp file (default false)
    ACM_SIGINT_MODE: SIGINT handling (cancel/exit/cancel_then_exit)
    ACM_MAX_OUTPUT_BYTES: per-stream capture ceiling (default 10 MiB)
    ACM_GRACE_PERIOD: seconds between SIGTERM and SIGKILL (default 5)

Usage:
    uvx await-command-mcp
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
