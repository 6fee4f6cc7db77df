"""MCP response formatting.

Successful calls return the await report as pretty-printed JSON. Invalid
calls return ``<response><error>...</error></response>`` so clients can
tell a rejected call from a command that failed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp.types import TextContent

__all__ = ["AwaitReport", "format_error_response", "format_report"]


@dataclass
class AwaitReport:
    """Final report of an await_command call.

    Attributes:
        status: success | error | timeout | cancelled
        reason: Raw stop reason (poll mode may also give "completed")
        exit_code: Exit code, None if the process never reported one
        elapsed_ms: Wall-clock time of the call
        output: stdout followed by stderr (all rounds in poll mode)
        output_truncated: Some capture hit the byte ceiling
        matched_pattern: Text matched by the pattern that decided the status
        formatted_output: Output rendered with the template
        log_path: Persisted log file, if requested
    """

    status: str
    reason: str
    exit_code: int | None
    elapsed_ms: int
    output: str
    output_truncated: bool = False
    matched_pattern: str | None = None
    formatted_output: str | None = None
    log_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "elapsed_ms": self.elapsed_ms,
            "output": self.output,
            "output_truncated": self.output_truncated,
            "matched_pattern": self.matched_pattern,
        }
        if self.formatted_output is not None:
            data["formatted_output"] = self.formatted_output
        if self.log_path:
            data["log_path"] = self.log_path
        return data


def format_report(report: AwaitReport) -> list[TextContent]:
    from mcp.types import TextContent

    text = json.dumps(report.to_dict(), ensure_ascii=False, indent=2)
    return [TextContent(type="text", text=text)]


def format_error_response(error: str) -> list[TextContent]:
    """Error response for calls rejected before any command ran."""
    from mcp.types import TextContent

    text = "\n".join(["<response>", f"  <error>{error}</error>", "</response>"])
    return [TextContent(type="text", text=text)]
