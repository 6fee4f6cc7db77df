"""Output helpers shared by the tool handlers."""

from .log_capture import LogCapture
from .output_formatter import (
    DEFAULT_TEMPLATE,
    create_template_context,
    format_output,
    load_template,
)
from .response_formatter import AwaitReport, format_error_response, format_report

__all__ = [
    "AwaitReport",
    "DEFAULT_TEMPLATE",
    "LogCapture",
    "create_template_context",
    "format_error_response",
    "format_output",
    "format_report",
    "load_template",
]
