"""Tool schema definitions.

Holds the await_command description, its argument schema, and the limits
applied to argument values.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AWAIT_COMMAND_TOOL",
    "DEFAULT_POLL_INTERVAL",
    "MAX_DURATION_SECONDS",
    "MAX_POLL_INTERVAL",
    "MIN_POLL_INTERVAL",
    "TOOL_DESCRIPTION",
    "create_tool_schema",
]

AWAIT_COMMAND_TOOL = "await_command"

MAX_DURATION_SECONDS = 1800
MIN_DURATION_SECONDS = 1
DEFAULT_POLL_INTERVAL = 5
MIN_POLL_INTERVAL = 1
MAX_POLL_INTERVAL = 60

TOOL_DESCRIPTION = """Run a shell command and wait for it to finish, with a deadline, output pattern matching and optional polling.

USE FOR:
- Waiting on builds, deploys, test runs, CI pipelines
- Returning as soon as the output shows success or failure, instead of sleeping
- Re-running a status command until it reports a final state (poll_mode)
- Running a follow-up command on success (on_success) or failure (on_failure)

MODES:
- Single (default): run once; stop at exit or after max_duration.
- Poll (poll_mode.enabled): re-run every poll_mode.interval seconds until
  success_pattern or error_pattern matches the accumulated output, the command
  exits on its own (poll_mode.exit_on_complete), or max_duration elapses.

RESULT (JSON):
- status: success | error | timeout | cancelled
- exit_code, elapsed_ms, output (capped at 10 MiB per stream), output_truncated
- matched_pattern, formatted_output, log_path

EXAMPLE (wait for a GitHub Actions run):
  command: "gh run watch 12345 --exit-status"
  max_duration: 600
  success_pattern: "completed.*success"
  error_pattern: "failed|cancelled\""""

PROPERTIES: dict[str, Any] = {
    # === Required ===
    "command": {
        "type": "string",
        "description": "Command to execute (run via sh -c).",
    },
    "max_duration": {
        "type": "number",
        "minimum": MIN_DURATION_SECONDS,
        "maximum": MAX_DURATION_SECONDS,
        "description": "Maximum wait time in seconds (1-1800, capped at 30 min).",
    },
    # === Common ===
    "workspace": {
        "type": "string",
        "description": "Working directory for the command. Defaults to the server's.",
    },
    "env": {
        "type": "object",
        "additionalProperties": {"type": "string"},
        "default": {},
        "description": "Environment variables set on top of the server's environment.",
    },
    "success_pattern": {
        "type": "string",
        "description": "Regex that marks success when found in the output. Invalid regexes are ignored.",
    },
    "error_pattern": {
        "type": "string",
        "description": "Regex that marks failure when found in the output. Invalid regexes are ignored.",
    },
    "exit_code_success": {
        "type": "array",
        "items": {"type": "integer"},
        "default": [0],
        "description": "Exit codes treated as success when no pattern matched.",
    },
    "poll_mode": {
        "type": "object",
        "properties": {
            "enabled": {"type": "boolean", "description": "Enable polling mode."},
            "interval": {
                "type": "number",
                "minimum": MIN_POLL_INTERVAL,
                "maximum": MAX_POLL_INTERVAL,
                "default": DEFAULT_POLL_INTERVAL,
                "description": "Seconds between runs (1-60, default 5). Also each run's timeout.",
            },
            "exit_on_complete": {
                "type": "boolean",
                "default": True,
                "description": "Stop when a run exits on its own without a pattern match.",
            },
        },
        "required": ["enabled"],
        "description": "Polling mode options.",
    },
    # === Output ===
    "output_template": {
        "type": "string",
        "description": (
            "Template for formatted_output. Variables: {{status}}, {{elapsed}}, "
            "{{output}}, {{exit_code}}, {{matched_pattern}}, {{log_path}}."
        ),
    },
    "template_file": {
        "type": "string",
        "description": "Path to a template file (used when output_template is not set).",
    },
    "persist_logs": {
        "type": "boolean",
        "description": "Write output to a temp log file and return its path as log_path.",
    },
    # === Follow-up ===
    "on_success": {
        "type": "string",
        "description": "Command to run in the background when status is success.",
    },
    "on_failure": {
        "type": "string",
        "description": "Command to run in the background on error, timeout or cancellation.",
    },
}


def create_tool_schema() -> dict[str, Any]:
    """Input schema of the await_command tool."""
    return {
        "type": "object",
        "properties": PROPERTIES,
        "required": ["command", "max_duration"],
    }
