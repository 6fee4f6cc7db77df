"""Template rendering for await_command reports.

Variables: {{status}}, {{elapsed}}, {{output}}, {{exit_code}},
{{matched_pattern}}, {{log_path}}. The output is HTML-escaped, the other
values are inserted as-is, and unknown variables render as "".
"""

from __future__ import annotations

import html
import logging
import re
from pathlib import Path
from typing import Any

__all__ = [
    "DEFAULT_TEMPLATE",
    "create_template_context",
    "format_output",
    "load_template",
]

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """Status: {{status}}
Elapsed: {{elapsed}}s
Exit Code: {{exit_code}}
Output:
{{output}}"""

_VARIABLE_RE = re.compile(r"\{\{(\w+)\}\}")


def format_output(template: str, context: dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders from ``context``."""
    if not template:
        return ""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context:
            return ""
        value = context[key]
        if key == "output":
            return html.escape(value)
        return value

    return _VARIABLE_RE.sub(replace, template)


def create_template_context(report: dict[str, Any]) -> dict[str, str]:
    """Build template variables from a report dict (see AwaitReport.to_dict)."""
    exit_code = report.get("exit_code")
    return {
        "status": str(report.get("status", "")),
        "elapsed": f"{report.get('elapsed_ms', 0) / 1000:.2f}",
        "output": report.get("output") or "",
        "exit_code": "N/A" if exit_code is None else str(exit_code),
        "matched_pattern": report.get("matched_pattern") or "",
        "log_path": report.get("log_path") or "",
    }


def load_template(
    output_template: str | None,
    template_file: str | None,
) -> str:
    """Pick the inline template, else the template file, else the default."""
    if output_template:
        return output_template

    if template_file:
        try:
            return Path(template_file).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Cannot read template file {template_file}: {e}")

    return DEFAULT_TEMPLATE
