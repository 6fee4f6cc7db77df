"""await_command tool handler.

Validates and normalizes arguments, runs the command once or in poll mode,
maps the outcome to a status, persists and formats the output, and starts
the on_success / on_failure follow-up command in the background.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anyio
from mcp.types import TextContent

from .base import ToolContext, ToolHandler
from ..config import apply_project_defaults
from ..runtime import (
    CancelToken,
    InvocationRequest,
    InvocationResult,
    PollLoop,
    PollOutcome,
    PollReason,
    PollSpec,
    run_command,
)
from ..shared import (
    AwaitReport,
    LogCapture,
    create_template_context,
    format_error_response,
    format_output,
    format_report,
    load_template,
)
from ..tool_schema import (
    AWAIT_COMMAND_TOOL,
    DEFAULT_POLL_INTERVAL,
    MAX_DURATION_SECONDS,
    MAX_POLL_INTERVAL,
    MIN_DURATION_SECONDS,
    MIN_POLL_INTERVAL,
    TOOL_DESCRIPTION,
    create_tool_schema,
)

__all__ = ["AwaitCommandHandler", "AwaitOptions", "build_options", "classify_result"]

logger = logging.getLogger(__name__)

# Timeout for on_success / on_failure commands
POST_COMMAND_TIMEOUT = 30.0


def try_compile_regex(pattern: Any) -> re.Pattern[str] | None:
    """Compile ``pattern``; anything unusable means "no pattern"."""
    if not pattern or not isinstance(pattern, str):
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Ignoring invalid pattern {pattern!r}: {e}")
        return None


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(value, upper))


@dataclass
class AwaitOptions:
    """Normalized await_command arguments."""

    command: str
    max_duration: float
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    success_pattern: re.Pattern[str] | None = None
    error_pattern: re.Pattern[str] | None = None
    exit_code_success: list[int] = field(default_factory=lambda: [0])
    poll_enabled: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    exit_on_complete: bool = True
    output_template: str | None = None
    template_file: str | None = None
    persist_logs: bool = False
    on_success: str | None = None
    on_failure: str | None = None


def build_options(args: dict[str, Any]) -> AwaitOptions:
    """Normalize validated arguments (clamping, defaults, regex compilation)."""
    workspace = args.get("workspace")
    cwd = Path(workspace).expanduser().resolve() if workspace else None

    env_arg = args.get("env") or {}
    env = {str(k): str(v) for k, v in env_arg.items()} if isinstance(env_arg, dict) else {}

    exit_codes = args.get("exit_code_success")
    if not isinstance(exit_codes, list) or not exit_codes:
        exit_codes = [0]

    poll_mode = args.get("poll_mode") or {}
    interval = poll_mode.get("interval")
    if interval is None:
        interval = DEFAULT_POLL_INTERVAL

    return AwaitOptions(
        command=args["command"],
        max_duration=_clamp(float(args["max_duration"]), MIN_DURATION_SECONDS, MAX_DURATION_SECONDS),
        cwd=cwd,
        env=env,
        success_pattern=try_compile_regex(args.get("success_pattern")),
        error_pattern=try_compile_regex(args.get("error_pattern")),
        exit_code_success=[int(code) for code in exit_codes],
        poll_enabled=bool(poll_mode.get("enabled", False)),
        poll_interval=_clamp(float(interval), MIN_POLL_INTERVAL, MAX_POLL_INTERVAL),
        exit_on_complete=bool(poll_mode.get("exit_on_complete", True)),
        output_template=args.get("output_template") or None,
        template_file=args.get("template_file") or None,
        persist_logs=bool(args.get("persist_logs", False)),
        on_success=args.get("on_success") or None,
        on_failure=args.get("on_failure") or None,
    )


def classify_result(
    result: InvocationResult,
    options: AwaitOptions,
) -> tuple[str, str | None]:
    """Status and matched text for a single run.

    Precedence: cancelled, timeout, success pattern, error pattern, exit code.
    """
    if result.cancelled:
        return "cancelled", None
    if result.timed_out:
        return "timeout", None

    output = result.output
    if options.success_pattern is not None:
        match = options.success_pattern.search(output)
        if match:
            return "success", match.group(0)

    if options.error_pattern is not None:
        match = options.error_pattern.search(output)
        if match:
            return "error", match.group(0)

    if result.exit_code is not None and result.exit_code in options.exit_code_success:
        return "success", None
    return "error", None


def classify_outcome(outcome: PollOutcome, options: AwaitOptions) -> str:
    """Status for a poll outcome; "completed" is judged by its exit code."""
    if outcome.reason is PollReason.COMPLETED:
        if outcome.exit_code in options.exit_code_success:
            return "success"
        return "error"
    return outcome.reason.value


class AwaitCommandHandler(ToolHandler):
    """Handler for the await_command tool."""

    @property
    def name(self) -> str:
        return AWAIT_COMMAND_TOOL

    @property
    def description(self) -> str:
        return TOOL_DESCRIPTION

    def get_input_schema(self) -> dict[str, Any]:
        return create_tool_schema()

    def validate(self, arguments: dict[str, Any]) -> str | None:
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return "Missing required argument: 'command'"

        max_duration = arguments.get("max_duration")
        if max_duration is None:
            return "Missing required argument: 'max_duration'"
        if isinstance(max_duration, bool) or not isinstance(max_duration, (int, float)):
            return "'max_duration' must be a number"

        env = arguments.get("env")
        if env is not None and not isinstance(env, dict):
            return "'env' must be an object"

        poll_mode = arguments.get("poll_mode")
        if poll_mode is not None:
            if not isinstance(poll_mode, dict):
                return "'poll_mode' must be an object"
            interval = poll_mode.get("interval")
            if interval is not None and (
                isinstance(interval, bool) or not isinstance(interval, (int, float))
            ):
                return "'poll_mode.interval' must be a number"

        exit_codes = arguments.get("exit_code_success")
        if exit_codes is not None and (
            not isinstance(exit_codes, list)
            or not all(isinstance(c, int) and not isinstance(c, bool) for c in exit_codes)
        ):
            return "'exit_code_success' must be a list of integers"

        return None

    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> list[TextContent]:
        """Handle an await_command call."""
        arguments = apply_project_defaults(arguments, ctx.config.project)
        error = self.validate(arguments)
        if error:
            return format_error_response(error)

        options = build_options(arguments)
        template = load_template(options.output_template, options.template_file)

        capture = LogCapture.create() if options.persist_logs else None

        token = CancelToken()
        request_id = None
        if ctx.registry is not None:
            request_id = ctx.registry.generate_request_id()
            ctx.registry.register(request_id, options.command, token)

        started = time.monotonic()

        try:
            if options.poll_enabled:
                report = await self._run_poll(options, ctx, token, capture)
            else:
                report = await self._run_once(options, ctx, token, capture)

        except anyio.get_cancelled_exc_class() as e:
            # The runner has already terminated the command; let MCP handle it
            logger.info(f"Tool '{self.name}' cancelled (type={type(e).__name__})")
            token.cancel("request cancelled")
            raise

        except Exception as e:
            logger.error(f"Tool '{self.name}' error: {e}", exc_info=True)
            return format_error_response(str(e))

        finally:
            if ctx.registry is not None and request_id is not None:
                ctx.registry.unregister(request_id)
            if capture is not None:
                capture.finalize()

        report.elapsed_ms = int((time.monotonic() - started) * 1000)
        if capture is not None:
            report.log_path = str(capture.log_path)
            capture.schedule_cleanup(ctx.config.log_retention)
        report.formatted_output = format_output(
            template, create_template_context(report.to_dict())
        )

        logger.info(
            f"await_command finished: status={report.status} reason={report.reason} "
            f"exit_code={report.exit_code} elapsed={report.elapsed_ms}ms"
        )

        self._dispatch_post_command(report.status, options, ctx)
        return format_report(report)

    async def _run_once(
        self,
        options: AwaitOptions,
        ctx: ToolContext,
        token: CancelToken,
        capture: LogCapture | None,
    ) -> AwaitReport:
        result = await ctx.make_runner().run(
            InvocationRequest(
                command=options.command,
                cwd=options.cwd,
                env=options.env,
                timeout=options.max_duration,
                cancel_token=token,
            )
        )
        if capture is not None:
            capture.write(result.output)

        status, matched = classify_result(result, options)
        return AwaitReport(
            status=status,
            reason=result.reason or status,
            exit_code=result.exit_code,
            elapsed_ms=0,
            output=result.output,
            output_truncated=result.truncated,
            matched_pattern=matched,
        )

    async def _run_poll(
        self,
        options: AwaitOptions,
        ctx: ToolContext,
        token: CancelToken,
        capture: LogCapture | None,
    ) -> AwaitReport:
        loop = PollLoop(runner=ctx.make_runner())
        outcome = await loop.poll(
            PollSpec(
                command=options.command,
                interval=options.poll_interval,
                max_duration=options.max_duration,
                success_pattern=options.success_pattern,
                error_pattern=options.error_pattern,
                on_output=capture.write if capture is not None else None,
                cancel_token=token,
                exit_on_complete=options.exit_on_complete,
                cwd=options.cwd,
                env=options.env,
            )
        )
        return AwaitReport(
            status=classify_outcome(outcome, options),
            reason=outcome.reason.value,
            exit_code=outcome.exit_code,
            elapsed_ms=0,
            output=outcome.output,
            output_truncated=outcome.truncated,
            matched_pattern=outcome.matched_pattern,
        )

    def _dispatch_post_command(
        self,
        status: str,
        options: AwaitOptions,
        ctx: ToolContext,
    ) -> asyncio.Task[Any] | None:
        command = options.on_success if status == "success" else options.on_failure
        if not command:
            return None

        async def run_post_command() -> None:
            result = await run_command(
                command,
                timeout=POST_COMMAND_TIMEOUT,
                cwd=options.cwd,
                env=options.env,
                runner=ctx.make_runner(),
            )
            logger.info(
                f"Post command {command!r} finished: exit_code={result.exit_code} "
                f"timed_out={result.timed_out}"
            )

        return ctx.spawn_background(run_post_command(), name=f"post-command-{status}")
