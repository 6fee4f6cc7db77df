"""await_command handler and server tests.

Calls the handler directly with a ToolContext and checks the JSON report.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any

import pytest
from mcp import types

from conftest import IS_WINDOWS

from await_command_mcp.config import Config, ProjectConfig
from await_command_mcp.handlers import AwaitCommandHandler, ToolContext, build_options
from await_command_mcp.handlers.await_command import (
    classify_outcome,
    classify_result,
    try_compile_regex,
)
from await_command_mcp.orchestrator import RequestRegistry
from await_command_mcp.runtime import InvocationResult, PollOutcome, PollReason
from await_command_mcp.server import create_server
from await_command_mcp.shared import LogCapture


@pytest.fixture
def config() -> Config:
    return Config(grace_period=0.5, log_retention=0)


@pytest.fixture
def ctx(config: Config) -> ToolContext:
    return ToolContext(config=config, registry=RequestRegistry())


async def _call(ctx: ToolContext, **arguments: Any) -> dict[str, Any]:
    contents = await AwaitCommandHandler().handle(arguments, ctx)
    return json.loads(contents[0].text)


def _remove_log(report: dict[str, Any]) -> None:
    if report.get("log_path"):
        LogCapture(Path(report["log_path"]).parent).cleanup()


# =============================================================================
# Argument Handling Tests
# =============================================================================


class TestValidation:
    """Rejected calls return an error response, not a report."""

    @pytest.mark.parametrize(
        "arguments,message",
        [
            ({"max_duration": 5}, "command"),
            ({"command": "  ", "max_duration": 5}, "command"),
            ({"command": "true"}, "max_duration"),
            ({"command": "true", "max_duration": "5"}, "max_duration"),
            ({"command": "true", "max_duration": 5, "env": ["A=1"]}, "env"),
            ({"command": "true", "max_duration": 5, "poll_mode": True}, "poll_mode"),
            (
                {"command": "true", "max_duration": 5, "poll_mode": {"enabled": True, "interval": "x"}},
                "interval",
            ),
            ({"command": "true", "max_duration": 5, "exit_code_success": [0, "1"]}, "exit_code_success"),
        ],
    )
    def test_validate(self, arguments: dict[str, Any], message: str):
        error = AwaitCommandHandler().validate(arguments)

        assert error is not None
        assert message in error

    def test_valid_arguments(self):
        assert AwaitCommandHandler().validate({"command": "true", "max_duration": 5}) is None

    @pytest.mark.asyncio
    async def test_invalid_call_returns_error_response(self, ctx: ToolContext):
        contents = await AwaitCommandHandler().handle({"command": "true"}, ctx)

        assert contents[0].text.startswith("<response>")
        assert "max_duration" in contents[0].text


class TestBuildOptions:
    """Normalization of validated arguments."""

    def test_defaults(self):
        options = build_options({"command": "make", "max_duration": 60})

        assert options.max_duration == 60
        assert options.exit_code_success == [0]
        assert options.poll_enabled is False
        assert options.poll_interval == 5
        assert options.exit_on_complete is True
        assert options.persist_logs is False
        assert options.cwd is None

    def test_clamping(self):
        options = build_options(
            {
                "command": "make",
                "max_duration": 99999,
                "poll_mode": {"enabled": True, "interval": 0.01},
            }
        )

        assert options.max_duration == 1800
        assert options.poll_interval == 1

    def test_minimum_duration(self):
        assert build_options({"command": "make", "max_duration": 0}).max_duration == 1

    def test_invalid_regex_means_no_pattern(self):
        options = build_options(
            {"command": "make", "max_duration": 5, "success_pattern": "([unclosed"}
        )

        assert options.success_pattern is None

    def test_try_compile_regex(self):
        assert try_compile_regex(None) is None
        assert try_compile_regex("") is None
        assert try_compile_regex("a+").pattern == "a+"

    def test_workspace_resolved(self, tmp_path: Path):
        options = build_options({"command": "ls", "max_duration": 5, "workspace": str(tmp_path)})

        assert options.cwd == tmp_path.resolve()


class TestClassification:
    """Status mapping."""

    def _options(self, **arguments: Any):
        return build_options({"command": "x", "max_duration": 5, **arguments})

    def test_cancelled_wins_over_timeout(self):
        result = InvocationResult(timed_out=True, cancelled=True)

        assert classify_result(result, self._options()) == ("cancelled", None)

    def test_timeout_wins_over_patterns(self):
        result = InvocationResult(stdout="DONE", timed_out=True)

        assert classify_result(result, self._options(success_pattern="DONE")) == ("timeout", None)

    def test_success_pattern_wins_over_exit_code(self):
        result = InvocationResult(exit_code=1, stdout="all DONE")

        assert classify_result(result, self._options(success_pattern="DONE")) == ("success", "DONE")

    def test_error_pattern_wins_over_exit_code(self):
        result = InvocationResult(exit_code=0, stderr="ERROR: disk full")

        assert classify_result(result, self._options(error_pattern="ERROR")) == ("error", "ERROR")

    def test_exit_code_success_list(self):
        options = self._options(exit_code_success=[0, 2])

        assert classify_result(InvocationResult(exit_code=2), options) == ("success", None)
        assert classify_result(InvocationResult(exit_code=1), options) == ("error", None)

    def test_missing_exit_code_is_error(self):
        assert classify_result(InvocationResult(), self._options()) == ("error", None)

    def test_poll_completed_uses_exit_codes(self):
        options = self._options(exit_code_success=[0, 3])

        completed_ok = PollOutcome(exit_code=3, output="", reason=PollReason.COMPLETED)
        completed_bad = PollOutcome(exit_code=1, output="", reason=PollReason.COMPLETED)
        timed_out = PollOutcome(exit_code=0, output="", reason=PollReason.TIMEOUT)

        assert classify_outcome(completed_ok, options) == "success"
        assert classify_outcome(completed_bad, options) == "error"
        assert classify_outcome(timed_out, options) == "timeout"


# =============================================================================
# Single Run Tests
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")
class TestSingleRun:
    """One invocation."""

    @pytest.mark.asyncio
    async def test_success(self, ctx: ToolContext):
        report = await _call(ctx, command="echo hello", max_duration=5)

        assert report["status"] == "success"
        assert report["exit_code"] == 0
        assert "hello" in report["output"]
        assert report["output_truncated"] is False
        assert report["elapsed_ms"] >= 0
        assert "Status: success" in report["formatted_output"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error(self, ctx: ToolContext):
        report = await _call(ctx, command="exit 2", max_duration=5)

        assert report["status"] == "error"
        assert report["exit_code"] == 2

    @pytest.mark.asyncio
    async def test_pattern_match(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo 'Deploy finished: OK'",
            max_duration=5,
            success_pattern="finished: \\w+",
        )

        assert report["status"] == "success"
        assert report["matched_pattern"] == "finished: OK"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timeout(self, ctx: ToolContext):
        report = await _call(ctx, command="echo started; sleep 10", max_duration=1)

        assert report["status"] == "timeout"
        assert report["reason"] == "timeout"
        assert report["exit_code"] is None
        assert "started" in report["output"]
        assert report["elapsed_ms"] < 1000 + 500 + 1500

    @pytest.mark.asyncio
    async def test_env_and_workspace(self, ctx: ToolContext, temp_workspace: Path):
        report = await _call(
            ctx,
            command='pwd; echo "$ACM_GREETING"',
            max_duration=5,
            workspace=str(temp_workspace),
            env={"ACM_GREETING": "hi there"},
        )

        assert temp_workspace.name in report["output"]
        assert "hi there" in report["output"]

    @pytest.mark.asyncio
    async def test_output_template(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo '<tag>'",
            max_duration=5,
            output_template="[{{status}}|{{exit_code}}] {{output}}",
        )

        assert report["formatted_output"] == "[success|0] &lt;tag&gt;\n"

    @pytest.mark.asyncio
    async def test_registry_cleared_after_call(self, ctx: ToolContext):
        await _call(ctx, command="true", max_duration=5)

        assert ctx.registry.total_count == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancel_through_registry(self, ctx: ToolContext):
        task = asyncio.create_task(_call(ctx, command="sleep 10", max_duration=30))
        for _ in range(50):
            if ctx.registry.active_count:
                break
            await asyncio.sleep(0.02)

        assert ctx.registry.cancel_all("sigint") == 1
        report = await task

        assert report["status"] == "cancelled"
        assert ctx.registry.total_count == 0


# =============================================================================
# Poll Mode Tests
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")
class TestPollMode:
    """Repeated invocations."""

    @pytest.mark.asyncio
    async def test_success_pattern(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo DONE",
            max_duration=5,
            success_pattern="DONE",
            poll_mode={"enabled": True, "interval": 1},
        )

        assert report["status"] == "success"
        assert report["reason"] == "success"
        assert report["matched_pattern"] == "DONE"
        assert report["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_completed_with_failing_exit(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="exit 3",
            max_duration=5,
            poll_mode={"enabled": True, "interval": 1},
        )

        assert report["status"] == "error"
        assert report["reason"] == "completed"
        assert report["exit_code"] == 3

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_timeout(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo pending",
            max_duration=2,
            success_pattern="ready",
            poll_mode={"enabled": True, "interval": 1, "exit_on_complete": False},
        )

        assert report["status"] == "timeout"
        assert report["output"].count("pending") >= 2


# =============================================================================
# Log Persistence and Follow-up Tests
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")
class TestLogsAndPostCommands:
    """persist_logs, project defaults and on_success/on_failure."""

    @pytest.mark.asyncio
    async def test_persist_logs(self, ctx: ToolContext):
        report = await _call(ctx, command="echo logged", max_duration=5, persist_logs=True)
        try:
            log_path = Path(report["log_path"])
            assert log_path.read_text(encoding="utf-8") == "logged\n"
        finally:
            _remove_log(report)

    @pytest.mark.asyncio
    async def test_persist_logs_in_poll_mode(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo round",
            max_duration=5,
            persist_logs=True,
            poll_mode={"enabled": True, "interval": 1},
        )
        try:
            assert Path(report["log_path"]).read_text(encoding="utf-8") == report["output"]
        finally:
            _remove_log(report)

    @pytest.mark.asyncio
    async def test_project_defaults_apply(self):
        config = Config(log_retention=0, project=ProjectConfig(persist_logs=True))
        ctx = ToolContext(config=config)

        report = await _call(ctx, command="echo project", max_duration=5)
        try:
            assert "log_path" in report
        finally:
            _remove_log(report)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_on_success_runs_in_background(self, ctx: ToolContext, temp_workspace: Path):
        marker = temp_workspace / "notified"

        report = await _call(
            ctx,
            command="true",
            max_duration=5,
            workspace=str(temp_workspace),
            on_success=f"touch {marker.name}",
            on_failure="touch failed",
        )
        await asyncio.gather(*ctx.background_tasks)

        assert report["status"] == "success"
        assert marker.exists()
        assert not (temp_workspace / "failed").exists()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_on_failure_runs_on_error(self, ctx: ToolContext, temp_workspace: Path):
        report = await _call(
            ctx,
            command="exit 1",
            max_duration=5,
            workspace=str(temp_workspace),
            on_failure="touch failed",
        )
        await asyncio.gather(*ctx.background_tasks)

        assert report["status"] == "error"
        assert (temp_workspace / "failed").exists()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_post_command_failure_does_not_change_report(self, ctx: ToolContext):
        report = await _call(
            ctx,
            command="echo ok",
            max_duration=5,
            on_success="exit 9",
        )
        await asyncio.gather(*ctx.background_tasks)

        assert report["status"] == "success"
        assert report["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_cancel_background(self, ctx: ToolContext):
        task = ctx.spawn_background(asyncio.sleep(30), name="sleeper")

        await ctx.cancel_background()

        assert task.cancelled()
        assert not ctx.background_tasks


# =============================================================================
# Server Tests
# =============================================================================


class TestServer:
    """MCP server wiring."""

    @pytest.mark.asyncio
    async def test_lists_await_command(self, config: Config):
        server = create_server(config)
        handler = server.request_handlers[types.ListToolsRequest]

        result = await handler(types.ListToolsRequest(method="tools/list"))

        tools = result.root.tools
        assert [t.name for t in tools] == ["await_command"]
        assert tools[0].inputSchema["required"] == ["command", "max_duration"]
        assert re.search("poll", tools[0].description)
