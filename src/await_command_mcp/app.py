"""await-command MCP application entry.

Server lifecycle management and the main entry point.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

from mcp.server.stdio import stdio_server

from .config import Config, load_config
from .handlers import ToolContext
from .orchestrator import RequestRegistry
from .server import create_server
from .signal_manager import SignalManager

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)


async def run_server(config: Config) -> None:
    """Run the MCP server over stdio.

    Integrates the signal manager so that:
    - SIGINT cancels running commands instead of exiting
    - SIGTERM cancels everything and exits once the calls have returned

    Concurrent tasks:
    - server_task: runs the MCP server
    - shutdown_watcher: waits for the shutdown event and cancels server_task
    """
    logger.info(f"Starting await-command MCP server: {config}")

    registry = RequestRegistry()
    tool_ctx = ToolContext(config=config, registry=registry)
    server_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    def on_shutdown() -> None:
        # Closing stdin unblocks stdio_server's read loop
        try:
            sys.stdin.close()
            logger.debug("stdin closed to unblock stdio_server")
        except Exception as e:
            logger.debug(f"Error closing stdin: {e}")

    signal_manager = SignalManager(registry, config, on_shutdown=on_shutdown)
    server = create_server(config, registry, tool_ctx)

    async def _run_server_impl() -> None:
        logger.debug("Starting MCP server with stdio transport")
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
        logger.debug("MCP server completed normally")

    async def _watch_shutdown() -> None:
        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown signal received, cancelling server task...")
        if server_task and not server_task.done():
            server_task.cancel()

    try:
        await signal_manager.start()
        logger.info(
            f"Signal manager started (mode={signal_manager.sigint_mode.value}, "
            f"double_tap_window={signal_manager.double_tap_window}s)"
        )

        server_task = asyncio.create_task(_run_server_impl(), name="mcp-server")
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        try:
            await server_task
        except asyncio.CancelledError:
            logger.info("Server task cancelled by shutdown signal")

    finally:
        logger.info("run_server: cleaning up")

        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        # Stop any follow-up commands still running
        await tool_ctx.cancel_background()
        await signal_manager.stop()

        logger.info("run_server: cleanup completed")

        if signal_manager.is_force_exit:
            logger.warning("Force exit requested, terminating with exit code 130")
            sys.exit(130)  # 128 + SIGINT(2)


def configure_logging(config: Config) -> None:
    """Send package logs to stderr (INFO) or to the debug file (DEBUG).

    stdout is the MCP channel and must never receive log output.
    """
    log_handler: logging.Handler
    if config.log_debug and config.log_file:
        log_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        log_handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO

    log_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    # Third-party loggers stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=[log_handler])
    logging.getLogger("await_command_mcp").setLevel(log_level)


def main() -> None:
    """Console entry point."""
    config = load_config()
    configure_logging(config)
    asyncio.run(run_server(config))


if __name__ == "__main__":
    main()
