"""SignalManager tests.

Covers:
- SIGINT handling per mode
- Double-tap forced exit
- SIGTERM and programmatic graceful shutdown
"""

from __future__ import annotations

import asyncio
import sys
from unittest import mock

import pytest

from await_command_mcp.config import Config, SigintMode
from await_command_mcp.orchestrator import RequestRegistry
from await_command_mcp.runtime import CancelToken
from await_command_mcp.signal_manager import SignalManager


def _manager(registry: RequestRegistry, **kwargs) -> SignalManager:
    """SignalManager with a fake loop so shutdown requests can be observed."""
    manager = SignalManager(registry, **kwargs)
    manager._shutdown_event = asyncio.Event()
    manager._loop = mock.MagicMock()
    return manager


def _register(registry: RequestRegistry, request_id: str = "req-1") -> CancelToken:
    token = CancelToken()
    registry.register(request_id, "sleep 10", token)
    return token


class TestSignalManagerInit:
    """Construction."""

    def test_defaults_from_config(self):
        registry = RequestRegistry()
        config = Config(sigint_mode=SigintMode.CANCEL_THEN_EXIT, sigint_double_tap_window=3.0)

        manager = SignalManager(registry, config)

        assert manager.registry is registry
        assert manager.sigint_mode == SigintMode.CANCEL_THEN_EXIT
        assert manager.double_tap_window == 3.0

    def test_default_config(self):
        manager = SignalManager(RequestRegistry())

        assert manager.sigint_mode == SigintMode.CANCEL
        assert manager.double_tap_window == 1.0

    def test_overrides_win(self):
        config = Config(sigint_mode=SigintMode.CANCEL)

        manager = SignalManager(
            RequestRegistry(),
            config,
            sigint_mode=SigintMode.EXIT,
            double_tap_window=2.0,
        )

        assert manager.sigint_mode == SigintMode.EXIT
        assert manager.double_tap_window == 2.0


class TestSigintCancel:
    """SIGINT in CANCEL mode."""

    def test_cancels_running_commands(self):
        registry = RequestRegistry()
        token = _register(registry)
        manager = _manager(registry, sigint_mode=SigintMode.CANCEL)

        manager._handle_sigint()

        assert token.cancelled is True
        assert token.reason == "sigint"
        assert manager.is_shutdown_requested is False

    def test_nothing_running_shuts_down(self):
        on_shutdown = mock.MagicMock()
        manager = _manager(
            RequestRegistry(),
            sigint_mode=SigintMode.CANCEL,
            on_shutdown=on_shutdown,
        )

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        on_shutdown.assert_called_once()
        manager._loop.call_soon_threadsafe.assert_called_once()


class TestSigintExit:
    """SIGINT in EXIT mode."""

    def test_shuts_down_even_with_running_commands(self):
        registry = RequestRegistry()
        token = _register(registry)
        manager = _manager(registry, sigint_mode=SigintMode.EXIT)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        assert token.cancelled is False


class TestSigintCancelThenExit:
    """SIGINT in CANCEL_THEN_EXIT mode and the double tap."""

    def test_first_sigint_cancels_second_forces_exit(self):
        registry = RequestRegistry()
        token = _register(registry)
        on_shutdown = mock.MagicMock()
        manager = _manager(
            registry,
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=5.0,
            on_shutdown=on_shutdown,
        )

        manager._handle_sigint()
        assert token.cancelled is True
        assert manager.is_force_exit is False
        on_shutdown.assert_not_called()

        manager._handle_sigint()
        assert manager.is_force_exit is True
        on_shutdown.assert_called_once()

    def test_slow_second_sigint_is_not_double_tap(self):
        registry = RequestRegistry()
        _register(registry)
        manager = _manager(
            registry,
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=1.0,
        )

        manager._handle_sigint()
        # Pretend the first Ctrl+C was long ago
        manager._last_sigint_time -= 10
        manager._handle_sigint()

        assert manager.is_force_exit is False


class TestSigterm:
    """SIGTERM and programmatic shutdown."""

    def test_sigterm_idle_shuts_down_immediately(self):
        on_shutdown = mock.MagicMock()
        manager = _manager(RequestRegistry(), on_shutdown=on_shutdown)

        manager._handle_sigterm()

        assert manager.is_shutdown_requested is True
        on_shutdown.assert_called_once()

    def test_sigterm_waits_for_cancelled_calls(self):
        registry = RequestRegistry()
        token = _register(registry)
        on_shutdown = mock.MagicMock()
        manager = _manager(registry, on_shutdown=on_shutdown)

        manager._handle_sigterm()

        assert token.cancelled is True
        assert token.reason == "sigterm"
        assert manager.is_shutdown_requested is True
        on_shutdown.assert_not_called()

        registry.unregister("req-1")

        on_shutdown.assert_called_once()

    def test_shutdown_callback_fires_once(self):
        on_shutdown = mock.MagicMock()
        manager = _manager(RequestRegistry(), on_shutdown=on_shutdown)

        manager.request_graceful_shutdown()
        manager._handle_sigterm()

        on_shutdown.assert_called_once()

    def test_failing_shutdown_callback_is_logged(self):
        manager = _manager(
            RequestRegistry(),
            on_shutdown=mock.MagicMock(side_effect=RuntimeError("boom")),
        )

        manager.request_graceful_shutdown()

        assert manager.is_shutdown_requested is True


@pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are POSIX only")
class TestLifecycle:
    """Installing handlers on a running loop."""

    @pytest.mark.asyncio
    async def test_start_stop_and_wait(self):
        manager = SignalManager(RequestRegistry())
        await manager.start()
        try:
            manager.request_graceful_shutdown()
            await asyncio.wait_for(manager.wait_for_shutdown(), timeout=2)
        finally:
            await manager.stop()

        assert manager.is_shutdown_requested is True

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        manager = SignalManager(RequestRegistry())

        await manager.stop()
