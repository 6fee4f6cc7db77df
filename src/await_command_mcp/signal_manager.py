"""信号管理模块。

将 OS 信号转换为请求级别的操作，而不是直接杀死服务器：
- SIGINT: 取消正在运行的命令（命令被终止并返回 "cancelled"）
- SIGTERM: 取消所有命令，等被取消的调用返回后再退出

支持的配置：
- ACM_SIGINT_MODE: cancel | exit | cancel_then_exit
- ACM_SIGINT_DOUBLE_TAP_WINDOW: 双击强制退出的窗口时间（秒）
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import Config, SigintMode
from .orchestrator import RequestRegistry

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    把 SIGINT/SIGTERM 映射到请求注册表上。

    Example:
        ```python
        registry = RequestRegistry()
        signal_manager = SignalManager(registry, config)

        async def main():
            await signal_manager.start()
            try:
                # 运行服务器...
                await server.run()
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        registry: 请求注册表
        sigint_mode: SIGINT 处理模式
        double_tap_window: 第二次 SIGINT 强制退出的窗口时间（秒）
    """

    def __init__(
        self,
        registry: RequestRegistry,
        config: Optional[Config] = None,
        *,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            registry: 请求注册表
            config: 服务器配置，提供默认值
            sigint_mode: 覆盖 config.sigint_mode
            double_tap_window: 覆盖 config.sigint_double_tap_window
            on_shutdown: 请求关闭时调用（只调用一次）
        """
        self.registry = registry

        # 从配置读取默认值
        config = config or Config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window
            if double_tap_window is not None
            else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._shutdown_callback_fired: bool = False
        self._force_exit: bool = False  # 双击 SIGINT 触发的强制退出标志
        self._shutdown_event: Optional[asyncio.Event] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            # POSIX: 使用 loop.add_signal_handler
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            loop = self._loop
            signal.signal(
                signal.SIGINT,
                lambda sig, frame: loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug(
                f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})"
            )

    async def stop(self) -> None:
        """停止信号监听，移除处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32":
            try:
                signal.signal(signal.SIGINT, signal.default_int_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 有运行中的命令：取消它们
        - 没有运行中的命令，或模式为 EXIT：请求关闭
        - 窗口时间内的第二次 SIGINT：强制关闭
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        # 检查双击退出
        if time_since_last < self.double_tap_window and self._shutdown_requested:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        # 根据模式处理
        if self.sigint_mode == SigintMode.EXIT:
            # 直接退出模式
            logger.info("SIGINT received (mode=exit), requesting shutdown")
            self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL:
            # 取消模式：有活动请求则取消，否则退出
            if self.registry.has_active_requests():
                count = self.registry.cancel_all("sigint")
                logger.info(f"SIGINT received (mode=cancel), cancelled {count} command(s)")
            else:
                logger.info(
                    "SIGINT received (mode=cancel), nothing running, requesting shutdown"
                )
                self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL_THEN_EXIT:
            # 先取消后退出模式
            if self.registry.has_active_requests():
                count = self.registry.cancel_all("sigint")
                logger.info(
                    f"SIGINT received (mode=cancel_then_exit), cancelled {count} command(s). "
                    f"Press Ctrl+C again within {self.double_tap_window}s to exit."
                )
                # 标记为已请求关闭，等待双击，但不触发实际关闭
                self._shutdown_requested = True
            else:
                logger.info(
                    "SIGINT received (mode=cancel_then_exit), nothing running, requesting shutdown"
                )
                self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号。

        取消所有命令，等被取消的调用返回后关闭。
        """
        logger.info("SIGTERM received, initiating graceful shutdown")
        self._cancel_then_shutdown("sigterm")

    def _cancel_then_shutdown(self, reason: str) -> None:
        # 取消所有活动请求
        if self.registry.has_active_requests():
            count = self.registry.cancel_all(reason)
            logger.info(f"Cancelled {count} running command(s) for shutdown")

        if len(self.registry) == 0:
            self._request_shutdown()
            return

        self._shutdown_requested = True

        # 注册表变空（所有调用都已返回）时再关闭
        def on_empty() -> None:
            self.registry.remove_on_empty_callback(on_empty)
            self._request_shutdown()

        self.registry.add_on_empty_callback(on_empty)

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        self._shutdown_requested = True

        # 调用关闭回调（只调用一次）
        if self._on_shutdown and not self._shutdown_callback_fired:
            self._shutdown_callback_fired = True
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        # 设置关闭事件
        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def _force_shutdown(self) -> None:
        """强制退出。

        取消所有命令，不等待它们返回。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True

        # 取消所有活动请求
        if self.registry.has_active_requests():
            count = self.registry.cancel_all("forced")
            logger.info(f"Force shutdown: cancelled {count} command(s)")

        self._request_shutdown()

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。

        与 SIGTERM 的处理相同。
        """
        logger.info("Programmatic shutdown requested")
        self._cancel_then_shutdown("shutdown")
