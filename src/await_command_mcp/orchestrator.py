"""请求编排与管理模块。

登记每个正在运行的 await_command 调用及其 CancelToken，包括：
- RequestRegistry: 活动请求的登记和管理
- 请求级别的取消支持

信号处理器取消 token 后，ProcessRunner 会终止命令，调用照常返回
"cancelled" 报告，服务器本身不退出。
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from .runtime import CancelToken

__all__ = ["RequestRegistry", "RequestInfo"]

logger = logging.getLogger(__name__)


@dataclass
class RequestInfo:
    """活动请求的信息。

    Attributes:
        request_id: 唯一请求 ID
        command: 被监督的命令行
        token: 交给 runner 的取消 token
        created_at: 登记时间
    """

    request_id: str
    command: str
    token: CancelToken
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def active(self) -> bool:
        return not self.token.cancelled

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if self.active else "cancelled"
        command = self.command if len(self.command) <= 40 else self.command[:37] + "..."
        return (
            f"RequestInfo(id={self.request_id[:8]}..., "
            f"command={command!r}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class RequestRegistry:
    """活动请求的注册表。

    所有方法都是同步的，必须在持有这些 token 的事件循环中调用。

    Example:
        ```python
        registry = RequestRegistry()

        # 登记请求
        token = CancelToken()
        request_id = registry.generate_request_id()
        registry.register(request_id, "make test", token)
        try:
            result = await runner.run(InvocationRequest("make test", cancel_token=token))
        finally:
            # 注销（调用返回后）
            registry.unregister(request_id)

        # 取消所有请求（例如收到 SIGINT 时）
        cancelled = registry.cancel_all()
        ```
    """

    def __init__(self) -> None:
        """初始化请求注册表。"""
        self._requests: Dict[str, RequestInfo] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []

    @staticmethod
    def generate_request_id() -> str:
        """生成唯一的请求 ID。

        Returns:
            UUID4 字符串
        """
        return str(uuid.uuid4())

    def register(self, request_id: str, command: str, token: CancelToken) -> None:
        """登记新请求。

        Args:
            request_id: 请求 ID
            command: 命令行
            token: 取消 token

        Raises:
            ValueError: 请求 ID 已存在
        """
        if request_id in self._requests:
            raise ValueError(f"Request {request_id} already registered")

        info = RequestInfo(request_id=request_id, command=command, token=token)
        self._requests[request_id] = info
        logger.debug(f"Registered request: {info}")

    def unregister(self, request_id: str) -> bool:
        """注销请求。

        Args:
            request_id: 请求 ID

        Returns:
            请求是否存在
        """
        if request_id not in self._requests:
            return False

        info = self._requests.pop(request_id)
        logger.debug(f"Unregistered request: {info}")

        # 注册表变空时触发回调
        if not self._requests:
            for callback in list(self._on_empty_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")

        return True

    def get(self, request_id: str) -> Optional[RequestInfo]:
        """获取请求信息。"""
        return self._requests.get(request_id)

    def cancel(self, request_id: str, reason: str = "cancelled") -> bool:
        """取消指定请求。

        Args:
            request_id: 请求 ID
            reason: 取消原因

        Returns:
            请求存在且此前仍在运行
        """
        info = self._requests.get(request_id)
        if info and info.token.cancel(reason):
            logger.info(f"Cancelled request: {info}")
            return True
        return False

    def cancel_all(self, reason: str = "cancelled") -> int:
        """取消所有活动请求。

        Returns:
            本次被取消的请求数量
        """
        cancelled = 0
        for info in list(self._requests.values()):
            if info.token.cancel(reason):
                logger.info(f"Cancelled request: {info}")
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active request(s)")

        return cancelled

    def has_active_requests(self) -> bool:
        """检查是否有活动请求。"""
        return any(info.active for info in self._requests.values())

    @property
    def active_count(self) -> int:
        """活动请求数量。"""
        return sum(1 for info in self._requests.values() if info.active)

    @property
    def total_count(self) -> int:
        """总请求数量（包括已取消但尚未注销的）。"""
        return len(self._requests)

    def list_active(self) -> list[RequestInfo]:
        """列出所有活动请求，按登记时间排序。"""
        active = [info for info in self._requests.values() if info.active]
        return sorted(active, key=lambda x: x.created_at)

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """添加注册表变空时的回调。

        用于 SIGTERM 场景：等所有被取消的调用返回后再退出。

        Args:
            callback: 无参数回调
        """
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """移除注册表变空时的回调。"""
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def __len__(self) -> int:
        """返回注册表中的请求数量。"""
        return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        """检查请求是否在注册表中。"""
        return request_id in self._requests
