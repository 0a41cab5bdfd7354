"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

HTTP 接口与 WebSocket 聊天的限流。

- HTTP：slowapi ``Limiter``，按客户端 IP 限流，装饰在各个路由上。
- 聊天：``ChatRateLimiter``，按连接 ID 的滑动窗口计数。
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.logging import get_logger

logger = get_logger(__name__)


# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- 聊天限流器 ---------
class ChatRateLimiter:
    """按连接的滑动窗口聊天限流器。

    为每个连接记录最近被接受的消息时间戳；窗口内已接受的条数达到
    ``max_messages`` 时拒绝。被拒绝的消息不计入窗口。

    连接断开时调用 ``remove_client()`` 立即释放记录，``sweep()`` 定期清理
    长时间没有活动的记录，避免内存无限增长。
    """

    def __init__(
        self,
        window_seconds: float = 10.0,
        max_messages: int = 5,
        idle_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_messages = max_messages
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._history: dict[str, deque[float]] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查连接是否允许再发送一条消息。

        Args:
            client_id: 连接 ID。

        Returns:
            是否允许发送。如果允许，则同时记录本次发送时间。
        """
        now = self._clock()
        history = self._history.setdefault(client_id, deque())
        while history and now - history[0] >= self.window_seconds:
            history.popleft()

        if len(history) >= self.max_messages:
            return False
        history.append(now)
        return True

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._history.pop(client_id, None)

    def sweep(self) -> int:
        """清理闲置超过 ``idle_seconds`` 的记录，返回清理的连接数。"""
        now = self._clock()
        stale = [
            client_id
            for client_id, history in self._history.items()
            if not history or now - history[-1] >= self.idle_seconds
        ]
        for client_id in stale:
            del self._history[client_id]
        return len(stale)

    async def sweep_forever(self, interval_seconds: float) -> None:
        """后台循环定期清理，随应用生命周期启动 / 取消。"""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("聊天限流记录已清理 | 清理: %d | 剩余: %d", removed, len(self._history))

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._history
