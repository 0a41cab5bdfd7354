"""
app.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 广播器 —— 为每个连接维护一个待发送队列，并由该连接自己的
发送协程（``pump()``）按顺序写出。

``send_to()`` / ``broadcast()`` 只做 ``put_nowait``，不会等待任何网络 I/O，
因此慢连接不会拖住命令处理；队列满时丢弃该帧并记录警告，客户端可通过
下一次增量或 ``syncRequest`` 自愈。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, status

from app.core.logging import get_logger
from app.schemas.watch_party import ServerEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class CloseSignal:
    """放入队列尾部，通知 ``pump()`` 关闭连接。"""

    code: int = status.WS_1000_NORMAL_CLOSURE
    reason: str = ""


class RoomBroadcaster:
    """按连接的出站队列集合。

    Attributes:
        queue_size: 每个连接的队列上限。
    """

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._outboxes: dict[str, asyncio.Queue[dict[str, Any] | CloseSignal]] = {}

    def attach(self, connection_id: str) -> None:
        """为新接入的连接创建出站队列。"""
        self._outboxes[connection_id] = asyncio.Queue(maxsize=self.queue_size)

    def detach(self, connection_id: str) -> None:
        """移除连接的出站队列。"""
        self._outboxes.pop(connection_id, None)

    def send_to(self, connection_id: str, event: ServerEvent, data: Any = None) -> bool:
        """向单个连接投递一帧，返回是否投递成功。"""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        try:
            outbox.put_nowait({"event": event.value, "data": data})
        except asyncio.QueueFull:
            logger.warning("发送队列已满，丢弃消息 | connection=%s | event=%s", connection_id, event.value)
            return False
        return True

    def broadcast(
        self,
        event: ServerEvent,
        data: Any = None,
        recipients: Iterable[str] | None = None,
    ) -> int:
        """向一组连接（默认全部）投递同一帧，返回成功投递的连接数。"""
        targets = list(self._outboxes) if recipients is None else list(recipients)
        return sum(1 for connection_id in targets if self.send_to(connection_id, event, data))

    def close(
        self,
        connection_id: str,
        code: int = status.WS_1000_NORMAL_CLOSURE,
        reason: str = "",
    ) -> None:
        """在已排队的消息之后关闭连接。"""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return
        signal = CloseSignal(code=code, reason=reason)
        try:
            outbox.put_nowait(signal)
        except asyncio.QueueFull:
            # 队列已满时放弃积压的消息，保证关闭信号能送达
            while not outbox.empty():
                outbox.get_nowait()
            outbox.put_nowait(signal)

    async def pump(self, connection_id: str, websocket: WebSocket) -> None:
        """把连接的出站队列持续写入 WebSocket，直到收到关闭信号。"""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return
        while True:
            item = await outbox.get()
            if isinstance(item, CloseSignal):
                try:
                    await websocket.close(code=item.code, reason=item.reason)
                except Exception as e:
                    # 对端已先行断开
                    logger.warning("关闭连接失败 | connection=%s | %s", connection_id, e)
                return
            try:
                await websocket.send_json(item)
            except Exception as e:
                logger.warning("发送失败，停止推送 | connection=%s | %s", connection_id, e)
                return

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._outboxes

    @property
    def online_count(self) -> int:
        """当前接入的连接数（含尚未完成身份识别的）。"""
        return len(self._outboxes)
