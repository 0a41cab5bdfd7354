"""
app.services.chat_log
~~~~~~~~~~~~~~~~~~~~~

聊天记录 —— 有界的先进先出消息序列，超过容量时淘汰最旧的消息。

消息按纯文本保存和广播，服务端不解析也不转义任何标记。
只存在于内存中，进程重启后为空。
"""
from __future__ import annotations

import time
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from app.core.exceptions import EmptyMessage
from app.schemas.watch_party import ChatMessage
from app.services.connection_registry import Connection

SYSTEM_AUTHOR: str = "System"


class ChatLog:
    """有界聊天记录。

    Attributes:
        capacity: 最多保留的消息条数。
        max_length: 单条消息最大长度，超出部分截断。
    """

    def __init__(
        self,
        capacity: int = 100,
        max_length: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = capacity
        self.max_length = max_length
        self._clock = clock
        self._messages: deque[ChatMessage] = deque(maxlen=capacity)

    def clean(self, raw_text: object) -> str:
        """去除首尾空白并截断；空消息抛出 ``EmptyMessage``。"""
        if not isinstance(raw_text, str):
            raise EmptyMessage()
        text = raw_text.strip()
        if not text:
            raise EmptyMessage()
        return text[: self.max_length]

    def append(self, author: Connection, raw_text: object) -> ChatMessage:
        """追加一条用户消息，昵称取自发送时的连接。"""
        message = ChatMessage(
            id=uuid.uuid4().hex,
            author_id=author.id,
            author_name=author.display_name,
            text=self.clean(raw_text),
            created_at=self._now(),
            is_admin=author.is_admin,
            kind="user",
        )
        self._messages.append(message)
        return message

    def append_system(self, text: str) -> ChatMessage:
        """追加一条系统消息。"""
        message = ChatMessage(
            id=uuid.uuid4().hex,
            author_name=SYSTEM_AUTHOR,
            text=self.clean(text),
            created_at=self._now(),
            kind="system",
        )
        self._messages.append(message)
        return message

    def history(self) -> list[ChatMessage]:
        """按时间正序返回当前保留的全部消息。"""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)
