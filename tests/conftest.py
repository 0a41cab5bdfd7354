"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 可控时钟、完整组装的同步引擎，以及模拟客户端
接入 / 读取出站队列的测试房间。

引擎直接使用真实的 ``RoomBroadcaster``，测试通过读取各连接的出站队列
断言扇出结果，无需真实 WebSocket。
"""
from __future__ import annotations

import json
import os
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.rate_limit import ChatRateLimiter  # noqa: E402
from app.schemas.watch_party import Role, VideoDescriptor  # noqa: E402
from app.services.chat_log import ChatLog  # noqa: E402
from app.services.connection_registry import Connection, ConnectionRegistry  # noqa: E402
from app.services.room_broadcaster import CloseSignal, RoomBroadcaster  # noqa: E402
from app.services.room_state import RoomStateStore  # noqa: E402
from app.services.sync_engine import SyncEngine  # noqa: E402


class FakeClock:
    """手动推进的时钟，替代 ``time.time`` / ``time.monotonic``。"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_video(video_id: str, name: str | None = None) -> VideoDescriptor:
    return VideoDescriptor(
        id=video_id,
        name=name or f"{video_id}.mp4",
        locator=f"/videos/{video_id}.mp4",
        filename=f"{video_id}.mp4",
        size=1024,
        mime_type="video/mp4",
        uploaded_at="2024-01-01T00:00:00Z",
    )


def make_connection(connection_id: str, role: Role = Role.VIEWER, name: str | None = None) -> Connection:
    return Connection(
        id=connection_id,
        display_name=name or connection_id,
        role=role,
        joined_at=1_700_000_000.0,
    )


class RoomHarness:
    """围绕 ``SyncEngine`` 的测试房间：模拟接入、发帧、读取出站队列。"""

    def __init__(self, engine: SyncEngine, clock: FakeClock) -> None:
        self.engine = engine
        self.clock = clock
        self.broadcaster = engine.broadcaster

    async def join(
        self,
        connection_id: str,
        role: str = "viewer",
        name: str | None = None,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        """接入并完成身份识别，返回该连接收到的帧。"""
        self.broadcaster.attach(connection_id)
        payload: dict[str, Any] = {"type": role}
        if name is not None:
            payload["name"] = name
        if token is not None:
            payload["token"] = token
        await self.engine.identify(connection_id, payload)
        return self.frames(connection_id)

    async def send(self, connection_id: str, event: str, data: Any = None) -> None:
        """模拟客户端发来一帧原始 JSON。"""
        await self.engine.dispatch(connection_id, json.dumps({"event": event, "data": data}))

    def frames(self, connection_id: str) -> list[dict[str, Any]]:
        """取出并清空该连接出站队列中的普通帧。"""
        return [item for item in self.drain(connection_id) if not isinstance(item, CloseSignal)]

    def events(self, connection_id: str) -> list[str]:
        return [frame["event"] for frame in self.frames(connection_id)]

    def drain(self, connection_id: str) -> list[Any]:
        outbox = self.broadcaster._outboxes.get(connection_id)
        items: list[Any] = []
        while outbox is not None and not outbox.empty():
            items.append(outbox.get_nowait())
        return items

    def clear(self) -> None:
        for connection_id in list(self.broadcaster._outboxes):
            self.drain(connection_id)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine(clock: FakeClock) -> SyncEngine:
    """小容量、零踢出宽限的引擎，方便覆盖边界。"""
    return SyncEngine(
        registry=ConnectionRegistry(max_viewers=3, clock=clock),
        state=RoomStateStore(clock=clock),
        chat_log=ChatLog(capacity=5, max_length=20, clock=clock),
        limiter=ChatRateLimiter(window_seconds=10, max_messages=5, idle_seconds=60, clock=clock),
        broadcaster=RoomBroadcaster(queue_size=64),
        kick_grace_seconds=0,
        clock=clock,
    )


@pytest.fixture()
def room(engine: SyncEngine, clock: FakeClock) -> RoomHarness:
    return RoomHarness(engine, clock)


@pytest.fixture()
def admin() -> Connection:
    return make_connection("admin-1", Role.ADMIN, "Admin")


@pytest.fixture()
def viewer() -> Connection:
    return make_connection("viewer-1", Role.VIEWER, "Alice")


@pytest.fixture()
def video_factory():
    """返回构造播放列表条目的工厂函数。"""
    return make_video


@pytest.fixture()
def connection_factory():
    return make_connection
