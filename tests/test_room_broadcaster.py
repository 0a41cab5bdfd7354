"""
tests.test_room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~

RoomBroadcaster 单元测试：出站队列、满队列丢弃、关闭信号与 pump 写出。
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocket, status

from app.schemas.watch_party import ServerEvent
from app.services.room_broadcaster import CloseSignal, RoomBroadcaster


class TestQueues:
    """测试投递到出站队列。"""

    def test_send_to_unknown_connection(self) -> None:
        broadcaster = RoomBroadcaster()
        assert broadcaster.send_to("ghost", ServerEvent.ERROR, {}) is False

    def test_broadcast_to_recipients_only(self) -> None:
        broadcaster = RoomBroadcaster()
        for cid in ("a", "b", "c"):
            broadcaster.attach(cid)

        delivered = broadcaster.broadcast(ServerEvent.ADMIN_ONLINE, True, recipients=["a", "c", "gone"])

        assert delivered == 2
        assert broadcaster._outboxes["a"].get_nowait() == {"event": "adminOnline", "data": True}
        assert broadcaster._outboxes["b"].empty()

    def test_full_queue_drops_frame(self) -> None:
        """队列满时丢弃新帧，不阻塞调用方。"""
        broadcaster = RoomBroadcaster(queue_size=1)
        broadcaster.attach("slow")

        assert broadcaster.send_to("slow", ServerEvent.PAUSE_VIDEO, {"timestamp": 1}) is True
        assert broadcaster.send_to("slow", ServerEvent.PAUSE_VIDEO, {"timestamp": 2}) is False
        assert broadcaster._outboxes["slow"].qsize() == 1

    def test_close_on_full_queue_discards_backlog(self) -> None:
        broadcaster = RoomBroadcaster(queue_size=2)
        broadcaster.attach("slow")
        broadcaster.send_to("slow", ServerEvent.PAUSE_VIDEO)
        broadcaster.send_to("slow", ServerEvent.PAUSE_VIDEO)

        broadcaster.close("slow", code=status.WS_1008_POLICY_VIOLATION, reason="kicked")

        outbox = broadcaster._outboxes["slow"]
        assert outbox.qsize() == 1
        assert outbox.get_nowait() == CloseSignal(code=status.WS_1008_POLICY_VIOLATION, reason="kicked")

    def test_detach(self) -> None:
        broadcaster = RoomBroadcaster()
        broadcaster.attach("a")
        broadcaster.detach("a")
        broadcaster.detach("a")

        assert "a" not in broadcaster
        assert broadcaster.online_count == 0


class TestPump:
    """测试发送协程。"""

    @pytest.mark.asyncio
    async def test_pump_sends_in_order_then_closes(self) -> None:
        broadcaster = RoomBroadcaster()
        broadcaster.attach("c1")
        broadcaster.send_to("c1", ServerEvent.PLAY_VIDEO, {"currentTime": 0})
        broadcaster.send_to("c1", ServerEvent.PAUSE_VIDEO, {"timestamp": 5})
        broadcaster.close("c1", code=status.WS_1013_TRY_AGAIN_LATER, reason="viewer limit reached")
        mock_ws = AsyncMock(spec=WebSocket)

        await broadcaster.pump("c1", mock_ws)

        sent = [call.args[0]["event"] for call in mock_ws.send_json.call_args_list]
        assert sent == ["playVideo", "pauseVideo"]
        mock_ws.close.assert_awaited_once_with(
            code=status.WS_1013_TRY_AGAIN_LATER, reason="viewer limit reached",
        )

    @pytest.mark.asyncio
    async def test_pump_stops_on_send_failure(self) -> None:
        broadcaster = RoomBroadcaster()
        broadcaster.attach("c1")
        broadcaster.send_to("c1", ServerEvent.PLAY_VIDEO)
        broadcaster.send_to("c1", ServerEvent.PAUSE_VIDEO)
        mock_ws = AsyncMock(spec=WebSocket)
        mock_ws.send_json.side_effect = RuntimeError("socket closed")

        await broadcaster.pump("c1", mock_ws)

        assert mock_ws.send_json.await_count == 1
        mock_ws.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_pump_survives_close_after_peer_left(self) -> None:
        """对端已断开时关闭失败只记录日志，不向外抛出。"""
        broadcaster = RoomBroadcaster()
        broadcaster.attach("c1")
        broadcaster.close("c1", code=status.WS_1008_POLICY_VIOLATION, reason="kicked")
        mock_ws = AsyncMock(spec=WebSocket)
        mock_ws.close.side_effect = RuntimeError("Unexpected ASGI message 'websocket.close'")

        await broadcaster.pump("c1", mock_ws)

        mock_ws.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pump_without_outbox_returns(self) -> None:
        mock_ws = AsyncMock(spec=WebSocket)
        await RoomBroadcaster().pump("ghost", mock_ws)
        mock_ws.send_json.assert_not_called()
