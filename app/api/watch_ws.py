"""
app.api.watch_ws
~~~~~~~~~~~~~~~~

WebSocket 实时同步接口 —— 单房间观影模式。

提供 ``/ws`` 端点。每个连接接入后先发送 ``identify``，之后所有帧都是
``{"event": ..., "data": ...}`` 形式的 JSON。

每个连接并发运行两个协程：
  - 接收协程：读取客户端帧并交给 ``SyncEngine.dispatch()``；
  - 发送协程：``RoomBroadcaster.pump()``，按顺序写出该连接的出站队列。

任一协程结束（客户端断开 / 服务端关闭连接）即视为连接结束。
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, status

from app.core.logging import get_logger, request_id_ctx_var
from app.services.sync_engine import SyncEngine

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws")
async def watch_party_endpoint(websocket: WebSocket) -> None:
    """WebSocket 观影房间端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    connection_id = uuid.uuid4().hex[:16]
    token = request_id_ctx_var.set(f"ws-{connection_id[:8]}")
    engine: SyncEngine = websocket.app.state.sync_engine
    reason = "transport close"

    try:
        await websocket.accept()
        engine.broadcaster.attach(connection_id)
        logger.info("连接已接入 | connection=%s | 在线: %d", connection_id, engine.broadcaster.online_count)

        async def receive_loop() -> None:
            nonlocal reason
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        reason = f"client disconnect ({message.get('code', status.WS_1000_NORMAL_CLOSURE)})"
                        return
                    # 二进制帧同样按 JSON 解析，解析失败只回复该连接
                    raw = message.get("text")
                    if raw is None:
                        raw = message.get("bytes") or b""
                    await engine.dispatch(connection_id, raw)
            except Exception as e:
                reason = "receive error"
                logger.error("WebSocket 接收异常: %s | connection=%s", e, connection_id, exc_info=True)

        receiver = asyncio.create_task(receive_loop())
        sender = asyncio.create_task(engine.broadcaster.pump(connection_id, websocket))
        try:
            done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done and receiver not in done:
                reason = "server close"
        finally:
            # 端点自身被取消时也要收回两个子任务
            receiver.cancel()
            sender.cancel()
            try:
                await asyncio.shield(engine.disconnect(connection_id, reason=reason))
            finally:
                engine.broadcaster.detach(connection_id)
            await asyncio.gather(receiver, sender, return_exceptions=True)
            logger.info("连接已断开 | connection=%s | reason=%s | 在线: %d",
                        connection_id, reason, engine.broadcaster.online_count)

    finally:
        request_id_ctx_var.reset(token)
