"""
app.services.sync_engine
~~~~~~~~~~~~~~~~~~~~~~~~

同步协议引擎 —— 把入站命令绑定到房间状态、聊天记录和出站扇出。

每条命令都被包装成 ``CommandEnvelope``（携带发起者的 ``Connection``），
引擎先按 ``COMMAND_CAPABILITIES`` 统一校验权限，再在同一把
``asyncio.Lock`` 内完成「读取 → 修改 → 扇出」。扇出只是往各连接的
出站队列 ``put_nowait``，不会阻塞后续命令。

被拒绝的命令不会产生任何可见的房间变化，错误只发给发起者本人
（``EmptyMessage`` / ``EmptyPlaylist`` 静默丢弃）。
"""
from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from fastapi import status
from pydantic import BaseModel, ValidationError

from app.core.exceptions import (
    CapacityExceeded,
    InvalidArgument,
    NotFound,
    RateLimited,
    Unauthorized,
    WatchPartyError,
)
from app.core.logging import get_logger
from app.core.rate_limit import ChatRateLimiter
from app.core.settings import Settings
from app.schemas.watch_party import (
    ChatMessageRequest,
    IdentifyRequest,
    InboundFrame,
    ReorderRequest,
    Role,
    RoomStateSnapshot,
    RoomStatsData,
    ServerEvent,
    StateOverviewData,
    SyncResponseData,
    VideoDescriptor,
)
from app.services.chat_log import ChatLog
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.room_broadcaster import RoomBroadcaster
from app.services.room_state import Direction, RoomStateStore

logger = get_logger(__name__)

IDENTIFY_EVENT: str = "identify"
KICK_REASON: str = "Removed by admin"

ModelT = TypeVar("ModelT", bound=BaseModel)


class Command(str, Enum):
    """身份识别之后可以执行的命令。"""

    PLAY = "playVideo"
    PAUSE = "pauseVideo"
    SEEK = "seekVideo"
    NEXT = "nextVideo"
    PREVIOUS = "previousVideo"
    SELECT_VIDEO = "selectVideo"
    TOGGLE_SUBTITLES = "toggleSubtitles"
    UPLOAD_VIDEO = "uploadVideo"
    SET_SUBTITLE_FILE = "setSubtitleFile"
    DELETE_VIDEO = "deleteVideo"
    REORDER_PLAYLIST = "reorderPlaylist"
    CLEAR_PLAYLIST = "clearPlaylist"
    CHAT_MESSAGE = "chatMessage"
    SYNC_REQUEST = "syncRequest"
    KICK_USER = "kickUser"
    REQUEST_USER_LIST = "requestUserList"
    REQUEST_STATS = "requestStats"


class Capability(str, Enum):
    """执行命令所需的角色。"""

    ADMIN = "admin"
    VIEWER = "viewer"
    ANY = "any"


COMMAND_CAPABILITIES: dict[Command, Capability] = {
    Command.PLAY: Capability.ADMIN,
    Command.PAUSE: Capability.ADMIN,
    Command.SEEK: Capability.ADMIN,
    Command.NEXT: Capability.ADMIN,
    Command.PREVIOUS: Capability.ADMIN,
    Command.SELECT_VIDEO: Capability.ADMIN,
    Command.TOGGLE_SUBTITLES: Capability.ADMIN,
    Command.UPLOAD_VIDEO: Capability.ADMIN,
    Command.SET_SUBTITLE_FILE: Capability.ADMIN,
    Command.DELETE_VIDEO: Capability.ADMIN,
    Command.REORDER_PLAYLIST: Capability.ADMIN,
    Command.CLEAR_PLAYLIST: Capability.ADMIN,
    Command.CHAT_MESSAGE: Capability.ANY,
    Command.SYNC_REQUEST: Capability.VIEWER,
    Command.KICK_USER: Capability.ADMIN,
    Command.REQUEST_USER_LIST: Capability.ADMIN,
    Command.REQUEST_STATS: Capability.ADMIN,
}

# 携带文件的命令只能经由 HTTP 上传接口触发
HTTP_ONLY_COMMANDS: frozenset[Command] = frozenset({Command.UPLOAD_VIDEO, Command.SET_SUBTITLE_FILE})


@dataclass(frozen=True)
class CommandEnvelope:
    """一条待执行的命令及其发起者。"""

    issuer: Connection
    command: Command
    payload: Any = None


def has_capability(connection: Connection, capability: Capability) -> bool:
    if capability is Capability.ANY:
        return True
    return connection.role.value == capability.value


def _payload_value(payload: Any, key: str) -> Any:
    """载荷既可以是裸值，也可以是 ``{key: value}``。"""
    if isinstance(payload, dict):
        return payload.get(key)
    return payload


def _require_id(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidArgument(f"缺少{label}")
    return value


def _validate(model: type[ModelT], payload: Any) -> ModelT:
    try:
        return model.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        raise InvalidArgument(f"载荷格式错误: {e.error_count()} 处校验失败") from e


class SyncEngine:
    """单房间的同步协议引擎。

    Attributes:
        broadcaster: 出站队列集合，由 WebSocket 端点负责接入 / 移除连接。
        kick_grace_seconds: 踢出通知到强制断开之间的宽限时间。
        admin_token: 管理员口令，为空时信任客户端声明的角色。
        started_at: 引擎创建时间（Unix 秒）。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        state: RoomStateStore,
        chat_log: ChatLog,
        limiter: ChatRateLimiter,
        broadcaster: RoomBroadcaster,
        kick_grace_seconds: float = 1.0,
        admin_token: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.state = state
        self.chat_log = chat_log
        self.limiter = limiter
        self.broadcaster = broadcaster
        self.kick_grace_seconds = kick_grace_seconds
        self.admin_token = admin_token
        self._clock = clock
        self.started_at: float = clock()
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._handlers: dict[Command, Callable[[Connection, Any], Any]] = {
            Command.PLAY: self._on_play,
            Command.PAUSE: self._on_pause,
            Command.SEEK: self._on_seek,
            Command.NEXT: lambda issuer, _: self._advance(issuer, "next"),
            Command.PREVIOUS: lambda issuer, _: self._advance(issuer, "previous"),
            Command.SELECT_VIDEO: self._on_select_video,
            Command.TOGGLE_SUBTITLES: self._on_toggle_subtitles,
            Command.UPLOAD_VIDEO: self._on_upload_video,
            Command.SET_SUBTITLE_FILE: self._on_set_subtitle_file,
            Command.DELETE_VIDEO: self._on_delete_video,
            Command.REORDER_PLAYLIST: self._on_reorder_playlist,
            Command.CLEAR_PLAYLIST: self._on_clear_playlist,
            Command.CHAT_MESSAGE: self._on_chat_message,
            Command.SYNC_REQUEST: self._on_sync_request,
            Command.KICK_USER: self._on_kick_user,
            Command.REQUEST_USER_LIST: self._on_request_user_list,
            Command.REQUEST_STATS: self._on_request_stats,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        broadcaster: RoomBroadcaster | None = None,
    ) -> SyncEngine:
        """按配置组装引擎及其各个存储。"""
        return cls(
            registry=ConnectionRegistry(max_viewers=settings.MAX_VIEWERS),
            state=RoomStateStore(),
            chat_log=ChatLog(
                capacity=settings.CHAT_HISTORY_LIMIT,
                max_length=settings.CHAT_MESSAGE_MAX_LENGTH,
            ),
            limiter=ChatRateLimiter(
                window_seconds=settings.CHAT_RATE_LIMIT_WINDOW,
                max_messages=settings.CHAT_RATE_LIMIT_MAX,
                idle_seconds=settings.CHAT_RATE_LIMIT_IDLE,
            ),
            broadcaster=broadcaster or RoomBroadcaster(queue_size=settings.WS_SEND_QUEUE_SIZE),
            kick_grace_seconds=settings.KICK_GRACE_SECONDS,
            admin_token=settings.ADMIN_TOKEN,
        )

    # ── 入口 ──────────────────────────────────────────────────────────

    async def dispatch(self, connection_id: str, raw: str | bytes) -> None:
        """处理 WebSocket 收到的一帧原始消息（文本帧或二进制帧）。

        任何失败都只影响这一条命令：业务异常转成发给发起者的 ``error`` 帧，
        未预期的异常记录日志后同样只回复发起者。
        """
        event = "?"
        try:
            try:
                frame = InboundFrame.model_validate_json(raw)
            except ValidationError as e:
                raise InvalidArgument("无法解析的消息") from e
            event = frame.event

            if event == IDENTIFY_EVENT:
                await self.identify(connection_id, frame.data)
                return

            try:
                command = Command(event)
            except ValueError:
                raise InvalidArgument(f"未知的事件: {event}") from None
            if command in HTTP_ONLY_COMMANDS:
                raise InvalidArgument(f"{event} 只能通过 HTTP 接口调用")

            issuer = self.registry.get(connection_id)
            if issuer is None:
                raise Unauthorized("请先完成身份识别")
            await self.execute(CommandEnvelope(issuer=issuer, command=command, payload=frame.data))

        except CapacityExceeded as e:
            self.broadcaster.send_to(
                connection_id, ServerEvent.VIEWER_LIMIT_REACHED, {"maxViewers": e.max_viewers},
            )
            self.broadcaster.close(
                connection_id, code=status.WS_1013_TRY_AGAIN_LATER, reason="viewer limit reached",
            )
        except WatchPartyError as e:
            logger.debug("命令被拒绝 | connection=%s | event=%s | %s", connection_id, event, e.code)
            if e.notify_issuer:
                self.broadcaster.send_to(connection_id, ServerEvent.ERROR, e.to_payload())
        except Exception as e:
            logger.error(
                "命令处理异常 | connection=%s | event=%s | %s", connection_id, event, e, exc_info=True,
            )
            self.broadcaster.send_to(
                connection_id, ServerEvent.ERROR, {"code": "internal_error", "message": "服务器内部错误"},
            )

    async def execute(self, envelope: CommandEnvelope) -> Any:
        """校验权限后执行命令，返回处理器的结果。

        Raises:
            Unauthorized: 发起者不具备该命令要求的角色。
            WatchPartyError: 处理器拒绝了命令（此时房间状态未被修改）。
        """
        required = COMMAND_CAPABILITIES[envelope.command]
        if not has_capability(envelope.issuer, required):
            logger.info(
                "拒绝越权命令 | connection=%s | role=%s | command=%s",
                envelope.issuer.id, envelope.issuer.role.value, envelope.command.value,
            )
            raise Unauthorized()

        handler = self._handlers[envelope.command]
        async with self._lock:
            return handler(envelope.issuer, envelope.payload)

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def identify(self, connection_id: str, payload: Any) -> Connection:
        """完成身份识别：登记连接、下发快照、通知房间。

        Raises:
            InvalidArgument: 重复识别或载荷不合法。
            Unauthorized: 配置了管理员口令但口令不匹配。
            CapacityExceeded: 观众已满。
        """
        request = _validate(IdentifyRequest, payload)

        async with self._lock:
            if connection_id in self.registry:
                raise InvalidArgument("该连接已完成身份识别")
            if request.role is Role.ADMIN and not self.check_admin_token(request.token):
                raise Unauthorized("管理员口令错误")

            connection = self.registry.admit(connection_id, request.role, request.name)

            # 先给新连接完整快照，随后的广播（含它自己的加入通知）都排在快照之后
            self.broadcaster.send_to(connection_id, ServerEvent.IDENTIFIED, {
                "isAdmin": connection.is_admin,
                "connectionId": connection.id,
                "name": connection.display_name,
            })
            self.broadcaster.send_to(connection_id, ServerEvent.ROOM_STATE, self._room_state_payload())

            if connection.is_admin:
                self._broadcast(ServerEvent.ADMIN_ONLINE, True)
            else:
                self._broadcast(ServerEvent.USER_JOIN, {
                    "id": connection.id,
                    "name": connection.display_name,
                    "viewerCount": self.registry.count(Role.VIEWER),
                })
            self._publish_roster()
        return connection

    async def disconnect(self, connection_id: str, reason: str = "transport close") -> Connection | None:
        """连接断开：移出注册表、释放限流记录、通知房间。可重复调用。"""
        async with self._lock:
            self.limiter.remove_client(connection_id)
            connection = self.registry.remove(connection_id)
            if connection is None:
                return None

            if connection.is_admin:
                self._broadcast(ServerEvent.ADMIN_ONLINE, self.registry.count(Role.ADMIN) > 0)
            else:
                self._broadcast(ServerEvent.USER_LEAVE, {
                    "id": connection.id,
                    "name": connection.display_name,
                    "viewerCount": self.registry.count(Role.VIEWER),
                    "reason": reason,
                })
                self._publish_roster()

        logger.info(
            "连接已离开 | connection=%s | role=%s | reason=%s",
            connection.id, connection.role.value, reason,
        )
        return connection

    def check_admin_token(self, token: str | None) -> bool:
        """未配置口令时总是通过。"""
        if not self.admin_token:
            return True
        return token is not None and secrets.compare_digest(token, self.admin_token)

    async def shutdown(self) -> None:
        """通知所有连接服务即将关闭，并取消后台任务。"""
        self.broadcaster.broadcast(ServerEvent.SERVER_SHUTDOWN, {
            "message": "服务器正在重启",
            "timestamp": self._now_ms(),
        })
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # ── 只读观测 ──────────────────────────────────────────────────────

    def snapshot(self) -> RoomStateSnapshot:
        return self.state.snapshot()

    def overview(self) -> StateOverviewData:
        return StateOverviewData(
            **self.state.snapshot().model_dump(),
            connected_viewers=self.registry.count(Role.VIEWER),
            server_uptime=self.uptime,
        )

    def stats(self) -> RoomStatsData:
        return RoomStatsData(
            uptime=self.uptime,
            connected_users=len(self.registry),
            viewer_count=self.registry.count(Role.VIEWER),
            admin_count=self.registry.count(Role.ADMIN),
            playlist_length=len(self.state.playlist),
            chat_history_length=len(self.chat_log),
        )

    @property
    def uptime(self) -> float:
        return self._clock() - self.started_at

    # ── 扇出工具 ──────────────────────────────────────────────────────

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _broadcast(self, event: ServerEvent, data: Any = None) -> None:
        """发给所有已完成身份识别的连接。"""
        self.broadcaster.broadcast(event, data, recipients=self.registry.ids())

    def _publish_roster(self) -> None:
        """把观众列表发给所有管理员。"""
        roster = [info.to_wire() for info in self.registry.viewer_roster()]
        self.broadcaster.broadcast(ServerEvent.USER_LIST_UPDATE, roster, recipients=self.registry.admin_ids())

    def _publish_playlist(self) -> None:
        self._broadcast(ServerEvent.PLAYLIST_UPDATE, [v.to_wire() for v in self.state.playlist])

    def _publish_video_change(self) -> None:
        current = self.state.current_video
        self._broadcast(ServerEvent.VIDEO_CHANGE, current.to_wire() if current else None)

    def _publish_playback_state(self) -> None:
        self._broadcast(ServerEvent.PLAYBACK_STATE, {
            "isPlaying": self.state.is_playing,
            "currentTime": self.state.current_time,
        })

    def _room_state_payload(self) -> dict[str, Any]:
        payload = self.state.snapshot().to_wire()
        payload["chatHistory"] = [m.to_wire() for m in self.chat_log.history()]
        payload["adminOnline"] = self.registry.count(Role.ADMIN) > 0
        payload["viewerCount"] = self.registry.count(Role.VIEWER)
        return payload

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── 播放控制 ──────────────────────────────────────────────────────

    def _on_play(self, issuer: Connection, _: Any) -> None:
        self.state.set_playing(issuer, True)
        self._broadcast(ServerEvent.PLAY_VIDEO, {
            "currentTime": self.state.current_time,
            "timestamp": self._now_ms(),
        })

    def _on_pause(self, issuer: Connection, _: Any) -> None:
        self.state.set_playing(issuer, False)
        self._broadcast(ServerEvent.PAUSE_VIDEO, {"timestamp": self._now_ms()})

    def _on_seek(self, issuer: Connection, payload: Any) -> None:
        self.state.seek(issuer, _payload_value(payload, "time"))
        self._broadcast(ServerEvent.SEEK_VIDEO, {
            "time": self.state.current_time,
            "timestamp": self._now_ms(),
        })

    def _advance(self, issuer: Connection, direction: Direction) -> VideoDescriptor:
        video = self.state.advance(issuer, direction)
        self._announce_video_start()
        return video

    def _on_select_video(self, issuer: Connection, payload: Any) -> VideoDescriptor:
        video_id = _require_id(_payload_value(payload, "videoId"), "视频 ID")
        video = self.state.select_video(issuer, video_id)
        self._announce_video_start()
        return video

    def _announce_video_start(self) -> None:
        self._publish_video_change()
        self._broadcast(ServerEvent.PLAY_VIDEO, {"currentTime": 0, "timestamp": self._now_ms()})

    def _on_toggle_subtitles(self, issuer: Connection, payload: Any) -> None:
        self.state.toggle_subtitles(issuer, _payload_value(payload, "enabled"))
        self._broadcast(ServerEvent.SUBTITLES_TOGGLE, {
            "enabled": self.state.subtitle_enabled,
            "timestamp": self._now_ms(),
        })

    # ── 播放列表 ──────────────────────────────────────────────────────

    def _on_upload_video(self, issuer: Connection, payload: Any) -> VideoDescriptor:
        descriptor = payload if isinstance(payload, VideoDescriptor) else _validate(VideoDescriptor, payload)
        became_current = self.state.add_to_playlist(issuer, descriptor)
        self._publish_playlist()
        if became_current:
            self._publish_video_change()
        logger.info("视频已加入播放列表 | id=%s | name=%s", descriptor.id, descriptor.name)
        return descriptor

    def _on_set_subtitle_file(self, issuer: Connection, payload: Any) -> str | None:
        locator = payload if payload is None else _require_id(payload, "字幕地址")
        self.state.set_subtitle_file(issuer, locator)
        self._broadcast(ServerEvent.SUBTITLE_UPDATE, {"subtitleFile": locator})
        return locator

    def _on_delete_video(self, issuer: Connection, payload: Any) -> VideoDescriptor:
        video_id = _require_id(_payload_value(payload, "videoId"), "视频 ID")
        removed, current_changed = self.state.remove_from_playlist(issuer, video_id)
        self._publish_playlist()
        if current_changed:
            self._publish_video_change()
            self._publish_playback_state()
        logger.info("视频已移出播放列表 | id=%s", removed.id)
        return removed

    def _on_reorder_playlist(self, issuer: Connection, payload: Any) -> None:
        if isinstance(payload, list):
            payload = {"videoIds": payload}
        request = _validate(ReorderRequest, payload)
        self.state.reorder_playlist(issuer, request.video_ids)
        self._publish_playlist()

    def _on_clear_playlist(self, issuer: Connection, _: Any) -> None:
        had_current = self.state.clear_playlist(issuer)
        if had_current:
            self._publish_video_change()
            self._publish_playback_state()
        self._publish_playlist()

    # ── 聊天与查询 ────────────────────────────────────────────────────

    def _on_chat_message(self, issuer: Connection, payload: Any) -> None:
        if isinstance(payload, str):
            payload = {"message": payload}
        request = _validate(ChatMessageRequest, payload)
        text = self.chat_log.clean(request.message)
        if not self.limiter.is_allowed(issuer.id):
            raise RateLimited()
        message = self.chat_log.append(issuer, text)
        self._broadcast(ServerEvent.CHAT_MESSAGE, message.to_wire())

    def _on_sync_request(self, issuer: Connection, _: Any) -> None:
        response = SyncResponseData(
            current_video=self.state.current_video,
            is_playing=self.state.is_playing,
            current_time=self.state.current_time,
            subtitle_enabled=self.state.subtitle_enabled,
            subtitle_file=self.state.subtitle_file,
            timestamp=self._now_ms(),
        )
        self.broadcaster.send_to(issuer.id, ServerEvent.SYNC_RESPONSE, response.to_wire())

    def _on_kick_user(self, issuer: Connection, payload: Any) -> None:
        target_id = _require_id(_payload_value(payload, "userId"), "用户 ID")
        if target_id == issuer.id:
            raise InvalidArgument("不能踢出自己")
        target = self.registry.get(target_id)
        if target is None:
            raise NotFound(f"用户 {target_id} 不在线")

        self.broadcaster.send_to(target_id, ServerEvent.KICKED, {
            "reason": KICK_REASON,
            "timestamp": self._now_ms(),
        })
        notice = self.chat_log.append_system(f"{target.display_name} 已被管理员移出房间")
        self._broadcast(ServerEvent.CHAT_MESSAGE, notice.to_wire())
        self._spawn(self._force_close(target_id))
        logger.info("踢出用户 | target=%s | by=%s", target_id, issuer.id)

    async def _force_close(self, connection_id: str) -> None:
        await asyncio.sleep(self.kick_grace_seconds)
        self.broadcaster.close(connection_id, code=status.WS_1008_POLICY_VIOLATION, reason="kicked")

    def _on_request_user_list(self, issuer: Connection, _: Any) -> None:
        roster = [info.to_wire() for info in self.registry.viewer_roster()]
        self.broadcaster.send_to(issuer.id, ServerEvent.USER_LIST_UPDATE, roster)

    def _on_request_stats(self, issuer: Connection, _: Any) -> None:
        self.broadcaster.send_to(issuer.id, ServerEvent.SERVER_STATS, self.stats().to_wire())
