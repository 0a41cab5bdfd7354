"""
app.schemas.watch_party
~~~~~~~~~~~~~~~~~~~~~~~

观影房间相关的 Pydantic 模型：房间状态、播放列表条目、聊天消息、
连接信息，以及 WebSocket 的入站帧和事件名。

所有模型在线上统一使用 camelCase 字段名（``model_dump(by_alias=True)``）。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MessageKind = Literal["user", "system"]

# 超长昵称截断而不是拒绝
NAME_MAX_LENGTH = 64


class Role(str, Enum):
    """连接角色。"""

    ADMIN = "admin"
    VIEWER = "viewer"


class ServerEvent(str, Enum):
    """服务端下发的事件名。"""

    IDENTIFIED = "identified"
    ROOM_STATE = "roomState"
    ADMIN_ONLINE = "adminOnline"
    USER_JOIN = "userJoin"
    USER_LEAVE = "userLeave"
    USER_LIST_UPDATE = "userListUpdate"
    VIEWER_LIMIT_REACHED = "viewerLimitReached"
    PLAY_VIDEO = "playVideo"
    PAUSE_VIDEO = "pauseVideo"
    SEEK_VIDEO = "seekVideo"
    VIDEO_CHANGE = "videoChange"
    PLAYBACK_STATE = "playbackState"
    PLAYLIST_UPDATE = "playlistUpdate"
    SUBTITLES_TOGGLE = "subtitlesToggle"
    SUBTITLE_UPDATE = "subtitleUpdate"
    CHAT_MESSAGE = "chatMessage"
    SYNC_RESPONSE = "syncResponse"
    KICKED = "kicked"
    SERVER_STATS = "serverStats"
    SERVER_SHUTDOWN = "serverShutdown"
    ERROR = "error"


class CamelModel(BaseModel):
    """线上格式为 camelCase 的模型基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """转换为可直接 JSON 序列化的字典。"""
        return self.model_dump(mode="json", by_alias=True)


# ── 房间状态 ──────────────────────────────────────────────────────────

class VideoDescriptor(CamelModel):
    """播放列表中的一个视频。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., description="视频唯一标识")
    name: str = Field(..., description="显示名称（原始文件名）")
    locator: str = Field(..., description="客户端可访问的地址")
    filename: str = Field(..., description="存储层文件名")
    size: int = Field(default=0, ge=0, description="文件大小（字节）")
    mime_type: str | None = Field(default=None, description="MIME 类型")
    uploaded_at: datetime = Field(..., description="上传时间")


class RoomStateSnapshot(CamelModel):
    """房间状态的只读快照，用于新连接对齐基线。"""

    current_video: VideoDescriptor | None = Field(default=None, description="当前视频")
    is_playing: bool = Field(default=False, description="是否正在播放")
    current_time: float = Field(default=0.0, ge=0, description="最后已知的播放进度（秒）")
    playlist: list[VideoDescriptor] = Field(default_factory=list, description="播放列表")
    subtitle_enabled: bool = Field(default=False, description="是否显示字幕")
    subtitle_file: str | None = Field(default=None, description="字幕文件地址")
    stream_start_time: datetime | None = Field(default=None, description="首个视频加入的时间")


class SyncResponseData(CamelModel):
    """``syncRequest`` 的应答。"""

    current_video: VideoDescriptor | None
    is_playing: bool
    current_time: float
    subtitle_enabled: bool
    subtitle_file: str | None
    timestamp: int = Field(..., description="服务端时间戳（毫秒）")


# ── 聊天 ──────────────────────────────────────────────────────────────

class ChatMessage(CamelModel):
    """一条聊天或系统消息，创建后不可变。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    author_id: str | None = Field(default=None, description="发送者连接 ID，系统消息为空")
    author_name: str
    text: str
    created_at: datetime
    is_admin: bool = False
    kind: MessageKind = "user"


# ── 连接 ──────────────────────────────────────────────────────────────

class ConnectionInfo(CamelModel):
    """下发给管理员的连接信息（含观看时长）。"""

    id: str
    name: str
    role: Role
    joined_at: datetime
    watch_time: int = Field(..., ge=0, description="观看时长（毫秒）")


# ── 统计 ──────────────────────────────────────────────────────────────

class RoomStatsData(CamelModel):
    """运行统计（只读观测，不作为权威状态）。"""

    uptime: float = Field(..., description="服务运行时长（秒）")
    connected_users: int
    viewer_count: int
    admin_count: int
    playlist_length: int
    chat_history_length: int


class StateOverviewData(RoomStateSnapshot):
    """``GET /api/state`` 的响应数据。"""

    connected_viewers: int
    server_uptime: float


# ── 入站帧 ────────────────────────────────────────────────────────────

class InboundFrame(BaseModel):
    """客户端发来的一帧：``{"event": ..., "data": ...}``。"""

    event: str = Field(..., min_length=1, max_length=64)
    data: Any = None


class IdentifyRequest(CamelModel):
    """``identify`` 事件的载荷。"""

    name: str | None = None
    role: Role = Field(default=Role.VIEWER, alias="type")
    token: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip()[:NAME_MAX_LENGTH].strip() or None


class ChatMessageRequest(CamelModel):
    """``chatMessage`` 事件的载荷。"""

    message: str


class ReorderRequest(CamelModel):
    """播放列表重排请求（完整的新顺序）。"""

    video_ids: list[str] = Field(..., description="按新顺序排列的视频 ID")
