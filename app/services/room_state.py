"""
app.services.room_state
~~~~~~~~~~~~~~~~~~~~~~~

房间状态存储 —— 进程内唯一的播放状态：当前视频、播放/暂停、进度、
播放列表和字幕设置。

所有写操作都要求传入发起命令的 ``Connection``，非管理员一律抛出
``Unauthorized`` 且不做任何修改。当前视频只保存 ID，始终指向播放列表
中存在的条目：

- 播放列表为空时，当前视频为空且不在播放；
- 删除当前视频时，改指向新的第一个条目（或置空）。
"""
from __future__ import annotations

import math
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Literal

from app.core.exceptions import EmptyPlaylist, InvalidArgument, NotFound, Unauthorized
from app.core.logging import get_logger
from app.schemas.watch_party import RoomStateSnapshot, VideoDescriptor
from app.services.connection_registry import Connection

logger = get_logger(__name__)

Direction = Literal["next", "previous"]


def _require_admin(issuer: Connection) -> None:
    if not issuer.is_admin:
        raise Unauthorized("只有管理员可以控制播放")


class RoomStateStore:
    """单房间的权威播放状态。"""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._playlist: list[VideoDescriptor] = []
        self._current_id: str | None = None
        self.is_playing: bool = False
        self.current_time: float = 0.0
        self.subtitle_enabled: bool = False
        self.subtitle_file: str | None = None
        self.stream_start_time: datetime | None = None

    # ── 只读访问 ──────────────────────────────────────────────────────

    @property
    def playlist(self) -> tuple[VideoDescriptor, ...]:
        return tuple(self._playlist)

    @property
    def current_video(self) -> VideoDescriptor | None:
        if self._current_id is None:
            return None
        return next((v for v in self._playlist if v.id == self._current_id), None)

    def _index_of(self, video_id: str | None) -> int:
        for index, video in enumerate(self._playlist):
            if video.id == video_id:
                return index
        return -1

    def snapshot(self) -> RoomStateSnapshot:
        """返回与内部状态脱钩的快照。"""
        return RoomStateSnapshot(
            current_video=self.current_video,
            is_playing=self.is_playing,
            current_time=self.current_time,
            playlist=list(self._playlist),
            subtitle_enabled=self.subtitle_enabled,
            subtitle_file=self.subtitle_file,
            stream_start_time=self.stream_start_time,
        )

    # ── 播放控制 ──────────────────────────────────────────────────────

    def set_playing(self, issuer: Connection, playing: bool) -> None:
        _require_admin(issuer)
        self.is_playing = playing

    def seek(self, issuer: Connection, position: float) -> None:
        _require_admin(issuer)
        if (
            isinstance(position, bool)
            or not isinstance(position, (int, float))
            or not math.isfinite(position)
            or position < 0
        ):
            raise InvalidArgument("无效的进度")
        self.current_time = float(position)

    def advance(self, issuer: Connection, direction: Direction) -> VideoDescriptor:
        """切换到上一个 / 下一个视频（首尾循环）。

        Raises:
            EmptyPlaylist: 播放列表为空。
        """
        _require_admin(issuer)
        if not self._playlist:
            raise EmptyPlaylist()
        if direction not in ("next", "previous"):
            raise InvalidArgument(f"未知的切换方向: {direction}")

        size = len(self._playlist)
        index = self._index_of(self._current_id)
        if direction == "next":
            target = (index + 1) % size
        else:
            target = (index - 1) % size if index >= 0 else size - 1

        return self._start(self._playlist[target])

    def select_video(self, issuer: Connection, video_id: str) -> VideoDescriptor:
        _require_admin(issuer)
        index = self._index_of(video_id)
        if index < 0:
            raise NotFound(f"播放列表中没有视频 {video_id}")
        return self._start(self._playlist[index])

    def _start(self, video: VideoDescriptor) -> VideoDescriptor:
        self._current_id = video.id
        self.current_time = 0.0
        self.is_playing = True
        return video

    def _reset_playback(self) -> None:
        self.current_time = 0.0
        self.is_playing = False

    # ── 播放列表 ──────────────────────────────────────────────────────

    def add_to_playlist(self, issuer: Connection, descriptor: VideoDescriptor) -> bool:
        """追加视频。

        Returns:
            该视频是否成为了当前视频（列表原本没有当前视频时）。
        """
        _require_admin(issuer)
        if self._index_of(descriptor.id) >= 0:
            raise InvalidArgument(f"视频 {descriptor.id} 已在播放列表中")

        self._playlist.append(descriptor)
        if self._current_id is not None:
            return False

        self._current_id = descriptor.id
        if self.stream_start_time is None:
            self.stream_start_time = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return True

    def remove_from_playlist(self, issuer: Connection, video_id: str) -> tuple[VideoDescriptor, bool]:
        """删除视频。

        Returns:
            ``(被删除的视频, 当前视频是否因此改变)``。
        """
        _require_admin(issuer)
        index = self._index_of(video_id)
        if index < 0:
            raise NotFound(f"播放列表中没有视频 {video_id}")

        removed = self._playlist.pop(index)
        if removed.id != self._current_id:
            return removed, False

        self._current_id = self._playlist[0].id if self._playlist else None
        self._reset_playback()
        return removed, True

    def reorder_playlist(self, issuer: Connection, video_ids: Sequence[str]) -> None:
        """按给定 ID 顺序整体替换播放列表。

        新顺序必须恰好是现有条目的一个排列（不能丢失、重复或引入未知 ID）。
        """
        _require_admin(issuer)
        if len(video_ids) != len(self._playlist) or set(video_ids) != {v.id for v in self._playlist}:
            raise InvalidArgument("新顺序必须包含且仅包含当前播放列表中的全部视频")

        by_id = {v.id: v for v in self._playlist}
        self._playlist = [by_id[video_id] for video_id in video_ids]

    def clear_playlist(self, issuer: Connection) -> bool:
        """清空播放列表。

        Returns:
            清空前是否有当前视频。
        """
        _require_admin(issuer)
        had_current = self._current_id is not None
        self._playlist = []
        self._current_id = None
        self._reset_playback()
        return had_current

    # ── 字幕 ──────────────────────────────────────────────────────────

    def toggle_subtitles(self, issuer: Connection, enabled: bool) -> None:
        _require_admin(issuer)
        if not isinstance(enabled, bool):
            raise InvalidArgument("字幕开关必须是布尔值")
        self.subtitle_enabled = enabled

    def set_subtitle_file(self, issuer: Connection, locator: str | None) -> None:
        _require_admin(issuer)
        self.subtitle_file = locator
