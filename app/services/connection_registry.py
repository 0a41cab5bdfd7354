"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 记录所有已完成身份识别的连接及其角色、昵称、加入时间，
并对观众人数做容量限制。

注册表只由 ``SyncEngine`` 修改；增删连接后的通知由引擎决定如何扇出。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.exceptions import CapacityExceeded
from app.core.logging import get_logger
from app.schemas.watch_party import ConnectionInfo, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class Connection:
    """一个在线连接。

    Attributes:
        id: 连接标识（WebSocket 接入时分配，连接存续期间不变）。
        display_name: 显示昵称。
        role: 角色，身份识别后不可变。
        joined_at: 加入时间（Unix 秒）。
    """

    id: str
    display_name: str
    role: Role
    joined_at: float

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def watch_time_ms(self, now: float) -> int:
        """从加入到 ``now`` 的观看时长（毫秒）。"""
        return max(0, int((now - self.joined_at) * 1000))

    def to_info(self, now: float) -> ConnectionInfo:
        return ConnectionInfo(
            id=self.id,
            name=self.display_name,
            role=self.role,
            joined_at=datetime.fromtimestamp(self.joined_at, tz=timezone.utc),
            watch_time=self.watch_time_ms(now),
        )


def default_display_name(connection_id: str, role: Role) -> str:
    """未提供昵称时生成的占位昵称。"""
    if role is Role.ADMIN:
        return "Admin"
    return f"Viewer_{connection_id[:5]}"


class ConnectionRegistry:
    """在线连接注册表。

    按加入顺序保存连接，观众数达到 ``max_viewers`` 后拒绝新的观众；
    管理员不受容量限制。

    Attributes:
        max_viewers: 观众连接上限。
    """

    def __init__(
        self,
        max_viewers: int = 80,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_viewers = max_viewers
        self._clock = clock
        self._connections: dict[str, Connection] = {}

    def admit(
        self,
        connection_id: str,
        role: Role,
        requested_name: str | None = None,
    ) -> Connection:
        """登记一个连接。

        Args:
            connection_id: 传输层分配的连接标识。
            role: 声明的角色。
            requested_name: 客户端请求的昵称，为空时自动生成。

        Returns:
            新登记的 ``Connection``。

        Raises:
            CapacityExceeded: 观众人数已达上限（此时注册表不会有任何变化）。
        """
        if role is Role.VIEWER and self.count(Role.VIEWER) >= self.max_viewers:
            logger.warning(
                "观众已满，拒绝接入 | connection=%s | max=%d",
                connection_id, self.max_viewers,
            )
            raise CapacityExceeded(self.max_viewers)

        connection = Connection(
            id=connection_id,
            display_name=requested_name or default_display_name(connection_id, role),
            role=role,
            joined_at=self._clock(),
        )
        self._connections[connection_id] = connection
        logger.info(
            "连接已登记 | connection=%s | role=%s | name=%s | 观众: %d",
            connection_id, role.value, connection.display_name, self.count(Role.VIEWER),
        )
        return connection

    def remove(self, connection_id: str) -> Connection | None:
        """移除连接；不存在时什么也不做。"""
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def ids(self) -> list[str]:
        """所有已登记连接的 ID（加入顺序）。"""
        return list(self._connections)

    def list_viewers(self) -> list[Connection]:
        return [c for c in self._connections.values() if c.role is Role.VIEWER]

    def list_admins(self) -> list[Connection]:
        return [c for c in self._connections.values() if c.role is Role.ADMIN]

    def admin_ids(self) -> list[str]:
        return [c.id for c in self.list_admins()]

    def count(self, role: Role) -> int:
        return sum(1 for c in self._connections.values() if c.role is role)

    def viewer_roster(self) -> list[ConnectionInfo]:
        """观众列表及其观看时长。"""
        now = self._clock()
        return [c.to_info(now) for c in self.list_viewers()]
