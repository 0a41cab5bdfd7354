"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

观影房间的业务异常体系。

所有异常都只影响发起命令的连接：WebSocket 侧转成发给发起者的 ``error`` 帧，
HTTP 侧由 ``app.main`` 的异常处理器转成 ``ApiResponse.fail()``。
"""
from __future__ import annotations


class WatchPartyError(Exception):
    """业务异常基类。

    Attributes:
        code: 返回给客户端的错误码。
        status_code: HTTP 接口使用的状态码。
        notify_issuer: 是否需要通知命令发起者（否则静默丢弃）。
    """

    code: str = "error"
    status_code: int = 400
    notify_issuer: bool = True
    default_message: str = "请求处理失败"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, str]:
        """转换为 ``error`` 帧的数据部分。"""
        return {"code": self.code, "message": self.message}


class Unauthorized(WatchPartyError):
    """命令需要管理员权限，或连接尚未完成身份识别。"""

    code = "unauthorized"
    status_code = 403
    default_message = "没有权限执行该操作"


class InvalidArgument(WatchPartyError):
    """参数不合法（负的进度、格式错误的载荷等）。"""

    code = "invalid_argument"
    default_message = "参数不合法"


class EmptyMessage(InvalidArgument):
    """去除首尾空白后为空的聊天消息，直接丢弃。"""

    code = "empty_message"
    notify_issuer = False
    default_message = "消息内容为空"


class NotFound(WatchPartyError):
    """引用的视频或连接不存在。"""

    code = "not_found"
    status_code = 404
    default_message = "目标不存在"


class EmptyPlaylist(WatchPartyError):
    """播放列表为空时尝试切换视频。"""

    code = "empty_playlist"
    status_code = 409
    notify_issuer = False
    default_message = "播放列表为空"


class CapacityExceeded(WatchPartyError):
    """观众人数已达上限。"""

    code = "capacity_exceeded"
    status_code = 503
    default_message = "房间观众已满"

    def __init__(self, max_viewers: int, message: str | None = None) -> None:
        self.max_viewers = max_viewers
        super().__init__(message)


class RateLimited(WatchPartyError):
    """聊天发送过于频繁。"""

    code = "rate_limited"
    status_code = 429
    default_message = "您发送消息的速度太快啦，请慢一点~"


class UploadError(WatchPartyError):
    """上传 / 存储失败。"""

    code = "upload_error"
    default_message = "上传失败"

    def __init__(self, message: str | None = None, status_code: int = 400) -> None:
        self.status_code = status_code
        super().__init__(message)
