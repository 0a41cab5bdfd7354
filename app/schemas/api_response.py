"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口统一应答体。

WebSocket 帧不走这里；只有 REST 接口（上传、播放列表管理、状态查询）
通过 ``ApiResponse`` 包装返回值。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from app.core.exceptions import WatchPartyError

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体:

    .. code-block:: json

        {"code": 200, "data": {...}, "msg": "success"}

    Attributes:
        code: 业务状态码，与 HTTP 状态码保持一致。
        data: 实际业务数据；失败时为 ``{"error": <错误码>}`` 或 ``None``。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        """快捷构造成功响应。"""
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        """快捷构造失败响应。"""
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def from_error(cls, exc: WatchPartyError) -> ApiResponse[Any]:
        """把业务异常转换为失败响应。"""
        return cls(code=exc.status_code, data={"error": exc.code}, msg=exc.message)
