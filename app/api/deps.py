"""
app.api.deps
~~~~~~~~~~~~

路由依赖：从 ``app.state`` 取出 lifespan 中创建的服务实例，以及 HTTP
管理员身份校验。
"""
from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from app.db.video_catalog import VideoCatalogRepository
from app.schemas.watch_party import Role
from app.services.connection_registry import Connection
from app.services.storage import LocalStorage
from app.services.sync_engine import SyncEngine

HTTP_ADMIN_ID: str = "http-admin"


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def get_storage(request: Request) -> LocalStorage:
    return request.app.state.storage


def get_catalog(request: Request) -> VideoCatalogRepository | None:
    return request.app.state.catalog


def require_admin(
    engine: SyncEngine = Depends(get_sync_engine),
    x_admin_token: str | None = Header(default=None),
) -> Connection:
    """校验 ``X-Admin-Token`` 并返回代表本次 HTTP 请求的管理员连接。

    该连接不进入注册表，只用于命令信封的权限校验。
    """
    if not engine.check_admin_token(x_admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="管理员口令错误")
    return Connection(
        id=HTTP_ADMIN_ID,
        display_name="Admin (HTTP)",
        role=Role.ADMIN,
        joined_at=engine.started_at,
    )
