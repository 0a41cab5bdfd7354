"""
app.main
~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import room_endpoints, watch_ws
from app.core.exceptions import WatchPartyError
from app.core.logging import get_logger, request_id_ctx_var, setup_logging
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.db import close_mongo, connect_mongo
from app.db.video_catalog import VideoCatalogRepository
from app.schemas.api_response import ApiResponse
from app.schemas.watch_party import Role
from app.services.storage import LocalStorage
from app.services.sync_engine import SyncEngine

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    storage = LocalStorage.from_settings(settings)
    storage.ensure_dirs()
    engine = SyncEngine.from_settings(settings)

    database = await connect_mongo(settings.MONGO_URI, settings.MONGO_DB_NAME)
    catalog = VideoCatalogRepository(database) if database is not None else None

    app.state.storage = storage
    app.state.sync_engine = engine
    app.state.catalog = catalog

    sweeper = asyncio.create_task(engine.limiter.sweep_forever(settings.RATE_LIMIT_SWEEP_INTERVAL))
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s | max_viewers=%d",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
        settings.MAX_VIEWERS,
    )
    yield
    # ── 关闭 ──
    await engine.shutdown()
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="多人同步观影后端 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """为每个 HTTP 请求生成追踪标识，写入日志上下文和响应头。"""
    request_id = request.headers.get("X-Request-ID") or f"http-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(room_endpoints.router, prefix="/api", tags=["Room & Playlist"])
app.include_router(watch_ws.router, tags=["WebSocket Sync"])

# 上传的媒体文件
app.mount("/videos", StaticFiles(directory=settings.VIDEOS_DIR, check_dir=False), name="videos")
app.mount("/subtitles", StaticFiles(directory=settings.SUBTITLES_DIR, check_dir=False), name="subtitles")


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(WatchPartyError)
async def watch_party_exception_handler(request: Request, exc: WatchPartyError) -> JSONResponse:
    """业务异常只影响本次请求，按异常类型映射 HTTP 状态码。"""
    logger.info("请求被拒绝: %s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.from_error(exc).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。

    Returns:
        包含服务状态、在线观众数和是否正在放映的 JSON 响应。
    """
    engine: SyncEngine = request.app.state.sync_engine
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "uptime": round(engine.uptime, 3),
            "viewers": engine.registry.count(Role.VIEWER),
            "adminOnline": engine.registry.count(Role.ADMIN) > 0,
            "streamActive": engine.state.current_video is not None,
            "catalog": settings.catalog_enabled,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
