"""
app.api.room_endpoints
~~~~~~~~~~~~~~~~~~~~~~

观影房间 REST 接口 —— 状态查询 + 上传 + 播放列表管理。

写操作与 WebSocket 命令走同一个 ``SyncEngine.execute()``，发起者是一个
代表本次 HTTP 请求的管理员连接（见 ``app.api.deps.require_admin``）。

端点:
  - ``GET    /state``               → 房间状态快照
  - ``GET    /stats``               → 运行统计
  - ``GET    /users``               → 观众列表及观看时长（管理员）
  - ``GET    /catalog``             → 视频目录（未启用 MongoDB 时为空）
  - ``POST   /upload/video``        → 上传视频并加入播放列表（管理员）
  - ``POST   /upload/subtitle``     → 上传字幕（管理员）
  - ``DELETE /video/{video_id}``    → 从播放列表移除视频（管理员）
  - ``POST   /playlist/reorder``    → 重排播放列表（管理员）
  - ``DELETE /playlist/clear``      → 清空播放列表（管理员）
"""
from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from app.api.deps import get_catalog, get_storage, get_sync_engine, require_admin
from app.core.logging import get_logger
from app.core.rate_limit import limiter
from app.db.video_catalog import VideoCatalogRepository
from app.schemas.api_response import ApiResponse
from app.schemas.watch_party import (
    ConnectionInfo,
    ReorderRequest,
    RoomStatsData,
    StateOverviewData,
    VideoDescriptor,
)
from app.services.connection_registry import Connection
from app.services.storage import LocalStorage
from app.services.sync_engine import Command, CommandEnvelope, SyncEngine

logger = get_logger(__name__)

router: APIRouter = APIRouter()


# ── 状态查询 ──────────────────────────────────────────────────────────

@router.get("/state", summary="获取房间状态", response_model=ApiResponse[StateOverviewData])
@limiter.limit("20/second")
async def get_state(request: Request, engine: SyncEngine = Depends(get_sync_engine)):
    """返回房间状态快照以及当前观众数、运行时长。"""
    return ApiResponse.ok(data=engine.overview())


@router.get("/stats", summary="获取运行统计", response_model=ApiResponse[RoomStatsData])
@limiter.limit("10/second")
async def get_stats(request: Request, engine: SyncEngine = Depends(get_sync_engine)):
    return ApiResponse.ok(data=engine.stats())


@router.get("/users", summary="获取观众列表", response_model=ApiResponse[list[ConnectionInfo]])
@limiter.limit("10/second")
async def list_users(
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
    admin: Connection = Depends(require_admin),
):
    """返回当前在线观众及其观看时长（毫秒）。"""
    return ApiResponse.ok(data=engine.registry.viewer_roster())


@router.get("/catalog", summary="获取视频目录", response_model=ApiResponse[list[VideoDescriptor]])
@limiter.limit("10/second")
async def list_catalog(
    request: Request,
    catalog: VideoCatalogRepository | None = Depends(get_catalog),
):
    """返回 MongoDB 中记录的全部上传视频；未启用时返回空列表。"""
    if catalog is None:
        return ApiResponse.ok(data=[], msg="catalog disabled")
    return ApiResponse.ok(data=await catalog.list_videos())


# ── 上传 ──────────────────────────────────────────────────────────────

@router.post("/upload/video", summary="上传视频", response_model=ApiResponse[VideoDescriptor])
@limiter.limit("2/second")
async def upload_video(
    request: Request,
    video: UploadFile = File(..., description="视频文件"),
    engine: SyncEngine = Depends(get_sync_engine),
    storage: LocalStorage = Depends(get_storage),
    catalog: VideoCatalogRepository | None = Depends(get_catalog),
    admin: Connection = Depends(require_admin),
):
    """分块保存视频文件并追加到播放列表，随后广播 ``playlistUpdate``。

    累计大小超过上限时立即停止写盘并返回 413；播放列表拒绝该视频时删除已保存的文件。
    """
    descriptor = await storage.store_video(video)
    try:
        await engine.execute(CommandEnvelope(admin, Command.UPLOAD_VIDEO, descriptor))
    except Exception:
        await run_in_threadpool(storage.discard, descriptor)
        raise

    if catalog is not None:
        try:
            await catalog.append(descriptor)
        except Exception as e:
            # 目录只是清单，写入失败不影响播放
            logger.warning("视频目录写入失败: %s", e, exc_info=True)

    return ApiResponse.ok(data=descriptor)


@router.post("/upload/subtitle", summary="上传字幕", response_model=ApiResponse[dict])
@limiter.limit("2/second")
async def upload_subtitle(
    request: Request,
    subtitle: UploadFile = File(..., description="WebVTT 字幕文件"),
    engine: SyncEngine = Depends(get_sync_engine),
    storage: LocalStorage = Depends(get_storage),
    admin: Connection = Depends(require_admin),
):
    """保存字幕文件并广播 ``subtitleUpdate``。"""
    locator = await storage.store_subtitle(subtitle)
    await engine.execute(CommandEnvelope(admin, Command.SET_SUBTITLE_FILE, locator))
    return ApiResponse.ok(data={"subtitle": locator})


# ── 播放列表管理 ──────────────────────────────────────────────────────

@router.delete("/video/{video_id}", summary="移除视频", response_model=ApiResponse[VideoDescriptor])
@limiter.limit("5/second")
async def delete_video(
    request: Request,
    video_id: str,
    engine: SyncEngine = Depends(get_sync_engine),
    catalog: VideoCatalogRepository | None = Depends(get_catalog),
    admin: Connection = Depends(require_admin),
):
    """从播放列表移除视频；若它正在播放，当前视频改为新的第一个条目。

    存储的文件保留，由外部的定期清理任务处理。
    """
    removed = await engine.execute(CommandEnvelope(admin, Command.DELETE_VIDEO, video_id))
    if catalog is not None:
        try:
            await catalog.remove(video_id)
        except Exception as e:
            logger.warning("视频目录删除失败: %s", e, exc_info=True)
    return ApiResponse.ok(data=removed)


@router.post("/playlist/reorder", summary="重排播放列表", response_model=ApiResponse[list[VideoDescriptor]])
@limiter.limit("5/second")
async def reorder_playlist(
    request: Request,
    reorder_request: ReorderRequest,
    engine: SyncEngine = Depends(get_sync_engine),
    admin: Connection = Depends(require_admin),
):
    """按给定 ID 顺序重排；必须是现有条目的一个排列。"""
    await engine.execute(
        CommandEnvelope(admin, Command.REORDER_PLAYLIST, {"videoIds": reorder_request.video_ids}),
    )
    return ApiResponse.ok(data=list(engine.state.playlist))


@router.delete("/playlist/clear", summary="清空播放列表", response_model=ApiResponse[None])
@limiter.limit("5/second")
async def clear_playlist(
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
    admin: Connection = Depends(require_admin),
):
    await engine.execute(CommandEnvelope(admin, Command.CLEAR_PLAYLIST))
    return ApiResponse.ok(data=None)
