"""
app.db.video_catalog
~~~~~~~~~~~~~~~~~~~~

视频目录仓库 —— 封装 MongoDB ``videos`` 集合，记录上传过的视频。

目录只是上传记录的持久化清单；进程重启后房间的播放列表不会从这里恢复。
每个视频一个文档，按 ``uploadedAt`` 排序，集合在首次操作时建立索引。
"""
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.schemas.watch_party import VideoDescriptor

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "videos"


class VideoCatalogRepository:
    """视频目录持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index("id", name="idx_video_id", unique=True)
        await self._collection.create_index("uploadedAt", name="idx_uploaded_at")
        self._indexes_created = True
        logger.debug("videos 索引已就绪")

    async def append(self, descriptor: VideoDescriptor) -> None:
        """追加一条视频记录。"""
        await self._ensure_indexes()
        doc = descriptor.model_dump(by_alias=True)
        await self._collection.insert_one(doc)

    async def remove(self, video_id: str) -> bool:
        """删除一条视频记录，返回是否确有删除。"""
        await self._ensure_indexes()
        result = await self._collection.delete_one({"id": video_id})
        return result.deleted_count > 0

    async def list_videos(self, limit: int = 500) -> list[VideoDescriptor]:
        """按上传时间正序列出视频。

        Args:
            limit: 最大返回条数。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({}, {"_id": 0})
            .sort("uploadedAt", 1)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [VideoDescriptor.model_validate(doc) for doc in docs]
