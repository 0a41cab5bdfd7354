"""
app.db
~~~~~~

可选的 MongoDB 连接，仅供视频目录使用。

房间状态和聊天记录始终只在内存中；只有配置了 ``MONGO_URI`` 时，
lifespan 才会调用 ``connect_mongo()`` 拿到数据库句柄并交给
``VideoCatalogRepository``，关闭时调用 ``close_mongo()``。
"""
from __future__ import annotations

from urllib.parse import urlsplit

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.logging import get_logger

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def redact_uri(uri: str) -> str:
    """日志里隐藏连接串中的密码。"""
    password = urlsplit(uri).password
    return uri.replace(f":{password}@", ":***@", 1) if password else uri


async def connect_mongo(uri: str | None, db_name: str) -> AsyncIOMotorDatabase | None:
    """建立连接并 ping 一次目标库。

    Args:
        uri: MongoDB 连接串，为空时不连接。
        db_name: 数据库名。

    Returns:
        数据库句柄；未配置 ``uri`` 时返回 ``None``。

    Raises:
        Exception: ping 失败时原样抛出，应用启动随之失败。
    """
    global _client
    if not uri:
        logger.info("未配置 MONGO_URI，视频目录不持久化")
        return None

    client = AsyncIOMotorClient(uri)
    database = client[db_name]
    try:
        await database.command("ping")
    except Exception:
        logger.error("MongoDB 连接失败 | uri=%s", redact_uri(uri), exc_info=True)
        client.close()
        raise

    _client = client
    logger.info("MongoDB 已连接 | uri=%s | db=%s", redact_uri(uri), db_name)
    return database


async def close_mongo() -> None:
    """关闭连接；未连接时什么也不做。"""
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")
