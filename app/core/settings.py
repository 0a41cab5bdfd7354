"""
app.core.settings
~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（app/ 的上一级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Watch Party Sync", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 房间容量 ──────────────────────────────────────────────────────
    MAX_VIEWERS: int = Field(default=80, ge=1, description="观众连接上限（管理员不计入）")

    # ── 聊天 ──────────────────────────────────────────────────────────
    CHAT_HISTORY_LIMIT: int = Field(default=100, ge=1, description="内存中保留的聊天消息条数")
    CHAT_MESSAGE_MAX_LENGTH: int = Field(default=500, ge=1, description="单条聊天消息最大长度（超出截断）")
    CHAT_RATE_LIMIT_WINDOW: float = Field(default=10.0, gt=0, description="聊天限流滑动窗口（秒）")
    CHAT_RATE_LIMIT_MAX: int = Field(default=5, ge=1, description="滑动窗口内允许的最大消息数")
    CHAT_RATE_LIMIT_IDLE: float = Field(default=60.0, gt=0, description="限流记录闲置多久后被清理（秒）")
    RATE_LIMIT_SWEEP_INTERVAL: float = Field(default=60.0, gt=0, description="限流记录清理周期（秒）")

    # ── WebSocket ─────────────────────────────────────────────────────
    KICK_GRACE_SECONDS: float = Field(default=1.0, ge=0, description="踢出通知后强制断开前的宽限时间（秒）")
    WS_SEND_QUEUE_SIZE: int = Field(default=256, ge=1, description="每个连接的待发送消息队列上限")

    # ── 上传 / 存储 ────────────────────────────────────────────────────
    VIDEOS_DIR: str = Field(default=str(PROJECT_ROOT / "videos"), description="视频文件存放目录")
    SUBTITLES_DIR: str = Field(default=str(PROJECT_ROOT / "subtitles"), description="字幕文件存放目录")
    MAX_UPLOAD_SIZE: int = Field(default=500 * 1024 * 1024, description="单个上传文件大小上限（字节）")
    ALLOWED_VIDEO_EXTENSIONS: list[str] = Field(
        default=[".mp4", ".webm", ".mkv", ".mov", ".m4v", ".ogg"],
        description="允许上传的视频扩展名",
    )
    ALLOWED_SUBTITLE_EXTENSIONS: list[str] = Field(
        default=[".vtt"],
        description="允许上传的字幕扩展名",
    )

    # ── 鉴权 ──────────────────────────────────────────────────────────
    ADMIN_TOKEN: str | None = Field(
        default=None,
        description="管理员口令；为空时信任客户端声明的角色",
    )

    # ── MongoDB（可选的视频目录）──────────────────────────────────────
    MONGO_URI: str | None = Field(default=None, description="MongoDB 连接串；为空时不启用视频目录")
    MONGO_DB_NAME: str = Field(default="watch_party", description="MongoDB 数据库名")

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def catalog_enabled(self) -> bool:
        """是否启用 MongoDB 视频目录。"""
        return bool(self.MONGO_URI)


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
