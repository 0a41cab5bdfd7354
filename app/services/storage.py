"""
app.services.storage
~~~~~~~~~~~~~~~~~~~~

本地磁盘存储 —— 分块接收上传的视频 / 字幕，返回可访问的地址。

文件名统一为 ``<毫秒时间戳>-<清洗后的原始文件名>``。累计大小超过上限或写入失败时
立即中止并清理已写出的部分文件，调用方无需关心回滚。
"""
from __future__ import annotations

import os
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from fastapi import UploadFile, status
from fastapi.concurrency import run_in_threadpool

from app.core.exceptions import UploadError
from app.core.logging import get_logger
from app.core.settings import Settings
from app.schemas.watch_party import VideoDescriptor

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.]")


def safe_filename(original_name: str) -> str:
    """把原始文件名中的非字母数字字符替换为下划线。"""
    name = os.path.basename(original_name or "") or "upload"
    return _UNSAFE_CHARS.sub("_", name)


class LocalStorage:
    """本地文件存储。

    Attributes:
        videos_dir: 视频目录，对外挂载为 ``/videos``。
        subtitles_dir: 字幕目录，对外挂载为 ``/subtitles``。
        max_upload_size: 单个文件大小上限（字节）。
        chunk_size: 每次从上传流读取的字节数。
    """

    VIDEOS_URL_PREFIX = "/videos"
    SUBTITLES_URL_PREFIX = "/subtitles"

    def __init__(
        self,
        videos_dir: str | Path,
        subtitles_dir: str | Path,
        max_upload_size: int = 500 * 1024 * 1024,
        video_extensions: list[str] | None = None,
        subtitle_extensions: list[str] | None = None,
        chunk_size: int = 1024 * 1024,
    ) -> None:
        self.videos_dir = Path(videos_dir)
        self.subtitles_dir = Path(subtitles_dir)
        self.max_upload_size = max_upload_size
        self.video_extensions = [e.lower() for e in (video_extensions or [".mp4", ".webm"])]
        self.subtitle_extensions = [e.lower() for e in (subtitle_extensions or [".vtt"])]
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalStorage:
        return cls(
            videos_dir=settings.VIDEOS_DIR,
            subtitles_dir=settings.SUBTITLES_DIR,
            max_upload_size=settings.MAX_UPLOAD_SIZE,
            video_extensions=settings.ALLOWED_VIDEO_EXTENSIONS,
            subtitle_extensions=settings.ALLOWED_SUBTITLE_EXTENSIONS,
        )

    def ensure_dirs(self) -> None:
        self.videos_dir.mkdir(parents=True, exist_ok=True)
        self.subtitles_dir.mkdir(parents=True, exist_ok=True)

    async def store_video(self, upload: UploadFile) -> VideoDescriptor:
        """分块保存上传的视频并返回播放列表条目。

        Raises:
            UploadError: 扩展名不允许、空文件、超出大小上限或写盘失败。
        """
        original_name = upload.filename or "upload"
        self._check_extension(original_name, self.video_extensions)
        filename, size = await self._receive(self.videos_dir, upload, original_name)
        return VideoDescriptor(
            id=uuid.uuid4().hex,
            name=original_name,
            locator=f"{self.VIDEOS_URL_PREFIX}/{filename}",
            filename=filename,
            size=size,
            mime_type=upload.content_type,
            uploaded_at=datetime.now(timezone.utc),
        )

    async def store_subtitle(self, upload: UploadFile) -> str:
        """分块保存字幕文件，返回字幕地址。"""
        original_name = upload.filename or "subtitle.vtt"
        self._check_extension(original_name, self.subtitle_extensions)
        filename, _ = await self._receive(self.subtitles_dir, upload, original_name)
        return f"{self.SUBTITLES_URL_PREFIX}/{filename}"

    def discard(self, descriptor: VideoDescriptor) -> bool:
        """删除已保存的视频文件（上传被拒绝时回滚用）。"""
        path = self.videos_dir / descriptor.filename
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("已删除视频文件 | file=%s", descriptor.filename)
        return True

    def _check_extension(self, original_name: str, extensions: list[str]) -> None:
        extension = Path(original_name).suffix.lower()
        if extension not in extensions:
            raise UploadError(f"不支持的文件类型，允许: {', '.join(extensions)}")

    async def _receive(self, directory: Path, upload: UploadFile, original_name: str) -> tuple[str, int]:
        """按块读取上传内容写入磁盘，累计超过上限立即中止。

        Returns:
            ``(文件名, 字节数)``。
        """
        filename = f"{int(time.time() * 1000)}-{safe_filename(original_name)}"
        path = directory / filename
        size = 0
        try:
            await run_in_threadpool(directory.mkdir, parents=True, exist_ok=True)
            out = await run_in_threadpool(path.open, "wb")
            try:
                while True:
                    chunk = await upload.read(self.chunk_size)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_upload_size:
                        raise UploadError(
                            f"文件过大，上限 {self.max_upload_size // (1024 * 1024)}MB",
                            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
                        )
                    await run_in_threadpool(out.write, chunk)
            finally:
                await run_in_threadpool(out.close)
            if size == 0:
                raise UploadError("上传的文件为空")
        except UploadError:
            await run_in_threadpool(path.unlink, missing_ok=True)
            raise
        except OSError as e:
            await run_in_threadpool(path.unlink, missing_ok=True)
            logger.error("写入上传文件失败 | file=%s | %s", filename, e, exc_info=True)
            raise UploadError("保存文件失败", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR) from e
        logger.info("上传文件已保存 | file=%s | size=%d", filename, size)
        return filename, size
