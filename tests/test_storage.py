"""
tests.test_storage
~~~~~~~~~~~~~~~~~~

LocalStorage 单元测试（使用 pytest 的 ``tmp_path``）。
"""
from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from app.core.exceptions import UploadError
from app.services.storage import LocalStorage, safe_filename


@pytest.fixture()
def storage(tmp_path: Path) -> LocalStorage:
    store = LocalStorage(
        videos_dir=tmp_path / "videos",
        subtitles_dir=tmp_path / "subtitles",
        max_upload_size=1024,
        chunk_size=256,
    )
    store.ensure_dirs()
    return store


def make_upload(content: bytes, name: str, content_type: str | None = None) -> UploadFile:
    headers = Headers({"content-type": content_type}) if content_type else None
    return UploadFile(io.BytesIO(content), filename=name, headers=headers)


def test_safe_filename() -> None:
    assert safe_filename("my movie (1).mp4") == "my_movie__1_.mp4"
    assert safe_filename("../../etc/passwd.mp4") == "passwd.mp4"
    assert safe_filename("") == "upload"


class TestStoreVideo:
    """测试视频保存。"""

    @pytest.mark.asyncio
    async def test_store_video(self, storage: LocalStorage) -> None:
        content = b"\x00" * 1000
        descriptor = await storage.store_video(make_upload(content, "Trip 2024.mp4", "video/mp4"))

        assert descriptor.name == "Trip 2024.mp4"
        assert descriptor.size == 1000
        assert descriptor.mime_type == "video/mp4"
        assert descriptor.filename.endswith("-Trip_2024.mp4")
        assert descriptor.locator == f"/videos/{descriptor.filename}"
        assert (storage.videos_dir / descriptor.filename).read_bytes() == content

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, storage: LocalStorage) -> None:
        a = await storage.store_video(make_upload(b"a", "a.mp4"))
        b = await storage.store_video(make_upload(b"b", "a.mp4"))
        assert a.id != b.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("content", "name", "status_code"),
        [
            (b"", "empty.mp4", 400),
            (b"data", "notes.txt", 400),
            (b"x" * 1025, "big.mp4", 413),
        ],
    )
    async def test_rejected_uploads(
        self, storage: LocalStorage, content: bytes, name: str, status_code: int,
    ) -> None:
        with pytest.raises(UploadError) as exc_info:
            await storage.store_video(make_upload(content, name))

        assert exc_info.value.status_code == status_code
        assert list(storage.videos_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_oversized_upload_stops_reading_early(self, storage: LocalStorage) -> None:
        upload = make_upload(b"x" * 64 * 1024, "huge.mp4")

        with pytest.raises(UploadError) as exc_info:
            await storage.store_video(upload)

        assert exc_info.value.status_code == 413
        # 读到刚超过上限的那一块就停止
        assert upload.file.tell() <= storage.max_upload_size + storage.chunk_size
        assert list(storage.videos_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_open_failure_maps_to_500(self, storage: LocalStorage) -> None:
        with patch.object(Path, "open", side_effect=OSError("disk full")):
            with pytest.raises(UploadError) as exc_info:
                await storage.store_video(make_upload(b"data", "a.mp4"))

        assert exc_info.value.status_code == 500
        assert list(storage.videos_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_discard(self, storage: LocalStorage) -> None:
        descriptor = await storage.store_video(make_upload(b"data", "a.mp4"))

        assert storage.discard(descriptor) is True
        assert storage.discard(descriptor) is False


class TestStoreSubtitle:

    @pytest.mark.asyncio
    async def test_store_subtitle(self, storage: LocalStorage) -> None:
        locator = await storage.store_subtitle(make_upload(b"WEBVTT\n", "ep1.vtt"))

        assert locator.startswith("/subtitles/")
        assert locator.endswith("-ep1.vtt")

    @pytest.mark.asyncio
    async def test_subtitle_extension_checked(self, storage: LocalStorage) -> None:
        upload = make_upload(b"1\n00:00:01,000 --> 00:00:02,000\nhi\n", "ep1.srt")

        with pytest.raises(UploadError):
            await storage.store_subtitle(upload)

        # 扩展名不合法时不读取内容
        assert upload.file.tell() == 0
