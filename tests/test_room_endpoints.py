"""
tests.test_room_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket 端点的集成测试。

使用 ``TestClient`` 的上下文管理器运行完整 lifespan；上传目录指向
``tmp_path``，不启用 MongoDB。
"""
from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.core.rate_limit import limiter
from app.core.settings import settings
from app.main import app

ADMIN_HEADERS = {"X-Admin-Token": "secret"}


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setattr(settings, "VIDEOS_DIR", str(tmp_path / "videos"))
    monkeypatch.setattr(settings, "SUBTITLES_DIR", str(tmp_path / "subtitles"))
    monkeypatch.setattr(settings, "MONGO_URI", None)
    monkeypatch.setattr(settings, "ADMIN_TOKEN", "secret")
    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, name: str = "clip.mp4", content: bytes = b"fake-video") -> dict:
    response = client.post(
        "/api/upload/video",
        files={"video": (name, content, "video/mp4")},
        headers=ADMIN_HEADERS,
    )
    return response.json()


class TestQueries:
    """只读接口。"""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["viewers"] == 0
        assert body["streamActive"] is False
        assert "X-Request-ID" in response.headers

    def test_state_empty(self, client: TestClient) -> None:
        body = client.get("/api/state").json()

        assert body["code"] == 200
        assert body["data"]["currentVideo"] is None
        assert body["data"]["playlist"] == []
        assert body["data"]["connectedViewers"] == 0

    def test_stats(self, client: TestClient) -> None:
        body = client.get("/api/stats").json()
        assert body["data"]["playlistLength"] == 0

    def test_catalog_disabled(self, client: TestClient) -> None:
        body = client.get("/api/catalog").json()
        assert body["data"] == []
        assert body["msg"] == "catalog disabled"

    def test_users_requires_admin_token(self, client: TestClient) -> None:
        assert client.get("/api/users").status_code == 403
        assert client.get("/api/users", headers=ADMIN_HEADERS).json()["data"] == []


class TestUpload:
    """上传与播放列表管理。"""

    def test_upload_video_becomes_current(self, client: TestClient) -> None:
        body = _upload(client)

        assert body["code"] == 200
        video_id = body["data"]["id"]
        assert body["data"]["locator"].startswith("/videos/")

        state = client.get("/api/state").json()["data"]
        assert state["currentVideo"]["id"] == video_id
        assert state["isPlaying"] is False
        assert [v["id"] for v in state["playlist"]] == [video_id]

    def test_upload_without_token_rejected(self, client: TestClient) -> None:
        response = client.post("/api/upload/video", files={"video": ("clip.mp4", b"x", "video/mp4")})

        assert response.status_code == 403
        assert client.get("/api/state").json()["data"]["playlist"] == []

    def test_upload_bad_extension(self, client: TestClient) -> None:
        response = client.post(
            "/api/upload/video",
            files={"video": ("notes.txt", b"hello", "text/plain")},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["data"] == {"error": "upload_error"}

    def test_upload_subtitle(self, client: TestClient) -> None:
        response = client.post(
            "/api/upload/subtitle",
            files={"subtitle": ("ep1.vtt", b"WEBVTT\n", "text/vtt")},
            headers=ADMIN_HEADERS,
        )

        locator = response.json()["data"]["subtitle"]
        assert locator.startswith("/subtitles/")
        assert client.get("/api/state").json()["data"]["subtitleFile"] == locator

    def test_delete_and_clear(self, client: TestClient) -> None:
        first = _upload(client, "a.mp4")["data"]["id"]
        second = _upload(client, "b.mp4")["data"]["id"]

        response = client.delete(f"/api/video/{first}", headers=ADMIN_HEADERS)
        assert response.json()["data"]["id"] == first
        assert client.get("/api/state").json()["data"]["currentVideo"]["id"] == second

        assert client.delete("/api/video/nope", headers=ADMIN_HEADERS).status_code == 404

        client.delete("/api/playlist/clear", headers=ADMIN_HEADERS)
        assert client.get("/api/state").json()["data"]["playlist"] == []

    def test_reorder_requires_permutation(self, client: TestClient) -> None:
        video_id = _upload(client)["data"]["id"]

        bad = client.post("/api/playlist/reorder", json={"videoIds": []}, headers=ADMIN_HEADERS)
        good = client.post("/api/playlist/reorder", json={"videoIds": [video_id]}, headers=ADMIN_HEADERS)

        assert bad.status_code == 400
        assert bad.json()["data"] == {"error": "invalid_argument"}
        assert [v["id"] for v in good.json()["data"]] == [video_id]



    def test_oversized_upload_rejected_without_side_effects(self, client: TestClient, tmp_path: Path) -> None:
        client.app.state.storage.max_upload_size = 16

        response = client.post(
            "/api/upload/video",
            files={"video": ("big.mp4", b"x" * 17, "video/mp4")},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 413
        assert response.json()["data"] == {"error": "upload_error"}
        assert list((tmp_path / "videos").iterdir()) == []
        assert client.get("/api/state").json()["data"]["playlist"] == []


def _identify(ws, data: dict) -> list[dict]:
    """发送 identify 并读完接入时的全部帧（身份、快照、自己的加入通知）。"""
    ws.send_json({"event": "identify", "data": data})
    frames = [ws.receive_json(), ws.receive_json()]
    if frames[0]["data"]["isAdmin"]:
        frames += [ws.receive_json(), ws.receive_json()]
    else:
        frames.append(ws.receive_json())
    return frames


class TestWebSocket:
    """WebSocket 端点。"""

    def test_identify_and_receive_upload_broadcast(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            identified, snapshot, joined = _identify(ws, {"name": "Alice"})

            assert identified["event"] == "identified"
            assert identified["data"]["isAdmin"] is False
            assert snapshot["event"] == "roomState"
            assert joined["event"] == "userJoin"
            assert joined["data"]["name"] == "Alice"

            video_id = _upload(client)["data"]["id"]

            playlist_update = ws.receive_json()
            video_change = ws.receive_json()
            assert playlist_update["event"] == "playlistUpdate"
            assert video_change == {"event": "videoChange", "data": playlist_update["data"][0]}
            assert video_change["data"]["id"] == video_id

    def test_viewer_cannot_control_playback(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            _identify(ws, {})

            ws.send_json({"event": "playVideo", "data": None})
            error = ws.receive_json()

            assert error == {
                "event": "error",
                "data": {"code": "unauthorized", "message": "没有权限执行该操作"},
            }

    def test_admin_identify_requires_token(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            frames = _identify(ws, {"type": "admin", "token": "secret"})

            assert [f["event"] for f in frames] == [
                "identified", "roomState", "adminOnline", "userListUpdate",
            ]
            assert frames[0]["data"]["isAdmin"] is True
            assert frames[1]["data"]["adminOnline"] is True

    def test_binary_frame_rejected_connection_kept(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            _identify(ws, {})

            ws.send_bytes(b"\x00\x01\x02")
            error = ws.receive_json()
            assert error["event"] == "error"
            assert error["data"]["code"] == "invalid_argument"

            # 连接仍然可用
            ws.send_json({"event": "syncRequest", "data": None})
            assert ws.receive_json()["event"] == "syncResponse"

    def test_long_name_accepted(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            identified, _, _ = _identify(ws, {"name": "x" * 200})

            assert identified["data"]["name"] == "x" * 64
