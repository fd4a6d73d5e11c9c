"""HTTP tests for the REST endpoints, driven through the full app."""

import base64
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from mathlens.config import Settings
from mathlens.main import create_app
from mathlens.services.recognition import RecognitionServiceError

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\napi-image").decode("ascii")
ALL_DONE = {"latex": "done", "analysis": "done", "verify": "done"}


def _settings(data_dir: Path) -> Settings:
    return Settings(data_dir=data_dir, history_poll_interval_seconds=60, toast_timeout_seconds=60)


@pytest.fixture
def client(tmp_path: Path, service):
    app = create_app(_settings(tmp_path), service=service)
    with TestClient(app) as c:
        yield c


def _wait_for(client: TestClient, predicate, path: str = "/api/phase", timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path).json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} never reached the expected state: {body}")
        time.sleep(0.01)


def _recognize(client: TestClient) -> str:
    resp = client.post("/api/recognize/image", json={"image": PNG_B64})
    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "started"
    return body["session_id"]


def _wait_saved(client: TestClient, count: int = 1) -> None:
    deadline = time.monotonic() + 2.0
    while client.post("/api/history/refresh").json()["count"] < count:
        if time.monotonic() > deadline:
            raise AssertionError("session never reached the durable history")
        time.sleep(0.01)


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["history_polling"] is True
        assert body["session_id"] == ""


class TestRecognition:
    def test_full_recognition(self, client: TestClient) -> None:
        session_id = _recognize(client)
        phase = _wait_for(client, lambda b: b["phases"] == ALL_DONE)
        assert phase["session_id"] == session_id
        assert phase["last_shown"] == ALL_DONE

        state = client.get("/api/result").json()
        assert state["result"]["id"] == session_id
        assert state["result"]["latex"] == "x^2"
        assert state["result"]["confidence_score"] == 87
        assert "current_image" not in state

        history = client.get("/api/history").json()
        assert [item["id"] for item in history["items"]] == [session_id]

    def test_invalid_image(self, client: TestClient) -> None:
        resp = client.post("/api/recognize/image", json={"image": "not base64!!"})
        assert resp.status_code == 422

    def test_unreadable_file(self, client: TestClient, tmp_path: Path) -> None:
        resp = client.post("/api/recognize/file", json={"path": str(tmp_path / "missing.png")})
        assert resp.status_code == 422
        assert client.get("/api/result").json()["error_message"]

    def test_recognize_from_file(self, client: TestClient, tmp_path: Path) -> None:
        path = tmp_path / "formula.png"
        path.write_bytes(base64.b64decode(PNG_B64))
        resp = client.post("/api/recognize/file", json={"path": str(path)})
        assert resp.status_code == 202
        _wait_for(client, lambda b: b["phases"] == ALL_DONE)

    def test_failed_stage_and_retry(self, client: TestClient, service) -> None:
        service.errors["analysis"] = RecognitionServiceError("model overloaded")
        _recognize(client)
        _wait_for(client, lambda b: b["phases"] == {"latex": "done", "analysis": "error", "verify": "done"})

        toasts = client.get("/api/notifications").json()["notifications"]
        assert any(t["type"] == "error" and "Analysis failed" in t["message"] for t in toasts)

        del service.errors["analysis"]
        resp = client.post("/api/retry/analysis")
        assert resp.status_code == 200
        assert resp.json()["phases"] == ALL_DONE
        assert client.get("/api/result").json()["result"]["title"] == "Square"

    def test_retry_without_recognition(self, client: TestClient) -> None:
        assert client.post("/api/retry/verify").status_code == 409

    def test_retry_unknown_stage(self, client: TestClient) -> None:
        assert client.post("/api/retry/everything").status_code == 422


class TestResultEdits:
    def test_edits_need_a_result(self, client: TestClient) -> None:
        assert client.put("/api/result/latex", json={"latex": "y"}).status_code == 404
        assert client.post("/api/result/save").status_code == 404

    def test_edit_and_save(self, client: TestClient) -> None:
        session_id = _recognize(client)
        _wait_for(client, lambda b: b["phases"] == ALL_DONE)
        _wait_saved(client)

        resp = client.put("/api/result/latex", json={"latex": "x^3"})
        assert resp.json()["latex"] == "x^3"
        resp = client.put("/api/result/title", json={"title": "Cube"})
        assert resp.json()["title"] == "Cube"

        saved = client.post("/api/result/save").json()
        assert saved["id"] == session_id
        assert saved["latex"] == "x^3"
        assert client.get(f"/api/history/{session_id}").json()["title"] == "Cube"


class TestHistory:
    def test_favorite_rename_delete(self, client: TestClient) -> None:
        session_id = _recognize(client)
        _wait_for(client, lambda b: b["phases"] == ALL_DONE)
        _wait_saved(client)

        resp = client.put(f"/api/history/{session_id}/favorite", json={"is_favorite": True})
        assert resp.status_code == 200
        assert resp.json()["is_favorite"] is True
        assert client.get("/api/history", params={"favorites_only": True}).json()["count"] == 1

        resp = client.put(f"/api/history/{session_id}/title", json={"title": "Renamed"})
        assert resp.json()["title"] == "Renamed"
        assert client.get("/api/result").json()["result"]["title"] == "Renamed"

        assert client.delete(f"/api/history/{session_id}").status_code == 204
        assert client.get(f"/api/history/{session_id}").status_code == 404
        assert client.post("/api/history/refresh").json()["count"] == 0

    def test_unknown_record(self, client: TestClient) -> None:
        assert client.get("/api/history/nope").status_code == 404
        assert client.put("/api/history/nope/favorite", json={"is_favorite": True}).status_code == 404
        assert client.delete("/api/history/nope").status_code == 404

    def test_empty_title_rejected(self, client: TestClient) -> None:
        assert client.put("/api/history/x/title", json={"title": ""}).status_code == 422


class TestRestart:
    def test_last_phase_state_survives_restart(self, tmp_path: Path, service) -> None:
        with TestClient(create_app(_settings(tmp_path), service=service)) as first:
            _recognize(first)
            _wait_for(first, lambda b: b["phases"] == ALL_DONE)
            _wait_saved(first)

        with TestClient(create_app(_settings(tmp_path), service=service)) as second:
            phase = second.get("/api/phase").json()
            assert phase["session_id"] == ""
            assert phase["last_shown"] == ALL_DONE
            assert len(second.get("/api/history").json()["items"]) == 1


class TestProgressSocket:
    def test_ping_and_progress(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/progress") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            _recognize(client)
            types = []
            while len(types) < 4:
                types.append(ws.receive_json()["type"])
            assert types[0] == "started"
            assert types.count("progress") == 3
