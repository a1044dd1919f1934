from __future__ import annotations

import json

import pytest

pytest.importorskip("dotenv")
pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from src.runtimes import worker_server


@pytest.fixture
def client(monkeypatch, orchestrator) -> TestClient:
    monkeypatch.setattr(worker_server, "_get_orchestrator", lambda: orchestrator)
    return TestClient(worker_server.app)


def _events(res) -> list[dict]:
    out = []
    for frame in res.text.split("\n\n"):
        if frame.startswith("data: "):
            out.append(json.loads(frame[len("data: ") :]))
    return out


def test_preflight_returns_cors_headers(client) -> None:
    res = client.options("/sandbox/create")
    assert res.status_code == 200
    assert res.headers["access-control-allow-origin"] == "*"
    assert "OPTIONS" in res.headers["access-control-allow-methods"]
    assert res.headers["access-control-allow-headers"] == "Content-Type, Authorization"


def test_unknown_path_is_404_with_cors(client) -> None:
    res = client.post("/sandbox/unknown")
    assert res.status_code == 404
    assert res.headers["access-control-allow-origin"] == "*"


def test_create_with_empty_body(client) -> None:
    res = client.post("/sandbox/create")
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert data["sandboxId"].startswith("sandbox-")
    assert data["url"].startswith("https://5173-")
    assert data["message"] == "Cloudflare sandbox created and Vite React app initialized"
    assert res.headers["access-control-allow-origin"] == "*"


def test_create_failure_returns_error_envelope(client, fake_provider) -> None:
    fake_provider.sandbox_kwargs = {"fail_ops": {"expose_port": RuntimeError("no ingress")}}

    res = client.post("/sandbox/create", json={})

    assert res.status_code == 500
    data = res.json()
    assert data["error"] == "expose_port failed: no ingress"
    assert "Traceback" in data["details"]


def test_operations_require_active_sandbox(client) -> None:
    res = client.post("/sandbox/run-command", json={"command": "ls"})
    assert res.status_code == 400
    assert res.json()["error"] == "No active sandbox"

    res = client.post(
        "/sandbox/apply-code", json={"files": [{"path": "a.js", "content": "x"}]}
    )
    assert res.status_code == 400

    res = client.post("/sandbox/install-packages", json={"packages": ["zod"]})
    assert res.status_code == 400


def test_run_command_roundtrip(client) -> None:
    client.post("/sandbox/create")

    res = client.post("/sandbox/run-command", json={"command": "echo hi"})

    assert res.status_code == 200
    assert res.json()["success"] is True
    assert res.json()["exitCode"] == 0


def test_run_command_rejects_foreign_sandbox_id(client) -> None:
    client.post("/sandbox/create")

    res = client.post(
        "/sandbox/run-command", json={"command": "ls", "sandboxId": "sandbox-0"}
    )
    assert res.status_code == 409


def test_run_command_rejects_bad_json(client) -> None:
    client.post("/sandbox/create")

    res = client.post(
        "/sandbox/run-command",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 400
    assert "Invalid JSON body" in res.json()["error"]


def test_apply_code_streams_events(client) -> None:
    client.post("/sandbox/create")

    res = client.post(
        "/sandbox/apply-code",
        json={"response": '<file path="src/App.jsx">export default () => null</file>'},
    )

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.headers["cache-control"] == "no-cache"
    assert res.headers["access-control-allow-origin"] == "*"
    events = _events(res)
    assert [e["type"] for e in events] == ["start", "file", "complete"]
    assert events[-1]["results"]["filesUpdated"] == ["src/App.jsx"]


def test_apply_code_writes_each_file_once(client, fake_provider) -> None:
    client.post("/sandbox/create")

    res = client.post(
        "/sandbox/apply-code",
        json={
            "files": [
                {"path": "src/New.jsx", "content": "v1"},
                {"path": "/workspace/src/New.jsx", "content": "v2"},
            ]
        },
    )

    events = _events(res)
    assert [e["type"] for e in events] == ["start", "file", "complete"]
    assert events[-1]["results"] == {
        "filesCreated": ["src/New.jsx"],
        "filesUpdated": [],
        "errors": [],
    }
    sandbox = fake_provider.sandboxes[0]
    assert sandbox.files["/workspace/src/New.jsx"] == "v2"


def test_apply_code_without_edits_is_rejected(client) -> None:
    client.post("/sandbox/create")
    res = client.post("/sandbox/apply-code", json={"response": "nothing to do"})
    assert res.status_code == 400
    assert res.json()["error"] == "No file edits provided"


def test_install_packages_validation_and_stream(client) -> None:
    client.post("/sandbox/create")

    bad = client.post("/sandbox/install-packages", json={"packages": ["a b"]})
    assert bad.status_code == 400

    res = client.post(
        "/sandbox/install-packages", json={"packages": ["zod"], "restartServer": False}
    )
    assert res.status_code == 200
    events = _events(res)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "complete"
    assert events[-1]["restarted"] is False


def test_status_and_kill(client) -> None:
    assert client.get("/sandbox/status").json()["active"] is False

    created = client.post("/sandbox/create").json()
    status = client.get("/sandbox/status").json()
    assert status["active"] is True
    assert status["sandbox"]["sandboxId"] == created["sandboxId"]

    assert client.post("/sandbox/kill").json() == {"success": True, "sandboxKilled": True}
    assert client.get("/sandbox/status").json()["sandbox"] is None


def test_create_twice_keeps_one_session(client) -> None:
    client.post("/sandbox/create")
    second = client.post("/sandbox/create").json()

    status = client.get("/sandbox/status").json()
    assert status["sandbox"]["sandboxId"] == second["sandboxId"]
