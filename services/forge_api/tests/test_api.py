from __future__ import annotations

import json

from fastapi.testclient import TestClient
import pytest

from services.forge_api.app.agent_runtime.state import Fragment, ToolDelta
from services.forge_api.app.main import app, get_session
from services.forge_api.app.session import ForgeSession
from services.forge_api.app.settings import Settings


class ScriptedProvider:
    name = "scripted"

    def __init__(self, script: list[list[Fragment]]) -> None:
        self.script = list(script)

    async def stream_turn(self, history, tool_schemas, system_prompt, credential):
        for frag in self.script.pop(0):
            yield frag


@pytest.fixture()
def forge(tmp_path):
    settings = Settings(
        workspace_root=str(tmp_path),
        api_keys=["k1"],
        agent_model="test-model",
        openai_base_url=None,
        agent_mode="code",
        rate_limit_ms=0,
        rewrite_threshold=1_000_000,
        max_tool_rounds=0,
        allowed_origins=["http://localhost:3000"],
        state_dir=str(tmp_path / ".forge"),
    )
    provider = ScriptedProvider([])
    sess = ForgeSession(settings, provider=provider, persist_history=False)
    app.dependency_overrides[get_session] = lambda: sess
    try:
        yield TestClient(app), sess, provider
    finally:
        app.dependency_overrides.clear()


def _events(body: str) -> list[dict]:
    out = []
    for frame in body.split("\n\n"):
        lines = frame.strip().splitlines()
        if len(lines) == 2 and lines[0] == "event: forge.agent.event":
            out.append(json.loads(lines[1][len("data: ") :]))
    return out


def test_health_reports_workspace_and_keys(forge) -> None:
    client, sess, _ = forge
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["workspace_open"] is True
    assert body["keys_configured"] == 1
    assert body["provider"] == "scripted"
    assert body["busy"] is False


def test_chat_json_mode(forge) -> None:
    client, sess, provider = forge
    provider.script.append([Fragment(text_delta="Hi there")])
    body = client.post("/agent/chat", json={"message": "hello"}).json()
    assert body == {"status": "ok", "state": "done", "rounds": 1, "message": "Hi there"}

    hist = client.get("/agent/history").json()["turns"]
    assert [t["role"] for t in hist] == ["user", "model"]
    assert client.post("/agent/history/clear").json() == {"status": "ok"}
    assert client.get("/agent/history").json()["turns"] == []

    missing = client.post("/agent/chat", json={"message": ""}).json()
    assert missing["error"] == "missing_message"


def test_chat_stream_mode_emits_tool_and_editor_events(forge, tmp_path) -> None:
    client, sess, provider = forge
    args = json.dumps({"filename": "hello.py", "content": "print('hi')\n"})
    provider.script.append([Fragment(tool_deltas=(ToolDelta(index=0, id="c1", name="create_file", arguments=args),))])
    provider.script.append([Fragment(text_delta="Created it.")])

    r = client.post("/agent/chat?stream=1", json={"message": "make a file"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r.text)
    types = [e["type"] for e in events]
    assert types[0] == "session.started"
    assert "tool.call" in types
    assert "editor.open" in types
    assert types.index("tool.call") < types.index("tool.result") < types.index("session.idle")
    assert events[-1]["type"] == "session.result"
    assert events[-1]["message"] == "Created it."
    assert (tmp_path / "hello.py").read_text(encoding="utf-8") == "print('hi')\n"


def test_tools_run_directly(forge, tmp_path) -> None:
    client, _, _ = forge
    r = client.post("/agent/tools/run", json={"name": "create_folder", "args": {"folder_path": "pkg"}}).json()
    assert r["status"] == "ok"
    assert (tmp_path / "pkg").is_dir()

    bad = client.post("/agent/tools/run", json={"name": "nope"}).json()
    assert bad["status"] == "error"
    assert bad["response"] == {"error": "Unknown tool 'nope'."}


def test_editor_and_checkpoint_endpoints(forge, tmp_path) -> None:
    client, sess, _ = forge
    (tmp_path / "a.py").write_text("x = 1\n", encoding="utf-8")

    assert client.post("/checkpoints", json={"name": "empty"}).status_code == 400

    opened = client.post("/editor/open", json={"path": "a.py"}).json()
    assert opened["content"] == "x = 1\n"
    sel = client.post("/editor/select", json={"path": "a.py", "start": 4, "end": 5}).json()
    assert (sel["start"], sel["end"]) == (4, 5)
    assert client.post("/editor/select", json={"path": "zzz.py", "start": 0, "end": 1}).status_code == 400
    assert client.post("/editor/open", json={"path": "../etc/passwd"}).json()["detail"]["error"] == "invalid_path"

    created = client.post("/checkpoints", json={"name": "v1"}).json()["checkpoint"]
    assert created["files"] == ["a.py"]
    cid = created["id"]
    assert [c["id"] for c in client.get("/checkpoints").json()["checkpoints"]] == [cid]
    assert client.get(f"/checkpoints/{cid}").json()["workspace_snapshot"]["open_files"][0]["content"] == "x = 1\n"

    (tmp_path / "a.py").write_text("x = (\n", encoding="utf-8")
    restored = client.post(f"/checkpoints/{cid}/restore").json()
    assert restored == {"status": "ok", "restored": ["a.py"]}
    assert (tmp_path / "a.py").read_text(encoding="utf-8") == "x = 1\n"

    assert client.delete(f"/checkpoints/{cid}").json() == {"status": "ok"}
    assert client.get(f"/checkpoints/{cid}").status_code == 404
    assert client.delete(f"/checkpoints/{cid}").status_code == 404


def test_cancel_when_idle_and_log_tail(forge) -> None:
    client, _, provider = forge
    assert client.post("/agent/cancel").json() == {"status": "ok", "cancelled": False}

    provider.script.append([Fragment(text_delta="ok")])
    client.post("/agent/chat", json={"message": "hello"})
    log = client.get("/agent/log", params={"tail": 50}).json()
    assert log["path"].endswith("agent.ndjson")
    types = [json.loads(line)["type"] for line in log["ndjson"].splitlines()]
    assert "agent.chat.request" in types
    assert "agent.chat.response" in types


def test_chat_stream_mode_with_empty_message_ends(forge) -> None:
    client, sess, _ = forge
    r = client.post("/agent/chat?stream=1", json={"message": "   "})
    assert r.status_code == 200
    events = _events(r.text)
    assert [e["type"] for e in events] == ["session.error", "session.idle", "session.result"]
    assert events[0]["error"] == "missing_message"
    assert events[-1]["error"] == "missing_message"
    assert not sess.controller.busy
