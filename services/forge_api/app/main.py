from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .agent_log import agent_log_path, append_agent_event, read_agent_log_tail
from .agent_runtime.errors import HandlerFault, PreconditionUnmet, WorkspaceError
from .agent_runtime.health_state import get_last_agent_error, last_turn
from .agent_runtime.state import Attachment
from .session import ForgeSession
from .settings import get_settings


settings = get_settings()
app = FastAPI(title="Forge API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_SESSION: ForgeSession | None = None


def get_session() -> ForgeSession:
    global _SESSION
    if _SESSION is None:
        _SESSION = ForgeSession(settings)
    return _SESSION


def _sse(ev: dict[str, Any]) -> str:
    return f"event: forge.agent.event\ndata: {json.dumps(ev, ensure_ascii=False)}\n\n"


class HealthResponse(BaseModel):
    ok: bool
    at: datetime
    workspace_root: str | None = None
    workspace_open: bool
    provider: str
    model: str
    mode: str
    keys_configured: int
    busy: bool
    last_error: str = ""
    last_turn: dict[str, Any] = Field(default_factory=dict)


@app.get("/health", response_model=HealthResponse)
def health(sess: ForgeSession = Depends(get_session)) -> HealthResponse:
    return HealthResponse(
        ok=True,
        at=datetime.now(timezone.utc),
        workspace_root=sess.settings.workspace_root,
        workspace_open=sess.workspace is not None,
        provider=str(getattr(sess.provider, "name", "") or ""),
        model=sess.settings.agent_model,
        mode=sess.controller.mode,
        keys_configured=len(sess.credentials),
        busy=sess.controller.busy,
        last_error=get_last_agent_error(),
        last_turn=last_turn(),
    )


class AttachmentIn(BaseModel):
    mime_type: str
    data_b64: str
    name: str = ""


class AgentChatRequest(BaseModel):
    message: str = ""
    attachment: AttachmentIn | None = None


@app.post("/agent/chat")
async def agent_chat_post(
    req: AgentChatRequest,
    stream: bool = Query(False),
    sess: ForgeSession = Depends(get_session),
) -> Any:
    att = None
    if req.attachment is not None:
        att = Attachment(mime_type=req.attachment.mime_type, data_b64=req.attachment.data_b64, name=req.attachment.name)

    if not stream:
        outcome = await sess.controller.send(req.message, attachment=att)
        return outcome.to_dict()

    if sess.controller.busy:
        async def gen_busy() -> Any:
            yield _sse({"type": "session.error", "error": "busy", "message": "busy"})
            yield _sse({"type": "session.idle"})

        return StreamingResponse(gen_busy(), media_type="text/event-stream")

    async def gen() -> Any:
        loop = asyncio.get_running_loop()
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        # Editor events can fire from handler threads.
        def on_editor(ev: dict[str, Any]) -> None:
            loop.call_soon_threadsafe(q.put_nowait, dict(ev))

        unsubscribe = sess.editor.subscribe(on_editor)
        task = asyncio.create_task(sess.controller.send(req.message, attachment=att, on_event=q.put_nowait))
        try:
            while True:
                try:
                    ev = await asyncio.wait_for(q.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    if task.done() and q.empty():
                        break
                    # Comment frames keep the connection open during long tool rounds.
                    yield ": keepalive\n\n"
                    continue
                yield _sse(ev)
                if ev.get("type") == "session.idle":
                    break
            outcome = await task
            yield _sse({"type": "session.result", **outcome.to_dict()})
        finally:
            unsubscribe()
            if not task.done():
                # Client went away mid-turn.
                sess.controller.cancel()

    return StreamingResponse(gen(), media_type="text/event-stream")


@app.post("/agent/cancel")
def agent_cancel(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    return {"status": "ok", "cancelled": sess.controller.cancel()}


@app.get("/agent/history")
def agent_history(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    return {"turns": sess.controller.view_history()}


@app.post("/agent/history/clear")
def agent_history_clear(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    if sess.controller.busy:
        raise HTTPException(status_code=409, detail={"error": "busy"})
    sess.controller.clear_history()
    return {"status": "ok"}


@app.post("/agent/history/condense")
async def agent_history_condense(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    outcome = await sess.controller.condense_history()
    return outcome.to_dict()


class ToolRunRequest(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


@app.post("/agent/tools/run")
async def agent_tools_run(req: ToolRunRequest, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    out = await sess.controller.run_tool_directly(req.name, req.args)
    return {"status": "ok" if out.ok else "error", "id": out.id, "name": out.name, "response": out.response}


class CheckpointCreateRequest(BaseModel):
    name: str = ""


@app.get("/checkpoints")
def checkpoints_list(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    return {"checkpoints": [rec.summary() for rec in sess.checkpoints.list()]}


@app.post("/checkpoints")
def checkpoints_create(req: CheckpointCreateRequest, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    try:
        rec = sess.checkpoints.create_manual(req.name)
    except PreconditionUnmet as e:
        raise HTTPException(status_code=400, detail={"error": "no_open_files", "message": e.message})
    return {"status": "ok", "checkpoint": rec.summary()}


@app.get("/checkpoints/{checkpoint_id}")
def checkpoints_get(checkpoint_id: int, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    rec = sess.checkpoints.get(checkpoint_id)
    if rec is None:
        raise HTTPException(status_code=404, detail={"error": "unknown_checkpoint", "id": checkpoint_id})
    return {**rec.summary(), "workspace_snapshot": rec.workspace_snapshot}


@app.post("/checkpoints/{checkpoint_id}/restore")
def checkpoints_restore(checkpoint_id: int, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    if sess.controller.busy:
        raise HTTPException(status_code=409, detail={"error": "busy"})
    try:
        snapshot = sess.checkpoints.restore(checkpoint_id)
    except WorkspaceError as e:
        raise HTTPException(status_code=400, detail={"error": e.reason, "path": e.path})
    if snapshot is None:
        raise HTTPException(status_code=404, detail={"error": "unknown_checkpoint", "id": checkpoint_id})
    return {"status": "ok", "restored": [f.get("path") for f in snapshot.get("open_files") or []]}


@app.delete("/checkpoints/{checkpoint_id}")
def checkpoints_delete(checkpoint_id: int, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    if not sess.checkpoints.delete(checkpoint_id):
        raise HTTPException(status_code=404, detail={"error": "unknown_checkpoint", "id": checkpoint_id})
    return {"status": "ok"}


class EditorOpenRequest(BaseModel):
    path: str


class EditorSelectRequest(BaseModel):
    path: str
    start: int = Field(ge=0)
    end: int = Field(ge=0)


@app.get("/editor")
def editor_state(sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    sel = sess.editor.selection
    return {
        "open_files": sess.editor.open_paths,
        "active_file": sess.editor.active_path,
        "selection": {"path": sel.path, "start": sel.start, "end": sel.end} if sel else None,
    }


@app.post("/editor/open")
def editor_open(req: EditorOpenRequest, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    try:
        content = sess.open_file(req.path)
    except LookupError:
        raise HTTPException(status_code=400, detail={"error": "no_workspace"})
    except WorkspaceError as e:
        raise HTTPException(status_code=400, detail={"error": e.reason, "path": e.path or req.path})
    append_agent_event(sess.settings, {"type": "editor.open", "path": req.path, "chars": len(content)})
    return {"status": "ok", "path": req.path, "content": content}


@app.post("/editor/select")
def editor_select(req: EditorSelectRequest, sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    try:
        sess.editor.select(req.path, req.start, req.end)
    except HandlerFault as e:
        raise HTTPException(status_code=400, detail={"error": "not_open", "message": e.message})
    sel = sess.editor.selection
    return {"status": "ok", "path": req.path, "start": sel.start if sel else 0, "end": sel.end if sel else 0}


@app.get("/agent/log")
def agent_log_get(tail: int = Query(200, ge=10, le=5000), sess: ForgeSession = Depends(get_session)) -> dict[str, Any]:
    """
    Read the agent log tail (dev-only).
    Note: message bodies are only logged when FORGE_AGENT_LOG_CONTENT=1.
    """
    path = agent_log_path(sess.settings)
    try:
        return {"path": path, "tail": int(tail), "ndjson": read_agent_log_tail(sess.settings, tail)}
    except OSError as e:
        return {"path": path, "tail": int(tail), "ndjson": "", "error": str(e)}
