from __future__ import annotations

import asyncio
from typing import Any

from services.forge_api.app.agent_runtime.checkpoints import CheckpointManager, MemorySnapshotStore
from services.forge_api.app.agent_runtime.circuit_breaker import CircuitBreaker
from services.forge_api.app.agent_runtime.core import EMPTY_RESPONSE_MESSAGE, ToolCallAssembler, TurnController
from services.forge_api.app.agent_runtime.errors import ProviderFault
from services.forge_api.app.agent_runtime.providers import history_to_messages
from services.forge_api.app.agent_runtime.registry import ToolDescriptor, ToolDispatcher, ToolRegistry
from services.forge_api.app.agent_runtime.state import Fragment, History, Text, ToolDelta, ToolResult
from services.forge_api.app.credentials import CredentialRing
from services.forge_api.app.editor import EditorSession
from services.forge_api.app.settings import Settings


def _settings(tmp_path, **overrides: Any) -> Settings:
    base: dict[str, Any] = dict(
        workspace_root=None,
        api_keys=["k1", "k2"],
        agent_model="test-model",
        openai_base_url=None,
        agent_mode="code",
        rate_limit_ms=0,
        rewrite_threshold=1_000_000,
        max_tool_rounds=0,
        allowed_origins=[],
        state_dir=str(tmp_path / ".forge"),
    )
    base.update(overrides)
    return Settings(**base)


class ScriptedProvider:
    """Replays one scripted response per request; an exception entry is raised instead."""

    name = "scripted"

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.credentials: list[str] = []
        self.requests: list[list] = []

    async def stream_turn(self, history, tool_schemas, system_prompt, credential):
        self.credentials.append(credential)
        self.requests.append(list(history))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = await item()
        for frag in item:
            await asyncio.sleep(0)
            yield frag


def text(s: str) -> list[Fragment]:
    return [Fragment(text_delta=s)]


def call(index: int, id: str, name: str, args: str) -> Fragment:
    return Fragment(tool_deltas=(ToolDelta(index=index, id=id, name=name, arguments=args),))


async def _slow(ctx, args):
    await asyncio.sleep(0.05)
    return {"value": "slow"}


async def _fast(ctx, args):
    return {"value": "fast", "args": args}


def _registry(extra: list[ToolDescriptor] | None = None) -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(ToolDescriptor(name="slow", handler=_slow, requires_workspace=False, mutates_state=False))
    reg.register(ToolDescriptor(name="fast", handler=_fast, requires_workspace=False, mutates_state=False))
    for d in extra or []:
        reg.register(d)
    return reg.freeze()


def _controller(tmp_path, provider, *, registry=None, **settings_overrides: Any) -> TurnController:
    settings = _settings(tmp_path, **settings_overrides)
    editor = EditorSession()
    breaker = CircuitBreaker()
    dispatcher = ToolDispatcher(
        registry or _registry(),
        settings=settings,
        editor=editor,
        checkpoints=CheckpointManager(MemorySnapshotStore(), editor),
        breaker=breaker,
    )
    return TurnController(
        settings=settings,
        provider=provider,
        dispatcher=dispatcher,
        credentials=CredentialRing(settings.api_keys),
        history=History(),
        breaker=breaker,
    )


def test_assembler_joins_fragments_and_drops_incomplete_calls() -> None:
    a = ToolCallAssembler()
    a.feed(0, id="c1", name="fast", arguments='{"x"')
    a.feed(0, id=None, name=None, arguments=": 1}")
    a.feed(1, id="c2", name="slow", arguments="")
    a.feed(2, id="c3", name="fast", arguments="{broken")
    done, dropped = a.complete()
    assert [(i.id, i.name, i.args) for i in done] == [("c1", "fast", {"x": 1}), ("c2", "slow", {})]
    assert [d["id"] for d in dropped] == ["c3"]


def test_plain_text_reply(tmp_path) -> None:
    provider = ScriptedProvider([[Fragment(text_delta="Hel"), Fragment(text_delta="lo")]])
    ctl = _controller(tmp_path, provider)
    events: list[dict] = []

    outcome = asyncio.run(ctl.send("hi", on_event=events.append))
    assert outcome.state == "done"
    assert outcome.text == "Hello"
    assert [t.role for t in ctl.history.turns] == ["user", "model"]
    types = [e["type"] for e in events]
    assert types[0] == "session.started"
    assert types.count("assistant.message_delta") == 2
    assert types[-1] == "session.idle"
    assert not ctl.busy


def test_missing_message(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([]))
    outcome = asyncio.run(ctl.send("   "))
    assert (outcome.state, outcome.error) == ("failed", "missing_message")
    assert len(ctl.history) == 0


def test_tool_results_fed_back_in_request_order(tmp_path) -> None:
    provider = ScriptedProvider(
        [
            [
                call(0, "c1", "slow", ""),
                call(1, "c2", "fast", '{"q": '),
                call(1, None, None, '"abc"}'),
            ],
            text("all done"),
        ]
    )
    ctl = _controller(tmp_path, provider)
    events: list[dict] = []

    outcome = asyncio.run(ctl.send("go", on_event=events.append))
    assert outcome.state == "done"
    assert outcome.rounds == 2

    turns = ctl.history.turns
    assert [t.role for t in turns] == ["user", "model", "user", "model"]
    assert [c.name for c in turns[1].tool_calls()] == ["slow", "fast"]
    results = [p for p in turns[2].parts if isinstance(p, ToolResult)]
    assert [(r.id, r.response["value"]) for r in results] == [("c1", "slow"), ("c2", "fast")]
    assert results[1].response["args"] == {"q": "abc"}

    # The second request carried the tool results.
    assert len(provider.requests[1]) == 3
    assert [e["id"] for e in events if e["type"] == "tool.result"] == ["c1", "c2"]


def test_empty_response_fails_turn(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([[]]))
    outcome = asyncio.run(ctl.send("hi"))
    assert outcome.state == "failed"
    assert outcome.error == "empty_response"
    assert outcome.text == EMPTY_RESPONSE_MESSAGE


def test_provider_fault_rotates_to_next_key(tmp_path) -> None:
    provider = ScriptedProvider([ProviderFault("429 quota", status=429), text("ok")])
    ctl = _controller(tmp_path, provider)
    events: list[dict] = []

    outcome = asyncio.run(ctl.send("hi", on_event=events.append))
    assert outcome.state == "done"
    assert provider.credentials == ["k1", "k2"]
    assert any(e["type"] == "session.retry" and e["key_index"] == 1 for e in events)


def test_all_keys_failing_stops_the_turn(tmp_path) -> None:
    provider = ScriptedProvider([ProviderFault("bad key"), ProviderFault("bad key"), text("unreachable")])
    ctl = _controller(tmp_path, provider)
    events: list[dict] = []

    outcome = asyncio.run(ctl.send("hi", on_event=events.append))
    assert outcome.state == "failed"
    assert outcome.error == "all_credentials_failed"
    assert provider.credentials == ["k1", "k2"]
    assert any(e["type"] == "session.error" for e in events)

    # A new send starts with a fresh tried-set.
    assert asyncio.run(ctl.send("again")).state == "done"


def test_no_credentials(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([]), api_keys=[])
    outcome = asyncio.run(ctl.send("hi"))
    assert (outcome.state, outcome.error) == ("failed", "no_credentials")


def test_max_tool_rounds(tmp_path) -> None:
    provider = ScriptedProvider([[call(0, f"c{i}", "fast", "{}")] for i in range(5)])
    ctl = _controller(tmp_path, provider, max_tool_rounds=2)
    outcome = asyncio.run(ctl.send("loop"))
    assert (outcome.state, outcome.error, outcome.rounds) == ("failed", "tool_loop_exceeded", 2)


def test_cancel_during_tools_discards_results(tmp_path) -> None:
    holder: dict[str, TurnController] = {}

    async def cancelling(ctx, args):
        holder["ctl"].cancel()
        return {"value": "late"}

    registry = _registry([ToolDescriptor(name="cancel_me", handler=cancelling, requires_workspace=False, mutates_state=False)])
    provider = ScriptedProvider([[call(0, "c1", "cancel_me", "{}")], text("after cancel")])
    ctl = _controller(tmp_path, provider, registry=registry)
    holder["ctl"] = ctl

    outcome = asyncio.run(ctl.send("hi"))
    assert outcome.state == "cancelled"
    assert [t.role for t in ctl.history.turns] == ["user", "model"]

    # The unanswered call is dropped from the next request's messages.
    outcome2 = asyncio.run(ctl.send("continue"))
    assert outcome2.state == "done"
    msgs = history_to_messages(provider.requests[1], "")
    assert all("tool_calls" not in m for m in msgs)
    assert [m["role"] for m in msgs] == ["user", "user"]


def test_concurrent_send_reports_busy(tmp_path) -> None:
    gate = asyncio.Event()

    async def blocked() -> list[Fragment]:
        await gate.wait()
        return text("finally")

    async def run() -> tuple[Any, Any, bool]:
        ctl = _controller(tmp_path, ScriptedProvider([blocked]))
        first = asyncio.create_task(ctl.send("one"))
        await asyncio.sleep(0.01)
        second = await ctl.send("two")
        busy_direct = (await ctl.run_tool_directly("fast", {})).response == {"error": "busy"}
        gate.set()
        return await first, second, busy_direct

    first, second, busy_direct = asyncio.run(run())
    assert first.state == "done"
    assert (second.state, second.error) == ("busy", "busy")
    assert busy_direct


def test_cancel_while_idle_is_a_no_op(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([text("ok")]))
    assert ctl.cancel() is False
    assert asyncio.run(ctl.send("hi")).state == "done"


def test_rate_limit_spaces_requests(tmp_path) -> None:
    provider = ScriptedProvider([[call(0, "c1", "fast", "{}")], text("done")])
    ctl = _controller(tmp_path, provider, rate_limit_ms=50)
    events: list[dict] = []
    outcome = asyncio.run(ctl.send("hi", on_event=events.append))
    assert outcome.state == "done"
    assert any(e["type"] == "session.rate_limited" for e in events)


def test_condense_replaces_history_with_summary(tmp_path) -> None:
    provider = ScriptedProvider([text("first answer"), text("Here is a summary of our conversation so far: hi")])
    ctl = _controller(tmp_path, provider)
    asyncio.run(ctl.send("hi"))

    outcome = asyncio.run(ctl.condense_history())
    assert outcome.state == "done"
    turns = ctl.history.turns
    assert len(turns) == 1
    assert turns[0].role == "model"
    assert isinstance(turns[0].parts[0], Text)
    assert turns[0].text().startswith("Here is a summary")

    ctl.clear_history()
    empty = asyncio.run(ctl.condense_history())
    assert empty.error == "history_empty"


def test_run_tool_directly(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([]))
    out = asyncio.run(ctl.run_tool_directly("fast", {"a": 1}))
    assert out.ok
    assert out.response == {"value": "fast", "args": {"a": 1}}
    assert out.id.startswith("user_")


def test_rejected_send_still_ends_with_idle(tmp_path) -> None:
    ctl = _controller(tmp_path, ScriptedProvider([]))
    events: list[dict] = []
    outcome = asyncio.run(ctl.send("", on_event=events.append))
    assert outcome.error == "missing_message"
    assert [e["type"] for e in events] == ["session.error", "session.idle"]
    assert events[0]["error"] == "missing_message"


def test_unknown_tool_from_model_is_reported_back(tmp_path) -> None:
    provider = ScriptedProvider([[call(0, "c1", "delete_everything", "{}")], text("ok")])
    ctl = _controller(tmp_path, provider)
    outcome = asyncio.run(ctl.send("clean up"))
    assert outcome.state == "done"
    results = [p for p in ctl.history.turns[2].parts if isinstance(p, ToolResult)]
    assert [(r.id, r.response) for r in results] == [("c1", {"error": "Unknown tool 'delete_everything'."})]


def test_cancel_during_rate_limit_wait(tmp_path) -> None:
    provider = ScriptedProvider([[call(0, "c1", "fast", "{}")], text("never sent")])
    ctl = _controller(tmp_path, provider, rate_limit_ms=60_000)

    def on_event(ev: dict) -> None:
        if ev["type"] == "session.rate_limited":
            ctl.cancel()

    outcome = asyncio.run(ctl.send("hi", on_event=on_event))
    assert (outcome.state, outcome.error) == ("cancelled", "cancelled")
    assert len(provider.requests) == 1
    assert not ctl.busy


class ClosingProvider:
    """Streams fragments one at a time and records whether the stream was closed."""

    name = "closing"

    def __init__(self, fragments: list[Fragment]) -> None:
        self.fragments = fragments
        self.yielded = 0
        self.closed = False

    async def stream_turn(self, history, tool_schemas, system_prompt, credential):
        try:
            for frag in self.fragments:
                self.yielded += 1
                yield frag
        finally:
            self.closed = True


def test_cancel_mid_stream_closes_provider_stream(tmp_path) -> None:
    provider = ClosingProvider([Fragment(text_delta="a"), Fragment(text_delta="b"), Fragment(text_delta="c")])
    ctl = _controller(tmp_path, provider)

    def on_event(ev: dict) -> None:
        if ev["type"] == "assistant.message_delta":
            ctl.cancel()

    async def run():
        outcome = await ctl.send("hi", on_event=on_event)
        # Checked before the loop's own async-generator cleanup can run.
        return outcome, provider.closed

    outcome, closed_on_return = asyncio.run(run())
    assert outcome.state == "cancelled"
    assert closed_on_return
    assert provider.yielded == 2
    assert [t.role for t in ctl.history.turns] == ["user"]
