from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
import inspect
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Union

from ..agent_log import append_agent_event, maybe_log_text
from ..credentials import CredentialRing
from ..settings import Settings
from ..workspace import WorkspaceGateway
from .circuit_breaker import CircuitBreaker
from .errors import ProviderFault
from .health_state import record_turn, set_last_agent_error
from .prompt import CONDENSE_PROMPT, system_prompt
from .providers import ModelProvider
from .registry import ToolDispatcher
from .state import (
    Attachment,
    History,
    Part,
    Text,
    ToolCall,
    ToolInvocation,
    ToolOutcome,
    ToolResult,
    Turn,
    TurnOutcome,
    now_ms,
)
from .tools import tool_schemas_for_mode


EMPTY_RESPONSE_MESSAGE = (
    "[The AI model returned an empty response, which usually indicates a problem with the data it "
    "received from a tool. Check the tool output for anything unexpected (like a file being too large "
    "or having strange content) and try your request again.]"
)

EventCallback = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]

_POLL_INTERVAL_S = 0.1


@dataclass
class _PendingCall:
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class ToolCallAssembler:
    """Joins streamed tool-call deltas (keyed by index) into complete invocations."""

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}

    def feed(self, index: int, *, id: str | None, name: str | None, arguments: str) -> None:
        pc = self._calls.setdefault(index, _PendingCall())
        if id:
            pc.id = id
        if name:
            pc.name = name
        if arguments:
            pc.arguments += arguments

    def complete(self) -> tuple[list[ToolInvocation], list[dict[str, Any]]]:
        done: list[ToolInvocation] = []
        dropped: list[dict[str, Any]] = []
        for index in sorted(self._calls):
            pc = self._calls[index]
            raw = pc.arguments.strip() or "{}"
            try:
                args = json.loads(raw)
            except ValueError:
                args = None
            if not pc.id or not pc.name or not isinstance(args, dict):
                dropped.append({"index": index, "id": pc.id, "name": pc.name, "arguments_len": len(pc.arguments)})
                continue
            done.append(ToolInvocation(id=pc.id, name=pc.name, args=args))
        return done, dropped


class TurnController:
    """Drives one conversation: stream a model turn, run its tool calls, feed results back, repeat."""

    def __init__(
        self,
        *,
        settings: Settings,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        credentials: CredentialRing,
        history: History,
        breaker: CircuitBreaker,
        workspace: WorkspaceGateway | None = None,
        mode: str | None = None,
        max_rounds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.dispatcher = dispatcher
        self.credentials = credentials
        self.history = history
        self.breaker = breaker
        self.workspace = workspace
        self.mode = mode or settings.agent_mode
        self.max_rounds = settings.max_tool_rounds if max_rounds is None else max_rounds
        self._clock = clock
        self._last_request: float | None = None
        self._cancel = asyncio.Event()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def cancel(self) -> bool:
        if not self._busy:
            return False
        self._cancel.set()
        append_agent_event(self.settings, {"type": "agent.cancel.request"})
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def _emit(self, on_event: EventCallback | None, event: dict[str, Any]) -> None:
        if on_event is None:
            return
        r = on_event(event)
        if inspect.isawaitable(r):
            await r

    async def _sleep(self, seconds: float) -> bool:
        """Sleep in short slices; return False if cancelled meanwhile."""

        deadline = self._clock() + max(0.0, seconds)
        while True:
            if self.cancelled:
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(_POLL_INTERVAL_S, remaining))

    async def _rate_limit(self, on_event: EventCallback | None) -> bool:
        interval = max(0, self.settings.rate_limit_ms) / 1000.0
        if self._last_request is not None and interval > 0:
            wait = interval - (self._clock() - self._last_request)
            if wait > 0:
                await self._emit(on_event, {"type": "session.rate_limited", "wait_ms": int(wait * 1000)})
                if not await self._sleep(wait):
                    return False
        self._last_request = self._clock()
        return True

    def _tool_schemas(self) -> list[dict[str, Any]]:
        return tool_schemas_for_mode(self.dispatcher.registry, self.mode)

    def _system_prompt(self) -> str:
        return system_prompt(self.mode, state_dir=self.settings.state_dir)

    async def _stream_once(
        self,
        credential: str,
        tool_schemas: list[dict[str, Any]],
        prompt: str,
        history: list[Turn],
        on_event: EventCallback | None,
    ) -> tuple[str, list[ToolInvocation]] | None:
        text_parts: list[str] = []
        assembler = ToolCallAssembler()
        # aclosing() runs the provider's cleanup even when a cancel leaves the stream early.
        async with aclosing(self.provider.stream_turn(history, tool_schemas, prompt, credential)) as stream:
            async for frag in stream:
                if self.cancelled:
                    return None
                if frag.text_delta:
                    text_parts.append(frag.text_delta)
                    await self._emit(on_event, {"type": "assistant.message_delta", "delta": frag.text_delta})
                for d in frag.tool_deltas:
                    assembler.feed(d.index, id=d.id, name=d.name, arguments=d.arguments)
        invocations, dropped = assembler.complete()
        if dropped:
            append_agent_event(self.settings, {"type": "agent.tool.incomplete", "calls": dropped})
        return "".join(text_parts), invocations

    def _finish(self, outcome: TurnOutcome) -> TurnOutcome:
        record_turn(outcome.state, outcome.rounds, now_ms())
        if outcome.state == "failed":
            set_last_agent_error(outcome.error or "")
        append_agent_event(
            self.settings,
            {
                "type": "agent.chat.response",
                "state": outcome.state,
                "rounds": outcome.rounds,
                "error": outcome.error,
                "message_len": len(outcome.text),
                "message": maybe_log_text(outcome.text),
            },
        )
        return outcome

    async def _reject(self, outcome: TurnOutcome, on_event: EventCallback | None) -> TurnOutcome:
        # Every send() ends its event stream with session.idle, including ones that never start.
        await self._emit(on_event, {"type": "session.error", "error": outcome.error, "message": outcome.error})
        await self._emit(on_event, {"type": "session.idle"})
        return outcome

    async def send(
        self,
        text: str,
        *,
        attachment: Attachment | None = None,
        on_event: EventCallback | None = None,
    ) -> TurnOutcome:
        user_text = str(text or "").strip()
        if not user_text and attachment is None:
            return await self._reject(TurnOutcome(state="failed", error="missing_message"), on_event)
        if self._busy:
            return await self._reject(TurnOutcome(state="busy", error="busy"), on_event)

        self._busy = True
        self._cancel.clear()
        # A new user-initiated prompt starts a fresh self-correction budget and key rotation.
        self.breaker.reset()
        self.credentials.reset_tried()
        append_agent_event(
            self.settings,
            {
                "type": "agent.chat.request",
                "message_len": len(user_text),
                "message": maybe_log_text(user_text),
                "attachment": attachment.name if attachment else None,
            },
        )
        try:
            await self._emit(on_event, {"type": "session.started"})
            outcome = await self._run(user_text, attachment, on_event)
            if outcome.error:
                await self._emit(
                    on_event, {"type": "session.error", "error": outcome.error, "message": outcome.text or outcome.error}
                )
            return self._finish(outcome)
        finally:
            self._busy = False
            await self._emit(on_event, {"type": "session.idle"})

    async def _run(self, user_text: str, attachment: Attachment | None, on_event: EventCallback | None) -> TurnOutcome:
        parts: list[Part] = []
        if user_text:
            parts.append(Text(user_text))
        if attachment is not None:
            parts.append(attachment)
        self.history.append(Turn(role="user", parts=tuple(parts)))

        rounds = 0
        tool_schemas = self._tool_schemas()
        prompt = self._system_prompt()
        while True:
            if self.cancelled:
                return TurnOutcome(state="cancelled", error="cancelled", rounds=rounds)
            if self.max_rounds and rounds >= self.max_rounds:
                append_agent_event(self.settings, {"type": "agent.error", "error": "tool_loop_exceeded"})
                return TurnOutcome(state="failed", error="tool_loop_exceeded", rounds=rounds)
            if not await self._rate_limit(on_event):
                return TurnOutcome(state="cancelled", error="cancelled", rounds=rounds)

            try:
                if not len(self.credentials):
                    raise ProviderFault("no_credentials")
                credential = self.credentials.current()
                streamed = await self._stream_once(credential, tool_schemas, prompt, self.history.turns, on_event)
            except ProviderFault as e:
                append_agent_event(
                    self.settings,
                    {"type": "agent.provider.error", "error": e.message[:2000], "status": e.status, "key_index": self.credentials.index},
                )
                if not len(self.credentials):
                    return TurnOutcome(state="failed", error="no_credentials", rounds=rounds)
                self.credentials.rotate()
                if self.credentials.exhausted():
                    return TurnOutcome(
                        state="failed",
                        error="all_credentials_failed",
                        text="All API keys failed. Please check your keys in the settings.",
                        rounds=rounds,
                    )
                await self._emit(on_event, {"type": "session.retry", "key_index": self.credentials.index, "error": e.message})
                # The next pass waits one full rate-limit interval before retrying with the rotated key.
                self._last_request = self._clock()
                continue

            if streamed is None or self.cancelled:
                return TurnOutcome(state="cancelled", error="cancelled", rounds=rounds)
            text, invocations = streamed
            rounds += 1

            model_parts: list[Part] = []
            if text:
                model_parts.append(Text(text))
            model_parts.extend(ToolCall(id=inv.id, name=inv.name, args=inv.args) for inv in invocations)
            if model_parts:
                self.history.append(Turn(role="model", parts=tuple(model_parts)))

            if not invocations:
                if not text:
                    return TurnOutcome(state="failed", error="empty_response", text=EMPTY_RESPONSE_MESSAGE, rounds=rounds)
                return TurnOutcome(state="done", text=text, rounds=rounds)

            for inv in invocations:
                await self._emit(on_event, {"type": "tool.call", "id": inv.id, "name": inv.name, "args": inv.args})
            outcomes = await asyncio.gather(*(self.dispatcher.dispatch(inv, self.workspace) for inv in invocations))
            if self.cancelled:
                append_agent_event(self.settings, {"type": "agent.tool.discarded", "count": len(outcomes)})
                return TurnOutcome(state="cancelled", error="cancelled", rounds=rounds)

            for out in outcomes:
                await self._emit(
                    on_event, {"type": "tool.result", "id": out.id, "name": out.name, "ok": out.ok, "response": out.response}
                )
            self.history.append(
                Turn(role="user", parts=tuple(ToolResult(id=o.id, name=o.name, response=o.response) for o in outcomes))
            )

    def clear_history(self) -> None:
        self.history.clear()
        append_agent_event(self.settings, {"type": "agent.history.clear"})

    def view_history(self) -> list[dict[str, Any]]:
        return self.history.to_list()

    async def condense_history(self) -> TurnOutcome:
        """Ask the model (no tools) for a summary and replace the history with it."""

        if self._busy:
            return TurnOutcome(state="busy", error="busy")
        if not len(self.history):
            return TurnOutcome(state="failed", error="history_empty", text="History is already empty.")
        self._busy = True
        self._cancel.clear()
        self.credentials.reset_tried()
        try:
            request = self.history.turns + [Turn(role="user", parts=(Text(CONDENSE_PROMPT),))]
            while True:
                if not await self._rate_limit(None):
                    return TurnOutcome(state="cancelled", error="cancelled")
                try:
                    if not len(self.credentials):
                        raise ProviderFault("no_credentials")
                    streamed = await self._stream_once(self.credentials.current(), [], "", request, None)
                    break
                except ProviderFault as e:
                    append_agent_event(self.settings, {"type": "agent.provider.error", "error": e.message[:2000], "status": e.status})
                    if not len(self.credentials):
                        return TurnOutcome(state="failed", error="no_credentials")
                    self.credentials.rotate()
                    if self.credentials.exhausted():
                        return TurnOutcome(state="failed", error="all_credentials_failed")
            if streamed is None:
                return TurnOutcome(state="cancelled", error="cancelled")
            summary = streamed[0].strip()
            if not summary:
                return TurnOutcome(state="failed", error="empty_response", text=EMPTY_RESPONSE_MESSAGE)
            self.history.replace([Turn(role="model", parts=(Text(summary),))])
            append_agent_event(self.settings, {"type": "agent.history.condense", "summary_len": len(summary)})
            return TurnOutcome(state="done", text=summary, rounds=1)
        finally:
            self._busy = False

    async def run_tool_directly(self, name: str, args: dict[str, Any] | None = None) -> ToolOutcome:
        """User-initiated dispatch outside the model loop."""

        inv = ToolInvocation(id=f"user_{uuid.uuid4().hex[:12]}", name=str(name or ""), args=dict(args or {}))
        if self._busy:
            return ToolOutcome(id=inv.id, name=inv.name, response={"error": "busy"}, ok=False)
        return await self.dispatcher.dispatch(inv, self.workspace)
