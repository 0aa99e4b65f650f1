from __future__ import annotations

import json
from typing import Any, AsyncIterator, Protocol

import openai
from openai import AsyncOpenAI

from .errors import ProviderFault
from .state import Attachment, Fragment, Text, ToolCall, ToolDelta, ToolResult, Turn


class ModelProvider(Protocol):
    name: str

    def stream_turn(
        self,
        history: list[Turn],
        tool_schemas: list[dict[str, Any]],
        system_prompt: str,
        credential: str,
    ) -> AsyncIterator[Fragment]: ...


def _user_content(parts: list[Text | Attachment]) -> str | list[dict[str, Any]]:
    if not any(isinstance(p, Attachment) for p in parts):
        return "".join(p.text for p in parts if isinstance(p, Text))
    content: list[dict[str, Any]] = []
    for p in parts:
        if isinstance(p, Text):
            if p.text:
                content.append({"type": "text", "text": p.text})
        elif p.mime_type.startswith("image/"):
            content.append({"type": "image_url", "image_url": {"url": f"data:{p.mime_type};base64,{p.data_b64}"}})
        else:
            content.append({"type": "text", "text": f"[attachment {p.name or 'file'} ({p.mime_type}) omitted]"})
    return content


def history_to_messages(history: list[Turn], system_prompt: str) -> list[dict[str, Any]]:
    """Map turns onto OpenAI chat messages (tool results become role=tool messages)."""

    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for i, turn in enumerate(history):
        if turn.role == "model":
            msg: dict[str, Any] = {"role": "assistant", "content": turn.text() or None}
            # Calls whose results were discarded (cancelled turn) are dropped; the API rejects unanswered calls.
            answered: set[str] = set()
            if i + 1 < len(history):
                answered = {p.id for p in history[i + 1].parts if isinstance(p, ToolResult)}
            calls = [c for c in turn.tool_calls() if c.id in answered]
            if not calls and msg["content"] is None:
                continue
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.args, ensure_ascii=False)},
                    }
                    for c in calls
                ]
            messages.append(msg)
            continue
        user_parts: list[Text | Attachment] = []
        for p in turn.parts:
            if isinstance(p, ToolResult):
                messages.append(
                    {"role": "tool", "tool_call_id": p.id, "content": json.dumps(p.response, ensure_ascii=False)[:200000]}
                )
            elif isinstance(p, (Text, Attachment)):
                user_parts.append(p)
            elif isinstance(p, ToolCall):
                continue
        if user_parts:
            messages.append({"role": "user", "content": _user_content(user_parts)})
    return messages


class OpenAIProvider:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    name = "openai"

    def __init__(self, model: str, *, base_url: str | None = None) -> None:
        self.model = model
        self.base_url = base_url

    def _client(self, credential: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=credential, base_url=self.base_url) if self.base_url else AsyncOpenAI(api_key=credential)

    async def stream_turn(
        self,
        history: list[Turn],
        tool_schemas: list[dict[str, Any]],
        system_prompt: str,
        credential: str,
    ) -> AsyncIterator[Fragment]:
        client = self._client(credential)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": history_to_messages(history, system_prompt),
            "stream": True,
        }
        if tool_schemas:
            kwargs["tools"] = tool_schemas
            kwargs["tool_choice"] = "auto"
        try:
            stream = await client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                tool_deltas = tuple(
                    ToolDelta(
                        index=int(tc.index),
                        id=tc.id or None,
                        name=(tc.function.name if tc.function else None) or None,
                        arguments=(tc.function.arguments if tc.function else "") or "",
                    )
                    for tc in (delta.tool_calls or [])
                )
                text = delta.content or ""
                if text or tool_deltas:
                    yield Fragment(text_delta=text, tool_deltas=tool_deltas)
        except openai.OpenAIError as e:
            raise ProviderFault(f"{type(e).__name__}: {e}", status=getattr(e, "status_code", None)) from e
        finally:
            await client.close()
