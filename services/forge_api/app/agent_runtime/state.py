from __future__ import annotations

from dataclasses import dataclass, field
import os
import time
from typing import Any, Literal, Union

from ..state_files import read_json, write_json


def now_ms() -> int:
    return int(time.time() * 1000)


Role = Literal["user", "model"]


@dataclass(frozen=True)
class Text:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class Attachment:
    mime_type: str
    data_b64: str
    name: str = ""
    kind: Literal["attachment"] = "attachment"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any]
    kind: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResult:
    id: str
    name: str
    response: dict[str, Any]
    kind: Literal["tool_result"] = "tool_result"


Part = Union[Text, Attachment, ToolCall, ToolResult]


@dataclass(frozen=True)
class Turn:
    role: Role
    parts: tuple[Part, ...]

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, Text))

    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolOutcome:
    id: str
    name: str
    response: dict[str, Any]
    ok: bool


@dataclass(frozen=True)
class ToolDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class Fragment:
    text_delta: str = ""
    tool_deltas: tuple[ToolDelta, ...] = ()


TurnState = Literal["done", "cancelled", "failed", "busy"]


@dataclass(frozen=True)
class TurnOutcome:
    state: TurnState
    text: str = ""
    error: str | None = None
    rounds: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": "ok" if self.state == "done" else "error", "state": self.state, "rounds": self.rounds}
        if self.text:
            out["message"] = self.text
        if self.error:
            out["error"] = self.error
        return out


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, Text):
        return {"kind": "text", "text": part.text}
    if isinstance(part, Attachment):
        return {"kind": "attachment", "mime_type": part.mime_type, "data_b64": part.data_b64, "name": part.name}
    if isinstance(part, ToolCall):
        return {"kind": "tool_call", "id": part.id, "name": part.name, "args": part.args}
    return {"kind": "tool_result", "id": part.id, "name": part.name, "response": part.response}


def part_from_dict(raw: dict[str, Any]) -> Part | None:
    kind = str(raw.get("kind") or "")
    if kind == "text":
        return Text(text=str(raw.get("text") or ""))
    if kind == "attachment":
        return Attachment(
            mime_type=str(raw.get("mime_type") or "application/octet-stream"),
            data_b64=str(raw.get("data_b64") or ""),
            name=str(raw.get("name") or ""),
        )
    if kind == "tool_call":
        return ToolCall(id=str(raw.get("id") or ""), name=str(raw.get("name") or ""), args=dict(raw.get("args") or {}))
    if kind == "tool_result":
        return ToolResult(id=str(raw.get("id") or ""), name=str(raw.get("name") or ""), response=dict(raw.get("response") or {}))
    return None


def turn_to_dict(turn: Turn) -> dict[str, Any]:
    return {"role": turn.role, "parts": [part_to_dict(p) for p in turn.parts]}


def turn_from_dict(raw: dict[str, Any]) -> Turn | None:
    role = raw.get("role")
    if role not in ("user", "model"):
        return None
    parts = [p for p in (part_from_dict(x) for x in raw.get("parts") or [] if isinstance(x, dict)) if p is not None]
    return Turn(role=role, parts=tuple(parts))


class History:
    """Ordered conversation turns; append-only except for clear/replace."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._turns: list[Turn] = []
        if path:
            self._turns = self._load(path)

    @staticmethod
    def _load(path: str) -> list[Turn]:
        raw = read_json(path)
        turns: list[Turn] = []
        for item in raw.get("turns") or []:
            if isinstance(item, dict):
                t = turn_from_dict(item)
                if t is not None:
                    turns.append(t)
        return turns

    def _persist(self) -> None:
        if self.path:
            write_json(self.path, {"turns": [turn_to_dict(t) for t in self._turns], "updated_at_ms": now_ms()})

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)
        self._persist()

    def clear(self) -> None:
        self._turns = []
        self._persist()

    def replace(self, turns: list[Turn]) -> None:
        self._turns = list(turns)
        self._persist()

    def to_list(self) -> list[dict[str, Any]]:
        return [turn_to_dict(t) for t in self._turns]


def history_path(state_dir: str) -> str:
    return os.path.join(state_dir, "history.json")
