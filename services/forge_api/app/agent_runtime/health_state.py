from __future__ import annotations

from typing import Any

# Last-turn status for /health, kept apart from core.py so main.py can read it without a controller.

_LAST_AGENT_ERROR: str = ""
_LAST_TURN: dict[str, Any] = {}


def set_last_agent_error(msg: str) -> None:
    global _LAST_AGENT_ERROR
    _LAST_AGENT_ERROR = str(msg or "")[:2000]


def get_last_agent_error() -> str:
    return str(_LAST_AGENT_ERROR or "")


def record_turn(state: str, rounds: int, ts_ms: int) -> None:
    _LAST_TURN.clear()
    _LAST_TURN.update({"state": state, "rounds": int(rounds), "ts": int(ts_ms)})


def last_turn() -> dict[str, Any]:
    return dict(_LAST_TURN)
