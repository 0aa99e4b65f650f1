from __future__ import annotations

import os

import pytest

from services.forge_api.app.agent_runtime.errors import ProviderFault
from services.forge_api.app.agent_runtime.prompt import system_prompt
from services.forge_api.app.credentials import CredentialRing
from services.forge_api.app.settings import get_settings, parse_api_keys


def test_ring_rotates_cyclically_and_reports_exhaustion() -> None:
    ring = CredentialRing(["k1", "k2", "k3"])
    assert ring.current() == "k1"
    assert not ring.exhausted()
    ring.rotate()
    assert ring.current() == "k2"
    ring.rotate()
    assert ring.current() == "k3"
    assert ring.exhausted()
    ring.rotate()
    assert ring.index == 0
    assert ring.current() == "k1"

    ring.reset_tried()
    assert not ring.exhausted()


def test_empty_ring_raises_provider_fault() -> None:
    ring = CredentialRing(["", "  "])
    assert len(ring) == 0
    assert ring.exhausted()
    with pytest.raises(ProviderFault):
        ring.current()


def test_parse_api_keys_accepts_lines_and_commas() -> None:
    assert parse_api_keys("a, b\nc\n\n") == ["a", "b", "c"]
    assert parse_api_keys(None) == []


def test_settings_fall_back_to_workspace_dotenv(tmp_path, monkeypatch) -> None:
    for key in ("FORGE_API_KEYS", "OPENAI_API_KEY", "FORGE_AGENT_MODEL", "FORGE_RATE_LIMIT_MS", "FORGE_AGENT_MODE"):
        monkeypatch.delenv(key, raising=False)
    (tmp_path / ".env").write_text(
        'export FORGE_API_KEYS="sk-one,sk-two"\nFORGE_AGENT_MODEL=gpt-test\n# comment\nFORGE_AGENT_MODE=plan\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("FORGE_WORKSPACE_ROOT", str(tmp_path))

    s = get_settings()
    assert s.workspace_root == os.path.abspath(str(tmp_path))
    assert s.api_keys == ["sk-one", "sk-two"]
    assert s.agent_model == "gpt-test"
    assert s.agent_mode == "plan"
    assert s.rate_limit_ms == 5000
    assert s.state_dir == os.path.join(os.path.abspath(str(tmp_path)), ".forge")


def test_system_prompt_appends_user_rules(tmp_path) -> None:
    state_dir = tmp_path / ".forge"
    state_dir.mkdir()
    (state_dir / "rules.yaml").write_text("code: |\n  Always use tabs.\nplan: ''\n", encoding="utf-8")

    code = system_prompt("code", state_dir=str(state_dir))
    assert "# USER-DEFINED RULES\nAlways use tabs." in code
    plan = system_prompt("plan", state_dir=str(state_dir))
    assert "USER-DEFINED RULES" not in plan
    assert "planning mode" in plan
