from __future__ import annotations

from dataclasses import dataclass, field
import os
import re


@dataclass(frozen=True)
class Settings:
    workspace_root: str | None
    api_keys: list[str]
    agent_model: str
    openai_base_url: str | None
    agent_mode: str
    rate_limit_ms: int
    rewrite_threshold: int
    max_tool_rounds: int
    allowed_origins: list[str] = field(default_factory=list)
    state_dir: str = ""


def _int_or(raw: str | None, default: int, *, lo: int = 0) -> int:
    try:
        return max(lo, int(str(raw).strip()))
    except Exception:
        return default


def _load_dotenv(path: str) -> dict[str, str]:
    """
    Minimal .env reader.
    Supports lines like:
      KEY=value
      KEY="value"
      export KEY=value
    Ignores comments and blank lines.
    """
    out: dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f.read().splitlines():
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export ") :].strip()
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                key = k.strip()
                val = v.strip()
                if not key:
                    continue
                if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
                    val = val[1:-1]
                out[key] = val
    except Exception:
        return {}
    return out


def parse_api_keys(raw: str | None) -> list[str]:
    # One key per line (the settings textarea) or comma-separated (env var).
    parts = re.split(r"[\n,]", str(raw or ""))
    return [p.strip() for p in parts if p.strip()]


def state_dir_for(workspace_root: str | None) -> str:
    if workspace_root:
        return os.path.join(os.path.abspath(workspace_root), ".forge")
    return os.path.abspath(os.path.join(os.path.expanduser("~"), ".forge"))


def get_settings() -> Settings:
    workspace_root = (os.environ.get("FORGE_WORKSPACE_ROOT") or "").strip() or None

    # If env vars aren't exported for the API process, fall back to the workspace .env.
    dotenv: dict[str, str] = {}
    if workspace_root:
        dotenv = _load_dotenv(os.path.join(workspace_root, ".env"))

    def env_or_dotenv(key: str) -> str | None:
        return os.environ.get(key) or dotenv.get(key)

    api_keys = parse_api_keys(env_or_dotenv("FORGE_API_KEYS") or env_or_dotenv("OPENAI_API_KEY"))
    agent_model = (env_or_dotenv("FORGE_AGENT_MODEL") or env_or_dotenv("OPENAI_MODEL") or "gpt-4o").strip()
    base_url = (env_or_dotenv("FORGE_OPENAI_BASE_URL") or "").strip() or None
    mode = (env_or_dotenv("FORGE_AGENT_MODE") or "code").strip().lower()
    if mode not in ("code", "plan"):
        mode = "code"
    allowed_origins = [
        os.environ.get("FORGE_ALLOWED_ORIGIN") or "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    return Settings(
        workspace_root=os.path.abspath(workspace_root) if workspace_root else None,
        api_keys=api_keys,
        agent_model=agent_model,
        openai_base_url=base_url,
        agent_mode=mode,
        rate_limit_ms=_int_or(env_or_dotenv("FORGE_RATE_LIMIT_MS"), 5000),
        rewrite_threshold=_int_or(env_or_dotenv("FORGE_REWRITE_THRESHOLD"), 1_000_000, lo=1),
        max_tool_rounds=_int_or(env_or_dotenv("FORGE_MAX_TOOL_ROUNDS"), 0),
        allowed_origins=allowed_origins,
        state_dir=state_dir_for(workspace_root),
    )
