from __future__ import annotations

import json
import os
from typing import Any

import yaml


def read_json(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.loads(f.read() or "{}")
        return obj if isinstance(obj, dict) else {}
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        return {}


def write_json(path: str, payload: dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True, ensure_ascii=False)
    os.replace(tmp, path)


def read_yaml(path: str) -> dict[str, Any]:
    """Load a YAML mapping; missing or malformed files read as empty."""

    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = yaml.safe_load(f.read())
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError):
        return {}
    return obj if isinstance(obj, dict) else {}
