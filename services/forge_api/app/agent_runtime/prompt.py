from __future__ import annotations

from datetime import datetime
import os

from ..state_files import read_yaml


CONDENSE_PROMPT = (
    "Please summarize our conversation so far in a concise way. Include all critical decisions, "
    "file modifications, and key insights. The goal is to reduce the context size while retaining "
    "the essential information for our ongoing task. Start the summary with "
    "'Here is a summary of our conversation so far:'."
)


def _code_prompt() -> str:
    return (
        "You are Forge, an expert programming agent working inside the user's open project.\n"
        "Rules:\n"
        "- File paths are relative to the project root. Never prefix them with the project folder name.\n"
        "- Call get_project_structure before reading or creating files if you are unsure of a path.\n"
        "- Read a file before rewriting it; rewrite_file takes the complete new content.\n"
        "- After a tool runs, summarize the result and state the next step before calling another tool.\n"
        "- If a tool result contains feedback STOP, stop editing that file and report to the user.\n"
        "- Use Markdown in replies.\n"
    )


def _plan_prompt() -> str:
    return (
        "You are Forge in planning mode, a research analyst. Do not write code.\n"
        "Rules:\n"
        "- Use duckduckgo_search and read_url to gather fresh information; cite sources.\n"
        "- Reply with an executive summary, sections with headings, actionable steps and a references list.\n"
    )


def load_custom_rules(state_dir: str) -> dict[str, str]:
    raw = read_yaml(os.path.join(state_dir, "rules.yaml"))
    return {str(k): str(v) for k, v in raw.items() if isinstance(v, str) and v.strip()}


def system_prompt(mode: str = "code", *, state_dir: str | None = None, now: datetime | None = None) -> str:
    text = _plan_prompt() if mode == "plan" else _code_prompt()
    ts = (now or datetime.now()).astimezone()
    text += f"\nCurrent time: {ts.strftime('%Y-%m-%d %H:%M:%S %Z')}\n"
    if state_dir:
        rule = load_custom_rules(state_dir).get(mode)
        if rule:
            text += f"\n# USER-DEFINED RULES\n{rule.strip()}\n"
    return text
