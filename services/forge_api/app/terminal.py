from __future__ import annotations

from dataclasses import dataclass
import os
import subprocess


TERMINAL_TIMEOUT_S = 15
OUTPUT_MAX_CHARS = 30000


@dataclass(frozen=True)
class SubprocessResult:
    ok: bool
    stdout: str
    stderr: str
    returncode: int
    timed_out: bool

    @property
    def output(self) -> str:
        out = (self.stdout or "") + (self.stderr or "")
        if len(out) > OUTPUT_MAX_CHARS:
            out = out[:OUTPUT_MAX_CHARS] + "\n... (output truncated)"
        return out


class CommandFailed(RuntimeError):
    def __init__(self, message: str, result: SubprocessResult) -> None:
        super().__init__(f"{message}\n{result.output}".rstrip())
        self.message = f"{message}\n{result.output}".rstrip()
        self.result = result


def _run_subprocess(cmd: list[str] | str, cwd: str, *, shell: bool = False, timeout_seconds: int = TERMINAL_TIMEOUT_S) -> SubprocessResult:
    try:
        p = subprocess.run(
            cmd,
            cwd=cwd,
            shell=shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
        return SubprocessResult(ok=p.returncode == 0, stdout=p.stdout or "", stderr=p.stderr or "", returncode=p.returncode, timed_out=False)
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode("utf-8", "replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        return SubprocessResult(ok=False, stdout=stdout, stderr=stderr, returncode=124, timed_out=True)


def run_terminal_command(command: str, cwd: str, *, timeout_seconds: int = TERMINAL_TIMEOUT_S) -> str:
    """Run `command` through the platform shell in `cwd`; raise CommandFailed on non-zero exit."""

    cmd = str(command or "").strip()
    if not cmd:
        raise ValueError("A 'command' parameter is required.")
    if not os.path.isdir(cwd):
        raise ValueError(f"Working directory does not exist: {cwd}")
    r = _run_subprocess(cmd, cwd, shell=True, timeout_seconds=timeout_seconds)
    if r.timed_out:
        raise CommandFailed("Command execution timed out.", r)
    if not r.ok:
        raise CommandFailed(f"Command failed with exit code {r.returncode}.", r)
    return r.output


def git_file_history(path: str, cwd: str) -> str:
    r = _run_subprocess(["git", "log", "--pretty=format:%h - %an, %ar : %s", "--", path], cwd)
    if not r.ok:
        raise CommandFailed(f"git log failed with exit code {r.returncode}.", r)
    return r.stdout
