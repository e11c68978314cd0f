"""Command allowlisting and action budgeting for tool execution.

Provides:
- Command allowlisting with separator-aware parsing
- Working-directory confinement to the workspace
- Subprocess environment sanitization
- Thread-safe sliding-window action tracking
"""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ActionTracker:
    """Sliding-window action tracker (default: last hour)."""

    window_seconds: int = 3600
    _timestamps: deque[float] = field(default_factory=deque)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _prune(self) -> None:
        cutoff = time.time() - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def record(self) -> int:
        with self._lock:
            self._prune()
            self._timestamps.append(time.time())
            return len(self._timestamps)

    def count(self) -> int:
        with self._lock:
            self._prune()
            return len(self._timestamps)


@dataclass
class CommandPolicy:
    """Execution policy for the shell tool provider."""

    workspace_dir: Path = field(default_factory=lambda: Path(".").resolve())
    allowed_commands: list[str] = field(
        default_factory=lambda: ["git", "ls", "cat", "grep", "find", "echo", "pwd", "pytest"]
    )
    sanitize_env: bool = True
    safe_env_vars: list[str] = field(
        default_factory=lambda: ["PATH", "HOME", "TERM", "LANG", "USER", "SHELL", "TMPDIR"]
    )

    @classmethod
    def from_config(cls, config, workspace_dir: Path) -> "CommandPolicy":
        return cls(
            workspace_dir=Path(workspace_dir).resolve(),
            allowed_commands=list(config.tools.allowed_commands),
            sanitize_env=config.tools.sanitize_env,
            safe_env_vars=list(config.tools.safe_env_vars),
        )

    def is_command_allowed(self, command: str | list[str]) -> bool:
        """Validate the entire shell command, not just the first token."""
        if isinstance(command, list):
            return bool(command) and Path(command[0]).name in self.allowed_commands

        if "`" in command or "$(" in command or "${" in command:
            return False

        if ">" in command:
            return False

        normalized = command
        for sep in ("&&", "||"):
            normalized = normalized.replace(sep, "\x00")
        for sep in ("\n", ";", "|"):
            normalized = normalized.replace(sep, "\x00")

        has_cmd = False
        for segment in normalized.split("\x00"):
            segment = segment.strip()
            if not segment:
                continue

            cmd_part = _skip_env_assignments(segment)
            base = _base_command(cmd_part)
            if not base:
                continue

            has_cmd = True
            if base not in self.allowed_commands:
                return False

        return has_cmd

    def is_cwd_allowed(self, cwd: str | Path) -> bool:
        resolved = Path(cwd).resolve()
        return _starts_with_path(resolved, self.workspace_dir.resolve())

    def build_subprocess_env(self, extra_env: dict[str, str] | None = None) -> dict[str, str]:
        """Build execution env with optional sanitization."""
        if self.sanitize_env:
            env = {k: os.environ[k] for k in self.safe_env_vars if k in os.environ}
        else:
            env = dict(os.environ)

        if extra_env:
            env.update(extra_env)

        return env


def _skip_env_assignments(command_segment: str) -> str:
    rest = command_segment.strip()
    while rest:
        parts = rest.split(maxsplit=1)
        word = parts[0]
        if "=" in word and (word[0].isalpha() or word[0] == "_"):
            rest = parts[1] if len(parts) > 1 else ""
            rest = rest.lstrip()
            continue
        return rest
    return ""


def _base_command(command_segment: str) -> str:
    if not command_segment:
        return ""
    head = command_segment.split(maxsplit=1)[0]
    return Path(head).name


def _starts_with_path(path: Path, prefix: Path) -> bool:
    try:
        path.relative_to(prefix)
        return True
    except ValueError:
        return False
