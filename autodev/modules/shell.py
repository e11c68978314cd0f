"""Shell tool provider: the ``execute_tool`` capability.

Runs allowlisted commands inside the workspace with a timeout, captures
stdout/stderr, and reports structured results. Polls the request's cancel
event so an abandoned call kills its subprocess.
"""

from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from autodev.core.exceptions import OperationTimeoutError, ProviderError
from autodev.modules.base import Capability, CapabilityProvider, ModuleRequest, ModuleResponse
from autodev.security.commands import CommandPolicy

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576
_POLL_SECONDS = 0.1


@dataclass
class ShellResult:
    """Structured result from a shell command."""
    command: str
    return_code: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.return_code == 0


def run_command(
    command: str | list[str],
    policy: CommandPolicy,
    cwd: Optional[Path] = None,
    timeout: float = DEFAULT_TIMEOUT,
    cancel_event: Optional[threading.Event] = None,
) -> ShellResult:
    """Execute a command under ``policy`` with timeout and output capture.

    Raises:
        ProviderError: If the policy rejects the command or it can't be started.
        OperationTimeoutError: If the command exceeds ``timeout``.
    """
    cmd_str = command if isinstance(command, str) else " ".join(command)
    if not policy.is_command_allowed(command):
        raise ProviderError(f"Command not allowed by policy: {cmd_str}")

    workdir = Path(cwd) if cwd is not None else policy.workspace_dir
    if not policy.is_cwd_allowed(workdir):
        raise ProviderError(f"Working directory escapes workspace: {workdir}")

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            command,
            shell=isinstance(command, str),
            cwd=str(workdir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=policy.build_subprocess_env(),
        )
    except FileNotFoundError as e:
        raise ProviderError(f"Command not found: {e}") from e
    except OSError as e:
        raise ProviderError(f"Failed to run command: {e}") from e

    deadline = start + timeout
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            cancelled = cancel_event is not None and cancel_event.is_set()
            if cancelled or time.monotonic() >= deadline:
                proc.kill()
                proc.communicate()
                if cancelled:
                    raise ProviderError(f"Command cancelled: {cmd_str}")
                raise OperationTimeoutError(f"execute_tool {cmd_str!r}", timeout)

    return ShellResult(
        command=cmd_str,
        return_code=proc.returncode,
        stdout=_truncate_output(stdout or ""),
        stderr=_truncate_output(stderr or ""),
        duration_seconds=time.monotonic() - start,
    )


def _truncate_output(text: str) -> str:
    if len(text.encode("utf-8")) <= MAX_OUTPUT_BYTES:
        return text

    encoded = text.encode("utf-8")[:MAX_OUTPUT_BYTES]
    truncated = encoded.decode("utf-8", errors="ignore")
    return truncated + "\n... [output truncated]"


class ShellToolProvider(CapabilityProvider):
    """Executes ``run`` requests: ``{"command": str | list, "cwd": rel, "timeout": s}``."""

    name = "shell"
    capabilities = frozenset({Capability.EXECUTE_TOOL})

    def __init__(self, policy: CommandPolicy, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.policy = policy
        self.timeout = timeout

    def invoke(self, request: ModuleRequest) -> ModuleResponse:
        if request.operation != "run":
            raise ProviderError(f"Unsupported execute_tool operation: {request.operation}")
        command = request.payload.get("command")
        if not command:
            raise ProviderError("execute_tool.run requires a 'command'")

        cwd = request.payload.get("cwd")
        workdir = self.policy.workspace_dir / cwd if cwd else None
        timeout = float(request.payload.get("timeout", self.timeout))

        self.logger.debug("Running: %s (cwd=%s, timeout=%.0fs)", command, workdir, timeout)
        result = run_command(
            command,
            policy=self.policy,
            cwd=workdir,
            timeout=timeout,
            cancel_event=request.cancel_event,
        )
        self.logger.debug(
            "Command finished: rc=%d stdout=%d chars stderr=%d chars",
            result.return_code, len(result.stdout), len(result.stderr),
        )
        return ModuleResponse(
            success=result.success,
            data={
                "command": result.command,
                "return_code": result.return_code,
                "stdout": result.stdout,
                "stderr": result.stderr,
            },
            error=None if result.success else (result.stderr.strip() or f"exit code {result.return_code}"),
        )

    def health(self) -> bool:
        return self.policy.workspace_dir.is_dir()
