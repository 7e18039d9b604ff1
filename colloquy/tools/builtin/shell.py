"""Shell command tool."""

from __future__ import annotations

import os
import platform
import subprocess
from dataclasses import dataclass
from typing import Optional

from colloquy.tools.base import ToolContext, ToolDescriptor, ToolParam
from colloquy.tools.registry import ToolRegistry

DEFAULT_TIMEOUT = 60
MAX_OUTPUT_SIZE = 100000  # 100KB


@dataclass
class ShellResult:
    exit_code: int
    stdout: str
    stderr: str


def _get_shell() -> tuple[str, list[str]]:
    if platform.system() == "Windows":
        return "powershell.exe", ["-NoProfile", "-Command"]
    return os.environ.get("SHELL", "/bin/bash"), ["-c"]


def _clip(text: str, label: str) -> str:
    if len(text) > MAX_OUTPUT_SIZE:
        return text[:MAX_OUTPUT_SIZE] + f"\n... ({label} truncated)"
    return text


def run_shell(ctx: ToolContext, command: str, workdir: Optional[str] = None) -> ShellResult:
    """Run ``command`` and return its exit code and output.

    A non-zero exit code is a normal result; only timeouts and a missing
    working directory raise.
    """
    work_path = ctx.resolve_path(workdir) if workdir else ctx.cwd
    if not work_path.is_dir():
        raise NotADirectoryError(f"Working directory does not exist: {work_path}")

    timeout = int(ctx.settings.get("shell_timeout", DEFAULT_TIMEOUT))
    shell, shell_args = _get_shell()
    try:
        result = subprocess.run(
            [shell, *shell_args, command],
            cwd=str(work_path),
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, "TERM": "dumb"},
        )
    except subprocess.TimeoutExpired as e:
        raise TimeoutError(f"Command timed out after {timeout}s: {command}") from e

    return ShellResult(
        exit_code=result.returncode,
        stdout=_clip(result.stdout, "stdout"),
        stderr=_clip(result.stderr, "stderr"),
    )


def register(registry: ToolRegistry) -> None:
    registry.register(ToolDescriptor(
        name="run_shell",
        description="Run a shell command in the working directory.",
        func=run_shell,
        params=[
            ToolParam("command", "string", "The command to execute"),
            ToolParam("workdir", "string", "Working directory override", required=False),
        ],
        returns="{exit_code, stdout, stderr}",
    ))
