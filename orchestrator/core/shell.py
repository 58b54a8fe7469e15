"""
Subprocess helpers shared by the workspace, patch and deploy steps.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence


@dataclass
class CommandResult:
    """Outcome of a finished (or timed out) subprocess."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def error_text(self, limit: int = 2000) -> str:
        output = (self.stderr or self.stdout or "").strip()
        if not output:
            output = f"exit code {self.returncode}"
        return output[-limit:]


async def run_command(
    args: Sequence[str],
    cwd: Path | str | None = None,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command without a shell and capture its output.

    Timeouts kill the child and are reported through ``timed_out`` rather than
    raised, so callers decide how a slow step maps onto their own errors.
    A missing executable is reported as exit code 127, like a shell would.
    """
    cmd = [str(arg) for arg in args]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as exc:
        return CommandResult(args=cmd, returncode=127, stdout="", stderr=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        return CommandResult(
            args=cmd,
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )

    return CommandResult(
        args=cmd,
        returncode=process.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
