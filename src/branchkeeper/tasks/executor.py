from __future__ import annotations

import os
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Mapping, Optional, Protocol

from ..errors import ExecError
from ..observability import log_debug
from ..sanitize import sanitize


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    returncode: int = 0


class CommandExecutor(Protocol):
    """Runs one shell command; raises ExecError on failure."""

    def run(self, cmd: str, cwd: Path, env: Mapping[str, str]) -> ExecResult: ...


def _preview(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0][:160] if lines else ""


class SubprocessExecutor:
    """Shell executor with captured text output and a per-command timeout."""

    def __init__(self, timeout: Optional[float] = 900.0):
        self.timeout = timeout

    def run(self, cmd: str, cwd: Path, env: Mapping[str, str]) -> ExecResult:
        child_env = os.environ.copy()
        child_env.update(env)
        log_debug(f"RUN cwd={cwd} cmd={sanitize(cmd)}")
        start = time.time()
        try:
            result = subprocess.run(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=child_env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                close_fds=sys.platform == "win32",
            )
        except TimeoutExpired as exc:
            elapsed = time.time() - start
            log_debug(f"TIMEOUT after {elapsed:.2f}s cmd={sanitize(cmd)}")
            raise ExecError(
                cmd,
                stdout=exc.stdout if isinstance(exc.stdout, str) else "",
                stderr=exc.stderr if isinstance(exc.stderr, str) else "",
                reason=f"Command timed out after {self.timeout}s: {cmd}",
            ) from exc
        except OSError as exc:
            raise ExecError(cmd, reason=f"Command could not be started: {cmd}: {exc}") from exc

        elapsed = time.time() - start
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        log_debug(
            f"DONE rc={result.returncode} elapsed={elapsed:.2f}s "
            f"stdout='{sanitize(_preview(stdout))}' stderr='{sanitize(_preview(stderr))}'"
        )
        if result.returncode != 0:
            raise ExecError(cmd, returncode=result.returncode, stdout=stdout, stderr=stderr)
        return ExecResult(stdout=stdout, stderr=stderr, returncode=result.returncode)
