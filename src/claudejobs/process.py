from __future__ import annotations

import os
import signal
import subprocess
from typing import Sequence

POSIX = os.name == "posix"


class ProcessLauncher:
    """Starts commands as argument vectors and signals their process groups."""

    def __init__(self, cwd: str | None = None, env: dict[str, str] | None = None) -> None:
        self.cwd = cwd
        self.env = env

    def start(self, command: Sequence[str]) -> subprocess.Popen[str]:
        return subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=self.cwd,
            env=self.env,
            start_new_session=POSIX,
        )

    def terminate(self, process: subprocess.Popen[str]) -> None:
        if POSIX:
            self._signal_group(process, signal.SIGTERM)
        else:
            process.terminate()

    def kill(self, process: subprocess.Popen[str]) -> None:
        if POSIX:
            self._signal_group(process, signal.SIGKILL)
        else:
            process.kill()

    def _signal_group(self, process: subprocess.Popen[str], signum: int) -> None:
        # The child leads its own session, so its pid is also its group id.
        try:
            os.killpg(process.pid, signum)
        except (ProcessLookupError, PermissionError):
            pass
