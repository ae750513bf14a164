"""Module-level helpers mirroring the shell toolkit's job functions.

They share one lazily created JobRunner, configured from ``configure`` or
defaults, so scripts can fire off prompts and wait on them without managing
a runner themselves.
"""

from __future__ import annotations

import threading

from .config import AppConfig, default_config
from .models import JobSnapshot, StopResult, WaitResult
from .prompts import build_command
from .runner import JobRunner

_lock = threading.Lock()
_config: AppConfig | None = None
_runner: JobRunner | None = None


def configure(config: AppConfig) -> None:
    """Use ``config`` for the default runner, replacing any existing one."""
    global _config, _runner
    with _lock:
        previous = _runner
        _config = config
        _runner = None
    if previous is not None:
        previous.close()


def _runtime() -> tuple[JobRunner, AppConfig]:
    global _config, _runner
    with _lock:
        config = _config or default_config()
        _config = config
        if _runner is None:
            _runner = JobRunner(
                max_concurrency=config.runner.max_concurrency,
                grace_seconds=config.runner.grace_seconds,
                job_timeout=config.runner.job_timeout,
            )
        return _runner, config


def get_runner() -> JobRunner:
    return _runtime()[0]


def run_claude_async(prompt: str) -> str:
    runner, config = _runtime()
    return runner.submit(build_command(prompt, config.claude))


def run_claude_parallel(*prompts: str) -> list[str]:
    runner, config = _runtime()
    claude = config.claude
    return runner.submit_many([build_command(prompt, claude) for prompt in prompts])


def wait_for_claude_jobs(timeout: float | None = None) -> WaitResult:
    return get_runner().wait(timeout=timeout)


def claude_job_status() -> list[JobSnapshot]:
    return get_runner().status()


def stop_claude_jobs() -> StopResult:
    runner = get_runner()
    result = runner.stop()
    runner.cleanup()
    return result
