from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self not in {JobState.PENDING, JobState.RUNNING}


@dataclass(slots=True)
class Job:
    job_id: str
    command: tuple[str, ...]
    state: JobState
    submitted_at: str
    submitted_mono: float
    started_at: str | None = None
    started_mono: float | None = None
    finished_at: str | None = None
    finished_mono: float | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None
    process: subprocess.Popen[str] | None = field(default=None, repr=False)
    cancel_requested: bool = False
    deadline_exceeded: bool = False


@dataclass(slots=True)
class JobSnapshot:
    job_id: str
    command: str
    state: JobState
    submitted_at: str
    started_at: str | None
    finished_at: str | None
    elapsed_seconds: float
    exit_code: int | None
    error: str | None


@dataclass(slots=True)
class JobOutcome:
    job_id: str
    state: JobState
    exit_code: int | None
    stdout: str
    stderr: str
    error: str | None

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


@dataclass(slots=True)
class WaitResult:
    completed: bool
    results: dict[str, JobOutcome]

    @property
    def all_succeeded(self) -> bool:
        return self.completed and all(item.state is JobState.SUCCEEDED for item in self.results.values())


@dataclass(slots=True)
class StopResult:
    cancelled: list[str]
    forced: list[str]
