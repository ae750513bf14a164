from __future__ import annotations

import itertools
import logging
import subprocess
import threading
import time
from typing import Iterable, Sequence

from .app_logging import log_with_fields
from .models import Job, JobOutcome, JobSnapshot, JobState, StopResult, WaitResult
from .process import ProcessLauncher
from .utils import summarize_command, utc_now_iso


class SubmissionError(ValueError):
    pass


class UnknownJobIdError(KeyError):
    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"unknown job id: {self.job_id}"


def _validate_command(command: Sequence[str]) -> tuple[str, ...]:
    if isinstance(command, (str, bytes)):
        raise SubmissionError("command must be an argument vector, not a string")
    parts = tuple(command)
    if not parts:
        raise SubmissionError("command must not be empty")
    for part in parts:
        if not isinstance(part, str):
            raise SubmissionError(f"command arguments must be strings, found {type(part).__name__}")
    if not parts[0]:
        raise SubmissionError("command executable must not be empty")
    return parts


class JobRunner:
    """Runs external commands concurrently and tracks each one as a Job.

    Every job gets a supervisor thread that starts the process, collects its
    output and records the terminal state. The job table is guarded by a
    single condition variable so that waiters, status readers and stop
    requests always observe consistent states.
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        *,
        max_concurrency: int | None = None,
        grace_seconds: float = 5.0,
        job_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if grace_seconds <= 0:
            raise ValueError("grace_seconds must be > 0")
        if job_timeout is not None and job_timeout <= 0:
            raise ValueError("job_timeout must be > 0")
        self.launcher = launcher or ProcessLauncher()
        self.max_concurrency = max_concurrency
        self.grace_seconds = grace_seconds
        self.job_timeout = job_timeout
        self.logger = logger or logging.getLogger("claudejobs")
        self._jobs: dict[str, Job] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._cond = threading.Condition()
        self._ids = itertools.count(1)
        self._slots = threading.BoundedSemaphore(max_concurrency) if max_concurrency else None

    def __enter__(self) -> JobRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit(self, command: Sequence[str]) -> str:
        parts = _validate_command(command)
        return self._submit_validated(parts)

    def submit_many(self, commands: Iterable[Sequence[str]]) -> list[str]:
        validated = [_validate_command(command) for command in commands]
        return [self._submit_validated(parts) for parts in validated]

    def status(self) -> list[JobSnapshot]:
        now = time.monotonic()
        with self._cond:
            return [self._snapshot(job, now) for job in self._jobs.values()]

    def get(self, job_id: str) -> JobSnapshot:
        with self._cond:
            return self._snapshot(self._require(job_id), time.monotonic())

    def wait(self, job_ids: Iterable[str] | None = None, timeout: float | None = None) -> WaitResult:
        with self._cond:
            jobs = self._select(job_ids)
            completed = self._cond.wait_for(
                lambda: all(job.state.terminal for job in jobs),
                timeout=timeout,
            )
            results = {
                job.job_id: JobOutcome(
                    job_id=job.job_id,
                    state=job.state,
                    exit_code=job.exit_code,
                    stdout=job.stdout,
                    stderr=job.stderr,
                    error=job.error,
                )
                for job in jobs
            }
        return WaitResult(completed=completed, results=results)

    def stop(self, job_ids: Iterable[str] | None = None) -> StopResult:
        requested: list[Job] = []
        signalled: list[Job] = []
        in_flight: list[Job] = []
        with self._cond:
            for job in self._select(job_ids):
                process = job.process
                if job.state is JobState.PENDING:
                    self._finish(job, JobState.CANCELLED, error="cancelled before start")
                    requested.append(job)
                elif job.state is not JobState.RUNNING or process is None:
                    continue
                elif job.cancel_requested or job.deadline_exceeded or process.poll() is not None:
                    # Already stopping, past its deadline, or exited on its own.
                    in_flight.append(job)
                else:
                    job.cancel_requested = True
                    signalled.append(job)
                    requested.append(job)

        for job in signalled:
            log_with_fields(self.logger, logging.INFO, "job_stop_requested", job_id=job.job_id)
            self.launcher.terminate(job.process)

        forced = self._await_exit(signalled + in_flight)
        for job in forced:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_stop_forced",
                job_id=job.job_id,
                grace_seconds=self.grace_seconds,
            )
            self.launcher.kill(job.process)

        if forced:
            leftovers = self._await_exit(forced)
            with self._cond:
                for job in leftovers:
                    if job.state.terminal:
                        continue
                    state = JobState.TIMED_OUT if job.deadline_exceeded else JobState.CANCELLED
                    self._finish(job, state, error="process did not exit after kill")

        with self._cond:
            cancelled = [job.job_id for job in requested if job.state is JobState.CANCELLED]
        return StopResult(cancelled=cancelled, forced=[job.job_id for job in forced])

    def cleanup(self, job_ids: Iterable[str] | None = None) -> list[str]:
        removed: list[str] = []
        with self._cond:
            targets = list(self._jobs) if job_ids is None else list(job_ids)
            for job_id in targets:
                job = self._jobs.get(job_id)
                if job is None or not job.state.terminal:
                    continue
                del self._jobs[job_id]
                self._threads.pop(job_id, None)
                removed.append(job_id)
        if removed:
            log_with_fields(self.logger, logging.INFO, "jobs_cleaned", job_ids=removed)
        return removed

    def close(self) -> None:
        self.stop()
        with self._cond:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=self.grace_seconds)

    def _submit_validated(self, command: tuple[str, ...]) -> str:
        with self._cond:
            job_id = f"job-{next(self._ids)}"
            job = Job(
                job_id=job_id,
                command=command,
                state=JobState.PENDING,
                submitted_at=utc_now_iso(),
                submitted_mono=time.monotonic(),
            )
            self._jobs[job_id] = job
            thread = threading.Thread(target=self._supervise, args=(job,), name=f"claudejobs-{job_id}", daemon=True)
            self._threads[job_id] = thread
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_submitted",
            job_id=job_id,
            command=summarize_command(command),
        )
        thread.start()
        return job_id

    def _supervise(self, job: Job) -> None:
        if self._slots is not None:
            self._slots.acquire()
        try:
            process = self._launch(job)
            if process is not None:
                self._collect(job, process)
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "job_supervisor_error", job_id=job.job_id, error=str(exc))
            with self._cond:
                if not job.state.terminal:
                    self._finish(job, JobState.FAILED, error=f"runner error: {exc}")
        finally:
            if self._slots is not None:
                self._slots.release()

    def _launch(self, job: Job) -> subprocess.Popen[str] | None:
        with self._cond:
            if job.state is not JobState.PENDING:
                return None
            try:
                process = self.launcher.start(job.command)
            except OSError as exc:
                self._finish(job, JobState.FAILED, error=str(exc))
                log_with_fields(self.logger, logging.ERROR, "job_launch_failed", job_id=job.job_id, error=str(exc))
                return None
            job.process = process
            job.state = JobState.RUNNING
            job.started_at = utc_now_iso()
            job.started_mono = time.monotonic()
            self._cond.notify_all()
        log_with_fields(self.logger, logging.INFO, "job_started", job_id=job.job_id, pid=process.pid)
        return process

    def _collect(self, job: Job, process: subprocess.Popen[str]) -> None:
        try:
            stdout, stderr = process.communicate(timeout=self.job_timeout)
        except subprocess.TimeoutExpired:
            with self._cond:
                if not job.cancel_requested:
                    job.deadline_exceeded = True
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_deadline_exceeded",
                job_id=job.job_id,
                job_timeout=self.job_timeout,
            )
            self.launcher.terminate(process)
            try:
                stdout, stderr = process.communicate(timeout=self.grace_seconds)
            except subprocess.TimeoutExpired:
                self.launcher.kill(process)
                stdout, stderr = process.communicate()

        with self._cond:
            job.stdout = stdout or ""
            job.stderr = stderr or ""
            if job.state.terminal:
                return
            if job.deadline_exceeded:
                self._finish(job, JobState.TIMED_OUT, error=f"exceeded job timeout of {self.job_timeout}s")
            elif process.returncode == 0:
                # Exit status 0 means the command finished its work, even if a stop raced it.
                self._finish(job, JobState.SUCCEEDED, exit_code=0)
            elif job.cancel_requested:
                self._finish(job, JobState.CANCELLED, error="cancelled")
            else:
                self._finish(job, JobState.FAILED, exit_code=process.returncode)

    def _finish(
        self,
        job: Job,
        state: JobState,
        *,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> None:
        # Caller holds self._cond.
        job.state = state
        job.exit_code = exit_code
        job.error = error
        job.finished_at = utc_now_iso()
        job.finished_mono = time.monotonic()
        self._cond.notify_all()
        log_with_fields(
            self.logger,
            logging.INFO if state is JobState.SUCCEEDED else logging.WARNING,
            "job_finished",
            job_id=job.job_id,
            state=state.value,
            exit_code=exit_code,
            error=error,
        )

    def _await_exit(self, jobs: list[Job]) -> list[Job]:
        if not jobs:
            return []
        with self._cond:
            self._cond.wait_for(lambda: all(job.state.terminal for job in jobs), timeout=self.grace_seconds)
            return [job for job in jobs if not job.state.terminal]

    def _select(self, job_ids: Iterable[str] | None) -> list[Job]:
        if job_ids is None:
            return list(self._jobs.values())
        return [self._require(job_id) for job_id in job_ids]

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJobIdError(job_id)
        return job

    def _snapshot(self, job: Job, now: float) -> JobSnapshot:
        start = job.started_mono if job.started_mono is not None else job.submitted_mono
        end = job.finished_mono if job.finished_mono is not None else now
        return JobSnapshot(
            job_id=job.job_id,
            command=summarize_command(job.command),
            state=job.state,
            submitted_at=job.submitted_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            elapsed_seconds=max(0.0, end - start),
            exit_code=job.exit_code,
            error=job.error,
        )
