from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
import unittest
from typing import Sequence

from claudejobs.models import JobState
from claudejobs.process import ProcessLauncher
from claudejobs.runner import JobRunner, SubmissionError, UnknownJobIdError


IGNORES_SIGTERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_claudejobs")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class UnheededLauncher(ProcessLauncher):
    """Records termination requests without delivering them."""

    def __init__(self) -> None:
        super().__init__()
        self.terminated: list[int] = []

    def terminate(self, process: subprocess.Popen[str]) -> None:
        self.terminated.append(process.pid)


class HeldProcess:
    def __init__(self, process: subprocess.Popen[str], release: threading.Event) -> None:
        self.process = process
        self.release = release

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def poll(self) -> int | None:
        return self.process.poll()

    def communicate(self, timeout: float | None = None) -> tuple[str, str]:
        self.release.wait()
        return self.process.communicate(timeout=timeout)


class HeldLauncher(ProcessLauncher):
    """Holds output collection until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.started: list[HeldProcess] = []
        self.terminated: list[int] = []

    def start(self, command: Sequence[str]) -> HeldProcess:  # type: ignore[override]
        held = HeldProcess(super().start(command), self.release)
        self.started.append(held)
        return held

    def terminate(self, process: subprocess.Popen[str]) -> None:
        self.terminated.append(process.pid)
        super().terminate(process)


class RunnerTestCase(unittest.TestCase):
    def make_runner(self, **kwargs: object) -> JobRunner:
        kwargs.setdefault("grace_seconds", 2.0)
        runner = JobRunner(logger=quiet_logger(), **kwargs)
        self.addCleanup(runner.close)
        return runner

    def wait_until_running(self, runner: JobRunner, job_id: str) -> None:
        deadline = time.monotonic() + 5
        while runner.get(job_id).state is JobState.PENDING and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(runner.get(job_id).state, JobState.RUNNING)


class SubmitTest(RunnerTestCase):
    def test_rejects_malformed_commands(self) -> None:
        runner = self.make_runner()
        with self.assertRaises(SubmissionError):
            runner.submit([])
        with self.assertRaises(SubmissionError):
            runner.submit("echo hi")
        with self.assertRaises(SubmissionError):
            runner.submit(["echo", 3])  # type: ignore[list-item]
        with self.assertRaises(SubmissionError):
            runner.submit_many([py("pass"), []])
        self.assertEqual(runner.status(), [])

    def test_ids_are_unique_and_never_reused(self) -> None:
        runner = self.make_runner()
        first = runner.submit_many([py("pass"), py("pass")])
        runner.wait()
        self.assertEqual(runner.cleanup(), first)
        second = runner.submit(py("pass"))
        runner.wait()
        self.assertEqual(len(set(first + [second])), 3)
        self.assertNotIn(second, first)

    def test_status_lists_in_submission_order(self) -> None:
        runner = self.make_runner()
        ids = runner.submit_many([py("import time; time.sleep(0.3)"), py("pass"), py("pass")])
        snapshots = runner.status()
        self.assertEqual([item.job_id for item in snapshots], ids)
        runner.wait()
        for snapshot in runner.status():
            self.assertTrue(snapshot.state.terminal)
            self.assertIsNotNone(snapshot.finished_at)
            self.assertGreaterEqual(snapshot.finished_at, snapshot.submitted_at)


class WaitTest(RunnerTestCase):
    def test_empty_wait_returns_immediately(self) -> None:
        runner = self.make_runner()
        result = runner.wait([], timeout=0)
        self.assertTrue(result.completed)
        self.assertEqual(result.results, {})
        result = runner.wait(timeout=0)
        self.assertTrue(result.completed)

    def test_exit_codes(self) -> None:
        runner = self.make_runner()
        ok, bad = runner.submit_many([py("print('hello')"), py("import sys; sys.exit(1)")])
        result = runner.wait()
        self.assertTrue(result.completed)
        self.assertFalse(result.all_succeeded)
        self.assertEqual(result.results[ok].state, JobState.SUCCEEDED)
        self.assertEqual(result.results[ok].exit_code, 0)
        self.assertEqual(result.results[ok].stdout.strip(), "hello")
        self.assertEqual(result.results[bad].state, JobState.FAILED)
        self.assertEqual(result.results[bad].exit_code, 1)
        self.assertIsNone(result.results[bad].error)

    def test_missing_executable_fails_with_error(self) -> None:
        runner = self.make_runner()
        job_id = runner.submit(["claudejobs-definitely-missing-binary"])
        outcome = runner.wait([job_id]).results[job_id]
        self.assertEqual(outcome.state, JobState.FAILED)
        self.assertIsNone(outcome.exit_code)
        self.assertTrue(outcome.error)
        self.assertEqual(outcome.stdout, "")

    def test_jobs_run_concurrently(self) -> None:
        runner = self.make_runner()
        started = time.monotonic()
        runner.submit_many([py("import time; time.sleep(0.5)") for _ in range(4)])
        result = runner.wait()
        elapsed = time.monotonic() - started
        self.assertTrue(result.all_succeeded)
        self.assertLess(elapsed, 1.5)

    def test_timeout_leaves_jobs_running(self) -> None:
        runner = self.make_runner()
        job_id = runner.submit(py("import time; time.sleep(0.6); print('done')"))
        first = runner.wait([job_id], timeout=0.05)
        self.assertFalse(first.completed)
        self.assertIn(first.results[job_id].state, {JobState.PENDING, JobState.RUNNING})

        second = runner.wait([job_id])
        self.assertTrue(second.completed)
        self.assertEqual(second.results[job_id].state, JobState.SUCCEEDED)
        self.assertEqual(second.results[job_id].stdout.strip(), "done")
        self.assertEqual(len(runner.status()), 1)

    def test_unknown_job_id(self) -> None:
        runner = self.make_runner()
        with self.assertRaises(UnknownJobIdError):
            runner.wait(["job-999"])
        with self.assertRaises(UnknownJobIdError):
            runner.get("job-999")
        with self.assertRaises(UnknownJobIdError):
            runner.stop(["job-999"])

    def test_end_to_end_mixed_outcomes(self) -> None:
        runner = self.make_runner()
        started = time.monotonic()
        first, second, third = runner.submit_many(
            [
                py("import time; time.sleep(0.2)"),
                py("import sys, time; time.sleep(0.1); sys.exit(3)"),
                ["nonexistent-binary-for-claudejobs"],
            ]
        )
        result = runner.wait()
        elapsed = time.monotonic() - started

        self.assertTrue(result.completed)
        self.assertEqual(list(result.results), [first, second, third])
        self.assertEqual(result.results[first].state, JobState.SUCCEEDED)
        self.assertEqual(result.results[first].exit_code, 0)
        self.assertEqual(result.results[second].state, JobState.FAILED)
        self.assertEqual(result.results[second].exit_code, 3)
        self.assertEqual(result.results[third].state, JobState.FAILED)
        self.assertIsNone(result.results[third].exit_code)
        self.assertTrue(result.results[third].error)
        self.assertLess(elapsed, 1.0)


    def test_overlapping_waits_observe_same_outcomes(self) -> None:
        runner = self.make_runner()
        ids = runner.submit_many(
            [
                py("import time; time.sleep(0.2); print('slow')"),
                py("import sys, time; time.sleep(0.1); sys.exit(5)"),
            ]
        )
        results = []
        waiters = [threading.Thread(target=lambda: results.append(runner.wait(ids, timeout=10))) for _ in range(2)]
        for waiter in waiters:
            waiter.start()
        for waiter in waiters:
            waiter.join(timeout=15)

        self.assertEqual(len(results), 2)
        first, second = results
        self.assertTrue(first.completed and second.completed)
        for job_id in ids:
            mine, theirs = first.results[job_id], second.results[job_id]
            self.assertEqual(
                (mine.state, mine.exit_code, mine.stdout),
                (theirs.state, theirs.exit_code, theirs.stdout),
            )
        self.assertEqual(first.results[ids[0]].state, JobState.SUCCEEDED)
        self.assertEqual(first.results[ids[1]].exit_code, 5)


class StopTest(RunnerTestCase):
    def test_stop_running_job(self) -> None:
        runner = self.make_runner()
        job_id = runner.submit(py("import sys, time; print('partial', flush=True); time.sleep(30)"))
        deadline = time.monotonic() + 5
        while runner.get(job_id).state is JobState.PENDING and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.2)

        stopped = runner.stop([job_id])
        self.assertEqual(stopped.cancelled, [job_id])
        self.assertEqual(stopped.forced, [])
        self.assertEqual(runner.get(job_id).state, JobState.CANCELLED)

        outcome = runner.wait([job_id], timeout=5).results[job_id]
        self.assertEqual(outcome.state, JobState.CANCELLED)
        self.assertIsNone(outcome.exit_code)
        self.assertIn("partial", outcome.stdout)
        self.assertNotIn(JobState.RUNNING, [item.state for item in runner.status()])

    def test_stop_forces_jobs_ignoring_sigterm(self) -> None:
        runner = self.make_runner(grace_seconds=0.3)
        job_id = runner.submit(py(IGNORES_SIGTERM))
        time.sleep(0.5)
        stopped = runner.stop([job_id])
        self.assertEqual(stopped.forced, [job_id])
        self.assertEqual(runner.get(job_id).state, JobState.CANCELLED)

    def test_stop_terminal_job_is_noop(self) -> None:
        runner = self.make_runner()
        job_id = runner.submit(py("pass"))
        runner.wait([job_id])
        stopped = runner.stop([job_id])
        self.assertEqual(stopped.cancelled, [])
        self.assertEqual(runner.get(job_id).state, JobState.SUCCEEDED)
        self.assertEqual(runner.get(job_id).exit_code, 0)

    def test_stop_pending_job_under_concurrency_cap(self) -> None:
        runner = self.make_runner(max_concurrency=1)
        blocker = runner.submit(py("import time; time.sleep(0.5)"))
        queued = runner.submit(py("print('never')"))
        time.sleep(0.1)
        self.assertEqual(runner.get(queued).state, JobState.PENDING)

        stopped = runner.stop([queued])
        self.assertEqual(stopped.cancelled, [queued])
        result = runner.wait()
        self.assertEqual(result.results[queued].state, JobState.CANCELLED)
        self.assertIsNone(runner.get(queued).started_at)
        self.assertEqual(result.results[blocker].state, JobState.SUCCEEDED)


    def test_stop_keeps_natural_outcome_of_exited_process(self) -> None:
        launcher = HeldLauncher()
        self.addCleanup(launcher.release.set)
        runner = self.make_runner(launcher=launcher)
        job_id = runner.submit(py("print('finished')"))
        self.wait_until_running(runner, job_id)
        launcher.started[0].process.wait(timeout=10)
        self.assertEqual(runner.get(job_id).state, JobState.RUNNING)

        release = threading.Timer(0.2, launcher.release.set)
        release.start()
        self.addCleanup(release.cancel)
        stopped = runner.stop([job_id])

        self.assertEqual(stopped.cancelled, [])
        self.assertEqual(stopped.forced, [])
        self.assertEqual(launcher.terminated, [])
        outcome = runner.wait([job_id], timeout=5).results[job_id]
        self.assertEqual(outcome.state, JobState.SUCCEEDED)
        self.assertEqual(outcome.exit_code, 0)
        self.assertEqual(outcome.stdout.strip(), "finished")

    def test_exit_zero_during_stop_counts_as_success(self) -> None:
        launcher = UnheededLauncher()
        runner = self.make_runner(launcher=launcher)
        job_id = runner.submit(py("import time; time.sleep(0.4)"))
        self.wait_until_running(runner, job_id)

        stopped = runner.stop([job_id])
        self.assertEqual(len(launcher.terminated), 1)
        self.assertEqual(stopped.cancelled, [])
        self.assertEqual(stopped.forced, [])
        self.assertEqual(runner.get(job_id).state, JobState.SUCCEEDED)
        self.assertEqual(runner.get(job_id).exit_code, 0)

    def test_overlapping_stop_returns_after_termination(self) -> None:
        runner = self.make_runner(grace_seconds=0.5)
        job_id = runner.submit(py(IGNORES_SIGTERM))
        time.sleep(0.5)
        earlier = threading.Thread(target=runner.stop, args=([job_id],))
        earlier.start()
        self.addCleanup(earlier.join)
        time.sleep(0.1)

        runner.stop([job_id])
        self.assertEqual(runner.get(job_id).state, JobState.CANCELLED)
        self.assertNotIn(JobState.RUNNING, [item.state for item in runner.status()])

    def test_stop_after_deadline_keeps_timed_out(self) -> None:
        runner = self.make_runner(job_timeout=0.3, grace_seconds=1.0)
        job_id = runner.submit(py(IGNORES_SIGTERM))
        time.sleep(0.6)

        stopped = runner.stop([job_id])
        self.assertEqual(stopped.cancelled, [])
        self.assertEqual(runner.get(job_id).state, JobState.TIMED_OUT)


class LimitsTest(RunnerTestCase):
    def test_max_concurrency_serializes_jobs(self) -> None:
        runner = self.make_runner(max_concurrency=1)
        started = time.monotonic()
        runner.submit_many([py("import time; time.sleep(0.3)") for _ in range(3)])
        result = runner.wait()
        elapsed = time.monotonic() - started
        self.assertTrue(result.all_succeeded)
        self.assertGreaterEqual(elapsed, 0.85)

    def test_job_timeout_marks_timed_out(self) -> None:
        runner = self.make_runner(job_timeout=0.3, grace_seconds=1.0)
        job_id = runner.submit(py("import time; print('begin', flush=True); time.sleep(30)"))
        outcome = runner.wait([job_id], timeout=10).results[job_id]
        self.assertEqual(outcome.state, JobState.TIMED_OUT)
        self.assertIn("begin", outcome.stdout)
        self.assertTrue(outcome.error)

    def test_invalid_limits(self) -> None:
        with self.assertRaises(ValueError):
            JobRunner(max_concurrency=0)
        with self.assertRaises(ValueError):
            JobRunner(grace_seconds=0)
        with self.assertRaises(ValueError):
            JobRunner(job_timeout=-1)


class CleanupTest(RunnerTestCase):
    def test_cleanup_removes_only_terminal_jobs(self) -> None:
        runner = self.make_runner()
        done = runner.submit(py("pass"))
        runner.wait([done])
        slow = runner.submit(py("import time; time.sleep(0.5)"))

        removed = runner.cleanup([done, slow, "job-404"])
        self.assertEqual(removed, [done])
        self.assertEqual([item.job_id for item in runner.status()], [slow])
        self.assertEqual(runner.cleanup([done]), [])

        runner.wait([slow])
        self.assertEqual(runner.cleanup(), [slow])
        self.assertEqual(runner.status(), [])


if __name__ == "__main__":
    unittest.main()
