from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import yaml

from .app_logging import log_with_fields, setup_logger
from .batch import process_files
from .config import AppConfig, default_config, ensure_local_paths, load_config
from .models import JobSnapshot, JobState, WaitResult
from .prompts import build_command
from .runner import JobRunner, SubmissionError

EXIT_TIMEOUT = 124


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="claudejobs", description="Run assistant CLI jobs concurrently")
    parser.add_argument("--config", help="Path to claudejobs YAML config")
    parser.add_argument("--log-file", help="Write JSON log lines to this file")
    parser.add_argument("--max-concurrency", type=int, help="Cap on simultaneously running jobs")
    parser.add_argument("--job-timeout", type=float, help="Per-job deadline in seconds")
    parser.add_argument("--verbose", action="store_true", help="Log job events to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    exec_parser = subparsers.add_parser("exec", help="Run one command and wait for it")
    exec_parser.add_argument("--timeout", type=float, help="Seconds to wait before giving up")
    exec_parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command and arguments, after --")

    parallel = subparsers.add_parser("parallel", help="Send several prompts to the assistant concurrently")
    parallel.add_argument("--timeout", type=float, help="Seconds to wait before stopping remaining jobs")
    parallel.add_argument("prompts", nargs="+", help="One prompt per job")

    batch = subparsers.add_parser("batch", help="Apply a prompt to every file matching a pattern")
    batch.add_argument("pattern", help="Glob pattern, e.g. 'src/**/*.py'")
    batch.add_argument("prompt", help="Prompt applied to each file")
    batch.add_argument("--batch-size", type=int, help="Files processed per chunk")
    batch.add_argument("--output-dir", help="Directory for processed_<name> outputs")
    batch.add_argument("--timeout", type=float, help="Seconds to wait for each chunk")

    subparsers.add_parser("config", help="Show the effective configuration")
    return parser


def _effective_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config) if args.config else default_config()
    if args.log_file:
        config.paths.log = Path(args.log_file).expanduser()
    if args.max_concurrency is not None:
        if args.max_concurrency < 1:
            raise ValueError("--max-concurrency must be >= 1")
        config.runner.max_concurrency = args.max_concurrency
    if args.job_timeout is not None:
        if args.job_timeout <= 0:
            raise ValueError("--job-timeout must be > 0")
        config.runner.job_timeout = args.job_timeout
    if getattr(args, "batch_size", None) is not None:
        if args.batch_size < 1:
            raise ValueError("--batch-size must be >= 1")
        config.batch.size = args.batch_size
    if getattr(args, "output_dir", None):
        config.batch.output_dir = Path(args.output_dir).expanduser()
    return config


def _open_runner(config: AppConfig, verbose: bool) -> JobRunner:
    if config.paths.log is not None:
        config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    logger = setup_logger(config.paths.log, level=logging.INFO if verbose else logging.WARNING)
    return JobRunner(
        max_concurrency=config.runner.max_concurrency,
        grace_seconds=config.runner.grace_seconds,
        job_timeout=config.runner.job_timeout,
        logger=logger,
    )


def print_status(snapshots: list[JobSnapshot]) -> None:
    print("Jobs:")
    if not snapshots:
        print("  (no jobs)")
    for snapshot in snapshots:
        detail = ""
        if snapshot.exit_code is not None:
            detail = f" exit={snapshot.exit_code}"
        if snapshot.error:
            detail += f" error={snapshot.error}"
        print(
            f"  {snapshot.job_id:8} {snapshot.state.value:10} "
            f"{snapshot.elapsed_seconds:7.2f}s {snapshot.command}{detail}"
        )


def print_results(result: WaitResult) -> None:
    for job_id, outcome in result.results.items():
        print(f"\n== {job_id} [{outcome.state.value}] ==")
        if outcome.stdout:
            print(outcome.stdout.rstrip("\n"))
        if outcome.stderr:
            print(outcome.stderr.rstrip("\n"), file=sys.stderr)


def _finish_wait(runner: JobRunner, job_ids: list[str], timeout: float | None) -> int:
    result = runner.wait(job_ids, timeout=timeout)
    if not result.completed:
        log_with_fields(runner.logger, logging.WARNING, "wait_timed_out", job_ids=job_ids, timeout=timeout)
        runner.stop(job_ids)
        result = runner.wait(job_ids)
    print_status(runner.status())
    print_results(result)
    if not result.completed or any(item.state is JobState.CANCELLED for item in result.results.values()):
        return EXIT_TIMEOUT
    return 0 if result.all_succeeded else 1


def cmd_exec(config: AppConfig, argv: list[str], timeout: float | None, verbose: bool) -> int:
    if argv and argv[0] == "--":
        argv = argv[1:]
    with _open_runner(config, verbose) as runner:
        job_id = runner.submit(argv)
        return _finish_wait(runner, [job_id], timeout)


def cmd_parallel(config: AppConfig, prompts: list[str], timeout: float | None, verbose: bool) -> int:
    commands = [build_command(prompt, config.claude) for prompt in prompts]
    with _open_runner(config, verbose) as runner:
        job_ids = runner.submit_many(commands)
        return _finish_wait(runner, job_ids, timeout)


def cmd_batch(config: AppConfig, pattern: str, prompt: str, timeout: float | None, verbose: bool) -> int:
    ensure_local_paths(config)
    with _open_runner(config, verbose) as runner:
        report = process_files(runner, pattern, prompt, config.claude, config.batch, chunk_timeout=timeout)
    if not report.files:
        print(f"no files match {pattern}", file=sys.stderr)
        return 1
    print(f"processed {len(report.files)} files, wrote {len(report.written)} to {config.batch.output_dir}")
    for name, reason in report.failures.items():
        print(f"  failed {name}: {reason}", file=sys.stderr)
    return 0 if report.ok else 1


def cmd_config(config: AppConfig) -> int:
    data = asdict(config)
    data["batch"]["output_dir"] = str(config.batch.output_dir)
    data["paths"]["log"] = str(config.paths.log) if config.paths.log else None
    print(yaml.safe_dump(data, sort_keys=False).rstrip())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _effective_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        if args.command == "exec":
            return cmd_exec(config, list(args.argv), args.timeout, args.verbose)
        if args.command == "parallel":
            return cmd_parallel(config, args.prompts, args.timeout, args.verbose)
        if args.command == "batch":
            return cmd_batch(config, args.pattern, args.prompt, args.timeout, args.verbose)
        if args.command == "config":
            return cmd_config(config)
    except SubmissionError as exc:
        print(f"invalid command: {exc}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
