from __future__ import annotations

import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .app_logging import log_with_fields
from .config import BatchConfig, ClaudeConfig
from .models import JobState
from .prompts import build_file_command
from .runner import JobRunner
from .utils import chunked


@dataclass(slots=True)
class BatchReport:
    files: list[Path] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def expand_pattern(pattern: str) -> list[Path]:
    matches = sorted(glob.glob(str(Path(pattern).expanduser()), recursive=True))
    return [Path(match) for match in matches if Path(match).is_file()]


def output_path_for(source: Path, output_dir: Path) -> Path:
    return output_dir / f"processed_{source.name}"


def process_files(
    runner: JobRunner,
    pattern: str,
    prompt: str,
    claude: ClaudeConfig,
    batch: BatchConfig,
    *,
    chunk_timeout: float | None = None,
) -> BatchReport:
    """Run ``prompt`` against every file matching ``pattern``, ``batch.size`` at a time.

    Each chunk is submitted together and waited on before the next one starts.
    Successful jobs have their stdout written to ``processed_<name>`` in the
    output directory. A chunk that does not finish within ``chunk_timeout`` is
    stopped and its unfinished files are reported as failures. Files whose
    output name repeats an earlier match are skipped and reported as failures.
    """
    logger = runner.logger
    report = BatchReport(files=expand_pattern(pattern))
    if not report.files:
        log_with_fields(logger, logging.WARNING, "batch_no_files", pattern=pattern)
        return report

    batch.output_dir.mkdir(parents=True, exist_ok=True)
    by_name: dict[str, Path] = {}
    claimed: dict[Path, str] = {}
    for path in report.files:
        target = output_path_for(path, batch.output_dir)
        if target in claimed:
            report.failures[str(path)] = f"skipped: output {target.name} already claimed by {claimed[target]}"
            log_with_fields(logger, logging.WARNING, "batch_output_collision", file=str(path), output=str(target))
            continue
        claimed[target] = str(path)
        by_name[str(path)] = path

    for index, names in enumerate(chunked(list(by_name), batch.size), start=1):
        commands = [build_file_command(prompt, by_name[name], claude) for name in names]
        job_ids = runner.submit_many(commands)
        log_with_fields(logger, logging.INFO, "batch_chunk_submitted", chunk=index, files=names, job_ids=job_ids)

        result = runner.wait(job_ids, timeout=chunk_timeout)
        if not result.completed:
            runner.stop(job_ids)
            result = runner.wait(job_ids)

        for name, job_id in zip(names, job_ids):
            outcome = result.results[job_id]
            if outcome.state is JobState.SUCCEEDED:
                target = output_path_for(by_name[name], batch.output_dir)
                target.write_text(outcome.stdout, encoding="utf-8")
                report.written.append(target)
            else:
                detail = outcome.error or outcome.stderr.strip() or f"exit code {outcome.exit_code}"
                report.failures[name] = f"{outcome.state.value}: {detail}"
        runner.cleanup(job_ids)
        log_with_fields(
            logger,
            logging.INFO,
            "batch_chunk_finished",
            chunk=index,
            completed=result.completed,
            failures=len([name for name in names if name in report.failures]),
        )
    return report
