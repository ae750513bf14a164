from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class RunnerConfig:
    max_concurrency: int | None = None
    grace_seconds: float = 5.0
    job_timeout: float | None = None


@dataclass(slots=True)
class ClaudeConfig:
    executable: str = "claude"
    args: list[str] = field(default_factory=lambda: ["-p"])


@dataclass(slots=True)
class BatchConfig:
    size: int = 5
    output_dir: Path = field(default_factory=lambda: Path("generated"))


@dataclass(slots=True)
class PathsConfig:
    log: Path | None = None


@dataclass(slots=True)
class AppConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


def default_config() -> AppConfig:
    return AppConfig()


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _optional_positive(value: object, key: str) -> float | None:
    if value is None:
        return None
    output = float(value)
    if output <= 0:
        raise ValueError(f"`{key}` must be > 0")
    return output


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    runner_raw = _section(raw, "runner")
    claude_raw = _section(raw, "claude")
    batch_raw = _section(raw, "batch")
    paths_raw = _section(raw, "paths")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    max_concurrency = runner_raw.get("max_concurrency")
    runner = RunnerConfig(
        max_concurrency=int(max_concurrency) if max_concurrency is not None else None,
        grace_seconds=float(runner_raw.get("grace_seconds", 5.0)),
        job_timeout=_optional_positive(runner_raw.get("job_timeout"), "runner.job_timeout"),
    )
    if runner.max_concurrency is not None and runner.max_concurrency < 1:
        raise ValueError("`runner.max_concurrency` must be >= 1")
    if runner.grace_seconds <= 0:
        raise ValueError("`runner.grace_seconds` must be > 0")

    args_raw = claude_raw.get("args", ["-p"])
    if not isinstance(args_raw, list):
        raise ValueError("`claude.args` must be a list")
    claude = ClaudeConfig(
        executable=str(claude_raw.get("executable", "claude")),
        args=[str(item) for item in args_raw],
    )
    if not claude.executable:
        raise ValueError("`claude.executable` must not be empty")

    batch = BatchConfig(
        size=int(batch_raw.get("size", 5)),
        output_dir=to_path(batch_raw.get("output_dir", "generated")),
    )
    if batch.size < 1:
        raise ValueError("`batch.size` must be >= 1")

    log_raw = paths_raw.get("log")
    paths = PathsConfig(log=to_path(log_raw) if log_raw else None)

    return AppConfig(runner=runner, claude=claude, batch=batch, paths=paths)


def ensure_local_paths(config: AppConfig) -> None:
    config.batch.output_dir.mkdir(parents=True, exist_ok=True)
    if config.paths.log is not None:
        config.paths.log.parent.mkdir(parents=True, exist_ok=True)
