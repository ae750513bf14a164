from __future__ import annotations

import shlex
from datetime import UTC, datetime
from typing import Sequence

SUMMARY_LIMIT = 80


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def summarize_command(command: Sequence[str], limit: int = SUMMARY_LIMIT) -> str:
    text = shlex.join(command).replace("\n", " ")
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[index : index + size]) for index in range(0, len(items), size)]
