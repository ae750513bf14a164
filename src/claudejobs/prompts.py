from __future__ import annotations

from pathlib import Path

from .config import ClaudeConfig


def build_prompt(prompt: str, file_content: str | None = None, file_name: str | None = None) -> str:
    if file_content is None:
        return prompt
    header = f"File: {file_name}\n" if file_name else ""
    return f"{prompt}\n\n{header}```\n{file_content}\n```"


def build_command(
    prompt: str,
    claude: ClaudeConfig,
    *,
    file_content: str | None = None,
    file_name: str | None = None,
) -> list[str]:
    """Return the argument vector that asks the assistant CLI to handle ``prompt``.

    File contents travel inside a single argument, so nothing in them is ever
    interpreted by a shell.
    """
    if not prompt.strip():
        raise ValueError("prompt must not be empty")
    return [claude.executable, *claude.args, build_prompt(prompt, file_content, file_name)]


def build_file_command(prompt: str, path: Path, claude: ClaudeConfig) -> list[str]:
    content = path.read_text(encoding="utf-8", errors="replace")
    return build_command(prompt, claude, file_content=content, file_name=path.name)
