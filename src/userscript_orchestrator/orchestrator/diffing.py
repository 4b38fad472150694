"""Line-set diff used for tool-result summaries."""

from __future__ import annotations

from dataclasses import dataclass

PAGE_REFRESHED_NOTE = "(page refreshed)"


@dataclass(frozen=True)
class LineDiff:
    removed: int
    added: int


def _line_set(script: str) -> set[str]:
    return {line.strip() for line in script.split("\n") if line.strip()}


def line_set_diff(old_script: str, new_script: str) -> LineDiff:
    """Count distinct trimmed lines present only in one side.

    Content-set difference, not a sequence alignment: reordering lines
    without changing them yields a zero diff.
    """
    old_lines = _line_set(old_script)
    new_lines = _line_set(new_script)
    return LineDiff(removed=len(old_lines - new_lines), added=len(new_lines - old_lines))


def diff_summary(old_script: str, new_script: str) -> str:
    if not old_script:
        line_count = len(new_script.split("\n")) if new_script else 0
        return f"+{line_count} lines added\n{PAGE_REFRESHED_NOTE}"
    diff = line_set_diff(old_script, new_script)
    return f"-{diff.removed} lines removed\n+{diff.added} lines added\n{PAGE_REFRESHED_NOTE}"
