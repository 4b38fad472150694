"""Userscript header parsing and @match/@include to regex conversion."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

_META_BLOCK_RE = re.compile(r"//\s*==UserScript==\s*([\s\S]*?)//\s*==/UserScript==")
_META_LINE_RE = re.compile(r"//\s*@(\S+)\s+(.*)")
_GLOB_SPECIALS_RE = re.compile(r"[.+^${}()|\[\]\\]")

MATCH_ALL = ".*"


class UserscriptMetadata(BaseModel):
    name: str = ""
    description: str = ""
    version: str = ""
    author: str = ""
    match: list[str] = Field(default_factory=list)
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    grant: list[str] = Field(default_factory=list)
    run_at: str = "document-idle"
    namespace: str = ""

    @property
    def url_patterns(self) -> list[str]:
        return [*self.match, *self.include]


_SCALAR_KEYS = {
    "name": "name",
    "description": "description",
    "version": "version",
    "author": "author",
    "run-at": "run_at",
    "namespace": "namespace",
}
_LIST_KEYS = {"match", "include", "exclude", "grant"}


def has_metadata_block(code: str) -> bool:
    return _META_BLOCK_RE.search(code) is not None


def parse_metadata(code: str) -> UserscriptMetadata:
    """Read the ``// ==UserScript==`` header; unknown keys are ignored."""
    metadata = UserscriptMetadata()
    block = _META_BLOCK_RE.search(code)
    if block is None:
        return metadata

    for line in block.group(1).split("\n"):
        found = _META_LINE_RE.search(line)
        if found is None:
            continue
        key, value = found.group(1), found.group(2).strip()
        if key in _SCALAR_KEYS:
            setattr(metadata, _SCALAR_KEYS[key], value)
        elif key in _LIST_KEYS:
            getattr(metadata, key).append(value)
    return metadata


def pattern_to_regex(pattern: str) -> str:
    """``/re/`` is taken literally; globs map ``*`` and ``?`` and are anchored."""
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        return pattern[1:-1]
    escaped = _GLOB_SPECIALS_RE.sub(lambda match: "\\" + match.group(0), pattern)
    return "^" + escaped.replace("*", ".*").replace("?", ".") + "$"


def metadata_to_match_regex(metadata: UserscriptMetadata) -> str:
    patterns = [pattern_to_regex(item) for item in metadata.url_patterns]
    if not patterns:
        return MATCH_ALL
    if len(patterns) == 1:
        return patterns[0]
    return "(" + "|".join(patterns) + ")"
