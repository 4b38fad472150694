"""Fallback extraction of a script from a narrated (non-tool) model reply.

This is not the primary path: the model is expected to call ``execute_js``.
When it pastes code instead, the candidate fenced blocks are ranked by a
fixed heuristic: blocks carrying a complete ``==UserScript==`` header win,
otherwise the longest block wins. Very short blocks are ignored.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

from userscript_orchestrator.registry.metadata import (
    has_metadata_block,
    metadata_to_match_regex,
    parse_metadata,
)

MIN_SCRIPT_CHARS = 20
CODE_SAVED_NOTE = "Code detected and saved to userscript."

_FENCED_BLOCK_RE = re.compile(r"```(?:js|javascript)?\s*\n([\s\S]*?)```", re.IGNORECASE)


class ExtractedScript(BaseModel):
    script: str
    # Regex derived from @match/@include lines, when the block declares any.
    match_pattern: str | None = None


def candidate_blocks(content: str) -> list[str]:
    return [found.group(1).strip() for found in _FENCED_BLOCK_RE.finditer(content)]


def extract_script(content: str) -> ExtractedScript | None:
    blocks = [block for block in candidate_blocks(content) if block]
    if not blocks:
        return None
    with_header = [block for block in blocks if has_metadata_block(block)]
    best = max(with_header or blocks, key=len)
    if len(best) < MIN_SCRIPT_CHARS:
        return None

    metadata = parse_metadata(best)
    match_pattern = metadata_to_match_regex(metadata) if metadata.url_patterns else None
    return ExtractedScript(script=best, match_pattern=match_pattern)
