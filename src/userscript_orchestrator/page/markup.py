"""Markup scrubbing and the structural fallback for oversized pages."""

from __future__ import annotations

import re
from typing import Any

from bs4 import BeautifulSoup, NavigableString, Tag

TRUNCATION_PLACEHOLDER = "[...truncated...]"
STRUCTURE_TRUNCATED_MARKER = "<!-- structure truncated -->"
ELISION_MARKER = "..."

_DATA_URI_RE = re.compile(r"(data:[^;]+;base64,)[A-Za-z0-9+/]{100,}={0,2}")
_LONG_RUN_RE = re.compile(r"[A-Za-z0-9+/]{500,}={0,2}")
_WHITESPACE_RE = re.compile(r"\s+")

INTERACTIVE_TAGS = frozenset(
    {"a", "button", "input", "select", "option", "textarea", "form", "label", "summary"}
)
SKIPPED_TAGS = frozenset({"script", "style", "noscript", "template", "meta", "link", "svg", "head"})
ALLOWED_ATTRIBUTES = (
    "id",
    "class",
    "name",
    "type",
    "role",
    "href",
    "action",
    "method",
    "for",
    "placeholder",
    "value",
    "title",
    "alt",
    "aria-label",
    "data-testid",
)


def scrub_high_entropy(markup: str) -> str:
    """Replace embedded base64 payloads; all other bytes are left untouched."""
    scrubbed = _DATA_URI_RE.sub(lambda match: match.group(1) + TRUNCATION_PLACEHOLDER, markup)
    return _LONG_RUN_RE.sub(TRUNCATION_PLACEHOLDER, scrubbed)


def prepare_markup(markup: str, *, budget: int) -> tuple[str, bool]:
    """Return model-ready markup and whether it is a structural summary."""
    scrubbed = scrub_high_entropy(markup)
    if len(scrubbed) <= budget:
        return scrubbed, False
    return summarize_structure(scrubbed, budget=budget), True


def summarize_structure(
    markup: str,
    *,
    budget: int,
    container_depth: int = 6,
    interactive_depth: int = 12,
    text_limit: int = 80,
    attribute_limit: int = 60,
) -> str:
    """Depth-bounded outline of the document body that never exceeds ``budget``."""
    soup = BeautifulSoup(markup, "lxml")
    root = soup.body if soup.body is not None else soup
    writer = _BoundedWriter(budget)
    writer.emit(_open_tag("body", root if isinstance(root, Tag) else None, attribute_limit))
    _walk_children(
        root,
        depth=1,
        writer=writer,
        container_depth=container_depth,
        interactive_depth=interactive_depth,
        text_limit=text_limit,
        attribute_limit=attribute_limit,
    )
    return writer.render()


def _walk_children(node: Any, *, depth: int, writer: _BoundedWriter, **limits: int) -> None:
    for child in node.children:
        if writer.full:
            return
        if isinstance(child, Tag):
            _walk_element(child, depth=depth, writer=writer, **limits)


def _walk_element(
    element: Tag,
    *,
    depth: int,
    writer: _BoundedWriter,
    container_depth: int,
    interactive_depth: int,
    text_limit: int,
    attribute_limit: int,
) -> None:
    name = (element.name or "").lower()
    if not name or name in SKIPPED_TAGS:
        return
    indent = "  " * depth
    limit = interactive_depth if name in INTERACTIVE_TAGS else container_depth
    if depth > limit:
        # Containers past their cap still surface the controls inside them.
        if name not in INTERACTIVE_TAGS and depth <= interactive_depth:
            for control in _outermost_interactive(element):
                if writer.full:
                    return
                _walk_element(
                    control,
                    depth=depth,
                    writer=writer,
                    container_depth=container_depth,
                    interactive_depth=interactive_depth,
                    text_limit=text_limit,
                    attribute_limit=attribute_limit,
                )
        writer.emit(f"{indent}{ELISION_MARKER}")
        return

    line = f"{indent}{_open_tag(name, element, attribute_limit)}"
    text = _direct_text(element, text_limit)
    if text:
        line = f"{line} {text}"
    writer.emit(line)
    _walk_children(
        element,
        depth=depth + 1,
        writer=writer,
        container_depth=container_depth,
        interactive_depth=interactive_depth,
        text_limit=text_limit,
        attribute_limit=attribute_limit,
    )


def _outermost_interactive(element: Tag) -> list[Tag]:
    controls: list[Tag] = []
    for found in element.find_all(list(INTERACTIVE_TAGS)):
        parent = found.parent
        while parent is not None and parent is not element:
            if parent.name in INTERACTIVE_TAGS:
                break
            parent = parent.parent
        else:
            controls.append(found)
    return controls


def _open_tag(name: str, element: Tag | None, attribute_limit: int) -> str:
    if element is None:
        return f"<{name}>"
    parts = [name]
    for key in ALLOWED_ATTRIBUTES:
        value = element.attrs.get(key)
        if value is None:
            continue
        if isinstance(value, list):
            value = " ".join(value)
        value = _WHITESPACE_RE.sub(" ", str(value)).strip()
        if len(value) > attribute_limit:
            value = value[:attribute_limit] + ELISION_MARKER
        parts.append(f'{key}="{value}"')
    return "<" + " ".join(parts) + ">"


def _direct_text(element: Tag, text_limit: int) -> str:
    pieces = [str(child) for child in element.children if isinstance(child, NavigableString)]
    text = _WHITESPACE_RE.sub(" ", " ".join(pieces)).strip()
    if len(text) > text_limit:
        return text[:text_limit] + ELISION_MARKER
    return text


class _BoundedWriter:
    def __init__(self, budget: int) -> None:
        self.budget = budget
        self.lines: list[str] = []
        self.size = 0
        self.full = False

    def emit(self, line: str) -> None:
        if self.full:
            return
        cost = len(line) + (1 if self.lines else 0)
        reserve = len(STRUCTURE_TRUNCATED_MARKER) + 1
        if self.size + cost + reserve > self.budget:
            self.full = True
            if self.size + reserve <= self.budget:
                self.lines.append(STRUCTURE_TRUNCATED_MARKER)
                self.size += reserve
            return
        self.lines.append(line)
        self.size += cost

    def render(self) -> str:
        return "\n".join(self.lines)
