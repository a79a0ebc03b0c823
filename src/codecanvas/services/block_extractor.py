from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..domain.artifact_models import CodeBlock
from .language_rules import (
    EXTENSION_LANGUAGES,
    detect_language,
    language_from_filename,
    looks_like_code,
    normalize_language,
)

LOG = logging.getLogger("codecanvas.extractor")

MIN_BODY_LENGTH = 10

_FENCE_OPEN = re.compile(r"^(?P<indent>[ \t]{0,3})(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^`]*)$")
_EXTENSIONS = "|".join(sorted(EXTENSION_LANGUAGES, key=len, reverse=True))
_PATH_TOKEN = re.compile(r"(?P<path>(?:[\w@.-]+/)*[\w@.-]+\.(?:" + _EXTENSIONS + r"))(?![\w.])")
_HINT_LINE = re.compile(
    r"^\s*(?://|#|<!--|/\*|--)?\s*(?:file(?:name)?\s*:\s*)?"
    r"(?P<path>(?:[\w@.-]+/)*[\w@.-]+\.(?:" + _EXTENSIONS + r"))\s*(?:-->|\*/)?\s*$",
    re.IGNORECASE,
)


@dataclass
class _OpenFence:
    marker: str
    tag: Optional[str]
    file_hint: Optional[str]
    start: int
    lines: List[str] = field(default_factory=list)


def _parse_info(info: str) -> Tuple[Optional[str], Optional[str]]:
    """Split a fence info string into ``(language tag, file hint)``."""
    info = info.strip()
    if not info:
        return None, None
    head, _, rest = info.partition(" ")
    tag: Optional[str] = head
    hint: Optional[str] = None
    if ":" in head:
        tag, _, maybe_path = head.partition(":")
        rest = f"{maybe_path} {rest}"
    elif _PATH_TOKEN.fullmatch(head) and "." in head:
        # ```App.jsx
        hint = head
        tag = None
    if hint is None:
        match = _PATH_TOKEN.search(rest.replace('"', " ").replace("'", " "))
        if match:
            hint = match.group("path")
    return (tag or None), hint


def _closes(line: str, marker: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and stripped[0] == marker[0] and set(stripped) == {marker[0]} and len(stripped) >= len(marker)


def _finish(fence: _OpenFence, end: int) -> Optional[CodeBlock]:
    lines = list(fence.lines)
    hint = fence.file_hint
    # A bare path on the first body line names the file.
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is not None:
        match = _HINT_LINE.match(lines[first])
        if match:
            if hint is None:
                hint = match.group("path")
            del lines[first]
    body = "\n".join(lines).strip("\n").rstrip()
    if len(body.strip()) <= MIN_BODY_LENGTH:
        return None
    if fence.tag:
        language = normalize_language(fence.tag)
    else:
        language = language_from_filename(hint) or detect_language(body)
    return CodeBlock(language=language, body=body, file_hint=hint, source_span=(fence.start, end))


def _scan(text: str) -> Tuple[List[CodeBlock], bool, bool]:
    """Return ``(blocks, saw_fence, ends_inside_fence)``."""
    blocks: List[CodeBlock] = []
    saw_fence = False
    current: Optional[_OpenFence] = None
    offset = 0
    for raw_line in text.splitlines(keepends=True):
        line = raw_line.rstrip("\r\n")
        line_start = offset
        offset += len(raw_line)
        if current is None:
            match = _FENCE_OPEN.match(line)
            if match:
                saw_fence = True
                tag, hint = _parse_info(match.group("info"))
                current = _OpenFence(marker=match.group("fence"), tag=tag, file_hint=hint, start=line_start)
            continue
        if _closes(line, current.marker):
            block = _finish(current, offset)
            if block is not None:
                blocks.append(block)
            current = None
            continue
        current.lines.append(line)
    return blocks, saw_fence, current is not None


def extract(text: str, fallback: bool = True) -> List[CodeBlock]:
    """Parse model text into code blocks in source order.

    Unterminated fences produce nothing for their region. When the text has no
    fence at all and ``fallback`` is set, text that carries code signatures is
    returned as one inferred block.
    """
    if not text:
        return []
    blocks, saw_fence, _ = _scan(text)
    if blocks or saw_fence or not fallback:
        return blocks
    body = text.strip()
    if len(body) <= MIN_BODY_LENGTH or not looks_like_code(body):
        return []
    LOG.debug("extract_fallback_block", extra={"length": len(body)})
    return [CodeBlock(language=detect_language(body), body=body, source_span=(0, len(text)))]


def has_unclosed_fence(text: str) -> bool:
    if not text:
        return False
    return _scan(text)[2]
