"""Poll extraction from provider output.

Two decoders, tried in order: a single ``<POLL_JSON>`` block, then a
markdown-style list under a poll heading. Anything that fails validation
returns ``None`` and the output is treated as plain text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

MIN_POLL_OPTIONS = 2
MAX_POLL_OPTIONS = 15
DEFAULT_POLL_QUESTION = "Umfrage"

_POLL_BLOCK_RE = re.compile(r"<POLL_JSON>([\s\S]*?)</POLL_JSON>", re.IGNORECASE)
_OPTION_LINE_RE = re.compile(r"^\s*(?:(?:\d{1,2}|[A-Oa-o])[.)]|[-*])\s+(.+)$")
_POLL_HINT_RE = re.compile(r"\b(umfrage|survey|poll|abstimmen|vote|voting)\b", re.IGNORECASE)
_MULTI_SELECT_RE = re.compile(r"\b(mehrfach|multiple\s+choice|multi[\s-]?select)\b", re.IGNORECASE)
_EDGE_MARKUP_LEAD_RE = re.compile(r"^[-*_`#\s]+")
_EDGE_MARKUP_TAIL_RE = re.compile(r"[-*_`#\s]+$")


@dataclass(frozen=True, slots=True)
class PollPayload:
    question: str
    options: list[str]
    multi_select: bool = False


def strip_poll_blocks(text: str) -> str:
    return _POLL_BLOCK_RE.sub("", text).strip()


def _valid_options(options: list[str]) -> bool:
    if not MIN_POLL_OPTIONS <= len(options) <= MAX_POLL_OPTIONS:
        return False
    return len(set(options)) == len(options)


def _clean_poll_text(value: str) -> str:
    value = _EDGE_MARKUP_LEAD_RE.sub("", value.strip())
    value = _EDGE_MARKUP_TAIL_RE.sub("", value)
    return " ".join(value.split())


def parse_poll_block(raw_json: str) -> PollPayload | None:
    """Decode the JSON object inside a ``<POLL_JSON>`` block."""
    try:
        parsed = json.loads(raw_json)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None

    question = parsed.get("question")
    question = question.strip() if isinstance(question, str) else ""
    raw_options = parsed.get("options")
    if not isinstance(raw_options, list):
        return None
    options = [
        option.strip()
        for option in raw_options
        if isinstance(option, str) and option.strip()
    ]
    multi_select = parsed.get("multiSelect")

    if not question or not _valid_options(options):
        return None
    return PollPayload(
        question=question,
        options=options,
        multi_select=multi_select if isinstance(multi_select, bool) else False,
    )


def parse_list_poll(raw_text: str) -> PollPayload | None:
    """Decode a poll written as a heading followed by list items.

    Needs a poll keyword somewhere in the text. The question is taken from
    the last keyword line before the options (the part after ``:`` when
    present), else the line right before the first option.
    """
    text = strip_poll_blocks(raw_text)
    if not text or not _POLL_HINT_RE.search(text):
        return None

    lines = [line.strip() for line in text.replace("\r", "").split("\n") if line.strip()]
    options: list[str] = []
    first_option_index = -1
    for index, line in enumerate(lines):
        match = _OPTION_LINE_RE.match(line)
        if not match:
            continue
        if first_option_index == -1:
            first_option_index = index
        label = _clean_poll_text(match.group(1))
        if label:
            options.append(label)

    if not _valid_options(options):
        return None

    pre_option_lines = lines[:first_option_index] if first_option_index > 0 else lines
    hint_lines = [
        line
        for line in pre_option_lines
        if _POLL_HINT_RE.search(line) and not _OPTION_LINE_RE.match(line)
    ]
    heading_line = next(
        (line for line in reversed(hint_lines) if ":" in line),
        hint_lines[-1] if hint_lines else None,
    )
    heading_question = ""
    if heading_line:
        heading_question = _clean_poll_text(
            heading_line.split(":", 1)[1] if ":" in heading_line else heading_line
        )
    fallback_question = (
        _clean_poll_text(lines[first_option_index - 1]) if first_option_index > 0 else ""
    )

    return PollPayload(
        question=heading_question or fallback_question or DEFAULT_POLL_QUESTION,
        options=options,
        multi_select=bool(_MULTI_SELECT_RE.search(text)),
    )


def parse_poll(raw_text: str) -> PollPayload | None:
    """Extract a poll from provider output, or None for plain text."""
    if not raw_text:
        return None
    blocks = _POLL_BLOCK_RE.findall(raw_text)
    if len(blocks) == 1:
        if not blocks[0].strip():
            return None
        payload = parse_poll_block(blocks[0].strip())
        if payload is not None:
            return payload
    return parse_list_poll(raw_text)
