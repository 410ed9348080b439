"""
Fragment and diff utilities shared by the provider parsers and the reconciliation engine.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional


class Channel(str, Enum):
    RESPONSE = "response"
    REASONING = "reasoning"


@dataclass(frozen=True)
class Fragment:
    """
    One observation of a fragment source.

    `text` is always the cumulative text of `source` as far as the parser knows it, so the same
    observation delivered twice carries no new information.
    """

    source: int
    text: str
    hint: Optional[str] = None


@dataclass
class ParseResult:
    fragments: list = field(default_factory=list)
    completed: bool = False
    raw_lines: int = 0


def common_prefix_length(a: str, b: str) -> int:
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    return i


def longest_prefix_delta(accumulated: str, snapshot: str) -> str:
    """
    Return the part of `snapshot` not yet covered by `accumulated`.

    Cumulative redelivery ("hel" then "hello") yields only the unseen suffix; a stale or repeated
    snapshot yields "". If the upstream rewrote earlier text the two diverge before the end of
    `accumulated`; only growth past the accumulated length is reported and the correction pass
    reconciles the rest.
    """
    accumulated = accumulated or ""
    snapshot = snapshot or ""
    if len(snapshot) <= len(accumulated):
        return ""
    shared = common_prefix_length(accumulated, snapshot)
    if shared == len(accumulated):
        return snapshot[shared:]
    return snapshot[len(accumulated):]


def iter_sse_lines(raw: str) -> Iterator[str]:
    for line in (raw or "").splitlines():
        line = line.strip()
        if line:
            yield line


def sse_event_name(line: str) -> Optional[str]:
    if line.startswith("event:"):
        return line[6:].strip()
    return None


def sse_data(line: str) -> Optional[str]:
    if line.startswith("data:"):
        return line[5:].strip()
    return None


def sse_json(line: str):
    """Decode a `data:` line as JSON; anything else (or malformed JSON) gives None."""
    payload = sse_data(line)
    if not payload or payload == "[DONE]":
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


class SseLineBuffer:
    """Splits raw stream text into complete lines, holding back a trailing partial line."""

    def __init__(self):
        self._pending = ""

    def feed(self, raw: str) -> list[str]:
        text = self._pending + (raw or "")
        if not text:
            return []
        if text.endswith("\n") or text.endswith("\r"):
            self._pending = ""
            body = text
        else:
            body, sep, tail = text.rpartition("\n")
            if not sep:
                self._pending = text
                return []
            self._pending = tail
        return list(iter_sse_lines(body))

    def flush(self) -> list[str]:
        tail, self._pending = self._pending, ""
        return list(iter_sse_lines(tail))
