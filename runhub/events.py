"""Event codec for the line-delimited JSON protocol on the runner's stderr.

Each line is one object shaped ``{"event": <name>, "data": {...}}``.
Decoding happens once, at the boundary: names map onto the closed
``EventKind`` enum, and names this version does not know are kept as
``EventKind.UNRECOGNIZED`` rather than rejected.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import DecodeError


class EventKind(str, Enum):
    SUITE_STARTED = "suite.started"
    TEST_PREPARED = "test.prepared"
    TEST_WARNING = "test.warning"
    TEST_DEPRECATION = "test.deprecation"
    TEST_NOTICE = "test.notice"
    TEST_PASSED = "test.passed"
    TEST_FAILED = "test.failed"
    TEST_ERRORED = "test.errored"
    TEST_SKIPPED = "test.skipped"
    TEST_INCOMPLETE = "test.incomplete"
    TEST_RISKY = "test.risky"
    TEST_FINISHED = "test.finished"
    EXECUTION_ENDED = "execution.ended"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_name(cls, name: str) -> "EventKind":
        try:
            kind = cls(name)
        except ValueError:
            return cls.UNRECOGNIZED
        # "unrecognized" on the wire is just another unknown name
        return cls.UNRECOGNIZED if kind is cls.UNRECOGNIZED else kind


COMPLETION_KINDS = frozenset({
    EventKind.TEST_PASSED,
    EventKind.TEST_FAILED,
    EventKind.TEST_ERRORED,
    EventKind.TEST_SKIPPED,
    EventKind.TEST_INCOMPLETE,
    EventKind.TEST_RISKY,
})

ISSUE_KINDS = frozenset({
    EventKind.TEST_WARNING,
    EventKind.TEST_DEPRECATION,
    EventKind.TEST_NOTICE,
})


@dataclass(frozen=True)
class Event:
    kind: EventKind
    name: str
    data: Mapping[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def test_id(self) -> Optional[str]:
        # Older runner extensions emit "test" instead of "testId".
        value = self.data.get("testId", self.data.get("test"))
        return value if isinstance(value, str) else None


def decode(raw_line: str) -> Optional[Event]:
    """Decode one line. Returns None for no-op lines, raises DecodeError otherwise."""
    line = raw_line.strip()
    # "0" shows up as an artifact of chunked process output
    if not line or line == "0":
        return None

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"invalid JSON: {exc.msg}", line) from exc

    if not isinstance(payload, dict):
        raise DecodeError(
            f"event line is not an object: {type(payload).__name__}", line
        )

    name = payload.get("event")
    if not isinstance(name, str) or not name:
        raise DecodeError("missing event name", line)

    data = payload.get("data", {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DecodeError(f"{name}: data is not an object", line)

    return Event(kind=EventKind.from_name(name), name=name, data=data, raw=line)


def encode(message: Mapping[str, Any]) -> str:
    """Compact single-line JSON for one outbound message."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False, default=str)


class LineBuffer:
    """Turns arbitrary output chunks into complete lines.

    Bytes are decoded incrementally, so a multi-byte character split across
    two chunks is reassembled before the line is cut.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        parts = (self._pending + chunk).split("\n")
        self._pending = parts.pop()
        return [p.rstrip("\r") for p in parts]

    def flush(self) -> list[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []
