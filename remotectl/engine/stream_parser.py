"""Incremental decoders for external process output.

Two modes, both safe across arbitrary chunk boundaries:

LineDelimitedParser
    Newline-delimited JSON (``claude --output-format stream-json``).
    The trailing partial line is kept until the next chunk; lines that
    do not decode to a JSON object are dropped as noise.

SentinelParser
    Structured JSON embedded in free-form terminal output between a
    start and an end marker, e.g.::

        ===QUESTION===
        {"id": "q1", "question": "..."}
        ===END_QUESTION===

    Matched spans are removed from the buffer. The buffer is trimmed
    after every scan so it never holds more than the earliest pending
    start marker onwards (or a marker-sized tail when nothing is
    pending), which keeps long-lived sessions bounded.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any

from .errors import ProtocolDecodeError

logger = logging.getLogger(__name__)


class _TextAccumulator:
    """Decode bytes incrementally so multi-byte characters can straddle chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: str | bytes, final: bool = False) -> str:
        if isinstance(chunk, str):
            return chunk
        return self._decoder.decode(chunk, final)

    def finish(self) -> str:
        return self._decoder.decode(b"", True)


def decode_json_object(text: str) -> dict[str, Any]:
    """Decode *text* as one JSON object. Raises ProtocolDecodeError."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ProtocolDecodeError(text, str(exc)) from exc
    if not isinstance(value, dict):
        raise ProtocolDecodeError(text, f"expected object, got {type(value).__name__}")
    return value


class LineDelimitedParser:
    """Incremental newline-delimited JSON decoder."""

    def __init__(self) -> None:
        self._text = _TextAccumulator()
        self._buffer = ""
        self.skipped = 0

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, chunk: str | bytes) -> list[dict[str, Any]]:
        """Add a chunk and return every record completed by it, in order."""
        self._buffer += self._text.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left as a final record."""
        self._buffer += self._text.finish()
        remaining, self._buffer = self._buffer, ""
        return self._decode_lines(remaining.split("\n"))

    def _decode_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                records.append(decode_json_object(stripped))
            except ProtocolDecodeError as exc:
                self.skipped += 1
                logger.debug("Skipping non-event line: %s", exc)
        return records


@dataclass(frozen=True)
class SentinelSpec:
    """A start/end marker pair and the record kind it produces.

    ``exclusive`` kinds are held back while a previous record of the
    same kind is still outstanding (see ``SentinelParser.resolve``).
    """
    kind: str
    start: str
    end: str
    exclusive: bool = False


@dataclass(frozen=True)
class SentinelRecord:
    kind: str
    payload: dict[str, Any]


QUESTION_SPEC = SentinelSpec(
    kind="question",
    start="===QUESTION===",
    end="===END_QUESTION===",
    exclusive=True,
)
PLAN_SPEC = SentinelSpec(
    kind="plan",
    start="===PLAN_START===",
    end="===PLAN_END===",
)


class SentinelParser:
    """Incremental decoder for sentinel-delimited JSON records."""

    def __init__(
        self,
        specs: list[SentinelSpec] | None = None,
        *,
        max_buffer: int = 1_000_000,
    ) -> None:
        self._specs = list(specs or [QUESTION_SPEC, PLAN_SPEC])
        self._max_buffer = max_buffer
        self._text = _TextAccumulator()
        self._buffer = ""
        self._outstanding: set[str] = set()
        self._tail_keep = max(len(s.start) for s in self._specs) - 1

    @property
    def buffer(self) -> str:
        return self._buffer

    def is_outstanding(self, kind: str) -> bool:
        return kind in self._outstanding

    def feed(self, chunk: str | bytes) -> list[SentinelRecord]:
        """Add a chunk and return the records it completes."""
        self._buffer += self._text.decode(chunk)
        return self._scan()

    def resolve(self, kind: str) -> list[SentinelRecord]:
        """Mark the outstanding *kind* record as handled.

        Returns records of that kind that were held back while it was
        open.
        """
        self._outstanding.discard(kind)
        return self._scan()

    def flush(self) -> list[SentinelRecord]:
        """Attempt to decode an unterminated record at end of stream."""
        self._buffer += self._text.finish()
        records = self._scan()
        for spec in self._specs:
            if spec.exclusive and spec.kind in self._outstanding:
                continue
            idx = self._buffer.find(spec.start)
            if idx < 0:
                continue
            body = self._buffer[idx + len(spec.start):].strip()
            try:
                payload = decode_json_object(body)
            except ProtocolDecodeError as exc:
                logger.debug("Discarding partial %s record at flush: %s", spec.kind, exc)
                continue
            records.append(SentinelRecord(spec.kind, payload))
        self._buffer = ""
        return records

    def _find_next(self) -> tuple[SentinelSpec, int, int] | None:
        """Deliverable block whose end marker comes first.

        Ordering by end rather than start means a block of one kind
        nested inside another is taken out before the outer one, which
        is what incremental feeding would do as the inner end arrives.
        """
        best: tuple[SentinelSpec, int, int] | None = None
        for spec in self._specs:
            if spec.exclusive and spec.kind in self._outstanding:
                continue
            start = self._buffer.find(spec.start)
            if start < 0:
                continue
            end = self._buffer.find(spec.end, start + len(spec.start))
            if end < 0:
                continue
            if best is None or end < best[2]:
                best = (spec, start, end)
        return best

    def _scan(self) -> list[SentinelRecord]:
        records: list[SentinelRecord] = []
        while True:
            found = self._find_next()
            if found is None:
                break
            spec, start, end = found
            body = self._buffer[start + len(spec.start):end].strip()
            self._buffer = self._buffer[:start] + self._buffer[end + len(spec.end):]
            try:
                payload = decode_json_object(body)
            except ProtocolDecodeError as exc:
                logger.warning("Discarding malformed %s block: %s", spec.kind, exc)
                continue
            records.append(SentinelRecord(spec.kind, payload))
            if spec.exclusive:
                self._outstanding.add(spec.kind)
        self._trim()
        return records

    def _trim(self) -> None:
        pending = [
            idx for idx in (self._buffer.find(s.start) for s in self._specs)
            if idx >= 0
        ]
        if pending:
            keep_from = min(pending)
        else:
            keep_from = max(len(self._buffer) - self._tail_keep, 0)
        if keep_from:
            self._buffer = self._buffer[keep_from:]
        if len(self._buffer) > self._max_buffer:
            logger.warning(
                "Sentinel buffer exceeded %d chars without a closing marker; dropping it",
                self._max_buffer,
            )
            self._buffer = self._buffer[-self._tail_keep:] if self._tail_keep else ""
