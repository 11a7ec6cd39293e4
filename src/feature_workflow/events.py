"""Decoding of an agent's newline-delimited JSON output stream.

Chunks arrive unaligned to record boundaries. ``EventStreamDecoder`` keeps the
trailing partial line between chunks and turns every complete line into zero
or more typed ``StreamEvent`` values. Lines that are not the expected record
shape are logged at debug level and dropped.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 8192


class EventKind(str, Enum):
    ASSISTANT_TEXT = "assistant-text"
    TOOL_INVOCATION = "tool-invocation"
    TOOL_RESULT = "tool-result"
    SYSTEM_NOTICE = "system-notice"
    RUN_SUMMARY = "run-summary"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    text: str = ""
    tool_name: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class SupportsRead(Protocol):
    async def read(self, n: int = -1) -> bytes:
        ...


class EventStreamDecoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._last_assistant_text: str | None = None
        self._summary_text: str | None = None
        self.event_count = 0
        self.noise_count = 0

    @property
    def final_text(self) -> str:
        """Last assistant text seen, else the run summary's result text."""
        if self._last_assistant_text is not None:
            return self._last_assistant_text
        return self._summary_text or ""

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        *complete, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in complete:
            events.extend(self._decode_line(line))
        return events

    def close(self) -> list[StreamEvent]:
        """Flush a trailing line that was not newline-terminated."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._decode_line(remainder)

    def _decode_line(self, line: str) -> list[StreamEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            self.noise_count += 1
            logger.debug("Non-JSON stream line: %s", stripped[:200])
            return []
        if not isinstance(record, dict):
            self.noise_count += 1
            logger.debug("Ignoring non-object stream record: %s", stripped[:200])
            return []

        events = classify_record(record)
        if not events:
            self.noise_count += 1
            logger.debug("Unclassified stream record type=%r", record.get("type"))
        for event in events:
            if event.kind is EventKind.ASSISTANT_TEXT:
                self._last_assistant_text = event.text
            elif event.kind is EventKind.RUN_SUMMARY and event.text:
                self._summary_text = event.text
        self.event_count += len(events)
        return events


def _content_blocks(record: dict[str, Any]) -> list[Any]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return content
    return []


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [item.get("text", "") for item in content if isinstance(item, dict)]
        return "\n".join(part for part in parts if part)
    return ""


def classify_record(record: dict[str, Any]) -> list[StreamEvent]:
    """Map one decoded record to its typed events."""
    record_type = record.get("type")

    if record_type == "assistant":
        events: list[StreamEvent] = []
        texts: list[str] = []
        for block in _content_blocks(record):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                texts.append(str(block["text"]))
            elif block.get("type") == "tool_use":
                events.append(
                    StreamEvent(
                        kind=EventKind.TOOL_INVOCATION,
                        tool_name=str(block.get("name") or "unknown"),
                        payload={"input": block.get("input")},
                    )
                )
        if texts:
            events.insert(0, StreamEvent(kind=EventKind.ASSISTANT_TEXT, text="\n".join(texts)))
        return events

    if record_type == "user":
        return [
            StreamEvent(
                kind=EventKind.TOOL_RESULT,
                text=_tool_result_text(block.get("content")),
                payload={"is_error": bool(block.get("is_error"))},
            )
            for block in _content_blocks(record)
            if isinstance(block, dict) and block.get("type") == "tool_result"
        ]

    if record_type == "tool_use":
        return [
            StreamEvent(
                kind=EventKind.TOOL_INVOCATION,
                tool_name=str(record.get("name") or "unknown"),
                payload={"input": record.get("input")},
            )
        ]

    if record_type == "tool_result":
        return [
            StreamEvent(
                kind=EventKind.TOOL_RESULT,
                text=_tool_result_text(record.get("content")),
                payload={"is_error": bool(record.get("is_error"))},
            )
        ]

    if record_type == "system":
        return [StreamEvent(kind=EventKind.SYSTEM_NOTICE, text=str(record.get("subtype") or ""), payload=record)]

    if record_type == "result":
        result_text = record.get("result")
        return [
            StreamEvent(
                kind=EventKind.RUN_SUMMARY,
                text=result_text if isinstance(result_text, str) else "",
                payload={
                    key: record.get(key)
                    for key in ("subtype", "is_error", "duration_ms", "num_turns", "total_cost_usd", "session_id")
                    if key in record
                },
            )
        ]

    return []


async def iter_events(stream: SupportsRead, decoder: EventStreamDecoder | None = None) -> AsyncIterator[StreamEvent]:
    """Yield typed events from ``stream`` until end of file.

    Reads are awaited one chunk at a time, so a slow consumer holds back the
    producer instead of buffering the whole output.
    """
    decoder = decoder if decoder is not None else EventStreamDecoder()
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event
