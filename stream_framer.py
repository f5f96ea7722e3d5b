"""Turn an agent's stream-json stdout into discrete, typed messages."""
from __future__ import annotations

import codecs
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class MessageKind(str, Enum):
    LIFECYCLE_INIT = "lifecycle_init"
    LIFECYCLE = "lifecycle"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    RESULT = "result"
    USER = "user"
    OTHER = "other"
    RAW = "raw"
    STDERR = "stderr"


# Declared record "type" -> kind. system/init is special-cased in classify().
RECORD_KINDS = {
    "system": MessageKind.LIFECYCLE,
    "assistant": MessageKind.ASSISTANT,
    "tool_call": MessageKind.TOOL_CALL,
    "result": MessageKind.RESULT,
    "user": MessageKind.USER,
}


def classify(record: Dict[str, Any]) -> MessageKind:
    record_type = record.get("type")
    if record_type == "system" and record.get("subtype") == "init":
        return MessageKind.LIFECYCLE_INIT
    return RECORD_KINDS.get(record_type, MessageKind.OTHER)


@dataclass(frozen=True)
class StreamMessage:
    kind: MessageKind
    type: str
    raw: Any
    ts: float
    subtype: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        """Line text for raw and stderr messages."""
        if self.kind in (MessageKind.RAW, MessageKind.STDERR):
            return self.raw.get("text")
        return None

    @property
    def conversation_handle(self) -> Optional[str]:
        """The resumable chat id carried by a system/init record, if any."""
        if self.kind is not MessageKind.LIFECYCLE_INIT:
            return None
        value = self.raw.get("session_id")
        if isinstance(value, (str, int)) and str(value):
            return str(value)
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "kind": self.kind.value,
            "raw": self.raw,
            "ts": int(self.ts * 1000),
        }
        if self.subtype is not None:
            payload["subtype"] = self.subtype
        return payload


def parse_line(line: str, ts: float) -> Optional[StreamMessage]:
    """Frame one complete stdout line; blank lines yield ``None``."""
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        record = json.loads(trimmed)
    except json.JSONDecodeError:
        record = None
    if not isinstance(record, dict):
        return StreamMessage(MessageKind.RAW, "raw", {"text": trimmed}, ts)
    subtype = record.get("subtype")
    return StreamMessage(
        kind=classify(record),
        type=str(record.get("type") or "unknown"),
        raw=record,
        ts=ts,
        subtype=str(subtype) if subtype is not None else None,
    )


@dataclass
class StreamFramer:
    """Per-process framing state: carry-over buffer plus incremental decoders.

    Chunks are decoded before splitting so a multi-byte character cut across
    two reads is reassembled rather than replaced.
    """

    clock: Callable[[], float] = time.time
    _buffer: str = ""
    _stdout_decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    _stderr_decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> List[StreamMessage]:
        self._buffer += self._stdout_decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._frame(lines)

    def flush(self) -> List[StreamMessage]:
        """Frame whatever is left once the stream has ended."""
        tail = self._buffer + self._stdout_decoder.decode(b"", final=True)
        self._buffer = ""
        return self._frame(tail.split("\n"))

    def feed_stderr(self, chunk: bytes) -> Optional[StreamMessage]:
        text = self._stderr_decoder.decode(chunk).strip()
        if not text:
            return None
        return StreamMessage(MessageKind.STDERR, "stderr", {"text": text}, self.clock())

    def _frame(self, lines: List[str]) -> List[StreamMessage]:
        messages: List[StreamMessage] = []
        for line in lines:
            message = parse_line(line, self.clock())
            if message is not None:
                messages.append(message)
        return messages
