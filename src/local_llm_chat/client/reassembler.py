"""Rebuilds an assistant message from a relayed NDJSON byte stream."""

from enum import Enum
from typing import List, Optional

import structlog
from pydantic import BaseModel

from ..domain.models import ASSISTANT_ROLE, Message, StreamRecord
from ..services.ndjson import LineBuffer, parse_line

logger = structlog.get_logger()

ERROR_REPLY = "Sorry, something went wrong. Please check that the backend service is running."


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamDelta(BaseModel):
    """Text added by one stream record, reported to the per-chunk callback."""

    content: str = ""
    thinking: str = ""
    done: bool = False


class InvalidTransition(RuntimeError):
    """Raised when an operation does not fit the current stream state."""


class StreamReassembler:
    """State machine for one streamed reply.

    ``IDLE -> STREAMING -> COMPLETED | FAILED``, or ``STREAMING -> CANCELLED``
    when the consumer abandons the reply. Content and thinking deltas are
    appended in arrival order; a line is only decoded once its newline has
    arrived.
    """

    def __init__(self) -> None:
        self.state = StreamState.IDLE
        self._buffer = LineBuffer()
        self._content: List[str] = []
        self._thinking: List[str] = []
        self.records = 0
        self.skipped = 0
        self.message: Optional[Message] = None

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def thinking(self) -> Optional[str]:
        return "".join(self._thinking) if self._thinking else None

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)

    def _reset(self) -> None:
        self._buffer = LineBuffer()
        self._content = []
        self._thinking = []
        self.records = 0
        self.skipped = 0
        self.message = None

    def start(self) -> None:
        if self.state is StreamState.STREAMING:
            raise InvalidTransition("stream already in progress")
        self._reset()
        self.state = StreamState.STREAMING

    def feed(self, chunk: bytes) -> List[StreamDelta]:
        """Consume one transport chunk and return the deltas it completed."""
        if self.state is not StreamState.STREAMING:
            if self.finished:
                # Bytes after the terminal record are ignored.
                return []
            raise InvalidTransition(f"cannot feed a stream in state {self.state.value}")

        deltas = []
        for line in self._buffer.feed(chunk):
            delta = self._apply_line(line)
            if delta is None:
                continue
            deltas.append(delta)
            if delta.done:
                self._complete()
                break
        return deltas

    def _apply_line(self, line: bytes) -> Optional[StreamDelta]:
        if not line.strip():
            return None
        record = parse_line(line)
        if record is None:
            self.skipped += 1
            return None
        return self._apply(record)

    def _apply(self, record: StreamRecord) -> StreamDelta:
        self.records += 1
        if record.content:
            self._content.append(record.content)
        if record.thinking:
            self._thinking.append(record.thinking)
        return StreamDelta(
            content=record.content or "",
            thinking=record.thinking or "",
            done=record.done,
        )

    def _complete(self) -> Message:
        self.state = StreamState.COMPLETED
        self.message = Message(
            role=ASSISTANT_ROLE, content=self.content, thinking=self.thinking
        )
        logger.info(
            "stream_completed",
            records=self.records,
            skipped=self.skipped,
            content_length=len(self.message.content),
            has_thinking=self.message.thinking is not None,
        )
        return self.message

    def finish(self) -> Message:
        """The byte stream ended cleanly; freeze whatever has accumulated."""
        if self.state is StreamState.COMPLETED and self.message is not None:
            return self.message
        if self.state is not StreamState.STREAMING:
            raise InvalidTransition(f"cannot finish a stream in state {self.state.value}")
        tail = self._buffer.flush()
        if tail is not None:
            self._apply_line(tail)
        return self._complete()

    def fail(self, error: Optional[BaseException] = None) -> Message:
        """Transport failed before completion: drop partial text, return an error reply."""
        if self.state is not StreamState.STREAMING:
            raise InvalidTransition(f"cannot fail a stream in state {self.state.value}")
        logger.error(
            "stream_failed",
            records=self.records,
            partial_length=len(self.content),
            error=str(error) if error is not None else None,
        )
        self._reset()
        self.state = StreamState.FAILED
        self.message = Message(role=ASSISTANT_ROLE, content=ERROR_REPLY)
        return self.message

    def cancel(self) -> bool:
        """Abandon the stream. Returns False when there was nothing to cancel."""
        if self.state is not StreamState.STREAMING:
            return False
        self._reset()
        self.state = StreamState.CANCELLED
        logger.info("stream_cancelled")
        return True
