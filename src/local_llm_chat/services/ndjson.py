"""Newline-delimited JSON framing for chat streams."""

import json
from typing import List, Optional

import structlog

from ..domain.models import StreamRecord

logger = structlog.get_logger()


class LineBuffer:
    """Reassemble complete lines from arbitrarily split byte chunks.

    Works on bytes so a multi-byte character split across two chunks is
    only decoded once its line is complete.
    """

    def __init__(self) -> None:
        self._pending = b""

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, chunk: bytes) -> List[bytes]:
        """Add a chunk and return every line it completes, without the newline."""
        if not chunk:
            return []
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        return lines

    def flush(self) -> Optional[bytes]:
        """Return the unterminated remainder, if any, and reset."""
        rest, self._pending = self._pending, b""
        return rest if rest.strip() else None


def parse_line(line: bytes) -> Optional[StreamRecord]:
    """Decode one NDJSON line.

    Blank lines and lines that are not a JSON object return None. The
    record keeps the undecoded line bytes, newline-terminated, as ``raw``.
    """
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        return StreamRecord.from_payload(json.loads(text), raw=line + b"\n")
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        logger.warning("stream_line_skipped", error=str(e), line=text[:200])
        return None
