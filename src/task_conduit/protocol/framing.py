"""Content-Length framing for JSON-RPC messages over a byte stream."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

JsonRpcMessage = dict[str, Any]

HEADER_TERMINATOR = b"\r\n\r\n"
DEFAULT_MAX_HEADER_BYTES = 8192

_CONTENT_LENGTH_RE = re.compile(r"^Content-Length:\s*(\d+)$", re.IGNORECASE)
_CONTENT_LENGTH_PREFIX_RE = re.compile(r"^Content-Length:", re.IGNORECASE)


class FrameDecoder:
    """Push-based decoder that extracts complete frames from arbitrary chunks."""

    def __init__(
        self,
        on_message: Callable[[JsonRpcMessage], None],
        *,
        max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
    ) -> None:
        self._on_message = on_message
        self._max_header_bytes = max_header_bytes
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append `data` and dispatch every frame that is now complete."""

        self._buffer.extend(data)
        while True:
            header_end = self._buffer.find(HEADER_TERMINATOR)
            if header_end == -1:
                if len(self._buffer) > self._max_header_bytes:
                    logger.debug("Dropping %d buffered bytes without header", len(self._buffer))
                    self._buffer.clear()
                return

            header_raw = bytes(self._buffer[:header_end]).decode("ascii", errors="replace")
            body_start = header_end + len(HEADER_TERMINATOR)
            content_length = parse_content_length(header_raw)
            if content_length is None:
                del self._buffer[:body_start]
                continue

            body_end = body_start + content_length
            if len(self._buffer) < body_end:
                return

            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]
            message = _decode_body(body)
            if message is not None:
                self._on_message(message)


def parse_content_length(header_block: str) -> int | None:
    """Return the positive Content-Length of a header block, or None."""

    for line in header_block.split("\r\n"):
        match = _CONTENT_LENGTH_RE.match(line)
        if match:
            length = int(match.group(1))
            return length if length > 0 else None
        if _CONTENT_LENGTH_PREFIX_RE.match(line):
            return None
    return None


def encode_frame(message: JsonRpcMessage) -> bytes:
    body = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def _decode_body(body: bytes) -> JsonRpcMessage | None:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.debug("Ignoring frame with malformed JSON body")
        return None
    if not isinstance(message, dict):
        return None
    return message
