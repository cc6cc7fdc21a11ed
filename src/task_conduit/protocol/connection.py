"""Blocking JSON-RPC connection over a pair of binary streams."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import BinaryIO

from task_conduit.protocol.framing import FrameDecoder, JsonRpcMessage, encode_frame

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 65536


class JsonRpcConnection:
    """Read framed messages from `reader` and write framed replies to `writer`.

    `send` may be called from any thread; frames are never interleaved.
    """

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self._reader = reader
        self._writer = writer
        self._send_lock = threading.Lock()
        self._closed = threading.Event()

    def close(self) -> None:
        """Stop the read loop after the current chunk."""

        self._closed.set()

    def send(self, message: JsonRpcMessage) -> None:
        frame = encode_frame(message)
        with self._send_lock:
            self._writer.write(frame)
            self._writer.flush()

    def read_loop(self, on_message: Callable[[JsonRpcMessage], None]) -> None:
        """Feed incoming bytes to the decoder until EOF or `close()`."""

        decoder = FrameDecoder(on_message)
        read = getattr(self._reader, "read1", None) or self._reader.read
        while not self._closed.is_set():
            chunk = read(_READ_CHUNK_BYTES)
            if not chunk:
                logger.debug("Input stream closed")
                return
            decoder.feed(chunk)
