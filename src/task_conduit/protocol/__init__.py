"""Framed JSON-RPC transport."""

from task_conduit.protocol.connection import JsonRpcConnection
from task_conduit.protocol.framing import FrameDecoder, JsonRpcMessage, encode_frame

__all__ = ["FrameDecoder", "JsonRpcConnection", "JsonRpcMessage", "encode_frame"]
