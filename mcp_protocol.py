"""Wire format for the stdio MCP protocol.

Every message is one JSON object on one line:

  {"protocolVersion": "2.0", "method": "...", "params": {...}, "id": 1}   call
  {"protocolVersion": "2.0", "method": "...", "params": {...}}            notification
  {"protocolVersion": "2.0", "result": ..., "id": 1}                      success
  {"protocolVersion": "2.0", "error": {"code": ..., "message": ...}, "id": 1}

FramedChannel turns a byte stream into those lines and back. Client and
worker each own one.
"""

import json
import threading
from typing import Any, Callable

PROTOCOL_VERSION = "2.0"
VERSION_KEY = "protocolVersion"

READ_CHUNK_SIZE = 65536


class ErrorCode:
    METHOD_NOT_FOUND = -32601
    SERVER_NOT_READY = -32002
    INTERNAL_ERROR = -32000


def is_valid_id(value) -> bool:
    # bool is an int subclass but never a usable id
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def make_request(method: str, params: Any = None, id=None) -> dict:
    msg = {VERSION_KEY: PROTOCOL_VERSION, "method": method, "params": params if params is not None else {}}
    if id is not None:
        msg["id"] = id
    return msg


def make_result(id, result: Any) -> dict:
    return {VERSION_KEY: PROTOCOL_VERSION, "result": result, "id": id}


def make_error(id, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {VERSION_KEY: PROTOCOL_VERSION, "error": error, "id": id}


def is_response(msg) -> bool:
    """True when *msg* carries an id and exactly one of result/error."""
    if not isinstance(msg, dict) or "id" not in msg:
        return False
    return ("result" in msg) != ("error" in msg)


def encode(message: dict) -> bytes:
    # NaN and Infinity are not JSON; refuse them instead of emitting bare tokens
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False, allow_nan=False) + "\n").encode("utf-8")


class FramedChannel:
    """Newline-delimited JSON frames in from a byte stream, out to a binary sink.

    Incoming bytes are pushed in with feed() (or pump() for a blocking
    stream); each complete line is handed to the registered frame callbacks
    as text. Outgoing messages go through write(), which serializes and
    flushes one whole frame under a lock.
    """

    def __init__(self, sink=None):
        self._sink = sink
        self._write_lock = threading.Lock()
        self._buffer = bytearray()
        self._callbacks: list[Callable[[str], None]] = []

    def on_frame(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def write(self, message: dict) -> None:
        # Serialize before taking the lock so an unencodable message never
        # leaves a partial frame behind.
        self.write_frame(encode(message))

    def write_frame(self, data: bytes) -> None:
        """Write one already-encoded, newline-terminated frame."""
        with self._write_lock:
            self._sink.write(data)
            self._sink.flush()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            line = raw.decode("utf-8", errors="replace")
            if not line.strip():
                continue
            for callback in self._callbacks:
                callback(line)

    @property
    def pending_bytes(self) -> int:
        """Size of the unterminated tail held between reads."""
        return len(self._buffer)

    def pump(self, stream, feed: Callable[[bytes], None] | None = None) -> None:
        """Feed *stream* into the channel until EOF.

        Uses read1() when the stream has it, so each iteration returns
        whatever a single underlying read produced instead of blocking for
        a full chunk. *feed* replaces self.feed when chunks must be handed
        to another thread first.
        """
        feed = feed or self.feed
        read = getattr(stream, "read1", stream.read)
        while True:
            chunk = read(READ_CHUNK_SIZE)
            if not chunk:
                break
            feed(chunk)
