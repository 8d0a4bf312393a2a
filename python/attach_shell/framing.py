"""
Connection framing for the attach shell.

A client connection starts with one JSON document (the handshake) followed by
the raw bytes of the interactive session, all on the same socket. There is no
length prefix; the header is recovered by splitting on newlines and retrying a
strict JSON parse until it succeeds.

    FrameReader   → push parser: bytes in, one JSON value + payload stream out
    PayloadStream → pass-through pipe carrying everything after the header
    SocketWriter  → output side of the connection with a "still open" guard
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from typing import Any, Callable, Iterator, List, Optional

LOGGER = logging.getLogger("attach_shell.framing")

CompletionCallback = Callable[[Optional[BaseException], Any, "PayloadStream"], None]


class HandshakeError(RuntimeError):
    """Raised when the handshake header cannot be read."""


class PayloadStream:
    """Blocking byte pipe fed by the socket pump and read by the session."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._eof = False
        self._cv = threading.Condition(threading.Lock())

    @property
    def closed(self) -> bool:
        with self._cv:
            return self._eof

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        with self._cv:
            if self._eof:
                return 0
            self._buffer.extend(data)
            self._cv.notify_all()
        return len(data)

    def close(self) -> None:
        with self._cv:
            self._eof = True
            self._cv.notify_all()

    def read(self, size: int = -1) -> bytes:
        with self._cv:
            if size is None or size < 0:
                while not self._eof:
                    self._cv.wait()
                size = len(self._buffer)
            else:
                while not self._buffer and not self._eof:
                    self._cv.wait()
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            return chunk

    def readline(self) -> bytes:
        """Return the next line including its newline, or ``b""`` at EOF."""
        with self._cv:
            while True:
                idx = self._buffer.find(b"\n")
                if idx >= 0:
                    size = idx + 1
                    break
                if self._eof:
                    size = len(self._buffer)
                    break
                self._cv.wait()
            line = bytes(self._buffer[:size])
            del self._buffer[:size]
            return line

    def __iter__(self) -> Iterator[bytes]:
        while True:
            line = self.readline()
            if not line:
                return
            yield line


class SocketWriter:
    """Text writer over a socket that silently stops once the socket closes."""

    def __init__(self, sock: socket.socket, *, encoding: str = "utf-8") -> None:
        self._sock = sock
        self.encoding = encoding
        self.columns: Optional[int] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self.encoding, errors="replace")
        with self._lock:
            if self._closed:
                return 0
            try:
                self._sock.sendall(data)
            except OSError as exc:
                LOGGER.debug("socket write failed: %s", exc)
                self._close_locked()
                return 0
        return len(text)

    def flush(self) -> None:
        pass

    def isatty(self) -> bool:
        return False

    def writable(self) -> bool:
        return not self._closed

    def end(self, text: Optional[str] = None) -> None:
        """Write *text* (if any) and close the connection."""
        if text:
            self.write(text)
        self.close()

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass


class FrameReader:
    """Extract exactly one JSON value from the front of a byte stream.

    ``on_complete(error, value, payload)`` fires at most once. Bytes that
    follow the header, and everything fed after success, land in ``payload``.
    """

    def __init__(self, on_complete: CompletionCallback, payload: Optional[PayloadStream] = None) -> None:
        self.payload = payload if payload is not None else PayloadStream()
        self._on_complete = on_complete
        self._data_so_far = b""
        self._lock = threading.Lock()
        self._finished = False
        self._succeeded = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def succeeded(self) -> bool:
        return self._succeeded

    def feed(self, data: bytes) -> None:
        if self._finished:
            if self._succeeded:
                self.payload.write(data)
            return
        fragments: List[bytes] = data.split(b"\n")
        while fragments:
            self._data_so_far += fragments.pop(0)
            # Only the header is decoded; session bytes stay raw.
            text = self._data_so_far.decode("utf-8", errors="replace")
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                continue
            except Exception as exc:
                self._finish(exc, None)
                return
            if fragments:
                self.payload.write(b"\n".join(fragments))
            self._finish(None, value)
            return

    def source_closed(self) -> None:
        self._finish(HandshakeError("stream unexpectedly closed"), None)

    def source_error(self, exc: BaseException) -> None:
        self._finish(exc, None)

    def detach(self) -> bool:
        """Stop reading without invoking the callback.

        Returns ``False`` when the reader had already finished.
        """
        with self._lock:
            if self._finished:
                return False
            self._finished = True
        self.payload.close()
        return True

    def _finish(self, error: Optional[BaseException], value: Any) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._succeeded = error is None
        if error is not None:
            self.payload.close()
        self._on_complete(error, value, self.payload)


def pump_socket(sock: socket.socket, reader: FrameReader, *, chunk_size: int = 4096) -> None:
    """Feed *sock* into *reader*, then forward the rest into its payload."""
    try:
        while True:
            if reader.finished and not reader.succeeded:
                return
            try:
                chunk = sock.recv(chunk_size)
            except OSError as exc:
                reader.source_error(exc)
                return
            if not chunk:
                reader.source_closed()
                return
            reader.feed(chunk)
    finally:
        reader.payload.close()


def read_json_from_socket(
    sock: socket.socket,
    on_complete: CompletionCallback,
    *,
    name: str = "attach-shell-pump",
) -> FrameReader:
    """Start a daemon pump thread reading the handshake header off *sock*."""
    reader = FrameReader(on_complete)
    thread = threading.Thread(target=pump_socket, args=(sock, reader), name=name, daemon=True)
    thread.start()
    return reader
