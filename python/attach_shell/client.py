"""Client side of the attach shell.

Reads ``info.json``, connects, performs the handshake, and either runs one
command (``evaluate_and_exit``) or an interactive prompt (``attach``).
"""

from __future__ import annotations

import json
import logging
import shutil
import socket
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TextIO, Union

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from . import discovery
from .constants import DEFAULT_HOST, EXITING_MESSAGE
from .discovery import DiscoveryError, DiscoveryInfo

LOGGER = logging.getLogger("attach_shell.client")

ReadLine = Callable[[], str]


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    connect_timeout: float = 2.0
    reconnect_backoff: float = 0.5
    max_backoff: float = 5.0
    max_retries: int = 5
    columns: Optional[int] = None
    prompt: str = "> "


class _OutputPump:
    """Copies server output to *stream*, holding back the exit banner."""

    def __init__(self, sock: socket.socket, stream: TextIO) -> None:
        self._sock = sock
        self._stream = stream
        self._pending = ""
        self.exiting = False
        self.closed = threading.Event()
        self.on_close: Optional[Callable[[], None]] = None
        self._thread = threading.Thread(target=self._run, name="attach-shell-output", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        try:
            while True:
                try:
                    chunk = self._sock.recv(4096)
                except OSError:
                    break
                if not chunk:
                    break
                self._consume(chunk.decode("utf-8", errors="replace"))
            self._flush()
        finally:
            self.closed.set()
            if self.on_close is not None:
                self.on_close()

    def _consume(self, text: str) -> None:
        data = self._pending + text
        self._pending = ""
        lines = data.split("\n")
        tail = lines.pop()
        for line in lines:
            line = line.rstrip("\r")
            if line.endswith(EXITING_MESSAGE):
                self.exiting = True
                self._emit(line[: -len(EXITING_MESSAGE)])
                continue
            self._emit(line + "\n")
        # Hold back a trailing fragment that could be the start of the banner.
        for idx in range(len(tail)):
            if EXITING_MESSAGE.startswith(tail[idx:]):
                self._emit(tail[:idx])
                self._pending = tail[idx:]
                return
        self._emit(tail)

    def _flush(self) -> None:
        tail, self._pending = self._pending, ""
        if tail == EXITING_MESSAGE:
            self.exiting = True
        else:
            self._emit(tail)

    def _emit(self, text: str) -> None:
        if not text:
            return
        self._stream.write(text)
        self._stream.flush()


class ShellClient:
    def __init__(self, shell_dir: Union[str, Path], config: Optional[ClientConfig] = None) -> None:
        self.shell_dir = Path(shell_dir)
        self.config = config or ClientConfig()

    def discover(self) -> DiscoveryInfo:
        return discovery.read(self.shell_dir)

    def evaluate_and_exit(
        self,
        command: str,
        *,
        filename: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run *command* once and return the server's JSON reply."""
        info = self._require_enabled()
        request: Dict[str, Any] = {"command": command}
        if filename:
            request["filename"] = filename
        with self._connect(info) as sock:
            self._handshake(sock, info, evaluateAndExit=request, terminal=False)
            sock.settimeout(timeout)
            chunks = []
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
        text = b"".join(chunks).decode("utf-8", errors="replace")
        for line in reversed(text.splitlines()):
            line = line.strip()
            if not line:
                continue
            if line == EXITING_MESSAGE:
                raise DiscoveryError("shell rejected the connection")
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict):
                return message
        raise DiscoveryError("shell closed the connection without a reply")

    def attach(
        self,
        *,
        read_line: Optional[ReadLine] = None,
        output: Optional[TextIO] = None,
    ) -> int:
        """Interactive shell; reconnects while the record stays enabled."""
        stream = output or sys.stdout
        prompt_session: Optional[PromptSession] = None
        if read_line is None:
            prompt_session = PromptSession()
            read_line = lambda: prompt_session.prompt(self.config.prompt)  # noqa: E731
        attempt = 0
        backoff = self.config.reconnect_backoff
        connected_once = False
        while True:
            info = self.discover()
            if not info.connectable:
                if connected_once:
                    stream.write(f"Shell disabled: {info.reason or 'server shut down'}\n")
                    return 0
                stream.write(f"Shell unavailable: {info.reason or 'not running'}\n")
                return 1
            try:
                sock = self._connect(info)
            except OSError as exc:
                attempt += 1
                if self.config.max_retries > 0 and attempt >= self.config.max_retries:
                    stream.write(f"Shell unreachable: {exc}\n")
                    return 1
                LOGGER.debug("connect failed (%s); retrying in %.1fs", exc, backoff)
                time.sleep(backoff)
                backoff = min(backoff * 2, self.config.max_backoff)
                continue
            attempt = 0
            backoff = self.config.reconnect_backoff
            connected_once = True
            if self._run_session(sock, info, read_line, stream, prompt_session):
                return 0
            LOGGER.debug("shell connection dropped; reconnecting")

    #
    # Internal helpers
    #
    def _require_enabled(self) -> DiscoveryInfo:
        info = self.discover()
        if not info.connectable:
            raise DiscoveryError(info.reason or "shell disabled")
        return info

    def _connect(self, info: DiscoveryInfo) -> socket.socket:
        if info.port is None:
            raise DiscoveryError("shell record has no port")
        sock = socket.create_connection(
            (self.config.host, info.port),
            timeout=self.config.connect_timeout,
        )
        sock.settimeout(None)
        return sock

    def _handshake(self, sock: socket.socket, info: DiscoveryInfo, **options: Any) -> None:
        payload: Dict[str, Any] = {"key": info.key}
        payload.update(options)
        sock.sendall(json.dumps(payload).encode("utf-8") + b"\n")

    def _columns(self) -> int:
        if self.config.columns:
            return self.config.columns
        return shutil.get_terminal_size().columns

    def _run_session(
        self,
        sock: socket.socket,
        info: DiscoveryInfo,
        read_line: ReadLine,
        stream: TextIO,
        prompt_session: Optional[PromptSession],
    ) -> bool:
        """Returns ``True`` when the shell told us to exit."""
        pump = _OutputPump(sock, stream)
        if prompt_session is not None:
            pump.on_close = lambda: _interrupt_prompt(prompt_session)
        try:
            self._handshake(sock, info, columns=self._columns(), terminal=False, prompt="")
            pump.start()
            while not pump.closed.is_set():
                try:
                    if prompt_session is not None:
                        with patch_stdout():
                            line = read_line()
                    else:
                        line = read_line()
                except (EOFError, KeyboardInterrupt):
                    if not pump.closed.is_set():
                        sock.shutdown(socket.SHUT_WR)
                    break
                if pump.closed.is_set():
                    break
                sock.sendall((line + "\n").encode("utf-8"))
        except OSError as exc:
            LOGGER.debug("shell connection error: %s", exc)
        finally:
            pump.closed.wait(self.config.connect_timeout)
            pump.join(timeout=0.5)
            try:
                sock.close()
            except OSError:
                pass
        return pump.exiting


def _interrupt_prompt(prompt_session: PromptSession) -> None:
    app = prompt_session.app
    loop = getattr(app, "loop", None)
    if app.is_running and loop is not None:
        loop.call_soon_threadsafe(lambda: app.exit(exception=EOFError()))
