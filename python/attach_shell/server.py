"""Attach shell server.

Listens on an ephemeral localhost port, publishes ``info.json`` and gives
every authenticated connection its own session against one shared
evaluation context.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
import socket
import socketserver
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from . import discovery
from .constants import DEFAULT_FILENAME, DEFAULT_HOST, EXITING_MESSAGE, HANDSHAKE_TIMEOUT_S
from .evaluator import (
    EvaluationContext,
    Evaluator,
    ModuleInstaller,
    SourceTransform,
    describe_error,
    install_modules,
)
from .framing import FrameReader, HandshakeError, PayloadStream, SocketWriter, read_json_from_socket
from .history import HistoryStore
from .options import DEFAULT_OPTIONS, EvaluateAndExit, OptionsError, ReplOptions, negotiate
from .pipeline import EvaluationPipeline, PipelineClosed
from .session import ShellSession

LOGGER = logging.getLogger("attach_shell.server")

StartupHook = Callable[[Callable[[], None]], None]


@dataclass
class ShellConfig:
    host: str = DEFAULT_HOST
    handshake_timeout: float = HANDSHAKE_TIMEOUT_S
    key: Optional[str] = None
    exit_message: str = EXITING_MESSAGE
    filename: str = DEFAULT_FILENAME
    prompt: str = DEFAULT_OPTIONS["prompt"]
    terminal: bool = DEFAULT_OPTIONS["terminal"]
    use_colors: bool = DEFAULT_OPTIONS["use_colors"]
    ignore_undefined: bool = DEFAULT_OPTIONS["ignore_undefined"]
    persist_history: bool = True

    def option_defaults(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DEFAULT_OPTIONS}


class _Handshake:
    """Single-fire holder for the frame reader's outcome."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self.error: Optional[BaseException] = None
        self.value: Any = None
        self.payload: Optional[PayloadStream] = None
        self.timed_out = False

    def complete(self, error: Optional[BaseException], value: Any, payload: PayloadStream) -> None:
        self.error = error
        self.value = value
        self.payload = payload
        self._done.set()

    def abort(self) -> None:
        self.timed_out = True
        self.error = HandshakeError("handshake timed out")
        self._done.set()

    def wait(self) -> None:
        self._done.wait()


class _ShellHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        self.server.on_connection(self.request)


class ShellServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        shell_dir: Union[str, Path],
        config: Optional[ShellConfig] = None,
        *,
        evaluator: Optional[Evaluator] = None,
        pipeline: Optional[EvaluationPipeline] = None,
        context: Optional[EvaluationContext] = None,
        source_transform: Optional[SourceTransform] = None,
        module_installer: Optional[ModuleInstaller] = install_modules,
        on_reload: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = config or ShellConfig()
        super().__init__((self.config.host, 0), _ShellHandler, bind_and_activate=False)
        self.shell_dir = Path(shell_dir)
        self.key = self.config.key or secrets.token_hex(16)
        self._owns_pipeline = pipeline is None
        self.pipeline = pipeline or EvaluationPipeline(evaluator, source_transform=source_transform)
        self.context = context or EvaluationContext()
        self.module_installer = module_installer
        self.on_reload = on_reload
        self._conn_lock = threading.Lock()
        self._outputs: Set[SocketWriter] = set()
        self._sessions: Set[ShellSession] = set()
        self._serve_thread: Optional[threading.Thread] = None
        self._listening = False

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def address(self) -> Tuple[str, int]:
        return self.server_address[0], self.server_address[1]

    def listen(self) -> None:
        """Bind, publish the discovery record, and start accepting."""
        if self._listening:
            return
        try:
            self.server_bind()
            self.server_activate()
        except OSError:
            self.server_close()
            raise
        self._listening = True
        discovery.publish(self.shell_dir, self.port, self.key)
        self._serve_thread = threading.Thread(
            target=self.serve_forever,
            name="attach-shell-server",
            daemon=True,
        )
        self._serve_thread.start()
        LOGGER.info("shell listening on %s:%s", self.config.host, self.port)

    def close(self) -> None:
        """Stop accepting and drop every open connection without the banner."""
        if self._listening:
            self.shutdown()
            self._listening = False
        with self._conn_lock:
            sessions = list(self._sessions)
            outputs = list(self._outputs)
        for session in sessions:
            session.close()
        for output in outputs:
            output.close()
        self.server_close()
        if self._owns_pipeline:
            self.pipeline.close()

    def handle_error(self, request, client_address) -> None:
        LOGGER.exception("unhandled error serving %s", client_address)

    #
    # Connection handling
    #
    def on_connection(self, sock: socket.socket) -> None:
        output = SocketWriter(sock)
        self._track(output)
        try:
            self._serve_connection(sock, output)
        finally:
            output.close()
            self._untrack(output)

    def _serve_connection(self, sock: socket.socket, output: SocketWriter) -> None:
        handshake = _Handshake()
        reader = read_json_from_socket(sock, handshake.complete)
        timer = threading.Timer(
            self.config.handshake_timeout,
            self._handshake_timeout,
            args=(reader, handshake, output),
        )
        timer.daemon = True
        timer.start()
        try:
            handshake.wait()
        finally:
            timer.cancel()

        if handshake.timed_out:
            return
        if handshake.error is not None:
            LOGGER.warning("shell handshake failed: %s", handshake.error)
            return
        requested = handshake.value
        if not self._key_matches(requested):
            LOGGER.debug("shell connection rejected: bad key")
            output.end(self.config.exit_message + "\n")
            return

        payload = handshake.payload
        if payload is None:
            output.close()
            return
        try:
            options = negotiate(
                requested,
                input=payload,
                output=output,
                defaults=self.config.option_defaults(),
            )
        except OptionsError as exc:
            self._send_message(output, {"error": f"{type(exc).__name__}: {exc}", "code": 1})
            return

        if options.evaluate_and_exit is not None:
            self._evaluate_and_exit(options, options.evaluate_and_exit)
            return
        self._run_session(options)

    def _handshake_timeout(self, reader: FrameReader, handshake: _Handshake, output: SocketWriter) -> None:
        if not reader.detach():
            return
        LOGGER.debug("shell handshake timed out")
        handshake.abort()
        output.end(self.config.exit_message + "\n")

    def _key_matches(self, requested: Any) -> bool:
        if not isinstance(requested, dict):
            return False
        key = requested.get("key")
        if not isinstance(key, str):
            return False
        # Any JSON string is a valid key attempt, lone surrogates included.
        return hmac.compare_digest(key.encode("utf-8", "surrogatepass"), self.key.encode("utf-8"))

    def _evaluate_and_exit(self, options: ReplOptions, request: EvaluateAndExit) -> None:
        done = threading.Event()

        def completion(error: Optional[BaseException], result: Any) -> None:
            try:
                if error is not None:
                    message = {"error": describe_error(error), "code": 1}
                else:
                    message = {"result": result}
                self._send_message(options.output, message)
            finally:
                done.set()

        try:
            self.pipeline.submit(
                request.command,
                self.context,
                request.filename or self.config.filename,
                completion,
            )
        except PipelineClosed as exc:
            self._send_message(options.output, {"error": describe_error(exc), "code": 1})
            return
        done.wait()

    def _run_session(self, options: ReplOptions) -> None:
        history = None
        if self.config.persist_history:
            try:
                history = HistoryStore(discovery.history_file(self.shell_dir))
            except OSError as exc:
                LOGGER.warning("shell history unavailable: %s", exc)
        session = ShellSession(
            options,
            self.pipeline,
            self.context,
            history=history,
            module_installer=self.module_installer,
            on_reload=self.on_reload,
            filename=self.config.filename,
            exit_message=self.config.exit_message,
        )
        with self._conn_lock:
            self._sessions.add(session)
        try:
            session.run()
        finally:
            with self._conn_lock:
                self._sessions.discard(session)

    @staticmethod
    def _send_message(output: SocketWriter, message: Dict[str, Any]) -> None:
        output.end(json.dumps(message, default=repr) + "\n")

    def _track(self, output: SocketWriter) -> None:
        with self._conn_lock:
            self._outputs.add(output)

    def _untrack(self, output: SocketWriter) -> None:
        with self._conn_lock:
            self._outputs.discard(output)


def listen(
    shell_dir: Union[str, Path],
    *,
    startup_hook: Optional[StartupHook] = None,
    **kwargs: Any,
) -> ShellServer:
    """Create a :class:`ShellServer` and start it once the host is ready.

    ``startup_hook`` receives the start callback; without one the server
    starts immediately.
    """
    server = ShellServer(shell_dir, **kwargs)
    if startup_hook is None:
        server.listen()
    else:
        startup_hook(server.listen)
    return server


def disable(shell_dir: Union[str, Path], reason: str = discovery.DISABLED_REASON) -> None:
    """Tell attached and reconnecting clients that the shell is gone."""
    discovery.disable(shell_dir, reason)
