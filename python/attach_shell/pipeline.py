"""Serialized evaluation for every shell connection.

All requests, from interactive sessions and one-shot connections alike, go
through a single FIFO queue drained by one worker thread. A request's
completion callback returns before the next request's evaluator call begins.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import queue
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TextIO

from .evaluator import EvaluationContext, Evaluator, PythonEvaluator, SourceTransform, Suspended

LOGGER = logging.getLogger("attach_shell.pipeline")

Completion = Callable[[Optional[BaseException], Any], None]


class PipelineClosed(RuntimeError):
    """Raised when submitting to a pipeline that has been shut down."""


@dataclass
class EvaluationRequest:
    code: str
    context: EvaluationContext
    origin: str
    completion: Completion
    stdout: Optional[TextIO] = None


class EvaluationPipeline:
    def __init__(
        self,
        evaluator: Optional[Evaluator] = None,
        *,
        source_transform: Optional[SourceTransform] = None,
    ) -> None:
        self.evaluator: Evaluator = evaluator or PythonEvaluator()
        self.source_transform = source_transform
        self._queue: "queue.Queue[Optional[EvaluationRequest]]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._worker: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(
        self,
        code: str,
        context: EvaluationContext,
        origin: str,
        completion: Completion,
        *,
        stdout: Optional[TextIO] = None,
    ) -> None:
        """Queue *code*; ``completion(error, result)`` runs once on the worker."""
        with self._lock:
            if self._closed:
                raise PipelineClosed("evaluation pipeline closed")
            self._ensure_worker()
            self._queue.put(EvaluationRequest(code, context, origin, completion, stdout))

    def evaluate(
        self,
        code: str,
        context: EvaluationContext,
        origin: str,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Blocking variant of :meth:`submit` returning the value or raising."""
        if threading.current_thread() is self._worker:
            raise RuntimeError("evaluate() called from inside an evaluation")
        done = threading.Event()
        outcome: dict = {}

        def completion(error: Optional[BaseException], result: Any) -> None:
            outcome["error"] = error
            outcome["result"] = result
            done.set()

        self.submit(code, context, origin, completion)
        if not done.wait(timeout):
            raise TimeoutError(f"evaluation of {origin} timed out")
        if outcome["error"] is not None:
            raise outcome["error"]
        return outcome["result"]

    def close(self, timeout: Optional[float] = 1.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            self._queue.put(None)
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)

    #
    # Worker
    #
    def _ensure_worker(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._run, name="attach-shell-eval", daemon=True)
        self._worker.start()

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            while True:
                request = self._queue.get()
                if request is None:
                    break
                self._dispatch(request, loop)
        finally:
            loop.close()

    def _dispatch(self, request: EvaluationRequest, loop: asyncio.AbstractEventLoop) -> None:
        code = request.code
        if self.source_transform is not None:
            try:
                code = self.source_transform(code)
            except Exception as exc:
                # Possibly a partial statement; the evaluator decides.
                LOGGER.debug("source transform failed for %s: %s", request.origin, exc)
        error: Optional[BaseException] = None
        result: Any = None
        try:
            with _redirect(request.stdout):
                result = self.evaluator(code, request.context, request.origin)
                if isinstance(result, Suspended):
                    result = loop.run_until_complete(result.awaitable)
        except BaseException as exc:
            # Even KeyboardInterrupt must not take the shared worker down.
            error = exc
        try:
            request.completion(error, result)
        except Exception:
            LOGGER.exception("completion callback failed for %s", request.origin)


class _ThreadStdout:
    """Stands in for ``sys.stdout``; only threads with a target are redirected."""

    def __init__(self, fallback: TextIO) -> None:
        self._fallback = fallback
        self._local = threading.local()

    def _current(self) -> TextIO:
        target = getattr(self._local, "target", None)
        return self._fallback if target is None else target

    def write(self, text: str) -> int:
        return self._current().write(text)

    def flush(self) -> None:
        self._current().flush()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._current(), name)


_install_lock = threading.Lock()


def _thread_stdout() -> _ThreadStdout:
    with _install_lock:
        if not isinstance(sys.stdout, _ThreadStdout):
            sys.stdout = _ThreadStdout(sys.stdout)
        return sys.stdout


@contextlib.contextmanager
def _redirect(stdout: Optional[TextIO]) -> Iterator[None]:
    if stdout is None:
        yield
        return
    proxy = _thread_stdout()
    previous = getattr(proxy._local, "target", None)
    proxy._local.target = stdout
    try:
        yield
    finally:
        proxy._local.target = previous
