"""Interactive shell session bound to one client connection."""

from __future__ import annotations

import atexit
import logging
import os
import pprint
import signal
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import CONTINUATION_PROMPT, DEFAULT_FILENAME, EXITING_MESSAGE
from .evaluator import EvaluationContext, IncompleteInput, ModuleInstaller, format_error, install_modules
from .history import HistoryStore
from .options import ReplOptions
from .pipeline import EvaluationPipeline, PipelineClosed

LOGGER = logging.getLogger("attach_shell.session")

COMMAND_HELP: Dict[str, str] = {
    "break": "Terminate current command input and display new prompt",
    "exit": "Disconnect from server and leave shell",
    "help": "Show this help information",
    "history": "Show the saved command history",
    "reload": "Restart the server and the shell",
}


def terminate_host() -> None:
    """Default ``.reload`` action: stop the host so its supervisor restarts it."""
    LOGGER.info("reload requested; terminating pid %s", os.getpid())
    os.kill(os.getpid(), signal.SIGTERM)


class ShellSession:
    """Reads lines from the payload stream and evaluates them one at a time."""

    def __init__(
        self,
        options: ReplOptions,
        pipeline: EvaluationPipeline,
        context: EvaluationContext,
        *,
        history: Optional[HistoryStore] = None,
        module_installer: Optional[ModuleInstaller] = install_modules,
        on_reload: Optional[Callable[[], None]] = None,
        filename: str = DEFAULT_FILENAME,
        exit_message: str = EXITING_MESSAGE,
    ) -> None:
        self.options = options
        self.pipeline = pipeline
        self.context = context
        self.history = history
        self.module_installer = module_installer
        self.on_reload = on_reload or terminate_host
        self.filename = filename
        self.exit_message = exit_message
        self._buffer: List[str] = []
        self._closed = False
        self._finished = False
        self._commands: Dict[str, Callable[[], bool]] = {
            "break": self._cmd_break,
            "exit": self._cmd_exit,
            "help": self._cmd_help,
            "history": self._cmd_history,
            "reload": self._cmd_reload,
        }

    @property
    def output(self):
        return self.options.output

    def start(self) -> None:
        """Bind the session to the shared context."""
        self.options.use_global = True
        if self.module_installer is not None:
            try:
                self.module_installer(self.context)
            except Exception:
                LOGGER.exception("module installer failed")
        self.context["repl"] = self
        atexit.register(self._on_process_exit)

    def run(self) -> None:
        self.start()
        try:
            self._write(self.options.prompt)
            for raw in self.options.input:
                if self._closed:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if self.history is not None:
                    self.history.append(line)
                if not self.handle_line(line):
                    break
        finally:
            self.exit()

    def handle_line(self, line: str) -> bool:
        """Process one input line; returns ``False`` when the session should end."""
        stripped = line.strip()
        if stripped.startswith("."):
            name = stripped[1:].split(None, 1)[0] if len(stripped) > 1 else ""
            command = self._commands.get(name)
            if command is not None:
                return command()
        if not self._buffer and not stripped:
            self._write(self.options.prompt)
            return True
        self._buffer.append(line)
        try:
            error, result = self._evaluate("\n".join(self._buffer))
        except PipelineClosed:
            LOGGER.debug("pipeline closed; ending session")
            return False
        if isinstance(error, IncompleteInput):
            self._write(CONTINUATION_PROMPT)
            return True
        self._buffer.clear()
        if error is not None:
            self._show_error(error)
        else:
            self._show_result(result)
        self._write(self.options.prompt)
        return True

    def exit(self) -> None:
        """End the session, sending the exit banner unless the host closed it."""
        if self._finished:
            return
        self._finished = True
        if not self._closed:
            self.output.end(self.exit_message + "\n")
        else:
            self.output.close()
        if self.history is not None:
            self.history.close()
        atexit.unregister(self._on_process_exit)

    def close(self) -> None:
        """Close the connection without the exit banner."""
        self._closed = True
        self.output.close()
        self.options.input.close()

    #
    # Evaluation helpers
    #
    def _evaluate(self, code: str) -> Tuple[Optional[BaseException], Any]:
        done = threading.Event()
        outcome: List[Any] = [None, None]

        def completion(error: Optional[BaseException], result: Any) -> None:
            outcome[0] = error
            outcome[1] = result
            done.set()

        self.pipeline.submit(code, self.context, self.filename, completion, stdout=self.output)
        done.wait()
        return outcome[0], outcome[1]

    def _show_result(self, result: Any) -> None:
        if result is None:
            if not self.options.ignore_undefined:
                self._write("None\n")
            return
        self.context.last = result
        width = self.output.columns or 80
        self._write(pprint.pformat(result, width=width) + "\n")

    def _show_error(self, error: BaseException) -> None:
        text = format_error(error, self.filename)
        if self.options.use_colors:
            text = f"\x1b[31m{text}\x1b[39m"
        self._write(text)

    def _write(self, text: str) -> None:
        if text and not self.output.closed:
            self.output.write(text)

    def _on_process_exit(self) -> None:
        # Host shutting down on its own: no banner, clients may reconnect.
        self._closed = True
        self.output.close()

    #
    # Commands
    #
    def _cmd_break(self) -> bool:
        self._buffer.clear()
        self._write(self.options.prompt)
        return True

    def _cmd_exit(self) -> bool:
        return False

    def _cmd_help(self) -> bool:
        width = max(len(name) for name in COMMAND_HELP) + 2
        for name in sorted(COMMAND_HELP):
            self._write(f".{name.ljust(width)}{COMMAND_HELP[name]}\n")
        self._write(self.options.prompt)
        return True

    def _cmd_history(self) -> bool:
        if self.history is not None:
            for idx, entry in enumerate(self.history.snapshot(), start=1):
                self._write(f"{idx:>5}  {entry}\n")
        self._write(self.options.prompt)
        return True

    def _cmd_reload(self) -> bool:
        self.on_reload()
        self._write(self.options.prompt)
        return True
