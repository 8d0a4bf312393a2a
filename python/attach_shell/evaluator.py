"""Evaluation context and the default Python evaluator."""

from __future__ import annotations

import ast
import builtins
import codeop
import importlib
import inspect
import sys
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .constants import DEFAULT_FILENAME, LAST_VALUE_NAME


class IncompleteInput(RuntimeError):
    """The submitted source is a valid prefix; more lines are expected."""


class EvaluationContext:
    """The one namespace every shell evaluation runs against."""

    def __init__(self, namespace: Optional[Dict[str, Any]] = None) -> None:
        if namespace is None:
            namespace = {"__name__": "__attach_shell__", "__builtins__": builtins}
        self.namespace = namespace
        self.namespace.setdefault(LAST_VALUE_NAME, None)

    @property
    def last(self) -> Any:
        """Value of the most recent evaluation, also visible as ``__``."""
        return self.namespace.get(LAST_VALUE_NAME)

    @last.setter
    def last(self, value: Any) -> None:
        self.namespace[LAST_VALUE_NAME] = value

    def __getitem__(self, name: str) -> Any:
        return self.namespace[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.namespace[name] = value

    def __contains__(self, name: object) -> bool:
        return name in self.namespace


class Evaluator(Protocol):
    def __call__(self, code: str, context: EvaluationContext, filename: str) -> Any:
        ...


SourceTransform = Callable[[str], str]
ModuleInstaller = Callable[[EvaluationContext], None]


@dataclass
class Suspended:
    """Result of top-level ``await`` code; the pipeline drives it to completion."""

    awaitable: Awaitable[Any]


class PythonEvaluator:
    """Evaluate Python source the way the interactive interpreter would.

    Expressions return their value, statements return ``None``. Source that is
    an incomplete prefix raises :class:`IncompleteInput`.
    """

    def __init__(self, *, flags: int = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT) -> None:
        self.flags = flags
        self._commands = codeop.CommandCompiler()
        self._commands.compiler.flags |= flags

    def __call__(self, code: str, context: EvaluationContext, filename: str = DEFAULT_FILENAME) -> Any:
        if not code.strip():
            return None
        # A trailing blank line is what closes a compound statement.
        source = code if "\n" in code.rstrip() else code.rstrip()
        try:
            complete = self._commands(source, filename, "single")
        except SyntaxError:
            # Several statements at once; the exec compile below decides.
            complete = True
        if complete is None:
            raise IncompleteInput(filename)
        try:
            compiled = compile(source, filename, "eval", self.flags, dont_inherit=True)
        except SyntaxError:
            compiled = compile(source, filename, "exec", self.flags, dont_inherit=True)
        result = eval(compiled, context.namespace)
        if compiled.co_flags & inspect.CO_COROUTINE:
            return Suspended(result)
        return result


def install_modules(context: EvaluationContext) -> None:
    """Expose the host's module system inside the shell namespace."""
    context["require"] = importlib.import_module
    context["module"] = sys.modules.get("__main__")


def describe_error(exc: BaseException) -> str:
    """Short ``"Name: message"`` text used in one-shot error payloads."""
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


def format_error(exc: BaseException, filename: str = DEFAULT_FILENAME) -> str:
    """Traceback text trimmed to the frames of the evaluated source."""
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != filename:
        tb = tb.tb_next
    if tb is None or isinstance(exc, SyntaxError):
        return "".join(traceback.format_exception_only(type(exc), exc))
    return "".join(traceback.format_exception(type(exc), exc, tb))
