"""Handshake option negotiation.

Clients send display options in the handshake (only the client knows whether
it runs in a real terminal, an editor subshell, etc.). The host merges them
with its own defaults and always supplies the streams itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .framing import PayloadStream, SocketWriter

# Wire spellings accepted alongside the snake_case field names.
_ALIASES = {
    "useColors": "use_colors",
    "ignoreUndefined": "ignore_undefined",
    "evaluateAndExit": "evaluate_and_exit",
    "useGlobal": "use_global",
}
_HOST_ONLY = ("key", "columns", "input", "output", "use_global")
_BOOL_FIELDS = ("terminal", "use_colors", "ignore_undefined")

# Display defaults shared by ShellConfig and ReplOptions.
DEFAULT_OPTIONS: Dict[str, Any] = {
    "prompt": "> ",
    "terminal": True,
    "use_colors": True,
    "ignore_undefined": True,
}


class OptionsError(ValueError):
    """Raised for handshake options the host cannot honour."""


@dataclass(frozen=True)
class EvaluateAndExit:
    command: str
    filename: Optional[str] = None


@dataclass
class ReplOptions:
    input: PayloadStream
    output: SocketWriter
    prompt: str = DEFAULT_OPTIONS["prompt"]
    terminal: bool = DEFAULT_OPTIONS["terminal"]
    use_colors: bool = DEFAULT_OPTIONS["use_colors"]
    ignore_undefined: bool = DEFAULT_OPTIONS["ignore_undefined"]
    use_global: bool = False
    evaluate_and_exit: Optional[EvaluateAndExit] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _parse_evaluate_and_exit(value: Any) -> Optional[EvaluateAndExit]:
    if value is None or value is False:
        return None
    if not isinstance(value, Mapping):
        raise OptionsError("evaluateAndExit must be an object")
    command = value.get("command")
    if not isinstance(command, str):
        raise OptionsError("evaluateAndExit.command must be a string")
    filename = value.get("filename")
    if filename is not None and not isinstance(filename, str):
        raise OptionsError("evaluateAndExit.filename must be a string")
    return EvaluateAndExit(command=command, filename=filename or None)


def negotiate(
    requested: Mapping[str, Any],
    *,
    input: PayloadStream,
    output: SocketWriter,
    defaults: Optional[Mapping[str, Any]] = None,
) -> ReplOptions:
    """Build session options from a (key-checked) handshake payload."""
    columns = requested.get("columns")
    if isinstance(columns, int) and not isinstance(columns, bool) and columns > 0:
        output.columns = columns

    supplied: Dict[str, Any] = {}
    for name, value in requested.items():
        name = _ALIASES.get(name, name)
        if name in _HOST_ONLY:
            continue
        supplied[name] = value

    merged = dict(DEFAULT_OPTIONS)
    if defaults:
        merged.update(defaults)
    for name in DEFAULT_OPTIONS:
        value = supplied.pop(name, None)
        if value is None:
            continue
        if name == "prompt":
            if isinstance(value, str):
                merged[name] = value
        elif name in _BOOL_FIELDS:
            merged[name] = bool(value)

    evaluate_and_exit = _parse_evaluate_and_exit(supplied.pop("evaluate_and_exit", None))
    if evaluate_and_exit is not None:
        # Anything printed before the JSON reply would corrupt it.
        merged["prompt"] = ""

    return ReplOptions(
        input=input,
        output=output,
        prompt=merged["prompt"],
        terminal=merged["terminal"],
        use_colors=merged["use_colors"],
        ignore_undefined=merged["ignore_undefined"],
        use_global=False,
        evaluate_and_exit=evaluate_and_exit,
        extra=supplied,
    )
