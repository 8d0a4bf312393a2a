"""Discovery record helpers.

The shell server announces itself through ``<shell_dir>/info.json``. The file
is either ``{"status": "enabled", "port": ..., "key": ...}`` or
``{"status": "disabled", "reason": ...}`` and is only readable by its owner.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER = logging.getLogger("attach_shell.discovery")

INFO_FILE_MODE = 0o600
DISABLED_REASON = "Shell server has shut down."

PathLike = Union[str, "os.PathLike[str]"]


class DiscoveryError(RuntimeError):
    """Raised when a client cannot use the discovery record."""


@dataclass(frozen=True)
class DiscoveryInfo:
    status: str
    port: Optional[int] = None
    key: Optional[str] = None
    reason: Optional[str] = None

    @property
    def connectable(self) -> bool:
        return self.status == "enabled" and self.port is not None and self.key is not None


def info_file(shell_dir: PathLike) -> Path:
    return Path(shell_dir) / "info.json"


def history_file(shell_dir: PathLike) -> Path:
    return Path(shell_dir) / "history"


def _write_record(path: Path, payload: Dict[str, Any]) -> None:
    data = (json.dumps(payload) + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, INFO_FILE_MODE)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def publish(shell_dir: PathLike, port: int, key: str) -> Path:
    """Replace any stale record with an ``enabled`` one for *port*/*key*."""
    path = info_file(shell_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    path.parent.mkdir(parents=True, exist_ok=True)
    _write_record(path, {"status": "enabled", "port": int(port), "key": key})
    LOGGER.debug("published shell record port=%s path=%s", port, path)
    return path


def disable(shell_dir: PathLike, reason: str = DISABLED_REASON) -> None:
    """Mark the shell as disabled so clients stop reconnecting.

    Teardown helper: never raises.
    """
    try:
        _write_record(info_file(shell_dir), {"status": "disabled", "reason": reason})
    except Exception as exc:
        LOGGER.debug("disable shell record failed: %s", exc)


def read(shell_dir: PathLike) -> DiscoveryInfo:
    """Load the record; anything unusable reads as disabled."""
    path = info_file(shell_dir)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return DiscoveryInfo(status="disabled", reason="no shell record")
    except (OSError, ValueError) as exc:
        return DiscoveryInfo(status="disabled", reason=f"unreadable shell record: {exc}")
    if not isinstance(payload, dict):
        return DiscoveryInfo(status="disabled", reason="malformed shell record")
    status = payload.get("status")
    if status != "enabled":
        reason = payload.get("reason")
        return DiscoveryInfo(status="disabled", reason=str(reason) if reason is not None else None)
    port = payload.get("port")
    key = payload.get("key")
    if isinstance(port, bool) or not isinstance(port, int) or not isinstance(key, str):
        return DiscoveryInfo(status="disabled", reason="malformed shell record")
    return DiscoveryInfo(status="enabled", port=port, key=key)
