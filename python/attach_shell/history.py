"""Persistent shell history shared by every session of a shell directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, TextIO, Union

from prompt_toolkit.history import InMemoryHistory

LOGGER = logging.getLogger("attach_shell.history")


class HistoryStore:
    """Append-only history file plus the session's recall buffer.

    Loading folds duplicates so only the most recent occurrence of a line
    survives, keeping the remaining lines oldest-to-newest.
    """

    def __init__(self, path: Union[str, Path], *, limit: Optional[int] = None) -> None:
        self.path = Path(path).expanduser()
        self.limit = limit
        self.recall = InMemoryHistory()
        self._fh: Optional[TextIO] = None
        self._open()

    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a+", encoding="utf-8")
        self._fh.seek(0)
        data = self._fh.read()
        for line in fold_history(data.split("\n"), limit=self.limit):
            self.recall.append_string(line)

    @property
    def closed(self) -> bool:
        return self._fh is None

    def append(self, line: str) -> None:
        """Persist a submitted line right away; blank lines are skipped."""
        if not line.strip():
            return
        self.recall.append_string(line)
        fh = self._fh
        if fh is None:
            return
        fh.write(line + "\n")
        fh.flush()

    def snapshot(self) -> List[str]:
        return list(self.recall.get_strings())

    def close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.close()
        except OSError as exc:
            LOGGER.debug("history close failed: %s", exc)


def fold_history(lines: List[str], *, limit: Optional[int] = None) -> List[str]:
    """Drop blank lines and earlier duplicates: ``a b a c`` -> ``b a c``."""
    seen = set()
    newest_first: List[str] = []
    for line in reversed(lines):
        if not line.strip() or line in seen:
            continue
        seen.add(line)
        newest_first.append(line)
        if limit is not None and len(newest_first) >= limit:
            break
    newest_first.reverse()
    return newest_first
