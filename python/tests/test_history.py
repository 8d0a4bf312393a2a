"""Tests for shell history persistence."""

from __future__ import annotations

from attach_shell.history import HistoryStore, fold_history


def test_history_load_keeps_latest_duplicate(tmp_path):
    path = tmp_path / "history"
    path.write_text("a\nb\na\nc\n", encoding="utf-8")
    store = HistoryStore(path)
    assert store.snapshot() == ["b", "a", "c"]
    store.close()


def test_history_skips_blank_lines_on_load():
    assert fold_history(["", "  ", "x", "", "y", "x"]) == ["y", "x"]


def test_history_limit_keeps_newest():
    assert fold_history(["a", "b", "c", "d"], limit=2) == ["c", "d"]


def test_history_append_is_written_immediately(tmp_path):
    path = tmp_path / "sub" / "history"
    store = HistoryStore(path)
    store.append("x = 1")
    store.append("   ")
    assert path.read_text(encoding="utf-8") == "x = 1\n"
    assert store.snapshot() == ["x = 1"]
    store.close()


def test_history_appends_after_existing_content(tmp_path):
    path = tmp_path / "history"
    path.write_text("old\n", encoding="utf-8")
    store = HistoryStore(path)
    store.append("new")
    store.close()
    assert path.read_text(encoding="utf-8").splitlines() == ["old", "new"]


def test_history_closed_store_drops_writes(tmp_path):
    path = tmp_path / "history"
    store = HistoryStore(path)
    store.close()
    assert store.closed
    store.append("after close")
    store.close()
    assert path.read_text(encoding="utf-8") == ""
