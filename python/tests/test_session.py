import threading
from unittest.mock import MagicMock

import pytest

from attach_shell.evaluator import EvaluationContext
from attach_shell.framing import PayloadStream
from attach_shell.history import HistoryStore
from attach_shell.options import ReplOptions
from attach_shell.pipeline import EvaluationPipeline
from attach_shell.session import ShellSession

from conftest import RecordingOutput, wait_for


@pytest.fixture
def pipeline():
    pipe = EvaluationPipeline()
    yield pipe
    pipe.close()


def _session(pipeline, lines, *, context=None, history=None, on_reload=None, **option_fields):
    payload = PayloadStream()
    payload.write("".join(line + "\n" for line in lines).encode("utf-8"))
    payload.close()
    options = ReplOptions(input=payload, output=RecordingOutput(), use_colors=False, **option_fields)
    return ShellSession(
        options,
        pipeline,
        context or EvaluationContext(),
        history=history,
        on_reload=on_reload,
    )


def test_session_evaluates_lines_and_sends_banner(pipeline):
    session = _session(pipeline, ["x = 40 + 2", "x", ".exit", "never = 1"])
    session.run()
    text = session.output.text
    assert text.startswith("> ")
    assert "42\n" in text
    assert text.endswith("Shell exiting...\n")
    assert session.output.closed
    assert "never" not in session.context
    assert session.options.use_global is True


def test_session_end_of_input_also_sends_banner(pipeline):
    session = _session(pipeline, ["1 + 1"])
    session.run()
    assert session.output.text == "> 2\n> Shell exiting...\n"


def test_last_value_follows_results(pipeline):
    context = EvaluationContext()
    session = _session(pipeline, ["3 * 3", "__ + 1", "__ = 'pinned'", "None", "__"], context=context)
    session.run()
    assert "9\n" in session.output.text
    assert "10\n" in session.output.text
    assert "'pinned'\n" in session.output.text
    assert context.last == "pinned"


def test_multiline_input_uses_continuation_prompt(pipeline):
    session = _session(pipeline, ["def f():", "    return 7", "", "f()"])
    session.run()
    text = session.output.text
    assert "... " in text
    assert "7\n" in text


def test_break_discards_partial_input(pipeline):
    session = _session(pipeline, ["if True:", ".break", "'after'"])
    session.run()
    assert "'after'\n" in session.output.text


def test_errors_are_reported_and_session_continues(pipeline):
    session = _session(pipeline, ["1/0", "'still here'"])
    session.run()
    text = session.output.text
    assert "ZeroDivisionError" in text
    assert "'still here'" in text


def test_print_output_goes_to_client(pipeline):
    session = _session(pipeline, ["print('from shell')"])
    session.run()
    assert "from shell\n" in session.output.text


def test_ignore_undefined_false_prints_none(pipeline):
    session = _session(pipeline, ["None"], ignore_undefined=False)
    session.run()
    assert "None\n" in session.output.text


def test_reload_calls_host_hook(pipeline):
    on_reload = MagicMock()
    session = _session(pipeline, [".reload"], on_reload=on_reload)
    session.run()
    on_reload.assert_called_once_with()


def test_help_lists_commands(pipeline):
    session = _session(pipeline, [".help"])
    session.run()
    text = session.output.text
    for name in ("break", "exit", "help", "history", "reload"):
        assert f".{name}" in text


def test_module_installer_exposes_require(pipeline):
    context = EvaluationContext()
    session = _session(pipeline, ["require('math').floor(2.5)"], context=context)
    session.run()
    assert "2\n" in session.output.text
    assert context["repl"] is session


def test_history_is_recorded_and_released(pipeline, tmp_path):
    path = tmp_path / "history"
    path.write_text("old\n", encoding="utf-8")
    history = HistoryStore(path)
    session = _session(pipeline, ["a = 1", "", ".history"], history=history)
    session.run()
    assert path.read_text(encoding="utf-8").splitlines() == ["old", "a = 1", ".history"]
    assert "old" in session.output.text
    assert history.closed


def test_close_ends_session_without_banner(pipeline):
    payload = PayloadStream()
    options = ReplOptions(input=payload, output=RecordingOutput(), use_colors=False)
    session = ShellSession(options, pipeline, EvaluationContext())
    thread = threading.Thread(target=session.run)
    thread.start()
    payload.write(b"1 + 1\n")
    session.close()
    thread.join(timeout=2.0)
    assert not thread.is_alive()
    assert "Shell exiting" not in options.output.text
    assert options.output.closed


def test_host_exit_closes_output_without_banner(pipeline, monkeypatch):
    hooks = []
    monkeypatch.setattr("attach_shell.session.atexit.register", hooks.append)
    monkeypatch.setattr("attach_shell.session.atexit.unregister", lambda hook: None)
    payload = PayloadStream()
    output = RecordingOutput()
    session = ShellSession(ReplOptions(input=payload, output=output, use_colors=False), pipeline, EvaluationContext())
    runner = threading.Thread(target=session.run, daemon=True)
    runner.start()
    payload.write(b"1 + 1\n")
    assert wait_for(lambda: "2\n" in output.text)
    assert hooks == [session._on_process_exit]
    hooks[0]()
    payload.close()
    runner.join(timeout=2.0)
    assert not runner.is_alive()
    assert output.closed
    assert "Shell exiting" not in output.text


def test_module_installer_can_be_disabled(pipeline):
    payload = PayloadStream()
    payload.close()
    context = EvaluationContext()
    session = ShellSession(
        ReplOptions(input=payload, output=RecordingOutput(), use_colors=False),
        pipeline,
        context,
        module_installer=None,
    )
    session.run()
    assert "require" not in context
    assert context["repl"] is session
