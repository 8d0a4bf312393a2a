import pytest

from attach_shell.evaluator import (
    EvaluationContext,
    IncompleteInput,
    PythonEvaluator,
    Suspended,
    describe_error,
    format_error,
    install_modules,
)


@pytest.fixture
def evaluate():
    evaluator = PythonEvaluator()
    context = EvaluationContext()

    def run(code):
        return evaluator(code, context, "<test>")

    run.context = context
    return run


def test_expression_returns_value(evaluate):
    assert evaluate("1+1") == 2


def test_statements_persist_in_namespace(evaluate):
    assert evaluate("x = 20") is None
    assert evaluate("x * 2") == 40
    assert evaluate.context["x"] == 20


def test_incomplete_input_is_recoverable(evaluate):
    with pytest.raises(IncompleteInput):
        evaluate("def f():")
    with pytest.raises(IncompleteInput):
        evaluate("if True:\n    y = 1")
    with pytest.raises(IncompleteInput):
        evaluate("(1 +")
    assert evaluate("if True:\n    y = 1\n") is None
    assert evaluate.context["y"] == 1


def test_multiple_statements_in_one_command(evaluate):
    assert evaluate("a = 1\nb = a + 1") is None
    assert evaluate.context["b"] == 2


def test_syntax_error_is_not_recoverable(evaluate):
    with pytest.raises(SyntaxError):
        evaluate("1 +* 2")


def test_blank_input_is_a_no_op(evaluate):
    assert evaluate("   ") is None


def test_top_level_await_is_suspended(evaluate):
    evaluate("import asyncio")
    result = evaluate("await asyncio.sleep(0, 'done')")
    assert isinstance(result, Suspended)
    result.awaitable.close()


def test_last_value_accessors(evaluate):
    context = evaluate.context
    context.last = 5
    assert evaluate("__ + 1") == 6
    evaluate("__ = 'set in shell'")
    assert context.last == "set in shell"


def test_install_modules_exposes_require(evaluate):
    install_modules(evaluate.context)
    assert evaluate("require('json').dumps([1])") == "[1]"


def test_describe_error_matches_name_and_message():
    assert describe_error(Exception("x")) == "Exception: x"
    assert describe_error(KeyError()) == "KeyError"


def test_format_error_starts_at_evaluated_source(evaluate):
    with pytest.raises(ZeroDivisionError) as excinfo:
        evaluate("1/0")
    text = format_error(excinfo.value, "<test>")
    assert "ZeroDivisionError" in text
    assert "<test>" in text
    assert "evaluator.py" not in text
