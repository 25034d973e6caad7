import pytest

from jexl.jexl_context import MapContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_runtime import ScriptRunner, ExecutionResult, source_excerpt


async def run_jexl(src: str, runner: ScriptRunner | None = None, **kwargs):
    runner = runner or ScriptRunner()
    return await runner.handle_script(src, **kwargs)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


@pytest.mark.asyncio
async def test_value_is_returned():
    res = await run_jexl("var x = 20; x * 2 + 2")
    assert_ok(res, 42)
    assert res.side_effects == []


@pytest.mark.asyncio
async def test_print_records_stdout_side_effect():
    res = await run_jexl("print('hello', 1 + 1); null")
    assert_ok(res)
    assert res.value is None
    assert {'topics': ['stdout'], 'message': 'hello 2'} in res.side_effects


@pytest.mark.asyncio
async def test_lenient_failures_record_warnings():
    runner = ScriptRunner(JexlEngine(strict=False))
    res = await run_jexl("missing", runner)
    assert_ok(res)
    warnings = [e for e in res.side_effects if e['topics'] == ['warning']]
    assert warnings and 'undefined variable missing' in warnings[0]['message']

    res = await run_jexl("@silent missing", runner)
    assert_ok(res)
    assert res.side_effects == []


@pytest.mark.asyncio
async def test_runtime_error_is_reported_with_location():
    res = await run_jexl("var a = 1;\nundefinedVar + a")
    assert_error(res, "VariableError: undefined variable undefinedVar")
    assert res.error_token['line'] == 2
    assert res.format_error().startswith("Error on line 2, col 1:")
    assert res.side_effects[-1]['topics'] == ['stderr']


@pytest.mark.asyncio
async def test_parse_error_is_reported():
    res = await run_jexl("1 +")
    assert_error(res, "ParsingError")


@pytest.mark.asyncio
async def test_error_includes_script_stacktrace():
    res = await run_jexl("function f(x) { x.nope() } f(1)")
    assert_error(res, "MethodError")
    assert "JEXL stacktrace: f(1) <- script()" in res.error_message


@pytest.mark.asyncio
async def test_host_exception_carries_cause():
    def explode(x):
        raise ValueError(f"bad {x}")

    runner = ScriptRunner(context=MapContext({'explode': explode}))
    res = await run_jexl("explode(3)", runner)
    assert_error(res, "EvalError")
    assert "Caused by ValueError: bad 3" in res.error_message


@pytest.mark.asyncio
async def test_timeout_cancels_the_worker():
    res = await run_jexl("while (true) ;", timeout=0.1)
    assert_error(res, "CancelError: timed out")


@pytest.mark.asyncio
async def test_context_persists_between_scripts():
    runner = ScriptRunner()
    assert_ok(await run_jexl("total = 5", runner), 5)
    assert_ok(await run_jexl("total * 2", runner), 10)
    assert runner.context['total'] == 5


def test_format_error_without_location():
    res = ExecutionResult(status='error', error_message="boom")
    assert res.format_error() == "boom"
    assert ExecutionResult(status='success', value=1).format_error() == ""


def test_source_excerpt_marks_the_failing_column():
    text = source_excerpt("a\nbb + x\nc", 2, 6)
    assert text.splitlines() == ["  1 | a", "> 2 | bb + x", "    | " + " " * 5 + "^", "  3 | c"]
    assert source_excerpt("a", 5, 1) == ""
