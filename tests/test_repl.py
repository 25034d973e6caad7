import importlib.util
import sys
from pathlib import Path
import uuid
import pytest

def _load_repl_module():
    """Dynamically load the top-level jexl_repl.py as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "jexl_repl.py"
    mod_name = f"jexl_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod

def _feed(monkeypatch, repl, lines):
    it = iter(lines)

    async def fake_ainput(prompt: str) -> str:
        return next(it)
    monkeypatch.setattr(repl, "ainput", fake_ainput)
    monkeypatch.setattr(sys, "argv", ["jexl"])

@pytest.mark.asyncio
async def test_repl_exit_immediately(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ["exit"])

    await repl.main()
    out = capsys.readouterr().out
    assert "JEXL REPL v0.1" in out
    assert "Type 'exit' or press Ctrl+D to quit." in out

@pytest.mark.asyncio
async def test_repl_prints_side_effects_and_values(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [
        "print('hello from jexl')",
        "1 + 2",
        "x = [1, 'a']",
        "x",
        "exit",
    ])

    await repl.main()
    out, err = capsys.readouterr()
    assert "JEXL REPL v0.1" in out
    # Side effect printed to stdout
    assert "hello from jexl" in out
    # Expression results printed as script literals
    assert "\n3\n" in out
    # Context variables survive between lines
    assert out.count("[1, 'a']") == 2
    assert err == ""

@pytest.mark.asyncio
async def test_repl_errors_print_to_stderr(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [
        "1 / 0",
        "exit",
    ])

    await repl.main()
    out, err = capsys.readouterr()
    assert "JEXL REPL v0.1" in out
    assert "OperatorError: / error" in err
    assert "Error on line 1" in err

@pytest.mark.asyncio
async def test_repl_eof_quits(monkeypatch, capsys):
    repl = _load_repl_module()

    async def fake_ainput(prompt: str) -> str:
        raise EOFError
    monkeypatch.setattr(repl, "ainput", fake_ainput)
    monkeypatch.setattr(sys, "argv", ["jexl"])

    await repl.main()
    out = capsys.readouterr().out
    assert "JEXL REPL v0.1" in out
    assert "Exiting." in out

@pytest.mark.asyncio
async def test_run_script_file(monkeypatch, capsys, tmp_path):
    repl = _load_repl_module()
    script = tmp_path / "sum.jexl"
    script.write_text("var s = 0;\nfor (var i : 1 .. 4) s += i;\nprint('sum', s);\ns * 10\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["jexl", str(script)])

    await repl.main()
    out = capsys.readouterr().out
    assert "sum 10" in out
    assert out.rstrip().endswith("100")

@pytest.mark.asyncio
async def test_run_script_file_missing(monkeypatch, capsys, tmp_path):
    repl = _load_repl_module()
    monkeypatch.setattr(sys, "argv", ["jexl", str(tmp_path / "nope.jexl")])

    with pytest.raises(SystemExit) as exc:
        await repl.main()
    assert exc.value.code == 1
    assert "file not found" in capsys.readouterr().err

@pytest.mark.asyncio
async def test_repl_joins_unbalanced_lines(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [
        "function twice(x) {",
        "  x * 2",
        "} twice(size('}}') + 19)",
        "exit",
    ])

    await repl.main()
    out, err = capsys.readouterr()
    assert "42" in out
    assert err == ""

@pytest.mark.asyncio
async def test_repl_commands(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [
        "b = 2; a = 'x'",
        ":vars",
        ":reset",
        ":vars",
        ":flags -strict",
        "missing",
        ":bogus",
        "exit",
    ])

    await repl.main()
    out, err = capsys.readouterr()
    assert "a = 'x'\nb = 2\nContext cleared.\n" in out
    assert "-strict" in out
    assert "warning:" in err and "undefined variable missing" in err
    assert "unknown command :bogus" in err

def test_parse_args():
    repl = _load_repl_module()
    assert repl.parse_args([]) == (None, None, None)
    assert repl.parse_args(["--flags", "+lexical -safe", "a.jexl"]) == (None, "+lexical -safe", "a.jexl")
    assert repl.parse_args(["--config", "c.yaml"]) == ("c.yaml", None, None)
    with pytest.raises(ValueError):
        repl.parse_args(["--flags"])
    with pytest.raises(ValueError):
        repl.parse_args(["-x"])

@pytest.mark.asyncio
async def test_bad_flags_exit_with_usage(monkeypatch, capsys):
    repl = _load_repl_module()
    monkeypatch.setattr(sys, "argv", ["jexl", "--flags", "+nonsense"])

    with pytest.raises(SystemExit) as exc:
        await repl.main()
    assert exc.value.code == 2
    assert "usage: jexl" in capsys.readouterr().err

@pytest.mark.asyncio
async def test_run_script_file_with_flags(monkeypatch, capsys, tmp_path):
    repl = _load_repl_module()
    script = tmp_path / "lenient.jexl"
    script.write_text("missing ?? 'fallback'\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["jexl", "--flags", "-strict", str(script)])

    await repl.main()
    assert capsys.readouterr().out.strip() == "fallback"

@pytest.mark.asyncio
async def test_repl_prints_string_results_bare(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [
        "'a' + 'b'",
        "['a']",
        "exit",
    ])

    await repl.main()
    out = capsys.readouterr().out
    assert "\nab\n" in out
    assert "['a']" in out
