import re
from decimal import Decimal

import pytest

from jexl.jexl_arithmetic import IntegerRange
from jexl.jexl_engine import JexlEngine
from jexl.jexl_printer import Printer


@pytest.fixture
def printer():
    return Printer()


# Test cases: (id, object, expected_string)
FORMAT_TEST_CASES = [
    ("str", "hello", "'hello'"),
    ("str_quote", "it's", "'it\\'s'"),
    ("int", 123, "123"),
    ("float", -1.5, "-1.5"),
    ("nan", float('nan'), "NaN"),
    ("decimal", Decimal('1.50'), "1.50B"),
    ("bool_true", True, "true"),
    ("bool_false", False, "false"),
    ("none", None, "null"),
    ("list", [1, 'a', None], "[1, 'a', null]"),
    ("empty_map", {}, "{:}"),
    ("map", {'a': 1, 'b': [2]}, "{'a': 1, 'b': [2]}"),
    ("empty_set", set(), "{}"),
    ("set", {3, 1, 2}, "{1, 2, 3}"),
    ("range", IntegerRange(1, 3), "1 .. 3"),
    ("regex", re.compile('a.c'), "~/a.c/"),
]


@pytest.mark.parametrize("case_id, obj, expected", FORMAT_TEST_CASES, ids=[c[0] for c in FORMAT_TEST_CASES])
def test_pformat_values(printer, case_id, obj, expected):
    assert printer.pformat(obj) == expected


SOURCE_TEST_CASES = [
    ("a+b*c", "a + b * c;"),
    ("(a + b) * c", "(a + b) * c;"),
    ("a - (b - c)", "a - (b - c);"),
    ("x ? y : z", "x ? y : z;"),
    ("a?.b[0]", "a?.b[0];"),
    ("var x = 1", "var x = 1;"),
    ("if (a) b else c", "if (a) b; else c;"),
    ("x == ?(1, 2)", "x == ?(1, 2);"),
    ("@silent x", "@silent x;"),
    ("m:f(1, ...xs)", "m:f(1, ...xs);"),
    ("i++", "i++;"),
    ("!a && b", "!a && b;"),
    ("x.(@ + 1)", "x.(@ + 1);"),
    ("m.{@.value : @.key, @}", "m.{@.value : @.key, @};"),
    ("xs.[@ > 1]", "xs.[@ > 1];"),
    ("(...xs).(@)", "(...xs).(@);"),
    ("assert a > 1 : 'bad'", "assert a > 1 : 'bad';"),
]


@pytest.mark.parametrize("source, expected", SOURCE_TEST_CASES)
def test_parsed_text(source, expected):
    engine = JexlEngine()
    text = engine.create_script(source).get_parsed_text()
    assert text == expected
    # printed source parses back to the same text
    assert engine.create_script(text).get_parsed_text() == expected


def test_function_declaration_prints_as_block():
    engine = JexlEngine()
    text = engine.create_script("function f(a) { return a }").get_parsed_text()
    assert text == "function f(a) {\n    return a;\n}"


def test_lambda_prints_with_arrow():
    engine = JexlEngine()
    assert engine.create_script("x -> x * 2").get_parsed_text() == "(x) -> x * 2"
    assert str(engine.create_script("(a, b = 1) => a + b")) == "(a, b = 1) => a + b"


def test_indent_width():
    engine = JexlEngine()
    script = engine.create_script("while (a) { b }")
    assert Printer(indent_width=2).pformat(script.function) == "while (a) {\n  b;\n}"
