from decimal import Decimal

import pytest

from jexl.jexl_datatypes import (
    Literal, Identifier, Member, Index, Call, BinaryOp, Conditional, Lambda, Declaration,
    ForEach, Switch, TypePattern, DefaultLabel, Spread, Generator, ArrayLiteral, Annotated, Pragma
)
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import ParsingError
from jexl.jexl_transformer import parse_number, unescape


@pytest.fixture(scope="module")
def engine():
    return JexlEngine()


def first(engine, src):
    return engine.parse(src).body[0]


@pytest.mark.parametrize("text, expected", [
    ("42", 42),
    ("7L", 7),
    ("0x1F", 31),
    ("1.5", 1.5),
    ("2f", 2.0),
    ("1e3", 1000.0),
    ("10B", Decimal('10')),
    ("-3", -3),
])
def test_parse_number(text, expected):
    value = parse_number(text)
    assert value == expected
    assert type(value) is type(expected)


def test_unescape():
    assert unescape(r"a\nb") == "a\nb"
    assert unescape(r"A") == "A"
    assert unescape(r"it\'s") == "it's"
    assert unescape(r"back\\slash") == "back\\slash"


def test_member_chain(engine):
    node = first(engine, "a.b['c'](1)")
    assert isinstance(node, Call)
    assert isinstance(node.callee, Index)
    assert isinstance(node.callee.obj, Member)
    assert node.callee.obj.name == 'b'
    assert node.callee.key.value == 'c'
    assert node.args[0].value == 1


def test_word_operators_are_normalized(engine):
    node = first(engine, "a eq b and not c")
    assert isinstance(node, BinaryOp)
    assert node.op == '&&'
    assert node.left.op == '=='


def test_conditional_forms(engine):
    node = first(engine, "a ?: b")
    assert isinstance(node, Conditional)
    assert node.op == '?:' and node.then is None
    with pytest.raises(ParsingError):
        engine.parse("a ? b")


def test_function_declaration_is_a_var(engine):
    node = first(engine, "function f(x) { x }")
    assert isinstance(node, Declaration)
    assert node.kind == 'var'
    assert isinstance(node.declarators[0].value, Lambda)
    assert node.declarators[0].value.name == 'f'


def test_foreach_binding(engine):
    node = first(engine, "for (let x : xs) x")
    assert isinstance(node, ForEach)
    assert node.kind == 'let'
    assert node.variable.name == 'x'


def test_generator_in_array_is_spread(engine):
    node = first(engine, "[...{ yield 1 }]")
    assert isinstance(node, ArrayLiteral)
    assert isinstance(node.items[0], Spread)
    assert isinstance(node.items[0].expr, Generator)


def test_switch_labels(engine):
    node = first(engine, "switch (v) { case Integer i when i > 1 -> 1; case 'a', null -> 2; default -> 3 }")
    assert isinstance(node, Switch)
    pattern = node.cases[0].labels[0]
    assert isinstance(pattern, TypePattern)
    assert pattern.type_name == 'Integer' and pattern.binding.name == 'i'
    assert pattern.guard is not None
    assert [lab.value for lab in node.cases[1].labels] == ['a', None]
    assert isinstance(node.cases[2].labels[0], DefaultLabel)


def test_annotations_and_pragmas(engine):
    script = engine.parse("#pragma a.b 'x'\n@timeout(10) @silent y")
    assert isinstance(script.body[0], Pragma)
    assert script.pragmas == {'a.b': 'x'}
    annotated = script.body[1]
    assert isinstance(annotated, Annotated)
    assert [a.name for a in annotated.annotations] == ['timeout', 'silent']
    assert annotated.annotations[0].args[0].value == 10


def test_locations(engine):
    node = first(engine, "\n  foo")
    assert isinstance(node, Identifier)
    assert node.loc['line'] == 2
    assert node.loc['col'] == 3


@pytest.mark.parametrize("src", [
    "switch (x) { case 1: 1; case 2 -> 2 }",
    "try { 1 }",
    "x = ~/(/",
    "1 = 2",
    "switch (x) { default -> 1; default -> 2 }",
])
def test_malformed_scripts(engine, src):
    with pytest.raises(ParsingError):
        engine.parse(src)
