from decimal import Decimal

import pytest

from jexl.jexl_context import MapContext, JexlContext, AnnotationProcessor
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import (
    VariableError, PropertyError, MethodError, AssignmentError, ParsingError,
    StackOverflowError, ThrowError, AnnotationError, OperatorError
)


def run_jexl(src: str, variables=None, *args, **flags):
    engine = JexlEngine(**flags)
    return engine.create_script(src).execute(MapContext(variables or {}), *args)


class Point:
    def __init__(self, x, y):
        self.x = x
        self.y = y

    def getName(self):
        return f"p{self.x}"

    def norm(self):
        return abs(self.x) + abs(self.y)


class Resource:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


# --- Expressions and variables ---

def test_precedence_and_locals():
    assert run_jexl("1 + 2 * 3") == 7
    assert run_jexl("var x = 10; x * 2") == 20
    assert run_jexl("a + b", {'a': 1, 'b': 2}) == 3


@pytest.mark.parametrize("src, expected", [
    ("1.5B + 1", Decimal('2.5')),
    ("3B - 1", Decimal('2')),
    ("2B * 3B", Decimal('6')),
    ("1B / 4", Decimal('0.25')),
    ("5B % 2", Decimal('1')),
    ("-7B % 3", Decimal('-1')),
    ("0.5 + 1B", Decimal('1.5')),
])
def test_decimal_operands(src, expected):
    value = run_jexl(src)
    assert isinstance(value, Decimal)
    assert value == expected


def test_scale_annotation_rounds_decimal_division():
    assert run_jexl("@scale(2) 1B / 3") == Decimal('0.33')
    assert run_jexl("1B / 8") == Decimal('0.125')


def test_undefined_variable_strict_and_lenient():
    with pytest.raises(VariableError) as exc:
        run_jexl("y + 1")
    assert exc.value.name == 'y'
    assert run_jexl("y", strict=False) is None


def test_assignment_to_context_variable():
    context = MapContext({'total': 1})
    JexlEngine().create_script("total = total + 41").execute(context)
    assert context['total'] == 42


def test_increments_and_compound_assignment():
    assert run_jexl("var i = 5; var j = i++; [i, j, ++i]") == [6, 5, 7]
    assert run_jexl("var s = 'a'; s += 'b'; s") == 'ab'


def test_typed_declaration_casts():
    assert run_jexl("int i = '42'; i + 1") == 43
    assert run_jexl("String s = 12; s") == '12'


def test_ternary_elvis_and_null_coalescing():
    assert run_jexl("a ? 'yes' : 'no'", {'a': 1}) == 'yes'
    assert run_jexl("x ?: 'd'", {'x': ''}) == 'd'
    # the left side of `??` may be undefined without raising
    assert run_jexl("missing ?? 'n'") == 'n'
    assert run_jexl("x ?? 'n'", {'x': 0}) == 0


def test_logical_operators_short_circuit():
    assert run_jexl("false && boom()") is False
    assert run_jexl("true || boom()") is True
    assert run_jexl("1 and 'x'") is True


def test_collections_and_spread():
    assert run_jexl("[...[1, 2], 3]") == [1, 2, 3]
    assert run_jexl("{'a': 1, 'b': 2}.b") == 2
    assert run_jexl("var s = {1, 2, 2}; size(s)") == 2
    assert run_jexl("max(...[3, 9, 4])") == 9
    assert run_jexl("var m = {:}; empty(m)") is True


def test_empty_and_size_keywords():
    assert run_jexl("empty('')") is True
    assert run_jexl("size([1, 2, 3])") == 3
    # an undefined operand is simply empty
    assert run_jexl("empty(nothing)") is True


def test_string_methods_and_matching():
    assert run_jexl("'hello'.upper()") == 'HELLO'
    assert run_jexl("'abc' =~ ~/a.c/") is True
    assert run_jexl("'abc' =~ ['abc', 'def']") is True
    assert run_jexl("'hello' =^ 'he'") is True
    assert run_jexl("'hello' !$ 'he'") is True


def test_set_operands():
    assert run_jexl("x == ?(1, 2, 3)", {'x': 2}) is True
    assert run_jexl("x < ??(5, 6)", {'x': 2}) is True
    assert run_jexl("x > ??(1, 3)", {'x': 2}) is False


def test_instanceof_and_new():
    assert run_jexl("x instanceof Integer", {'x': 3}) is True
    assert run_jexl("'s' !instanceof Integer") is True
    # booleans are not integers
    assert run_jexl("true instanceof Integer") is False
    assert run_jexl("new('BigDecimal', '1.5')") == Decimal('1.5')


def test_ranges_in_loops():
    assert run_jexl("var s = 0; for (var i : 1 .. 4) s += i; s") == 10
    assert run_jexl("[...(3 .. 1)]") == [3, 2, 1]


def test_delete_member():
    assert run_jexl("var m = {'a': 1, 'b': 2}; delete m.a; m") == {'b': 2}


def test_operator_errors_surface():
    with pytest.raises(OperatorError):
        run_jexl("null + 1")
    assert run_jexl("null + 1", strict_arithmetic=False) == 1


# --- Navigation ---

def test_safe_navigation():
    assert run_jexl("m.a.b", {'m': {'a': None}}) is None
    with pytest.raises(PropertyError):
        run_jexl("m.a.b", {'m': {'a': None}}, safe=False)
    assert run_jexl("m?.a?.b", {'m': {'a': None}}, safe=False) is None


def test_null_variable_method_call():
    with pytest.raises(VariableError) as exc:
        run_jexl("var n = null; n.foo()", safe=False)
    assert exc.value.undefined is False


def test_object_properties_and_accessors():
    p = Point(3, -4)
    assert run_jexl("p.x + p.y", {'p': p}) == -1
    assert run_jexl("p.name", {'p': p}) == 'p3'
    assert run_jexl("p.norm()", {'p': p}) == 7
    run_jexl("p.x = 10", {'p': p})
    assert p.x == 10
    with pytest.raises(PropertyError):
        run_jexl("p.missing", {'p': p})


def test_private_members_are_invisible():
    with pytest.raises(PropertyError):
        run_jexl("p.__dict__", {'p': Point(1, 2)})


def test_antish_variables():
    assert run_jexl("a.b.c", {'a.b.c': 7}) == 7
    context = MapContext()
    result = JexlEngine().create_script("a.b.c = 3; a.b.c + 1").execute(context)
    assert result == 4
    assert context['a.b.c'] == 3


def test_unknown_function():
    with pytest.raises(MethodError):
        run_jexl("nothing(1)")
    assert run_jexl("nothing(1)", strict=False) is None


# --- Functions and closures ---

def test_recursive_function_declaration():
    src = """
        function fact(n) {
            if (n <= 1) return 1;
            return n * fact(n - 1);
        }
        fact(5)
    """
    assert run_jexl(src) == 120


def test_lambdas_and_default_parameters():
    assert run_jexl("var add = (a, b) -> a + b; add(2, 3)") == 5
    assert run_jexl("var sq = x -> x * x; sq(4)") == 16
    assert run_jexl("var f = (a, b = 10) -> a + b; [f(1), f(1, 2)]") == [11, 3]


def test_closure_sees_later_assignment():
    assert run_jexl("var n = 10; var f = x -> x + n; n = 20; f(1)") == 21


def test_fat_arrow_captures_are_read_only():
    with pytest.raises(AssignmentError):
        JexlEngine().create_script("var n = 1; var f = () => { n = 2 }")


def test_script_parameters():
    engine = JexlEngine()
    script = engine.create_script("x * y", 'x', 'y')
    assert script.execute(None, 6, 7) == 42


def test_stack_overflow_limit():
    src = "function f(n) { f(n + 1) } f(0)"
    with pytest.raises(StackOverflowError) as exc:
        run_jexl(src, stack_overflow=50)
    assert exc.value.host is False


def test_host_stack_exhaustion_is_reported():
    with pytest.raises(StackOverflowError) as exc:
        run_jexl("function f(n) { f(n + 1) } f(0)")
    assert exc.value.host is True


# --- Declarations and scoping ---

def test_const_cannot_be_reassigned():
    with pytest.raises(AssignmentError):
        JexlEngine().create_script("const c = 1; c = 2")


def test_let_cannot_be_redeclared():
    with pytest.raises(ParsingError):
        JexlEngine().create_script("let x = 1; let x = 2;")


def test_lexical_shade():
    src = "{ var y = 1; } y"
    # without shading the name falls back to the context once the block closes
    assert run_jexl(src, {'y': 42}, lexical=True) == 42
    with pytest.raises(VariableError):
        run_jexl(src, {'y': 42}, lexical=True, lexical_shade=True)


def test_var_is_function_scoped_by_default():
    assert run_jexl("{ var y = 1; } y") == 1


# --- Loops and labels ---

def test_for_loop():
    assert run_jexl("var s = 0; for (var i = 0; i < 5; i++) { s += i; } s") == 10


def test_foreach_break_and_continue():
    src = """
        var s = 0;
        for (var x : [1, 2, 3, 4, 5, 6]) {
            if (x == 2) continue;
            if (x == 5) break;
            s += x;
        }
        s
    """
    assert run_jexl(src) == 8


def test_do_while():
    assert run_jexl("var i = 0; do { i++ } while (i < 3); i") == 3
    assert run_jexl("var i = 10; do { i++ } while (i < 3); i") == 11


def test_labelled_loops():
    src = """
        var n = 0;
        outer: for (var i : 1 .. 3) {
            for (var j : 1 .. 3) {
                if (j == 2) continue outer;
                if (i == 3) break outer;
                n++
            }
        }
        n
    """
    assert run_jexl(src) == 2


def test_jumps_outside_loops_are_rejected():
    with pytest.raises(ParsingError):
        JexlEngine().create_script("break;")
    with pytest.raises(ParsingError):
        JexlEngine().create_script("while (true) { break nowhere; }")


def test_return_from_script():
    assert run_jexl("return 5; 6") == 5


# --- switch ---

def test_switch_statement_falls_through():
    src = """
        var r = '';
        switch (x) {
            case 1: r += 'one';
            case 2: r += 'two'; break;
            default: r += 'other';
        }
        r
    """
    assert run_jexl(src, {'x': 1}) == 'onetwo'
    assert run_jexl(src, {'x': 2}) == 'two'
    assert run_jexl(src, {'x': 9}) == 'other'


def test_switch_expression():
    src = "var s = switch (v) { case 1, 2 -> 'low'; case 3 -> 'mid'; default -> 'high' }; s"
    assert run_jexl(src, {'v': 2}) == 'low'
    assert run_jexl(src, {'v': 3}) == 'mid'
    assert run_jexl(src, {'v': 9}) == 'high'


def test_switch_type_patterns():
    src = "switch (v) { case Integer i -> i * 2; case String s -> s + '!'; default -> null }"
    assert run_jexl(src, {'v': 21}) == 42
    assert run_jexl(src, {'v': 'hi'}) == 'hi!'
    assert run_jexl(src, {'v': 1.5}) is None


def test_switch_type_pattern_guard():
    src = "switch (v) { case Integer i when i > 10 -> 'big'; case Integer i -> 'small'; default -> 'other' }"
    assert run_jexl(src, {'v': 20}) == 'big'
    assert run_jexl(src, {'v': 3}) == 'small'


def test_switch_rejects_duplicate_constants():
    with pytest.raises(ParsingError):
        JexlEngine().create_script("switch (x) { case 1: 1; case 1: 2; }")


def test_value_block_yields():
    assert run_jexl("var x = ({ var t = 3; yield t * 2 }); x") == 6


# --- try / catch / finally ---

def test_try_catch_finally():
    src = """
        var log = [];
        try { throw 'boom' } catch (e) { log.append(e) } finally { log.append('done') }
        log
    """
    assert run_jexl(src) == ['boom', 'done']


def test_thrown_values_and_errors_are_catchable():
    assert run_jexl("try { throw {'code': 7} } catch (e) { e.code }") == 7
    assert run_jexl("try { undefinedVar } catch (e) { 'caught' }") == 'caught'
    with pytest.raises(ThrowError) as exc:
        run_jexl("throw 'x'")
    assert exc.value.value == 'x'


def test_finally_overrides_return():
    assert run_jexl("function f() { try { return 1 } finally { return 2 } } f()") == 2


def test_try_with_resources_closes():
    res = Resource()
    assert run_jexl("try (r) { 1 } r.closed", {'r': res}) is True
    assert res.closed


# --- Annotations ---

def test_builtin_annotations():
    assert run_jexl("@strict(false) undefinedVar") is None
    assert run_jexl("@lenient null + 1") == 1
    with pytest.raises(AnnotationError):
        run_jexl("@nope 1")
    assert run_jexl("@nope 1", strict=False) == 1


def test_timeout_annotation_returns_default():
    assert run_jexl("@timeout(50, 'late') { while (true) ; }") == 'late'
    assert run_jexl("@timeout(5000) 1 + 1") == 2


class Twice(AnnotationProcessor):
    def annotation_twice(self, statement):
        return [statement.call(), statement.call()]


def test_custom_annotation_processor():
    context = JexlContext(annotations=Twice())
    result = JexlEngine().create_script("var n = 0; @twice n += 1").execute(context)
    assert result == [1, 2]
