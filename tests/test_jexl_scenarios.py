"""
End-to-end embedding scenarios: namespaces, iteration hooks, curried
closures, generators and strict navigation.
"""

import pytest

from jexl.jexl_arithmetic import JexlArithmetic
from jexl.jexl_context import MapContext
from jexl.jexl_datatypes import ControlSignal
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import VariableError


class Calc:
    def sum(self, values):
        return sum(values)


class RemovableIterator:
    """Walks a list by index and lets the script drop the current element."""

    def __init__(self, items, stack):
        self.items = items
        self.index = -1
        self.stack = stack
        stack.append(self)

    def __iter__(self):
        return self

    def __next__(self):
        self.index += 1
        if self.index >= len(self.items):
            raise StopIteration
        return self.items[self.index]

    def remove(self):
        del self.items[self.index]
        self.index -= 1

    def close(self):
        self.stack.remove(self)


class RemovingArithmetic(JexlArithmetic):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.iterators = []

    def for_each(self, value):
        if isinstance(value, list):
            return RemovableIterator(value, self.iterators)
        return NotImplemented

    def remove(self):
        self.iterators[-1].remove()
        raise ControlSignal('continue')


def test_namespace_class_method():
    engine = JexlEngine(namespaces={'calc': Calc})
    script = engine.create_script("calc:sum(values)")
    assert script.execute(MapContext({'values': [1, 2, 3, 4]})) == 10


def test_namespace_call_over_literal_ranges():
    engine = JexlEngine(namespaces={'calc': Calc})
    assert engine.create_script("calc:sum(-3 .. 3) == 0").execute(MapContext()) is True
    assert engine.create_script("[...1 .. 3]").execute() == [1, 2, 3]
    assert list(engine.create_script("1 .. 3").execute()) == [1, 2, 3]
    assert list(engine.create_script("3 .. 1").execute()) == [3, 2, 1]
    assert engine.create_script("calc:sum(3 .. 1)").execute() == 6


def test_for_each_hook_and_continue_signal_from_host():
    arithmetic = RemovingArithmetic(strict=True)
    engine = JexlEngine(arithmetic=arithmetic)
    items = [1, 2, 3, 4, 5, 6]
    script = engine.create_script("for (var item : list) { if (item <= 3) remove(); } list")
    result = script.execute(MapContext({'list': items}))
    assert result == [4, 5, 6]
    assert items == [4, 5, 6]
    # the loop closed its iterator
    assert arithmetic.iterators == []


def test_curried_closure():
    engine = JexlEngine()
    add3 = engine.create_script("(x, y, z)->{ x + y + z }")
    assert add3.get_parameters() == ['x', 'y', 'z']
    curried = add3.curry(5).curry(15)
    assert curried.get_unbound_parameters() == ['z']
    assert curried(22) == 42
    # currying never changes the original
    assert add3(1, 2, 3) == 6


def test_generator_with_labelled_break():
    engine = JexlEngine()
    script = engine.create_script(
        "[...{yield 1; yield 2; x: {yield 3; break x; yield 4;}; yield 5;}]"
    )
    assert script.execute() == [1, 2, 3, 5]


def test_strict_index_on_undefined_variable():
    strict = JexlEngine(strict=True, safe=False)
    with pytest.raises(VariableError) as exc:
        strict.create_script("z[0]").execute(MapContext())
    assert exc.value.name == 'z'

    safe = JexlEngine(strict=True, safe=True)
    assert safe.create_script("z[0]").execute(MapContext()) is None
