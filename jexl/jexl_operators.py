"""
Operator dispatch between the evaluator and the arithmetic.

For each operator the order is: an overriding method on the JexlArithmetic
subclass, then (for structured operands) Python's own dunder protocol, then
the default JexlArithmetic implementation.
"""

from decimal import Decimal, DecimalException
from typing import Any, Iterable

from jexl.jexl_arithmetic import JexlArithmetic, TryFailed
from jexl.jexl_errors import JexlError, OperatorError, TryFailedError


# symbol -> (arithmetic method, dunder, reflected dunder)
BINARY_OPERATORS = {
    '+': ('add', '__add__', '__radd__'),
    '-': ('subtract', '__sub__', '__rsub__'),
    '*': ('multiply', '__mul__', '__rmul__'),
    '/': ('divide', '__truediv__', '__rtruediv__'),
    '%': ('mod', '__mod__', '__rmod__'),
    '&': ('bit_and', '__and__', '__rand__'),
    '|': ('bit_or', '__or__', '__ror__'),
    '^': ('bit_xor', '__xor__', '__rxor__'),
    '<<': ('shift_left', '__lshift__', '__rlshift__'),
    '>>': ('shift_right', '__rshift__', '__rrshift__'),
    '>>>': ('shift_right_unsigned', None, None),
}

# symbol -> (arithmetic method, negated, operands swapped)
RELATIONAL_OPERATORS = {
    '==': ('equals', False, False),
    '!=': ('equals', True, False),
    '===': ('strict_equals', False, False),
    '!==': ('strict_equals', True, False),
    '<': ('less_than', False, False),
    '<=': ('less_equal', False, False),
    '>': ('greater_than', False, False),
    '>=': ('greater_equal', False, False),
    '=~': ('contains', False, True),
    '!~': ('contains', True, True),
    '=^': ('starts_with', False, False),
    '!^': ('starts_with', True, False),
    '=$': ('ends_with', False, False),
    '!$': ('ends_with', True, False),
}

UNARY_OPERATORS = {
    '-': ('negate', '__neg__'),
    '+': ('positivize', '__pos__'),
    '~': ('complement', '__invert__'),
    '!': ('logical_not', None),
}

HOOKS = (
    [name for name, _, _ in BINARY_OPERATORS.values()]
    + ['self_' + name for name, _, _ in BINARY_OPERATORS.values()]
    + sorted({name for name, _, _ in RELATIONAL_OPERATORS.values()})
    + [name for name, _ in UNARY_OPERATORS.values()]
    + ['empty', 'size', 'increment', 'decrement', 'create_range', 'for_each',
       'property_get', 'property_set', 'array_get', 'array_set', 'property_delete', 'array_delete']
)

_SCALARS = (bool, int, float, Decimal, str)


def is_structured(value) -> bool:
    return value is not None and not isinstance(value, _SCALARS)


class Operators:
    """Binds an arithmetic instance and remembers which hooks it overrides."""

    def __init__(self, arithmetic: JexlArithmetic):
        self.arithmetic = arithmetic
        cls = type(arithmetic)
        self.overridden = frozenset(
            name for name in HOOKS
            if getattr(cls, name, None) is not getattr(JexlArithmetic, name, None)
        )

    def overrides(self, name: str) -> bool:
        return name in self.overridden

    def hook(self, name: str, symbol: str, *args) -> Any:
        """Calls an overriding hook; NotImplemented when absent or declined."""
        if name not in self.overridden:
            return NotImplemented
        try:
            return getattr(self.arithmetic, name)(*args)
        except TryFailed as e:
            raise TryFailedError(f"{symbol}: {e}" if str(e) else symbol) from e

    def _default(self, name: str, symbol: str, *args) -> Any:
        try:
            return getattr(JexlArithmetic, name)(self.arithmetic, *args)
        except JexlError:
            raise
        except (ArithmeticError, DecimalException, ValueError, TypeError) as e:
            raise OperatorError(symbol, str(e)) from e

    def _dispatch(self, name: str, symbol: str, *args) -> Any:
        result = self.hook(name, symbol, *args)
        if result is NotImplemented:
            result = self._default(name, symbol, *args)
        return result

    def _dunder(self, symbol: str, dunder: str, rdunder: str, left, right) -> Any:
        try:
            method = getattr(type(left), dunder, None)
            if method is not None:
                result = method(left, right)
                if result is not NotImplemented:
                    return result
            method = getattr(type(right), rdunder, None) if rdunder else None
            if method is not None:
                return method(right, left)
        except JexlError:
            raise
        except Exception as e:
            raise OperatorError(symbol, str(e)) from e
        return NotImplemented

    # --- Operator entry points ---

    def binary(self, symbol: str, left, right) -> Any:
        name, dunder, rdunder = BINARY_OPERATORS[symbol]
        result = self.hook(name, symbol, left, right)
        if result is not NotImplemented:
            return result
        if dunder and (is_structured(left) or is_structured(right)):
            result = self._dunder(symbol, dunder, rdunder, left, right)
            if result is not NotImplemented:
                return result
        return self._default(name, symbol, left, right)

    def self_assign(self, symbol: str, left, right) -> Any:
        """`left op= right`: a self_* hook result (possibly ASSIGN) or the plain operator result."""
        base = symbol[:-1]
        name = 'self_' + BINARY_OPERATORS[base][0]
        result = self.hook(name, symbol, left, right)
        if result is not NotImplemented:
            return result
        return self.binary(base, left, right)

    def relational(self, symbol: str, left, right) -> bool:
        name, negated, swapped = RELATIONAL_OPERATORS[symbol]
        args = (right, left) if swapped else (left, right)
        result = self._dispatch(name, symbol, *args)
        result = self.arithmetic.to_boolean(result)
        return not result if negated else result

    def quantified(self, symbol: str, left, quantifier: str, values: Iterable) -> bool:
        """Applies a relational operator to each operand; all/any with short-circuit."""
        if quantifier == 'any':
            return any(self.relational(symbol, left, v) for v in values)
        return all(self.relational(symbol, left, v) for v in values)

    def unary(self, symbol: str, value) -> Any:
        name, dunder = UNARY_OPERATORS[symbol]
        result = self.hook(name, symbol, value)
        if result is not NotImplemented:
            return result
        if dunder and is_structured(value):
            method = getattr(type(value), dunder, None)
            if method is not None:
                try:
                    return method(value)
                except JexlError:
                    raise
                except Exception as e:
                    raise OperatorError(symbol, str(e)) from e
        return self._default(name, symbol, value)

    def increment(self, symbol: str, value) -> Any:
        return self._dispatch('increment' if symbol == '++' else 'decrement', symbol, value)

    def empty(self, value) -> bool:
        return self.arithmetic.to_boolean(self._dispatch('empty', 'empty', value))

    def size(self, value) -> Any:
        return self._dispatch('size', 'size', value)

    def create_range(self, low, high) -> Any:
        return self._dispatch('create_range', '..', low, high)

    def for_each(self, value):
        return self._dispatch('for_each', 'for', value)
