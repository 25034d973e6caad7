"""
The JEXL arithmetic: numeric coercion, operators, comparisons, containment
and the overload hooks a host can refine by subclassing JexlArithmetic.

The promotion ladder is bool -> int -> float -> Decimal. Integer operations
never overflow (Python ints are unbounded); `>>>` works on 64 bits.
"""

import copy
import math
import re
import collections.abc
from decimal import Decimal, Context, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Iterator, Optional

from jexl.jexl_errors import OperatorError


class TryFailed(Exception):
    """Raised by an overload that started handling an operation and gave up."""


class _Assign:
    def __repr__(self):
        return 'ASSIGN'


# Returned by a self_* hook that mutated its left operand in place.
ASSIGN = _Assign()

_MASK64 = (1 << 64) - 1
_INT_RE = re.compile(r'\s*[+-]?\d+\s*$')
_FLOAT_RE = re.compile(r'\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$')

NUMBER_TYPES = (bool, int, float, Decimal)


class IntegerRange(collections.abc.Sequence):
    """An inclusive, lazy range of integers; descending when low > high."""

    def __init__(self, low: int, high: int):
        self.low = low
        self.high = high

    @property
    def step(self) -> int:
        return 1 if self.high >= self.low else -1

    def __len__(self) -> int:
        return abs(self.high - self.low) + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.low, self.high + self.step, self.step))

    def __reversed__(self):
        return iter(IntegerRange(self.high, self.low))

    def __getitem__(self, index):
        if isinstance(index, slice):
            return list(self)[index]
        size = len(self)
        if index < 0:
            index += size
        if not 0 <= index < size:
            raise IndexError(index)
        return self.low + index * self.step

    def __contains__(self, value) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            return False
        lo, hi = min(self.low, self.high), max(self.low, self.high)
        return lo <= value <= hi and value == int(value)

    def __eq__(self, other):
        if isinstance(other, IntegerRange):
            return self.low == other.low and self.high == other.high
        return NotImplemented

    def __hash__(self):
        return hash((IntegerRange, self.low, self.high))

    def __repr__(self):
        return f"{self.low} .. {self.high}"


class JexlArithmetic:
    """
    Default operator semantics.

    A subclass may override any operator method; returning NotImplemented
    falls back to these defaults, raising TryFailed surfaces a TryFailedError.
    The access hooks (property_get, array_set, ...) and the self_* compound
    assignment hooks decline by default.
    """

    def __init__(self, strict: bool = False, math_context: Optional[Context] = None, math_scale: int = -1):
        self.strict = strict
        self.math_context = math_context or Context(prec=34, rounding=ROUND_HALF_EVEN)
        self.math_scale = math_scale

    def options(self, options) -> 'JexlArithmetic':
        """Returns an arithmetic configured for `options`, self when unchanged."""
        strict = options.strict_arithmetic
        context = options.math_context or self.math_context
        scale = options.math_scale if options.math_scale is not None else self.math_scale
        if strict == self.strict and context is self.math_context and scale == self.math_scale:
            return self
        derived = copy.copy(self)
        derived.strict = strict
        derived.math_context = context
        derived.math_scale = scale
        return derived

    # ------------------------------------------------------------------
    # Null handling and coercion
    # ------------------------------------------------------------------

    def _null_operand(self, symbol: str, default: Any = 0) -> Any:
        if self.strict:
            raise OperatorError(symbol, "null operand")
        return default

    def is_number(self, value) -> bool:
        return isinstance(value, NUMBER_TYPES)

    def _number(self, value, symbol: str):
        """Coerces an operand for the numeric ladder; ValueError when impossible."""
        if value is None:
            return self._null_operand(symbol)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float, Decimal)):
            return value
        if isinstance(value, str):
            if value == '':
                return 0
            if _INT_RE.match(value):
                return int(value)
            if _FLOAT_RE.match(value):
                return float(value)
            if value == 'NaN':
                return math.nan
            raise ValueError(value)
        raise TypeError(type(value).__name__)

    def _to_decimal(self, n) -> Decimal:
        if isinstance(n, Decimal):
            return n
        if isinstance(n, float):
            return Decimal(repr(n))
        return Decimal(n)

    def _ladder(self, symbol: str, left, right, int_op, float_op, decimal_op):
        if isinstance(left, Decimal) or isinstance(right, Decimal):
            return decimal_op(self._to_decimal(left), self._to_decimal(right))
        if isinstance(left, float) or isinstance(right, float):
            return float_op(float(left), float(right))
        return int_op(left, right)

    def to_boolean(self, value) -> bool:
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, Decimal)):
            return value != 0
        if isinstance(value, float):
            return value != 0.0 and not math.isnan(value)
        if isinstance(value, str):
            return value != '' and value != 'false'
        return bool(value)

    def to_integer(self, value) -> int:
        if value is None:
            return self._null_operand('int')
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return 0 if math.isnan(value) or math.isinf(value) else int(value)
        if isinstance(value, Decimal):
            return int(value)
        if isinstance(value, str):
            try:
                return int(self._number(value, 'int'))
            except ValueError as e:
                raise OperatorError('int', f"integer coercion of '{value}'") from e
        if isinstance(value, IntegerRange):
            return len(value)
        raise OperatorError('int', f"integer coercion of {type(value).__name__}")

    def to_float(self, value) -> float:
        if value is None:
            return self._null_operand('float', 0.0)
        if isinstance(value, (bool, int, float, Decimal)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(self._number(value, 'float'))
            except ValueError as e:
                raise OperatorError('float', f"float coercion of '{value}'") from e
        raise OperatorError('float', f"float coercion of {type(value).__name__}")

    def to_decimal(self, value) -> Decimal:
        if value is None:
            return self._null_operand('decimal', Decimal(0))
        if isinstance(value, str):
            try:
                return Decimal(value.strip() or '0')
            except InvalidOperation as e:
                raise OperatorError('decimal', f"decimal coercion of '{value}'") from e
        if isinstance(value, (bool, int, float, Decimal)):
            return self._to_decimal(int(value) if isinstance(value, bool) else value)
        raise OperatorError('decimal', f"decimal coercion of {type(value).__name__}")

    def to_string(self, value) -> str:
        if value is None:
            return ''
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, float):
            if math.isnan(value):
                return 'NaN'
            return repr(value)
        return str(value)

    def cast(self, kind: Optional[str], value):
        """Coerces a value stored in a typed variable."""
        if kind is None or value is None:
            return value
        match kind:
            case 'int' | 'long' | 'short' | 'byte':
                return self.to_integer(value)
            case 'float' | 'double':
                return self.to_float(value)
            case 'boolean':
                return self.to_boolean(value)
            case 'char':
                text = self.to_string(value)
                return text[:1]
            case 'String':
                return self.to_string(value)
            case _:
                return value

    # ------------------------------------------------------------------
    # Arithmetic operators
    # ------------------------------------------------------------------

    def add(self, left, right):
        if left is None and right is None:
            return self._null_operand('+')
        if self.strict:
            concat = isinstance(left, str) or isinstance(right, str)
        else:
            concat = isinstance(left, str) and isinstance(right, str)
        if not concat:
            try:
                lnum = self._number(left, '+')
                rnum = self._number(right, '+')
            except (ValueError, TypeError):
                pass
            else:
                return self._ladder('+', lnum, rnum, lambda a, b: a + b, lambda a, b: a + b,
                                    lambda a, b: self.math_context.add(a, b))
        return self.to_string(left) + self.to_string(right)

    def subtract(self, left, right):
        if left is None and right is None:
            return self._null_operand('-')
        lnum, rnum = self._operands('-', left, right)
        return self._ladder('-', lnum, rnum, lambda a, b: a - b, lambda a, b: a - b,
                            lambda a, b: self.math_context.subtract(a, b))

    def multiply(self, left, right):
        if left is None and right is None:
            return self._null_operand('*')
        lnum, rnum = self._operands('*', left, right)
        return self._ladder('*', lnum, rnum, lambda a, b: a * b, lambda a, b: a * b,
                            lambda a, b: self.math_context.multiply(a, b))

    def divide(self, left, right):
        if left is None and right is None:
            return self._null_operand('/')
        lnum, rnum = self._operands('/', left, right)
        if rnum == 0:
            if self.strict:
                raise OperatorError('/', "divide by zero")
            return 0
        return self._ladder('/', lnum, rnum, self._int_divide, lambda a, b: a / b, self._decimal_divide)

    def _int_divide(self, a: int, b: int) -> int:
        q = abs(a) // abs(b)
        return q if (a >= 0) == (b >= 0) else -q

    def _decimal_divide(self, a: Decimal, b: Decimal) -> Decimal:
        result = self.math_context.divide(a, b)
        if self.math_scale is not None and self.math_scale >= 0:
            result = result.quantize(Decimal(1).scaleb(-self.math_scale), context=self.math_context)
        return result

    def mod(self, left, right):
        if left is None and right is None:
            return self._null_operand('%')
        lnum, rnum = self._operands('%', left, right)
        if rnum == 0:
            if self.strict:
                raise OperatorError('%', "divide by zero")
            return 0
        return self._ladder('%', lnum, rnum, self._int_mod, math.fmod,
                            lambda a, b: self.math_context.remainder(a, b))

    def _int_mod(self, a: int, b: int) -> int:
        r = abs(a) % abs(b)
        return r if a >= 0 else -r

    def _operands(self, symbol, left, right):
        try:
            return self._number(left, symbol), self._number(right, symbol)
        except (ValueError, TypeError) as e:
            raise OperatorError(symbol, f"unsupported operands {self._type_name(left)}, {self._type_name(right)}") from e

    def _type_name(self, value) -> str:
        return 'null' if value is None else type(value).__name__

    def negate(self, value):
        if value is None:
            return self._null_operand('-')
        if isinstance(value, bool):
            return not value
        if isinstance(value, (int, float, Decimal)):
            return -value
        if isinstance(value, str):
            try:
                return -self._number(value, '-')
            except ValueError as e:
                raise OperatorError('-', f"negate of '{value}'") from e
        if isinstance(value, IntegerRange):
            return IntegerRange(-value.low, -value.high)
        raise OperatorError('-', f"negate of {self._type_name(value)}")

    def positivize(self, value):
        if value is None:
            return self._null_operand('+')
        if isinstance(value, (bool, int, float, Decimal)):
            return value
        if isinstance(value, str):
            try:
                return self._number(value, '+')
            except ValueError as e:
                raise OperatorError('+', f"positivize of '{value}'") from e
        raise OperatorError('+', f"positivize of {self._type_name(value)}")

    def complement(self, value):
        if value is None:
            return self._null_operand('~')
        return ~self.to_integer(value)

    def logical_not(self, value) -> bool:
        return not self.to_boolean(value)

    def increment(self, value, step: int = 1):
        if value is None:
            return self._null_operand('++' if step > 0 else '--', step)
        if isinstance(value, bool):
            return int(value) + step
        if isinstance(value, (int, float)):
            return value + step
        if isinstance(value, Decimal):
            return value + Decimal(step)
        return self.add(value, step)

    def decrement(self, value):
        return self.increment(value, -1)

    # ------------------------------------------------------------------
    # Bitwise operators
    # ------------------------------------------------------------------

    def bit_and(self, left, right):
        if isinstance(left, bool) and isinstance(right, bool):
            return left and right
        return self.to_integer(left) & self.to_integer(right)

    def bit_or(self, left, right):
        if isinstance(left, bool) and isinstance(right, bool):
            return left or right
        return self.to_integer(left) | self.to_integer(right)

    def bit_xor(self, left, right):
        if isinstance(left, bool) and isinstance(right, bool):
            return left != right
        return self.to_integer(left) ^ self.to_integer(right)

    def shift_left(self, left, right):
        return self.to_integer(left) << self.to_integer(right)

    def shift_right(self, left, right):
        return self.to_integer(left) >> self.to_integer(right)

    def shift_right_unsigned(self, left, right):
        return (self.to_integer(left) & _MASK64) >> self.to_integer(right)

    # ------------------------------------------------------------------
    # Compound assignment hooks (decline by default)
    # ------------------------------------------------------------------

    def self_add(self, left, right):
        return NotImplemented

    def self_subtract(self, left, right):
        return NotImplemented

    def self_multiply(self, left, right):
        return NotImplemented

    def self_divide(self, left, right):
        return NotImplemented

    def self_mod(self, left, right):
        return NotImplemented

    def self_bit_and(self, left, right):
        return NotImplemented

    def self_bit_or(self, left, right):
        return NotImplemented

    def self_bit_xor(self, left, right):
        return NotImplemented

    def self_shift_left(self, left, right):
        return NotImplemented

    def self_shift_right(self, left, right):
        return NotImplemented

    def self_shift_right_unsigned(self, left, right):
        return NotImplemented

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def equals(self, left, right) -> bool:
        if left is right:
            return True
        if left is None or right is None:
            return False
        if isinstance(left, bool) or isinstance(right, bool):
            if isinstance(left, bool) and isinstance(right, bool):
                return left == right
            if self.strict:
                return False
            return self.to_boolean(left) == self.to_boolean(right)
        if self.is_number(left) and self.is_number(right):
            return self.compare(left, right, '==') == 0
        if isinstance(left, str) and self.is_number(right) or isinstance(right, str) and self.is_number(left):
            if not self.strict:
                try:
                    return self.compare(self._number(left, '=='), self._number(right, '=='), '==') == 0
                except ValueError:
                    return False
            return self.to_string(left) == self.to_string(right)
        try:
            return bool(left == right)
        except Exception as e:
            raise OperatorError('==', str(e)) from e

    def strict_equals(self, left, right) -> bool:
        if left is None or right is None:
            return left is right
        return type(left) is type(right) and self.equals(left, right)

    def compare(self, left, right, symbol: str) -> int:
        """Three-way comparison; OperatorError when the operands are not comparable."""
        if left is None or right is None:
            if left is None and right is None:
                return 0
            if self.strict:
                raise OperatorError(symbol, "null operand")
            left = 0 if left is None else left
            right = 0 if right is None else right
        if isinstance(left, str) and isinstance(right, str):
            return (left > right) - (left < right)
        if self.is_number(left) or self.is_number(right):
            try:
                lnum = self._number(left, symbol)
                rnum = self._number(right, symbol)
            except (ValueError, TypeError) as e:
                raise OperatorError(symbol, f"cannot compare {self._type_name(left)} and {self._type_name(right)}") from e
            if isinstance(lnum, Decimal) or isinstance(rnum, Decimal):
                if isinstance(lnum, float) and math.isnan(lnum) or isinstance(rnum, float) and math.isnan(rnum):
                    return 1
                lnum, rnum = self._to_decimal(lnum), self._to_decimal(rnum)
            return (lnum > rnum) - (lnum < rnum)
        try:
            return (left > right) - (left < right)
        except TypeError as e:
            raise OperatorError(symbol, f"cannot compare {self._type_name(left)} and {self._type_name(right)}") from e

    def less_than(self, left, right) -> bool:
        return self.compare(left, right, '<') < 0

    def less_equal(self, left, right) -> bool:
        return self.compare(left, right, '<=') <= 0

    def greater_than(self, left, right) -> bool:
        return self.compare(left, right, '>') > 0

    def greater_equal(self, left, right) -> bool:
        return self.compare(left, right, '>=') >= 0

    # ------------------------------------------------------------------
    # Containment and matching
    # ------------------------------------------------------------------

    def contains(self, container, value) -> bool:
        """`value =~ container`: regex match, membership or equality."""
        if container is None:
            return value is None
        if isinstance(container, re.Pattern):
            return value is not None and container.fullmatch(self.to_string(value)) is not None
        if isinstance(container, str):
            if value is None:
                return False
            try:
                return re.fullmatch(container, self.to_string(value)) is not None
            except re.error:
                return container == self.to_string(value)
        if isinstance(container, collections.abc.Mapping):
            if isinstance(value, (list, tuple, set)):
                return all(v in container for v in value)
            return value in container
        duck = self._duck_method(container, ('contains',))
        if duck is not None:
            return bool(duck(value))
        if isinstance(container, (collections.abc.Iterable, collections.abc.Container)):
            if isinstance(value, (list, tuple, set, frozenset)) and not isinstance(container, IntegerRange):
                return all(self._member(container, v) for v in value)
            return self._member(container, value)
        return self.equals(container, value)

    def _member(self, container, value) -> bool:
        if isinstance(container, IntegerRange):
            return value in container
        if isinstance(container, (set, frozenset)):
            try:
                if value in container:
                    return True
            except TypeError:
                pass
        return any(self.equals(item, value) for item in container)

    def _duck_method(self, obj, names):
        for name in names:
            method = getattr(obj, name, None)
            if callable(method):
                return method
        return None

    def starts_with(self, left, right) -> bool:
        if left is None:
            return right is None
        if isinstance(left, str):
            return right is not None and left.startswith(self.to_string(right))
        if isinstance(left, (list, tuple, IntegerRange)):
            if isinstance(right, (list, tuple, IntegerRange)):
                items = list(right)
                return len(items) <= len(left) and all(self.equals(a, b) for a, b in zip(left, items))
            return len(left) > 0 and self.equals(left[0], right)
        duck = self._duck_method(left, ('startswith', 'starts_with', 'startsWith'))
        if duck is not None:
            return bool(duck(right))
        return self.equals(left, right)

    def ends_with(self, left, right) -> bool:
        if left is None:
            return right is None
        if isinstance(left, str):
            return right is not None and left.endswith(self.to_string(right))
        if isinstance(left, (list, tuple, IntegerRange)):
            if isinstance(right, (list, tuple, IntegerRange)):
                items = list(right)
                if len(items) > len(left):
                    return False
                tail = list(left)[len(left) - len(items):]
                return all(self.equals(a, b) for a, b in zip(tail, items))
            return len(left) > 0 and self.equals(left[-1], right)
        duck = self._duck_method(left, ('endswith', 'ends_with', 'endsWith'))
        if duck is not None:
            return bool(duck(right))
        return self.equals(left, right)

    # ------------------------------------------------------------------
    # empty / size / ranges / iteration
    # ------------------------------------------------------------------

    def empty(self, value) -> bool:
        if value is None:
            return True
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, Decimal)):
            return value == 0
        if isinstance(value, float):
            return value == 0.0 or math.isnan(value)
        duck = self._duck_method(value, ('is_empty', 'isEmpty'))
        if duck is not None:
            return bool(duck())
        if isinstance(value, collections.abc.Sized):
            return len(value) == 0
        return False

    def size(self, value) -> int:
        if value is None:
            return 0
        if isinstance(value, collections.abc.Sized):
            return len(value)
        duck = self._duck_method(value, ('size', 'length'))
        if duck is not None:
            return self.to_integer(duck())
        if self.strict:
            raise OperatorError('size', f"size of {self._type_name(value)}")
        return 0

    def create_range(self, low, high) -> IntegerRange:
        if low is None or high is None:
            raise OperatorError('..', "null range bound")
        return IntegerRange(self.to_integer(low), self.to_integer(high))

    def for_each(self, value) -> Iterator:
        if value is None:
            return iter(())
        if isinstance(value, collections.abc.Mapping):
            return iter(list(value.values()))
        if isinstance(value, collections.abc.Iterator):
            return value
        if isinstance(value, collections.abc.Iterable):
            return iter(value)
        if self.strict:
            raise OperatorError('for', f"{self._type_name(value)} is not iterable")
        return iter(())

    # ------------------------------------------------------------------
    # Access hooks (decline by default)
    # ------------------------------------------------------------------

    def property_get(self, obj, key):
        return NotImplemented

    def property_set(self, obj, key, value):
        return NotImplemented

    def array_get(self, obj, key):
        return NotImplemented

    def array_set(self, obj, key, value):
        return NotImplemented

    def property_delete(self, obj, key):
        return NotImplemented

    def array_delete(self, obj, key):
        return NotImplemented
