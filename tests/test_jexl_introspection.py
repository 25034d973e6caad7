import math
import os
from decimal import Decimal

import pytest

from jexl.jexl_context import MapContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import MethodError
from jexl.jexl_introspection import Permissions, Uberspect, overloads


def describe_int(x: int):
    return 'int'


def describe_str(x: str):
    return 'str'


def describe_any(*xs):
    return 'varargs'


describe = overloads(describe_int, describe_str, describe_any)


class Formatter:
    def _fmt_int(self, x: int):
        return f"int:{x}"

    def _fmt_str(self, x: str):
        return f"str:{x}"

    fmt = overloads(_fmt_int, _fmt_str)


class Bean:
    def __init__(self):
        self._active = True
        self._label = 'x'

    def isActive(self):
        return self._active

    def get_label(self):
        return self._label

    def set_label(self, value):
        self._label = value


# --- Permissions ---

def test_restricted_hides_dangerous_modules():
    p = Permissions.RESTRICTED
    assert not p.allow_module('os')
    assert not p.allow_module('os.path')
    assert p.allow_module('math')
    assert p.allow_module(None)
    assert not p.allow_value(eval)
    assert not p.allow_member(Bean(), '_label')


def test_compose_allow_and_deny():
    p = Permissions.UNRESTRICTED.compose('math.*', '-json')
    assert p.allow_module('math')
    assert p.allow_module('builtins')
    assert not p.allow_module('decimal')
    assert not p.allow_module('json')


def test_namespace_on_denied_module_is_unsolvable():
    engine = JexlEngine(namespaces={'sys': os})
    with pytest.raises(MethodError):
        engine.create_script("sys:getcwd()").execute()


def test_unrestricted_permissions():
    engine = JexlEngine(permissions=Permissions.UNRESTRICTED, namespaces={'sys': os})
    assert engine.create_script("sys:getcwd()").execute() == os.getcwd()


def test_module_namespace():
    engine = JexlEngine(namespaces={'m': math})
    assert engine.create_script("m:floor(m:sqrt(17))").execute() == 4


# --- Overloads ---

def test_overload_ranking():
    assert describe(3) == 'int'
    assert describe('a') == 'str'
    assert describe(1.5) == 'varargs'
    # booleans never match an int parameter
    assert describe(True) == 'varargs'


def test_ambiguous_overload():
    def first(x: int):
        return 1

    def second(x: int):
        return 2

    with pytest.raises(MethodError) as exc:
        overloads(first, second)(1)
    assert len(exc.value.signatures) == 2


def test_overloads_from_scripts():
    engine = JexlEngine()
    context = MapContext({'describe': describe, 'f': Formatter()})
    assert engine.create_script("describe('x')").execute(context) == 'str'
    assert engine.create_script("f.fmt(2)").execute(context) == 'int:2'
    assert engine.create_script("f.fmt('b')").execute(context) == 'str:b'
    with pytest.raises(MethodError):
        engine.create_script("f.fmt(1.5)").execute(context)


# --- Uberspect ---

def test_get_class():
    u = Uberspect()
    assert u.get_class('Integer') is int
    assert u.get_class('decimal.Decimal') is Decimal
    assert u.get_class('os.PathLike') is None
    assert u.get_class('Unknown') is None


def test_sequence_and_mapping_properties():
    u = Uberspect()
    assert u.get_property_get([1, 2, 3], -1)() == 3
    assert u.get_property_get([1, 2, 3], '1')() == 2
    assert u.get_property_get([1, 2, 3], 5) is None
    assert u.get_property_get({'a': 1}, 'a')() == 1
    assert u.get_property_set((1, 2), 0, 9) is None


def test_bean_accessors():
    u = Uberspect()
    bean = Bean()
    assert u.get_property_get(bean, 'active')() is True
    assert u.get_property_get(bean, 'label')() == 'x'
    u.get_property_set(bean, 'label', 'y')('y')
    assert bean.get_label() == 'y'


def test_constructor_lookup():
    u = Uberspect()
    assert u.get_constructor('BigDecimal') is Decimal
    assert u.get_constructor('Object') is None
    assert u.get_constructor('os.PathLike') is None
