"""
Reflective access to host objects: properties, methods and constructors,
each gated by a Permissions policy.

Denied members behave exactly like members that do not exist.
"""

import importlib
import inspect
import numbers
import typing
import collections.abc
from decimal import Decimal
from types import ModuleType
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from jexl.jexl_arithmetic import IntegerRange
from jexl.jexl_datatypes import UNDEFINED
from jexl.jexl_errors import MethodError


# ===================================================================
# Permissions
# ===================================================================

class Permissions:
    """
    Decides which modules, classes and members scripts may reach.

    `denied_modules` are module prefixes whose classes and functions are
    invisible. When `allowed_modules` is set, only classes from those module
    prefixes (and builtins) are visible. Private and dunder names are never
    visible.
    """

    def __init__(self, denied_modules: Iterable[str] = (), allowed_modules: Optional[Iterable[str]] = None,
                 denied_names: Iterable[str] = ()):
        self.denied_modules = frozenset(denied_modules)
        self.allowed_modules = frozenset(allowed_modules) if allowed_modules is not None else None
        self.denied_names = frozenset(denied_names)

    @staticmethod
    def _matches(module: str, prefixes) -> bool:
        return any(module == p or module.startswith(p + '.') for p in prefixes)

    def allow_module(self, module: Optional[str]) -> bool:
        if not module:
            return True
        if self._matches(module, self.denied_modules):
            return False
        if self.allowed_modules is not None and module != 'builtins':
            return self._matches(module, self.allowed_modules)
        return True

    def allow_class(self, cls: type) -> bool:
        return all(self.allow_module(getattr(base, '__module__', None)) for base in cls.__mro__
                   if base is not object)

    def allow_value(self, value: Any) -> bool:
        """Whether a resolved value (module, class or function) may be handed to a script."""
        if isinstance(value, ModuleType):
            return self.allow_module(value.__name__)
        if isinstance(value, type):
            return self.allow_class(value)
        if inspect.isbuiltin(value) or inspect.isfunction(value):
            if getattr(value, '__name__', None) in self.denied_names:
                return False
            return self.allow_module(getattr(value, '__module__', None))
        return True

    def allow_member(self, obj: Any, name: Any) -> bool:
        if not isinstance(name, str):
            return True
        if name.startswith('_') or name in self.denied_names:
            return False
        if isinstance(obj, ModuleType):
            return self.allow_module(obj.__name__)
        cls = obj if isinstance(obj, type) else type(obj)
        return self.allow_class(cls)

    def compose(self, *specs: str) -> 'Permissions':
        """
        Derives a policy from specs such as 'math.*' (allow) or '-os' (deny).
        """
        denied = set(self.denied_modules)
        allowed = set(self.allowed_modules) if self.allowed_modules is not None else None
        for spec in specs:
            spec = spec.strip()
            if spec.startswith('-'):
                denied.add(spec[1:])
            elif spec.endswith('.*'):
                allowed = allowed if allowed is not None else set()
                allowed.add(spec[:-2])
                denied.discard(spec[:-2])
        return Permissions(denied, allowed, self.denied_names)


Permissions.UNRESTRICTED = Permissions()
Permissions.RESTRICTED = Permissions(
    denied_modules=(
        'os', 'posix', 'nt', 'sys', 'subprocess', 'shutil', 'socket', 'importlib', 'ctypes',
        'pickle', 'marshal', 'io', '_io', 'pathlib', 'inspect', 'types', 'gc', 'threading',
        'multiprocessing', 'signal', 'code', 'codeop', 'runpy', 'asyncio', 'concurrent',
    ),
    denied_names=('eval', 'exec', 'compile', 'open', 'input', 'breakpoint', 'globals', 'locals',
                  'vars', 'getattr', 'setattr', 'delattr', 'exit', 'quit'),
)


# ===================================================================
# Overloaded host functions
# ===================================================================

_EXACT, _ASSIGNABLE, _VARARGS = 0, 1, 2


def _hints(func) -> Dict[str, Any]:
    try:
        return typing.get_type_hints(func)
    except (NameError, TypeError):
        return getattr(func, '__annotations__', {})


def _assignable(value, hint) -> Optional[int]:
    """Cost of passing `value` to a parameter annotated `hint`; None when impossible."""
    if hint is inspect.Parameter.empty or hint is Any or hint is object:
        return _ASSIGNABLE
    origin = typing.get_origin(hint)
    if origin is typing.Union:
        costs = [c for c in (_assignable(value, h) for h in typing.get_args(hint)) if c is not None]
        return min(costs) if costs else None
    if origin is not None:
        hint = origin
    if value is None:
        return _EXACT if hint is type(None) else None
    if not isinstance(hint, type):
        return _ASSIGNABLE
    if type(value) is hint:
        return _EXACT
    if isinstance(value, bool) and hint is not bool and hint in (int, float):
        return None
    if isinstance(value, hint):
        return _ASSIGNABLE
    if hint is float and isinstance(value, int):
        return _ASSIGNABLE
    return None


def _signature_text(func) -> str:
    try:
        return f"{func.__name__}{inspect.signature(func)}"
    except (TypeError, ValueError):
        return getattr(func, '__name__', repr(func))


class Overloaded:
    """
    A set of functions sharing one name; a call picks the best match for the
    argument types: exact > assignable > varargs. Ties raise MethodError.
    Usable as a plain function or as a method in a class body.
    """

    def __init__(self, funcs, instance=None):
        self.funcs = list(funcs)
        self.instance = instance
        self.__name__ = self.funcs[0].__name__

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return Overloaded(self.funcs, instance)

    def _bound(self, func):
        return func.__get__(self.instance) if self.instance is not None else func

    def _cost(self, func, args) -> Optional[Tuple[int, int]]:
        try:
            sig = inspect.signature(func)
        except (TypeError, ValueError):
            return (_VARARGS, 0)
        hints = _hints(func)
        params = [p for p in sig.parameters.values()
                  if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
        varargs = next((p for p in sig.parameters.values() if p.kind == p.VAR_POSITIONAL), None)
        required = [p for p in params if p.default is p.empty]
        if len(args) < len(required) or (len(args) > len(params) and varargs is None):
            return None
        total = 0
        for arg, p in zip(args, params):
            cost = _assignable(arg, hints.get(p.name, p.annotation))
            if cost is None:
                return None
            total += cost
        extra = args[len(params):]
        if extra:
            hint = hints.get(varargs.name, varargs.annotation)
            for arg in extra:
                if _assignable(arg, hint) is None:
                    return None
            return (_VARARGS, total)
        return (_EXACT, total)

    def select(self, args) -> Optional[Callable]:
        ranked = []
        for func in self.funcs:
            bound = self._bound(func)
            cost = self._cost(bound, args)
            if cost is not None:
                ranked.append((cost, bound))
        if not ranked:
            return None
        ranked.sort(key=lambda item: item[0])
        best = [fn for cost, fn in ranked if cost == ranked[0][0]]
        if len(best) > 1:
            raise MethodError(self.__name__, [_signature_text(fn) for fn in best])
        return best[0]

    def __call__(self, *args):
        func = self.select(args)
        if func is None:
            raise MethodError(self.__name__)
        return func(*args)

    def __repr__(self):
        return f"<overloaded {self.__name__} x{len(self.funcs)}>"


def overloads(*funcs) -> Overloaded:
    return Overloaded(funcs)


# ===================================================================
# Uberspect
# ===================================================================

# Type names usable in `instanceof`, `new(...)` and typed declarations.
TYPE_NAMES = {
    'int': int, 'long': int, 'short': int, 'byte': int, 'Integer': int, 'Long': int,
    'float': float, 'double': float, 'Float': float, 'Double': float,
    'boolean': bool, 'Boolean': bool, 'bool': bool,
    'char': str, 'String': str, 'str': str,
    'Object': object, 'object': object, 'Number': numbers.Number,
    'BigDecimal': Decimal, 'Decimal': Decimal, 'BigInteger': int,
    'list': list, 'List': list, 'ArrayList': list,
    'dict': dict, 'Map': dict, 'HashMap': dict,
    'set': set, 'Set': set, 'HashSet': set,
    'tuple': tuple, 'range': IntegerRange,
}


class Uberspect:
    def __init__(self, permissions: Optional[Permissions] = None):
        self.permissions = permissions or Permissions.RESTRICTED
        # (type, name) -> accessor method name; filled idempotently, never evicted
        self._accessors: Dict[Tuple[type, str, str], Optional[str]] = {}

    # --- Classes ---

    def get_class(self, name: str) -> Optional[type]:
        cls = TYPE_NAMES.get(name)
        if cls is not None:
            return cls
        if '.' not in name:
            return None
        module_name, _, attr = name.rpartition('.')
        if not self.permissions.allow_module(module_name):
            return None
        try:
            module = importlib.import_module(module_name)
        except ImportError:
            return None
        cls = getattr(module, attr, None)
        if isinstance(cls, type) and self.permissions.allow_class(cls) and not attr.startswith('_'):
            return cls
        return None

    def is_instance(self, value, cls) -> bool:
        if value is None or cls is None:
            return False
        if cls is int and isinstance(value, bool):
            return False
        return isinstance(value, cls)

    def get_constructor(self, type_or_name, args=()) -> Optional[Callable]:
        cls = self.get_class(type_or_name) if isinstance(type_or_name, str) else type_or_name
        if not isinstance(cls, type) or not self.permissions.allow_class(cls):
            return None
        if cls is object or isinstance(cls, type) and inspect.isabstract(cls):
            return None
        return cls

    # --- Accessor discovery ---

    def _accessor(self, obj, prefix: str, name: str) -> Optional[str]:
        """Finds a bean style accessor: getName/isName/get_name (or setName/set_name)."""
        key = (type(obj), prefix, name)
        if key in self._accessors:
            return self._accessors[key]
        found = None
        cap = name[:1].upper() + name[1:]
        candidates = [prefix + cap, f"{prefix}_{name}"]
        if prefix == 'get':
            candidates.insert(1, 'is' + cap)
        for candidate in candidates:
            if callable(getattr(obj, candidate, None)) and self.permissions.allow_member(obj, candidate):
                found = candidate
                break
        if not isinstance(obj, ModuleType):
            self._accessors[key] = found
        return found

    # --- Properties ---

    def get_property_get(self, obj, name) -> Optional[Callable[[], Any]]:
        """A zero-argument getter for `obj.name` / `obj[name]`, or None when unsolvable."""
        if obj is None or not self.permissions.allow_member(obj, name):
            return None
        if isinstance(obj, collections.abc.Mapping):
            return lambda: obj.get(name)
        if isinstance(obj, collections.abc.Sequence):
            index = self._index(name)
            if index is not None:
                if -len(obj) <= index < len(obj):
                    return lambda: obj[index]
                return None
        if isinstance(name, str):
            if hasattr(obj, name):
                value = getattr(obj, name)
                if not self.permissions.allow_value(value):
                    return None
                return lambda: getattr(obj, name)
            accessor = self._accessor(obj, 'get', name)
            if accessor is not None:
                return getattr(obj, accessor)
        if hasattr(type(obj), '__getitem__') and not isinstance(obj, (str, type)):
            def duck_get():
                try:
                    return obj[name]
                except (KeyError, IndexError, TypeError):
                    return UNDEFINED
            return duck_get
        return None

    def get_property_set(self, obj, name, value) -> Optional[Callable[[Any], Any]]:
        if obj is None or not self.permissions.allow_member(obj, name):
            return None
        if isinstance(obj, collections.abc.MutableMapping):
            return lambda v: obj.__setitem__(name, v)
        if isinstance(obj, collections.abc.MutableSequence):
            index = self._index(name)
            if index is not None:
                if -len(obj) <= index < len(obj):
                    return lambda v: obj.__setitem__(index, v)
                return None
        if isinstance(name, str) and not isinstance(obj, (ModuleType, type)):
            accessor = self._accessor(obj, 'set', name)
            if accessor is not None:
                return getattr(obj, accessor)
            if hasattr(obj, name) and not callable(getattr(obj, name)):
                return lambda v: setattr(obj, name, v)
        if hasattr(type(obj), '__setitem__') and not isinstance(obj, (collections.abc.Sequence, type)):
            return lambda v: obj.__setitem__(name, v)
        return None

    def get_property_delete(self, obj, name) -> Optional[Callable[[], Any]]:
        if obj is None or not self.permissions.allow_member(obj, name):
            return None
        if isinstance(obj, collections.abc.MutableMapping):
            return lambda: obj.pop(name, None)
        if isinstance(obj, collections.abc.MutableSequence):
            index = self._index(name)
            if index is not None and -len(obj) <= index < len(obj):
                return lambda: obj.pop(index)
            return None
        if isinstance(name, str) and hasattr(obj, name) and not isinstance(obj, (ModuleType, type)):
            return lambda: delattr(obj, name)
        remove = getattr(obj, 'remove', None)
        if callable(remove):
            return lambda: remove(name)
        return None

    def _index(self, name) -> Optional[int]:
        if isinstance(name, bool):
            return None
        if isinstance(name, int):
            return name
        if isinstance(name, str) and name.lstrip('-').isdigit():
            return int(name)
        if isinstance(name, (float, Decimal)) and name == int(name):
            return int(name)
        return None

    # --- Methods ---

    def get_method(self, obj, name: str, args=()) -> Optional[Callable]:
        """The callable for `obj.name(args)`, or None. Ambiguous overloads raise MethodError."""
        if obj is None or not self.permissions.allow_member(obj, name):
            return None
        method = getattr(obj, name, None)
        if method is None and isinstance(obj, collections.abc.Mapping):
            # a map entry holding a function
            method = obj.get(name)
        if not callable(method) or not self.permissions.allow_value(method):
            return None
        if isinstance(method, Overloaded):
            return method.select(list(args))
        return method

    def get_function(self, holder, name: str, args=()) -> Optional[Callable]:
        """Resolves `name` on a namespace or function holder (module, class, mapping or object)."""
        if holder is None:
            return None
        if isinstance(holder, collections.abc.Mapping) and not hasattr(holder, name):
            fn = holder.get(name)
            if callable(fn) and self.permissions.allow_value(fn):
                return fn.select(list(args)) if isinstance(fn, Overloaded) else fn
            return None
        return self.get_method(holder, name, args)
