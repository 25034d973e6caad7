"""
The JEXL tree-walking evaluator.

Statements return their value or a ControlSignal (return/break/continue/
yield-to-block) that enclosing loops, labelled statements, switches and call
boundaries consume. Expressions return plain values; a signal escaping an
expression (a `return` inside a value block, or one raised by a host hook)
travels as an exception and is turned back into a returned signal by the
nearest statement boundary.
"""

import collections.abc
import copy
import inspect
import os
import sys
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from jexl.jexl_arithmetic import JexlArithmetic, ASSIGN
from jexl.jexl_closure import Script, Closure
from jexl.jexl_context import Cancellation, MapContext, JexlContext, DEFAULT_ANNOTATIONS
from jexl.jexl_generator import Generator as GeneratorIterator
from jexl.jexl_introspection import Uberspect
from jexl.jexl_operators import Operators, BINARY_OPERATORS, RELATIONAL_OPERATORS
from jexl.jexl_options import Options
from jexl.jexl_errors import (
    JexlError, VariableError, PropertyError, MethodError, AssignmentError, StackOverflowError,
    CancelError, ThrowError, AnnotationError, EvalError, AssertionFailedError
)
from jexl.jexl_datatypes import (
    UNSET, UNDEFINED, ControlSignal, Entry,
    Literal, RegexLiteral, Identifier, TypeName, ArrayLiteral, SetLiteral, MapLiteral, Spread,
    BinaryOp, Conditional, SetOperand, UnaryOp, IncDec, Member, Index, Call, NamespaceCall,
    Pipe, Projection, Selection, CurrentElement, Iterate,
    KeywordCall, NewCall, Delete, Assignment, Lambda, Generator, ValueBlock,
    Block, Declaration, If, While, DoWhile, For, ForEach, Return, Break, Continue,
    Throw, Yield, Labelled, Assert, Try, DefaultLabel, TypePattern, Switch, Annotated, Pragma,
    Script as ScriptNode
)

# Functions available to every script after variables, context and arithmetic.
BUILTINS = {
    'abs': abs, 'min': min, 'max': max, 'sum': sum, 'sorted': sorted, 'len': len, 'round': round,
    'list': list, 'tuple': tuple, 'set': set, 'dict': dict, 'any': any, 'all': all,
    'str': str, 'int': int, 'float': float, 'bool': bool,
}

# Names of context members that are not script functions.
_CONTEXT_MEMBERS = frozenset(dir(JexlContext))


class AnnotatedStatement:
    """The remainder of an annotated statement, handed to annotation processors."""

    def __init__(self, evaluator: 'Evaluator', node: Annotated, index: int):
        self.evaluator = evaluator
        self.node = node
        self.index = index

    def call(self, **overrides) -> Any:
        """Runs the statement, optionally with some options overridden for its duration."""
        ev = self.evaluator
        if not overrides:
            return ev._annotated(self.node, self.index)
        saved = ev.options
        options = saved.copy()
        for key, value in overrides.items():
            setattr(options, key, value)
        ev._configure(options)
        try:
            return ev._annotated(self.node, self.index)
        finally:
            ev._configure(saved)

    def fork(self) -> 'AnnotatedStatement':
        """The same statement on a forked evaluator that can be cancelled on its own."""
        return AnnotatedStatement(self.evaluator.fork(), self.node, self.index)

    def cancel(self):
        self.evaluator.cancellation.cancel()


class Evaluator:
    """The JEXL execution engine."""

    def __init__(self, engine=None, context=None, options: Optional[Options] = None,
                 arithmetic: Optional[JexlArithmetic] = None, uberspect: Optional[Uberspect] = None,
                 cancellation: Optional[Cancellation] = None, namespaces: Optional[Dict[str, Any]] = None):
        self.engine = engine
        self.context = context if context is not None else MapContext()
        self.base_arithmetic = arithmetic or getattr(engine, 'arithmetic', None) or JexlArithmetic()
        self.uberspect = uberspect or getattr(engine, 'uberspect', None) or Uberspect()
        self._namespace_instances: Dict[str, Any] = {}
        self.namespaces: Dict[str, Any] = dict(namespaces if namespaces is not None
                                               else getattr(engine, 'namespaces', None) or {})
        self.cancellation = cancellation or Cancellation()
        self.side_effects: List[Any] = []
        self.call_stack = []
        self.current_node = None
        self.frame = None
        self.depth = 0
        # > 0 while evaluating an operand whose failure must yield None quietly
        self.protected = 0
        # set on a generator worker: hands a yielded value to the consumer
        self.yielder = None
        # the value of `@` under a pipe, projection or selection
        self.current_element = None
        self.options = None
        self.arithmetic = None
        self.operators = None
        self._configure(options or Options())

    def _configure(self, options: Options):
        self.options = options
        arithmetic = self.base_arithmetic.options(options)
        if arithmetic is not self.arithmetic:
            self.arithmetic = arithmetic
            self.operators = Operators(arithmetic)

    def fork(self) -> 'Evaluator':
        """A copy sharing frame, context and side effects, with its own cancellation."""
        child = copy.copy(self)
        child.cancellation = self.cancellation.child()
        child.call_stack = list(self.call_stack)
        child.yielder = None
        return child

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _push_frame(self, name, func, args, call_site_node):
        loc = getattr(call_site_node, 'loc', None)
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': loc,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("JEXL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _warn(self, message: str, node=None):
        if self.options.silent:
            return
        loc = getattr(node, 'loc', None) or {}
        if loc.get('line') is not None:
            message = f"{message} (line {loc['line']}, col {loc['col']})"
        self.side_effects.append({'topics': ['warning'], 'message': message})

    def _check_cancel(self):
        if self.cancellation.is_cancelled():
            raise CancelError(loc=getattr(self.current_node, 'loc', None))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, fn: Script, args=()) -> Any:
        """Calls a script or closure from the host."""
        try:
            return self.call_function(fn, list(args), None)
        except CancelError:
            if self.options.cancellable:
                raise
            return None
        except RecursionError as e:
            raise StackOverflowError(self.depth, host=True) from e

    def call_function(self, fn: Script, args: list, node) -> Any:
        function = fn.function
        self.depth += 1
        try:
            limit = self.options.stack_overflow
            if limit is not None and limit >= 0 and self.depth > limit:
                raise StackOverflowError(self.depth, loc=getattr(node, 'loc', None))
            self._check_cancel()
            saved = (self.frame, self.protected)
            self.frame = function.scope.create_frame(fn.captured)
            self.protected = 0
            self._push_frame(fn.name, fn, args, node)
            self._dbg("call", fn.name, "argc", len(args))
            try:
                self._bind(function.params, list(fn.bound) + list(args))
                return self._function_body(function)
            finally:
                self._pop_frame()
                self.frame, self.protected = saved
        finally:
            self.depth -= 1

    def _bind(self, params, args):
        for slot, param in enumerate(params):
            value = args[slot] if slot < len(args) else None
            if value is None and param.default is not None:
                # evaluated in the callee frame: may use earlier parameters
                value = self.eval(param.default)
            self.frame.declare(slot, self._cast(slot, value))

    def _function_body(self, function) -> Any:
        try:
            if isinstance(function, ScriptNode):
                result = self._statements(function.body)
            elif isinstance(function.body, Block):
                result = self._statements(function.body.statements)
            else:
                result = self.eval(function.body)
        except ControlSignal as signal:
            result = signal
        if isinstance(result, ControlSignal):
            if result.kind == 'return':
                return result.value
            raise EvalError(f"{result.kind} outside of a loop")
        return result

    def execute_block(self, block: Block) -> Any:
        """Runs a block to completion; used by generator workers."""
        result = self._run(block)
        if isinstance(result, ControlSignal):
            return result.value
        return result

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _run(self, node) -> Any:
        """Evaluates a statement, turning a raised signal into a returned one."""
        try:
            return self.eval(node)
        except ControlSignal as signal:
            return signal

    def _statements(self, statements) -> Any:
        result = None
        for st in statements:
            self._check_cancel()
            result = self.eval(st)
            if isinstance(result, ControlSignal):
                return result
        return result

    def _test(self, node) -> bool:
        return self.arithmetic.to_boolean(self.eval(node))

    def _protected_eval(self, node) -> Any:
        self.protected += 1
        try:
            return self.eval(node)
        finally:
            self.protected -= 1

    def eval(self, node) -> Any:
        """Recursive dispatcher for evaluating any syntax node."""
        self.current_node = node
        try:
            return self._eval(node)
        except JexlError as e:
            if e.stack is None:
                e.stack = list(self.call_stack)
            raise e.with_loc(getattr(node, 'loc', None))

    def _eval(self, node) -> Any:
        match node:
            # --- Literals ---
            case Literal():
                return node.value
            case RegexLiteral():
                return node.pattern
            case Identifier():
                return self._variable(node)
            case TypeName():
                return self._type(node)
            case ArrayLiteral():
                return self._items(node.items)
            case SetLiteral():
                try:
                    return set(self._items(node.items))
                except TypeError as e:
                    raise EvalError(f"unhashable set element: {e}", node.loc) from e
            case MapLiteral():
                return {self.eval(k): self.eval(v) for k, v in node.entries}
            case Spread():
                return list(self._iterate(self.eval(node.expr)))
            case Iterate():
                return self._iterate(self.eval(node.expr))
            case CurrentElement():
                return self.current_element

            # --- Operators ---
            case BinaryOp():
                return self._binary(node)
            case Conditional():
                return self._conditional(node)
            case UnaryOp():
                return self.operators.unary(node.op, self.eval(node.operand))
            case IncDec():
                return self._incdec(node)
            case Assignment():
                return self._assignment(node)
            case KeywordCall():
                value = self._protected_eval(node.arg)
                if node.name == 'empty':
                    return self.operators.empty(value)
                return self.operators.size(value)

            # --- Access and calls ---
            case Member() | Index():
                value, antish = self._navigate(node)
                if antish is not None:
                    return self._undefined_variable(antish, node, navigated=True)
                return value
            case Call():
                return self._call(node)
            case NamespaceCall():
                return self._namespace_call(node)
            case NewCall():
                return self._new(node)
            case Delete():
                return self._delete(node)
            case Pipe():
                return self._pipe(node)
            case Projection():
                source = self._elements(self.eval(node.obj))
                return self._projection(node, source, self.frame)
            case Selection():
                source = self._elements(self.eval(node.obj))
                return self._selection(node, source, self.frame)

            # --- Functions and blocks ---
            case Lambda():
                captured = self.frame.capture(node.scope)
                return Closure(self.engine, node, captured, self.context, self.options)
            case Generator():
                return GeneratorIterator(self, node.body)
            case ValueBlock():
                result = self._run(node.body)
                if isinstance(result, ControlSignal):
                    if result.kind == 'yield':
                        return result.value
                    raise result
                return result
            case Block():
                return self._statements(node.statements)

            # --- Statements ---
            case Declaration():
                return self._declaration(node)
            case If():
                if self._test(node.cond):
                    return self.eval(node.then)
                if node.otherwise is not None:
                    return self.eval(node.otherwise)
                return None
            case While() | DoWhile() | For() | ForEach():
                return self._loop(node, None)
            case Return():
                value = self.eval(node.value) if node.value is not None else None
                return ControlSignal('return', value=value)
            case Break():
                return ControlSignal('break', node.label)
            case Continue():
                return ControlSignal('continue', node.label)
            case Throw():
                value = self.eval(node.value)
                if isinstance(value, JexlError):
                    raise value
                raise ThrowError(value, node.loc)
            case Yield():
                value = self.eval(node.value)
                if node.target == 'generator':
                    self.yielder(value)
                    return None
                return ControlSignal('yield', value=value)
            case Assert():
                return self._assert(node)
            case Labelled():
                return self._labelled(node)
            case Try():
                return self._try(node)
            case Switch():
                return self._switch(node)
            case Annotated():
                return self._annotated(node, 0)
            case Pragma():
                return None
            case _:
                raise EvalError(f"cannot evaluate {type(node).__name__}", getattr(node, 'loc', None))

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def _cast(self, slot: int, value: Any) -> Any:
        kind = self.frame.scope.types.get(slot)
        if kind is None:
            return value
        return self.arithmetic.cast(kind, value)

    def _lookup(self, ident: Identifier) -> Any:
        """The value bound to an identifier, UNDEFINED when there is none."""
        if ident.slot is not None:
            if ident.shaded:
                if self.options.lexical_shade:
                    return UNDEFINED
            else:
                value = self.frame.get(ident.slot)
                if value is not UNSET and value is not UNDEFINED:
                    return value
        if self.context.has(ident.name):
            return self.context.get(ident.name)
        return UNDEFINED

    def _variable(self, ident: Identifier) -> Any:
        value = self._lookup(ident)
        if value is UNDEFINED:
            if ident.slot is not None and not ident.shaded and self.options.safe:
                return None
            return self._undefined_variable(ident.name, ident)
        return value

    def _undefined_variable(self, name: str, node, navigated: bool = False) -> Any:
        if self.protected:
            return None
        if navigated and self.options.safe:
            return None
        if self.options.strict:
            raise VariableError(name, loc=getattr(node, 'loc', None))
        self._warn(f"undefined variable {name}", node)
        return None

    def _set_variable(self, ident: Identifier, value: Any) -> Any:
        if ident.slot is not None and not ident.shaded:
            value = self._cast(ident.slot, value)
            self.frame.set(ident.slot, value)
            return value
        if ident.shaded and self.options.lexical_shade:
            raise VariableError(ident.name, loc=ident.loc)
        self.context.set(ident.name, value)
        return value

    def _declaration(self, node: Declaration) -> Any:
        fresh = node.kind in ('let', 'const') or self.options.lexical
        scope = self.frame.scope
        result = None
        for d in node.declarators:
            slot = d.slot
            captured = scope.is_captured(slot)
            if d.value is None:
                value = self.frame.get(slot) if d.inherits else None
                if value is UNSET:
                    value = None
                value = self._cast(slot, value)
                if fresh or captured:
                    self.frame.declare(slot, value)
                else:
                    self.frame.set(slot, value)
            elif captured:
                # the initializer may still read the captured value
                value = self._cast(slot, self.eval(d.value))
                self.frame.declare(slot, value)
            else:
                # the cell exists before the initializer runs so a lambda can recurse
                cell = self.frame.declare(slot) if fresh else self.frame.cell(slot)
                value = self._cast(slot, self.eval(d.value))
                cell.value = value
            result = value
        return result

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def _binary(self, node: BinaryOp) -> Any:
        op = node.op
        if op == '&&':
            if not self._test(node.left):
                return False
            return self._test(node.right)
        if op == '||':
            if self._test(node.left):
                return True
            return self._test(node.right)
        left = self.eval(node.left)
        if op in ('instanceof', '!instanceof'):
            cls = self._type(node.right)
            result = self.uberspect.is_instance(left, cls)
            return not result if op == '!instanceof' else result
        if isinstance(node.right, SetOperand):
            values = (self.eval(item) for item in node.right.items)
            return self.operators.quantified(op, left, node.right.quantifier, values)
        right = self.eval(node.right)
        if op == '..':
            return self.operators.create_range(left, right)
        if op in RELATIONAL_OPERATORS:
            return self.operators.relational(op, left, right)
        if op in BINARY_OPERATORS:
            return self.operators.binary(op, left, right)
        raise EvalError(f"unknown operator {op}", node.loc)

    def _conditional(self, node: Conditional) -> Any:
        value = self._protected_eval(node.cond)
        match node.op:
            case '?':
                if self.arithmetic.to_boolean(value):
                    return self.eval(node.then)
                return self.eval(node.otherwise)
            case '?:':
                if self.arithmetic.to_boolean(value):
                    return value
                return self.eval(node.otherwise)
            case _:
                if value is not None:
                    return value
                return self.eval(node.otherwise)

    def _type(self, node: TypeName) -> Any:
        cls = self.uberspect.get_class(node.name)
        if cls is not None:
            return cls
        # a variable holding a class
        value = self.context.get(node.name) if '.' not in node.name else None
        if isinstance(value, type):
            return value
        if self.options.strict and not self.protected:
            raise VariableError(node.name, loc=node.loc)
        return None

    # ------------------------------------------------------------------
    # Navigation: members, indices, antish variables
    # ------------------------------------------------------------------

    def _navigate(self, node):
        """
        Evaluates a member chain. Returns (value, None), or (None, name) when
        the chain is rooted at an unbound variable and no antish variable
        matched; `name` is then the dotted path tried so far.
        """
        match node:
            case Identifier():
                value = self._lookup(node)
                if value is UNDEFINED:
                    return None, node.name
                return value, None
            case Member():
                obj, antish = self._navigate(node.obj)
                if antish is not None:
                    if isinstance(node.name, int):
                        return None, antish
                    name = f"{antish}.{node.name}"
                    if self.options.antish and self.context.has(name):
                        return self.context.get(name), None
                    if node.safe:
                        return None, None
                    return None, name
                if obj is None:
                    return self._null_base(node), None
                return self._get_property(obj, node.name, node), None
            case Index():
                obj, antish = self._navigate(node.obj)
                if antish is not None:
                    if node.safe:
                        return None, None
                    return self._undefined_variable(antish, node.obj, navigated=True), None
                if obj is None:
                    return self._null_base(node), None
                key = self.eval(node.key)
                return self._get_property(obj, key, node), None
            case _:
                return self.eval(node), None

    def _null_base(self, node) -> Any:
        if node.safe or self.options.safe or self.protected:
            return None
        base = node.obj
        if self.options.strict:
            if isinstance(base, Identifier):
                raise VariableError(base.name, undefined=False, loc=base.loc)
            name = node.name if isinstance(node, Member) else '[]'
            raise PropertyError(name, loc=node.loc)
        self._warn("null base in navigation", node)
        return None

    def _host(self, fn, args, node, name, property_access=False) -> Any:
        """Calls into host code, wrapping its failures."""
        try:
            return fn(*args)
        except (JexlError, ControlSignal, RecursionError):
            raise
        except Exception as e:
            loc = getattr(node, 'loc', None)
            if property_access:
                error = PropertyError(name, loc=loc)
            else:
                error = EvalError(f"{name}: {type(e).__name__}: {e}", loc)
            raise error from e

    def _get_property(self, obj, key, node) -> Any:
        indexed = isinstance(node, Index)
        result = self.operators.hook('array_get' if indexed else 'property_get',
                                     '[]' if indexed else '.', obj, key)
        if result is not NotImplemented:
            return result
        getter = self.uberspect.get_property_get(obj, key)
        if getter is not None:
            value = self._host(getter, (), node, key, property_access=True)
            if value is not UNDEFINED:
                return value
        return self._unsolvable_property(key, node)

    def _unsolvable_property(self, key, node) -> Any:
        if self.protected:
            return None
        if self.options.strict:
            raise PropertyError(key, loc=getattr(node, 'loc', None))
        self._warn(f"unsolvable property '{key}'", node)
        return None

    def _set_property(self, obj, key, value, node) -> Any:
        indexed = isinstance(node, Index)
        result = self.operators.hook('array_set' if indexed else 'property_set',
                                     '[]=' if indexed else '.=', obj, key, value)
        if result is not NotImplemented:
            return value
        setter = self.uberspect.get_property_set(obj, key, value)
        if setter is not None:
            self._host(setter, (value,), node, key, property_access=True)
            return value
        self._unsolvable_property(key, node)
        return value

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def _reference(self, target):
        """Resolves an assignment target once; returns (getter, setter)."""
        match target:
            case Identifier():
                return (lambda: self._variable(target)), (lambda v: self._set_variable(target, v))
            case Member() | Index():
                obj, antish = self._navigate(target.obj)
                if antish is not None:
                    if isinstance(target, Index) or not self.options.antish:
                        self._undefined_variable(antish, target.obj)
                        return (lambda: None), (lambda v: v)
                    name = f"{antish}.{target.name}"
                    return (lambda: self.context.get(name)), (lambda v: self.context.set(name, v) or v)
                key = target.name if isinstance(target, Member) else self.eval(target.key)
                if obj is None:
                    def fail(*_):
                        return self._null_base(target)
                    return fail, fail
                return (lambda: self._get_property(obj, key, target)), \
                    (lambda v: self._set_property(obj, key, v, target))
            case _:
                raise AssignmentError('?', "invalid assignment target", getattr(target, 'loc', None))

    def _assignment(self, node: Assignment) -> Any:
        if node.op == '=':
            if isinstance(node.target, Identifier):
                return self._set_variable(node.target, self.eval(node.value))
            _, setter = self._reference(node.target)
            value = self.eval(node.value)
            setter(value)
            return value
        getter, setter = self._reference(node.target)
        current = getter()
        operand = self.eval(node.value)
        result = self.operators.self_assign(node.op, current, operand)
        if result is ASSIGN:
            return current
        setter(result)
        return result

    def _incdec(self, node: IncDec) -> Any:
        getter, setter = self._reference(node.target)
        current = getter()
        updated = self.operators.increment(node.op, current)
        setter(updated)
        return updated if node.prefix else current

    def _delete(self, node: Delete) -> Any:
        target = node.target
        if isinstance(target, Identifier):
            if target.slot is not None and not target.shaded:
                self.frame.set(target.slot, None)
            else:
                remove = getattr(self.context, 'remove', None)
                if callable(remove):
                    remove(target.name)
            return None
        obj, antish = self._navigate(target.obj)
        if antish is not None or obj is None:
            return None
        key = target.name if isinstance(target, Member) else self.eval(target.key)
        indexed = isinstance(target, Index)
        result = self.operators.hook('array_delete' if indexed else 'property_delete', 'delete', obj, key)
        if result is not NotImplemented:
            return None
        deleter = self.uberspect.get_property_delete(obj, key)
        if deleter is None:
            return self._unsolvable_property(key, target)
        self._host(deleter, (), target, key, property_access=True)
        return None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _items(self, nodes) -> list:
        out = []
        for n in nodes:
            if isinstance(n, Spread):
                out.extend(self._iterate(self.eval(n.expr)))
            else:
                out.append(self.eval(n))
        return out

    def _iterate(self, value):
        if value is None:
            return iter(())
        return self.operators.for_each(value)

    def _call(self, node: Call) -> Any:
        callee = node.callee
        match callee:
            case Identifier():
                args = self._items(node.args)
                fn = self._lookup(callee)
                if fn is not UNDEFINED and fn is not None:
                    return self._invoke(fn, args, node, callee.name)
                fn = self._resolve_function(callee.name, args)
                if fn is None:
                    return self._unsolvable_method(callee.name, node)
                return self._invoke(fn, args, node, callee.name)
            case Member():
                obj, antish = self._navigate(callee.obj)
                name = callee.name
                if antish is not None:
                    full = f"{antish}.{name}"
                    if self.options.antish and self.context.has(full):
                        return self._invoke(self.context.get(full), self._items(node.args), node, full)
                    if callee.safe:
                        return None
                    return self._undefined_variable(antish, callee.obj, navigated=True)
                if obj is None:
                    return self._null_base(callee)
                args = self._items(node.args)
                method = self.uberspect.get_method(obj, name, args) if isinstance(name, str) else None
                if method is None:
                    # a property holding a function
                    getter = self.uberspect.get_property_get(obj, name)
                    value = self._host(getter, (), callee, name, property_access=True) if getter else None
                    if value is not None and value is not UNDEFINED and callable(value):
                        method = value
                if method is None:
                    return self._unsolvable_method(name, node)
                return self._invoke(method, args, node, name)
            case _:
                fn = self.eval(callee)
                args = self._items(node.args)
                if fn is None:
                    return self._unsolvable_method('(anonymous)', node)
                return self._invoke(fn, args, node, getattr(fn, '__name__', 'function'))

    def _resolve_function(self, name: str, args) -> Any:
        """Context as function holder, then the arithmetic, then builtins."""
        if name not in _CONTEXT_MEMBERS:
            fn = self.uberspect.get_method(self.context, name, args)
            if fn is not None:
                return fn
        fn = self.uberspect.get_method(self.arithmetic, name, args)
        if fn is not None:
            return fn
        if name == 'print':
            return self._print
        return BUILTINS.get(name)

    def _print(self, *values):
        message = ' '.join(self.arithmetic.to_string(v) for v in values)
        self.side_effects.append({'topics': ['stdout'], 'message': message})

    def _namespace(self, name: str) -> Any:
        """The function holder for a namespace; a class is instantiated once per evaluation."""
        if name in self._namespace_instances:
            return self._namespace_instances[name]
        holder = None
        resolver = getattr(self.context, 'resolve_namespace', None)
        if callable(resolver):
            holder = resolver(name)
        if holder is None:
            holder = self.namespaces.get(name)
        if isinstance(holder, type):
            try:
                params = [p for p in inspect.signature(holder).parameters.values()
                          if p.default is p.empty and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
            except (TypeError, ValueError):
                params = None
            # only static and class methods are usable when the class cannot be built
            if params is not None and len(params) <= 1:
                holder = holder(self.context) if params else holder()
        self._namespace_instances[name] = holder
        return holder

    def _namespace_call(self, node: NamespaceCall) -> Any:
        holder = self._namespace(node.namespace)
        qualified = f"{node.namespace}:{node.name}"
        if holder is None:
            return self._unsolvable_method(qualified, node)
        args = self._items(node.args)
        fn = self.uberspect.get_function(holder, node.name, args)
        if fn is None:
            return self._unsolvable_method(qualified, node)
        return self._invoke(fn, args, node, qualified)

    def _new(self, node: NewCall) -> Any:
        values = self._items(node.args)
        if not values:
            raise MethodError('new', loc=node.loc)
        target, args = values[0], values[1:]
        ctor = self.uberspect.get_constructor(target, args)
        if ctor is None:
            return self._unsolvable_method(f"new {getattr(target, '__name__', target)}", node)
        return self._invoke(ctor, args, node, getattr(ctor, '__name__', 'new'))

    def _unsolvable_method(self, name: str, node) -> Any:
        if self.protected:
            return None
        if self.options.strict:
            raise MethodError(name, loc=getattr(node, 'loc', None))
        self._warn(f"unsolvable function/method '{name}'", node)
        return None

    def _invoke(self, fn, args: list, node, name: str) -> Any:
        self._check_cancel()
        if isinstance(fn, Script):
            saved = self.protected
            try:
                return self.call_function(fn, args, node)
            finally:
                self.protected = saved
        if not callable(fn):
            return self._unsolvable_method(name, node)
        self._push_frame(name, fn, args, node)
        try:
            return self._host(fn, args, node, name)
        finally:
            self._pop_frame()

    # ------------------------------------------------------------------
    # Pipes, projections and selections
    # ------------------------------------------------------------------

    def _elements(self, value):
        """The elements a projection or selection walks; mappings yield their entries."""
        if isinstance(value, collections.abc.Mapping):
            return iter([Entry(k, v) for k, v in value.items()])
        return self._iterate(value)

    @contextmanager
    def _element(self, frame, element):
        saved = (self.frame, self.current_element)
        self.frame, self.current_element = frame, element
        try:
            yield
        finally:
            self.frame, self.current_element = saved

    def _element_value(self, node, index: int, element) -> Any:
        """Evaluates an item against the current element; a lambda item is called with it."""
        value = self.eval(node)
        if isinstance(node, Lambda):
            args = [element] if len(node.params) <= 1 else [index, element]
            return self._invoke(value, args, node, 'lambda')
        return value

    def _pipe(self, node: Pipe) -> Any:
        value = self.eval(node.obj)
        if value is None:
            return None
        if not isinstance(value, collections.abc.Iterator):
            with self._element(self.frame, value):
                return self._element_value(node.body, 0, value)
        # an iterator feeds the body one element at a time
        result = None
        for index, element in enumerate(value):
            self._check_cancel()
            with self._element(self.frame, element):
                result = self._element_value(node.body, index, element)
        return result

    def _projection(self, node: Projection, source, frame):
        # lazy: evaluation state is restored between elements
        for index, element in enumerate(source):
            self._check_cancel()
            with self._element(frame, element):
                values = []
                for key, item in node.items:
                    value = self._element_value(item, index, element)
                    if key is not None:
                        value = Entry(self._element_value(key, index, element), value)
                    values.append(value)
            yield values[0] if len(values) == 1 else values

    def _selection(self, node: Selection, source, frame):
        for index, element in enumerate(source):
            self._check_cancel()
            with self._element(frame, element):
                keep = self.arithmetic.to_boolean(self._element_value(node.predicate, index, element))
            if keep:
                yield element

    def _assert(self, node) -> Any:
        if not self.options.assertions or self._test(node.cond):
            return None
        message = self.arithmetic.to_string(self.eval(node.message)) if node.message is not None else ""
        raise AssertionFailedError(message, node.loc)

    # ------------------------------------------------------------------
    # Loops and labels
    # ------------------------------------------------------------------

    def _loop_action(self, signal: ControlSignal, label: Optional[str]) -> Optional[str]:
        """'break' or 'continue' when this loop consumes the signal, else None."""
        if signal.kind in ('break', 'continue') and (signal.label is None or signal.label == label):
            return signal.kind
        return None

    def _loop(self, node, label: Optional[str]) -> Any:
        match node:
            case While():
                return self._while(node, label)
            case DoWhile():
                return self._do_while(node, label)
            case For():
                return self._for(node, label)
            case _:
                return self._foreach(node, label)

    def _while(self, node: While, label) -> Any:
        result = None
        while True:
            self._check_cancel()
            if not self._test(node.cond):
                return result
            r = self._run(node.body)
            if isinstance(r, ControlSignal):
                action = self._loop_action(r, label)
                if action is None:
                    return r
                if action == 'break':
                    return result
            else:
                result = r

    def _do_while(self, node: DoWhile, label) -> Any:
        result = None
        while True:
            self._check_cancel()
            r = self._run(node.body)
            if isinstance(r, ControlSignal):
                action = self._loop_action(r, label)
                if action is None:
                    return r
                if action == 'break':
                    return result
            else:
                result = r
            if not self._test(node.cond):
                return result

    def _for(self, node: For, label) -> Any:
        result = None
        if node.init is not None:
            self.eval(node.init)
        while True:
            self._check_cancel()
            if node.cond is not None and not self._test(node.cond):
                return result
            r = self._run(node.body)
            if isinstance(r, ControlSignal):
                action = self._loop_action(r, label)
                if action is None:
                    return r
                if action == 'break':
                    return result
            else:
                result = r
            if node.step is not None:
                self.eval(node.step)

    def _foreach(self, node: ForEach, label) -> Any:
        iterable = self.eval(node.iterable)
        iterator = self._iterate(iterable)
        variable = node.variable
        fresh = node.kind in ('let', 'const') or self.options.lexical
        result = None
        try:
            for item in iterator:
                self._check_cancel()
                if variable.slot is None:
                    self.context.set(variable.name, item)
                elif fresh:
                    self.frame.declare(variable.slot, self._cast(variable.slot, item))
                else:
                    self.frame.set(variable.slot, self._cast(variable.slot, item))
                r = self._run(node.body)
                if isinstance(r, ControlSignal):
                    action = self._loop_action(r, label)
                    if action is None:
                        return r
                    if action == 'break':
                        return result
                else:
                    result = r
            return result
        finally:
            close = getattr(iterator, 'close', None)
            if callable(close):
                close()

    def _labelled(self, node: Labelled) -> Any:
        statement = node.statement
        if isinstance(statement, (While, DoWhile, For, ForEach)):
            result = self._loop(statement, node.label)
        else:
            result = self._run(statement)
        if isinstance(result, ControlSignal) and result.kind == 'break' and result.label == node.label:
            return None
        return result

    # ------------------------------------------------------------------
    # try / catch / finally
    # ------------------------------------------------------------------

    def _try(self, node: Try) -> Any:
        try:
            result = self._try_catch(node)
        except (CancelError, StackOverflowError, AssertionFailedError):
            if node.finally_body is not None:
                self._run(node.finally_body)
            raise
        except Exception:
            if node.finally_body is None:
                raise
            # a signal from finally overrides the pending error
            signal = self._run(node.finally_body)
            if isinstance(signal, ControlSignal):
                return signal
            raise
        if node.finally_body is not None:
            signal = self._run(node.finally_body)
            if isinstance(signal, ControlSignal):
                return signal
        return result

    def _try_catch(self, node: Try) -> Any:
        try:
            return self._try_resources(node)
        except (CancelError, StackOverflowError, AssertionFailedError):
            raise
        except JexlError as error:
            if node.catch_body is None:
                raise
            if node.catch_var is not None:
                caught = error.value if isinstance(error, ThrowError) else error
                self.frame.declare(node.catch_var.slot, caught)
            return self._run(node.catch_body)

    def _try_resources(self, node: Try) -> Any:
        acquired = []
        try:
            for resource in node.resources:
                value = self.eval(resource)
                enter = getattr(value, '__enter__', None)
                if callable(enter):
                    enter()
                acquired.append(value)
            result = self._run(node.body)
        except BaseException:
            self._close_resources(acquired, node, raise_errors=False)
            raise
        self._close_resources(acquired, node, raise_errors=True)
        return result

    def _close_resources(self, acquired, node, raise_errors: bool):
        failure = None
        for resource in reversed(acquired):
            if resource is None:
                continue
            try:
                exit_ = getattr(resource, '__exit__', None)
                if callable(exit_):
                    exit_(None, None, None)
                else:
                    close = getattr(resource, 'close', None)
                    if callable(close):
                        close()
            except Exception as e:
                self._warn(f"resource close failed: {e}", node)
                if failure is None:
                    failure = e
        if failure is not None and raise_errors:
            if isinstance(failure, JexlError):
                raise failure
            raise EvalError(f"close: {failure}", node.loc) from failure

    # ------------------------------------------------------------------
    # switch
    # ------------------------------------------------------------------

    def _match_case(self, subject, cases) -> Optional[int]:
        default = None
        for index, case in enumerate(cases):
            for label in case.labels:
                match label:
                    case DefaultLabel():
                        default = index
                    case TypePattern():
                        cls = self.uberspect.get_class(label.type_name)
                        if cls is None or not self.uberspect.is_instance(subject, cls):
                            continue
                        self.frame.declare(label.binding.slot, subject)
                        if label.guard is None or self._test(label.guard):
                            return index
                    case Literal():
                        if label.value is None:
                            if subject is None:
                                return index
                        elif subject is not None and self.operators.relational('==', subject, label.value):
                            return index
        return default

    def _switch(self, node: Switch) -> Any:
        subject = self.eval(node.subject)
        start = self._match_case(subject, node.cases)
        if start is None:
            return None
        if node.cases[start].arrow:
            result = self._run(node.cases[start].body[0])
        else:
            result = None
            for case in node.cases[start:]:
                r = self._statements_signal(case.body)
                if isinstance(r, ControlSignal):
                    result = r
                    break
                result = r
        if isinstance(result, ControlSignal):
            if result.kind == 'yield':
                return result.value
            if result.kind == 'break' and result.label is None:
                return None
            if node.expression:
                raise result
        return result

    def _statements_signal(self, statements) -> Any:
        result = None
        for st in statements:
            self._check_cancel()
            result = self._run(st)
            if isinstance(result, ControlSignal):
                return result
        return result

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def _annotated(self, node: Annotated, index: int) -> Any:
        if index >= len(node.annotations):
            return self._run(node.statement)
        annotation = node.annotations[index]
        args = [self.eval(a) for a in annotation.args]
        statement = AnnotatedStatement(self, node, index + 1)
        self._dbg("annotation", annotation.name, args)
        try:
            result = NotImplemented
            processor = getattr(self.context, 'process_annotation', None)
            if callable(processor):
                result = processor(annotation.name, args, statement)
            if result is NotImplemented:
                result = DEFAULT_ANNOTATIONS.process(annotation.name, args, statement)
        except (JexlError, ControlSignal):
            raise
        except Exception as e:
            raise AnnotationError(annotation.name, str(e), annotation.loc) from e
        if result is NotImplemented:
            if self.options.strict:
                raise AnnotationError(annotation.name, loc=annotation.loc)
            self._warn(f"unknown annotation @{annotation.name}", annotation)
            return statement.call()
        return result
