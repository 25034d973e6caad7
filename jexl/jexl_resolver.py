"""
The ScopeBuilder: resolves symbols to frame slots and performs the static
checks that must fail when a script is created rather than when it runs.

Checks performed here:
  - lexical redeclaration of a visible symbol,
  - assignment to a constant (or to a capture of a `=>` lambda),
  - `yield`, `return`, `break` and `continue` placement,
  - `@` outside a pipe, projection or selection,
  - duplicate `default`, duplicate case constant and empty switch.
"""

from typing import List, Optional

from jexl.jexl_errors import ParsingError, AssignmentError
from jexl.jexl_scope import Scope, LexicalScope
from jexl.jexl_datatypes import (
    Node, Literal, RegexLiteral, Identifier, TypeName, ArrayLiteral, SetLiteral, MapLiteral, Spread,
    BinaryOp, Conditional, SetOperand, UnaryOp, IncDec, Member, Index, Call, NamespaceCall,
    Pipe, Projection, Selection, CurrentElement, Iterate,
    KeywordCall, NewCall, Delete, Assignment, Lambda, Generator, ValueBlock,
    Block, Declarator, Declaration, If, While, DoWhile, For, ForEach, Return, Break, Continue,
    Throw, Yield, Labelled, Assert, Try, DefaultLabel, TypePattern, Case, Switch, Annotated, Pragma, Script
)


class _Function:
    """Book-keeping for the script or lambda currently being resolved."""
    def __init__(self, scope: Scope, fat: bool = False):
        self.scope = scope
        self.fat = fat
        self.labels: List[str] = []
        self.loops = 0
        self.switches = 0
        self.variables: List[List[str]] = []


class ScopeBuilder:
    def __init__(self, lexical: bool = False):
        self.lexical = lexical
        self.function: Optional[_Function] = None
        self.functions: List[_Function] = []
        self.block: Optional[LexicalScope] = None
        # 'lambda', 'generator', 'block', 'switch', 'switch-expression' or 'element'
        self.contexts: List[str] = []

    # --- Entry points ---

    def build(self, script: Script) -> Scope:
        scope = Scope()
        self._enter_function(scope)
        for p in script.params:
            slot = scope.add_parameter(p.name, p.kind)
            self.block.add_symbol(slot, p.name)
        for stmt in script.body:
            self.visit(stmt, script)
        fn = self._exit_function()
        script.scope = scope
        script.variables = fn.variables
        return scope

    # --- Helpers ---

    def _error(self, message: str, node: Node) -> ParsingError:
        return ParsingError(message, getattr(node, 'loc', None))

    def _enter_function(self, scope: Scope, fat: bool = False):
        self.functions.append(_Function(scope, fat))
        self.function = self.functions[-1]
        self.block = LexicalScope(self.block, boundary=True)

    def _exit_function(self) -> _Function:
        fn = self.functions.pop()
        self.function = self.functions[-1] if self.functions else None
        self.block = self.block.pop()
        return fn

    def _push_block(self):
        self.block = LexicalScope(self.block)

    def _pop_block(self, node: Optional[Block] = None):
        if node is not None:
            node.declared = self.block.slots()
        self.block = self.block.pop()

    def _root_block(self) -> LexicalScope:
        unit = self.block
        while not unit.boundary:
            unit = unit.parent
        return unit

    def _visible_unit(self, slot: int) -> Optional[LexicalScope]:
        """The open block (up to the function boundary) declaring `slot`."""
        unit = self.block
        while unit is not None:
            if unit.has_symbol(slot):
                return unit
            if unit.boundary:
                break
            unit = unit.parent
        return None

    def _declare(self, decl: Declarator, kind: Optional[str]):
        scope = self.function.scope
        name = decl.name
        slot = scope.declare_variable(name, kind)
        lexical = self.lexical or kind in ('let', 'const')
        visible = self._visible_unit(slot)
        if visible is not None:
            if lexical or visible.is_constant(slot):
                raise self._error(f"{name}: variable is already declared", decl)
        else:
            unit = self.block if lexical else self._root_block()
            if kind == 'const':
                unit.add_constant(slot, name)
            else:
                unit.add_symbol(slot, name)
        decl.slot = slot
        decl.inherits = scope.is_captured(slot)

    def _resolve(self, ident: Identifier, record: bool = True):
        scope = self.function.scope
        slot = scope.get_symbol(ident.name, True)
        if slot is None:
            ident.slot = None
            if record:
                self._record_variable([ident.name])
            return
        ident.slot = slot
        if scope.is_captured(slot) or slot < scope.param_count:
            return
        if self._visible_unit(slot) is None:
            # declared in a block that has already closed
            ident.shaded = True
            if record:
                self._record_variable([ident.name])

    def _record_variable(self, path: List[str]):
        for fn in self.functions:
            if path not in fn.variables:
                fn.variables.append(path)

    def _check_assignable(self, target: Node):
        if not isinstance(target, Identifier):
            self.visit(target, None)
            return
        self._resolve(target, record=False)
        slot = target.slot
        if slot is None or target.shaded:
            return
        scope = self.function.scope
        if scope.is_captured(slot):
            if self.function.fat or self._captured_constant(scope, slot):
                raise AssignmentError(target.name, loc=target.loc)
            return
        unit = self._visible_unit(slot)
        if (unit is not None and unit.is_constant(slot)) or (slot < scope.param_count and slot in scope.constants):
            raise AssignmentError(target.name, loc=target.loc)

    def _captured_constant(self, scope: Scope, slot: int) -> bool:
        while scope is not None and slot in scope.captured:
            slot = scope.captured[slot]
            scope = scope.parent
        return scope is not None and slot in scope.constants

    def _antish_path(self, node: Node) -> Optional[List[str]]:
        parts = []
        cur = node
        while isinstance(cur, Member) and isinstance(cur.name, str):
            parts.append(cur.name)
            cur = cur.obj
        if isinstance(cur, Identifier):
            self._resolve(cur, record=False)
            if cur.slot is None or cur.shaded:
                parts.append(cur.name)
                return list(reversed(parts))
        return None

    def _in_context(self, *kinds) -> Optional[str]:
        for ctx in reversed(self.contexts):
            if ctx in kinds:
                return ctx
            if ctx == 'lambda':
                return None
        return None

    # --- Visitor ---

    def visit_all(self, nodes, parent):
        for n in nodes:
            self.visit(n, parent)

    def visit(self, node, parent):
        if node is None:
            return
        match node:
            case Literal() | RegexLiteral() | TypeName() | DefaultLabel():
                return
            case Identifier():
                self._resolve(node)
            case ArrayLiteral() | SetLiteral():
                self.visit_all(node.items, node)
            case MapLiteral():
                for k, v in node.entries:
                    self.visit(k, node)
                    self.visit(v, node)
            case Spread() | Iterate():
                self.visit(node.expr, node)
            case CurrentElement():
                if self._in_context('element') is None:
                    raise self._error("@ is only allowed in a pipe, projection or selection", node)
            case Pipe() | Selection():
                self.visit(node.obj, node)
                self._visit_element(node.body if isinstance(node, Pipe) else node.predicate, node)
            case Projection():
                self.visit(node.obj, node)
                for key, value in node.items:
                    self._visit_element(key, node)
                    self._visit_element(value, node)
            case BinaryOp():
                self.visit(node.left, node)
                self.visit(node.right, node)
            case Conditional():
                self.visit(node.cond, node)
                self.visit(node.then, node)
                self.visit(node.otherwise, node)
            case SetOperand():
                self.visit_all(node.items, node)
            case UnaryOp():
                self.visit(node.operand, node)
            case IncDec():
                self._check_assignable(node.target)
            case Member():
                path = self._antish_path(node)
                if path is not None:
                    # a method call records its receiver only
                    if isinstance(parent, Call) and parent.callee is node:
                        path = path[:-1]
                    if path:
                        self._record_variable(path)
                    return
                self.visit(node.obj, node)
            case Index():
                self.visit(node.obj, node)
                self.visit(node.key, node)
            case Call():
                if isinstance(node.callee, Identifier):
                    self._resolve(node.callee, record=False)
                else:
                    self.visit(node.callee, node)
                self.visit_all(node.args, node)
            case NamespaceCall() | NewCall():
                self.visit_all(node.args, node)
            case KeywordCall():
                self.visit(node.arg, node)
            case Delete():
                self.visit(node.target, node)
            case Assignment():
                self.visit(node.value, node)
                self._check_assignable(node.target)
            case Lambda():
                self._visit_lambda(node)
            case Generator():
                self.contexts.append('generator')
                self.visit(node.body, node)
                self.contexts.pop()
            case ValueBlock():
                self.contexts.append('block')
                self.visit(node.body, node)
                self.contexts.pop()
            case Block():
                self._push_block()
                self.visit_all(node.statements, node)
                self._pop_block(node)
            case Declaration():
                for d in node.declarators:
                    # the slot exists before the initializer runs so lambdas can recurse
                    self._declare(d, node.kind)
                    self.visit(d.value, d)
            case If():
                self.visit(node.cond, node)
                self.visit(node.then, node)
                self.visit(node.otherwise, node)
            case While() | DoWhile():
                self.visit(node.cond, node)
                self._visit_loop_body(node.body, parent)
            case For():
                self._push_block()
                self.visit(node.init, node)
                self.visit(node.cond, node)
                self.visit(node.step, node)
                self._visit_loop_body(node.body, parent)
                node.declared = self.block.slots()
                self._pop_block()
            case ForEach():
                self.visit(node.iterable, node)
                self._push_block()
                if node.kind is None:
                    # `for (x : items)` assigns an existing local or a context variable
                    ident = Identifier(node.variable.name)
                    ident.loc = node.variable.loc
                    self._check_assignable(ident)
                    node.variable.slot = None if ident.shaded else ident.slot
                else:
                    self._declare(node.variable, node.kind)
                self._visit_loop_body(node.body, parent)
                node.declared = self.block.slots()
                self._pop_block()
            case Return():
                if self._in_context('switch-expression') is not None:
                    raise self._error("return not allowed in a switch expression", node)
                self.visit(node.value, node)
            case Break():
                self._check_jump(node, 'break')
            case Continue():
                self._check_jump(node, 'continue')
            case Throw():
                self.visit(node.value, node)
            case Assert():
                self.visit(node.cond, node)
                self.visit(node.message, node)
            case Yield():
                target = self._in_context('generator', 'block', 'switch', 'switch-expression')
                if target is None:
                    raise self._error("yield is only allowed in a generator, value block or switch arm", node)
                node.target = 'switch' if target.startswith('switch') else target
                self.visit(node.value, node)
            case Labelled():
                if node.label in self.function.labels:
                    raise self._error(f"{node.label}: label is already declared", node)
                self.function.labels.append(node.label)
                self.visit(node.statement, node)
                self.function.labels.pop()
            case Try():
                self._visit_try(node)
            case Switch():
                self._visit_switch(node)
            case Annotated():
                for a in node.annotations:
                    self.visit_all(a.args, a)
                self.visit(node.statement, node)
            case Pragma():
                return
            case _:
                raise self._error(f"cannot resolve node {type(node).__name__}", node)

    def _visit_element(self, node, parent):
        self.contexts.append('element')
        try:
            self.visit(node, parent)
        finally:
            self.contexts.pop()

    def _visit_loop_body(self, body, parent):
        self.function.loops += 1
        try:
            self.visit(body, parent)
        finally:
            self.function.loops -= 1

    def _check_jump(self, node, kind):
        fn = self.function
        if node.label is not None:
            if node.label not in fn.labels:
                raise self._error(f"{kind} {node.label}: label is not declared", node)
            return
        if fn.loops == 0 and (kind == 'continue' or fn.switches == 0):
            raise self._error(f"{kind} is not allowed outside a loop", node)

    def _visit_lambda(self, node: Lambda):
        scope = Scope(self.function.scope)
        self._enter_function(scope, fat=node.arrow == '=>')
        self.contexts.append('lambda')
        for p in node.params:
            slot = scope.add_parameter(p.name, p.kind)
            if p.kind == 'const':
                self.block.add_constant(slot, p.name)
            elif not self.block.add_symbol(slot, p.name):
                raise self._error(f"{p.name}: parameter is already declared", p)
        for p in node.params:
            self.visit(p.default, p)
        if isinstance(node.body, Block):
            self.visit_all(node.body.statements, node.body)
            node.body.declared = self.block.slots()
        else:
            self.visit(node.body, node)
        self.contexts.pop()
        fn = self._exit_function()
        node.scope = scope
        node.variables = fn.variables

    def _visit_try(self, node: Try):
        self._push_block()
        self.visit_all(node.resources, node)
        self.visit(node.body, node)
        node.declared = self.block.slots()
        self._pop_block()
        if node.catch_body is not None:
            self._push_block()
            if node.catch_var is not None:
                self._declare(node.catch_var, node.catch_kind or ('let' if self.lexical else 'var'))
            self.visit(node.catch_body, node)
            self._pop_block()
        self.visit(node.finally_body, node)

    def _visit_switch(self, node: Switch):
        if not node.cases:
            raise self._error("switch has no case", node)
        self.visit(node.subject, node)
        defaults = 0
        constants = set()
        for case in node.cases:
            for label in case.labels:
                if isinstance(label, DefaultLabel):
                    defaults += 1
                    if defaults > 1:
                        raise self._error("switch has more than one default", label)
                elif isinstance(label, Literal):
                    key = (type(label.value).__name__ if isinstance(label.value, (bool, str)) else 'n', label.value)
                    if key in constants:
                        raise self._error(f"duplicate case constant {label.text}", label)
                    constants.add(key)
        if node.expression:
            ctx = 'switch-expression'
        elif node.cases[0].arrow:
            ctx = 'switch'
        else:
            ctx = None
        self.function.switches += 1
        try:
            for case in node.cases:
                self._visit_case(case, ctx)
        finally:
            self.function.switches -= 1

    def _visit_case(self, case: Case, ctx: Optional[str]):
        self._push_block()
        for label in case.labels:
            if isinstance(label, TypePattern):
                self._declare(label.binding, label.type_name if label.type_name[0].islower() else 'let')
                self.visit(label.guard, label)
        if ctx is not None:
            self.contexts.append(ctx)
        try:
            self.visit_all(case.body, case)
        finally:
            if ctx is not None:
                self.contexts.pop()
        case.declared = self.block.slots()
        self._pop_block()
