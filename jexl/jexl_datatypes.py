"""
Defines the syntax tree and core runtime data types for the JEXL interpreter.

Syntax nodes are built once by the transformer, annotated with slot indices
by the scope builder and shared read-only by every evaluation afterwards.
"""

from collections import namedtuple
from typing import Any, List, Optional, Tuple


# =================================================================
# Runtime sentinels and storage
# =================================================================

class _Sentinel:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return self.name

    def __bool__(self):
        return False


# A declared slot that has not been assigned yet.
UNSET = _Sentinel('UNSET')
# A slot (or lookup) with no binding at all.
UNDEFINED = _Sentinel('UNDEFINED')


class Cell:
    """A variable slot's storage; closures alias the cells they capture."""
    __slots__ = ('value',)

    def __init__(self, value: Any = UNSET):
        self.value = value

    def __repr__(self):
        return f"Cell({self.value!r})"


# A mapping element as seen by a projection or selection.
Entry = namedtuple('Entry', ['key', 'value'])


class ControlSignal(Exception):
    """
    A `return`, `break` or `continue` travelling out of nested statements.

    Statement execution returns signals to its caller; the nearest loop,
    labelled block or call boundary consumes them. Host hooks may raise
    one instead, and loops honour a raised signal like a returned one.
    """
    def __init__(self, kind: str, label: Optional[str] = None, value: Any = None):
        super().__init__(kind)
        self.kind = kind
        self.label = label
        self.value = value

    def __repr__(self):
        if self.label:
            return f"<ControlSignal {self.kind} {self.label}>"
        return f"<ControlSignal {self.kind}>"


# =================================================================
# Syntax nodes
# =================================================================

class Node:
    loc: Optional[dict] = None

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in self.__dict__.items() if k != 'loc')
        return f"{type(self).__name__}({fields})"


# --- Expressions ---

class Literal(Node):
    def __init__(self, value: Any, text: Optional[str] = None):
        self.value = value
        self.text = text


class RegexLiteral(Node):
    def __init__(self, pattern):
        self.pattern = pattern


class Identifier(Node):
    def __init__(self, name: str):
        self.name = name
        # Filled by the scope builder: frame slot, or None for a context variable.
        self.slot: Optional[int] = None
        # True when the name was declared in a block that has since closed.
        self.shaded = False


class TypeName(Node):
    def __init__(self, name: str):
        self.name = name


class ArrayLiteral(Node):
    def __init__(self, items: List[Node]):
        self.items = items


class SetLiteral(Node):
    def __init__(self, items: List[Node]):
        self.items = items


class MapLiteral(Node):
    def __init__(self, entries: List[Tuple[Node, Node]]):
        self.entries = entries


class Spread(Node):
    def __init__(self, expr: Node):
        self.expr = expr


class BinaryOp(Node):
    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right


class Conditional(Node):
    """`c ? a : b`, `a ?: b` and `a ?? b`; `then` is None for the two-operand forms."""
    def __init__(self, op: str, cond: Node, then: Optional[Node], otherwise: Node):
        self.op = op
        self.cond = cond
        self.then = then
        self.otherwise = otherwise


class SetOperand(Node):
    """Right operand list of a relational operator: `(a, b)`, `?(a, b)`, `??(a, b)`."""
    def __init__(self, quantifier: str, items: List[Node]):
        self.quantifier = quantifier
        self.items = items


class UnaryOp(Node):
    def __init__(self, op: str, operand: Node):
        self.op = op
        self.operand = operand


class IncDec(Node):
    def __init__(self, op: str, target: Node, prefix: bool):
        self.op = op
        self.target = target
        self.prefix = prefix


class Member(Node):
    def __init__(self, obj: Node, name: Any, safe: bool = False):
        self.obj = obj
        self.name = name
        self.safe = safe


class Index(Node):
    def __init__(self, obj: Node, key: Node, safe: bool = False):
        self.obj = obj
        self.key = key
        self.safe = safe


class Call(Node):
    def __init__(self, callee: Node, args: List[Node]):
        self.callee = callee
        self.args = args


class NamespaceCall(Node):
    def __init__(self, namespace: str, name: str, args: List[Node]):
        self.namespace = namespace
        self.name = name
        self.args = args


class Pipe(Node):
    """`obj.(body)`: evaluates body with `@` bound to the value of obj."""
    def __init__(self, obj: Node, body: Node):
        self.obj = obj
        self.body = body


class Projection(Node):
    """
    `obj.{items}`: a lazy iterator mapping each element of obj.

    Each item is a (key, value) pair of nodes; key is None for a plain item.
    """
    def __init__(self, obj: Node, items: List[Tuple[Optional[Node], Node]]):
        self.obj = obj
        self.items = items


class Selection(Node):
    """`obj.[predicate]`: a lazy iterator over the elements that pass."""
    def __init__(self, obj: Node, predicate: Node):
        self.obj = obj
        self.predicate = predicate


class CurrentElement(Node):
    """`@`, the element under a pipe, projection or selection."""


class Iterate(Node):
    """Prefix `...expr`: an iterator over the elements of expr."""
    def __init__(self, expr: Node):
        self.expr = expr


class KeywordCall(Node):
    """`empty(x)` and `size(x)`."""
    def __init__(self, name: str, arg: Node):
        self.name = name
        self.arg = arg


class NewCall(Node):
    def __init__(self, args: List[Node]):
        self.args = args


class Delete(Node):
    def __init__(self, target: Node):
        self.target = target


class Assignment(Node):
    def __init__(self, op: str, target: Node, value: Node):
        self.op = op
        self.target = target
        self.value = value


class Param(Node):
    def __init__(self, name: str, kind: Optional[str] = None, default: Optional[Node] = None):
        self.name = name
        self.kind = kind
        self.default = default


class Lambda(Node):
    def __init__(self, params: List[Param], body: Node, name: Optional[str] = None,
                 arrow: Optional[str] = None, expression_body: bool = False):
        self.params = params
        self.body = body
        self.name = name
        # None for `function(...) {...}`, else '->' or '=>'.
        self.arrow = arrow
        self.expression_body = expression_body
        self.scope = None
        self.variables: List[List[str]] = []


class Generator(Node):
    def __init__(self, body: 'Block'):
        self.body = body


class ValueBlock(Node):
    def __init__(self, body: 'Block'):
        self.body = body


# --- Statements ---

class Block(Node):
    def __init__(self, statements: List[Node]):
        self.statements = statements
        # Slots declared directly in this block (scope builder).
        self.declared: List[int] = []


class Declarator(Node):
    def __init__(self, name: str, value: Optional[Node] = None):
        self.name = name
        self.value = value
        self.slot: Optional[int] = None
        # Redeclares a captured variable inside a lambda.
        self.inherits = False


class Declaration(Node):
    def __init__(self, kind: str, declarators: List[Declarator]):
        self.kind = kind
        self.declarators = declarators


class If(Node):
    def __init__(self, cond: Node, then: Node, otherwise: Optional[Node] = None):
        self.cond = cond
        self.then = then
        self.otherwise = otherwise


class While(Node):
    def __init__(self, cond: Node, body: Node):
        self.cond = cond
        self.body = body


class DoWhile(Node):
    def __init__(self, body: Node, cond: Node):
        self.body = body
        self.cond = cond


class For(Node):
    def __init__(self, init: Optional[Node], cond: Optional[Node], step: Optional[Node], body: Node):
        self.init = init
        self.cond = cond
        self.step = step
        self.body = body
        self.declared: List[int] = []


class ForEach(Node):
    def __init__(self, kind: Optional[str], variable: Declarator, iterable: Node, body: Node):
        self.kind = kind
        self.variable = variable
        self.iterable = iterable
        self.body = body
        self.declared: List[int] = []


class Return(Node):
    def __init__(self, value: Optional[Node] = None):
        self.value = value


class Break(Node):
    def __init__(self, label: Optional[str] = None):
        self.label = label


class Continue(Node):
    def __init__(self, label: Optional[str] = None):
        self.label = label


class Throw(Node):
    def __init__(self, value: Node):
        self.value = value


class Yield(Node):
    def __init__(self, value: Node):
        self.value = value
        # 'generator', 'block' or 'switch'; set by the scope builder.
        self.target: Optional[str] = None


class Assert(Node):
    def __init__(self, cond: Node, message: Optional[Node] = None):
        self.cond = cond
        self.message = message


class Labelled(Node):
    def __init__(self, label: str, statement: Node):
        self.label = label
        self.statement = statement


class Try(Node):
    def __init__(self, resources: List[Node], body: Block, catch_kind: Optional[str] = None,
                 catch_var: Optional[Declarator] = None, catch_body: Optional[Block] = None,
                 finally_body: Optional[Block] = None):
        self.resources = resources
        self.body = body
        self.catch_kind = catch_kind
        self.catch_var = catch_var
        self.catch_body = catch_body
        self.finally_body = finally_body
        self.declared: List[int] = []


class DefaultLabel(Node):
    pass


class TypePattern(Node):
    def __init__(self, type_name: str, binding: Declarator, guard: Optional[Node] = None):
        self.type_name = type_name
        self.binding = binding
        self.guard = guard


class Case(Node):
    def __init__(self, labels: List[Node], body: List[Node], arrow: bool):
        self.labels = labels
        self.body = body
        self.arrow = arrow
        self.declared: List[int] = []


class Switch(Node):
    def __init__(self, subject: Node, cases: List[Case], expression: bool = False):
        self.subject = subject
        self.cases = cases
        self.expression = expression


class Annotation(Node):
    def __init__(self, name: str, args: List[Node]):
        self.name = name
        self.args = args


class Annotated(Node):
    def __init__(self, annotations: List[Annotation], statement: Node):
        self.annotations = annotations
        self.statement = statement


class Pragma(Node):
    def __init__(self, key: str, value: Any):
        self.key = key
        self.value = value


class Script(Node):
    """The root of a parsed script: parameters plus top-level statements."""
    def __init__(self, body: List[Node], params: Optional[List[Param]] = None, source: str = ""):
        self.body = body
        self.params = params or []
        self.source = source
        self.scope = None
        self.pragmas: dict = {}
        self.variables: List[List[str]] = []
