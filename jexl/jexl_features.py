"""
Syntax features: which constructs an engine accepts when it creates a script.

The FeatureChecker walks a resolved script and raises FeatureError at the
first construct its Features do not allow, so a restricted engine refuses a
script before it ever runs.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, FrozenSet, Iterable, Optional

from jexl.jexl_errors import FeatureError
from jexl.jexl_datatypes import (
    Node, Literal, Identifier, ArrayLiteral, SetLiteral, MapLiteral, BinaryOp, IncDec, Member, Index,
    Call, NewCall, Delete, Assignment, Param, Lambda, Block, Declarator, Declaration, If, While, DoWhile,
    For, ForEach, Return, Break, Continue, Throw, Yield, Assert, Labelled, Try, Switch, Annotated,
    Pragma, Script
)

# Comparison operators spelled as words.
COMPARATOR_NAMES = frozenset(('eq', 'ne', 'lt', 'le', 'gt', 'ge'))

NAMESPACE_PRAGMA = 'jexl.namespace.'

_STATEMENTS = (Block, Declaration, If, While, DoWhile, For, ForEach, Return, Break, Continue, Throw,
               Yield, Assert, Labelled, Try, Annotated, Pragma)

# Node attributes that hold resolver state rather than syntax.
_STATE = frozenset(('loc', 'scope', 'variables', 'declared', 'pragmas', 'source'))


@dataclass(frozen=True)
class Features:
    """
    Flags (all on by default except `register` and `lexical`):
      register            positional `#0`, `#1` parameter names
      local_var           `var`, `let` and `const` declarations
      side_effect         assignments, `++`/`--` and `delete`
      side_effect_global  side effects on context variables
      array_reference_expr  `a[expr]` with a non-literal key
      new_instance        `new(...)`
      loops               `while`, `do`, `for` and for-each
      lambdas             `function` and arrow lambdas
      thin_arrow          `->` lambdas
      fat_arrow           `=>` lambdas
      method_call         `obj.method(...)`
      structured_literal  array, set and map literals and `..` ranges
      pragma              `#pragma` statements
      namespace_pragma    `#pragma jexl.namespace.*`
      annotation          annotated statements
      script              more than one statement, or statements at all
      comparator_names    `eq`, `ne`, `lt`, `le`, `gt` and `ge`
      lexical             every declaration is block scoped

    `reserved_names` may not be declared, assigned or used as parameters.
    """
    register: bool = False
    local_var: bool = True
    side_effect: bool = True
    side_effect_global: bool = True
    array_reference_expr: bool = True
    new_instance: bool = True
    loops: bool = True
    lambdas: bool = True
    thin_arrow: bool = True
    fat_arrow: bool = True
    method_call: bool = True
    structured_literal: bool = True
    pragma: bool = True
    namespace_pragma: bool = True
    annotation: bool = True
    script: bool = True
    comparator_names: bool = True
    lexical: bool = False
    reserved_names: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def all(cls) -> 'Features':
        """Every construct, positional registers included."""
        return cls(register=True)

    @classmethod
    def none(cls) -> 'Features':
        """Plain expressions over context variables only."""
        return cls(**{f.name: False for f in fields(cls) if f.type in (bool, 'bool')})

    def with_reserved(self, names: Iterable[str]) -> 'Features':
        return replace(self, reserved_names=self.reserved_names | frozenset(names))

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> 'Features':
        names = {f.name for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            if key not in names:
                raise ValueError(f"unknown feature '{key}'")
            values[key] = frozenset(value or ()) if key == 'reserved_names' else bool(value)
        return cls(**values)


class FeatureChecker:
    def __init__(self, features: Features):
        self.features = features

    def _require(self, allowed: bool, feature: str, node: Node):
        if not allowed:
            raise FeatureError(feature, loc=getattr(node, 'loc', None))

    def _name(self, name: str, node: Node):
        if name.startswith('#'):
            self._require(self.features.register, 'register', node)
        if name in self.features.reserved_names:
            raise FeatureError('reserved name', f"{name}: reserved name", getattr(node, 'loc', None))

    def check(self, script: Script):
        if not self.features.script:
            if len(script.body) > 1 or any(self._is_statement(s) for s in script.body):
                raise FeatureError('script', loc=getattr(script.body[0], 'loc', None))
        for param in script.params:
            self._name(param.name, script)
        for statement in script.body:
            self.visit(statement)

    @staticmethod
    def _is_statement(node) -> bool:
        if isinstance(node, Switch):
            return not node.expression
        return isinstance(node, _STATEMENTS)

    def _side_effect(self, target: Node, node: Node):
        self._require(self.features.side_effect, 'side effect', node)
        root = target
        while isinstance(root, (Member, Index)):
            root = root.obj
        if isinstance(root, Identifier):
            self._name(root.name, root)
            if root.slot is None or root.shaded:
                self._require(self.features.side_effect_global, 'global side effect', node)

    def visit(self, node):
        features = self.features
        match node:
            case Identifier():
                self._name(node.name, node)
            case Param() | Declarator():
                self._name(node.name, node)
            case Declaration():
                self._require(features.local_var, 'local variable', node)
            case Assignment() | IncDec() | Delete():
                self._side_effect(node.target, node)
            case Index():
                if not isinstance(node.key, Literal):
                    self._require(features.array_reference_expr, 'array reference', node)
            case NewCall():
                self._require(features.new_instance, 'create instance', node)
            case While() | DoWhile() | For():
                self._require(features.loops, 'loop', node)
            case ForEach():
                self._require(features.loops, 'loop', node)
                if node.kind is None:
                    ident = Identifier(node.variable.name)
                    ident.slot = node.variable.slot
                    ident.loc = node.variable.loc
                    self._side_effect(ident, node)
                else:
                    self._require(features.local_var, 'local variable', node)
            case Lambda():
                self._require(features.lambdas, 'function', node)
                if node.arrow == '->':
                    self._require(features.thin_arrow, 'thin-arrow', node)
                elif node.arrow == '=>':
                    self._require(features.fat_arrow, 'fat-arrow', node)
            case Call():
                if isinstance(node.callee, Member):
                    self._require(features.method_call, 'method call', node)
            case ArrayLiteral() | SetLiteral() | MapLiteral():
                self._require(features.structured_literal, 'structured literal', node)
            case BinaryOp():
                if node.op == '..':
                    self._require(features.structured_literal, 'structured literal', node)
                if (node.loc or {}).get('text') in COMPARATOR_NAMES:
                    self._require(features.comparator_names, 'comparator names', node)
            case Annotated():
                self._require(features.annotation, 'annotation', node)
            case Pragma():
                self._require(features.pragma, 'pragma', node)
                if node.key.startswith(NAMESPACE_PRAGMA):
                    self._require(features.namespace_pragma, 'namespace pragma', node)
        self._visit_children(node)

    def _visit_children(self, node):
        for key, value in vars(node).items():
            if key not in _STATE:
                self._visit_value(value)

    def _visit_value(self, value):
        if isinstance(value, Node):
            self.visit(value)
        elif isinstance(value, (list, tuple)):
            for item in value:
                self._visit_value(item)
