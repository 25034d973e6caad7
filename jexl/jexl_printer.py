"""
A printer for JEXL values and syntax trees.

Values print the way a script would write them (`null`, `true`, `[1, 2]`,
`{'a': 1}`); syntax nodes print as canonical source text, which is also the
basis of closure equality.
"""
import math
import re
import collections.abc
from decimal import Decimal

from jexl.jexl_arithmetic import IntegerRange
from jexl.jexl_datatypes import (
    Node, Literal, RegexLiteral, Identifier, TypeName, ArrayLiteral, SetLiteral, MapLiteral, Spread,
    BinaryOp, Conditional, SetOperand, UnaryOp, IncDec, Member, Index, Call, NamespaceCall,
    Pipe, Projection, Selection, CurrentElement, Iterate,
    KeywordCall, NewCall, Delete, Assignment, Param, Lambda, Generator, ValueBlock,
    Block, Declarator, Declaration, If, While, DoWhile, For, ForEach, Return, Break, Continue,
    Throw, Yield, Labelled, Assert, Try, DefaultLabel, TypePattern, Case, Switch, Annotation, Annotated,
    Pragma, Script
)

_IDENT_RE = re.compile(r'^[A-Za-z_$][A-Za-z0-9_$]*$')

# Higher binds tighter.
PRECEDENCE = {
    '=': 1, '?': 2, '?:': 2, '??': 2,
    '||': 3, '&&': 4, '|': 5, '^': 6, '&': 7,
    '==': 8, '!=': 8, '===': 8, '!==': 8,
    '<': 9, '<=': 9, '>': 9, '>=': 9, '=~': 9, '!~': 9, '=^': 9, '!^': 9, '=$': 9, '!$': 9,
    'instanceof': 9, '!instanceof': 9,
    '..': 10, '<<': 11, '>>': 11, '>>>': 11, '+': 12, '-': 12, '*': 13, '/': 13, '%': 13,
}
_UNARY = 14


class Printer:
    """Formats JEXL values and syntax nodes into readable source strings."""

    def __init__(self, indent_width=4):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Node):
            return lambda o, l: f"<{type(o).__name__}>"
        source = getattr(obj, 'get_parsed_text', None)
        if callable(source):
            return lambda o, l: o.get_parsed_text()
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        if isinstance(obj, (set, frozenset)):
            return self._pformat_set
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            Decimal: self._pformat_decimal,
            bool: self._pformat_bool,
            type(None): lambda o, l: 'null',
            IntegerRange: lambda o, l: repr(o),
            re.Pattern: lambda o, l: f"~/{o.pattern}/",
            # syntax
            Script: self._pformat_script,
            Literal: self._pformat_literal,
            RegexLiteral: lambda o, l: f"~/{o.pattern.pattern}/",
            Identifier: lambda o, l: o.name,
            TypeName: lambda o, l: o.name,
            ArrayLiteral: lambda o, l: "[" + self._items(o.items, l) + "]",
            SetLiteral: lambda o, l: "{" + self._items(o.items, l) + "}",
            MapLiteral: self._pformat_map_literal,
            Spread: lambda o, l: "..." + self.pformat(o.expr, l),
            BinaryOp: self._pformat_binary,
            Conditional: self._pformat_conditional,
            SetOperand: self._pformat_set_operand,
            UnaryOp: self._pformat_unary,
            IncDec: self._pformat_incdec,
            Member: self._pformat_member,
            Index: lambda o, l: f"{self._operand(o.obj, _UNARY + 1, l)}{'?[' if o.safe else '['}{self.pformat(o.key, l)}]",
            Call: lambda o, l: f"{self._operand(o.callee, _UNARY + 1, l)}({self._items(o.args, l)})",
            Pipe: lambda o, l: f"{self._operand(o.obj, _UNARY + 1, l)}.({self.pformat(o.body, l)})",
            Projection: self._pformat_projection,
            Selection: lambda o, l: f"{self._operand(o.obj, _UNARY + 1, l)}.[{self.pformat(o.predicate, l)}]",
            CurrentElement: lambda o, l: "@",
            Iterate: lambda o, l: "..." + self._operand(o.expr, _UNARY, l),
            NamespaceCall: lambda o, l: f"{o.namespace}:{o.name}({self._items(o.args, l)})",
            KeywordCall: lambda o, l: f"{o.name}({self.pformat(o.arg, l)})",
            NewCall: lambda o, l: f"new({self._items(o.args, l)})",
            Delete: lambda o, l: "delete " + self.pformat(o.target, l),
            Assignment: self._pformat_assignment,
            Param: self._pformat_param,
            Lambda: self._pformat_lambda,
            Generator: lambda o, l: "..." + self.pformat(o.body, l),
            ValueBlock: lambda o, l: "(" + self.pformat(o.body, l) + ")",
            Block: self._pformat_block,
            Declaration: self._pformat_declaration,
            If: self._pformat_if,
            While: lambda o, l: f"while ({self.pformat(o.cond, l)}) {self._body(o.body, l)}",
            DoWhile: lambda o, l: f"do {self._body(o.body, l)} while ({self.pformat(o.cond, l)})",
            For: self._pformat_for,
            ForEach: self._pformat_foreach,
            Return: lambda o, l: "return" if o.value is None else "return " + self.pformat(o.value, l),
            Break: lambda o, l: "break" + (f" {o.label}" if o.label else ""),
            Continue: lambda o, l: "continue" + (f" {o.label}" if o.label else ""),
            Throw: lambda o, l: "throw " + self.pformat(o.value, l),
            Yield: lambda o, l: "yield " + self.pformat(o.value, l),
            Assert: self._pformat_assert,
            Labelled: lambda o, l: f"{o.label}: {self.pformat(o.statement, l)}",
            Try: self._pformat_try,
            Switch: self._pformat_switch,
            Annotation: self._pformat_annotation,
            Annotated: lambda o, l: " ".join([self.pformat(a, l) for a in o.annotations] + [self.pformat(o.statement, l)]),
            Pragma: self._pformat_pragma,
        }

    def _indent(self, level):
        return self._indent_char * level

    # --- Values ---

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        if math.isnan(obj):
            return 'NaN'
        return repr(obj)

    def _pformat_decimal(self, obj, level):
        return f"{obj}B"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_str(self, obj, level):
        escaped = obj.replace('\\', '\\\\').replace("'", "\\'").replace('\n', '\\n').replace('\t', '\\t')
        return f"'{escaped}'"

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(v, level) for v in obj) + "]"

    def _pformat_set(self, obj, level):
        if not obj:
            return "{}"
        items = sorted((self.pformat(v, level) for v in obj))
        return "{" + ", ".join(items) + "}"

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{:}"
        return "{" + ", ".join(f"{self.pformat(k, level)}: {self.pformat(v, level)}" for k, v in obj.items()) + "}"

    # --- Syntax ---

    def _items(self, items, level):
        return ", ".join(self.pformat(i, level) for i in items)

    def _statements(self, statements, level):
        lines = []
        for st in statements:
            text = self.pformat(st, level)
            if not isinstance(st, (Block, If, While, For, ForEach, Try, Switch, Pragma)) and not (
                    isinstance(st, Declaration) and isinstance(st.declarators[0].value, Lambda) and st.declarators[0].value.name):
                text += ";"
            lines.append(self._indent(level) + text)
        return "\n".join(lines)

    def _pformat_script(self, obj, level):
        return self._statements(obj.body, level)

    def _pformat_block(self, obj, level):
        if not obj.statements:
            return "{ }"
        return "{\n" + self._statements(obj.statements, level + 1) + "\n" + self._indent(level) + "}"

    def _body(self, node, level):
        if isinstance(node, Block):
            return self.pformat(node, level)
        return self.pformat(node, level) + ";"

    def _pformat_literal(self, obj, level):
        if obj.text is not None:
            return obj.text
        return self.pformat(obj.value, level)

    def _pformat_map_literal(self, obj, level):
        if not obj.entries:
            return "{:}"
        return "{" + ", ".join(f"{self.pformat(k, level)}: {self.pformat(v, level)}" for k, v in obj.entries) + "}"

    def _precedence(self, node):
        if isinstance(node, BinaryOp):
            return PRECEDENCE.get(node.op, 0)
        if isinstance(node, Conditional):
            return PRECEDENCE['?']
        if isinstance(node, Assignment):
            return PRECEDENCE['=']
        if isinstance(node, Lambda):
            return 0
        if isinstance(node, (UnaryOp, IncDec, Delete, Iterate)):
            return _UNARY
        return _UNARY + 2

    def _operand(self, node, min_precedence, level):
        text = self.pformat(node, level)
        if self._precedence(node) < min_precedence:
            return f"({text})"
        return text

    def _pformat_binary(self, obj, level):
        prec = PRECEDENCE.get(obj.op, 0)
        left = self._operand(obj.left, prec, level)
        right = self._operand(obj.right, prec + 1, level)
        return f"{left} {obj.op} {right}"

    def _pformat_conditional(self, obj, level):
        prec = PRECEDENCE['?']
        cond = self._operand(obj.cond, prec + 1, level)
        if obj.op == '?':
            return f"{cond} ? {self._operand(obj.then, prec, level)} : {self._operand(obj.otherwise, prec, level)}"
        return f"{cond} {obj.op} {self._operand(obj.otherwise, prec, level)}"

    def _pformat_set_operand(self, obj, level):
        prefix = '?' if obj.quantifier == 'any' else ''
        return f"{prefix}({self._items(obj.items, level)})"

    def _pformat_unary(self, obj, level):
        return obj.op + self._operand(obj.operand, _UNARY, level)

    def _pformat_incdec(self, obj, level):
        target = self._operand(obj.target, _UNARY + 1, level)
        return obj.op + target if obj.prefix else target + obj.op

    def _pformat_member(self, obj, level):
        base = self._operand(obj.obj, _UNARY + 1, level)
        dot = '?.' if obj.safe else '.'
        name = obj.name
        if isinstance(name, int):
            return f"{base}{dot}{name}"
        if _IDENT_RE.match(name):
            return f"{base}{dot}{name}"
        return f"{base}{dot}{self._pformat_str(name, level)}"

    def _pformat_projection(self, obj, level):
        items = []
        for key, value in obj.items:
            text = self.pformat(value, level)
            if key is not None:
                text = f"{self.pformat(key, level)} : {text}"
            items.append(text)
        return f"{self._operand(obj.obj, _UNARY + 1, level)}.{{{', '.join(items)}}}"

    def _pformat_assignment(self, obj, level):
        return f"{self.pformat(obj.target, level)} {obj.op} {self._operand(obj.value, PRECEDENCE['='], level)}"

    def _pformat_param(self, obj, level):
        text = f"{obj.kind} {obj.name}" if obj.kind else obj.name
        if obj.default is not None:
            text += " = " + self.pformat(obj.default, level)
        return text

    def _pformat_lambda(self, obj, level):
        params = self._items(obj.params, level)
        body = self.pformat(obj.body, level)
        if obj.arrow is None:
            name = f" {obj.name}" if obj.name else ""
            return f"function{name}({params}) {body}"
        return f"({params}) {obj.arrow} {body}"

    def _declarator(self, decl, level):
        if decl.value is None:
            return decl.name
        return f"{decl.name} = {self._operand(decl.value, PRECEDENCE['='], level)}"

    def _pformat_declaration(self, obj, level):
        first = obj.declarators[0]
        if len(obj.declarators) == 1 and isinstance(first.value, Lambda) and first.value.name == first.name:
            return self.pformat(first.value, level)
        return f"{obj.kind} " + ", ".join(self._declarator(d, level) for d in obj.declarators)

    def _pformat_if(self, obj, level):
        text = f"if ({self.pformat(obj.cond, level)}) {self._body(obj.then, level)}"
        if obj.otherwise is not None:
            text += f" else {self._body(obj.otherwise, level)}"
        return text

    def _pformat_for(self, obj, level):
        parts = [self.pformat(p, level) if p is not None else "" for p in (obj.init, obj.cond, obj.step)]
        return f"for ({'; '.join(parts)}) {self._body(obj.body, level)}"

    def _pformat_foreach(self, obj, level):
        var = f"{obj.kind} {obj.variable.name}" if obj.kind else obj.variable.name
        return f"for ({var} : {self.pformat(obj.iterable, level)}) {self._body(obj.body, level)}"

    def _pformat_try(self, obj, level):
        text = "try "
        if obj.resources:
            text += "(" + "; ".join(self.pformat(r, level) for r in obj.resources) + ") "
        text += self.pformat(obj.body, level)
        if obj.catch_body is not None:
            if obj.catch_var is not None:
                var = f"{obj.catch_kind} {obj.catch_var.name}" if obj.catch_kind else obj.catch_var.name
                text += f" catch ({var}) "
            else:
                text += " catch "
            text += self.pformat(obj.catch_body, level)
        if obj.finally_body is not None:
            text += " finally " + self.pformat(obj.finally_body, level)
        return text

    def _label(self, label, level):
        match label:
            case DefaultLabel():
                return "default"
            case TypePattern():
                text = f"{label.type_name} {label.binding.name}"
                if label.guard is not None:
                    text += f" when ({self.pformat(label.guard, level)})"
                return text
            case _:
                return self.pformat(label, level)

    def _case(self, case, level):
        labels = [self._label(lab, level) for lab in case.labels]
        head = "default" if labels == ["default"] else "case " + ", ".join(labels)
        inner = self._indent(level + 1)
        if case.arrow:
            return f"{inner}{head} -> {self._body(case.body[0], level + 1)}"
        if not case.body:
            return f"{inner}{head} :"
        return f"{inner}{head} :\n" + self._statements(case.body, level + 2)

    def _pformat_switch(self, obj, level):
        cases = "\n".join(self._case(c, level) for c in obj.cases)
        return f"switch ({self.pformat(obj.subject, level)}) {{\n{cases}\n{self._indent(level)}}}"

    def _pformat_annotation(self, obj, level):
        if not obj.args:
            return "@" + obj.name
        return f"@{obj.name}({self._items(obj.args, level)})"

    def _pformat_assert(self, obj, level):
        text = "assert " + self.pformat(obj.cond, level)
        if obj.message is not None:
            text += " : " + self.pformat(obj.message, level)
        return text

    def _pformat_pragma(self, obj, level):
        if obj.value is True:
            return f"#pragma {obj.key}"
        return f"#pragma {obj.key} {self.pformat(obj.value, level)}"
