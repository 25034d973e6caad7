"""
Transforms the raw parser AST into a semantic AST using jexl_datatypes.
"""

import re
from decimal import Decimal

from jexl.jexl_errors import ParsingError
from jexl.jexl_datatypes import (
    Literal, RegexLiteral, Identifier, TypeName, ArrayLiteral, SetLiteral, MapLiteral, Spread,
    BinaryOp, Conditional, SetOperand, UnaryOp, IncDec, Member, Index, Call, NamespaceCall,
    Pipe, Projection, Selection, CurrentElement, Iterate,
    KeywordCall, NewCall, Delete, Assignment, Param, Lambda, Generator, ValueBlock,
    Block, Declarator, Declaration, If, While, DoWhile, For, ForEach, Return, Break, Continue,
    Throw, Yield, Labelled, Assert, Try, DefaultLabel, TypePattern, Case, Switch, Annotation, Annotated,
    Pragma, Script
)

# Word operators are normalized to their symbolic form.
WORD_OPERATORS = {
    'and': '&&', 'or': '||', 'not': '!',
    'eq': '==', 'ne': '!=', 'lt': '<', 'le': '<=', 'gt': '>', 'ge': '>=',
    'div': '/', 'mod': '%',
}

# Chain suffixes located at their member name or key rather than the suffix start.
_NAMED_ACCESS = ('dot_access', 'safe_dot_access', 'index_access', 'safe_index_access')

_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f'}
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|[\s\S])")


def unescape(body: str) -> str:
    def repl(m):
        esc = m.group(1)
        if esc[0] == 'u' and len(esc) == 5:
            return chr(int(esc[1:], 16))
        return _ESCAPES.get(esc, esc)
    return _ESCAPE_RE.sub(repl, body)


def parse_number(text: str):
    """Converts a numeric literal (with optional type suffix) to a Python number."""
    txt = text.strip()
    negative = txt.startswith('-')
    if negative:
        txt = txt[1:]
    suffix = txt[-1] if txt[-1] in 'lLhHfFdDbB' and not txt.lower().startswith('0x') else ''
    if txt.lower().startswith('0x'):
        if txt[-1] in 'lLhH':
            txt = txt[:-1]
        value = int(txt, 16)
    else:
        body = txt[:-1] if suffix else txt
        if suffix in ('b', 'B'):
            value = Decimal(body)
        elif suffix in ('f', 'F', 'd', 'D') or '.' in body or 'e' in body or 'E' in body:
            value = float(body)
        else:
            value = int(body)
    return -value if negative else value


class JexlTransformer:
    def _attach_loc(self, obj, node):
        line = node.get('line'); col = node.get('col')
        if line is not None and col is not None and hasattr(obj, '__dict__'):
            obj.loc = {'line': line, 'col': col, 'tag': node.get('tag'), 'text': node.get('text')}
        return obj

    def _error(self, message, node):
        loc = {'line': node.get('line'), 'col': node.get('col'), 'tag': node.get('tag'), 'text': node.get('text')}
        return ParsingError(message, loc)

    def transform_script(self, node: dict, params=(), source: str = "") -> Script:
        statements = self._statements(node.get('children', []))
        script = Script(statements, [Param(p) for p in params], source)
        return self._attach_loc(script, node)

    def _statements(self, nodes) -> list:
        out = []
        for child in nodes:
            if isinstance(child, dict) and child.get('tag') == 'empty_statement':
                continue
            out.append(self.transform(child))
        return out

    def transform(self, node: object) -> object:
        # Lists: transform each item
        if isinstance(node, list):
            return [self.transform(n) for n in node]

        # Primitives already in final form
        if not isinstance(node, dict):
            return node

        tag = node.get('tag')
        children = node.get('children', [])

        match tag:
            # Structural containers
            case 'script':
                return self.transform_script(node)
            case 'block':
                return self._attach_loc(Block(self._statements(children)), node)
            case 'empty_statement':
                # a loop or branch body of just ';'
                return self._attach_loc(Block([]), node)
            case 'expression_statement':
                return self.transform(children[0])
            case 'var_declaration':
                return self.transform(children[0])
            case 'declaration':
                kind = children[0]['text']
                declarators = [self._declarator(c) for c in children[1:]]
                return self._attach_loc(Declaration(kind, declarators), node)
            case 'function_declaration':
                name = children[0]['text']
                fn = self._lambda(children[1:], node, name=name)
                decl = self._attach_loc(Declarator(name, fn), node)
                return self._attach_loc(Declaration('var', [decl]), node)

            # Control flow
            case 'if_statement':
                otherwise = self.transform(children[2]) if len(children) > 2 else None
                return self._attach_loc(If(self.transform(children[0]), self.transform(children[1]), otherwise), node)
            case 'while_statement':
                return self._attach_loc(While(self.transform(children[0]), self.transform(children[1])), node)
            case 'do_statement':
                return self._attach_loc(DoWhile(self.transform(children[0]), self.transform(children[1])), node)
            case 'for_statement':
                init, cond, step, body = children
                return self._attach_loc(For(self._optional(init), self._optional(cond),
                                            self._optional(step), self.transform(body)), node)
            case 'foreach_statement':
                kind, variable = self._bound_variable(children[0])
                loop = ForEach(kind, variable, self.transform(children[1]), self.transform(children[2]))
                return self._attach_loc(loop, node)
            case 'return_statement':
                value = self.transform(children[0]) if children else None
                return self._attach_loc(Return(value), node)
            case 'break_statement':
                return self._attach_loc(Break(children[0]['text'] if children else None), node)
            case 'continue_statement':
                return self._attach_loc(Continue(children[0]['text'] if children else None), node)
            case 'throw_statement':
                return self._attach_loc(Throw(self.transform(children[0])), node)
            case 'yield_statement':
                return self._attach_loc(Yield(self.transform(children[0])), node)
            case 'assert_statement':
                message = self.transform(children[1]) if len(children) > 1 else None
                return self._attach_loc(Assert(self.transform(children[0]), message), node)
            case 'labelled_statement':
                return self._attach_loc(Labelled(children[0]['text'], self.transform(children[1])), node)
            case 'try_statement':
                return self._try(node, children)
            case 'switch_statement':
                return self._switch(node, children)
            case 'switch_expression':
                switch = self.transform(children[0])
                switch.expression = True
                return switch
            case 'annotated_statement':
                annotations = [self._annotation(c) for c in children[:-1]]
                return self._attach_loc(Annotated(annotations, self.transform(children[-1])), node)
            case 'pragma':
                value = self._pragma_value(children[1]) if len(children) > 1 else True
                return self._attach_loc(Pragma(children[0]['text'], value), node)

            # Operators
            case 'binary_op':
                return self._binary(node)
            case 'assignment':
                target, op, value = children
                lvalue = self._lvalue(self.transform(target), target)
                assign = Assignment(op['text'], lvalue, self.transform(value))
                return self._attach_loc(assign, op)
            case 'prefix_expression':
                op = WORD_OPERATORS.get(children[0]['text'], children[0]['text'])
                operand = self.transform(children[1])
                if op in ('++', '--'):
                    return self._attach_loc(IncDec(op, self._lvalue(operand, children[1]), True), node)
                return self._attach_loc(UnaryOp(op, operand), node)
            case 'postfix_update':
                operand = self.transform(children[0])
                return self._attach_loc(IncDec(children[1]['text'], self._lvalue(operand, children[0]), False), children[1])
            case 'iterate_expression':
                return self._attach_loc(Iterate(self.transform(children[0])), node)
            case 'delete_expression':
                return self._attach_loc(Delete(self._lvalue(self.transform(children[0]), children[0])), node)
            case 'set_operand':
                return self._attach_loc(SetOperand('all', self.transform(children)), node)
            case 'set_operand_all':
                return self._attach_loc(SetOperand('all', self.transform(children)), node)
            case 'set_operand_any':
                return self._attach_loc(SetOperand('any', self.transform(children)), node)

            # Member chains and calls
            case 'member_chain':
                return self._chain(children)
            case 'namespace_call':
                ns, name = children[0]['text'].split(':', 1)
                call = NamespaceCall(ns, name, self._arguments(children[1]))
                return self._attach_loc(call, node)
            case 'empty_call' | 'size_call':
                return self._attach_loc(KeywordCall(tag[:-5], self.transform(children[0])), node)
            case 'new_call':
                return self._attach_loc(NewCall(self._arguments(children[0])), node)
            case 'spread':
                return self._attach_loc(Spread(self.transform(children[0])), node)

            # Functions
            case 'function_expression':
                name = None
                if children and children[0].get('tag') == 'identifier':
                    name = children[0]['text']
                    children = children[1:]
                return self._lambda(children, node, name=name)
            case 'arrow_lambda':
                return self._lambda(children, node)
            case 'bare_lambda':
                param = self._attach_loc(Param(children[0]['text']), children[0])
                arrow, body = children[1], children[2]
                fn = Lambda([param], self._lambda_body(body), arrow=arrow['text'],
                            expression_body=body.get('tag') != 'block')
                return self._attach_loc(fn, node)
            case 'generator':
                return self._attach_loc(Generator(self.transform(children[0])), node)
            case 'value_block':
                return self._attach_loc(ValueBlock(self.transform(children[0])), node)

            # Literals
            case 'number':
                return self._attach_loc(Literal(parse_number(node['text']), node['text']), node)
            case 'string':
                return self._attach_loc(Literal(unescape(node['text'][1:-1]), node['text']), node)
            case 'boolean':
                return self._attach_loc(Literal(node['text'] == 'true', node['text']), node)
            case 'null_literal':
                return self._attach_loc(Literal(None, 'null'), node)
            case 'nan_literal':
                return self._attach_loc(Literal(float('nan'), 'NaN'), node)
            case 'regex_literal':
                body = node['text'][2:-1].replace('\\/', '/')
                try:
                    pattern = re.compile(body)
                except re.error as e:
                    raise self._error(f"invalid regex {body!r}: {e}", node) from e
                return self._attach_loc(RegexLiteral(pattern), node)
            case 'array_literal':
                items = [self._array_item(c) for c in children]
                return self._attach_loc(ArrayLiteral(items), node)
            case 'set_literal':
                return self._attach_loc(SetLiteral(self.transform(children)), node)
            case 'empty_map':
                return self._attach_loc(MapLiteral([]), node)
            case 'map_entries':
                entries = [(self.transform(e['children'][0]), self.transform(e['children'][1])) for e in children]
                return self._attach_loc(MapLiteral(entries), node)
            case 'identifier':
                return self._attach_loc(Identifier(node['text']), node)
            case 'current_element':
                return self._attach_loc(CurrentElement(), node)

            case _:
                raise self._error(f"No transformer for tag '{tag}'", node)

    # --- Helpers ---

    def _optional(self, node):
        children = node.get('children') or []
        return self.transform(children[0]) if children else None

    def _declarator(self, node):
        children = node['children']
        value = self.transform(children[1]) if len(children) > 1 else None
        return self._attach_loc(Declarator(children[0]['text'], value), node)

    def _bound_variable(self, node):
        children = node['children']
        kind = None
        if children[0].get('tag') == 'declaration_kind':
            kind = children[0]['text']
            children = children[1:]
        return kind, self._attach_loc(Declarator(children[0]['text']), children[0])

    def _lvalue(self, target, node):
        if not isinstance(target, (Identifier, Member, Index)):
            raise self._error("invalid assignment target", node)
        return target

    def _binary(self, node):
        op = node['op']['text']
        left = self.transform(node['left'])
        right_node = node['right']
        if op in ('?', '?:', '??'):
            if op == '?':
                if right_node.get('tag') != 'conditional_branches':
                    raise self._error("missing ':' in conditional expression", node['op'])
                then, otherwise = self.transform(right_node['children'])
            else:
                then, otherwise = None, self.transform(right_node)
            return self._attach_loc(Conditional(op, left, then, otherwise), node['op'])
        op = WORD_OPERATORS.get(op, op)
        right = self.transform(right_node)
        if op in ('instanceof', '!instanceof'):
            right = self._type_name(right, right_node)
        if op == '..' and isinstance(right, SetOperand):
            raise self._error("set operand not allowed in range", right_node)
        return self._attach_loc(BinaryOp(op, left, right), node['op'])

    def _type_name(self, node, raw):
        parts = []
        cur = node
        while isinstance(cur, Member) and isinstance(cur.name, str):
            parts.append(cur.name)
            cur = cur.obj
        if not isinstance(cur, Identifier):
            raise self._error("expected a type name", raw)
        parts.append(cur.name)
        return self._attach_loc(TypeName('.'.join(reversed(parts))), raw)

    def _chain(self, children):
        expr = self.transform(children[0])
        for suffix in children[1:]:
            stag = suffix.get('tag')
            sch = suffix.get('children', [])
            match stag:
                case 'dot_access' | 'safe_dot_access':
                    expr = Member(expr, self._member_name(sch[0]), stag == 'safe_dot_access')
                case 'index_access' | 'safe_index_access':
                    expr = Index(expr, self.transform(sch[0]), stag == 'safe_index_access')
                case 'call_arguments':
                    expr = Call(expr, self._arguments(suffix))
                case 'pipe_access':
                    expr = Pipe(expr, self.transform(sch[0]))
                case 'projection_access':
                    expr = Projection(expr, [self._projection_item(c) for c in sch])
                case 'selection_access':
                    expr = Selection(expr, self.transform(sch[0]))
                case _:
                    raise self._error(f"unexpected member suffix '{stag}'", suffix)
            self._attach_loc(expr, sch[0] if stag in _NAMED_ACCESS else suffix)
        return expr

    def _projection_item(self, node):
        if node.get('tag') == 'projection_entry':
            key, value = node['children']
            return self.transform(key), self.transform(value)
        return None, self.transform(node)

    def _member_name(self, node):
        text = node['text']
        if text[0] in ('"', "'"):
            return unescape(text[1:-1])
        if text.isdigit():
            return int(text)
        return text

    def _arguments(self, node):
        return [self._array_item(c) for c in node.get('children', [])]

    def _array_item(self, node):
        item = self.transform(node)
        # `[...{ yield ... }]` spreads the generator it creates.
        if isinstance(item, Generator):
            return self._attach_loc(Spread(item), node)
        return item

    def _parameters(self, node):
        params = []
        for p in node['children']:
            pch = p['children']
            kind = None
            if pch[0].get('tag') == 'declaration_kind':
                kind = pch[0]['text']
                pch = pch[1:]
            default = self.transform(pch[1]) if len(pch) > 1 else None
            params.append(self._attach_loc(Param(pch[0]['text'], kind, default), p))
        return params

    def _lambda_body(self, node):
        return self.transform(node)

    def _lambda(self, children, node, name=None):
        params = []
        arrow = None
        rest = list(children)
        if rest and rest[0].get('tag') == 'parameters':
            params = self._parameters(rest.pop(0))
        if rest and rest[0].get('tag') == 'arrow':
            arrow = rest.pop(0)['text']
        body = rest[0]
        fn = Lambda(params, self._lambda_body(body), name=name, arrow=arrow,
                    expression_body=body.get('tag') != 'block')
        return self._attach_loc(fn, node)

    def _try(self, node, children):
        resources = []
        body = None
        catch_kind = catch_var = catch_body = finally_body = None
        for ch in children:
            match ch.get('tag'):
                case 'try_resources':
                    resources = self.transform(ch['children'])
                case 'block':
                    body = self.transform(ch)
                case 'catch_clause':
                    cch = ch['children']
                    if cch[0].get('tag') == 'bound_variable':
                        catch_kind, catch_var = self._bound_variable(cch[0])
                        cch = cch[1:]
                    catch_body = self.transform(cch[0])
                case 'finally_clause':
                    finally_body = self.transform(ch['children'][0])
        if catch_body is None and finally_body is None and not resources:
            raise self._error("try requires a catch or finally clause", node)
        stmt = Try(resources, body, catch_kind, catch_var, catch_body, finally_body)
        return self._attach_loc(stmt, node)

    def _switch(self, node, children):
        subject = self.transform(children[0])
        cases = []
        for c in children[1:]:
            cch = c['children']
            labels = self._case_labels(cch[0])
            if c['tag'] == 'arrow_case':
                case = Case(labels, [self.transform(cch[1])], True)
            else:
                case = Case(labels, self._statements(cch[1:]), False)
            cases.append(self._attach_loc(case, c))
        if cases and len({case.arrow for case in cases}) > 1:
            raise self._error("switch cannot mix ':' and '->' cases", node)
        return self._attach_loc(Switch(subject, cases), node)

    def _case_labels(self, node):
        if node.get('tag') == 'default_label':
            return [self._attach_loc(DefaultLabel(), node)]
        labels = []
        for lab in node['children']:
            match lab.get('tag'):
                case 'default_label':
                    labels.append(self._attach_loc(DefaultLabel(), lab))
                case 'type_pattern':
                    lch = lab['children']
                    binding = self._attach_loc(Declarator(lch[1]['text']), lch[1])
                    guard = self.transform(lch[2]) if len(lch) > 2 else None
                    labels.append(self._attach_loc(TypePattern(lch[0]['text'], binding, guard), lab))
                case 'case_constant':
                    labels.append(self._attach_loc(Literal(self._constant(lab['text']), lab['text']), lab))
        return labels

    def _constant(self, text):
        if text[0] in ('"', "'"):
            return unescape(text[1:-1])
        if text == 'null':
            return None
        if text in ('true', 'false'):
            return text == 'true'
        return parse_number(text)

    def _annotation(self, node):
        children = node['children']
        args = self._arguments(children[1]) if len(children) > 1 else []
        return self._attach_loc(Annotation(children[0]['text'][1:], args), node)

    def _pragma_value(self, node):
        match node.get('tag'):
            case 'string':
                return unescape(node['text'][1:-1])
            case 'number':
                return parse_number(node['text'])
            case 'boolean':
                return node['text'] == 'true'
            case 'null_literal':
                return None
            case _:
                return node['text']
