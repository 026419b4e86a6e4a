"""
Sandboxed condition language evaluated against token claims.

A small CEL-compatible subset compiled into a Python AST that is validated
node-by-node before it is ever evaluated:
  - Literals: strings, ints, floats, true/false/null, lists
  - The single variable ``payload`` (the decoded claims)
  - Field access ``payload.a.b``, index access ``payload["a"]`` / ``xs[0]``;
    keyword or underscore field names (``payload.from``) read as map keys
  - Comparisons: == != < <= > >= in (not chained)
  - Boolean ops: && || ! (and/or/not accepted too)
  - Functions: has(field), size(value); string methods startsWith,
    endsWith, contains

There are no loops, lambdas or user functions, so evaluation time is
bounded by the expression size.
"""
from __future__ import annotations

import ast
import keyword
import re
from dataclasses import dataclass
from typing import Any, List

from .errors import CompileError, EvalError

VARIABLE = 'payload'
MAX_EXPRESSION_LENGTH = 4096
MAX_DEPTH = 64

_FUNCTIONS = {'has', 'size'}
_STRING_METHODS = {'startsWith', 'endsWith', 'contains'}
_CMP_OPS = (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn)

# String literals are matched first so operators inside them are left alone.
# Field names that are Python keywords or start with `_` become subscripts.
_CEL_TOKENS = re.compile(
    r'''("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')'''
    r'''|(\.\s*([A-Za-z_][A-Za-z0-9_]*))'''
    r'''|(&&|\|\||!=|!|~|\btrue\b|\bfalse\b|\bnull\b)'''
)
# CEL `!` binds tighter than comparisons, like Python's `~` (not like `not`).
_CEL_REPLACEMENTS = {
    '&&': ' and ',
    '||': ' or ',
    '!=': '!=',
    '!': '~',
    'true': 'True',
    'false': 'False',
    'null': 'None',
}


def _to_python_syntax(expr: str) -> str:
    def repl(m: 're.Match[str]') -> str:
        if m.group(1):
            return m.group(1)
        if m.group(2):
            name = m.group(3)
            if keyword.iskeyword(name) or name.startswith('_'):
                return f'["{name}"]'
            return m.group(2)
        op = m.group(4)
        if op == '~':
            raise CompileError('operator ~ is not supported')
        return _CEL_REPLACEMENTS[op]
    return _CEL_TOKENS.sub(repl, expr).strip()


class _Validator(ast.NodeVisitor):
    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, (ast.Load, ast.And, ast.Or, ast.Not, ast.Invert, ast.USub) + _CMP_OPS):
            return None
        return super().visit(node)

    def generic_visit(self, node: ast.AST) -> Any:
        allowed = (
            ast.Expression,
            ast.BoolOp,
            ast.UnaryOp,
            ast.Compare,
            ast.Constant,
            ast.List,
            ast.Tuple,
        )
        if not isinstance(node, allowed):
            raise CompileError(f'disallowed syntax: {type(node).__name__}')
        return super().generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        if not isinstance(node.op, (ast.Not, ast.Invert, ast.USub)):
            raise CompileError('disallowed unary operator')
        self.visit(node.operand)

    def visit_Compare(self, node: ast.Compare) -> Any:
        if len(node.ops) > 1:
            raise CompileError('chained comparisons are not supported')
        for op in node.ops:
            if not isinstance(op, _CMP_OPS):
                raise CompileError('disallowed comparison operator')
        self.visit(node.left)
        for comp in node.comparators:
            self.visit(comp)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if node.value is not None and not isinstance(node.value, (str, int, float, bool)):
            raise CompileError(f'unsupported literal {node.value!r}')

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id != VARIABLE:
            raise CompileError(f'undeclared reference to {node.id!r}')

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith('_'):
            raise CompileError('private attributes are not allowed')
        self.visit(node.value)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        if isinstance(node.slice, ast.Slice):
            raise CompileError('slices are not allowed')
        self.visit(node.value)
        self.visit(node.slice)

    def visit_Call(self, node: ast.Call) -> Any:
        if node.keywords or len(node.args) != 1:
            raise CompileError('functions take exactly one positional argument')
        func = node.func
        if isinstance(func, ast.Name):
            if func.id not in _FUNCTIONS:
                raise CompileError(f'unknown function {func.id!r}')
            if func.id == 'has' and not isinstance(node.args[0], (ast.Attribute, ast.Subscript)):
                raise CompileError('has() requires a field selection')
        elif isinstance(func, ast.Attribute):
            if func.attr not in _STRING_METHODS:
                raise CompileError(f'unknown method {func.attr!r}')
            self.visit(func.value)
        else:
            raise CompileError('invalid call target')
        self.visit(node.args[0])


def _depth(node: ast.AST) -> int:
    children = list(ast.iter_child_nodes(node))
    if not children:
        return 1
    return 1 + max(_depth(c) for c in children)


@dataclass(frozen=True)
class Program:
    expression: str
    tree: ast.Expression

    def evaluate(self, claims: Any) -> bool:
        result = _eval(self.tree.body, claims)
        if not isinstance(result, bool):
            raise EvalError(f'expression did not produce a boolean: {self.expression!r}')
        return result


def compile_expression(expression: str) -> Program:
    if not isinstance(expression, str) or not expression.strip():
        raise CompileError('empty expression')
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise CompileError('expression too long')
    source = _to_python_syntax(expression.strip())
    try:
        tree = ast.parse(source, mode='eval')
    except SyntaxError as e:
        raise CompileError(f'invalid syntax in {expression!r}: {e.msg}') from e
    except (RecursionError, MemoryError, ValueError) as e:
        raise CompileError(f'cannot parse {expression!r}') from e
    try:
        if _depth(tree) > MAX_DEPTH:
            raise CompileError('expression nested too deeply')
    except RecursionError as e:
        raise CompileError('expression nested too deeply') from e
    _Validator().visit(tree)
    return Program(expression=expression, tree=tree)


class _Missing(EvalError):
    pass


def _type_name(v: Any) -> str:
    if v is None:
        return 'null'
    if isinstance(v, bool):
        return 'bool'
    if isinstance(v, (int, float)):
        return 'number'
    if isinstance(v, str):
        return 'string'
    if isinstance(v, list):
        return 'list'
    if isinstance(v, dict):
        return 'map'
    return type(v).__name__


def _select(base: Any, key: Any) -> Any:
    if isinstance(base, dict):
        if not isinstance(key, str):
            raise EvalError(f'map keys must be strings, got {_type_name(key)}')
        if key not in base:
            raise _Missing(f'no such key: {key}')
        return base[key]
    if isinstance(base, list):
        if isinstance(key, bool) or not isinstance(key, int):
            raise EvalError(f'list index must be an integer, got {_type_name(key)}')
        if key < 0 or key >= len(base):
            raise _Missing(f'index out of range: {key}')
        return base[key]
    raise EvalError(f'cannot select {key!r} from {_type_name(base)}')


def _equal(left: Any, right: Any) -> bool:
    # bool is an int subclass in Python; keep them apart.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _ordered(left: Any, right: Any) -> bool:
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric) and not isinstance(left, bool) and not isinstance(right, bool):
        return True
    return isinstance(left, str) and isinstance(right, str)


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, list):
        return any(_equal(item, x) for x in container)
    if isinstance(container, dict):
        return isinstance(item, str) and item in container
    if isinstance(container, str):
        if not isinstance(item, str):
            raise EvalError('in on a string requires a string operand')
        return item in container
    raise EvalError(f'in is not supported on {_type_name(container)}')


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return _equal(left, right)
    if isinstance(op, ast.NotEq):
        return not _equal(left, right)
    if isinstance(op, ast.In):
        return _contains(right, left)
    if isinstance(op, ast.NotIn):
        return not _contains(right, left)
    if not _ordered(left, right):
        raise EvalError(f'cannot order {_type_name(left)} and {_type_name(right)}')
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    return left >= right


def _require_bool(v: Any) -> bool:
    if not isinstance(v, bool):
        raise EvalError(f'expected bool, got {_type_name(v)}')
    return v


def _call(node: ast.Call, payload: Any) -> Any:
    func = node.func
    arg = node.args[0]
    if isinstance(func, ast.Name):
        if func.id == 'has':
            try:
                _eval(arg, payload)
            except _Missing:
                return False
            return True
        value = _eval(arg, payload)
        if isinstance(value, (str, list, dict)):
            return len(value)
        raise EvalError(f'size() is not supported on {_type_name(value)}')
    target = _eval(func.value, payload)
    operand = _eval(arg, payload)
    if not isinstance(target, str) or not isinstance(operand, str):
        raise EvalError(f'{func.attr}() requires string operands')
    if func.attr == 'startsWith':
        return target.startswith(operand)
    if func.attr == 'endsWith':
        return target.endswith(operand)
    return operand in target


def _eval(node: ast.AST, payload: Any) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        return payload

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(e, payload) for e in node.elts]

    if isinstance(node, ast.Attribute):
        return _select(_eval(node.value, payload), node.attr)

    if isinstance(node, ast.Subscript):
        return _select(_eval(node.value, payload), _eval(node.slice, payload))

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            for v in node.values:
                if not _require_bool(_eval(v, payload)):
                    return False
            return True
        for v in node.values:
            if _require_bool(_eval(v, payload)):
                return True
        return False

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, payload)
        if isinstance(node.op, (ast.Not, ast.Invert)):
            return not _require_bool(operand)
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise EvalError(f'cannot negate {_type_name(operand)}')
        return -operand

    if isinstance(node, ast.Compare):
        left = _eval(node.left, payload)
        for op, right_node in zip(node.ops, node.comparators):
            right = _eval(right_node, payload)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        return _call(node, payload)

    raise EvalError(f'unhandled node: {type(node).__name__}')


def compile_all(expressions: List[str]) -> List[Program]:
    return [compile_expression(e) for e in expressions]
