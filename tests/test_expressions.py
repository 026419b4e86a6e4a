import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from filesystem_mcp.errors import CompileError, EvalError
from filesystem_mcp.expressions import MAX_EXPRESSION_LENGTH, compile_expression


def _ev(expr, claims):
    return compile_expression(expr).evaluate(claims)


def test_role_equality_is_exact():
    prg = compile_expression('payload.role == "admin"')
    assert prg.evaluate({'role': 'admin'}) is True
    assert prg.evaluate({'role': 'Admin'}) is False
    assert prg.evaluate({'role': 'admin '}) is False
    assert prg.evaluate({'role': 'administrator'}) is False


def test_missing_field_is_an_eval_error():
    prg = compile_expression('payload.role == "admin"')
    with pytest.raises(EvalError):
        prg.evaluate({'sub': 'alice'})


def test_boolean_operators_and_literals():
    claims = {'role': 'dev', 'team': 'core', 'active': True}
    assert _ev('payload.role == "dev" && payload.team == "core"', claims)
    assert _ev('payload.role == "admin" || payload.team == "core"', claims)
    assert _ev('!(payload.role == "admin")', claims)
    assert _ev('payload.active == true', claims)
    assert not _ev('payload.active == false', claims)
    # operators inside string literals are untouched
    assert _ev('"a&&b" == "a&&b"', claims)


def test_membership_and_functions():
    claims = {'groups': ['eng', 'ops'], 'email': 'alice@example.com', 'nested': {'level': 3}}
    assert _ev('"ops" in payload.groups', claims)
    assert not _ev('"hr" in payload.groups', claims)
    assert _ev('payload.email.endsWith("@example.com")', claims)
    assert _ev('payload.email.startsWith("alice")', claims)
    assert _ev('payload.email.contains("@")', claims)
    assert _ev('size(payload.groups) == 2', claims)
    assert _ev('has(payload.nested)', claims)
    assert not _ev('has(payload.missing)', claims)
    assert _ev('payload.nested.level >= 3', claims)
    assert _ev('payload["groups"][0] == "eng"', claims)


def test_bool_and_int_are_distinct():
    assert not _ev('payload.flag == 1', {'flag': True})


def test_ordering_type_mismatch_raises():
    with pytest.raises(EvalError):
        _ev('payload.level > "3"', {'level': 3})


def test_non_boolean_result_raises():
    with pytest.raises(EvalError):
        _ev('payload.role', {'role': 'admin'})


@pytest.mark.parametrize('expr', [
    '',
    'payload.role ==',
    'other.role == "admin"',
    '__import__("os").system("id")',
    'payload.role.lower() == "admin"',
    '[x for x in payload.groups]',
    'lambda: True',
    'payload.groups[0:1] == []',
    'payload.role == ...',
    '1 < payload.n < 5',
    'payload.role == "a" == true',
    '~payload.n == 1',
])
def test_rejected_at_compile_time(expr):
    with pytest.raises(CompileError):
        compile_expression(expr)


def test_length_and_depth_limits():
    with pytest.raises(CompileError):
        compile_expression('payload.a == "' + 'x' * MAX_EXPRESSION_LENGTH + '"')
    deep = '(' * 100 + 'true' + ')' * 100
    # redundant parentheses do not add AST depth
    assert compile_expression(deep).evaluate({}) is True
    nested = '!' * 100 + 'true'
    with pytest.raises(CompileError) as exc:
        compile_expression(nested)
    assert 'nested too deeply' in str(exc.value)
    under = '!' * 60 + 'true'
    assert compile_expression(under).evaluate({}) is True


def test_negation_of_function_and_field():
    assert _ev('!has(payload.x)', {}) is True
    assert _ev('!has(payload.x)', {'x': 1}) is False
    assert _ev(' !payload.active', {'active': False}) is True
    assert _ev('payload.ok && !payload.banned', {'ok': True, 'banned': False}) is True


def test_negation_binds_tighter_than_comparison():
    # parsed as (!payload.role) == "admin", which is a type error
    prg = compile_expression('true && !payload.role == "admin"')
    with pytest.raises(EvalError):
        prg.evaluate({'role': 'user'})
    assert _ev('true && !(payload.role == "admin")', {'role': 'user'}) is True
    assert _ev('!payload.a == payload.b', {'a': False, 'b': True}) is True


def test_keyword_and_underscore_field_names():
    claims = {'from': 'idp', 'class': 'gold', '_tenant': 't1', 'meta': {'in': 2}}
    assert _ev('payload.from == "idp"', claims)
    assert _ev('payload.class == "gold" && payload._tenant == "t1"', claims)
    assert _ev('payload.meta.in == 2', claims)
    assert _ev('has(payload._tenant)', claims)
    assert not _ev('has(payload.__class__)', claims)
    # private names are plain key lookups, never Python attributes
    with pytest.raises(EvalError):
        _ev('payload.__class__ == "dict"', claims)
