import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from filesystem_mcp.config import PolicyConfig
from filesystem_mcp.errors import CompileError, ConfigError, PolicyError
from filesystem_mcp.policy import Operation, PolicyEngine, Tool, canonicalize


def _engine(rules, default='deny', enabled=True):
    return PolicyEngine(PolicyConfig.model_validate({'enabled': enabled, 'default_policy': default, 'rules': rules}))


def test_tool_categories_are_fixed():
    assert Tool.lookup('read_file').category is Operation.READ
    assert Tool.lookup('edit_file').category is Operation.WRITE
    assert Tool.lookup('process_kill').category is Operation.EXEC
    assert Tool.lookup('system_info').path_free
    assert Tool.lookup('rm_rf') is None


def test_disabled_policy_allows_everything(tmp_path: Path):
    eng = _engine([], enabled=False)
    assert eng.check('write_file', [str(tmp_path / 'x')], None).allowed
    # even tools the engine does not know
    assert eng.check('nope', [], None).allowed


def test_default_decision_with_no_rules(tmp_path: Path):
    p = str(tmp_path / 'a.txt')
    assert not _engine([], default='deny').check('read_file', [p], None).allowed
    assert _engine([], default='allow').check('read_file', [p], None).allowed


def test_unknown_tool_always_denied():
    for default in ('allow', 'deny'):
        d = _engine([], default=default).check('format_disk', [], None)
        assert not d.allowed
        assert d.kind == PolicyError.UNKNOWN_TOOL


def test_path_free_tool_skips_rules():
    assert _engine([], default='deny').check('system_info', [], None).allowed


def test_rule_grants_only_listed_operations(tmp_path: Path):
    root = tmp_path.resolve()
    eng = _engine([{'name': 'ro', 'paths': [f'{root}/**'], 'operations': ['read']}])
    assert eng.check('read_file', [str(root / 'src' / 'a.py')], None).allowed
    assert eng.check('ls', [str(root)], None).allowed
    d = eng.check('write_file', [str(root / 'src' / 'a.py')], None)
    assert not d.allowed
    assert d.kind == PolicyError.PATH_DENIED
    assert not eng.check('read_file', [str(root) + 'x/file'], None).allowed


def test_first_match_wins_and_order_matters(tmp_path: Path):
    root = tmp_path.resolve()
    secret = f'{root}/secret/**'
    everything = f'{root}/**'
    # a narrower rule that grants nothing does not shadow a later broad rule
    eng = _engine([
        {'name': 'secret-exec', 'paths': [secret], 'operations': ['exec']},
        {'name': 'all-read', 'paths': [everything], 'operations': ['read']},
    ])
    d = eng.check('read_file', [str(root / 'secret' / 'k')], None)
    assert d.allowed and d.rule == 'all-read'

    a = [
        {'name': 'first', 'paths': [everything], 'operations': ['read']},
        {'name': 'second', 'paths': [everything], 'operations': ['read', 'write']},
    ]
    assert _engine(a).check('read_file', [str(root / 'f')], None).rule == 'first'
    assert _engine(list(reversed(a))).check('read_file', [str(root / 'f')], None).rule == 'second'


def test_single_segment_glob_rule(tmp_path: Path):
    root = tmp_path.resolve()
    eng = _engine([{'name': 'notes', 'paths': [f'{root}/*/file.txt'], 'operations': ['read']}])
    assert eng.check('read_file', [str(root / 'a' / 'file.txt')], None).allowed
    assert not eng.check('read_file', [str(root / 'a' / 'b' / 'file.txt')], None).allowed


def test_conditions_need_claims(tmp_path: Path):
    root = tmp_path.resolve()
    eng = _engine([
        {'name': 'admins', 'paths': [f'{root}/**'], 'operations': ['write'], 'when': ['payload.role == "admin"']},
    ])
    p = str(root / 'f')
    assert eng.check('write_file', [p], {'role': 'admin'}).allowed
    assert not eng.check('write_file', [p], {'role': 'user'}).allowed
    assert not eng.check('write_file', [p], None).allowed
    # evaluation error counts as not matching
    assert not eng.check('write_file', [p], {'sub': 'x'}).allowed


def test_all_paths_must_be_allowed(tmp_path: Path):
    root = tmp_path.resolve()
    eng = _engine([{'name': 'a', 'paths': [f'{root}/a/**'], 'operations': ['read']}])
    assert eng.check('diff', [str(root / 'a' / '1'), str(root / 'a' / '2')], None).allowed
    assert not eng.check('diff', [str(root / 'a' / '1'), str(root / 'b' / '2')], None).allowed


def test_relative_paths_are_canonicalized(tmp_path: Path, monkeypatch):
    root = tmp_path.resolve()
    (root / 'sub').mkdir()
    monkeypatch.chdir(root / 'sub')
    eng = _engine([{'name': 'a', 'paths': [f'{root}/sub/**'], 'operations': ['read']}])
    assert eng.check('read_file', ['notes.txt'], None).allowed
    assert not eng.check('read_file', ['../outside.txt'], None).allowed


def test_invalid_path_denied():
    eng = _engine([], default='allow')
    d = eng.check('read_file', [''], None)
    assert not d.allowed
    assert d.kind == PolicyError.INVALID_PATH
    with pytest.raises(PolicyError):
        canonicalize(None)


def test_decisions_are_deterministic(tmp_path: Path):
    root = tmp_path.resolve()
    eng = _engine([{'name': 'a', 'paths': [f'{root}/**'], 'operations': ['read']}])
    p = [str(root / 'x')]
    first = eng.check('read_file', p, {'role': 'x'})
    for _ in range(20):
        assert eng.check('read_file', p, {'role': 'x'}) == first


def test_enforce_raises_policy_error(tmp_path: Path):
    eng = _engine([])
    with pytest.raises(PolicyError) as ei:
        eng.enforce('write_file', [str(tmp_path / 'x')], None)
    assert ei.value.code == 'E_FORBIDDEN'
    assert 'access denied' in ei.value.message


def test_bad_rules_fail_at_construction():
    with pytest.raises(ConfigError):
        _engine([
            {'name': 'dup', 'paths': ['/a/**'], 'operations': ['read']},
            {'name': 'dup', 'paths': ['/b/**'], 'operations': ['read']},
        ])
    with pytest.raises(ConfigError):
        _engine([{'name': 'bad', 'paths': ['/a/[x'], 'operations': ['read']}])
    with pytest.raises(CompileError):
        _engine([{'name': 'c', 'paths': ['/a/**'], 'operations': ['read'], 'when': ['payload.role ==']}])
    # compiled even while disabled
    with pytest.raises(CompileError):
        _engine([{'name': 'c', 'paths': ['/a/**'], 'operations': ['read'], 'when': ['os.system("x")']}], enabled=False)
