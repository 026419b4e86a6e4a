from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple

from .config import PolicyConfig
from .errors import CompileError, ConfigError, EvalError, PolicyError
from .expressions import Program, compile_expression
from .matcher import BadPattern, match_any, validate_pattern

LOG = logging.getLogger('filesystem-mcp')


class Operation(str, Enum):
    READ = 'read'
    WRITE = 'write'
    EXEC = 'exec'


class Tool(Enum):
    """Every tool the gateway serves, with its fixed operation category.

    Path-free tools carry no category and are never policy-checked.
    """

    LS = ('ls', Operation.READ)
    READ_FILE = ('read_file', Operation.READ)
    SEARCH = ('search', Operation.READ)
    DIFF = ('diff', Operation.READ)
    WRITE_FILE = ('write_file', Operation.WRITE)
    EDIT_FILE = ('edit_file', Operation.WRITE)
    EXEC = ('exec', Operation.EXEC)
    PROCESS_STATUS = ('process_status', Operation.EXEC)
    PROCESS_KILL = ('process_kill', Operation.EXEC)
    SYSTEM_INFO = ('system_info', None)

    def __init__(self, tool_name: str, category: Optional[Operation]):
        self.tool_name = tool_name
        self.category = category

    @property
    def path_free(self) -> bool:
        return self.category is None

    @classmethod
    def lookup(cls, name: str) -> Optional['Tool']:
        for t in cls:
            if t.tool_name == name:
                return t
        return None


@dataclass(frozen=True)
class Rule:
    name: str
    paths: Tuple[str, ...]
    operations: FrozenSet[Operation]
    when: Tuple[str, ...]
    programs: Tuple[Program, ...]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    kind: Optional[str] = None
    # name of the rule that granted access; for server-side logs only
    rule: Optional[str] = None

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise PolicyError(self.kind or PolicyError.PATH_DENIED, self.reason or 'access denied')


ALLOW = Decision(allowed=True)


def canonicalize(path: str) -> str:
    """Absolute, symlink-resolved form of `path`; PolicyError when impossible."""
    if not isinstance(path, str) or not path:
        raise PolicyError(PolicyError.INVALID_PATH, f'access denied: invalid path {path!r}')
    try:
        return str(Path(path).expanduser().resolve())
    except (OSError, ValueError, RuntimeError):
        raise PolicyError(PolicyError.INVALID_PATH, f'access denied: invalid path {path!r}')


def _compile_rules(config: PolicyConfig) -> Tuple[Rule, ...]:
    seen = set()
    rules: List[Rule] = []
    for rc in config.rules:
        if rc.name in seen:
            raise ConfigError(f'duplicate rule name {rc.name!r}')
        seen.add(rc.name)
        for pattern in rc.paths:
            try:
                validate_pattern(pattern)
            except BadPattern as e:
                raise ConfigError(f'rule {rc.name!r}: {e}') from e
        programs = []
        for expr in rc.when:
            try:
                programs.append(compile_expression(expr))
            except CompileError as e:
                raise CompileError(f'rule {rc.name!r}: {e.message}') from e
        rules.append(Rule(
            name=rc.name,
            paths=tuple(rc.paths),
            operations=frozenset(Operation(op) for op in rc.operations),
            when=tuple(rc.when),
            programs=tuple(programs),
        ))
    return tuple(rules)


class PolicyEngine:
    """Path- and operation-scoped access rules, compiled once.

    Rules are scanned in declaration order and the first rule whose
    conditions, path patterns and operations all match grants access. When no
    rule matches, the configured default decision applies.
    """

    def __init__(self, config: PolicyConfig):
        self._enabled = config.enabled
        self._default_allow = config.default_policy == 'allow'
        self._rules = _compile_rules(config)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    def check(self, tool_name: str, paths: Iterable[str], claims: Optional[Any]) -> Decision:
        if not self._enabled:
            return ALLOW
        tool = Tool.lookup(tool_name)
        if tool is None:
            return Decision(False, f'access denied: unknown tool {tool_name!r}', PolicyError.UNKNOWN_TOOL)
        if tool.path_free:
            return ALLOW
        return self.check_category(tool.category, paths, claims)

    def check_category(self, category: Operation, paths: Iterable[str], claims: Optional[Any]) -> Decision:
        if not self._enabled:
            return ALLOW
        category = Operation(category)
        granted_by = None
        for path in paths:
            decision = self._check_path(category, path, claims)
            if not decision.allowed:
                LOG.info('policy denied %s on %r (%s)', category.value, path, decision.kind)
                return decision
            granted_by = decision.rule
        return Decision(True, rule=granted_by)

    def enforce(self, tool_name: str, paths: Iterable[str], claims: Optional[Any]) -> None:
        self.check(tool_name, paths, claims).raise_for_denial()

    def _check_path(self, category: Operation, path: str, claims: Optional[Any]) -> Decision:
        try:
            abs_path = canonicalize(path)
        except PolicyError as e:
            return Decision(False, e.message, e.kind)

        for rule in self._rules:
            if not self._conditions_hold(rule, claims):
                continue
            if not match_any(rule.paths, abs_path):
                continue
            if category in rule.operations:
                return Decision(True, rule=rule.name)

        if self._default_allow:
            return ALLOW
        return Decision(False, f'access denied: {category.value} not allowed on {path!r}', PolicyError.PATH_DENIED)

    def _conditions_hold(self, rule: Rule, claims: Optional[Any]) -> bool:
        if not rule.programs:
            return True
        if claims is None:
            return False
        for prg in rule.programs:
            try:
                if prg.evaluate(claims) is not True:
                    return False
            except EvalError as e:
                LOG.error('policy condition evaluation error rule=%s expr=%r error=%s', rule.name, prg.expression, e.message)
                return False
        return True
