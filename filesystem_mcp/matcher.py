"""Glob matching for canonical absolute paths.

Two pattern forms:
  - ``<prefix>/**`` matches ``<prefix>`` itself and anything beneath it.
  - anything else is a single-segment glob: ``*`` and ``?`` never cross ``/``,
    ``[...]`` is a character class (``[!...]`` or ``[^...]`` negated) and
    ``\\`` escapes the next character.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Pattern

RECURSIVE_SUFFIX = '/**'


class BadPattern(ValueError):
    pass


def _translate(pattern: str) -> str:
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == '*':
            out.append('[^/]*')
        elif c == '?':
            out.append('[^/]')
        elif c == '\\':
            if i >= n:
                raise BadPattern(f'trailing escape in {pattern!r}')
            out.append(re.escape(pattern[i]))
            i += 1
        elif c == '[':
            j = i
            if j < n and pattern[j] in '!^':
                j += 1
            if j < n and pattern[j] == ']':
                j += 1
            while j < n and pattern[j] != ']':
                j += 1
            if j >= n:
                raise BadPattern(f'unterminated character class in {pattern!r}')
            body = pattern[i:j]
            i = j + 1
            negate = body[:1] in ('!', '^')
            if negate:
                body = body[1:]
            if not body:
                raise BadPattern(f'empty character class in {pattern!r}')
            body = body.replace('\\', '\\\\').replace('[', '\\[').replace(']', '\\]')
            # a class never matches the separator
            out.append('[^/' + body + ']' if negate else '(?!/)[' + body + ']')
        else:
            out.append(re.escape(c))
    return '^' + ''.join(out) + '$'


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> Pattern[str]:
    try:
        return re.compile(_translate(pattern))
    except re.error as e:
        raise BadPattern(f'invalid pattern {pattern!r}: {e}') from e


def validate_pattern(pattern: str) -> None:
    """Raise BadPattern if `pattern` can never be used for matching."""
    if not pattern:
        raise BadPattern('empty pattern')
    if pattern.endswith(RECURSIVE_SUFFIX):
        return
    _compile(pattern)


def match_glob(pattern: str, path: str) -> bool:
    if pattern.endswith(RECURSIVE_SUFFIX):
        prefix = pattern[: -len(RECURSIVE_SUFFIX)]
        if not prefix:
            return path.startswith('/')
        return path == prefix or path.startswith(prefix + '/')
    try:
        return bool(_compile(pattern).match(path))
    except BadPattern:
        return False


def match_any(patterns: Iterable[str], path: str) -> bool:
    return any(match_glob(p, path) for p in patterns)
