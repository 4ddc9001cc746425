"""Comparison of a program's output against the expected output.

A policy is given as a flags string.  Without flags the output is
compared line by line after trimming trailing whitespace from each line
and dropping every trailing blank line, as if the end of the whole output
were trimmed first, so any number of newlines at the end is accepted.
Interior whitespace, blank lines and line order must match exactly.
The other modes are

    exact                 byte-for-byte equality
    tokens                whitespace-separated tokens, case-insensitive
                          unless case_sensitive is given
    float                 tokens, numbers within 1e-6 absolute or relative

and the flags of the classic default output validator are understood as
well (any of them without an explicit mode selects token comparison):

    case_sensitive
    space_change_sensitive
    float_tolerance EPS
    float_absolute_tolerance EPS
    float_relative_tolerance EPS
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass


class PolicyError(ValueError):
    pass


MODES = ('trailing_whitespace', 'exact', 'tokens')


@dataclass(frozen=True)
class Policy:
    mode: str = 'trailing_whitespace'
    case_sensitive: bool = True
    space_change_sensitive: bool = False
    float_absolute_tolerance: float | None = None
    float_relative_tolerance: float | None = None

    @property
    def uses_floats(self) -> bool:
        return self.float_absolute_tolerance is not None or self.float_relative_tolerance is not None


@dataclass(frozen=True)
class Comparison:
    match: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.match


MATCH = Comparison(True)

_TOLERANCE_FLAGS = ('float_tolerance', 'float_absolute_tolerance', 'float_relative_tolerance')


def parse_policy(flags: str | None) -> Policy:
    """Parse a flags string into a Policy.

    Raises:
        PolicyError: unknown flag, missing or invalid tolerance value,
            or conflicting modes.
    """
    words = (flags or '').split()
    mode = None
    classic = False
    case_sensitive = False
    space_change_sensitive = False
    abs_tol = rel_tol = None

    i = 0
    while i < len(words):
        word = words[i]
        if word in MODES or word == 'float':
            new_mode = 'tokens' if word == 'float' else word
            if mode is not None and mode != new_mode:
                raise PolicyError(f'conflicting comparison modes {mode} and {word}')
            mode = new_mode
            if word == 'float':
                abs_tol = 1e-6 if abs_tol is None else abs_tol
                rel_tol = 1e-6 if rel_tol is None else rel_tol
        elif word == 'case_sensitive':
            classic = case_sensitive = True
        elif word == 'space_change_sensitive':
            classic = space_change_sensitive = True
        elif word in _TOLERANCE_FLAGS:
            if i + 1 >= len(words):
                raise PolicyError(f'{word} needs a value')
            value = _parse_tolerance(word, words[i + 1])
            i += 1
            classic = True
            if word != 'float_relative_tolerance':
                abs_tol = value
            if word != 'float_absolute_tolerance':
                rel_tol = value
        else:
            raise PolicyError(f'unknown comparison flag "{word}"')
        i += 1

    if mode is None:
        mode = 'tokens' if classic or abs_tol is not None else 'trailing_whitespace'
    if mode != 'tokens':
        if classic:
            raise PolicyError(f'flags {flags!r} only apply to token comparison')
        return Policy(mode=mode)
    return Policy(mode='tokens',
                  case_sensitive=case_sensitive,
                  space_change_sensitive=space_change_sensitive,
                  float_absolute_tolerance=abs_tol,
                  float_relative_tolerance=rel_tol)


def _parse_tolerance(flag: str, value: str) -> float:
    try:
        tolerance = float(value)
    except ValueError:
        raise PolicyError(f'{flag} needs a number, got "{value}"')
    if not math.isfinite(tolerance) or tolerance < 0:
        raise PolicyError(f'{flag} must be a non-negative number, got "{value}"')
    return tolerance


def compare(actual: str, expected: str, policy: Policy | str | None = None) -> Comparison:
    """Compare actual output with the expected output under policy."""
    if not isinstance(policy, Policy):
        policy = parse_policy(policy)
    if policy.mode == 'exact':
        if actual == expected:
            return MATCH
        return Comparison(False, _first_difference(actual.split('\n'), expected.split('\n')))
    if policy.mode == 'trailing_whitespace':
        return _compare_lines(actual, expected)
    return _compare_tokens(actual, expected, policy)


def truncate_output(data: bytes, ceiling: int) -> tuple[str, bool]:
    """At most ceiling bytes of captured output as text.

    Returns:
        pair (text, truncated) where truncated tells whether data was
        longer than ceiling.  Truncated output is never compared.
    """
    truncated = len(data) > ceiling
    if truncated:
        data = data[:ceiling]
    return data.decode('utf-8', 'replace'), truncated


def _normalize_lines(text: str) -> list[str]:
    lines = [line.rstrip() for line in text.split('\n')]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def _compare_lines(actual: str, expected: str) -> Comparison:
    got = _normalize_lines(actual)
    want = _normalize_lines(expected)
    if got == want:
        return MATCH
    return Comparison(False, _first_difference(got, want))


def _first_difference(got: list[str], want: list[str]) -> str:
    for lineno, (g, w) in enumerate(zip(got, want), start=1):
        if g != w:
            return f'line {lineno} differs'
    if len(got) < len(want):
        return f'output ended after {len(got)} lines, expected {len(want)}'
    return f'{len(got) - len(want)} extra lines of output'


_TOKEN_RE = re.compile(r'\S+|\s+')


def _compare_tokens(actual: str, expected: str, policy: Policy) -> Comparison:
    if policy.space_change_sensitive:
        got = _TOKEN_RE.findall(actual)
        want = _TOKEN_RE.findall(expected)
    else:
        got = actual.split()
        want = expected.split()

    for pos, (g, w) in enumerate(zip(got, want), start=1):
        if w.isspace() or g.isspace():
            if g != w:
                return Comparison(False, f'space change before token {(pos + 1) // 2}')
            continue
        if not _token_matches(g, w, policy):
            return Comparison(False, f'token {pos} differs: expected "{_clip(w)}", got "{_clip(g)}"')
    if len(got) < len(want):
        return Comparison(False, 'output ended early')
    if len(got) > len(want):
        return Comparison(False, 'trailing output')
    return MATCH


def _token_matches(got: str, want: str, policy: Policy) -> bool:
    if policy.uses_floats:
        expected = _as_float(want)
        if expected is not None:
            value = _as_float(got)
            if value is None:
                return False
            diff = abs(value - expected)
            if policy.float_absolute_tolerance is not None and diff <= policy.float_absolute_tolerance:
                return True
            if policy.float_relative_tolerance is not None and diff <= policy.float_relative_tolerance * abs(expected):
                return True
            return False
    if policy.case_sensitive:
        return got == want
    return got.lower() == want.lower()


def _as_float(token: str) -> float | None:
    try:
        value = float(token)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _clip(token: str, width: int = 30) -> str:
    return token if len(token) <= width else token[:width] + '...'
