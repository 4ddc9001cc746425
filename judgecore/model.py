"""Plain data passed between the judging components.

The coordinator never walks the store's relation graph: everything it
needs for one submission is flattened into a JudgingSpec when the
submission is dispatched.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field

from .errors import ProblemConfigError
from .languages import LanguageProfile
from .verdict import Status


@dataclass(frozen=True)
class Limits:
    """Effective resource limits: time in milliseconds, memory in KB."""

    time_ms: int
    memory_kb: int

    def __post_init__(self) -> None:
        if self.time_ms <= 0 or self.memory_kb <= 0:
            raise ProblemConfigError(f'limits must be positive, got {self.time_ms} ms / {self.memory_kb} KB')

    @property
    def time_seconds(self) -> float:
        return self.time_ms / 1000.0

    @property
    def memory_mb(self) -> int:
        return max(1, math.ceil(self.memory_kb / 1024))


def effective_limits(time_ms: int, memory_kb: int,
                     override_time_ms: int | None = None,
                     override_memory_kb: int | None = None) -> Limits:
    """Per-language override if present, else the problem defaults.

    Each limit is resolved on its own, so an override may set only one
    of them.
    """
    return Limits(
        time_ms=override_time_ms if override_time_ms is not None else time_ms,
        memory_kb=override_memory_kb if override_memory_kb is not None else memory_kb,
    )


@dataclass(frozen=True)
class TestcaseSpec:
    __test__ = False

    id: int
    input: str
    expected_output: str
    position: int
    weight: int = 1
    is_sample: bool = False


@dataclass(frozen=True)
class JudgingSpec:
    submission_id: int | None
    problem_id: int
    language: LanguageProfile
    limits: Limits
    source_code: str
    testcases: tuple[TestcaseSpec, ...]
    policy: str = ''

    def ordered_testcases(self) -> list[TestcaseSpec]:
        """Testcases in priority order (position, then id)."""
        return sorted(self.testcases, key=lambda t: (t.position, t.id))


@dataclass
class TestcaseResult:
    __test__ = False

    testcase_id: int
    status: Status
    time_ms: int = 0
    memory_kb: int = 0
    stdout: str | None = None
    output_truncated: bool = False
    message: str | None = None


@dataclass
class JudgeOutcome:
    """Terminal result of one judging attempt."""

    submission_id: int | None
    status: Status
    time_ms: int = 0
    memory_kb: int = 0
    score: float | None = None
    results: list[TestcaseResult] = field(default_factory=list)
    compile_output: str | None = None
    message: str | None = None

    def __str__(self) -> str:
        details = []
        if self.results:
            details.append(f'{len(self.results)} testcases')
        if self.time_ms:
            details.append(f'CPU: {self.time_ms} ms')
        if self.memory_kb:
            details.append(f'mem: {self.memory_kb} KB')
        if self.message:
            details.append(self.message)
        if not details:
            return self.status.short
        return f'{self.status.short} [{", ".join(details)}]'


@dataclass(frozen=True)
class JudgeEvent:
    """Emitted once per terminal transition."""

    submission_id: int
    status: Status
    time_ms: int
    memory_kb: int
    score: float | None
    attempt: int
    results: tuple[TestcaseResult, ...]

    @classmethod
    def from_outcome(cls, outcome: JudgeOutcome, attempt: int) -> JudgeEvent:
        assert outcome.submission_id is not None
        return cls(
            submission_id=outcome.submission_id,
            status=outcome.status,
            time_ms=outcome.time_ms,
            memory_kb=outcome.memory_kb,
            score=outcome.score,
            attempt=attempt,
            results=tuple(outcome.results),
        )
