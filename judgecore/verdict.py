"""Submission and testcase status vocabulary and the verdict reduction."""
from enum import StrEnum
from typing import Iterable


class Status(StrEnum):
    PENDING = 'PENDING'
    COMPILING = 'COMPILING'
    RUNNING = 'RUNNING'
    ACCEPTED = 'ACCEPTED'
    WRONG_ANSWER = 'WRONG_ANSWER'
    TIME_LIMIT_EXCEEDED = 'TIME_LIMIT_EXCEEDED'
    MEMORY_LIMIT_EXCEEDED = 'MEMORY_LIMIT_EXCEEDED'
    RUNTIME_ERROR = 'RUNTIME_ERROR'
    OUTPUT_TOO_LARGE = 'OUTPUT_TOO_LARGE'
    COMPILE_ERROR = 'COMPILE_ERROR'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    CANCELLED = 'CANCELLED'

    @property
    def short(self) -> str:
        return _SHORT[self]

    @property
    def is_terminal(self) -> bool:
        return self not in NON_TERMINAL

    @property
    def is_verdict(self) -> bool:
        """True for outcomes caused by the submitted code itself."""
        return self in VERDICTS


_SHORT = {
    Status.PENDING: 'PD',
    Status.COMPILING: 'CP',
    Status.RUNNING: 'RN',
    Status.ACCEPTED: 'AC',
    Status.WRONG_ANSWER: 'WA',
    Status.TIME_LIMIT_EXCEEDED: 'TLE',
    Status.MEMORY_LIMIT_EXCEEDED: 'MLE',
    Status.RUNTIME_ERROR: 'RTE',
    Status.OUTPUT_TOO_LARGE: 'OLE',
    Status.COMPILE_ERROR: 'CE',
    Status.INTERNAL_ERROR: 'JE',
    Status.CANCELLED: 'CAN',
}

NON_TERMINAL = frozenset({Status.PENDING, Status.COMPILING, Status.RUNNING})

VERDICTS = frozenset({
    Status.ACCEPTED,
    Status.WRONG_ANSWER,
    Status.TIME_LIMIT_EXCEEDED,
    Status.MEMORY_LIMIT_EXCEEDED,
    Status.RUNTIME_ERROR,
    Status.OUTPUT_TOO_LARGE,
    Status.COMPILE_ERROR,
})

# Statuses a single testcase run can end in.
TESTCASE_STATUSES = frozenset({
    Status.ACCEPTED,
    Status.WRONG_ANSWER,
    Status.TIME_LIMIT_EXCEEDED,
    Status.MEMORY_LIMIT_EXCEEDED,
    Status.RUNTIME_ERROR,
    Status.OUTPUT_TOO_LARGE,
})


def aggregate(statuses: Iterable[Status]) -> Status:
    """Reduce per-testcase statuses, given in priority order, to the
    submission status: the first non-accepted one, or ACCEPTED when
    every testcase matched.

    An empty sequence (a problem without testcases) is ACCEPTED.
    """
    for status in statuses:
        if status not in TESTCASE_STATUSES:
            raise ValueError(f'{status} is not a testcase status')
        if status != Status.ACCEPTED:
            return status
    return Status.ACCEPTED
