import pytest

from judgecore.errors import ProblemConfigError
from judgecore.languages import LanguageProfile
from judgecore.model import (JudgeEvent, JudgeOutcome, JudgingSpec, Limits, TestcaseResult,
                             TestcaseSpec, effective_limits)
from judgecore.verdict import Status


def test_effective_limits():
    assert effective_limits(1000, 65536) == Limits(1000, 65536)
    assert effective_limits(1000, 65536, 3000, None) == Limits(3000, 65536)
    assert effective_limits(1000, 65536, None, 1024) == Limits(1000, 1024)
    assert effective_limits(1000, 65536, 2000, 2048) == Limits(2000, 2048)


def test_limits_units():
    limits = Limits(time_ms=1500, memory_kb=1500)
    assert limits.time_seconds == 1.5
    assert limits.memory_mb == 2
    assert Limits(1, 1).memory_mb == 1


@pytest.mark.parametrize('time_ms, memory_kb', [(0, 1024), (1000, 0), (-5, 1024)])
def test_limits_must_be_positive(time_ms, memory_kb):
    with pytest.raises(ProblemConfigError):
        Limits(time_ms, memory_kb)


def test_testcase_order():
    profile = LanguageProfile('python3', {'name': 'Python 3', 'source_ext': '.py', 'run': 'python3 {source}'})
    testcases = (
        TestcaseSpec(id=5, input='', expected_output='', position=2),
        TestcaseSpec(id=9, input='', expected_output='', position=1),
        TestcaseSpec(id=3, input='', expected_output='', position=2),
    )
    spec = JudgingSpec(submission_id=1, problem_id=1, language=profile, limits=Limits(1000, 1024),
                       source_code='', testcases=testcases)
    assert [t.id for t in spec.ordered_testcases()] == [9, 3, 5]


def test_outcome_str():
    assert str(JudgeOutcome(1, Status.COMPILE_ERROR)) == 'CE'
    outcome = JudgeOutcome(1, Status.ACCEPTED, time_ms=12, memory_kb=3000,
                           results=[TestcaseResult(1, Status.ACCEPTED)])
    assert str(outcome) == 'AC [1 testcases, CPU: 12 ms, mem: 3000 KB]'


def test_event_from_outcome():
    results = [TestcaseResult(1, Status.ACCEPTED), TestcaseResult(2, Status.WRONG_ANSWER)]
    outcome = JudgeOutcome(7, Status.WRONG_ANSWER, time_ms=5, memory_kb=10, score=50.0, results=results)
    event = JudgeEvent.from_outcome(outcome, attempt=2)
    assert event.submission_id == 7
    assert event.status == Status.WRONG_ANSWER
    assert event.score == 50.0
    assert event.attempt == 2
    assert event.results == tuple(results)
