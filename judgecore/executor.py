"""Judging of one submission against one testcase."""
from __future__ import annotations

import logging

from . import logger
from .compare import Policy, compare, parse_policy
from .model import JudgingSpec, Limits, TestcaseResult, TestcaseSpec
from .run.limiter import LimitViolation, RunResult
from .run.sandbox import Artifact, Sandbox
from .verdict import Status

log = logging.getLogger(__name__)

_VIOLATION_STATUS = {
    LimitViolation.TIME: Status.TIME_LIMIT_EXCEEDED,
    LimitViolation.MEMORY: Status.MEMORY_LIMIT_EXCEEDED,
    LimitViolation.OUTPUT: Status.OUTPUT_TOO_LARGE,
}


class TestcaseExecutor(object):
    """Runs an artifact on a testcase and classifies the run.

    May be called from several threads at once; the only state shared
    between calls is the read-only artifact.
    """

    __test__ = False

    def __init__(self, sandbox: Sandbox, policy: Policy | str | None = None) -> None:
        self.sandbox = sandbox
        self.default_policy = policy if isinstance(policy, Policy) else parse_policy(policy)

    def judge_one(self, spec: JudgingSpec, testcase: TestcaseSpec, artifact: Artifact,
                  limits: Limits | None = None) -> TestcaseResult:
        """Run the artifact with the testcase input on stdin.

        The expected output is only used for comparison after the run.

        Raises:
            SandboxError: the run could not be carried out at all.
        """
        if limits is None:
            limits = spec.limits
        tclog = logger.get_testcase_logger(spec.submission_id, testcase.id)

        run = self.sandbox.execute(artifact, testcase.input, limits)
        result = self.classify(run, testcase, self.policy_for(spec))
        tclog.debug('%s: %s (%d ms, %d KB)', testcase.id, result.status.short,
                    result.time_ms, result.memory_kb)
        if result.status == Status.RUNTIME_ERROR and run.stderr:
            tclog.debug('runtime error', extra={'additional_info': run.stderr})
        return result

    def policy_for(self, spec: JudgingSpec) -> Policy:
        if spec.policy:
            return parse_policy(spec.policy)
        return self.default_policy

    @staticmethod
    def classify(run: RunResult, testcase: TestcaseSpec, policy: Policy) -> TestcaseResult:
        """Turn a finished run into a testcase verdict.

        Limit violations win over a crash, a crash wins over oversized
        output, and only a clean run of acceptable size is compared, so
        the partial output of an interrupted run never is.
        """
        result = TestcaseResult(
            testcase_id=testcase.id,
            status=Status.ACCEPTED,
            time_ms=int(round(run.cpu_time * 1000)),
            memory_kb=run.peak_memory_kb,
            stdout=run.stdout,
            output_truncated=run.output_truncated,
        )
        if run.violation is not None:
            result.status = _VIOLATION_STATUS[run.violation]
            result.message = run.describe()
        elif run.crashed:
            result.status = Status.RUNTIME_ERROR
            result.message = run.describe()
        elif run.output_truncated:
            result.status = Status.OUTPUT_TOO_LARGE
            result.message = 'output limit exceeded'
        else:
            comparison = compare(run.stdout or '', testcase.expected_output, policy)
            if not comparison:
                result.status = Status.WRONG_ANSWER
                result.message = comparison.reason
        return result
