"""Judging of one submission from claim to terminal write.

    PENDING --claim--> COMPILING --+--> COMPILE_ERROR
                                   |
                                   +--> RUNNING --> ACCEPTED, WRONG_ANSWER,
                                                    TIME_LIMIT_EXCEEDED, ...

Any attempt can also end in INTERNAL_ERROR (bad language or problem
configuration) or CANCELLED (the submission was deleted or cancelled
while queued or between testcases).  Infrastructure faults do not end
the attempt with a verdict: the lease is released and the error
propagates to the caller, which decides whether to retry.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from . import logger
from .config import JudgeConfig
from .errors import LanguageNotFound, LeaseLost, LeaseTimeout, ProblemConfigError, ProblemNotFound
from .executor import TestcaseExecutor
from .languages import LanguageConfigError
from .model import JudgeEvent, JudgeOutcome, JudgingSpec, TestcaseResult
from .run.sandbox import Artifact, Sandbox
from .store import Claim, JudgeStore
from .verdict import Status, aggregate

log = logging.getLogger(__name__)

Listener = Callable[[JudgeEvent], None]
TestcaseListener = Callable[[int | None, TestcaseResult], None]


def _nothing(*args) -> None:
    pass


def _never() -> bool:
    return False


class Coordinator(object):
    """Runs the judging state machine for submissions in a JudgeStore.

    One Coordinator may be shared by several worker threads.
    """

    def __init__(self, store: JudgeStore, sandbox: Sandbox, config: JudgeConfig) -> None:
        self.store = store
        self.sandbox = sandbox
        self.config = config
        self.executor = TestcaseExecutor(sandbox, config.comparison.policy)
        self._listeners: list[Listener] = []
        self._testcase_listeners: list[TestcaseListener] = []

    def add_listener(self, listener: Listener) -> None:
        """Call listener with a JudgeEvent after every terminal write."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def add_testcase_listener(self, listener: TestcaseListener) -> None:
        """Call listener with (submission id, TestcaseResult) as soon as a
        testcase has been judged, in completion order.

        Test runs report a submission id of None.  Results of an attempt
        that is later cancelled or abandoned are reported too.
        """
        self._testcase_listeners.append(listener)

    def remove_testcase_listener(self, listener: TestcaseListener) -> None:
        self._testcase_listeners.remove(listener)

    @staticmethod
    def worker_name() -> str:
        return f'{socket.gethostname()}:{os.getpid()}:{threading.current_thread().name}'

    def judge(self, submission_id: int, cancel: threading.Event | None = None) -> JudgeOutcome | None:
        """Judge a submission and persist the result.

        Returns:
            the persisted outcome, or None if the lease was lost midway
            (whoever took it over will write the result).

        Raises:
            LeaseTimeout: another worker kept the lease.
            AlreadyJudged, SubmissionNotFound: nothing to judge.
            InfrastructureError: the attempt failed for reasons outside
                the submission; the submission is PENDING again.
        """
        engine = self.config.engine
        claim = self.store.claim(submission_id, self.worker_name(),
                                 engine.lease_seconds, engine.lease_wait)
        sublog = logger.get_submission_logger(submission_id)
        sublog.debug('attempt %d started', claim.attempt)
        try:
            try:
                outcome = self._judge_claimed(claim, cancel)
            except LeaseLost:
                raise
            except BaseException:
                self.store.release(claim)
                raise
            self.store.finish(claim, outcome)
        except LeaseLost as err:
            sublog.warning('abandoning attempt %d: %s', claim.attempt, err)
            return None
        finally:
            if sublog.count.errors or sublog.count.warnings:
                log.info('submission %s attempt %d: %s', submission_id, claim.attempt, sublog.count)
            logger.forget(submission_id)

        sublog.info('judged: %s', outcome)
        self._emit(JudgeEvent.from_outcome(outcome, claim.attempt))
        return outcome

    def record_internal_error(self, submission_id: int, message: str) -> JudgeOutcome | None:
        """Give up on a submission: persist INTERNAL_ERROR as its verdict."""
        engine = self.config.engine
        try:
            claim = self.store.claim(submission_id, self.worker_name(),
                                     engine.lease_seconds, engine.lease_wait)
        except LeaseTimeout as err:
            log.error('submission %s: cannot record internal error: %s', submission_id, err)
            return None
        outcome = JudgeOutcome(submission_id, Status.INTERNAL_ERROR, message=message)
        try:
            self.store.finish(claim, outcome)
        except LeaseLost as err:
            log.error('submission %s: cannot record internal error: %s', submission_id, err)
            return None
        self._emit(JudgeEvent.from_outcome(outcome, claim.attempt))
        return outcome

    def test_run(self, problem_id: int, language_id: int, code: str) -> JudgeOutcome:
        """Judge code against the sample testcases of a problem.

        Nothing is persisted and no JudgeEvent is emitted; testcase
        listeners get the results with a submission id of None.
        """
        try:
            spec = self.store.load_sample_spec(problem_id, language_id, code)
        except (LanguageConfigError, ProblemConfigError) as err:
            return JudgeOutcome(None, Status.INTERNAL_ERROR, message=str(err))
        try:
            return self.run_spec(spec)
        finally:
            logger.forget(None)

    def _judge_claimed(self, claim: Claim, cancel: threading.Event | None) -> JudgeOutcome:
        submission_id = claim.submission_id
        lease = self.config.engine.lease_seconds

        def is_cancelled() -> bool:
            return (cancel is not None and cancel.is_set()) or self.store.is_cancelled(submission_id)

        if is_cancelled():
            return JudgeOutcome(submission_id, Status.CANCELLED, message='cancelled before judging')
        try:
            spec = self.store.load_judging_spec(submission_id)
        except (LanguageConfigError, ProblemConfigError, ProblemNotFound, LanguageNotFound) as err:
            # not retried
            logger.get_submission_logger(submission_id).error('cannot judge: %s', err)
            return JudgeOutcome(submission_id, Status.INTERNAL_ERROR, message=str(err))

        return self.run_spec(
            spec,
            is_cancelled=is_cancelled,
            on_running=lambda: self.store.set_status(claim, Status.RUNNING, lease),
            on_progress=lambda: self.store.renew(claim, lease),
        )

    def run_spec(self, spec: JudgingSpec,
                 is_cancelled: Callable[[], bool] = _never,
                 on_running: Callable[[], None] = _nothing,
                 on_progress: Callable[[], None] = _nothing) -> JudgeOutcome:
        """Compile and run a snapshot; the persistence-free part of judging."""
        sublog = logger.get_submission_logger(spec.submission_id)
        with self.sandbox.compile(spec.language, spec.source_code) as build:
            if not build.ok:
                sublog.info('compile error', extra={'additional_info': build.output})
                return JudgeOutcome(spec.submission_id, Status.COMPILE_ERROR,
                                    compile_output=build.output or None)
            on_running()
            results = self._run_testcases(spec, build.artifact, is_cancelled, on_progress)
        if results is None:
            sublog.info('cancelled between testcases')
            return JudgeOutcome(spec.submission_id, Status.CANCELLED, message='cancelled while running')
        return self.reduce(spec, results)

    def _run_testcases(self, spec: JudgingSpec, artifact: Artifact,
                       is_cancelled: Callable[[], bool],
                       on_progress: Callable[[], None]) -> list[TestcaseResult] | None:
        """Run all testcases, at most testcase_concurrency at a time.

        Returns:
            the results in priority order, or None if the submission was
            cancelled before all testcases had started.
        """
        stop = threading.Event()

        def run_one(testcase):
            if stop.is_set() or is_cancelled():
                stop.set()
                return None
            result = self.executor.judge_one(spec, testcase, artifact)
            self._emit_testcase(spec.submission_id, result)
            on_progress()
            return result

        testcases = spec.ordered_testcases()
        workers = max(1, min(self.config.engine.testcase_concurrency, len(testcases)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='testcase') as pool:
            futures = [pool.submit(run_one, testcase) for testcase in testcases]
            try:
                results = [future.result() for future in futures]
            except BaseException:
                stop.set()
                raise
        if stop.is_set():
            return None
        return results

    @staticmethod
    def reduce(spec: JudgingSpec, results: list[TestcaseResult]) -> JudgeOutcome:
        """Aggregate testcase results, given in priority order.

        The verdict is that of the first failing testcase, time and
        memory are maxima, and the score is the accepted share of the
        testcase weights, in percent.
        """
        weights = {testcase.id: testcase.weight for testcase in spec.testcases}
        total = sum(weights[r.testcase_id] for r in results)
        accepted = sum(weights[r.testcase_id] for r in results if r.status == Status.ACCEPTED)
        status = aggregate(r.status for r in results)
        if total > 0:
            score = round(100.0 * accepted / total, 2)
        else:
            score = 100.0 if status == Status.ACCEPTED else 0.0
        return JudgeOutcome(
            submission_id=spec.submission_id,
            status=status,
            time_ms=max((r.time_ms for r in results), default=0),
            memory_kb=max((r.memory_kb for r in results), default=0),
            score=score,
            results=list(results),
        )

    def _emit(self, event: JudgeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception('result listener %r failed for submission %s', listener, event.submission_id)

    def _emit_testcase(self, submission_id: int | None, result: TestcaseResult) -> None:
        for listener in list(self._testcase_listeners):
            try:
                listener(submission_id, result)
            except Exception:
                log.exception('testcase listener %r failed for submission %s', listener, submission_id)
