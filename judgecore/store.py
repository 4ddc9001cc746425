"""Relational storage of problems, submissions and judging results.

The tables mirror the online judge's data model; only the columns the
engine reads or writes are modelled.  JudgeStore is the only way the
engine touches the database.  Every state change it makes is a single
conditional UPDATE or a single transaction, so that concurrent workers
(threads or processes) never need any lock other than the judging lease
kept in the submission row itself.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (Boolean, Float, ForeignKey, Integer, String, Text,
                        create_engine, delete, or_, select, update)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import (AlreadyJudged, JudgeError, LanguageNotFound, LeaseLost, LeaseTimeout,
                     ProblemNotFound, SubmissionNotFound)
from .languages import LanguageConfigError, LanguageProfile, Languages
from .model import JudgeOutcome, JudgingSpec, TestcaseSpec, effective_limits
from .verdict import NON_TERMINAL, Status

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Language(Base):
    __tablename__ = 'languages'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # key into languages.yaml, used when the row carries no run command
    key: Mapped[str] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(50))
    version: Mapped[str] = mapped_column(String(50), default='')
    source_ext: Mapped[str | None] = mapped_column(String(10))
    binary_ext: Mapped[str | None] = mapped_column(String(10))
    compile_command: Mapped[str | None] = mapped_column(String(200))
    run_command: Mapped[str | None] = mapped_column(String(200))
    skip_memory_rlimit: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=True)
    template_code: Mapped[str] = mapped_column(Text, default='')


class Problem(Base):
    __tablename__ = 'problems'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(256), default='')
    time_limit_ms: Mapped[int] = mapped_column(Integer, default=1000)
    memory_limit_kb: Mapped[int] = mapped_column(Integer, default=262144)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    comparison_policy: Mapped[str | None] = mapped_column(String(200))
    total_submissions: Mapped[int] = mapped_column(Integer, default=0)
    accepted_submissions: Mapped[int] = mapped_column(Integer, default=0)


class ProblemLanguage(Base):
    __tablename__ = 'problem_languages'

    problem_id: Mapped[int] = mapped_column(ForeignKey('problems.id'), primary_key=True)
    language_id: Mapped[int] = mapped_column(ForeignKey('languages.id'), primary_key=True)
    time_limit_ms: Mapped[int | None] = mapped_column(Integer)
    memory_limit_kb: Mapped[int | None] = mapped_column(Integer)
    template_code: Mapped[str | None] = mapped_column(Text)


class Testcase(Base):
    __tablename__ = 'testcases'
    __test__ = False

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    problem_id: Mapped[int] = mapped_column(ForeignKey('problems.id'), index=True)
    # priority order; testcases with equal position are ordered by id
    position: Mapped[int] = mapped_column(Integer, default=0)
    input: Mapped[str] = mapped_column(Text, default='')
    expected_output: Mapped[str] = mapped_column(Text, default='')
    is_sample: Mapped[bool] = mapped_column(Boolean, default=False)
    points: Mapped[int] = mapped_column(Integer, default=1)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)


class Submission(Base):
    __tablename__ = 'submissions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(64))
    problem_id: Mapped[int] = mapped_column(ForeignKey('problems.id'), index=True)
    language_id: Mapped[int] = mapped_column(ForeignKey('languages.id'))
    code: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), default=Status.PENDING.value, index=True)
    time_execution: Mapped[int | None] = mapped_column(Integer)
    memory_usage: Mapped[int | None] = mapped_column(Integer)
    score: Mapped[float | None] = mapped_column(Float)
    message: Mapped[str | None] = mapped_column(Text)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)
    judged_at: Mapped[datetime | None] = mapped_column()

    # judging lease
    claim_token: Mapped[str | None] = mapped_column(String(36))
    claim_expires_at: Mapped[float | None] = mapped_column(Float)
    claimed_by: Mapped[str | None] = mapped_column(String(100))
    attempt: Mapped[int] = mapped_column(Integer, default=0)

    # the problem counters are bumped at most once per submission
    counted_total: Mapped[bool] = mapped_column(Boolean, default=False)
    counted_accepted: Mapped[bool] = mapped_column(Boolean, default=False)


class SubmissionTestcase(Base):
    __tablename__ = 'submission_testcases'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_id: Mapped[int] = mapped_column(ForeignKey('submissions.id'), index=True)
    testcase_id: Mapped[int] = mapped_column(ForeignKey('testcases.id'))
    status: Mapped[str] = mapped_column(String(32))
    stdout: Mapped[str | None] = mapped_column(Text)
    output_truncated: Mapped[bool] = mapped_column(Boolean, default=False)
    runtime: Mapped[int] = mapped_column(Integer, default=0)
    memory: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text)


@dataclass(frozen=True)
class Claim:
    """Proof of holding the judging lease of one submission."""

    submission_id: int
    token: str
    attempt: int
    worker: str


_NON_TERMINAL = [s.value for s in NON_TERMINAL]


class JudgeStore(object):
    """Access to the judging state.

    Args:
        engine: SQLAlchemy engine.
        languages: default language profiles, used for Language rows
            that carry no run command of their own.
    """

    def __init__(self, engine: Engine, languages: Languages | None = None) -> None:
        self.engine = engine
        self.languages = languages if languages is not None else Languages()
        self._session = sessionmaker(engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # lease

    def claim(self, submission_id: int, worker: str, lease_seconds: float,
              wait_seconds: float = 0.0) -> Claim:
        """Take the judging lease of a submission.

        Succeeds when the submission is not terminal and nobody holds a
        live lease on it; an expired lease is taken over.  The status
        becomes COMPILING and the attempt counter is bumped.

        Raises:
            SubmissionNotFound: no such submission.
            AlreadyJudged: the submission is terminal.
            LeaseTimeout: someone else held the lease for all of
                wait_seconds.
        """
        deadline = time.monotonic() + wait_seconds
        delay = 0.05
        while True:
            token = str(uuid.uuid4())
            now = time.time()
            with self._session.begin() as session:
                stmt = (update(Submission)
                        .where(Submission.id == submission_id,
                               Submission.status.in_(_NON_TERMINAL),
                               or_(Submission.claim_token.is_(None),
                                   Submission.claim_expires_at < now))
                        .values(status=Status.COMPILING.value,
                                claim_token=token,
                                claim_expires_at=now + lease_seconds,
                                claimed_by=worker,
                                attempt=Submission.attempt + 1)
                        .execution_options(synchronize_session=False))
                if session.execute(stmt).rowcount == 1:
                    attempt = session.scalar(select(Submission.attempt).where(Submission.id == submission_id))
                    log.debug('submission %s claimed by %s (attempt %s)', submission_id, worker, attempt)
                    return Claim(submission_id, token, attempt, worker)
                row = session.execute(select(Submission.status, Submission.claimed_by)
                                      .where(Submission.id == submission_id)).first()
            if row is None:
                raise SubmissionNotFound(f'submission {submission_id} does not exist')
            if row.status not in _NON_TERMINAL:
                raise AlreadyJudged(f'submission {submission_id} is already {row.status}')
            if time.monotonic() + delay > deadline:
                raise LeaseTimeout(f'submission {submission_id} is being judged by {row.claimed_by}')
            time.sleep(delay)
            delay = min(delay * 2, 1.0)

    def renew(self, claim: Claim, lease_seconds: float) -> None:
        """Push the lease expiry forward.

        Raises:
            LeaseLost: the lease was taken over or released.
        """
        self._update_claimed(claim, claim_expires_at=time.time() + lease_seconds)

    def set_status(self, claim: Claim, status: Status, lease_seconds: float) -> None:
        """Record a non-terminal transition, renewing the lease."""
        if status.is_terminal:
            raise ValueError(f'{status} is terminal, use finish()')
        self._update_claimed(claim, status=status.value,
                             claim_expires_at=time.time() + lease_seconds)

    def release(self, claim: Claim) -> bool:
        """Give the lease back without a verdict; the submission is PENDING again.

        Returns:
            False if the lease had already been lost.
        """
        with self._session.begin() as session:
            stmt = (update(Submission)
                    .where(Submission.id == claim.submission_id,
                           Submission.claim_token == claim.token)
                    .values(status=Status.PENDING.value, claim_token=None,
                            claim_expires_at=None, claimed_by=None)
                    .execution_options(synchronize_session=False))
            released = session.execute(stmt).rowcount == 1
        if not released:
            log.warning('submission %s: lease of attempt %s was lost before release',
                        claim.submission_id, claim.attempt)
        return released

    def _update_claimed(self, claim: Claim, **values) -> None:
        with self._session.begin() as session:
            stmt = (update(Submission)
                    .where(Submission.id == claim.submission_id,
                           Submission.claim_token == claim.token)
                    .values(**values)
                    .execution_options(synchronize_session=False))
            if session.execute(stmt).rowcount != 1:
                raise LeaseLost(f'submission {claim.submission_id}: lease of attempt {claim.attempt} lost')

    # ------------------------------------------------------------------
    # terminal write

    def finish(self, claim: Claim, outcome: JudgeOutcome) -> None:
        """Persist a terminal outcome and drop the lease, atomically.

        The testcase rows of earlier attempts are replaced by those of
        this one, and the problem counters are bumped: the total on the
        first verdict the submission ever gets, the accepted count on
        its first ACCEPTED.

        Raises:
            LeaseLost: the lease was taken over; nothing is written.
        """
        if not outcome.status.is_terminal:
            raise ValueError(f'{outcome.status} is not a terminal status')
        with self._session.begin() as session:
            stmt = (update(Submission)
                    .where(Submission.id == claim.submission_id,
                           Submission.claim_token == claim.token)
                    .values(status=outcome.status.value,
                            time_execution=outcome.time_ms,
                            memory_usage=outcome.memory_kb,
                            score=outcome.score,
                            message=outcome.compile_output or outcome.message,
                            judged_at=_utcnow(),
                            claim_token=None, claim_expires_at=None, claimed_by=None)
                    .execution_options(synchronize_session=False))
            if session.execute(stmt).rowcount != 1:
                raise LeaseLost(f'submission {claim.submission_id}: lease of attempt {claim.attempt} lost')

            self._replace_results(session, claim.submission_id, outcome)
            self._count(session, claim.submission_id, outcome.status)

    def cancel(self, submission_id: int) -> bool:
        """Mark a submission nobody is judging as CANCELLED.

        Returns:
            False if it is terminal or has a live lease (a running
            coordinator then cancels it itself).
        """
        now = time.time()
        with self._session.begin() as session:
            stmt = (update(Submission)
                    .where(Submission.id == submission_id,
                           Submission.status.in_(_NON_TERMINAL),
                           or_(Submission.claim_token.is_(None),
                               Submission.claim_expires_at < now))
                    .values(status=Status.CANCELLED.value, judged_at=_utcnow(),
                            claim_token=None, claim_expires_at=None, claimed_by=None)
                    .execution_options(synchronize_session=False))
            if session.execute(stmt).rowcount != 1:
                return False
            session.execute(delete(SubmissionTestcase)
                            .where(SubmissionTestcase.submission_id == submission_id))
        return True

    @staticmethod
    def _replace_results(session, submission_id: int, outcome: JudgeOutcome) -> None:
        session.execute(delete(SubmissionTestcase)
                        .where(SubmissionTestcase.submission_id == submission_id))
        session.add_all([
            SubmissionTestcase(submission_id=submission_id,
                               testcase_id=result.testcase_id,
                               status=result.status.value,
                               stdout=result.stdout,
                               output_truncated=result.output_truncated,
                               runtime=result.time_ms,
                               memory=result.memory_kb,
                               message=result.message)
            for result in outcome.results
        ])

    @staticmethod
    def _count(session, submission_id: int, status: Status) -> None:
        problem_id = session.scalar(select(Submission.problem_id).where(Submission.id == submission_id))
        if status.is_verdict:
            first = session.execute(
                update(Submission)
                .where(Submission.id == submission_id, Submission.counted_total.is_(False))
                .values(counted_total=True)
                .execution_options(synchronize_session=False)).rowcount
            if first:
                session.execute(update(Problem)
                                .where(Problem.id == problem_id)
                                .values(total_submissions=Problem.total_submissions + 1)
                                .execution_options(synchronize_session=False))
        if status == Status.ACCEPTED:
            first = session.execute(
                update(Submission)
                .where(Submission.id == submission_id, Submission.counted_accepted.is_(False))
                .values(counted_accepted=True)
                .execution_options(synchronize_session=False)).rowcount
            if first:
                session.execute(update(Problem)
                                .where(Problem.id == problem_id)
                                .values(accepted_submissions=Problem.accepted_submissions + 1)
                                .execution_options(synchronize_session=False))

    # ------------------------------------------------------------------
    # administration

    def mark_rejudge(self, submission_id: int) -> bool:
        """Put a terminal submission back to PENDING.

        The previous results stay until the new attempt replaces them.

        Returns:
            False if the submission is not terminal or is deleted.
        """
        with self._session.begin() as session:
            stmt = (update(Submission)
                    .where(Submission.id == submission_id,
                           Submission.is_deleted.is_(False),
                           Submission.status.not_in(_NON_TERMINAL))
                    .values(status=Status.PENDING.value)
                    .execution_options(synchronize_session=False))
            return session.execute(stmt).rowcount == 1

    def mark_deleted(self, submission_id: int) -> None:
        """Soft-delete a submission.  A running judge stops at the next testcase."""
        with self._session.begin() as session:
            session.execute(update(Submission)
                            .where(Submission.id == submission_id)
                            .values(is_deleted=True)
                            .execution_options(synchronize_session=False))

    def is_cancelled(self, submission_id: int) -> bool:
        with self._session() as session:
            deleted = session.scalar(select(Submission.is_deleted).where(Submission.id == submission_id))
        return deleted is None or bool(deleted)

    # ------------------------------------------------------------------
    # discovery

    def pending_submissions(self, limit: int = 100) -> list[int]:
        with self._session() as session:
            return list(session.scalars(select(Submission.id)
                                        .where(Submission.status == Status.PENDING.value,
                                               Submission.claim_token.is_(None))
                                        .order_by(Submission.id)
                                        .limit(limit)))

    def stale_claims(self, now: float | None = None) -> list[int]:
        """Submissions whose lease expired before they reached a terminal state."""
        if now is None:
            now = time.time()
        with self._session() as session:
            return list(session.scalars(select(Submission.id)
                                        .where(Submission.status.in_(_NON_TERMINAL),
                                               Submission.claim_token.is_not(None),
                                               Submission.claim_expires_at < now)
                                        .order_by(Submission.id)))

    # ------------------------------------------------------------------
    # judging snapshots

    def load_judging_spec(self, submission_id: int) -> JudgingSpec:
        """Everything needed to judge a submission, read in one go.

        Raises:
            SubmissionNotFound: no such submission.
            ProblemNotFound, LanguageNotFound: the problem is gone, or the
                language is inactive or not offered for the problem.
            ProblemConfigError: the effective limits are not positive.
            LanguageConfigError: the language's templates are invalid.
        """
        with self._session() as session:
            submission = session.get(Submission, submission_id)
            if submission is None:
                raise SubmissionNotFound(f'submission {submission_id} does not exist')
            return self._snapshot(session, submission_id, submission.problem_id,
                                  submission.language_id, submission.code, samples_only=False)

    def load_sample_spec(self, problem_id: int, language_id: int, code: str) -> JudgingSpec:
        """Like load_judging_spec, for a test run on the sample testcases."""
        with self._session() as session:
            spec = self._snapshot(session, None, problem_id, language_id, code, samples_only=True)
        if not spec.testcases:
            raise JudgeError(f'problem {problem_id} has no sample testcases')
        return spec

    def _snapshot(self, session, submission_id, problem_id, language_id, code, samples_only) -> JudgingSpec:
        problem = session.get(Problem, problem_id)
        if problem is None:
            raise ProblemNotFound(f'problem {problem_id} does not exist')
        language = session.get(Language, language_id)
        if language is None:
            raise LanguageNotFound(f'language {language_id} does not exist')
        if not language.is_active:
            raise LanguageNotFound(f'language {language.key} is not active')
        override = session.get(ProblemLanguage, (problem_id, language_id))
        # a problem without ProblemLanguage rows accepts every active language
        if override is None and session.scalar(select(ProblemLanguage.language_id)
                                               .where(ProblemLanguage.problem_id == problem_id)
                                               .limit(1)) is not None:
            raise LanguageNotFound(f'language {language.key} is not offered for problem {problem_id}')

        query = (select(Testcase)
                 .where(Testcase.problem_id == problem_id, Testcase.is_deleted.is_(False))
                 .order_by(Testcase.position, Testcase.id))
        if samples_only:
            query = query.where(Testcase.is_sample.is_(True))
        testcases = tuple(
            TestcaseSpec(id=tc.id, input=tc.input, expected_output=tc.expected_output,
                         position=tc.position, weight=tc.points, is_sample=tc.is_sample)
            for tc in session.scalars(query)
        )

        limits = effective_limits(problem.time_limit_ms, problem.memory_limit_kb,
                                  override.time_limit_ms if override else None,
                                  override.memory_limit_kb if override else None)
        return JudgingSpec(
            submission_id=submission_id,
            problem_id=problem_id,
            language=self.profile_for(language),
            limits=limits,
            source_code=code,
            testcases=testcases,
            policy=problem.comparison_policy or '',
        )

    def profile_for(self, language: Language) -> LanguageProfile:
        """Language profile of a Language row.

        A row without a run command takes its profile from the default
        language configuration, with the row's non-empty fields on top.
        """
        spec = {}
        if language.name:
            spec['name'] = language.name
        if language.source_ext:
            spec['source_ext'] = language.source_ext
        if language.run_command:
            spec['run'] = language.run_command
            spec['compile'] = language.compile_command
            spec['binary_ext'] = language.binary_ext
            spec['skip_memory_rlimit'] = bool(language.skip_memory_rlimit)
            return LanguageProfile(language.key, spec)

        default = self.languages.get(language.key)
        if default is None:
            raise LanguageConfigError(f'Language {language.key} has no run command and no default profile')
        profile = LanguageProfile(language.key, {key: getattr(default, key) for key in LanguageProfile.KEYS})
        profile.update(spec)
        return profile

    # ------------------------------------------------------------------
    # plain access, for the command line and tests

    def add(self, *rows: Base) -> None:
        with self._session.begin() as session:
            session.add_all(rows)

    def get_submission(self, submission_id: int) -> Submission | None:
        with self._session() as session:
            return session.get(Submission, submission_id)

    def get_problem(self, problem_id: int) -> Problem | None:
        with self._session() as session:
            return session.get(Problem, problem_id)

    def get_results(self, submission_id: int) -> list[SubmissionTestcase]:
        with self._session() as session:
            return list(session.scalars(select(SubmissionTestcase)
                                        .where(SubmissionTestcase.submission_id == submission_id)
                                        .order_by(SubmissionTestcase.id)))

    def list_languages(self) -> list[Language]:
        with self._session() as session:
            return list(session.scalars(select(Language).order_by(Language.id)))


def create_store(url: str, languages: Languages | None = None, echo: bool = False,
                 create: bool = True) -> JudgeStore:
    """Open the database at url, creating missing tables unless create is False."""
    kwargs = {}
    if url.startswith('sqlite'):
        # sessions are used from worker threads; sqlite waits this long for locks
        kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
    store = JudgeStore(create_engine(url, echo=echo, **kwargs), languages)
    if create:
        store.create_all()
    return store
