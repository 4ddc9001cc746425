"""Exceptions shared by the coordinator, the scheduler and the store."""


class JudgeError(Exception):
    """Base class for judging failures that are not verdicts."""
    pass


class InfrastructureError(JudgeError):
    """A system-caused failure.  The attempt may be retried."""
    pass


class LeaseTimeout(InfrastructureError):
    """The judging lease could not be acquired within the allowed wait."""
    pass


class LeaseLost(JudgeError):
    """The lease expired or was taken over; the attempt must be abandoned."""
    pass


class SubmissionNotFound(JudgeError):
    pass


class ProblemNotFound(JudgeError):
    pass


class LanguageNotFound(JudgeError):
    pass


class AlreadyJudged(JudgeError):
    """The submission is in a terminal state; re-judge it to run it again."""
    pass


class ProblemConfigError(JudgeError):
    """The problem or its language override cannot be judged as stored,
    such as non-positive limits.  Retrying does not help."""
    pass
