"""
Logging for judgecore.

Every submission being judged gets its own logger below the "judgecore"
root, and testcases get a logger below their submission:

  judgecore
  |
  +- submission 17: SubmissionLogger
  |     |
  |     +- testcase 3: SubmissionLogger
  |
  +- submission 18: SubmissionLogger

Each of these loggers carries a Counter filter, so after an attempt the
coordinator can tell how many warnings and errors were logged for the
submission itself (records from testcase loggers are counted by their own
Counter).  Handlers and formatting live on the root logger and are
set up by the command line entry point (see judge.initialize_logging);
library users get whatever their own logging configuration does.
"""

import logging
import threading

import colorlog


# ---------------------------------------------------------------------------
# Custom filters
# ---------------------------------------------------------------------------


class Counter(logging.Filter):
    """
    A stateful filter than counts the number of warnings and errors it has seen.
    """

    def __init__(self):
        super().__init__()
        self.errors: int = 0
        self.warnings: int = 0

    def __str__(self) -> str:
        def p(x):
            return "" if x == 1 else "s"

        return f"{self.errors} error{p(self.errors)}, {self.warnings} warning{p(self.warnings)}"

    def filter(self, record) -> bool:
        if record.levelno == logging.WARNING:
            self.warnings += 1
        if record.levelno >= logging.ERROR:
            self.errors += 1
        return True


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

FORMAT = "%(log_color)s%(levelname)-8s%(reset)s %(shortname)s: %(message)s"


class JudgeLogFormatter(colorlog.ColoredFormatter):
    """
    In addition to the attributes provided by colorlog, provides

    %(shortname)s  the part of the logger name below "judgecore", i.e.,
                   "submission 17.testcase 3"; the full name for other
                   loggers

    Long additional info, such as compiler output, is passed in the
    extra dict and appended below the message, cut to a fixed number of
    lines:
        log.info("compile error", extra={"additional_info": output})
    """

    def __init__(self, fmt=FORMAT, max_additional_info=15, **kwargs):
        super().__init__(fmt, **kwargs)
        self._max_additional_info = max_additional_info

    def __append_additional_info(self, msg: str, additional_info: str | None) -> str:
        if additional_info is None or self._max_additional_info <= 0:
            return msg
        additional_info = additional_info.rstrip()
        if not additional_info:
            return msg
        lines = additional_info.split("\n")
        if len(lines) == 1:
            return "%s (%s)" % (msg, lines[0])
        if len(lines) > self._max_additional_info:
            lines = lines[: self._max_additional_info] + [
                "[.....truncated to %d lines.....]" % self._max_additional_info
            ]
        return "%s:\n%s" % (msg, "\n".join(" " * 8 + line for line in lines))

    def format(self, record: logging.LogRecord) -> str:
        prefix = ROOT_NAME + "."
        record.shortname = record.name[len(prefix):] if record.name.startswith(prefix) else record.name
        result = super().format(record)
        return self.__append_additional_info(result, getattr(record, "additional_info", None))


# -------------------------------------------------------------------------------
# Custom Loggers
# -------------------------------------------------------------------------------

ROOT_NAME = "judgecore"


class SubmissionLogger(logging.Logger):
    """
    Logger for one submission, such as "judgecore.submission 17", or for
    one of its testcases, such as "judgecore.submission 17.testcase 3".

    The logger's count attribute gives access to its Counter filter. For
    instance,
        logger.count.errors
    contains the number of errors logged through this logger.

    Never instantiate this class yourself; use get_submission_logger()
    and get_testcase_logger().
    """

    def __init__(self, name, *args, **kwargs):
        logging.Logger.__init__(self, name, *args, **kwargs)

        self.propagate = True
        self.count = Counter()
        self.addFilter(self.count)


_class_lock = threading.Lock()


def _get(name: str) -> SubmissionLogger:
    # the logger class is process-wide state, and workers create loggers concurrently
    with _class_lock:
        return _get_unlocked(name)


def _get_unlocked(name: str) -> SubmissionLogger:
    saved_class = logging.getLoggerClass()
    try:
        logging.setLoggerClass(SubmissionLogger)
        return logging.getLogger(f"{ROOT_NAME}.{name}")
    finally:
        logging.setLoggerClass(saved_class)


def submission_logger_name(submission_id) -> str:
    return "submission %s" % ("test run" if submission_id is None else submission_id)


def get_submission_logger(submission_id) -> SubmissionLogger:
    """Return the logger for a submission, creating it if necessary.

    submission_id is None for test runs, which share one logger.
    """
    return _get(submission_logger_name(submission_id))


def get_testcase_logger(submission_id, testcase_id) -> SubmissionLogger:
    return _get(f"{submission_logger_name(submission_id)}.testcase {testcase_id}")


def forget(submission_id) -> None:
    """Drop the loggers of a submission once it is judged.

    A judge server sees an unbounded number of submissions, and the
    logging module keeps every logger it ever created.
    """
    name = f"{ROOT_NAME}.{submission_logger_name(submission_id)}"
    registry = logging.Logger.manager.loggerDict
    for key in list(registry):
        if key == name or key.startswith(name + "."):
            registry.pop(key, None)

