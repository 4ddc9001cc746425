import logging

from judgecore import logger


def make_record(name, msg, additional_info=None):
    record = logging.LogRecord(name, logging.ERROR, __file__, 1, msg, None, None)
    if additional_info is not None:
        record.additional_info = additional_info
    return record


def test_submission_logger():
    log = logger.get_submission_logger(41)
    assert isinstance(log, logger.SubmissionLogger)
    assert log.name == 'judgecore.submission 41'
    assert logger.get_submission_logger(41) is log
    logger.forget(41)


def test_testcase_logger_is_below_submission():
    sublog = logger.get_submission_logger(42)
    tclog = logger.get_testcase_logger(42, 7)
    assert tclog.name == 'judgecore.submission 42.testcase 7'
    assert tclog.parent is sublog
    logger.forget(42)


def test_test_run_logger():
    assert logger.get_submission_logger(None).name == 'judgecore.submission test run'
    logger.forget(None)


def test_logger_class_is_restored():
    saved = logging.getLoggerClass()
    logger.get_submission_logger(43)
    assert logging.getLoggerClass() is saved
    assert not isinstance(logging.getLogger('judgecore.unrelated'), logger.SubmissionLogger)
    logger.forget(43)


def test_counter():
    log = logger.get_submission_logger(44)
    log.warning('careful')
    log.error('broken')
    log.error('broken again')
    log.info('fine')
    assert log.count.warnings == 1
    assert log.count.errors == 2
    assert str(log.count) == '2 errors, 1 warning'
    logger.forget(44)


def test_forget():
    logger.get_testcase_logger(45, 1)
    logger.get_testcase_logger(450, 1)
    logger.forget(45)
    names = logging.Logger.manager.loggerDict
    assert 'judgecore.submission 45' not in names
    assert 'judgecore.submission 45.testcase 1' not in names
    assert 'judgecore.submission 450.testcase 1' in names
    logger.forget(450)
    assert logger.get_submission_logger(45).count.errors == 0
    logger.forget(45)


def test_formatter_shortname():
    formatter = logger.JudgeLogFormatter(fmt='%(shortname)s: %(message)s', no_color=True)
    assert formatter.format(make_record('judgecore.submission 3.testcase 1', 'hi')) == 'submission 3.testcase 1: hi'
    assert formatter.format(make_record('sqlalchemy.engine', 'hi')) == 'sqlalchemy.engine: hi'


def test_formatter_additional_info():
    formatter = logger.JudgeLogFormatter(fmt='%(message)s', max_additional_info=2, no_color=True)
    assert formatter.format(make_record('x', 'compile error', 'one line\n')) == 'compile error (one line)'
    assert formatter.format(make_record('x', 'compile error', '   \n')) == 'compile error'
    text = formatter.format(make_record('x', 'compile error', 'a\nb\nc'))
    assert text == 'compile error:\n        a\n        b\n        [.....truncated to 2 lines.....]'


def test_formatter_without_additional_info():
    formatter = logger.JudgeLogFormatter(fmt='%(message)s', max_additional_info=0, no_color=True)
    assert formatter.format(make_record('x', 'compile error', 'a\nb')) == 'compile error'
