"""Command line entry point: run a judge server or judge single submissions."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

import colorlog

from . import config, languages
from .coordinator import Coordinator
from .errors import JudgeError
from .logger import JudgeLogFormatter
from .model import JudgeOutcome
from .run.errors import SandboxError
from .run.sandbox import Sandbox
from .scheduler import JudgeQueue
from .store import JudgeStore, create_store
from .verdict import Status

log = logging.getLogger('judgecore')


def argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Judge submissions of an online judge.')
    parser.add_argument('-l', '--log_level', default='info', help='set log level (debug, info, warning, error, critical)')
    parser.add_argument('-c', '--config_dir', type=Path, action='append', default=[],
                        help='extra directory with judge.yaml / languages.yaml, taking precedence over the standard ones (may be repeated)')
    parser.add_argument('-d', '--database', help='database URL, overriding store.url of the configuration')
    parser.add_argument(
        '--max_additional_info',
        type=int,
        default=15,
        help='maximum number of lines of additional info (e.g. compiler output) to display with a log message (set to 0 to disable additional info)',
    )
    commands = parser.add_subparsers(dest='command', required=True)

    serve = commands.add_parser('serve', help='judge PENDING submissions until interrupted')
    serve.add_argument('-w', '--workers', type=int, help='number of judging workers')

    judge = commands.add_parser('judge', help='judge the given submissions now')
    judge.add_argument('submission', type=int, nargs='+')

    rejudge = commands.add_parser('rejudge', help='judge the given terminal submissions again')
    rejudge.add_argument('submission', type=int, nargs='+')

    cancel = commands.add_parser('cancel', help='cancel the given submissions')
    cancel.add_argument('submission', type=int, nargs='+')

    test_run = commands.add_parser('test-run', help='run a source file against the samples of a problem, persisting nothing')
    test_run.add_argument('problem', type=int)
    test_run.add_argument('language', type=int, help='language id in the database')
    test_run.add_argument('source', type=Path)

    commands.add_parser('languages', help='list the configured languages')
    return parser


def initialize_logging(args: argparse.Namespace) -> None:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setFormatter(JudgeLogFormatter(max_additional_info=args.max_additional_info))
    logging.basicConfig(level=getattr(logging, args.log_level.upper()), handlers=[handler])


def build(args: argparse.Namespace) -> tuple[config.JudgeConfig, JudgeStore, Coordinator]:
    judge_config = config.load_judge_config(args.config_dir)
    langs = languages.load_language_config(args.config_dir)
    url = args.database or judge_config.store.url
    store = create_store(url, langs, echo=judge_config.store.echo)
    coordinator = Coordinator(store, Sandbox(judge_config), judge_config)
    return judge_config, store, coordinator


def serve(args: argparse.Namespace, coordinator: Coordinator) -> int:
    engine = coordinator.config.engine
    if args.workers:
        engine = engine.model_copy(update={'workers': args.workers})
    stopping = threading.Event()

    def handle_signal(signum, frame):
        log.info('received %s, shutting down', signal.Signals(signum).name)
        stopping.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    judge_queue = JudgeQueue(coordinator, engine)
    judge_queue.start(poll=True)
    log.info('judging with %d workers, %d sandbox slots', engine.workers, engine.sandbox_slots)
    try:
        stopping.wait()
    finally:
        judge_queue.stop(coordinator.config.engine.lease_seconds)
    return 0


def report(submission_id, outcome: JudgeOutcome | None) -> bool:
    if outcome is None:
        print(f'submission {submission_id}: taken over by another judge')
        return True
    print(f'submission {submission_id}: {outcome}')
    for result in outcome.results:
        line = f'    testcase {result.testcase_id}: {result.status.short} ({result.time_ms} ms, {result.memory_kb} KB)'
        if result.message and result.status != Status.ACCEPTED:
            line += f' {result.message}'
        print(line)
    if outcome.compile_output:
        print(outcome.compile_output)
    return outcome.status != Status.INTERNAL_ERROR


def judge_now(args: argparse.Namespace, store: JudgeStore, coordinator: Coordinator) -> int:
    errors = 0
    for submission_id in args.submission:
        try:
            if args.command == 'rejudge' and not store.mark_rejudge(submission_id):
                print(f'submission {submission_id}: not terminal or deleted, not rejudged')
                errors += 1
                continue
            if not report(submission_id, coordinator.judge(submission_id)):
                errors += 1
        except JudgeError as err:
            print(f'submission {submission_id}: {err}')
            errors += 1
    return 1 if errors else 0


def cancel(args: argparse.Namespace, store: JudgeStore) -> int:
    errors = 0
    for submission_id in args.submission:
        if store.cancel(submission_id):
            print(f'submission {submission_id}: cancelled')
        else:
            print(f'submission {submission_id}: terminal or being judged, not cancelled')
            errors += 1
    return 1 if errors else 0


def sample_run(args: argparse.Namespace, coordinator: Coordinator) -> int:
    code = args.source.read_text()
    try:
        outcome = coordinator.test_run(args.problem, args.language, code)
    except JudgeError as err:
        print(f'test run failed: {err}')
        return 1
    report('test run', outcome)
    return 0 if outcome.status == Status.ACCEPTED else 1


def list_languages(store: JudgeStore) -> int:
    rows = store.list_languages()
    for row in rows:
        try:
            profile = store.profile_for(row)
        except languages.LanguageConfigError as err:
            print(f'{row.id:4} {row.key}: invalid ({err})')
            continue
        state = '' if row.is_active else ' (inactive)'
        print(f'{row.id:4} {row.key}: {profile}{state}')
        if profile.compile:
            print(f'       compile: {profile.compile}')
        print(f'       run:     {profile.run}')
    if not rows:
        for profile in store.languages:
            print(f'   - {profile.lang_id}: {profile} (default, not in database)')
    return 0


def main(argv: list[str] | None = None) -> None:
    args = argparser().parse_args(argv)

    initialize_logging(args)

    try:
        _, store, coordinator = build(args)
    except (config.ConfigError, languages.LanguageConfigError, SandboxError) as err:
        print(f'ERROR: {err}')
        sys.exit(2)

    if args.command == 'serve':
        status = serve(args, coordinator)
    elif args.command in ('judge', 'rejudge'):
        status = judge_now(args, store, coordinator)
    elif args.command == 'cancel':
        status = cancel(args, store)
    elif args.command == 'test-run':
        status = sample_run(args, coordinator)
    else:
        status = list_languages(store)
    sys.exit(status)


if __name__ == '__main__':
    main()
