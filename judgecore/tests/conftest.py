import os
import shlex
import sys

import pytest

from judgecore import languages
from judgecore.config import EngineConfig, JudgeConfig, SandboxConfig
from judgecore.coordinator import Coordinator
from judgecore.run.sandbox import Sandbox, bwrap_error
from judgecore.store import Language, Problem, ProblemLanguage, Submission, Testcase, create_store

PYTHON = shlex.quote(sys.executable)

ADD = 'a, b = map(int, input().split())\nprint(a + b)\n'

# hosts without a usable bubblewrap run the suite unisolated
if bwrap_error() is not None:
    ISOLATION = {'isolation': 'none', 'unsafe': True}
else:
    ISOLATION = {'read_only': SandboxConfig().read_only + sorted({
        sys.prefix, sys.base_prefix, os.path.dirname(os.path.realpath(sys.executable))})}


class Seed(object):
    """Rows for a small judge database."""

    def __init__(self, store):
        self.store = store
        self._next_id = 100

    def _id(self):
        self._next_id += 1
        return self._next_id

    def language(self, key='py', compile=None, run=f'{PYTHON} {{source}}', **kwargs):
        row = Language(id=self._id(), key=key, name=key, source_ext='.py',
                       compile_command=compile, run_command=run, **kwargs)
        self.store.add(row)
        return row.id

    def problem(self, testcases=(('1 2\n', '3\n'),), samples=1, time_limit_ms=2000,
                memory_limit_kb=256 * 1024, **kwargs):
        problem = Problem(id=self._id(), title='sum', time_limit_ms=time_limit_ms,
                          memory_limit_kb=memory_limit_kb, **kwargs)
        self.store.add(problem)
        rows = []
        for position, testcase in enumerate(testcases):
            stdin, expected = testcase[:2]
            points = testcase[2] if len(testcase) > 2 else 1
            rows.append(Testcase(id=self._id(), problem_id=problem.id, position=position,
                                 input=stdin, expected_output=expected,
                                 is_sample=position < samples, points=points))
        self.store.add(*rows)
        return problem.id

    def override(self, problem_id, language_id, **kwargs):
        self.store.add(ProblemLanguage(problem_id=problem_id, language_id=language_id, **kwargs))

    def submission(self, problem_id, language_id, code=ADD, **kwargs):
        row = Submission(id=self._id(), user_id='alice', problem_id=problem_id,
                         language_id=language_id, code=code, **kwargs)
        self.store.add(row)
        return row.id


@pytest.fixture
def store(tmp_path):
    return create_store(f'sqlite:///{tmp_path / "judge.db"}', languages.load_language_config())


@pytest.fixture
def seed(store):
    return Seed(store)


@pytest.fixture
def isolation():
    return dict(ISOLATION)


@pytest.fixture
def sandbox_config(tmp_path):
    """Factory for sandbox settings that work on this host."""
    work = tmp_path / 'work'
    work.mkdir(exist_ok=True)

    def make(**overrides):
        return SandboxConfig(**{'workdir_root': str(work), **ISOLATION, **overrides})
    return make


@pytest.fixture
def judge_config(sandbox_config):
    return JudgeConfig(
        engine=EngineConfig(workers=2, testcase_concurrency=2, lease_seconds=30, lease_wait=0,
                            retry_backoff=0, dequeue_timeout=0.05, poll_interval=0.1),
        sandbox=sandbox_config(),
    )


@pytest.fixture
def coordinator(store, judge_config):
    return Coordinator(store, Sandbox(judge_config), judge_config)
