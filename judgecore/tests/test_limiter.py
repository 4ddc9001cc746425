import signal
import sys
import time

import psutil
import pytest

from judgecore.run.errors import SandboxError
from judgecore.run.limiter import LimitViolation, RunLimits, run_limited


def python(code):
    return [sys.executable, '-c', code]


@pytest.fixture
def files(tmp_path):
    paths = {name: str(tmp_path / name) for name in ('stdin', 'stdout', 'stderr')}
    (tmp_path / 'stdin').write_text('')
    return paths


def run(argv, limits, tmp_path, files, **kwargs):
    return run_limited(argv, limits, str(tmp_path),
                       infile=files['stdin'], outfile=files['stdout'], errfile=files['stderr'],
                       **kwargs)


def test_clean_exit(tmp_path, files):
    (tmp_path / 'stdin').write_text('21\n')
    result = run(python('print(2 * int(input()))'), RunLimits(wall_seconds=10), tmp_path, files)
    assert result.exit_code == 0
    assert not result.crashed
    assert result.violation is None
    assert open(files['stdout']).read() == '42\n'
    assert result.describe() == 'exit code 0'


def test_nonzero_exit(tmp_path, files):
    result = run(python('import sys; sys.stderr.write("boom"); sys.exit(3)'),
                 RunLimits(wall_seconds=10), tmp_path, files)
    assert result.crashed
    assert result.exit_code == 3
    assert result.violation is None
    assert open(files['stderr']).read() == 'boom'


def test_killed_by_signal(tmp_path, files):
    result = run(python('import os, signal; os.kill(os.getpid(), signal.SIGSEGV)'),
                 RunLimits(wall_seconds=10), tmp_path, files)
    assert result.crashed
    assert result.term_signal == signal.SIGSEGV
    assert result.describe() == 'killed by SIGSEGV'


def test_cpu_limit(tmp_path, files):
    result = run(python('while True: pass'),
                 RunLimits(wall_seconds=10, cpu_seconds=0.5), tmp_path, files)
    assert result.violation == LimitViolation.TIME
    assert result.wall_time < 5


def test_wall_limit_kills_sleeper(tmp_path, files):
    result = run(python('import time; time.sleep(30)'),
                 RunLimits(wall_seconds=0.5, cpu_seconds=5), tmp_path, files)
    assert result.violation == LimitViolation.TIME
    assert result.term_signal == signal.SIGKILL
    assert result.wall_time < 5


def test_memory_limit(tmp_path, files):
    code = 'import time\nx = b"a" * (256 << 20)\ntime.sleep(5)'
    result = run(python(code), RunLimits(wall_seconds=10, memory_kb=64 * 1024), tmp_path, files)
    assert result.violation == LimitViolation.MEMORY
    assert result.peak_memory_kb > 64 * 1024


def test_memory_reported(tmp_path, files):
    result = run(python('import time\nx = b"a" * (32 << 20)\ntime.sleep(0.3)'),
                 RunLimits(wall_seconds=10), tmp_path, files)
    assert result.violation is None
    assert result.peak_memory_kb >= 32 * 1024


def test_address_space_backstop_is_fixed(tmp_path, files):
    code = ('import resource\n'
            'soft, hard = resource.getrlimit(resource.RLIMIT_AS)\n'
            'print(soft == hard)\n'
            'try:\n'
            '    resource.setrlimit(resource.RLIMIT_AS, (resource.RLIM_INFINITY, hard))\n'
            'except ValueError:\n'
            '    print("refused")\n')
    result = run(python(code), RunLimits(wall_seconds=10, address_space_kb=1 << 20), tmp_path, files)
    assert result.exit_code == 0
    assert open(files['stdout']).read().split() == ['True', 'refused']


def test_output_limit(tmp_path, files):
    result = run(['head', '-c', '100000', '/dev/zero'],
                 RunLimits(wall_seconds=10, output_bytes=100), tmp_path, files)
    assert result.violation == LimitViolation.OUTPUT
    assert len(open(files['stdout'], 'rb').read()) <= 101


def test_output_at_limit_is_fine(tmp_path, files):
    result = run(['head', '-c', '100', '/dev/zero'],
                 RunLimits(wall_seconds=10, output_bytes=100), tmp_path, files)
    assert result.violation is None
    assert not result.crashed


def test_environment_is_replaced(tmp_path, files):
    result = run(python('import os; print(sorted(k for k in os.environ if k != "LC_CTYPE"))'),
                 RunLimits(wall_seconds=10), tmp_path, files, env={'ONLY': '1'})
    assert result.exit_code == 0
    assert open(files['stdout']).read().strip() == "['ONLY']"


def test_missing_executable(tmp_path, files):
    with pytest.raises(SandboxError):
        run([str(tmp_path / 'does-not-exist')], RunLimits(wall_seconds=10), tmp_path, files)


def test_empty_command(tmp_path, files):
    with pytest.raises(SandboxError):
        run([], RunLimits(wall_seconds=10), tmp_path, files)


def test_background_processes_are_killed(tmp_path, files):
    result = run(['sh', '-c', 'sleep 30 & echo $!'], RunLimits(wall_seconds=10), tmp_path, files)
    assert result.exit_code == 0
    pid = int(open(files['stdout']).read())
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                break
        except psutil.NoSuchProcess:
            break
        time.sleep(0.05)
    else:
        pytest.fail(f'background process {pid} survived the run')
