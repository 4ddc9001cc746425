"""Run one program under CPU, wall-clock, memory and output limits.

The program is forked into its own session so that it and everything it
spawns form one process group.  rlimits give the kernel-enforced CPU,
address-space and file-size ceilings; a monitor thread enforces the
wall-clock deadline and samples the resident memory of the whole process
tree.  Whatever happens, the process group is SIGKILLed before
run_limited returns.
"""
from __future__ import annotations

import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from enum import StrEnum

import psutil

from . import limit
from .errors import SandboxError

log = logging.getLogger(__name__)


class LimitViolation(StrEnum):
    TIME = 'time'
    MEMORY = 'memory'
    OUTPUT = 'output'


@dataclass(frozen=True)
class RunLimits:
    """Limits for a single run.  None means unlimited.

    cpu_seconds is enforced with RLIMIT_CPU and checked against the
    measured CPU time; wall_seconds is the hard deadline after which the
    process group is killed, and must always be set.
    """

    wall_seconds: float
    cpu_seconds: float | None = None
    memory_kb: int | None = None
    address_space_kb: int | None = None
    output_bytes: int | None = None
    open_files: int | None = None


@dataclass
class RunResult:
    status: int
    cpu_time: float
    wall_time: float
    peak_memory_kb: int
    violation: LimitViolation | None = None
    # filled in by the sandbox from the captured files
    stdout: str | None = None
    stderr: str | None = None
    output_truncated: bool = False

    @property
    def exit_code(self) -> int | None:
        return os.WEXITSTATUS(self.status) if os.WIFEXITED(self.status) else None

    @property
    def term_signal(self) -> int | None:
        return os.WTERMSIG(self.status) if os.WIFSIGNALED(self.status) else None

    @property
    def crashed(self) -> bool:
        return not os.WIFEXITED(self.status) or bool(os.WEXITSTATUS(self.status))

    def describe(self) -> str:
        if self.violation is not None:
            return f'{self.violation} limit exceeded'
        if self.term_signal is not None:
            try:
                name = signal.Signals(self.term_signal).name
            except ValueError:
                name = str(self.term_signal)
            return f'killed by {name}'
        return f'exit code {self.exit_code}'


def run_limited(argv: list[str], limits: RunLimits, cwd: str,
                infile: str = '/dev/null', outfile: str = '/dev/null', errfile: str = '/dev/null',
                env: dict[str, str] | None = None,
                sample_interval: float = 0.01) -> RunResult:
    """Run argv with stdin/stdout/stderr redirected to the given files.

    Raises:
        SandboxError: the program could not be started (missing
            executable, bad working directory, ...).  This is never
            reported as a verdict.
    """
    if not argv:
        raise SandboxError('empty command')
    log.debug('run "%s < %s > %s 2> %s"', ' '.join(argv), infile, outfile, errfile)

    err_read, err_write = os.pipe()
    start = time.monotonic()
    try:
        pid = os.fork()
    except OSError as exc:
        os.close(err_read)
        os.close(err_write)
        raise SandboxError(f'fork failed: {exc}') from exc

    if pid == 0:  # child
        try:
            os.close(err_read)
            _exec_child(argv, limits, cwd, infile, outfile, errfile, env)
        except BaseException as exc:
            try:
                os.write(err_write, f'{type(exc).__name__}: {exc}'.encode('utf-8', 'replace'))
            finally:
                os._exit(127)
        os._exit(127)

    os.close(err_write)
    startup_error = _read_all(err_read)
    if startup_error:
        os.waitpid(pid, 0)
        _kill_group(pid)
        raise SandboxError(f'failed to start {argv[0]}: {startup_error.decode("utf-8", "replace")}')

    monitor = _Monitor(pid, start, limits, sample_interval)
    monitor.start()
    try:
        _, status, rusage = os.wait4(pid, 0)
    finally:
        monitor.finish()
        _kill_group(pid)
    wall_time = time.monotonic() - start

    cpu_time = rusage.ru_utime + rusage.ru_stime
    # ru_maxrss (KB on Linux) also counts the pre-exec image of the forked
    # judge, so it is only used when the monitor never saw the program.
    if monitor.samples:
        peak_kb = monitor.peak_rss // 1024
    else:
        peak_kb = int(rusage.ru_maxrss)

    violation = monitor.violation
    if violation is None:
        if os.WIFSIGNALED(status) and os.WTERMSIG(status) == signal.SIGXCPU:
            violation = LimitViolation.TIME
        elif limits.cpu_seconds is not None and cpu_time > limits.cpu_seconds:
            violation = LimitViolation.TIME
        elif os.WIFSIGNALED(status) and os.WTERMSIG(status) == signal.SIGXFSZ:
            violation = LimitViolation.OUTPUT
        elif monitor.samples and limits.memory_kb is not None and peak_kb > limits.memory_kb:
            violation = LimitViolation.MEMORY

    result = RunResult(status=status, cpu_time=cpu_time, wall_time=wall_time,
                       peak_memory_kb=peak_kb, violation=violation)
    log.debug('%s finished: %s, cpu %.3fs, wall %.3fs, %d KB',
              argv[0], result.describe(), cpu_time, wall_time, peak_kb)
    return result


def _exec_child(argv, limits, cwd, infile, outfile, errfile, env):
    # The Python interpreter internally sets some signal dispositions
    # to SIG_IGN (notably SIGPIPE), and unless we reset them manually
    # this leaks through to the program we exec.
    for name in ('SIGPIPE', 'SIGXFSZ', 'SIGXCPU'):
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), signal.SIG_DFL)

    os.setsid()

    limit.apply(limits)

    _setfd(0, infile, os.O_RDONLY)
    _setfd(1, outfile, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
    _setfd(2, errfile, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
    os.chdir(cwd)
    if env is None:
        os.execvp(argv[0], argv)
    else:
        os.execvpe(argv[0], argv, env)


def _setfd(fd, filename, flag):
    tmpfd = os.open(filename, flag, 0o600)
    os.dup2(tmpfd, fd)
    os.close(tmpfd)


def _read_all(fd) -> bytes:
    chunks = []
    try:
        while True:
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        os.close(fd)
    return b''.join(chunks)


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class _Monitor(threading.Thread):
    """Enforces the wall-clock deadline and samples resident memory."""

    def __init__(self, pid: int, start: float, limits: RunLimits, interval: float) -> None:
        super().__init__(name=f'monitor-{pid}', daemon=True)
        self._pid = pid
        self._deadline = start + limits.wall_seconds
        self._memory_bytes = limits.memory_kb * 1024 if limits.memory_kb is not None else None
        self._interval = interval
        self._done = threading.Event()
        self._lock = threading.Lock()
        self.violation: LimitViolation | None = None
        self.peak_rss = 0
        self.samples = 0

    def run(self) -> None:
        try:
            proc = psutil.Process(self._pid)
        except psutil.NoSuchProcess:
            proc = None
        while not self._done.is_set():
            if proc is not None:
                rss = _tree_rss(proc)
                if rss is not None:
                    self.samples += 1
                    self.peak_rss = max(self.peak_rss, rss)
                if rss is not None and self._memory_bytes is not None and rss > self._memory_bytes:
                    self._trip(LimitViolation.MEMORY)
                    return
            if time.monotonic() >= self._deadline:
                self._trip(LimitViolation.TIME)
                return
            self._done.wait(self._interval)

    def finish(self) -> None:
        with self._lock:
            self._done.set()
        self.join(timeout=5)

    def _trip(self, violation: LimitViolation) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self.violation = violation
            _kill_group(self._pid)


def _tree_rss(proc: psutil.Process) -> int | None:
    """Resident memory of proc and its descendants, None if proc is gone."""
    try:
        total = proc.memory_info().rss
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
        return None
    for child in children:
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            continue
    return total
