"""Compile and run untrusted programs.

A Sandbox turns a LanguageProfile and some source code into an Artifact
(the read-only directory holding the source and, for compiled languages,
the compiled program) and runs that artifact against one input at a
time.  Every run gets its own scratch directory as cwd, HOME and TMPDIR,
a scrubbed environment, and the limits of run_limited.

Unless isolation is turned off, every step runs under bubblewrap in
fresh user, network, pid and mount namespaces.  The new root holds the
configured read-only system directories, an empty /tmp, the scratch
directory and the artifact directory (writable only while compiling), so
a program has no network and cannot see the judge's files.
"""
from __future__ import annotations

import contextlib
import dataclasses
import functools
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass

from ..compare import truncate_output
from ..config import JudgeConfig
from ..languages import LanguageProfile
from ..model import Limits
from . import limit
from .errors import SandboxError
from .limiter import LimitViolation, RunLimits, RunResult, run_limited
from .workspace import make_read_only, workspace, write_file

log = logging.getLogger(__name__)

_BWRAP_OPTIONS = ['--unshare-all', '--die-with-parent', '--cap-drop', 'ALL']
_BWRAP_MOUNTS = ['--proc', '/proc', '--dev', '/dev', '--tmpfs', '/tmp']


@dataclass(frozen=True)
class Artifact:
    """A prepared program: shared by all runs of one submission."""

    profile: LanguageProfile
    directory: str

    def runcmd(self, memlim: int) -> list[str]:
        return self.profile.get_runcmd(self.directory, memlim)


@dataclass
class CompileResult:
    artifact: Artifact | None
    output: str = ''
    run: RunResult | None = None

    @property
    def ok(self) -> bool:
        return self.artifact is not None


class Sandbox(object):
    """Runs compile and execute steps, at most `slots` at a time."""

    def __init__(self, config: JudgeConfig) -> None:
        self.config = config
        self._slots = threading.BoundedSemaphore(config.engine.sandbox_slots)
        limit.check_limit_capabilities(log)
        if config.sandbox.isolation == 'none':
            log.warning('sandbox isolation is off: submissions can use the network and read the host file system')
        else:
            error = bwrap_error(config.sandbox.bwrap)
            if error is not None:
                raise SandboxError(f'cannot isolate runs with {config.sandbox.bwrap}: {error}')

    @contextlib.contextmanager
    def compile(self, profile: LanguageProfile, source_code: str):
        """Prepare source_code for running.

        The artifact directory exists until the with block is left.

        Yields:
            CompileResult, whose artifact is None when the code did not
            compile (output then holds the compiler messages).
        """
        with workspace(prefix='artifact-', root=self.config.sandbox.workdir_root) as directory:
            write_file(os.path.join(directory, profile.source_name), source_code)
            if not profile.has_compile_step:
                make_read_only(directory)
                yield CompileResult(Artifact(profile, directory))
                return

            limits = self.config.limits
            run_limits = RunLimits(
                cpu_seconds=limits.compile_time / 1000.0,
                wall_seconds=limits.compile_time * limits.wall_factor / 1000.0 + limits.grace_ms / 1000.0,
                memory_kb=limits.compile_memory,
            )
            argv = profile.get_compilecmd(directory, max(1, limits.compile_memory // 1024))
            log.debug('compile command: %s', argv)
            with workspace(prefix='compile-', root=self.config.sandbox.workdir_root) as scratch:
                result = self._run(argv, '', run_limits, cwd=directory, scratch=scratch)

            output = '\n'.join(part for part in (result.stdout, result.stderr) if part)
            if result.violation is not None:
                yield CompileResult(None, output or f'compiler {result.describe()}', result)
                return
            if result.crashed:
                yield CompileResult(None, output or f'compiler failed with {result.describe()}', result)
                return
            if '{binary}' in profile.run and not os.path.exists(os.path.join(directory, profile.binary_name)):
                yield CompileResult(None, output or 'compiler produced no executable', result)
                return
            make_read_only(directory)
            yield CompileResult(Artifact(profile, directory), output, result)

    def execute(self, artifact: Artifact, stdin: str, limits: Limits) -> RunResult:
        """Run the artifact once with stdin as its standard input.

        Raises:
            SandboxError: the program could not be started or no
                sandbox slot became free in time.
        """
        cfg = self.config.limits
        address_space = None
        if not artifact.profile.skip_memory_rlimit and cfg.address_space_factor > 0:
            address_space = int(limits.memory_kb * cfg.address_space_factor)
        run_limits = RunLimits(
            cpu_seconds=limits.time_seconds,
            wall_seconds=limits.time_seconds * cfg.wall_factor + cfg.grace_ms / 1000.0,
            memory_kb=limits.memory_kb,
            address_space_kb=address_space,
            output_bytes=cfg.output_bytes,
            open_files=self.config.sandbox.open_files,
        )
        argv = artifact.runcmd(limits.memory_mb)
        with workspace(prefix='run-', root=self.config.sandbox.workdir_root) as scratch:
            return self._run(argv, stdin, run_limits, cwd=scratch, scratch=scratch,
                             artifact=artifact.directory)

    def _run(self, argv, stdin, run_limits, cwd, scratch, artifact=None) -> RunResult:
        infile = os.path.join(scratch, '.stdin')
        outfile = os.path.join(scratch, '.stdout')
        errfile = os.path.join(scratch, '.stderr')
        write_file(infile, stdin, 0o444)

        env = dict(self.config.sandbox.env)
        env['HOME'] = scratch
        env['TMPDIR'] = scratch
        argv = self._wrap(self._isolate(argv, cwd, scratch, artifact), scratch, artifact or cwd)

        if not self._slots.acquire(timeout=self.config.engine.slot_wait):
            raise SandboxError(f'no sandbox slot free after {self.config.engine.slot_wait}s')
        try:
            result = run_limited(argv, run_limits, cwd,
                                 infile=infile, outfile=outfile, errfile=errfile,
                                 env=env,
                                 sample_interval=self.config.limits.sample_interval)
        finally:
            self._slots.release()

        stdout, truncated = truncate_output(_read_bounded(outfile, self.config.limits.output_bytes),
                                            self.config.limits.output_bytes)
        stderr, _ = truncate_output(_read_bounded(errfile, self.config.limits.stderr_bytes),
                                    self.config.limits.stderr_bytes)
        violation = result.violation
        if violation is None and truncated and run_limits.output_bytes is not None:
            # programs ignoring SIGXFSZ see EFBIG and usually exit non-zero
            violation = LimitViolation.OUTPUT
        return dataclasses.replace(result, stdout=stdout, stderr=stderr,
                                   output_truncated=truncated, violation=violation)

    def _isolate(self, argv, cwd, scratch, artifact):
        """Prefix argv with the bwrap command building the run's root.

        Without an artifact (compile steps) cwd is the artifact directory
        being built and is writable.
        """
        cfg = self.config.sandbox
        if cfg.isolation == 'none':
            return argv
        # the scrubbed environment may not have bwrap on its PATH
        prefix = [shutil.which(cfg.bwrap) or cfg.bwrap] + _BWRAP_OPTIONS
        for path in cfg.read_only:
            prefix += ['--ro-bind-try', path, path]
        prefix += _BWRAP_MOUNTS
        prefix += ['--bind', scratch, scratch]
        if artifact is None:
            prefix += ['--bind', cwd, cwd]
        else:
            prefix += ['--ro-bind', artifact, artifact]
        return prefix + ['--chdir', cwd, '--'] + argv

    def _wrap(self, argv, scratch, artifact):
        wrapper = self.config.sandbox.wrapper
        if not wrapper:
            return argv
        try:
            prefix = [word.format(workdir=scratch, artifact=artifact) for word in wrapper]
        except (KeyError, IndexError, ValueError) as err:
            raise SandboxError(f'bad sandbox wrapper {wrapper}: {err}') from err
        return prefix + argv


def _read_bounded(path: str, ceiling: int) -> bytes:
    """At most ceiling + 1 bytes of path, enough to tell whether it is too long."""
    try:
        with open(path, 'rb') as f:
            return f.read(ceiling + 1)
    except FileNotFoundError:
        return b''
    except OSError as exc:
        raise SandboxError(f'cannot read {path}: {exc}') from exc


@functools.lru_cache(maxsize=None)
def bwrap_error(bwrap: str = 'bwrap') -> str | None:
    """Why bwrap cannot isolate runs on this host, or None if it can."""
    if shutil.which(bwrap) is None:
        return f'{bwrap} not found'
    try:
        subprocess.run([bwrap] + _BWRAP_OPTIONS + ['--ro-bind', '/', '/'] + _BWRAP_MOUNTS + ['true'],
                       stdin=subprocess.DEVNULL, capture_output=True, timeout=30, check=True)
    except subprocess.CalledProcessError as err:
        return err.stderr.decode('utf-8', 'replace').strip() or f'exit status {err.returncode}'
    except (OSError, subprocess.TimeoutExpired) as err:
        return str(err)
    return None
