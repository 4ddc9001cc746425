"""Single-use working directories for compile and run steps."""
import contextlib
import logging
import os
import shutil
import stat
import tempfile

from .errors import WorkspaceError

log = logging.getLogger(__name__)


@contextlib.contextmanager
def workspace(prefix: str = 'judge-', root: str | None = None):
    """Create a fresh directory and remove it on every exit path.

    Yields:
        str, absolute path of the directory.

    Raises:
        WorkspaceError: the directory could not be created (typically a
            full or read-only disk).
    """
    try:
        path = tempfile.mkdtemp(prefix=prefix, dir=root)
    except OSError as exc:
        raise WorkspaceError(f'cannot create workspace in {root or tempfile.gettempdir()}: {exc}') from exc
    try:
        yield path
    finally:
        remove_tree(path)


def write_file(path: str, data: str | bytes, mode: int = 0o644) -> None:
    """Write data to path, mapping disk errors to WorkspaceError."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    try:
        with open(path, 'wb') as f:
            f.write(data)
        os.chmod(path, mode)
    except OSError as exc:
        raise WorkspaceError(f'cannot write {path}: {exc}') from exc


def make_read_only(path: str) -> None:
    """Drop write permission on path and everything below it."""
    for dirpath, dirnames, filenames in os.walk(path):
        for name in filenames:
            _drop_write(os.path.join(dirpath, name))
        for name in dirnames:
            _drop_write(os.path.join(dirpath, name))
    _drop_write(path)


def remove_tree(path: str) -> None:
    """Remove path, restoring write permission where needed."""
    def onexc(func, failed, exc):
        parent = os.path.dirname(failed)
        try:
            os.chmod(parent, os.stat(parent).st_mode | stat.S_IWUSR | stat.S_IXUSR)
            if os.path.isdir(failed) and not os.path.islink(failed):
                os.chmod(failed, os.stat(failed).st_mode | stat.S_IWUSR | stat.S_IXUSR)
            func(failed)
        except OSError as err:
            log.warning('could not remove %s: %s', failed, err)

    if os.path.isdir(path):
        os.chmod(path, os.stat(path).st_mode | stat.S_IWUSR | stat.S_IXUSR)
        shutil.rmtree(path, onexc=onexc)


def _drop_write(path: str) -> None:
    if os.path.islink(path):
        return
    mode = os.stat(path).st_mode
    os.chmod(path, mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))
