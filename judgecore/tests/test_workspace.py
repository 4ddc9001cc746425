import os
import stat

import pytest

from judgecore.run.errors import WorkspaceError
from judgecore.run.workspace import make_read_only, remove_tree, workspace, write_file


def test_workspace_is_removed(tmp_path):
    with workspace(root=str(tmp_path)) as path:
        assert os.path.isdir(path)
        assert os.path.dirname(path) == str(tmp_path)
        write_file(os.path.join(path, 'data'), 'x')
    assert not os.path.exists(path)


def test_workspace_removed_on_error(tmp_path):
    with pytest.raises(RuntimeError):
        with workspace(root=str(tmp_path)) as path:
            raise RuntimeError('boom')
    assert not os.path.exists(path)


def test_workspace_in_missing_root(tmp_path):
    with pytest.raises(WorkspaceError):
        with workspace(root=str(tmp_path / 'missing')):
            pass


def test_write_file_mode(tmp_path):
    path = str(tmp_path / 'in')
    write_file(path, 'åäö', 0o444)
    assert open(path, encoding='utf-8').read() == 'åäö'
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o444


def test_write_file_error(tmp_path):
    with pytest.raises(WorkspaceError):
        write_file(str(tmp_path / 'missing' / 'file'), 'x')


def test_read_only_tree_can_be_removed(tmp_path):
    root = tmp_path / 'tree'
    (root / 'sub').mkdir(parents=True)
    (root / 'sub' / 'file').write_text('x')
    (root / 'file').write_text('y')

    make_read_only(str(root))
    for path in (root, root / 'sub', root / 'sub' / 'file', root / 'file'):
        assert not os.stat(path).st_mode & stat.S_IWUSR

    remove_tree(str(root))
    assert not root.exists()


def test_remove_missing_tree(tmp_path):
    remove_tree(str(tmp_path / 'nothing'))
