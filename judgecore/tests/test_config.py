# -*- coding: utf-8 -*-
from pathlib import Path

import pytest

from judgecore import config

HERE = Path(__file__).parent


def config_paths_mock():
    return [HERE / 'config1', HERE / 'config2']


def test_load_basic_config(monkeypatch):
    monkeypatch.setattr(config, '__config_file_paths', config_paths_mock)

    conf = config.load_config('test.yaml')
    assert conf == {'prop1': 'hello', 'prop2': 5}


def test_load_updated_config(monkeypatch):
    monkeypatch.setattr(config, '__config_file_paths', config_paths_mock)

    conf = config.load_config('test2.yaml')
    assert conf == {'prop1': 'abc', 'prop2': 23, 'prop3': ['hello', 'world']}


def test_load_missing_config(monkeypatch):
    monkeypatch.setattr(config, '__config_file_paths', config_paths_mock)

    with pytest.raises(config.ConfigError):
        config.load_config('non_existent_file')


def test_load_broken_config(monkeypatch):
    monkeypatch.setattr(config, '__config_file_paths', config_paths_mock)

    with pytest.raises(config.ConfigError):
        config.load_config('broken.yaml')


def test_update_dict():
    update_dict = config.__dict__['__update_dict']

    dict1 = {'a': 1, 'b': {'sub1': 1, 'sub2': False}, 'c': 3}
    dict2 = {'b': {'sub3': 'new', 'sub2': 47}}
    dict3 = {'a': 0, 'b': 12}

    update_dict(dict1, dict2)
    assert dict1 == {'a': 1, 'b': {'sub1': 1, 'sub2': 47, 'sub3': 'new'}, 'c': 3}

    update_dict(dict1, dict3)
    assert dict1 == {'a': 0, 'b': 12, 'c': 3}


def test_default_judge_config():
    conf = config.load_judge_config()
    assert conf.engine.workers >= 1
    assert conf.limits.output_bytes == 8 * 1024 * 1024
    assert conf.sandbox.isolation == 'bwrap'
    assert not conf.sandbox.unsafe
    assert conf.comparison.policy == ''


def test_judge_config_priority_dir():
    conf = config.load_judge_config(priority_dirs=[HERE / 'config2'])
    assert conf.engine.workers == 7
    assert conf.sandbox.isolation == 'none'
    # untouched keys keep the packaged defaults
    assert conf.engine.queue_depth == 64


def test_judge_config_rejects_unknown_keys(tmp_path):
    (tmp_path / 'judge.yaml').write_text('engine:\n  wrokers: 3\n')
    with pytest.raises(config.ConfigError):
        config.load_judge_config(priority_dirs=[tmp_path])


def test_judge_config_rejects_bad_values(tmp_path):
    (tmp_path / 'judge.yaml').write_text('sandbox:\n  isolation: docker\n')
    with pytest.raises(config.ConfigError):
        config.load_judge_config(priority_dirs=[tmp_path])


def test_store_config():
    conf = config.load_judge_config()
    assert conf.store.url.startswith('sqlite:')
    assert conf.store.echo is False


def test_judge_config_rejects_bad_policy(tmp_path):
    (tmp_path / 'judge.yaml').write_text('comparison:\n  policy: float_tolerance\n')
    with pytest.raises(config.ConfigError):
        config.load_judge_config(priority_dirs=[tmp_path])


def test_judge_config_accepts_policy(tmp_path):
    (tmp_path / 'judge.yaml').write_text('comparison:\n  policy: tokens case_sensitive\n')
    assert config.load_judge_config(priority_dirs=[tmp_path]).comparison.policy == 'tokens case_sensitive'


def test_judge_config_refuses_silent_unsafe_mode(tmp_path):
    (tmp_path / 'judge.yaml').write_text('sandbox:\n  isolation: none\n')
    with pytest.raises(config.ConfigError, match='unsafe'):
        config.load_judge_config(priority_dirs=[tmp_path])
