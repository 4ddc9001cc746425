import collections.abc
import os
import yaml
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .compare import parse_policy


class ConfigError(Exception):
    pass


def load_config(configuration_file: str, priority_dirs: list[Path] = []) -> dict:
    """Load a judgecore configuration file.

    Args:
        configuration_file (str): name of configuration file.  Name is
        relative to config directory so typically just a file name
        without paths, e.g. "languages.yaml".
        priority_dirs (list of Path): extra directories searched after
        the standard ones, so their content takes precedence.
    """
    res: dict | None = None

    for dirname in __config_file_paths() + priority_dirs:
        path = dirname / configuration_file
        new_config = None
        if path.is_file():
            try:
                with open(path, 'r') as config:
                    new_config = yaml.safe_load(config.read())
            except (yaml.parser.ParserError, yaml.scanner.ScannerError) as err:
                raise ConfigError(f'Config file {path}: failed to parse: {err}')
        if res is None:
            if new_config is None:
                raise ConfigError(f'Base configuration file {configuration_file} not found in {path}')
            res = new_config
        elif new_config is not None:
            __update_dict(res, new_config)

    assert res is not None, 'Failed to load config (should never happen, we should have hit an error in loop above)'
    return res


def __config_file_paths() -> list[Path]:
    """
    Paths in which to look for config files, by increasing order of
    priority (i.e., any config in the last path should take precedence
    over the others).
    """
    return [
        Path(__file__).parent / 'config',
        Path('/etc/judgecore'),
        Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config')) / 'judgecore',
    ]


def __update_dict(orig: dict, update: Mapping) -> None:
    """Deep update of a dictionary

    For each entry (k, v) in update such that both orig[k] and v are
    dictionaries, orig[k] is recurisvely updated to v.

    For all other entries (k, v), orig[k] is set to v.
    """
    for key, value in update.items():
        if key in orig and isinstance(value, collections.abc.Mapping) and isinstance(orig[key], collections.abc.Mapping):
            __update_dict(orig[key], value)
        else:
            orig[key] = value


class EngineConfig(BaseModel):
    """Worker pool, queue and lease settings."""

    workers: int = Field(default=2, ge=1)
    testcase_concurrency: int = Field(default=4, ge=1)
    sandbox_slots: int = Field(default=8, ge=1)
    queue_depth: int = Field(default=64, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0)
    dequeue_timeout: float = Field(default=0.5, gt=0)
    lease_seconds: float = Field(default=120.0, gt=0)
    lease_wait: float = Field(default=5.0, ge=0)
    poll_interval: float = Field(default=2.0, gt=0)
    slot_wait: float = Field(default=300.0, gt=0)

    model_config = ConfigDict(extra='forbid')


class LimitsConfig(BaseModel):
    """Limits that do not come from the problem itself.

    Times are in milliseconds, memory in KB and output in bytes.
    """

    output_bytes: int = Field(default=8 * 1024 * 1024, ge=1)
    stderr_bytes: int = Field(default=64 * 1024, ge=0)
    compile_time: int = Field(default=30000, ge=1)
    compile_memory: int = Field(default=1024 * 1024, ge=1)
    wall_factor: float = Field(default=2.0, ge=1)
    grace_ms: int = Field(default=500, ge=0)
    # RLIMIT_AS at this multiple of the memory limit, 0 for none.  A program
    # whose allocation fails at the backstop sees an ordinary allocation
    # failure, so it is usually judged RUNTIME_ERROR rather than
    # MEMORY_LIMIT_EXCEEDED
    address_space_factor: float = Field(default=0.0, ge=0)
    sample_interval: float = Field(default=0.01, gt=0)

    model_config = ConfigDict(extra='forbid')


class SandboxConfig(BaseModel):
    """How runs are isolated from the host.

    With isolation bwrap every compile and run step gets fresh user,
    network, pid and mount namespaces: no network, and a root holding
    only the read_only paths, its own scratch directory and the artifact.
    isolation none runs programs directly on the host and is only
    accepted together with unsafe.
    """

    isolation: Literal['bwrap', 'none'] = 'bwrap'
    unsafe: bool = False
    bwrap: str = 'bwrap'
    read_only: list[str] = ['/usr', '/bin', '/sbin', '/lib', '/lib32', '/lib64',
                            '/etc/alternatives', '/etc/ld.so.cache']
    wrapper: list[str] = []
    env: dict[str, str] = {'PATH': '/usr/local/bin:/usr/bin:/bin', 'LANG': 'C.UTF-8'}
    workdir_root: str | None = None
    open_files: int = Field(default=256, ge=3)

    @model_validator(mode='after')
    def _check_isolation(self) -> 'SandboxConfig':
        if self.isolation == 'none' and not self.unsafe:
            raise ValueError('isolation none runs submissions on the host; set unsafe: true to allow it')
        return self

    model_config = ConfigDict(extra='forbid')


class StoreConfig(BaseModel):
    url: str = 'sqlite:///judgecore.db'
    echo: bool = False

    model_config = ConfigDict(extra='forbid')


class ComparisonConfig(BaseModel):
    policy: str = ''

    @field_validator('policy')
    @classmethod
    def _check_policy(cls, value: str) -> str:
        # raises PolicyError, a ValueError, which pydantic reports
        parse_policy(value)
        return value

    model_config = ConfigDict(extra='forbid')


class JudgeConfig(BaseModel):
    engine: EngineConfig = EngineConfig()
    limits: LimitsConfig = LimitsConfig()
    sandbox: SandboxConfig = SandboxConfig()
    comparison: ComparisonConfig = ComparisonConfig()
    store: StoreConfig = StoreConfig()

    model_config = ConfigDict(extra='forbid')


def load_judge_config(priority_dirs: list[Path] = []) -> JudgeConfig:
    """Load and validate the engine configuration (judge.yaml)."""
    data = load_config('judge.yaml', priority_dirs)
    try:
        return JudgeConfig.model_validate(data or {})
    except ValidationError as err:
        raise ConfigError(f'Invalid judge configuration: {err}')
