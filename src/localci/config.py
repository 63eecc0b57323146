# config.py
"""
Runner configuration.

`RunnerConfig` is the single immutable value handed to the runner factory,
the runners and the scheduler. It is resolved once by the CLI from, in
increasing precedence:
  - built-in defaults
  - the optional config file (`.localci.yml`, see CONFIG_FILE_NAMES)
  - command-line flags the user actually passed

The process environment is never modified; extra variables travel in
`RunnerConfig.environment`.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = (
    ".localci.yml",
    ".localci.yaml",
    ".github/.localci.yml",
    ".gitlab/.localci.yml",
)
USER_CONFIG_FILES = (
    ".localci.yml",
    ".config/localci/config.yml",
)

ConditionEvaluator = Callable[[str], bool]


class RunnerType(str, Enum):
    SHELL = "shell"
    DOCKER = "docker"


class SchedulingOrder(str, Enum):
    # dispatch in selection order, `needs` is not consulted
    UNORDERED = "unordered"
    # dispatch topological levels of `needs`
    NEEDS = "needs"


@dataclass(frozen=True)
class RunnerConfig:
    runner: RunnerType = RunnerType.SHELL
    dry_run: bool = False
    verbose: bool = False
    pull_images: bool = True
    timeout_minutes: float = 30
    environment: Mapping[str, str] = field(default_factory=dict)

    # docker backend
    default_image: str = "ubuntu:22.04"
    docker_binary: str = "docker"
    extra_volumes: tuple[str, ...] = ()
    network: str = ""

    # scheduling
    parallel: bool = False
    max_parallel: int = 0
    continue_on_error: bool = False
    order: SchedulingOrder = SchedulingOrder.UNORDERED

    condition_evaluator: Optional[ConditionEvaluator] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))
        object.__setattr__(self, "extra_volumes", tuple(self.extra_volumes))
        object.__setattr__(self, "runner", RunnerType(self.runner))
        object.__setattr__(self, "order", SchedulingOrder(self.order))
        if self.max_parallel < 0:
            raise ConfigError(f"max_parallel must not be negative, got {self.max_parallel}")

    def replace(self, **changes: Any) -> "RunnerConfig":
        """Copy with `changes` applied; None values are ignored."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})


# ----------------------------------------------------------------------
# Config file
# ----------------------------------------------------------------------

class DefaultsSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    runner: Literal["shell", "docker"] = "shell"
    timeout: float = Field(default=30, ge=0, description="Job timeout in minutes")
    parallel: bool = False
    max_parallel: int = Field(default=0, ge=0)
    continue_on_error: bool = False
    verbose: bool = False
    order: Literal["unordered", "needs"] = "unordered"


class DockerSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pull: bool = True
    network: str = ""
    volumes: list[str] = Field(default_factory=list)
    default_image: str = "ubuntu:22.04"


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


class FileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    defaults: DefaultsSection = Field(default_factory=DefaultsSection)
    environment: dict[str, str] = Field(default_factory=dict)
    docker: DockerSection = Field(default_factory=DockerSection)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _env_value(v) for k, v in value.items()}
        return value

    def to_runner_config(self) -> RunnerConfig:
        return RunnerConfig(
            runner=RunnerType(self.defaults.runner),
            verbose=self.defaults.verbose,
            pull_images=self.docker.pull,
            timeout_minutes=self.defaults.timeout,
            environment=self.environment,
            default_image=self.docker.default_image,
            extra_volumes=tuple(self.docker.volumes),
            network=self.docker.network,
            parallel=self.defaults.parallel,
            max_parallel=self.defaults.max_parallel,
            continue_on_error=self.defaults.continue_on_error,
            order=SchedulingOrder(self.defaults.order),
        )


def find_config_file(start: str | Path = ".", home: str | Path | None = None) -> Path | None:
    """Return the first existing config file, project locations before user ones."""
    base = Path(start)
    for name in CONFIG_FILE_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    home_dir = Path(home) if home is not None else Path.home()
    for name in USER_CONFIG_FILES:
        candidate = home_dir / name
        if candidate.is_file():
            return candidate
    return None


def load_file_config(path: str | Path) -> FileConfig:
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read config file: {e.strerror or e}", path=str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigError("config file is not valid YAML", path=str(path), error=str(e)) from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("config file must contain a mapping", path=str(path))

    try:
        config = FileConfig.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError("invalid config file", path=str(path), problems=problems) from e

    logger.debug("loaded config from %s", path)
    return config


def default_config_yaml() -> str:
    """YAML text for `config init`."""
    return yaml.safe_dump(FileConfig().model_dump(), sort_keys=False)


# ----------------------------------------------------------------------
# Environment input
# ----------------------------------------------------------------------

def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Parse `KEY=VALUE` strings from the command line."""
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigError(f"invalid environment variable '{pair}', expected KEY=VALUE")
        env[key] = value
    return env


def load_env_file(path: str | Path) -> dict[str, str]:
    """
    Read a dotenv-style file.

    Blank lines and `#` comments are skipped, an optional `export ` prefix is
    accepted, and matching surrounding quotes are stripped from values.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read env file: {e.strerror or e}", path=str(path)) from e

    env: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigError(f"invalid line {lineno} in env file: {line}", path=str(path))
        env[key] = _unquote(value.strip())
    return env
