# model.py
"""
Provider-agnostic pipeline model.

Parsers build these objects once; the scheduler and runners only read them.
Every class is a frozen dataclass and every mapping is wrapped in a
read-only proxy, so a pipeline can be shared between worker threads.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import PipelineModelError

BACKOFF_STRATEGIES = ("constant", "linear", "exponential")


def _frozen_map(value: Mapping[str, Any] | None) -> Mapping[str, str]:
    items = {}
    for k, v in (value or {}).items():
        items[str(k)] = "" if v is None else str(v)
    return MappingProxyType(items)


def _freeze(obj: Any, name: str, value: Any) -> None:
    # frozen dataclasses only allow assignment through object.__setattr__
    object.__setattr__(obj, name, value)


# ----------------------------------------------------------------------
# Step directives
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunCommand:
    """A shell command (possibly multi-line)."""
    command: str

    @property
    def text(self) -> str:
        return self.command


@dataclass(frozen=True)
class UsesAction:
    """A reference to a reusable action, e.g. `actions/checkout@v4`."""
    action: str
    inputs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze(self, "inputs", _frozen_map(self.inputs))

    @property
    def name(self) -> str:
        return self.action.split("@", 1)[0]

    @property
    def ref(self) -> str:
        return self.action.split("@", 1)[1] if "@" in self.action else ""

    @property
    def text(self) -> str:
        return self.action


@dataclass(frozen=True)
class ScriptList:
    """An ordered list of shell commands run as one script."""
    commands: tuple[str, ...]

    def __post_init__(self) -> None:
        _freeze(self, "commands", tuple(self.commands))

    @property
    def text(self) -> str:
        return "\n".join(self.commands)


StepAction = Union[RunCommand, UsesAction, ScriptList]


# ----------------------------------------------------------------------
# Policies and side blocks
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    delay: str = ""
    backoff: str = "constant"
    # Empty conditions and exit_codes mean "retry on any failure".
    conditions: tuple[str, ...] = ()
    exit_codes: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise PipelineModelError(
                f"retry max_attempts must be at least 1, got {self.max_attempts}"
            )
        if self.backoff not in BACKOFF_STRATEGIES:
            raise PipelineModelError(
                f"unknown retry backoff '{self.backoff}'",
                allowed=", ".join(BACKOFF_STRATEGIES),
            )
        _freeze(self, "conditions", tuple(self.conditions))
        _freeze(self, "exit_codes", tuple(int(c) for c in self.exit_codes))


@dataclass(frozen=True)
class Container:
    image: str
    env: Mapping[str, str] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    options: str = ""
    ports: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "env", _frozen_map(self.env))
        _freeze(self, "volumes", tuple(self.volumes))
        _freeze(self, "ports", tuple(str(p) for p in self.ports))


@dataclass(frozen=True)
class Service:
    name: str
    image: str
    alias: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[str, ...] = ()
    command: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "env", _frozen_map(self.env))
        _freeze(self, "ports", tuple(str(p) for p in self.ports))
        _freeze(self, "command", tuple(self.command))


@dataclass(frozen=True)
class ArtifactConfig:
    paths: tuple[str, ...] = ()
    name: str = ""
    expire_in: str = ""
    when: str = ""
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "paths", tuple(self.paths))
        _freeze(self, "exclude", tuple(self.exclude))


@dataclass(frozen=True)
class CacheConfig:
    key: str = ""
    paths: tuple[str, ...] = ()
    policy: str = ""

    def __post_init__(self) -> None:
        _freeze(self, "paths", tuple(self.paths))


@dataclass(frozen=True)
class TriggerConfig:
    """Downstream pipeline trigger (GitLab `trigger:`)."""
    project: str = ""
    branch: str = ""
    strategy: str = ""
    include: str = ""


@dataclass(frozen=True)
class RunDefaults:
    shell: str = ""
    working_directory: str = ""


# ----------------------------------------------------------------------
# Step / Job / Pipeline
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job. Exactly one directive in `action`."""
    name: str
    action: StepAction
    env: Mapping[str, str] = field(default_factory=dict)
    working_dir: str = ""
    shell: str = ""
    condition: str = ""
    continue_on_error: bool = False
    retry: Optional[RetryPolicy] = None
    timeout_minutes: float = 0

    def __post_init__(self) -> None:
        if not isinstance(self.action, (RunCommand, UsesAction, ScriptList)):
            raise PipelineModelError(
                f"step '{self.name}' has an invalid directive: {type(self.action).__name__}"
            )
        _freeze(self, "env", _frozen_map(self.env))

    @classmethod
    def build(
        cls,
        name: str,
        *,
        run: str | None = None,
        uses: str | None = None,
        with_: Mapping[str, Any] | None = None,
        script: Iterable[str] | None = None,
        **kwargs: Any,
    ) -> "Step":
        """Build a step from loose fields, insisting on exactly one of run/uses/script."""
        given = [k for k, v in (("run", run), ("uses", uses), ("script", script)) if v is not None]
        if len(given) != 1:
            raise PipelineModelError(
                f"step '{name}' must define exactly one of run, uses or script",
                given=", ".join(given) or "none",
            )
        action: StepAction
        if run is not None:
            action = RunCommand(run)
        elif uses is not None:
            action = UsesAction(uses, with_ or {})
        else:
            action = ScriptList(tuple(script or ()))
        return cls(name=name, action=action, **kwargs)

    @property
    def run(self) -> str | None:
        return self.action.command if isinstance(self.action, RunCommand) else None

    @property
    def uses(self) -> str | None:
        return self.action.action if isinstance(self.action, UsesAction) else None

    @property
    def command_text(self) -> str:
        return self.action.text


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + execution target.

    `needs` names jobs that must finish before this one when the scheduler
    runs in dependency order.
    """
    name: str
    steps: tuple[Step, ...] = ()
    needs: tuple[str, ...] = ()
    stage: str = ""

    # Execution target
    runs_on: str = ""
    image: str = ""
    container: Optional[Container] = None
    tags: tuple[str, ...] = ()
    services: tuple[Service, ...] = ()

    # Failure policy
    allow_failure: bool = False
    continue_on_error: bool = False
    retry: Optional[RetryPolicy] = None
    timeout_minutes: float = 0

    env: Mapping[str, str] = field(default_factory=dict)
    shell: str = ""
    working_dir: str = ""

    artifacts: Optional[ArtifactConfig] = None
    cache: Optional[CacheConfig] = None
    trigger: Optional[TriggerConfig] = None

    def __post_init__(self) -> None:
        _freeze(self, "steps", tuple(self.steps))
        _freeze(self, "needs", tuple(self.needs))
        _freeze(self, "tags", tuple(self.tags))
        _freeze(self, "services", tuple(self.services))
        _freeze(self, "env", _frozen_map(self.env))

    @property
    def has_target(self) -> bool:
        return bool(self.runs_on or self.image or self.container or self.tags)


@dataclass(frozen=True)
class Pipeline:
    name: str
    jobs: Mapping[str, Job] = field(default_factory=dict)
    stages: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    description: str = ""
    provider: str = ""
    defaults: RunDefaults = field(default_factory=RunDefaults)
    triggers: tuple[str, ...] = ()
    source: str = ""

    def __post_init__(self) -> None:
        for key, job in self.jobs.items():
            if key != job.name:
                raise PipelineModelError(
                    f"job registered as '{key}' is named '{job.name}'"
                )
        _freeze(self, "jobs", MappingProxyType(dict(self.jobs)))
        _freeze(self, "stages", tuple(self.stages))
        _freeze(self, "env", _frozen_map(self.env))
        _freeze(self, "triggers", tuple(self.triggers))

    @classmethod
    def from_jobs(cls, name: str, jobs: Iterable[Job], **kwargs: Any) -> "Pipeline":
        by_name: dict[str, Job] = {}
        for job in jobs:
            if job.name in by_name:
                raise PipelineModelError(f"Duplicate job name: {job.name}")
            by_name[job.name] = job
        return cls(name=name, jobs=by_name, **kwargs)

    def jobs_in_stage(self, stage: str) -> list[Job]:
        return [j for j in self.jobs.values() if j.stage == stage]
