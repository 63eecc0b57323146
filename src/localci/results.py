# results.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def finished(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)


class _Sealable:
    """Mutable while executing, read-only once `seal()` has been called."""

    _sealed: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if self._sealed:
            raise AttributeError(f"{type(self).__name__} is sealed; '{name}' cannot change")
        object.__setattr__(self, name, value)

    def seal(self) -> None:
        object.__setattr__(self, "_sealed", True)

    @property
    def sealed(self) -> bool:
        return self._sealed


def _elapsed(start: datetime | None, end: datetime | None) -> float:
    if start is None:
        return 0.0
    return ((end or datetime.now()) - start).total_seconds()


@dataclass
class StepResult(_Sealable):
    name: str
    status: Status = Status.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: str = ""
    retries: int = 0
    error: str = ""

    def start(self) -> "StepResult":
        self.status = Status.RUNNING
        self.started_at = datetime.now()
        return self

    def finish(
        self,
        status: Status,
        *,
        exit_code: int | None = None,
        output: str | None = None,
        retries: int | None = None,
        error: str = "",
    ) -> "StepResult":
        if self.started_at is None:
            self.started_at = datetime.now()
        self.status = status
        self.finished_at = datetime.now()
        if exit_code is not None:
            self.exit_code = exit_code
        if output is not None:
            self.output = output
        if retries is not None:
            self.retries = retries
        self.error = error
        self.seal()
        return self

    @classmethod
    def skipped(cls, name: str, reason: str = "") -> "StepResult":
        return cls(name).finish(Status.SKIPPED, error=reason)

    @property
    def duration(self) -> float:
        return _elapsed(self.started_at, self.finished_at)


@dataclass
class JobSummary(_Sealable):
    job_name: str
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    errors: list[str] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)

    def start(self) -> "JobSummary":
        self.started_at = datetime.now()
        return self

    def add(self, result: StepResult) -> None:
        """Record a finished step and update the counters."""
        self.steps.append(result)
        if result.status == Status.SUCCESS:
            self.completed_steps += 1
        elif result.status == Status.SKIPPED:
            self.skipped_steps += 1
        elif result.status in (Status.FAILED, Status.CANCELLED):
            self.failed_steps += 1
            if result.error:
                self.errors.append(f"{result.name}: {result.error}")

    def finish(self, success: bool) -> "JobSummary":
        if self.started_at is None:
            self.started_at = datetime.now()
        self.success = success
        self.finished_at = datetime.now()
        self.errors = tuple(self.errors)
        self.steps = tuple(self.steps)
        self.seal()
        return self

    @property
    def duration(self) -> float:
        return _elapsed(self.started_at, self.finished_at)


@dataclass
class JobResult(_Sealable):
    name: str
    status: Status = Status.PENDING
    summary: Optional[JobSummary] = None
    error: Optional[BaseException] = None
    duration: float = 0.0
    allow_failure: bool = False

    @classmethod
    def not_run(cls, name: str, status: Status, error: BaseException | None = None) -> "JobResult":
        result = cls(name=name, status=status, error=error)
        result.seal()
        return result

    @property
    def failed(self) -> bool:
        return self.status == Status.FAILED


@dataclass
class PipelineRun(_Sealable):
    pipeline: str
    jobs: dict[str, JobResult] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[BaseException] = None
    continue_on_error: bool = False
    success: bool = False

    def start(self) -> "PipelineRun":
        self.started_at = datetime.now()
        return self

    def record(self, result: JobResult) -> None:
        self.jobs[result.name] = result
        if result.failed and self.error is None:
            self.error = result.error

    def finish(self) -> "PipelineRun":
        self.finished_at = datetime.now()
        self.jobs = MappingProxyType(dict(self.jobs))
        self.success = self.failed == 0 or self.continue_on_error
        self.seal()
        return self

    def _count(self, status: Status) -> int:
        return sum(1 for r in self.jobs.values() if r.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(Status.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(Status.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(Status.SKIPPED)

    @property
    def cancelled(self) -> int:
        return self._count(Status.CANCELLED)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def duration(self) -> float:
        return _elapsed(self.started_at, self.finished_at)
