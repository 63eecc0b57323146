# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .results import JobSummary, StepResult


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "go": "Install Go or fix PATH.",
    "git": "Install Git or fix PATH.",
    "bash": "Install bash or set `shell: sh` on the step.",
    "pwsh": "Install PowerShell or pick another shell for the step.",
}


def hint_for(command: str) -> str | None:
    """Return an install hint for the first word of a shell command, if we know one."""
    words = command.strip().split()
    if not words:
        return None
    return TOOL_HINTS.get(words[0].rsplit("/", 1)[-1])


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    message: str
    kind: str = "ci_error"
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Loading / validation
# ----------------------------------------------------------------------

class PipelineModelError(CIError):
    """Raised when a pipeline object is built from inconsistent values."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message=message, kind="invalid_pipeline", details=details)


class ParseError(CIError):
    def __init__(self, message: str, path: str | None = None, **details: Any):
        if path:
            details = {"file": path, **details}
        super().__init__(message=message, kind="parse_error", details=details)


class ConfigError(CIError):
    def __init__(self, message: str, path: str | None = None, **details: Any):
        if path:
            details = {"file": path, **details}
        super().__init__(message=message, kind="config_error", details=details)


class ValidationFailed(CIError):
    """All validation problems of a pipeline, reported together."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            message=f"pipeline validation failed with {len(self.errors)} error(s)",
            kind="validation_failed",
        )

    def __str__(self) -> str:
        return "\n".join([f"{self.kind}: {self.message}", *(f"  - {e}" for e in self.errors)])


# ----------------------------------------------------------------------
# Backends
# ----------------------------------------------------------------------

class BackendUnavailable(CIError):
    def __init__(self, runner: str, message: str, hint: str | None = None):
        details = {"runner": runner}
        if hint:
            details["hint"] = hint
        super().__init__(message=message, kind="backend_unavailable", details=details)


class CleanupError(CIError):
    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            message=f"cleanup completed with {len(self.errors)} errors",
            kind="cleanup_failed",
            details={f"error[{i}]": e for i, e in enumerate(self.errors)},
        )


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

class StepError(CIError):
    """Base for everything that can go wrong while executing one step.

    The runner attaches the finished StepResult as `result` before the
    error leaves run_step.
    """
    result: Optional["StepResult"] = None


class StepFailure(StepError):
    def __init__(self, job: str | None, step: str, cmd: str, exit_code: int, output: str = ""):
        self.cmd = cmd
        self.exit_code = exit_code
        self.output = output
        details: dict[str, Any] = {"exit_code": exit_code}
        hint = hint_for(cmd) if exit_code == 127 else None
        if hint:
            details["hint"] = hint
        super().__init__(
            message=f"step '{step}' failed (exit={exit_code}): {cmd}",
            kind="step_failed",
            job=job,
            step=step,
            details=details,
        )


class StepTimeout(StepError):
    def __init__(self, job: str | None, step: str, timeout_minutes: float):
        self.timeout_minutes = timeout_minutes
        super().__init__(
            message=f"step '{step}' timed out after {timeout_minutes:g} minute(s)",
            kind="step_timeout",
            job=job,
            step=step,
        )


class StepStartError(StepError):
    """The step's process could not be started at all (missing shell, bad cwd)."""

    def __init__(self, job: str | None, step: str, reason: str):
        super().__init__(
            message=f"step '{step}' could not start: {reason}",
            kind="step_start_failed",
            job=job,
            step=step,
        )


class RetryExhausted(StepError):
    def __init__(self, job: str | None, step: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            message=f"all {attempts} attempts failed, last error: {getattr(last_error, 'message', last_error)}",
            kind="retry_exhausted",
            job=job,
            step=step,
            details={"attempts": attempts},
        )


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

class JobFailure(CIError):
    def __init__(self, job: str, summary: "JobSummary", reason: str):
        self.summary = summary
        super().__init__(
            message=f"job '{job}' failed: {reason}",
            kind="job_failed",
            job=job,
            details={
                "completed": summary.completed_steps,
                "failed": summary.failed_steps,
                "skipped": summary.skipped_steps,
            },
        )
