# base.py
from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional

from ..config import RunnerConfig, RunnerType
from ..git_facts.git import describe
from ..model import Job, Pipeline, Step
from ..results import JobSummary, StepResult
from ..ui.console import Console, get_console

logger = logging.getLogger(__name__)

_WRAPPED = re.compile(r"^\$\{\{\s*(.*?)\s*\}\}$", re.DOTALL)


def evaluate_condition(expression: str) -> bool:
    """
    Default `if:` evaluator.

    Only the status functions are understood: always()/success() run,
    failure()/cancelled() skip. Every other expression runs the step.
    """
    expr = expression.strip()
    match = _WRAPPED.match(expr)
    if match:
        expr = match.group(1)
    if expr in ("failure()", "cancelled()"):
        return False
    return True


def layered_env(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge environment layers; later layers win."""
    env: dict[str, str] = {}
    for layer in layers:
        if layer:
            env.update(layer)
    return env


class Runner(ABC):
    """
    An execution backend.

    A scheduler creates one runner per job, calls `run_job` once and then
    always calls `cleanup`, so a runner never shares resources between jobs.
    """

    runner_type: RunnerType

    def __init__(
        self,
        config: RunnerConfig,
        pipeline: Optional[Pipeline] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.console = console or get_console()
        self._git: Optional[tuple[str, str]] = None

    @abstractmethod
    def run_job(self, job: Job, workdir: str | Path) -> JobSummary:
        """Run every step of `job`; raise JobFailure if the job fails."""

    @abstractmethod
    def run_step(
        self,
        step: Step,
        env: Mapping[str, str],
        workdir: str | Path,
        job: Optional[Job] = None,
    ) -> StepResult:
        """Run one step in isolation; raise a StepError if it fails."""

    def cleanup(self) -> None:
        """Release resources allocated by this runner. Raises CleanupError."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def should_run(self, step: Step) -> bool:
        if not step.condition:
            return True
        evaluate = self.config.condition_evaluator or evaluate_condition
        return evaluate(step.condition)

    def git_facts(self, workdir: str | Path) -> tuple[str, str]:
        if self._git is None:
            # a dry run starts no processes, git included
            self._git = ("", "") if self.config.dry_run else describe(workdir)
        return self._git

    def runner_markers(self, job: Job, workdir: str | Path, workspace: str | None = None) -> dict[str, str]:
        branch, commit = self.git_facts(workdir)
        return {
            "CI": "true",
            "LOCALCI": "true",
            "LOCALCI_RUNNER": self.runner_type.value,
            "JOB_NAME": job.name,
            "WORKSPACE": workspace or str(Path(workdir).resolve()),
            "GIT_BRANCH": branch,
            "GIT_COMMIT": commit,
        }

    def job_environment(
        self,
        job: Job,
        workdir: str | Path,
        *,
        inherit: bool = True,
        workspace: str | None = None,
    ) -> dict[str, str]:
        """
        Environment for the steps of `job`, lowest precedence first:
        process env (only when `inherit`) and configured env, runner markers,
        pipeline env, job env. Step env is layered on top per step.

        `workspace` overrides the WORKSPACE marker when steps see the
        workdir under another path (inside a container).
        """
        base = dict(os.environ) if inherit else {}
        return layered_env(
            base,
            self.config.environment,
            self.runner_markers(job, workdir, workspace),
            self.pipeline.env if self.pipeline else None,
            job.env,
        )

    def timeout_minutes(self, job: Job) -> float:
        return job.timeout_minutes or self.config.timeout_minutes
