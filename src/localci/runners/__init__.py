from __future__ import annotations

from typing import Dict, Optional, Type

from ..config import RunnerConfig, RunnerType
from ..model import Pipeline
from ..ui.console import Console
from .base import Runner, evaluate_condition
from .docker import DockerClient, DockerRunner
from .shell import ShellRunner

RUNNERS: Dict[RunnerType, Type[Runner]] = {
    RunnerType.SHELL: ShellRunner,
    RunnerType.DOCKER: DockerRunner,
}


def create_runner(
    config: RunnerConfig,
    pipeline: Optional[Pipeline] = None,
    console: Optional[Console] = None,
) -> Runner:
    """Fresh runner of the configured type. May raise BackendUnavailable."""
    return RUNNERS[config.runner](config, pipeline, console)


__all__ = [
    "RUNNERS",
    "DockerClient",
    "DockerRunner",
    "Runner",
    "ShellRunner",
    "create_runner",
    "evaluate_condition",
]
