"""Shared fixtures for the localci test suite."""

from pathlib import Path

import pytest

from localci.config import RunnerConfig
from localci.model import Job, Pipeline, Step
from localci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    """Install a quiet global console so tests don't spam the terminal."""
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """An empty directory to run jobs in."""
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def config():
    """Shell runner config without a default job timeout."""
    return RunnerConfig(timeout_minutes=0)


@pytest.fixture
def sleeps():
    """Recorded retry delays; pass `sleeps.append` as the runner's sleep."""
    return []


@pytest.fixture
def make_job():
    """Build a job from `name` and shell commands, one step per command."""

    def _make(name, *commands, **kwargs):
        steps = [Step.build(f"step {i}", run=cmd) for i, cmd in enumerate(commands, start=1)]
        kwargs.setdefault("shell", "sh")
        return Job(name=name, steps=tuple(steps), **kwargs)

    return _make


@pytest.fixture
def make_pipeline():
    def _make(*jobs, **kwargs):
        return Pipeline.from_jobs(kwargs.pop("name", "test"), jobs, **kwargs)

    return _make
