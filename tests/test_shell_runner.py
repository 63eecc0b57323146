"""Tests for the native process backend. These run real `sh` subprocesses."""

import os
import subprocess

import pytest

from localci.config import RunnerConfig
from localci.errors import JobFailure, RetryExhausted, StepFailure, StepStartError, StepTimeout
from localci.model import Job, Pipeline, RetryPolicy, RunDefaults, Step
from localci.results import Status
from localci.runners.base import evaluate_condition
from localci.runners.shell import ShellRunner, shell_command


@pytest.fixture
def path_env():
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


@pytest.fixture
def runner(config, sleeps):
    return ShellRunner(config, sleep=sleeps.append)


class TestShellCommand:
    def test_bash_is_strict(self):
        assert shell_command("bash", "make") == ["bash", "-eo", "pipefail", "-c", "make"]

    def test_sh_verbose_traces(self):
        assert shell_command("/bin/sh", "make", verbose=True) == ["/bin/sh", "-e", "-x", "-c", "make"]

    def test_other_interpreters(self):
        assert shell_command("pwsh", "Get-Date") == ["pwsh", "-Command", "Get-Date"]
        assert shell_command("python", "print(1)") == ["python3", "-c", "print(1)"]
        assert shell_command("node", "1") == ["node", "-e", "1"]
        assert shell_command("zsh", "ls") == ["zsh", "-c", "ls"]


class TestConditions:
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("always()", True),
            ("success()", True),
            ("failure()", False),
            ("cancelled()", False),
            ("${{ failure() }}", False),
            ("${{ always() }}", True),
            ("github.ref == 'refs/heads/main'", True),
            ("", True),
        ],
    )
    def test_default_evaluator(self, expression, expected):
        assert evaluate_condition(expression) is expected


class TestRunJob:
    def test_runs_steps_in_order(self, runner, workdir, make_job):
        job = make_job("build", "echo one > order.txt", "echo two >> order.txt")

        summary = runner.run_job(job, workdir)

        assert summary.success
        assert summary.completed_steps == 2
        assert (workdir / "order.txt").read_text().split() == ["one", "two"]

    def test_captures_output(self, runner, workdir, make_job):
        summary = runner.run_job(make_job("build", "echo hello", "echo oops >&2"), workdir)

        assert summary.steps[0].output == "hello\n"
        assert "oops" in summary.steps[1].output

    def test_failure_stops_the_job(self, runner, workdir, make_job):
        job = make_job("build", "true", "exit 3", "touch never")

        with pytest.raises(JobFailure) as exc:
            runner.run_job(job, workdir)

        summary = exc.value.summary
        assert not summary.success
        assert summary.completed_steps == 1
        assert summary.failed_steps == 1
        assert len(summary.steps) == 2
        assert summary.steps[1].exit_code == 3
        assert isinstance(exc.value.__cause__, StepFailure)
        assert not (workdir / "never").exists()

    def test_continue_on_error(self, runner, workdir):
        job = Job(
            name="build",
            shell="sh",
            steps=(
                Step.build("first", run="true"),
                Step.build("flaky", run="exit 1", continue_on_error=True),
                Step.build("last", run="touch reached"),
            ),
        )

        summary = runner.run_job(job, workdir)

        assert summary.success
        assert summary.failed_steps == 1
        assert summary.completed_steps == 2
        assert (workdir / "reached").exists()

    def test_false_condition_skips_step(self, runner, workdir):
        job = Job(
            name="build",
            shell="sh",
            steps=(
                Step.build("notify", run="touch notified", condition="${{ failure() }}"),
                Step.build("build", run="true"),
            ),
        )

        summary = runner.run_job(job, workdir)

        assert summary.skipped_steps == 1
        assert summary.steps[0].status == Status.SKIPPED
        assert not (workdir / "notified").exists()

    def test_custom_condition_evaluator(self, workdir):
        config = RunnerConfig(timeout_minutes=0, condition_evaluator=lambda expr: expr == "yes")
        job = Job(
            name="build",
            shell="sh",
            steps=(
                Step.build("a", run="touch a", condition="yes"),
                Step.build("b", run="touch b", condition="no"),
            ),
        )

        ShellRunner(config).run_job(job, workdir)

        assert (workdir / "a").exists()
        assert not (workdir / "b").exists()

    def test_environment_layers(self, workdir):
        config = RunnerConfig(timeout_minutes=0, environment={"EXTRA": "x", "LEVEL": "config"})
        pipeline = Pipeline(name="p", env={"LEVEL": "pipeline", "P": "p"})
        job = Job(
            name="build",
            shell="sh",
            env={"LEVEL": "job"},
            steps=(
                Step.build("job level", run='echo "$LEVEL $P $EXTRA"'),
                Step.build("step level", run='echo "$LEVEL"', env={"LEVEL": "step"}),
                Step.build("markers", run='echo "$CI $LOCALCI $LOCALCI_RUNNER $JOB_NAME"'),
            ),
        )

        summary = ShellRunner(config, pipeline).run_job(job, workdir)

        assert [s.output.strip() for s in summary.steps] == [
            "job p x",
            "step",
            "true true shell build",
        ]

    def test_job_timeout_between_steps(self, runner, workdir, make_job):
        job = make_job("slow", "sleep 0.3", "touch never", timeout_minutes=0.002)

        with pytest.raises(JobFailure, match="timed out"):
            runner.run_job(job, workdir)

        assert not (workdir / "never").exists()

    def test_working_directory(self, runner, workdir):
        (workdir / "sub").mkdir()
        job = Job(
            name="build",
            shell="sh",
            working_dir="sub",
            steps=(Step.build("here", run="touch marker"),),
        )

        runner.run_job(job, workdir)

        assert (workdir / "sub" / "marker").exists()

    def test_pipeline_default_shell(self, workdir, config):
        pipeline = Pipeline(name="p", defaults=RunDefaults(shell="sh"))
        job = Job(name="build", steps=(Step.build("a", run="true"),))

        runner = ShellRunner(config, pipeline)

        assert runner.resolve_shell(job.steps[0], job) == "sh"


class TestRunStep:
    def test_timeout_kills_process(self, runner, workdir, path_env):
        step = Step.build("hang", run="sleep 5", shell="sh", timeout_minutes=0.01)

        with pytest.raises(StepTimeout) as exc:
            runner.run_step(step, path_env, workdir)

        assert exc.value.result.status == Status.FAILED

    def test_retry_until_success(self, runner, workdir, path_env, sleeps):
        script = 'n=$(cat count 2>/dev/null || echo 0); n=$((n+1)); echo $n > count; [ "$n" -ge 2 ]'
        step = Step.build(
            "flaky", run=script, shell="sh", retry=RetryPolicy(max_attempts=3, delay="1s")
        )

        result = runner.run_step(step, path_env, workdir)

        assert result.status == Status.SUCCESS
        assert result.retries == 1
        assert sleeps == [1.0]

    def test_retry_exhausted(self, runner, workdir, path_env):
        step = Step.build("broken", run="exit 3", shell="sh", retry=RetryPolicy(max_attempts=2))

        with pytest.raises(RetryExhausted) as exc:
            runner.run_step(step, path_env, workdir)

        result = exc.value.result
        assert result.retries == 1
        assert result.exit_code == 3
        assert "all 2 attempts failed" in result.error

    def test_missing_working_directory(self, runner, workdir, path_env):
        step = Step.build("lost", run="true", shell="sh", working_dir="missing")

        with pytest.raises(StepStartError, match="working directory not found"):
            runner.run_step(step, path_env, workdir)

    def test_missing_shell(self, runner, workdir, path_env):
        step = Step.build("odd", run="true", shell="no-such-shell-here")

        with pytest.raises(StepStartError):
            runner.run_step(step, path_env, workdir)

    def test_unsupported_action_is_skipped(self, runner, workdir, path_env):
        step = Step.build("login", uses="docker/login-action@v3")

        result = runner.run_step(step, path_env, workdir)

        assert result.status == Status.SKIPPED
        assert "docker/login-action" in result.error

    def test_checkout_outside_git_repository(self, runner, workdir, path_env):
        result = runner.run_step(Step.build("checkout", uses="actions/checkout@v4"), path_env, workdir)

        assert result.status == Status.SUCCESS

    def test_dry_run_spawns_nothing(self, workdir, monkeypatch):
        spawned = []
        real_popen = subprocess.Popen

        def spy(args, *a, **kw):
            spawned.append(args)
            return real_popen(args, *a, **kw)

        monkeypatch.setattr(subprocess, "Popen", spy)
        runner = ShellRunner(RunnerConfig(dry_run=True, timeout_minutes=0))
        job = Job(name="build", steps=(
            Step.build("checkout", uses="actions/checkout@v4"),
            Step.build("touch", run="touch created", shell="sh"),
        ))

        summary = runner.run_job(job, workdir)

        assert summary.success
        assert spawned == []
        assert not (workdir / "created").exists()

    def test_cleanup_without_processes(self, runner):
        runner.cleanup()
