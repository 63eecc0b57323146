"""Tests for the pipeline model."""

import dataclasses

import pytest

from localci.errors import PipelineModelError
from localci.model import (
    Job,
    Pipeline,
    RetryPolicy,
    RunCommand,
    ScriptList,
    Step,
    UsesAction,
)


class TestStepBuild:
    def test_run_directive(self):
        step = Step.build("build", run="make all")

        assert isinstance(step.action, RunCommand)
        assert step.run == "make all"
        assert step.uses is None
        assert step.command_text == "make all"

    def test_uses_directive_keeps_inputs(self):
        step = Step.build("setup", uses="actions/setup-node@v4", with_={"node-version": 20})

        assert isinstance(step.action, UsesAction)
        assert step.action.name == "actions/setup-node"
        assert step.action.ref == "v4"
        assert dict(step.action.inputs) == {"node-version": "20"}

    def test_script_directive_joins_commands(self):
        step = Step.build("script", script=["echo a", "echo b"])

        assert isinstance(step.action, ScriptList)
        assert step.command_text == "echo a\necho b"

    def test_requires_a_directive(self):
        with pytest.raises(PipelineModelError, match="exactly one"):
            Step.build("empty")

    def test_rejects_two_directives(self):
        with pytest.raises(PipelineModelError) as exc:
            Step.build("both", run="ls", uses="actions/checkout@v4")

        assert exc.value.details["given"] == "run, uses"

    def test_rejects_foreign_action(self):
        with pytest.raises(PipelineModelError):
            Step(name="bad", action="echo hi")


class TestImmutability:
    def test_step_is_frozen(self):
        step = Step.build("a", run="true")

        with pytest.raises(dataclasses.FrozenInstanceError):
            step.name = "b"

    def test_env_is_read_only(self):
        step = Step.build("a", run="true", env={"A": "1"})

        with pytest.raises(TypeError):
            step.env["A"] = "2"

    def test_job_collections_become_tuples(self):
        job = Job(name="j", steps=[Step.build("a", run="true")], needs=["x"], tags=["docker"])

        assert len(job.steps) == 1 and job.steps[0].name == "a"
        assert job.needs == ("x",)
        assert job.tags == ("docker",)

    def test_env_values_are_strings(self):
        job = Job(name="j", env={"PORT": 8080, "EMPTY": None})

        assert dict(job.env) == {"PORT": "8080", "EMPTY": ""}


class TestRetryPolicy:
    def test_defaults_to_single_attempt(self):
        assert RetryPolicy().max_attempts == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(PipelineModelError, match="at least 1"):
            RetryPolicy(max_attempts=0)

    def test_rejects_unknown_backoff(self):
        with pytest.raises(PipelineModelError, match="backoff"):
            RetryPolicy(backoff="random")

    def test_exit_codes_are_ints(self):
        assert RetryPolicy(exit_codes=["1", 2]).exit_codes == (1, 2)


class TestPipeline:
    def test_from_jobs_keeps_order(self):
        pipeline = Pipeline.from_jobs("p", [Job(name="b"), Job(name="a")])

        assert list(pipeline.jobs) == ["b", "a"]

    def test_duplicate_job_names(self):
        with pytest.raises(PipelineModelError, match="Duplicate job name: a"):
            Pipeline.from_jobs("p", [Job(name="a"), Job(name="a")])

    def test_key_must_match_job_name(self):
        with pytest.raises(PipelineModelError):
            Pipeline(name="p", jobs={"a": Job(name="b")})

    def test_jobs_are_read_only(self):
        pipeline = Pipeline.from_jobs("p", [Job(name="a")])

        with pytest.raises(TypeError):
            pipeline.jobs["b"] = Job(name="b")

    def test_jobs_in_stage(self):
        pipeline = Pipeline.from_jobs(
            "p",
            [Job(name="a", stage="build"), Job(name="b", stage="test"), Job(name="c", stage="build")],
        )

        assert [j.name for j in pipeline.jobs_in_stage("build")] == ["a", "c"]

    def test_has_target(self):
        assert not Job(name="a").has_target
        assert Job(name="a", runs_on="ubuntu-latest").has_target
        assert Job(name="a", image="alpine").has_target
