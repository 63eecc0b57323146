"""Tests for the GitHub Actions and GitLab CI parsers."""

import textwrap

import pytest
import yaml

from localci.dag import validate_pipeline
from localci.errors import ParseError
from localci.model import ScriptList, UsesAction
from localci.parsers import detect_provider, discover_pipeline_file, parse_pipeline
from localci.parsers.common import name_from_command
from localci.parsers.github import parse_github
from localci.parsers.gitlab import parse_gitlab, parse_timeout


def _load(text):
    return yaml.safe_load(textwrap.dedent(text))


GITHUB_WORKFLOW = """
name: CI
on:
  push:
    branches: [main]
  pull_request:
env:
  NODE_ENV: test
defaults:
  run:
    shell: bash
jobs:
  build:
    runs-on: ubuntu-22.04
    timeout-minutes: 15
    env:
      DEBUG: true
    steps:
      - uses: actions/checkout@v4
      - uses: actions/setup-node@v4
        with:
          node-version: 20
      - run: npm run build
      - name: Lint
        run: npm run lint
        continue-on-error: true
        if: ${{ always() }}
  test:
    runs-on: [self-hosted, linux]
    needs: build
    container:
      image: node:20
      env:
        CI: "1"
    services:
      redis: redis:7
      db:
        image: postgres:16
        ports: [5432]
    defaults:
      run:
        working-directory: app
    steps:
      - run: |
          npm ci
          npm test
  release:
    needs: [build, test]
    uses: ./.github/workflows/release.yml
"""


class TestGitHubParser:
    @pytest.fixture
    def pipeline(self):
        return parse_github(_load(GITHUB_WORKFLOW), ".github/workflows/ci.yml")

    def test_pipeline(self, pipeline):
        assert pipeline.name == "CI"
        assert pipeline.provider == "github"
        assert pipeline.triggers == ("push", "pull_request")
        assert dict(pipeline.env) == {"NODE_ENV": "test"}
        assert pipeline.defaults.shell == "bash"
        assert list(pipeline.jobs) == ["build", "test", "release"]
        assert validate_pipeline(pipeline) == []

    def test_job_fields(self, pipeline):
        build = pipeline.jobs["build"]

        assert build.runs_on == "ubuntu-22.04"
        assert build.timeout_minutes == 15
        assert dict(build.env) == {"DEBUG": "true"}

    def test_step_names(self, pipeline):
        names = [s.name for s in pipeline.jobs["build"].steps]

        assert names == ["Run checkout", "Run setup-node", "build", "Lint"]

    def test_step_fields(self, pipeline):
        setup, _build, lint = pipeline.jobs["build"].steps[1:]

        assert isinstance(setup.action, UsesAction)
        assert dict(setup.action.inputs) == {"node-version": "20"}
        assert lint.continue_on_error
        assert lint.condition == "${{ always() }}"

    def test_needs_forms(self, pipeline):
        assert pipeline.jobs["test"].needs == ("build",)
        assert pipeline.jobs["release"].needs == ("build", "test")

    def test_container_and_services(self, pipeline):
        test = pipeline.jobs["test"]

        assert test.runs_on == "self-hosted"
        assert test.container.image == "node:20"
        assert dict(test.container.env) == {"CI": "1"}
        assert [(s.name, s.image) for s in test.services] == [("redis", "redis:7"), ("db", "postgres:16")]
        assert test.services[1].ports == ("5432",)
        assert test.working_dir == "app"

    def test_default_timeout(self, pipeline):
        assert pipeline.jobs["test"].timeout_minutes == 360

    def test_reusable_workflow(self, pipeline):
        release = pipeline.jobs["release"]

        assert len(release.steps) == 1
        assert release.steps[0].uses == "./.github/workflows/release.yml"

    def test_no_jobs(self):
        with pytest.raises(ParseError, match="no jobs"):
            parse_github({"name": "empty", "on": "push"})

    def test_step_with_two_directives(self):
        data = _load("""
            jobs:
              build:
                steps:
                  - run: make
                    uses: actions/checkout@v4
        """)

        with pytest.raises(ParseError, match="exactly one"):
            parse_github(data)

    def test_unresolvable_timeout_falls_back(self):
        data = _load("""
            jobs:
              build:
                timeout-minutes: ${{ inputs.timeout }}
                steps:
                  - run: make
        """)

        assert parse_github(data).jobs["build"].timeout_minutes == 360


GITLAB_CI = """
stages: [build, test, deploy]

variables:
  APP: demo
  DEPTH:
    value: "1"
    description: clone depth

default:
  image: node:20
  before_script:
    - npm ci

.template:
  script: echo hidden

build:
  stage: build
  script:
    - npm run build
  artifacts:
    paths: [dist/]
    expire_in: 1 week
  cache:
    key: deps
    paths: [node_modules/]

test:
  stage: test
  image: node:18
  needs: [build]
  retry: 2
  timeout: 1h 30m
  allow_failure: true
  tags: [docker]
  services:
    - postgres:16
    - name: redis:7
      alias: cache
  script:
    - npm test
    - npm run e2e
  after_script:
    - echo cleanup

long:
  stage: test
  dependencies: [build]
  script: [a, b, c, d, e, f]

deploy:
  stage: deploy
  trigger:
    project: group/deployer
    branch: main
"""


class TestGitLabParser:
    @pytest.fixture
    def pipeline(self):
        return parse_gitlab(_load(GITLAB_CI), "project/.gitlab-ci.yml")

    def test_pipeline(self, pipeline):
        assert pipeline.provider == "gitlab"
        assert pipeline.name == ".gitlab-ci"
        assert pipeline.stages == ("build", "test", "deploy")
        assert dict(pipeline.env) == {"APP": "demo", "DEPTH": "1"}
        assert list(pipeline.jobs) == ["build", "test", "long", "deploy"]
        assert validate_pipeline(pipeline) == []

    def test_default_image_and_before_script(self, pipeline):
        build = pipeline.jobs["build"]

        assert build.image == "node:20"
        assert [s.name for s in build.steps] == ["Before Script", "build"]
        assert build.steps[0].command_text == "npm ci"

    def test_artifacts_and_cache(self, pipeline):
        build = pipeline.jobs["build"]

        assert build.artifacts.paths == ("dist/",)
        assert build.artifacts.expire_in == "1 week"
        assert build.cache.key == "deps"
        assert build.cache.paths == ("node_modules/",)

    def test_job_settings(self, pipeline):
        test = pipeline.jobs["test"]

        assert test.image == "node:18"
        assert test.needs == ("build",)
        assert test.allow_failure
        assert test.timeout_minutes == 90
        assert test.tags == ("docker",)
        assert [(s.image, s.alias) for s in test.services] == [("postgres:16", ""), ("redis:7", "cache")]

    def test_short_script_becomes_one_step_per_command(self, pipeline):
        steps = pipeline.jobs["test"].steps

        assert [s.name for s in steps] == ["Before Script", "test", "e2e", "After Script"]
        assert steps[-1].continue_on_error
        assert steps[-1].retry is None
        assert steps[1].retry.max_attempts == 3

    def test_long_script_is_grouped(self, pipeline):
        long = pipeline.jobs["long"]

        assert [s.name for s in long.steps] == ["Before Script", "Main Script"]
        assert isinstance(long.steps[1].action, ScriptList)
        assert long.steps[1].action.commands == ("a", "b", "c", "d", "e", "f")
        assert long.needs == ("build",)

    def test_trigger_job(self, pipeline):
        deploy = pipeline.jobs["deploy"]

        assert deploy.steps == ()
        assert deploy.trigger.project == "group/deployer"
        assert deploy.trigger.branch == "main"

    def test_hidden_jobs_are_ignored(self, pipeline):
        assert ".template" not in pipeline.jobs

    def test_derived_stages(self):
        data = _load("""
            lint:
              stage: check
              script: make lint
            unit:
              script: make test
        """)

        pipeline = parse_gitlab(data, "ci.yml")

        assert pipeline.stages == ("check", "test")
        assert pipeline.jobs["unit"].stage == "test"
        assert pipeline.jobs["unit"].image == "alpine:latest"

    def test_retry_mapping(self):
        data = _load("""
            flaky:
              retry:
                max: 2
                when: [script_failure]
                exit_codes: [137]
              script: make
        """)

        policy = parse_gitlab(data).jobs["flaky"].retry

        assert policy.max_attempts == 3
        assert policy.conditions == ("script_failure",)
        assert policy.exit_codes == (137,)

    def test_job_without_script(self):
        with pytest.raises(ParseError, match="job 'broken' has no script") as exc:
            parse_gitlab({"broken": {"stage": "test"}}, "ci.yml")

        assert exc.value.details["file"] == "ci.yml"

    def test_workflow_name(self):
        data = {"workflow": {"name": "Nightly"}, "job": {"script": "true"}}

        assert parse_gitlab(data).name == "Nightly"


class TestParseTimeout:
    @pytest.mark.parametrize(
        "value, minutes",
        [
            (None, 0),
            ("1h 30m", 90),
            ("1h30m", 90),
            ("30 minutes", 30),
            ("2 hours", 120),
            ("1 day", 1440),
            ("90s", 1.5),
            (90, 1.5),
            ("3600", 60),
        ],
    )
    def test_valid(self, value, minutes):
        assert parse_timeout(value) == pytest.approx(minutes)

    def test_invalid(self):
        with pytest.raises(ParseError, match="invalid timeout"):
            parse_timeout("soonish")


def test_name_from_command():
    assert name_from_command("echo 'Building app'") == "Building app"
    assert name_from_command("npm run lint") == "lint"
    assert name_from_command("make\nmake install") == "make"
    assert name_from_command("x" * 60) == "x" * 47 + "..."
    assert name_from_command("   ") == ""


class TestDiscovery:
    def test_github_default(self, tmp_path):
        workflows = tmp_path / ".github" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "ci.yml").write_text("jobs: {}\n")
        (tmp_path / ".gitlab-ci.yml").write_text("job: {script: true}\n")

        assert discover_pipeline_file(tmp_path) == workflows / "ci.yml"

    def test_glob_fallback(self, tmp_path):
        workflows = tmp_path / ".github" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "tests.yml").write_text("jobs: {}\n")

        assert discover_pipeline_file(tmp_path) == workflows / "tests.yml"

    def test_nothing_found(self, tmp_path):
        with pytest.raises(ParseError, match="no pipeline file found"):
            discover_pipeline_file(tmp_path)

    def test_detect_provider_from_path(self):
        assert detect_provider(".github/workflows/ci.yml") == "github"
        assert detect_provider("project/.gitlab-ci.yml") == "gitlab"

    def test_detect_provider_from_content(self):
        assert detect_provider("pipeline.yml", {"jobs": {"a": {"runs-on": "x"}}}) == "github"
        assert detect_provider("pipeline.yml", {"stages": ["build"]}) == "gitlab"

    def test_undetectable(self):
        with pytest.raises(ParseError, match="cannot tell"):
            detect_provider("pipeline.yml", {"foo": 1})

    def test_parse_pipeline(self, tmp_path):
        path = tmp_path / ".gitlab-ci.yml"
        path.write_text("unit:\n  script: make test\n")

        pipeline = parse_pipeline(path)

        assert pipeline.provider == "gitlab"
        assert pipeline.source == str(path)
        assert list(pipeline.jobs) == ["unit"]

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / ".gitlab-ci.yml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ParseError, match="mapping"):
            parse_pipeline(path)
