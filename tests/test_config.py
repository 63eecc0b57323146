"""Tests for runner configuration, config files and env input."""

import pytest
import yaml

from localci.config import (
    FileConfig,
    RunnerConfig,
    RunnerType,
    SchedulingOrder,
    default_config_yaml,
    find_config_file,
    load_env_file,
    load_file_config,
    parse_env_pairs,
)
from localci.errors import ConfigError


class TestRunnerConfig:
    def test_defaults(self):
        config = RunnerConfig()

        assert config.runner == RunnerType.SHELL
        assert config.timeout_minutes == 30
        assert config.pull_images
        assert config.default_image == "ubuntu:22.04"
        assert config.order == SchedulingOrder.UNORDERED

    def test_strings_are_coerced(self):
        config = RunnerConfig(runner="docker", order="needs")

        assert config.runner == RunnerType.DOCKER
        assert config.order == SchedulingOrder.NEEDS

    def test_environment_is_read_only(self):
        config = RunnerConfig(environment={"A": "1"})

        with pytest.raises(TypeError):
            config.environment["B"] = "2"

    def test_replace_ignores_none(self):
        config = RunnerConfig(parallel=True, max_parallel=4)

        updated = config.replace(parallel=None, max_parallel=2, dry_run=True)

        assert updated.parallel
        assert updated.max_parallel == 2
        assert updated.dry_run
        assert not config.dry_run

    def test_negative_max_parallel(self):
        with pytest.raises(ConfigError):
            RunnerConfig(max_parallel=-1)


class TestConfigFile:
    def test_load(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text(
            "defaults:\n"
            "  runner: docker\n"
            "  timeout: 10\n"
            "  parallel: true\n"
            "  order: needs\n"
            "environment:\n"
            "  PORT: 8080\n"
            "  DEBUG: true\n"
            "docker:\n"
            "  pull: false\n"
            "  volumes: [/cache:/cache]\n"
        )

        config = load_file_config(path).to_runner_config()

        assert config.runner == RunnerType.DOCKER
        assert config.timeout_minutes == 10
        assert config.parallel
        assert config.order == SchedulingOrder.NEEDS
        assert dict(config.environment) == {"PORT": "8080", "DEBUG": "true"}
        assert not config.pull_images
        assert config.extra_volumes == ("/cache:/cache",)

    def test_empty_file_means_defaults(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text("")

        assert load_file_config(path) == FileConfig()

    def test_unknown_key(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text("defaults:\n  runnr: shell\n")

        with pytest.raises(ConfigError) as exc:
            load_file_config(path)

        assert "defaults.runnr" in exc.value.details["problems"]

    def test_invalid_value(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text("defaults:\n  runner: podman\n")

        with pytest.raises(ConfigError, match="invalid config file"):
            load_file_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_file_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / ".localci.yml"
        path.write_text("defaults: [unclosed\n")

        with pytest.raises(ConfigError, match="not valid YAML"):
            load_file_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read"):
            load_file_config(tmp_path / "nope.yml")

    def test_default_yaml_round_trips(self):
        assert FileConfig.model_validate(yaml.safe_load(default_config_yaml())) == FileConfig()


class TestFindConfigFile:
    def test_project_file_wins(self, tmp_path):
        project = tmp_path / "project"
        home = tmp_path / "home"
        (project / ".github").mkdir(parents=True)
        home.mkdir()
        (project / ".github" / ".localci.yml").write_text("")
        (home / ".localci.yml").write_text("")

        assert find_config_file(project, home=home) == project / ".github" / ".localci.yml"

    def test_user_file(self, tmp_path):
        home = tmp_path / "home"
        (home / ".config" / "localci").mkdir(parents=True)
        (home / ".config" / "localci" / "config.yml").write_text("")

        assert find_config_file(tmp_path, home=home) == home / ".config" / "localci" / "config.yml"

    def test_none(self, tmp_path):
        assert find_config_file(tmp_path, home=tmp_path) is None


class TestEnvInput:
    def test_pairs(self):
        assert parse_env_pairs(["A=1", "B=x=y", "EMPTY="]) == {"A": "1", "B": "x=y", "EMPTY": ""}

    @pytest.mark.parametrize("pair", ["NOVALUE", "=value"])
    def test_invalid_pair(self, pair):
        with pytest.raises(ConfigError):
            parse_env_pairs([pair])

    def test_env_file(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text(
            "# database\n"
            "\n"
            "DB_HOST=localhost\n"
            "export DB_USER = admin\n"
            "DB_PASS=\"s3cret value\"\n"
            "GREETING='hi'\n"
        )

        assert load_env_file(path) == {
            "DB_HOST": "localhost",
            "DB_USER": "admin",
            "DB_PASS": "s3cret value",
            "GREETING": "hi",
        }

    def test_env_file_bad_line(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("JUSTAKEY\n")

        with pytest.raises(ConfigError, match="invalid line 1"):
            load_env_file(path)
