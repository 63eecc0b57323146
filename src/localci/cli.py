# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from .config import (
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
from .dag import validate_pipeline
from .errors import CIError, ValidationFailed
from .git_facts.git import repo_root
from .model import Pipeline
from .parsers import PARSERS, discover_pipeline_file, parse_pipeline
from .scheduler import Scheduler, select_jobs
from .ui.console import Console, get_console, set_console

logger = logging.getLogger(__name__)


def _pipeline_options(f):
    """-f/--file, --provider and -w/--workdir, shared by every pipeline command."""
    f = click.option(
        "-w", "--workdir",
        type=click.Path(exists=True, file_okay=False),
        default=".",
        show_default=True,
        help="Repository directory jobs run in",
    )(f)
    f = click.option(
        "--provider",
        type=click.Choice(sorted(PARSERS)),
        default=None,
        help="CI provider (detected from the file if omitted)",
    )(f)
    f = click.option(
        "-f", "--file", "pipeline_file",
        type=click.Path(exists=True, dir_okay=False),
        default=None,
        help="Pipeline file (defaults to .github/workflows/ci.yml or .gitlab-ci.yml)",
    )(f)
    return f


def _load_pipeline(pipeline_file: Optional[str], provider: Optional[str], workdir: Path) -> Pipeline:
    path = Path(pipeline_file) if pipeline_file else discover_pipeline_file(workdir)
    get_console().print_debug(f"loading pipeline from {path}")
    return parse_pipeline(path, provider)


def _file_config(ctx: click.Context, workdir: Path) -> tuple[Optional[FileConfig], Optional[Path]]:
    explicit = ctx.obj.get("config_path")
    path = Path(explicit) if explicit else find_config_file(workdir)
    if path is None:
        return None, None
    return load_file_config(path), path


def _repo_name(workdir: Path, dry_run: bool = False) -> str:
    if dry_run:
        return workdir.resolve().name
    try:
        return repo_root(workdir).name
    except (subprocess.CalledProcessError, FileNotFoundError):
        return workdir.resolve().name


def _fail(ctx: click.Context, exc: BaseException) -> None:
    console = get_console()
    if isinstance(exc, CIError):
        console.print_ci_error(exc)
    else:
        console.print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show captured output and retry attempts")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Config file (defaults to .localci.yml if present)",
)
@click.pass_context
def cli(ctx, debug, verbose, quiet, config_path):
    """localci: run GitHub Actions and GitLab CI pipelines on this machine."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug, verbose=verbose, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


@cli.command()
@_pipeline_options
@click.option("-j", "--job", default=None, help="Run one job (exact name or pattern such as 'test*')")
@click.option("-s", "--stage", default=None, help="Run the jobs of one stage")
@click.option("--only", multiple=True, help="Only run jobs matching this pattern (repeatable)")
@click.option("--except", "except_", multiple=True, help="Skip jobs matching this pattern (repeatable)")
@click.option("--runner", type=click.Choice([t.value for t in RunnerType]), default=None, help="Execution backend")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would run without running it")
@click.option("--parallel/--sequential", default=None, help="Run jobs concurrently")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None, help="Concurrent job limit (default: CPU count)")
@click.option("--continue-on-error/--fail-fast", default=None, help="Keep going after a failed job")
@click.option(
    "--order",
    type=click.Choice([o.value for o in SchedulingOrder]),
    default=None,
    help="'needs' runs jobs in dependency order; 'unordered' in file order",
)
@click.option("--timeout", type=click.FloatRange(min=0), default=None, help="Default job timeout in minutes (0 = none)")
@click.option("--pull/--no-pull", default=None, help="Always pull container images")
@click.option("-e", "--env", "env_pairs", multiple=True, metavar="KEY=VALUE", help="Extra environment variable (repeatable)")
@click.option("--env-file", type=click.Path(exists=True, dir_okay=False), default=None, help="Read extra variables from a dotenv file")
@click.option("--strict", is_flag=True, default=False, help="Apply strict validation before running")
@click.pass_context
def run(ctx, pipeline_file, provider, workdir, job, stage, only, except_, runner, dry_run,
        parallel, max_parallel, continue_on_error, order, timeout, pull, env_pairs, env_file, strict):
    """Run a pipeline."""
    console = get_console()
    workdir_p = Path(workdir)

    try:
        pipeline = _load_pipeline(pipeline_file, provider, workdir_p)
        errors = validate_pipeline(pipeline, strict=strict)
        if errors:
            raise ValidationFailed(errors)

        file_config, config_path = _file_config(ctx, workdir_p)
        config = file_config.to_runner_config() if file_config else RunnerConfig()
        if config_path:
            console.print_debug(f"using config {config_path}")

        env = dict(config.environment)
        if env_file:
            env.update(load_env_file(env_file))
        env.update(parse_env_pairs(env_pairs))

        overrides: dict[str, Any] = dict(
            runner=runner,
            dry_run=dry_run or None,
            verbose=ctx.obj["verbose"] or None,
            parallel=parallel,
            max_parallel=max_parallel,
            continue_on_error=continue_on_error,
            order=order,
            timeout_minutes=timeout,
            pull_images=pull,
            environment=env,
        )
        config = config.replace(**overrides)
        if config.verbose:
            console.verbose = True

        jobs = select_jobs(pipeline, job=job, stage=stage, only=only, except_=except_)
        if not jobs:
            console.print_info("No jobs to run.")
            return

        mode = "parallel" if config.parallel else "sequential"
        if config.dry_run:
            mode += ", dry run"
        console.print_run_started(
            repository=_repo_name(workdir_p, config.dry_run),
            pipeline=pipeline.name,
            source=pipeline.source,
            job_count=len(jobs),
            runner=config.runner.value,
            mode=mode,
        )

        result = Scheduler(pipeline, config, workdir=workdir_p, console=console).run(jobs)
        console.print_results(result)

        if not result.success:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@_pipeline_options
@click.option("--strict", is_flag=True, default=False, help="Also flag suspicious but parseable values")
@click.pass_context
def validate(ctx, pipeline_file, provider, workdir, strict):
    """Check a pipeline for structural errors."""
    console = get_console()
    try:
        pipeline = _load_pipeline(pipeline_file, provider, Path(workdir))
        errors = validate_pipeline(pipeline, strict=strict)
    except Exception as e:
        _fail(ctx, e)
        return

    console.print_validation(pipeline, errors)
    if errors:
        sys.exit(1)


@cli.command("list")
@_pipeline_options
@click.option("-s", "--stage", default=None, help="Only list the jobs of one stage")
@click.pass_context
def list_jobs(ctx, pipeline_file, provider, workdir, stage):
    """List stages, jobs and steps of a pipeline."""
    console = get_console()
    try:
        pipeline = _load_pipeline(pipeline_file, provider, Path(workdir))
        jobs = select_jobs(pipeline, stage=stage)
    except Exception as e:
        _fail(ctx, e)
        return

    console.print_pipeline_tree(pipeline, jobs)


@cli.group()
def config():
    """Inspect or create the localci config file."""


@config.command("show")
@click.option("-w", "--workdir", type=click.Path(exists=True, file_okay=False), default=".", show_default=True)
@click.pass_context
def config_show(ctx, workdir):
    """Print the effective configuration."""
    try:
        file_config, path = _file_config(ctx, Path(workdir))
    except Exception as e:
        _fail(ctx, e)
        return

    click.echo(f"# source: {path or 'built-in defaults'}")
    click.echo(yaml.safe_dump((file_config or FileConfig()).model_dump(), sort_keys=False), nl=False)


@config.command("init")
@click.option("--path", "target", default=".localci.yml", show_default=True, help="Where to write the file")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def config_init(target, force):
    """Write a config file with the default settings."""
    console = get_console()
    target_p = Path(target)
    if target_p.exists() and not force:
        console.print_error(
            "Config file exists",
            f"{target_p} already exists.",
            suggestion="Use --force to overwrite it.",
        )
        sys.exit(1)

    target_p.parent.mkdir(parents=True, exist_ok=True)
    target_p.write_text(default_config_yaml(), encoding="utf-8")
    console.print_info(f"Wrote {target_p}")


if __name__ == "__main__":
    cli()
