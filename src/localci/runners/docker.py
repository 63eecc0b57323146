# docker.py
from __future__ import annotations

import dataclasses
import logging
import re
import shlex
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Callable, Dict, List, Mapping, Optional, Sequence

from ..config import RunnerConfig, RunnerType
from ..errors import (
    TOOL_HINTS,
    BackendUnavailable,
    CIError,
    CleanupError,
    JobFailure,
    StepError,
    StepFailure,
    StepTimeout,
)
from ..model import Job, Pipeline, RunDefaults, Step, UsesAction
from ..results import JobSummary, Status, StepResult
from ..ui.console import Console
from .base import Runner, layered_env
from .retry import StepAttempts
from .shell import shell_command

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
MEMORY_LIMIT = "2g"
MEMORY_SWAP_LIMIT = "4g"
CPU_SHARES = 1024
TAIL_LINES = 20

RUNS_ON_IMAGES: Dict[str, str] = {
    "ubuntu-latest": "ubuntu:latest",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "ubuntu-20.04": "ubuntu:20.04",
    "debian-12": "debian:12",
    "debian-11": "debian:11",
    "alpine-3.19": "alpine:3.19",
    "alpine-3.18": "alpine:3.18",
    "node-23": "node:23",
    "node-22": "node:22",
    "node-20": "node:20",
    "node-18": "node:18-slim",
    "python-3.14": "python:3.14-slim",
    "python-3.13": "python:3.13-slim",
    "python-3.12": "python:3.12-slim",
    "python-3.11": "python:3.11-slim",
    "golang-1.23": "golang:1.23-alpine",
    "golang-1.22": "golang:1.22-alpine",
    "golang-1.20": "golang:1.20-alpine",
}

# first keyword found in the label wins
RUNS_ON_PATTERNS = (
    ("ubuntu", "ubuntu:22.04"),
    ("debian", "debian:latest"),
    ("alpine", "alpine:latest"),
    ("node", "node:lts-slim"),
    ("python", "python:3-slim"),
    ("golang", "golang:alpine"),
    ("go", "golang:alpine"),
)

_MARKER = re.compile(r"^\[(\d+)/(\d+)\] ")
_SOFT_FAILURE = "Step failed with exit code"
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def resolve_image(job: Job, default_image: str = "ubuntu:22.04") -> str:
    """Pick the container image for a job."""
    if job.container is not None and job.container.image:
        return job.container.image
    if job.image:
        return job.image
    label = job.runs_on.strip().lower()
    if label:
        if label in RUNS_ON_IMAGES:
            return RUNS_ON_IMAGES[label]
        for keyword, image in RUNS_ON_PATTERNS:
            if keyword in label:
                return image
    return default_image


def container_name(job_name: str) -> str:
    slug = re.sub(r"[^a-z0-9_.-]+", "-", job_name.lower()).strip("-.") or "job"
    return f"localci-{slug}-{int(time.time())}-{uuid.uuid4().hex[:6]}"


def build_script(
    job: Job,
    *,
    defaults: Optional[RunDefaults] = None,
    verbose: bool = False,
    should_run: Callable[[Step], bool] = lambda step: True,
) -> str:
    """
    Render all steps of `job` as one /bin/sh script.

    Each step runs in a subshell so its `cd` and exports stay local. A
    continue-on-error step runs with errexit disabled around the subshell
    and reports its exit code instead of stopping the script.
    """
    defaults = defaults or RunDefaults()
    total = len(job.steps)
    lines = ["#!/bin/sh", "set -e"]
    if verbose:
        lines.append("set -x")

    for index, step in enumerate(job.steps, start=1):
        lines.append("echo " + shlex.quote(f"[{index}/{total}] {step.name}"))
        lines.append("echo '" + "-" * 60 + "'")

        if isinstance(step.action, UsesAction):
            lines.append("echo " + shlex.quote(f"Skipping action {step.action.action}: not supported in containers"))
            continue
        if not should_run(step):
            lines.append("echo " + shlex.quote(f"Skipping step: condition '{step.condition}' is false"))
            continue

        body = []
        workdir = step.working_dir or job.working_dir or defaults.working_directory
        if workdir:
            body.append(f"cd {shlex.quote(workdir)}")
        for key, value in step.env.items():
            if not _ENV_NAME.match(key):
                logger.warning("step %r: skipping invalid variable name %r", step.name, key)
                body.append("echo " + shlex.quote(f"Skipping invalid variable name {key!r}"))
                continue
            body.append(f"export {key}={shlex.quote(value)}")
        shell = step.shell or job.shell or defaults.shell
        if shell and Path(shell).name != "sh":
            body.append(shlex.join(shell_command(shell, step.command_text)))
        else:
            body.append(step.command_text)

        if step.continue_on_error:
            lines += ["set +e", "(", "set -e", *body, ")", "rc=$?", "set -e"]
            lines.append(f'if [ "$rc" -ne 0 ]; then echo "{_SOFT_FAILURE} $rc, continuing"; fi')
        else:
            lines += ["(", *body, ")"]
        lines.append("echo 'Step completed'")

    lines.append("echo 'All steps completed successfully!'")
    return "\n".join(lines) + "\n"


class _ScriptProgress:
    """Follows the step markers printed by a generated script."""

    def __init__(self, total: int):
        self.total = total
        self.current = 0
        self.soft_failures: set[int] = set()

    def feed(self, line: str) -> None:
        match = _MARKER.match(line)
        if match and int(match.group(2)) == self.total:
            self.current = int(match.group(1))
        elif line.startswith(_SOFT_FAILURE):
            self.soft_failures.add(self.current)


# ----------------------------------------------------------------------
# docker CLI
# ----------------------------------------------------------------------

class DockerClient:
    """Thin wrapper around the `docker` command line."""

    def __init__(self, binary: str = "docker"):
        self.binary = binary

    def _run(self, args: Sequence[str], *, check: bool = True,
             timeout: float | None = None) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        logger.debug("docker: %s", " ".join(args[:2]))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise BackendUnavailable(
                "docker", f"'{self.binary}' was not found", TOOL_HINTS["docker"]
            ) from e
        if check and proc.returncode != 0:
            raise CIError(
                message=f"docker {args[0]} failed (exit={proc.returncode})",
                kind="docker_command_failed",
                details={"stderr": proc.stderr.strip()[-2000:]},
            )
        return proc

    def ping(self) -> None:
        """Raise BackendUnavailable unless the daemon answers."""
        proc = self._run(["version", "--format", "{{.Server.Version}}"], check=False, timeout=30)
        if proc.returncode != 0:
            raise BackendUnavailable(
                "docker",
                "Docker daemon is not reachable",
                proc.stderr.strip() or TOOL_HINTS["docker"],
            )

    def image_exists(self, image: str) -> bool:
        return self._run(["image", "inspect", image], check=False).returncode == 0

    def pull(self, image: str, quiet: bool = True) -> None:
        if quiet:
            self._run(["pull", "--quiet", image])
            return
        # progress goes straight to the terminal
        proc = subprocess.run([self.binary, "pull", image])
        if proc.returncode != 0:
            raise CIError(message=f"docker pull {image} failed", kind="docker_command_failed")

    def create(
        self,
        *,
        image: str,
        name: str,
        script: str,
        env: Mapping[str, str],
        volumes: Sequence[str],
        network: str = "",
    ) -> str:
        args = [
            "create",
            "--name", name,
            "--workdir", CONTAINER_WORKSPACE,
            "--memory", MEMORY_LIMIT,
            "--memory-swap", MEMORY_SWAP_LIMIT,
            "--cpu-shares", str(CPU_SHARES),
        ]
        for volume in volumes:
            args += ["--volume", volume]
        for key, value in env.items():
            args += ["--env", f"{key}={value}"]
        if network:
            args += ["--network", network]
        args += [image, "/bin/sh", "-c", script]
        return self._run(args).stdout.strip()

    def start(self, container_id: str) -> None:
        self._run(["start", container_id])

    def attach(self, container_id: str, on_line: Callable[[str, str], None],
               timeout: float | None = None) -> int:
        """
        Stream the container's stdout/stderr until it exits and return its exit
        code. Raises TimeoutError if it is still running after `timeout` seconds.
        """
        follower = subprocess.Popen(
            [self.binary, "logs", "--follow", container_id],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )
        readers = [
            threading.Thread(target=_pump, args=(follower.stdout, on_line, "stdout"), daemon=True),
            threading.Thread(target=_pump, args=(follower.stderr, on_line, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()
        try:
            proc = self._run(["wait", container_id], timeout=timeout)
        except subprocess.TimeoutExpired as e:
            follower.kill()
            raise TimeoutError(f"container {container_id[:12]} still running after {timeout:.0f}s") from e
        finally:
            follower.wait()
            for reader in readers:
                reader.join()
        return int(proc.stdout.strip() or 1)

    def tail_logs(self, container_id: str, lines: int = TAIL_LINES) -> List[str]:
        proc = self._run(["logs", "--tail", str(lines), container_id], check=False)
        return (proc.stdout + proc.stderr).splitlines()[-lines:]

    def stop(self, container_id: str) -> None:
        self._run(["stop", "--time", "5", container_id])

    def remove(self, container_id: str) -> None:
        self._run(["rm", "--force", "--volumes", container_id])


def _pump(stream: IO[str], on_line: Callable[[str, str], None], name: str) -> None:
    with stream:
        for line in stream:
            on_line(line.rstrip("\n"), name)


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class DockerRunner(Runner):
    """Runs a whole job as one generated script inside a fresh container."""

    runner_type = RunnerType.DOCKER

    def __init__(
        self,
        config: RunnerConfig,
        pipeline: Optional[Pipeline] = None,
        console: Optional[Console] = None,
        *,
        client: Optional[DockerClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config, pipeline, console)
        self.client = client or DockerClient(config.docker_binary)
        self._sleep = sleep
        self._containers: List[str] = []
        self._lock = threading.Lock()
        if not config.dry_run:
            self.client.ping()

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run_job(self, job: Job, workdir: str | Path) -> JobSummary:
        summary = JobSummary(job.name, total_steps=len(job.steps)).start()
        self.console.job_started(job.name, self.runner_type.value)

        image = resolve_image(job, self.config.default_image)
        script = build_script(
            job,
            defaults=self.pipeline.defaults if self.pipeline else None,
            verbose=self.config.verbose,
            should_run=self.should_run,
        )
        env = self.container_environment(job, workdir)
        for service in job.services:
            self.console.print_info(
                f"[{job.name}] service '{service.name}' ({service.image}) is not started by the local runner"
            )

        if self.config.dry_run:
            self.console.dry_run_container(job.name, image, script, {
                "workdir": CONTAINER_WORKSPACE,
                "volumes": ", ".join(self._volumes(job, workdir)),
                "env": ", ".join(sorted(env)),
                "memory": MEMORY_LIMIT,
                "network": self.config.network or "default",
            })
            self._record_steps(job, summary, _ScriptProgress(len(job.steps)), 0, [])
            summary.finish(True)
            self.console.job_finished(summary)
            return summary

        progress = _ScriptProgress(len(job.steps))

        def on_line(line: str, stream: str) -> None:
            progress.feed(line)
            self.console.output_line(job.name, line, stream)

        timeout = self.timeout_minutes(job)
        try:
            container_id, exit_code = self._execute(job, workdir, image, script, env, on_line, timeout * 60)
        except TimeoutError as e:
            summary.errors.append(f"job timed out after {timeout:g} minute(s)")
            summary.finish(False)
            self.console.job_finished(summary)
            raise JobFailure(job.name, summary, f"timed out after {timeout:g} minute(s)") from e
        except CIError as e:
            summary.errors.append(e.message)
            summary.finish(False)
            self.console.job_finished(summary)
            raise JobFailure(job.name, summary, e.message) from e

        tail: List[str] = []
        if exit_code != 0:
            tail = self.client.tail_logs(container_id, TAIL_LINES)
            self.console.print_tail(job.name, tail)
        self._record_steps(job, summary, progress, exit_code, tail)
        summary.finish(exit_code == 0)
        self.console.job_finished(summary)
        if exit_code != 0:
            raise JobFailure(job.name, summary, f"container exited with code {exit_code}")
        return summary

    def _record_steps(self, job: Job, summary: JobSummary, progress: _ScriptProgress,
                      exit_code: int, tail: List[str]) -> None:
        # without a marker the script died before the first step
        reached = len(job.steps) if exit_code == 0 else progress.current
        for index, step in enumerate(job.steps, start=1):
            if index > reached:
                break
            result = StepResult(step.name)
            if isinstance(step.action, UsesAction):
                result.finish(Status.SKIPPED, error=f"unsupported action {step.action.name}")
            elif not self.should_run(step):
                result.finish(Status.SKIPPED, error=f"condition '{step.condition}' is false")
            elif index in progress.soft_failures:
                result.finish(Status.FAILED, error="failed (continue-on-error)")
            elif exit_code != 0 and index == reached:
                result.finish(Status.FAILED, exit_code=exit_code, output="\n".join(tail),
                              error=f"exit code {exit_code}")
            else:
                result.finish(Status.SUCCESS, exit_code=0)
            summary.add(result)
        if exit_code != 0 and reached == 0:
            summary.errors.append(f"container exited with code {exit_code} before the first step")

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def run_step(
        self,
        step: Step,
        env: Mapping[str, str],
        workdir: str | Path,
        job: Optional[Job] = None,
    ) -> StepResult:
        job_name = job.name if job else None
        label = job_name or step.name
        result = StepResult(step.name).start()

        if isinstance(step.action, UsesAction):
            self.console.warning(f"[{label}] action '{step.action.action}' is not supported in containers, skipping")
            return result.finish(Status.SKIPPED, error=f"unsupported action {step.action.name}")

        single = dataclasses.replace(job, steps=(step,)) if job else Job(name=step.name, steps=(step,))
        image = resolve_image(single, self.config.default_image)
        script = build_script(
            single,
            defaults=self.pipeline.defaults if self.pipeline else None,
            verbose=self.config.verbose,
        )
        container_env = layered_env(env, job.container.env if job and job.container else None)

        if self.config.dry_run:
            self.console.dry_run_container(label, image, script, {"env": ", ".join(sorted(container_env))})
            return result.finish(Status.SUCCESS, exit_code=0)

        def attempt(_number: int) -> str:
            lines: List[str] = []

            def on_line(line: str, stream: str) -> None:
                lines.append(line)
                self.console.output_line(label, line, stream)

            try:
                _cid, exit_code = self._execute(
                    single, workdir, image, script, container_env, on_line, step.timeout_minutes * 60,
                )
            except TimeoutError as e:
                raise StepTimeout(job_name, step.name, step.timeout_minutes) from e
            output = "\n".join(lines)
            if exit_code != 0:
                raise StepFailure(job_name, step.name, step.command_text, exit_code, output)
            return output

        attempts = StepAttempts(
            step.retry,
            job=job_name,
            step=step.name,
            sleep=self._sleep,
            on_retry=lambda n, total, delay, err: self.console.retrying(label, step.name, n, total, delay, err),
        )
        try:
            output = attempts.run(attempt)
        except StepError as e:
            last = getattr(e, "last_error", e)
            e.result = result.finish(
                Status.FAILED,
                exit_code=getattr(last, "exit_code", None),
                output=getattr(last, "output", ""),
                retries=attempts.retries,
                error=e.message,
            )
            raise
        return result.finish(Status.SUCCESS, exit_code=0, output=output, retries=attempts.retries)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def container_environment(self, job: Job, workdir: str | Path) -> Dict[str, str]:
        env = self.job_environment(job, workdir, inherit=False, workspace=CONTAINER_WORKSPACE)
        return layered_env(env, job.container.env if job.container else None)

    def _volumes(self, job: Job, workdir: str | Path) -> List[str]:
        volumes = [f"{Path(workdir).resolve()}:{CONTAINER_WORKSPACE}"]
        volumes += self.config.extra_volumes
        if job.container is not None:
            volumes += job.container.volumes
        return volumes

    def _ensure_image(self, image: str) -> None:
        if self.config.pull_images or not self.client.image_exists(image):
            self.console.print_info(f"Pulling image {image}")
            self.client.pull(image, quiet=not self.config.verbose)

    def _execute(
        self,
        job: Job,
        workdir: str | Path,
        image: str,
        script: str,
        env: Mapping[str, str],
        on_line: Callable[[str, str], None],
        timeout: float,
    ) -> tuple[str, int]:
        """Create, start and follow one container. Returns (id, exit code)."""
        self._ensure_image(image)
        container_id = self.client.create(
            image=image,
            name=container_name(job.name),
            script=script,
            env=env,
            volumes=self._volumes(job, workdir),
            network=self.config.network,
        )
        with self._lock:
            self._containers.append(container_id)
        logger.debug("created container %s for %s", container_id[:12], job.name)

        self.client.start(container_id)
        try:
            exit_code = self.client.attach(container_id, on_line, timeout=timeout or None)
        except TimeoutError:
            self.client.stop(container_id)
            raise
        return container_id, exit_code

    @property
    def containers(self) -> List[str]:
        with self._lock:
            return list(self._containers)

    def cleanup(self) -> None:
        with self._lock:
            containers = list(self._containers)
            self._containers.clear()

        errors: List[str] = []
        for container_id in containers:
            for action in (self.client.stop, self.client.remove):
                try:
                    action(container_id)
                except CIError as e:
                    errors.append(f"{action.__name__} {container_id[:12]}: {e.message}")
        if errors:
            raise CleanupError(errors)
