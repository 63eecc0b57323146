# shell.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Callable, List, Mapping, Optional

from ..config import RunnerConfig, RunnerType
from ..errors import CleanupError, JobFailure, StepError, StepFailure, StepStartError, StepTimeout
from ..git_facts.git import is_git_repo
from ..model import Job, Pipeline, Step, UsesAction
from ..results import JobSummary, Status, StepResult
from ..ui.console import Console
from .base import Runner, layered_env
from .retry import StepAttempts

logger = logging.getLogger(__name__)

# action -> (tool, version check)
SETUP_ACTIONS = {
    "actions/setup-go": ("go", ["go", "version"]),
    "actions/setup-node": ("node", ["node", "--version"]),
    "actions/setup-python": ("python", ["python3", "--version"]),
}
CHECKOUT_ACTION = "actions/checkout"


def default_shell() -> str:
    """First of bash, sh found on PATH."""
    for candidate in ("bash", "sh"):
        if shutil.which(candidate):
            return candidate
    return "sh"


def shell_command(shell: str, script: str, verbose: bool = False) -> List[str]:
    """argv that runs `script` with `shell` in strict mode."""
    name = Path(shell).name
    trace = ["-x"] if verbose else []
    if name == "bash":
        return [shell, "-eo", "pipefail", *trace, "-c", script]
    if name == "sh":
        return [shell, "-e", *trace, "-c", script]
    if name in ("pwsh", "powershell"):
        return [shell, "-Command", script]
    if name in ("python", "python3"):
        return ["python3", "-c", script]
    if name == "node":
        return [shell, "-e", script]
    return [shell, "-c", script]


class ShellRunner(Runner):
    """Runs each step as a native subprocess in the job's working directory."""

    runner_type = RunnerType.SHELL

    def __init__(
        self,
        config: RunnerConfig,
        pipeline: Optional[Pipeline] = None,
        console: Optional[Console] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config, pipeline, console)
        self._sleep = sleep
        self._procs: set[subprocess.Popen] = set()
        self._procs_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run_job(self, job: Job, workdir: str | Path) -> JobSummary:
        summary = JobSummary(job.name, total_steps=len(job.steps)).start()
        self.console.job_started(job.name, self.runner_type.value)

        env = self.job_environment(job, workdir)
        timeout = self.timeout_minutes(job)
        deadline = time.monotonic() + timeout * 60 if timeout > 0 else None
        failure: Optional[StepError] = None
        timed_out = ""

        for index, step in enumerate(job.steps, start=1):
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = f"job timed out after {timeout:g} minute(s)"
                summary.add(StepResult(step.name).finish(Status.CANCELLED, error=timed_out))
                break

            if not self.should_run(step):
                result = StepResult.skipped(step.name, f"condition '{step.condition}' is false")
                summary.add(result)
                self.console.step_finished(job.name, result)
                continue

            self.console.step_started(job.name, step.name, index, len(job.steps))
            try:
                result = self.run_step(step, env, workdir, job=job)
            except StepError as e:
                summary.add(e.result)
                self.console.step_finished(job.name, e.result)
                if step.continue_on_error:
                    logger.info("job %s: step %r failed, continuing", job.name, step.name)
                    continue
                failure = e
                break
            summary.add(result)
            self.console.step_finished(job.name, result)

        summary.finish(failure is None and not timed_out)
        self.console.job_finished(summary)
        if failure is not None:
            raise JobFailure(job.name, summary, failure.message) from failure
        if timed_out:
            raise JobFailure(job.name, summary, timed_out)
        return summary

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def resolve_shell(self, step: Step, job: Optional[Job] = None) -> str:
        defaults = self.pipeline.defaults.shell if self.pipeline else ""
        return step.shell or (job.shell if job else "") or defaults or default_shell()

    def resolve_cwd(self, step: Step, job: Optional[Job], workdir: str | Path) -> Path:
        base = Path(workdir).resolve()
        defaults = self.pipeline.defaults.working_directory if self.pipeline else ""
        rel = step.working_dir or (job.working_dir if job else "") or defaults
        return (base / rel).resolve() if rel else base

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
        step_env = layered_env(env, step.env)
        cwd = self.resolve_cwd(step, job, workdir)
        action = step.action

        if isinstance(action, UsesAction) and not self._supports(action):
            self.console.warning(f"[{label}] action '{action.action}' is not supported locally, skipping")
            return result.finish(Status.SKIPPED, error=f"unsupported action {action.name}")

        if self.config.dry_run:
            argv = None
            if not isinstance(action, UsesAction):
                argv = shell_command(self.resolve_shell(step, job), action.text, self.config.verbose)
            self.console.dry_run_step(label, step, argv, str(cwd), step.env)
            return result.finish(Status.SUCCESS, exit_code=0)

        attempts = StepAttempts(
            step.retry,
            job=job_name,
            step=step.name,
            sleep=self._sleep,
            on_retry=lambda n, total, delay, err: self.console.retrying(label, step.name, n, total, delay, err),
        )
        try:
            output = attempts.run(lambda _n: self._attempt(job_name, step, step_env, cwd, job))
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

    def _supports(self, action: UsesAction) -> bool:
        return action.name == CHECKOUT_ACTION or action.name in SETUP_ACTIONS

    def _attempt(self, job_name: str | None, step: Step, env: Mapping[str, str],
                 cwd: Path, job: Optional[Job]) -> str:
        if not cwd.is_dir():
            raise StepStartError(job_name, step.name, f"working directory not found: {cwd}")

        action = step.action
        if isinstance(action, UsesAction):
            return self._run_action(job_name, step, action, env, cwd)

        argv = shell_command(self.resolve_shell(step, job), action.text, self.config.verbose)
        return self._spawn(job_name, step, argv, env, cwd, display=action.text)

    def _run_action(self, job_name: str | None, step: Step, action: UsesAction,
                    env: Mapping[str, str], cwd: Path) -> str:
        label = job_name or step.name
        if action.name == CHECKOUT_ACTION:
            if not is_git_repo(cwd):
                self.console.print_info(f"[{label}] not a git repository, nothing to check out")
                return ""
            argv = ["git", "fetch", "--all", "--tags"]
        else:
            tool, argv = SETUP_ACTIONS[action.name]
            wanted = action.inputs.get(f"{tool}-version") or action.ref or "any"
            self.console.print_info(f"[{label}] using installed {tool} (requested {wanted})")
        return self._spawn(job_name, step, argv, env, cwd, display=" ".join(argv))

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _spawn(self, job_name: str | None, step: Step, argv: List[str],
               env: Mapping[str, str], cwd: Path, display: str) -> str:
        label = job_name or step.name
        logger.debug("running %s in %s", argv[:-1] if len(argv) > 2 else argv, cwd)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                # own process group, so a timeout kills the whole tree
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise StepStartError(job_name, step.name, f"{argv[0]}: {e.strerror or e}") from e

        with self._procs_lock:
            self._procs.add(proc)

        stdout: List[str] = []
        stderr: List[str] = []
        readers = [
            threading.Thread(target=self._pump, args=(proc.stdout, stdout, label, "stdout"), daemon=True),
            threading.Thread(target=self._pump, args=(proc.stderr, stderr, label, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timeout = step.timeout_minutes * 60 if step.timeout_minutes > 0 else None
        timed_out = False
        try:
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._kill(proc)
                proc.wait()
        except BaseException:
            self._kill(proc)
            raise
        finally:
            for reader in readers:
                reader.join()
            with self._procs_lock:
                self._procs.discard(proc)

        output = "".join(stdout + stderr)
        if timed_out:
            raise StepTimeout(job_name, step.name, step.timeout_minutes)
        if proc.returncode != 0:
            raise StepFailure(job_name, step.name, display, proc.returncode, output)
        return output

    def _pump(self, stream: IO[str], sink: List[str], label: str, name: str) -> None:
        with stream:
            for line in stream:
                sink.append(line)
                self.console.output_line(label, line.rstrip("\n"), name)

    def _kill(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        if os.name == "posix":
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        else:
            proc.kill()

    def cleanup(self) -> None:
        with self._procs_lock:
            leftover = list(self._procs)
            self._procs.clear()
        errors = []
        for proc in leftover:
            try:
                self._kill(proc)
                proc.wait(timeout=10)
            except (OSError, subprocess.TimeoutExpired) as e:
                errors.append(f"pid {proc.pid}: {e}")
        if errors:
            raise CleanupError(errors)
