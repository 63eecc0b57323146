"""Console output formatting utilities for localci."""

from __future__ import annotations

import shlex
import sys
import threading
import traceback
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from ..results import Status

if TYPE_CHECKING:
    from ..errors import CIError
    from ..model import Job, Pipeline, Step
    from ..results import JobSummary, PipelineRun, StepResult


class Console:
    """
    Centralized console output formatting.

    Runners and the scheduler report progress through the hook methods
    (`job_started`, `step_started`, `output_line`, ...). Jobs may run on
    several threads at once, so every write goes through one lock.
    """

    def __init__(self, debug: bool = False, verbose: bool = False, quiet: bool = False):
        """
        Args:
            debug: show stack traces and debug lines
            verbose: show captured output of finished steps and retry attempts
            quiet: only print errors and the final results
        """
        self.debug = debug
        self.verbose = verbose or debug
        self.quiet = quiet
        self.prefix_output = False
        self._lock = threading.RLock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)
            sys.stdout.flush()

    def _err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    # ------------------------------------------------------------------
    # Run level
    # ------------------------------------------------------------------

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        source: str,
        job_count: int,
        runner: str,
        mode: str,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Pipeline: {pipeline}",
            f"File: {source}",
            f"Jobs: {job_count}",
            f"Runner: {runner} ({mode})",
            "",
        )

    def print_results(self, run: "PipelineRun") -> None:
        """Print final results summary. Printed even in quiet mode."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, result in run.jobs.items():
            status = result.status.value.upper()
            if result.failed and result.allow_failure:
                status += " (allowed)"
            lines.append(f"  {name}: {status} ({result.duration:.1f}s)")
        lines.append("")
        lines.append(f"Success: {run.succeeded}, Failed: {run.failed}, Total: {run.total}")
        if run.skipped or run.cancelled:
            lines.append(f"Skipped: {run.skipped}, Cancelled: {run.cancelled}")
        lines.append(f"Duration: {run.duration:.1f}s")
        with self._lock:
            for line in lines:
                print(line)

    # ------------------------------------------------------------------
    # Reporter hooks
    # ------------------------------------------------------------------

    def job_started(self, job: str, runner: str) -> None:
        self._out(f"\nJOB STARTED: {job} ({runner})")

    def _tag(self, job: str, text: str) -> str:
        return f"[{job}] {text}" if self.prefix_output else text

    def step_started(self, job: str, step: str, index: int, total: int) -> None:
        self._out(self._tag(job, f"STEP [{index}/{total}]: {step}"))

    def output_line(self, job: str, line: str, stream: str = "stdout") -> None:
        """Forward one line of live step output."""
        if self.quiet:
            return
        text = f"[{job}] {line}" if self.prefix_output else f"  {line}"
        with self._lock:
            print(text, file=sys.stderr if stream == "stderr" else sys.stdout)

    def step_finished(self, job: str, result: "StepResult") -> None:
        status = result.status.value
        line = f"STATUS: {status} ({result.duration:.1f}s)"
        if result.retries:
            line += f" after {result.retries} retr{'y' if result.retries == 1 else 'ies'}"
        if result.status == Status.SKIPPED and result.error:
            line = f"STATUS: skipped ({result.error})"
        lines = [self._tag(job, line)]
        if result.error and result.status == Status.FAILED:
            lines.append(f"Error: {result.error.splitlines()[0]}")
        if self.verbose and result.output and result.status == Status.FAILED:
            lines.append("Captured output:")
            lines.extend(f"  | {o}" for o in result.output.rstrip("\n").splitlines())
        self._out(*lines)

    def retrying(self, job: str, step: str, attempt: int, max_attempts: int,
                 delay: float, error: BaseException) -> None:
        message = getattr(error, "message", str(error))
        if self.verbose:
            self._out(
                f"[{job}] attempt {attempt}/{max_attempts} of '{step}' failed: {message}",
                f"[{job}] retrying in {delay:.1f}s",
            )
        else:
            self._out(f"[{job}] retrying '{step}' ({attempt + 1}/{max_attempts})")

    def job_finished(self, summary: "JobSummary") -> None:
        status = "success" if summary.success else "failed"
        self._out(
            f"JOB {status.upper()}: {summary.job_name} "
            f"({summary.completed_steps}/{summary.total_steps} steps, "
            f"{summary.failed_steps} failed, {summary.skipped_steps} skipped, "
            f"{summary.duration:.1f}s)"
        )
        if not summary.success:
            for error in summary.errors:
                self._err(f"  {error}")

    def job_error(self, job: str, error: "CIError") -> None:
        self.print_failure(job, str(error), hint=error.details.get("hint"), is_job=True)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            lines.append(f"Error: {(reason.splitlines() or ['Unknown error'])[0]}")
        self._err(*lines)

    def print_tail(self, job: str, lines: Sequence[str]) -> None:
        """Print the last lines of a failed container's log."""
        self._err(f"Last {len(lines)} log lines of {job}:", *(f"  {line}" for line in lines))

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def dry_run_step(self, job: str, step: "Step", argv: Sequence[str] | None,
                     cwd: str, env: Mapping[str, str]) -> None:
        lines = [f"[dry-run] {job} / {step.name}"]
        if argv is None:
            lines.append(f"  action: {step.command_text}")
        else:
            lines.append(f"  shell:  {shlex.join(argv[:-1])}")
            lines.append(f"  cwd:    {cwd}")
            lines.extend(f"  run:    {line}" for line in step.command_text.splitlines())
        if env:
            lines.append("  env:    " + ", ".join(sorted(env)))
        self._out(*lines)

    def dry_run_container(self, job: str, image: str, script: str,
                          params: Mapping[str, object]) -> None:
        lines = [f"[dry-run] {job} in container", f"  image: {image}"]
        lines.extend(f"  {key}: {value}" for key, value in params.items())
        lines.append("  script:")
        lines.extend(f"    {line}" for line in script.splitlines())
        self._out(*lines)

    # ------------------------------------------------------------------
    # validate / list
    # ------------------------------------------------------------------

    def print_validation(self, pipeline: "Pipeline", errors: Sequence[str]) -> None:
        if errors:
            self.print_error(
                "Pipeline is invalid",
                f"{pipeline.source or pipeline.name}: {len(errors)} problem(s) found",
                details=list(errors),
            )
        else:
            self._out(
                f"Pipeline '{pipeline.name}' is valid "
                f"({len(pipeline.jobs)} jobs, {len(pipeline.stages)} stages)"
            )

    def print_pipeline_tree(self, pipeline: "Pipeline", jobs: Iterable["Job"]) -> None:
        jobs = list(jobs)
        lines = [f"{pipeline.name} ({pipeline.provider or 'unknown'})"]
        groups: dict[str, list[Job]] = {}
        for job in jobs:
            groups.setdefault(job.stage, []).append(job)
        stage_order = [s for s in pipeline.stages if s in groups] + [s for s in groups if s not in pipeline.stages]
        for stage in stage_order:
            indent = "  "
            if stage:
                lines.append(f"  stage: {stage}")
                indent = "    "
            for job in groups[stage]:
                extra = f" (needs: {', '.join(job.needs)})" if job.needs else ""
                if job.allow_failure:
                    extra += " [allow_failure]"
                lines.append(f"{indent}{job.name}{extra}")
                for step in job.steps:
                    lines.append(f"{indent}  - {step.name}")
        # listing is the command's output, so quiet does not apply
        with self._lock:
            for line in lines:
                print(line)

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err(*lines)

    def print_ci_error(self, error: "CIError") -> None:
        details = [f"{k}: {v}" for k, v in error.details.items() if k != "hint"]
        errors = getattr(error, "errors", None)
        if errors and error.kind == "validation_failed":
            details = list(errors)
        self.print_error(
            error.kind.replace("_", " ").capitalize(),
            error.message,
            details=details or None,
            suggestion=error.details.get("hint"),
        )
        if self.debug:
            traceback.print_exception(type(error), error, error.__traceback__)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def warning(self, message: str) -> None:
        self._err(f"WARNING: {message}")

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._err(f"[DEBUG] {message}")


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
