# scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .config import RunnerConfig, SchedulingOrder
from .dag import dependency_levels
from .errors import CIError, CleanupError, JobFailure, ValidationFailed
from .model import Job, Pipeline
from .results import JobResult, PipelineRun, Status
from .runners import create_runner
from .runners.base import Runner
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[Job], Runner]


# ----------------------------------------------------------------------
# Job selection
# ----------------------------------------------------------------------

def match_pattern(name: str, pattern: str) -> bool:
    """
    Match a job name against a pattern with an optional leading and/or
    trailing `*`. A `*` anywhere else is literal.
    """
    if name == pattern or pattern == "*":
        return True
    starts = pattern.startswith("*")
    ends = pattern.endswith("*")
    core = pattern[1 if starts else 0:len(pattern) - 1 if ends else len(pattern)]
    if starts and ends:
        return core in name
    if ends:
        return name.startswith(core)
    if starts:
        return name.endswith(core)
    return False


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(match_pattern(name, p) for p in patterns)


def select_jobs(
    pipeline: Pipeline,
    job: str | None = None,
    stage: str | None = None,
    only: Sequence[str] = (),
    except_: Sequence[str] = (),
    console: Optional[Console] = None,
) -> List[Job]:
    """
    Resolve which jobs to run.

    `job` is an exact name or, failing that, a pattern, and when given it
    is the whole selection. Otherwise `stage` limits the run to one stage
    and `only` / `except_` patterns filter what is left. Selection order
    follows the pipeline's job order.
    """
    console = console or get_console()
    jobs = list(pipeline.jobs.values())

    if job:
        if job in pipeline.jobs:
            jobs = [pipeline.jobs[job]]
        else:
            jobs = [j for j in jobs if match_pattern(j.name, job)]
            if not jobs:
                console.warning(f"no job matches '{job}'")
                return []
        return jobs

    if stage:
        jobs = [j for j in jobs if j.stage == stage]
        if not jobs:
            console.warning(f"no jobs in stage '{stage}'")
            return []

    if only:
        jobs = [j for j in jobs if _matches_any(j.name, only)]
    if except_:
        jobs = [j for j in jobs if not _matches_any(j.name, except_)]
    return jobs


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs a selected set of jobs sequentially or with bounded parallelism.

    Every job gets a fresh runner from `runner_factory`, and that runner is
    cleaned up whatever happens. Only the scheduler decides whether a job
    failure ends the run.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        config: RunnerConfig,
        *,
        workdir: str | Path = ".",
        runner_factory: Optional[RunnerFactory] = None,
        console: Optional[Console] = None,
    ):
        self.pipeline = pipeline
        self.config = config
        self.workdir = Path(workdir)
        self.console = console or get_console()
        self.runner_factory = runner_factory or (
            lambda job: create_runner(config, pipeline, self.console)
        )

    @property
    def max_parallel(self) -> int:
        return self.config.max_parallel or os.cpu_count() or 1

    def tolerates(self, job: Job) -> bool:
        """True if a failure of `job` does not abort the run."""
        return self.config.continue_on_error or job.allow_failure or job.continue_on_error

    def run(self, jobs: Sequence[Job]) -> PipelineRun:
        run = PipelineRun(self.pipeline.name, continue_on_error=self.config.continue_on_error).start()
        jobs = list(jobs)
        if self.config.parallel:
            self.console.prefix_output = True

        if self.config.order == SchedulingOrder.NEEDS:
            self._run_levels(jobs, run)
        elif self.config.parallel:
            self._run_parallel(jobs, run)
        else:
            self._run_sequential(jobs, run)

        # report in selection order, not completion order
        ordered = {j.name: run.jobs[j.name] for j in jobs if j.name in run.jobs}
        run.jobs.clear()
        run.jobs.update(ordered)
        return run.finish()

    def _run_one(self, job: Job) -> JobResult:
        started = time.monotonic()
        result = JobResult(job.name, status=Status.RUNNING, allow_failure=job.allow_failure)
        try:
            runner = self.runner_factory(job)
        except CIError as e:
            # backend construction problems are fatal to this job only
            logger.debug("could not create runner for %s: %s", job.name, e)
            self.console.job_error(job.name, e)
            result.status = Status.FAILED
            result.error = e
            result.duration = time.monotonic() - started
            result.seal()
            return result

        try:
            result.summary = runner.run_job(job, self.workdir)
            result.status = Status.SUCCESS
        except JobFailure as e:
            result.status = Status.FAILED
            result.summary = e.summary
            result.error = e
        except CIError as e:
            result.status = Status.FAILED
            result.error = e
            self.console.job_error(job.name, e)
        except Exception as e:
            logger.debug("job %s crashed", job.name, exc_info=True)
            error = CIError(f"{type(e).__name__}: {e}", kind="job_crashed", job=job.name)
            error.__cause__ = e
            result.status = Status.FAILED
            result.error = error
            self.console.job_error(job.name, error)
        finally:
            try:
                runner.cleanup()
            except CleanupError as e:
                logger.warning("cleanup of %s: %s", job.name, e.message)
                self.console.warning(f"[{job.name}] {e.message}")
                for problem in e.errors:
                    self.console.print_debug(problem)

        result.duration = time.monotonic() - started
        result.seal()
        return result

    def _run_sequential(self, jobs: List[Job], run: PipelineRun) -> bool:
        """Returns False if the run was aborted."""
        for index, job in enumerate(jobs):
            result = self._run_one(job)
            run.record(result)
            if result.failed and not self.tolerates(job):
                for rest in jobs[index + 1:]:
                    run.record(JobResult.not_run(rest.name, Status.CANCELLED))
                return False
        return True

    def _run_parallel(self, jobs: List[Job], run: PipelineRun) -> bool:
        """
        All jobs are dispatched; at most `max_parallel` hold a slot at once.
        There is no mid-flight cancellation, so every job runs to completion.
        """
        if not jobs:
            return True
        slots = threading.Semaphore(self.max_parallel)

        def unit(job: Job) -> JobResult:
            with slots:
                return self._run_one(job)

        aborted = False
        with ThreadPoolExecutor(max_workers=min(len(jobs), self.max_parallel)) as pool:
            futures = {pool.submit(unit, job): job for job in jobs}
            for future in as_completed(futures):
                result = future.result()
                run.record(result)
                if result.failed and not self.tolerates(futures[future]):
                    aborted = True
        return not aborted

    def _run_levels(self, jobs: List[Job], run: PipelineRun) -> None:
        try:
            levels = dependency_levels(jobs)
        except ValueError as e:
            raise ValidationFailed([str(e)]) from e

        by_name = {j.name: j for j in jobs}
        blocked: set[str] = set()
        for depth, level in enumerate(levels):
            ready = []
            for name in level:
                job = by_name[name]
                failed_deps = [d for d in job.needs if d in blocked]
                if failed_deps:
                    blocked.add(name)
                    run.record(JobResult.not_run(
                        name,
                        Status.SKIPPED,
                        CIError(f"dependency failed: {', '.join(failed_deps)}", kind="dependency_failed", job=name),
                    ))
                else:
                    ready.append(job)

            self.console.print_debug(f"level {depth + 1}: {[j.name for j in ready]}")
            if self.config.parallel:
                completed = self._run_parallel(ready, run)
            else:
                completed = self._run_sequential(ready, run)

            for job in ready:
                result = run.jobs[job.name]
                if result.status != Status.SUCCESS and not (result.failed and job.allow_failure):
                    blocked.add(job.name)

            if not completed:
                for later in levels[depth + 1:]:
                    for name in later:
                        run.record(JobResult.not_run(name, Status.CANCELLED))
                return


def run_pipeline(
    pipeline: Pipeline,
    config: RunnerConfig,
    jobs: Optional[Sequence[Job]] = None,
    **kwargs,
) -> PipelineRun:
    """Run `jobs` (default: every job of the pipeline) and return the aggregated run."""
    scheduler = Scheduler(pipeline, config, **kwargs)
    return scheduler.run(list(pipeline.jobs.values()) if jobs is None else jobs)
