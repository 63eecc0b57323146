from .config import RunnerConfig, RunnerType, SchedulingOrder
from .dag import validate_pipeline
from .model import Job, Pipeline, RetryPolicy, Step
from .parsers import parse_pipeline
from .results import JobResult, JobSummary, PipelineRun, Status, StepResult
from .scheduler import Scheduler, run_pipeline, select_jobs

__all__ = [
    "Job",
    "JobResult",
    "JobSummary",
    "Pipeline",
    "PipelineRun",
    "RetryPolicy",
    "RunnerConfig",
    "RunnerType",
    "Scheduler",
    "SchedulingOrder",
    "Status",
    "Step",
    "StepResult",
    "parse_pipeline",
    "run_pipeline",
    "select_jobs",
    "validate_pipeline",
]
