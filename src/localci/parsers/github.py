# github.py
"""GitHub Actions workflow -> Pipeline."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ParseError, PipelineModelError
from ..model import Container, Job, Pipeline, RunDefaults, Service, Step
from .common import as_list, name_from_command, str_map

logger = logging.getLogger(__name__)

DEFAULT_RUNS_ON = "ubuntu-latest"
DEFAULT_TIMEOUT_MINUTES = 360


def _runs_on(value: Any) -> str:
    if value is None:
        return DEFAULT_RUNS_ON
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return str(value[0]) if value else DEFAULT_RUNS_ON
    if isinstance(value, dict):
        labels = as_list(value.get("labels"))
        if labels:
            return str(labels[0])
        if value.get("group"):
            return str(value["group"])
    return DEFAULT_RUNS_ON


def _needs(value: Any) -> List[str]:
    if isinstance(value, dict):
        return [str(k) for k in value]
    return [str(v) for v in as_list(value)]


def _continue_on_error(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.lower()
        return "true" in lowered or "failure()" in lowered
    return bool(value)


def _defaults(value: Any) -> RunDefaults:
    run = (value or {}).get("run") or {}
    return RunDefaults(
        shell=str(run.get("shell") or ""),
        working_directory=str(run.get("working-directory") or ""),
    )


def _container(value: Any) -> Optional[Container]:
    if value is None:
        return None
    if isinstance(value, str):
        return Container(image=value)
    if isinstance(value, dict):
        return Container(
            image=str(value.get("image") or ""),
            env=str_map(value.get("env")),
            volumes=tuple(str(v) for v in as_list(value.get("volumes"))),
            options=str(value.get("options") or ""),
            ports=tuple(as_list(value.get("ports"))),
        )
    raise ParseError(f"invalid container definition: {value!r}")


def _services(value: Any) -> List[Service]:
    services = []
    for name, entry in (value or {}).items():
        if isinstance(entry, str):
            services.append(Service(name=str(name), image=entry))
            continue
        entry = entry or {}
        services.append(Service(
            name=str(name),
            image=str(entry.get("image") or ""),
            env=str_map(entry.get("env")),
            ports=tuple(as_list(entry.get("ports"))),
        ))
    return services


def _timeout(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        # expressions like ${{ inputs.timeout }} cannot be resolved locally
        logger.debug("ignoring timeout-minutes %r", value)
        return default


def step_name(raw: Dict[str, Any], index: int) -> str:
    if raw.get("name"):
        return str(raw["name"])
    if raw.get("uses"):
        action = str(raw["uses"]).split("@", 1)[0]
        return f"Run {action.rstrip('/').split('/')[-1]}"
    if raw.get("run"):
        name = name_from_command(str(raw["run"]))
        if name:
            return name
    return f"Step {index}"


def _step(raw: Any, index: int, job_id: str) -> Step:
    if not isinstance(raw, dict):
        raise ParseError(f"job '{job_id}' step {index} must be a mapping")
    name = step_name(raw, index)
    run = raw.get("run")
    uses = raw.get("uses")
    try:
        return Step.build(
            name,
            run=str(run) if run is not None else None,
            uses=str(uses) if uses is not None else None,
            with_=str_map(raw.get("with")),
            env=str_map(raw.get("env")),
            working_dir=str(raw.get("working-directory") or ""),
            shell=str(raw.get("shell") or ""),
            condition=str(raw.get("if") or ""),
            continue_on_error=_continue_on_error(raw.get("continue-on-error")),
            timeout_minutes=_timeout(raw.get("timeout-minutes"), 0),
        )
    except PipelineModelError as e:
        raise ParseError(f"job '{job_id}': {e.message}") from e


def _job(job_id: str, raw: Any) -> Job:
    if not isinstance(raw, dict):
        raise ParseError(f"job '{job_id}' must be a mapping")
    if raw.get("uses"):
        # reusable workflow call: one step that refers to it
        steps = [Step.build(f"Run {raw['uses']}", uses=str(raw["uses"]), with_=str_map(raw.get("with")))]
    else:
        steps = [_step(s, i, job_id) for i, s in enumerate(as_list(raw.get("steps")), start=1)]

    job_defaults = _defaults(raw.get("defaults"))
    return Job(
        name=job_id,
        steps=tuple(steps),
        needs=tuple(_needs(raw.get("needs"))),
        runs_on=_runs_on(raw.get("runs-on")),
        container=_container(raw.get("container")),
        services=tuple(_services(raw.get("services"))),
        continue_on_error=_continue_on_error(raw.get("continue-on-error")),
        timeout_minutes=_timeout(raw.get("timeout-minutes"), DEFAULT_TIMEOUT_MINUTES),
        env=str_map(raw.get("env")),
        shell=job_defaults.shell,
        working_dir=job_defaults.working_directory,
    )


def _triggers(value: Any) -> List[str]:
    if isinstance(value, dict):
        return [str(k) for k in value]
    return [str(v) for v in as_list(value)]


def parse_github(data: Dict[str, Any], source: str = "") -> Pipeline:
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise ParseError("workflow defines no jobs", path=source or None)

    # PyYAML reads the bare key `on` as boolean True
    on = data.get("on", data.get(True))

    jobs = [_job(str(job_id), raw) for job_id, raw in jobs_raw.items()]
    name = data.get("name") or (Path(source).stem if source else "workflow")
    try:
        return Pipeline.from_jobs(
            str(name),
            jobs,
            env=str_map(data.get("env")),
            provider="github",
            defaults=_defaults(data.get("defaults")),
            triggers=tuple(_triggers(on)),
            source=source,
        )
    except PipelineModelError as e:
        raise ParseError(e.message, path=source or None) from e
