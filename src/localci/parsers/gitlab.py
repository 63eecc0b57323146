# gitlab.py
"""GitLab CI configuration -> Pipeline."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ParseError, PipelineModelError
from ..model import (
    ArtifactConfig,
    CacheConfig,
    Job,
    Pipeline,
    RetryPolicy,
    Service,
    Step,
    TriggerConfig,
)
from .common import as_list, flatten_commands, name_from_command, str_map, to_bool

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "alpine:latest"
DEFAULT_STAGE = "test"
# main scripts up to this many commands become one step per command
MAX_SPLIT_COMMANDS = 5

RESERVED_KEYS = {
    "image",
    "services",
    "stages",
    "types",
    "before_script",
    "after_script",
    "variables",
    "cache",
    "include",
    "default",
    "workflow",
}

_TIMEOUT_PART = re.compile(
    r"(\d+(?:\.\d+)?)\s*(days?|d|hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)(?![a-z])",
    re.IGNORECASE,
)
_TIMEOUT_MINUTES = {"d": 1440.0, "h": 60.0, "m": 1.0, "s": 1 / 60}


def parse_timeout(value: Any) -> float:
    """
    Minutes from a GitLab duration: "1h 30m", "30 minutes", "2 hours".
    A bare number counts as seconds.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) / 60
    text = str(value).strip()
    try:
        return float(text) / 60
    except ValueError:
        pass
    matches = list(_TIMEOUT_PART.finditer(text))
    leftover = _TIMEOUT_PART.sub("", text).replace(",", "").replace("and", "").strip()
    if not matches or leftover:
        raise ParseError(f"invalid timeout '{text}'")
    return sum(float(m.group(1)) * _TIMEOUT_MINUTES[m.group(2)[0].lower()] for m in matches)


def _variables(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ParseError("variables must be a mapping")
    flat = {}
    for key, val in value.items():
        if isinstance(val, dict):
            val = val.get("value", "")
        flat[key] = val
    return str_map(flat)


def _image(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return str(value or "")


def _services(value: Any) -> List[Service]:
    services = []
    for entry in as_list(value):
        if isinstance(entry, str):
            services.append(Service(name=entry, image=entry))
            continue
        image = str(entry.get("name") or "")
        services.append(Service(
            name=image,
            image=image,
            alias=str(entry.get("alias") or ""),
            env=_variables(entry.get("variables")),
            command=tuple(flatten_commands(entry.get("command"))),
        ))
    return services


def _retry(value: Any) -> Optional[RetryPolicy]:
    if value is None:
        return None
    try:
        if isinstance(value, dict):
            retries = int(value.get("max", 0) or 0)
            return RetryPolicy(
                max_attempts=retries + 1,
                conditions=tuple(str(c) for c in as_list(value.get("when"))),
                exit_codes=tuple(int(c) for c in as_list(value.get("exit_codes"))),
            )
        return RetryPolicy(max_attempts=int(value) + 1)
    except (TypeError, ValueError) as e:
        raise ParseError(f"invalid retry value {value!r}") from e


def _needs(raw: Dict[str, Any]) -> List[str]:
    needs = raw.get("needs")
    if needs is None:
        needs = raw.get("dependencies")
    names = []
    for item in as_list(needs):
        if isinstance(item, dict):
            if item.get("job"):
                names.append(str(item["job"]))
        else:
            names.append(str(item))
    return names


def _artifacts(value: Any) -> Optional[ArtifactConfig]:
    if not value:
        return None
    return ArtifactConfig(
        paths=tuple(str(p) for p in as_list(value.get("paths"))),
        name=str(value.get("name") or ""),
        expire_in=str(value.get("expire_in") or ""),
        when=str(value.get("when") or ""),
        exclude=tuple(str(p) for p in as_list(value.get("exclude"))),
    )


def _cache(value: Any) -> Optional[CacheConfig]:
    if isinstance(value, list):
        value = value[0] if value else None
    if not value:
        return None
    key = value.get("key") or ""
    if isinstance(key, dict):
        key = ",".join(str(f) for f in as_list(key.get("files")))
    return CacheConfig(
        key=str(key),
        paths=tuple(str(p) for p in as_list(value.get("paths"))),
        policy=str(value.get("policy") or ""),
    )


def _trigger(value: Any) -> Optional[TriggerConfig]:
    if not value:
        return None
    if isinstance(value, str):
        return TriggerConfig(project=value)
    include = value.get("include") or ""
    if not isinstance(include, str):
        include = str(include)
    return TriggerConfig(
        project=str(value.get("project") or ""),
        branch=str(value.get("branch") or ""),
        strategy=str(value.get("strategy") or ""),
        include=include,
    )


def _allow_failure(value: Any) -> bool:
    # `allow_failure: {exit_codes: [...]}` still allows failure
    if isinstance(value, dict):
        return True
    return to_bool(value) if value is not None else False


def script_steps(
    before: List[str],
    script: List[str],
    after: List[str],
    retry: Optional[RetryPolicy] = None,
) -> List[Step]:
    """
    Map GitLab script sections to steps.

    Short main scripts become one step per command, longer ones a single
    step. The after_script never fails the job.
    """
    steps: List[Step] = []
    if before:
        steps.append(Step.build("Before Script", script=before, retry=retry))
    if 0 < len(script) <= MAX_SPLIT_COMMANDS:
        for index, command in enumerate(script, start=1):
            name = name_from_command(command) or f"Script {index}"
            steps.append(Step.build(name, run=command, retry=retry))
    elif script:
        steps.append(Step.build("Main Script", script=script, retry=retry))
    if after:
        steps.append(Step.build("After Script", script=after, continue_on_error=True))
    return steps


def _job(name: str, raw: Dict[str, Any], globals_: Dict[str, Any]) -> Job:
    def inherited(key: str) -> Any:
        if key in raw:
            return raw[key]
        return globals_.get(key)

    retry = _retry(raw.get("retry", globals_.get("retry")))
    trigger = _trigger(raw.get("trigger"))
    script = flatten_commands(raw.get("script"))
    if not script and trigger is None and not raw.get("extends"):
        raise ParseError(f"job '{name}' has no script")

    steps: List[Step] = []
    # trigger jobs start a downstream pipeline and run nothing here
    if script:
        try:
            steps = script_steps(
                flatten_commands(inherited("before_script")),
                script,
                flatten_commands(inherited("after_script")),
                retry,
            )
        except PipelineModelError as e:
            raise ParseError(f"job '{name}': {e.message}") from e

    return Job(
        name=name,
        steps=tuple(steps),
        needs=tuple(_needs(raw)),
        stage=str(raw.get("stage") or DEFAULT_STAGE),
        image=_image(inherited("image")) or DEFAULT_IMAGE,
        tags=tuple(str(t) for t in as_list(inherited("tags"))),
        services=tuple(_services(inherited("services"))),
        allow_failure=_allow_failure(raw.get("allow_failure")),
        retry=retry,
        timeout_minutes=parse_timeout(inherited("timeout")),
        env=_variables(raw.get("variables")),
        artifacts=_artifacts(inherited("artifacts")),
        cache=_cache(inherited("cache")),
        trigger=trigger,
    )


def parse_gitlab(data: Dict[str, Any], source: str = "") -> Pipeline:
    # top-level keys are the oldest way to set defaults; `default:` wins
    globals_ = {k: data[k] for k in ("image", "services", "before_script", "after_script", "cache") if k in data}
    default = data.get("default") or {}
    if not isinstance(default, dict):
        raise ParseError("'default' must be a mapping", path=source or None)
    globals_.update(default)

    jobs: List[Job] = []
    for key, raw in data.items():
        if not isinstance(key, str) or key in RESERVED_KEYS or key.startswith("."):
            continue
        if not isinstance(raw, dict):
            logger.debug("skipping non-job key %r", key)
            continue
        try:
            jobs.append(_job(key, raw, globals_))
        except ParseError as e:
            if source and "file" not in e.details:
                e.details["file"] = source
            raise

    if not jobs:
        raise ParseError("pipeline defines no jobs", path=source or None)

    stages = [str(s) for s in as_list(data.get("stages") or data.get("types"))]
    if not stages:
        for job in jobs:
            if job.stage not in stages:
                stages.append(job.stage)

    workflow = data.get("workflow") or {}
    name = (workflow.get("name") if isinstance(workflow, dict) else None) or (
        Path(source).stem if source else "pipeline"
    )
    try:
        return Pipeline.from_jobs(
            str(name),
            jobs,
            stages=tuple(stages),
            env=_variables(data.get("variables")),
            provider="gitlab",
            source=source,
        )
    except PipelineModelError as e:
        raise ParseError(e.message, path=source or None) from e
