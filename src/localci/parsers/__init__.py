"""Pipeline file discovery and provider-specific parsing."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..errors import ParseError
from ..model import Pipeline
from .common import load_yaml
from .github import parse_github
from .gitlab import parse_gitlab

PARSERS: Dict[str, Callable[[Dict[str, Any], str], Pipeline]] = {
    "github": parse_github,
    "gitlab": parse_gitlab,
}

DEFAULT_FILES = (
    ".github/workflows/ci.yml",
    ".github/workflows/ci.yaml",
    ".gitlab-ci.yml",
    ".gitlab-ci.yaml",
)
FALLBACK_GLOBS = (
    ".github/workflows/*.yml",
    ".github/workflows/*.yaml",
    "*.gitlab-ci.yml",
)


def discover_pipeline_file(root: str | Path = ".") -> Path:
    """Find the pipeline file of a repository; well-known names first."""
    root = Path(root)
    for name in DEFAULT_FILES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    for pattern in FALLBACK_GLOBS:
        matches = sorted(p for p in root.glob(pattern) if p.is_file())
        if matches:
            return matches[0]
    raise ParseError(
        "no pipeline file found",
        searched=", ".join(DEFAULT_FILES + FALLBACK_GLOBS),
        hint="pass the file explicitly with --file",
    )


def detect_provider(path: str | Path, data: Optional[Dict[str, Any]] = None) -> str:
    """Guess the CI provider from the file location, then from its content."""
    text = Path(path).as_posix().lower()
    if ".github/" in text or text.startswith(".github"):
        return "github"
    if "gitlab" in Path(path).name.lower():
        return "gitlab"
    if data is not None:
        jobs = data.get("jobs")
        if isinstance(jobs, dict) and any(
            isinstance(j, dict) and ("runs-on" in j or "steps" in j) for j in jobs.values()
        ):
            return "github"
        if "stages" in data or any(isinstance(v, dict) and "script" in v for v in data.values()):
            return "gitlab"
    raise ParseError(f"cannot tell which CI provider '{path}' is for", hint="pass --provider")


def parse_pipeline(path: str | Path, provider: Optional[str] = None) -> Pipeline:
    data = load_yaml(path)
    provider = provider or detect_provider(path, data)
    try:
        parser = PARSERS[provider]
    except KeyError:
        raise ParseError(f"unknown provider '{provider}'", path=str(path)) from None
    return parser(data, str(path))


__all__ = [
    "DEFAULT_FILES",
    "PARSERS",
    "detect_provider",
    "discover_pipeline_file",
    "parse_github",
    "parse_gitlab",
    "parse_pipeline",
]
