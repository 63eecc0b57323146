# git.py
# Small, focused wrapper around the Git CLI.
# Runners ask this module for the facts they export to steps
# (GIT_BRANCH, GIT_COMMIT) instead of calling git themselves.

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Directory in which to run git. Runners pass the job's workdir,
             which is not necessarily the process cwd.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def is_git_repo(cwd: Optional[str | Path] = None) -> bool:
    """True if `cwd` is inside a git work tree (and git is installed)."""
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """
    Return the absolute path to the root of the current Git repository.

    `git rev-parse --show-toplevel` prints the repo root regardless of
    where inside the repo it is run from.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Return the checked-out branch name.

    On a detached HEAD git prints "HEAD"; that is returned unchanged so the
    caller can tell the two cases apart.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)


def describe(cwd: Optional[str | Path] = None) -> tuple[str, str]:
    """
    (branch, commit) for the repository at `cwd`, empty strings when `cwd`
    is not a repository or has no commits yet.
    """
    if not is_git_repo(cwd):
        return "", ""
    try:
        return current_branch(cwd), head_sha(cwd)
    except subprocess.CalledProcessError as e:
        # fresh repository without commits
        logger.debug("git describe failed in %s: %s", cwd, e)
        return "", ""
