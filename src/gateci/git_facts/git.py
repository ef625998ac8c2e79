# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.
#
# Git is only consulted to guess trigger metadata for local runs and to
# describe the repository to the cloud API; facts themselves never depend
# on anything but the Trigger they are computed from.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> str:
    """
    Return the checked-out branch name.

    Raises ValueError on a detached HEAD, since a push trigger needs a
    branch ref.
    """
    # `--abbrev-ref HEAD` prints "HEAD" when detached
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        raise ValueError("HEAD is detached; pass --ref explicitly")
    return name


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Return something the agent can `git checkout`: the branch name when on
    a branch, otherwise the HEAD SHA.
    """
    try:
        return current_branch(cwd=cwd)
    except ValueError:
        return head_sha(cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """Return the fetch URL of `remote`."""
    return _git(["remote", "get-url", remote], cwd=cwd)
