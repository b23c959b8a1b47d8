# vcs.py
# Small, focused wrapper around the Git CLI.
# Version computation can take its list of candidate source files from git
# (tracked + untracked-but-not-ignored) instead of walking the filesystem.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    A non-zero exit raises subprocess.CalledProcessError.

    Args:
        args: List of git arguments (e.g. ["ls-files", "--cached"])
        cwd: Optional working directory in which to run the git command.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """
    Return the absolute path to the root of the Git repository containing `cwd`.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes (modified, staged or untracked).
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def tracked_files(root: str | Path) -> List[str]:
    """
    Return the files git considers part of the working tree under `root`.

    Includes committed, staged and untracked files; skips anything matched by
    .gitignore. Paths are relative to `root` and use forward slashes.

    Returns:
        Sorted list of relative file paths.
    """
    out = _git(["ls-files", "--cached", "--others", "--exclude-standard"], cwd=root)
    if not out:
        return []
    # ls-files reports deleted-but-still-indexed files too
    root_p = Path(root)
    return sorted({line for line in out.splitlines() if (root_p / line).is_file()})
