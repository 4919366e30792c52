# git.py
# Facts about the local checkout that the CLI turns into a trigger event.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

PathLike = Optional[str | Path]


def _git(args: list[str], cwd: PathLike = None) -> str:
    """
    Run `git <args>` and return stdout without the trailing newline.

    Raises CalledProcessError outside a repository (stderr is discarded)
    and FileNotFoundError when git is not installed.
    """
    return subprocess.check_output(
        ["git", *args],
        cwd=None if cwd is None else str(cwd),
        stderr=subprocess.DEVNULL,
        text=True,
    ).strip()


def head_sha(cwd: PathLike = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: PathLike = None) -> str:
    """Checked-out branch name; the commit SHA for a detached HEAD."""
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return head_sha(cwd=cwd) if branch == "HEAD" else branch


def get_remote_url(remote: str = "origin", cwd: PathLike = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def repo_name(cwd: PathLike = None) -> str:
    """Name shown in the run header: the origin URL's last segment, else the directory name."""
    try:
        url = get_remote_url("origin", cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name[:-4] if name.endswith(".git") else name
