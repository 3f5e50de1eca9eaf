# git.py
# Small wrapper around the Git CLI.
# Used to fill in ref / sha / repository for runs started from a local checkout.

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the checked-out branch, e.g. ``refs/heads/main``.

    Detached HEAD has no symbolic ref; an empty string is returned.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return ""


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    try:
        return _git(["remote", "get-url", remote], cwd)
    except subprocess.CalledProcessError:
        return ""


_REMOTE_RE = re.compile(r"(?:[:/])([^/:]+/[^/]+?)(?:\.git)?/?$")


def repository_name(url: str) -> str:
    """
    ``owner/name`` from a remote URL.

        git@github.com:acme/widgets.git   -> acme/widgets
        https://github.com/acme/widgets   -> acme/widgets
    """
    m = _REMOTE_RE.search(url.strip())
    return m.group(1) if m else ""


def local_facts(cwd: Optional[str | Path] = None) -> dict[str, str]:
    """ref / sha / repository of a local checkout; empty dict outside a repository."""
    try:
        sha = head_sha(cwd)
    except (OSError, subprocess.CalledProcessError):
        return {}
    return {
        "ref": current_ref(cwd),
        "sha": sha,
        "repository": repository_name(remote_url(cwd=cwd)),
    }
