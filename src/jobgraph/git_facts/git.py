# git.py
# Thin wrapper around the Git CLI, used to fill in trigger metadata
# (ref, sha, repository) for runs started from a local checkout.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed; callers decide whether
    a missing fact is fatal.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD (exposed to workflows as `github.sha`)."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref of the checkout, e.g. `refs/heads/main`.

    A detached HEAD has no symbolic ref; the commit SHA is returned instead.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def repository_name(cwd: Optional[str] = None) -> str:
    """`owner/repo` taken from the origin URL (ssh or https form)."""
    url = remote_url(cwd=cwd).rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    tail = url.replace(":", "/").split("/")
    return "/".join(tail[-2:])


def local_facts(cwd: Optional[str] = None) -> dict[str, str]:
    """
    Best-effort trigger facts for the current checkout. Anything git cannot
    answer (not a repo, no remote, git missing) is left out.
    """
    facts: dict[str, str] = {}
    for key, fn in (("ref", current_ref), ("sha", head_sha), ("repository", repository_name)):
        try:
            facts[key] = fn(cwd=cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            continue
    return facts
