# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    max_workers: int = _default_workers()
    cancel_grace_seconds: float = 5.0
    artifact_dir: str = ".jobgraph/artifacts"
    dispatch_retries: int = 3
    retry_backoff_seconds: float = 0.5

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            max_workers=max(1, int(os.environ.get("JOBGRAPH_MAX_WORKERS", str(_default_workers())))),
            cancel_grace_seconds=float(os.environ.get("JOBGRAPH_CANCEL_GRACE_SECONDS", "5")),
            artifact_dir=os.environ.get("JOBGRAPH_ARTIFACT_DIR", ".jobgraph/artifacts"),
            dispatch_retries=int(os.environ.get("JOBGRAPH_DISPATCH_RETRIES", "3")),
            retry_backoff_seconds=float(os.environ.get("JOBGRAPH_RETRY_BACKOFF_SECONDS", "0.5")),
        )

    def override(self, *, max_workers: Optional[int] = None, artifact_dir: Optional[str] = None) -> "Settings":
        """Apply CLI flags on top of the environment."""
        s = self
        if max_workers is not None:
            s = replace(s, max_workers=max(1, max_workers))
        if artifact_dir is not None:
            s = replace(s, artifact_dir=artifact_dir)
        return s
