# outputs.py
from __future__ import annotations

import json
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from .context import RunResultTable
from .errors import ArtifactNotFound, NotReady

# ---------------------------------------------------------------------
# Artifact handoff:
#   a job asks to upload (name, path) while it runs  -> staged only
#   the job reaches a terminal state                 -> staged artifacts are persisted
#   a dependent job downloads (name) before its steps -> fetched from the store
#
# The engine only sequences these calls; the store owns the format.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".jobgraph/artifacts"


class ArtifactStore(Protocol):
    def put(self, name: str, path: Path) -> None:
        ...

    def get(self, name: str, dest: Path) -> None:
        ...


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


class LocalArtifactStore:
    """
    File-based artifact store:
      root/
        <name>.tar.gz
        <name>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, name: str) -> Path:
        return self.root / f"{name}.tar.gz"

    def manifest_path(self, name: str) -> Path:
        return self.root / f"{name}.manifest.json"

    def put(self, name: str, path: Path) -> None:
        src = Path(path).resolve()
        if not src.exists():
            raise FileNotFoundError(f"Artifact '{name}' path not found: {src}")

        base = src if src.is_dir() else src.parent
        files = list(_iter_files_under(src)) if src.is_dir() else [src]

        art = self.artifact_path(name)
        tmp = art.with_suffix(".tar.gz.tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f in files:
                    tar.add(str(f), arcname=_relpath(f, base), recursive=False)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        manifest = {
            "name": name,
            "files": [_relpath(f, base) for f in files],
            "size": art.stat().st_size,
            "created_at_unix": int(time.time()),
        }
        self.manifest_path(name).write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")

    def get(self, name: str, dest: Path) -> None:
        art = self.artifact_path(name)
        if not art.exists():
            raise ArtifactNotFound(name)
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(art), mode="r:gz") as tar:
            tar.extractall(path=str(dest), filter="data")


class InMemoryArtifactStore:
    """Keeps artifacts as {relative path: bytes}; handy for tests and the API."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[str, Dict[str, bytes]] = {}

    def put(self, name: str, path: Path) -> None:
        src = Path(path)
        if not src.exists():
            raise FileNotFoundError(f"Artifact '{name}' path not found: {src}")
        if src.is_dir():
            files = {_relpath(f, src): f.read_bytes() for f in _iter_files_under(src)}
        else:
            files = {src.name: src.read_bytes()}
        with self._lock:
            self._blobs[name] = files

    def get(self, name: str, dest: Path) -> None:
        with self._lock:
            files = self._blobs.get(name)
        if files is None:
            raise ArtifactNotFound(name)
        for rel, data in files.items():
            target = Path(dest) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class _Staged:
    name: str
    path: Path


class OutputResolver:
    """
    Owns the outputs of running job instances and the artifact handoff.

    - record_output: only while the instance runs; last write wins.
    - get_outputs: raises NotReady until the instance is in the result table.
    - artifacts: staged while running, persisted once the job is terminal,
      fetchable only after that.
    """

    def __init__(self, table: RunResultTable, store: Optional[ArtifactStore] = None):
        self._table = table
        self._store = store
        self._lock = threading.Lock()
        self._pending: Dict[str, Dict[str, str]] = {}
        self._staged: Dict[str, List[_Staged]] = {}
        self._published: Dict[str, str] = {}  # artifact name -> producing instance

    def open(self, instance_id: str) -> None:
        with self._lock:
            self._pending.setdefault(instance_id, {})

    def record_output(self, instance_id: str, name: str, value: str) -> None:
        with self._lock:
            if instance_id in self._table or instance_id not in self._pending:
                raise ValueError(f"Job '{instance_id}' is not running; cannot record output '{name}'")
            self._pending[instance_id][name] = str(value)

    def pending_outputs(self, instance_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._pending.get(instance_id, {}))

    def close(self, instance_id: str) -> Dict[str, str]:
        """Stop accepting outputs for an instance and hand back what it recorded."""
        with self._lock:
            return self._pending.pop(instance_id, {})

    def get_outputs(self, instance_id: str) -> Dict[str, str]:
        result = self._table.get(instance_id)
        if result is None:
            raise NotReady(instance_id)
        return dict(result.outputs)

    # -- artifacts -----------------------------------------------------

    def stage_artifact(self, instance_id: str, name: str, path: Path) -> None:
        if not Path(path).exists():
            raise FileNotFoundError(f"Artifact '{name}' path not found: {path}")
        with self._lock:
            if instance_id in self._table:
                raise ValueError(f"Job '{instance_id}' already finished; cannot stage artifact '{name}'")
            self._staged.setdefault(instance_id, []).append(_Staged(name, Path(path)))

    def publish_artifacts(self, instance_id: str) -> List[str]:
        """Persist everything the (now terminal) instance staged."""
        if instance_id not in self._table:
            raise NotReady(instance_id)
        with self._lock:
            staged = self._staged.pop(instance_id, [])
        names: List[str] = []
        for item in staged:
            if self._store is None:
                raise RuntimeError("No artifact store configured")
            self._store.put(item.name, item.path)
            with self._lock:
                self._published[item.name] = instance_id
            names.append(item.name)
        return names

    def fetch_artifact(self, name: str, dest: Path) -> str:
        """Download a published artifact; returns the producing instance id."""
        with self._lock:
            producer = self._published.get(name)
        if producer is None:
            raise ArtifactNotFound(name)
        if producer not in self._table:
            raise NotReady(producer)
        if self._store is None:
            raise RuntimeError("No artifact store configured")
        self._store.get(name, Path(dest))
        return producer

    def published(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._published)
