# artifacts.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import threading
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from .errors import ArtifactNotFoundError, DuplicateArtifactError, InvalidArtifactNameError
from .model import Artifact, utc_now

if TYPE_CHECKING:
    from .settings import Settings

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts hand state (terraform state, image digests, ...) from one
# producer job to its declared consumers inside ONE pipeline run.
#
#   key = (run_id, job, name)      -- not a content hash
#
# Write-once: put() on an existing key raises DuplicateArtifactError.
# Write-then-publish: the scheduler calls put() for every output and then
# publish(job) BEFORE marking the job Succeeded. get() refuses to read from
# a producer that was never published.
# ---------------------------------------------------------------------


def check_name(value: str, what: str = "name") -> None:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise InvalidArtifactNameError(what, value)


class ArtifactStore:
    """Run-scoped, thread-safe artifact store. Subclasses implement the storage hooks."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._lock = threading.RLock()

    # ---- public API -------------------------------------------------

    def check(self, name: str) -> None:
        """Raise InvalidArtifactNameError if this store cannot hold `name`."""
        check_name(name, "name")

    def put(self, job: str, name: str, data: bytes) -> Artifact:
        check_name(job, "job")
        self.check(name)
        with self._lock:
            if self._exists(job, name):
                raise DuplicateArtifactError(job, name)
            artifact = Artifact(run_id=self.run_id, job=job, name=name, data=bytes(data))
            self._save(artifact)
            return artifact

    def publish(self, job: str) -> None:
        """Mark `job` Succeeded: its artifacts become readable."""
        with self._lock:
            self._mark_published(job)

    def get(self, job: str, name: str) -> Artifact:
        with self._lock:
            if not self._is_published(job):
                raise ArtifactNotFoundError(job, name, "producing job has not succeeded")
            artifact = self._load(job, name)
            if artifact is None:
                raise ArtifactNotFoundError(job, name, "producing job did not write it")
            return artifact

    def list(self, job: str) -> List[str]:
        with self._lock:
            return sorted(self._names(job))

    def discard(self) -> None:
        """Garbage-collect everything this run stored."""
        with self._lock:
            self._discard()

    # ---- storage hooks ----------------------------------------------

    def _exists(self, job: str, name: str) -> bool:
        return name in self._names(job)

    def _save(self, artifact: Artifact) -> None:
        raise NotImplementedError

    def _load(self, job: str, name: str) -> Optional[Artifact]:
        raise NotImplementedError

    def _names(self, job: str) -> Set[str]:
        raise NotImplementedError

    def _mark_published(self, job: str) -> None:
        raise NotImplementedError

    def _is_published(self, job: str) -> bool:
        raise NotImplementedError

    def _discard(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------

class InMemoryArtifactStore(ArtifactStore):
    def __init__(self, run_id: str = "local"):
        super().__init__(run_id)
        self._blobs: Dict[Tuple[str, str], Artifact] = {}
        self._published: Set[str] = set()

    def _save(self, artifact: Artifact) -> None:
        self._blobs[(artifact.job, artifact.name)] = artifact

    def _load(self, job: str, name: str) -> Optional[Artifact]:
        return self._blobs.get((job, name))

    def _names(self, job: str) -> Set[str]:
        return {n for (j, n) in self._blobs if j == job}

    def _mark_published(self, job: str) -> None:
        self._published.add(job)

    def _is_published(self, job: str) -> bool:
        return job in self._published

    def _discard(self) -> None:
        self._blobs.clear()
        self._published.clear()


# ---------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------
#
# Layout:
#   <root>/<run_id>/<job>/<name>          artifact bytes
#   <root>/<run_id>/<job>/manifest.json   written on publish (sha256 + size per artifact)
#   <root>/.staging/                      temp files, renamed into place
#
# manifest.json is reserved and cannot be used as an artifact name.

MANIFEST_NAME = "manifest.json"
STAGING_DIR = ".staging"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _atomic_write_bytes(path: Path, data: bytes, staging: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=staging, prefix=f"{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileArtifactStore(ArtifactStore):
    def __init__(self, root: str | Path, run_id: str):
        super().__init__(run_id)
        check_name(run_id, "run id")
        if run_id == STAGING_DIR:
            raise InvalidArtifactNameError("run id", run_id, "reserved")
        self.root = Path(root).expanduser().resolve()
        self.run_dir = self.root / run_id
        self.staging = self.root / STAGING_DIR

    def _job_dir(self, job: str) -> Path:
        return self.run_dir / job

    def check(self, name: str) -> None:
        super().check(name)
        if name == MANIFEST_NAME:
            raise InvalidArtifactNameError("name", name, "reserved by the file store")

    def _save(self, artifact: Artifact) -> None:
        _atomic_write_bytes(self._job_dir(artifact.job) / artifact.name, artifact.data, self.staging)

    def _load(self, job: str, name: str) -> Optional[Artifact]:
        path = self._job_dir(job) / name
        if name == MANIFEST_NAME or not path.is_file():
            return None
        manifest = json.loads((self._job_dir(job) / MANIFEST_NAME).read_text(encoding="utf-8"))
        entry = manifest["artifacts"].get(name)
        if entry is None:
            return None
        data = path.read_bytes()
        if _sha256_bytes(data) != entry["sha256"]:
            raise ArtifactNotFoundError(job, name, "content does not match manifest")
        return Artifact(
            run_id=self.run_id,
            job=job,
            name=name,
            data=data,
            created_at=datetime.fromisoformat(entry["created_at"]),
        )

    def _names(self, job: str) -> Set[str]:
        d = self._job_dir(job)
        if not d.is_dir():
            return set()
        return {
            p.name for p in d.iterdir()
            if p.is_file() and p.name != MANIFEST_NAME
        }

    def _mark_published(self, job: str) -> None:
        d = self._job_dir(job)
        entries = {}
        for name in sorted(self._names(job)):
            path = d / name
            data = path.read_bytes()
            entries[name] = {
                "sha256": _sha256_bytes(data),
                "size": len(data),
                "created_at": datetime.fromtimestamp(path.stat().st_mtime, tz=utc_now().tzinfo).isoformat(),
            }
        manifest = {"run_id": self.run_id, "job": job, "published_at": utc_now().isoformat(), "artifacts": entries}
        _atomic_write_bytes(d / MANIFEST_NAME, _json_dumps_stable(manifest).encode("utf-8"), self.staging)

    def _is_published(self, job: str) -> bool:
        return (self._job_dir(job) / MANIFEST_NAME).is_file()

    def _discard(self) -> None:
        shutil.rmtree(self.run_dir, ignore_errors=True)


# ---------------------------------------------------------------------
# SQL (SQLAlchemy)
# ---------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class ArtifactRow(Base):
    __tablename__ = "artifacts"
    run_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    job: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    data: Mapped[bytes] = mapped_column(sa.LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class PublishedJobRow(Base):
    __tablename__ = "published_jobs"
    run_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    job: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    published_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def make_engine(database_url: str) -> sa.Engine:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection so every worker thread sees the same database
        return sa.create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(database_url, pool_pre_ping=True)


@lru_cache(maxsize=None)
def shared_engine(database_url: str) -> sa.Engine:
    """One engine per URL for the life of the process; runs share its pool."""
    return make_engine(database_url)


class SqlArtifactStore(ArtifactStore):
    def __init__(self, engine: sa.Engine | str, run_id: str):
        super().__init__(run_id)
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        Base.metadata.create_all(self.engine)

    def _save(self, artifact: Artifact) -> None:
        with Session(self.engine) as s, s.begin():
            s.add(ArtifactRow(
                run_id=self.run_id,
                job=artifact.job,
                name=artifact.name,
                data=artifact.data,
                created_at=artifact.created_at,
            ))

    def _load(self, job: str, name: str) -> Optional[Artifact]:
        with Session(self.engine) as s:
            row = s.get(ArtifactRow, (self.run_id, job, name))
            if row is None:
                return None
            return Artifact(run_id=row.run_id, job=row.job, name=row.name, data=row.data, created_at=row.created_at)

    def _names(self, job: str) -> Set[str]:
        q = sa.select(ArtifactRow.name).where(ArtifactRow.run_id == self.run_id, ArtifactRow.job == job)
        with Session(self.engine) as s:
            return set(s.scalars(q))

    def _mark_published(self, job: str) -> None:
        with Session(self.engine) as s, s.begin():
            if s.get(PublishedJobRow, (self.run_id, job)) is None:
                s.add(PublishedJobRow(run_id=self.run_id, job=job, published_at=utc_now()))

    def _is_published(self, job: str) -> bool:
        with Session(self.engine) as s:
            return s.get(PublishedJobRow, (self.run_id, job)) is not None

    def _discard(self) -> None:
        with Session(self.engine) as s, s.begin():
            s.execute(sa.delete(ArtifactRow).where(ArtifactRow.run_id == self.run_id))
            s.execute(sa.delete(PublishedJobRow).where(PublishedJobRow.run_id == self.run_id))


def make_artifact_store(settings: "Settings", run_id: str) -> ArtifactStore:
    backend = settings.artifact_backend
    if backend == "memory":
        return InMemoryArtifactStore(run_id)
    if backend == "file":
        return FileArtifactStore(settings.artifact_root, run_id)
    if backend == "sql":
        return SqlArtifactStore(shared_engine(settings.database_url), run_id)
    raise ValueError(f"Unknown artifact backend: {backend!r}")
