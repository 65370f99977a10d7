# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .errors import AlreadyResolvedError, Diagnostic, UnauthorizedApproverError

if TYPE_CHECKING:
    from .executor import JobContext


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class GateStatus(str, enum.Enum):
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class RunResult(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass
class Job:
    """
    A unit of work in the pipeline graph: steps and/or a python action,
    plus dependencies, gate and credential/artifact declarations.

    Dependency field: `needs` (names of jobs that must succeed first).
    Artifact inputs are keyed "producer/name" and map to a path relative
    to the repo root; outputs map an artifact name to a path.
    """
    name: str
    steps: list[Step] = field(default_factory=list)
    action: Optional[Callable[["JobContext"], Any]] = None

    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    gate: Optional[str] = None
    scope: list[str] = field(default_factory=list)

    inputs: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def input_refs(self) -> List[Tuple[str, str]]:
        refs = []
        for ref in self.inputs:
            producer, _, name = ref.partition("/")
            refs.append((producer, name))
        return refs


@dataclass
class JobState:
    """Per-run mutable record of one job. Mutated only by the scheduler."""
    name: str
    status: JobStatus = JobStatus.PENDING
    diagnostic: Optional[Diagnostic] = None
    skip_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifacts: list[str] = field(default_factory=list)
    logs: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "skip_reason": self.skip_reason,
            "diagnostic": self.diagnostic.to_dict() if self.diagnostic else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "artifacts": list(self.artifacts),
        }


# Actors used when the engine itself resolves a gate.
SYSTEM_CANCEL = "shipgate:cancel"
SYSTEM_TIMEOUT = "shipgate:timeout"


@dataclass
class ApprovalGate:
    """
    Manual checkpoint blocking the jobs that reference it.

    Resolved exactly once; resolution is terminal.
    """
    name: str
    approvers: Tuple[str, ...]
    blocks: Tuple[str, ...] = ()
    status: GateStatus = GateStatus.OPEN
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    comment: Optional[str] = None

    @classmethod
    def open(cls, name: str, approvers, blocks=()) -> "ApprovalGate":
        return cls(name=name, approvers=tuple(approvers), blocks=tuple(blocks))

    @property
    def resolved(self) -> bool:
        return self.status is not GateStatus.OPEN

    def resolve(
        self,
        decision: Decision,
        actor: str,
        comment: str | None = None,
        *,
        system: bool = False,
    ) -> GateStatus:
        decision = Decision(decision)
        if self.resolved:
            raise AlreadyResolvedError(self.name, self.status.value)
        if not system and actor not in self.approvers:
            raise UnauthorizedApproverError(self.name, actor)

        self.status = GateStatus.APPROVED if decision is Decision.APPROVE else GateStatus.REJECTED
        self.resolved_by = actor
        self.resolved_at = utc_now()
        self.comment = comment
        return self.status

    def reopened(self) -> "ApprovalGate":
        return ApprovalGate.open(self.name, self.approvers, self.blocks)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "approvers": list(self.approvers),
            "blocks": list(self.blocks),
            "status": self.status.value,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "comment": self.comment,
        }


@dataclass(frozen=True)
class Artifact:
    run_id: str
    job: str
    name: str
    data: bytes = field(repr=False)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CredentialGrant:
    """Scoped, time-boxed credentials for exactly one job invocation."""
    job: str
    subject: str
    scope: Tuple[str, ...]
    expires_at: datetime
    token: str = field(repr=False)
    env: Dict[str, str] = field(default_factory=dict, repr=False)

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.expires_at - now <= timedelta(seconds=seconds)


@dataclass(frozen=True)
class Trigger:
    """
    The event that started a pipeline run plus the run-wide variables
    (region, repository URIs, image tag, ...) handed to every job.
    """
    event: str = "workflow_dispatch"
    ref: str = "HEAD"
    sha: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"event": self.event, "ref": self.ref, "sha": self.sha, "variables": dict(self.variables)}
