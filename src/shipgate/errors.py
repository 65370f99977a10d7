# errors.py
from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class ShipgateError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Workflow / graph validation
# ----------------------------------------------------------------------

class WorkflowError(ShipgateError, ValueError):
    """The declared workflow is malformed (duplicate names, missing deps, ...)."""


class GraphCycleError(WorkflowError):
    def __init__(self, stuck: List[str]):
        self.stuck = list(stuck)
        super().__init__(f"Job graph has a cycle. Stuck jobs: {self.stuck}")


class UnknownGateError(ShipgateError, KeyError):
    def __init__(self, gate: str):
        self.gate = gate
        super().__init__(gate)

    def __str__(self) -> str:
        return f"Unknown approval gate: {self.gate}"


# ----------------------------------------------------------------------
# Approval gates
# ----------------------------------------------------------------------

class UnauthorizedApproverError(ShipgateError):
    def __init__(self, gate: str, actor: str):
        self.gate = gate
        self.actor = actor
        super().__init__(f"'{actor}' is not an authorized approver for gate '{gate}'")


class AlreadyResolvedError(ShipgateError):
    def __init__(self, gate: str, status: str):
        self.gate = gate
        self.status = status
        super().__init__(f"Gate '{gate}' is already resolved ({status})")


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

class DuplicateArtifactError(ShipgateError):
    def __init__(self, job: str, name: str):
        self.job = job
        self.name = name
        super().__init__(f"Artifact '{job}/{name}' already exists (artifacts are write-once)")


class InvalidArtifactNameError(ShipgateError, ValueError):
    def __init__(self, what: str, value: str, reason: str = "must be a single path segment"):
        self.what = what
        self.value = value
        super().__init__(f"Invalid artifact {what} {value!r}: {reason}")


class ArtifactNotFoundError(ShipgateError, LookupError):
    def __init__(self, job: str, name: str, reason: str = "not found"):
        self.job = job
        self.name = name
        self.reason = reason
        super().__init__(f"Artifact '{job}/{name}' unavailable: {reason}")


# ----------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------

class UntrustedIssuerError(ShipgateError):
    """Assertion is malformed, unsigned by a trusted issuer, or for another audience."""


class ExpiredAssertionError(ShipgateError):
    """Assertion `exp` claim is in the past."""


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(ShipgateError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class Diagnostic:
    """
    Structured failure record attached to a Failed job.

    Carries enough context for:
      - clean CLI output
      - API inspection
      - debugging without re-running the job
    """
    kind: str
    job: str
    message: str
    step: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        if self.exit_code is not None:
            lines.append(f"exit={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "job": self.job,
            "message": self.message,
            "step": self.step,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "details": dict(self.details),
        }

    @classmethod
    def from_exception(cls, job: str, exc: BaseException) -> "Diagnostic":
        if isinstance(exc, StepFailure):
            return cls(
                kind="step_failed",
                job=job,
                message=str(exc),
                step=exc.step,
                exit_code=exc.exit_code,
                stdout=exc.stdout,
                stderr=exc.stderr,
            )
        return cls(
            kind=type(exc).__name__,
            job=job,
            message=str(exc),
            details={"traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))},
        )
