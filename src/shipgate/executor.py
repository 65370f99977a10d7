# executor.py
from __future__ import annotations

import io
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from .artifacts import ArtifactStore
from .broker import GRANT_REFRESH_MARGIN, CredentialBroker
from .errors import (
    ArtifactNotFoundError,
    Diagnostic,
    DuplicateArtifactError,
    StepFailure,
    UntrustedIssuerError,
)
from .model import CredentialGrant, Job, JobStatus, Step, Trigger
from .ui.console import get_console

# How often a running shell step checks for cancellation.
CANCEL_POLL_SECONDS = 0.25
OUTPUT_TAIL = 4000

AssertionSource = Callable[[str], str]


class JobContext:
    """
    Everything one job invocation may touch: trigger variables, its own env,
    its credential grant, and the artifacts of the jobs it needs.
    """

    def __init__(
        self,
        job: Job,
        *,
        run_id: str,
        trigger: Trigger,
        store: ArtifactStore,
        repo_root: str | Path = ".",
        broker: Optional[CredentialBroker] = None,
        assertion_source: Optional[AssertionSource] = None,
        cancelled: Optional[threading.Event] = None,
    ):
        self.job = job
        self.run_id = run_id
        self.trigger = trigger
        self.store = store
        self.repo_root = Path(repo_root).resolve()
        self.broker = broker
        self.assertion_source = assertion_source
        self.cancelled = cancelled or threading.Event()
        self.staged: Dict[str, bytes] = {}
        self._grant: Optional[CredentialGrant] = None
        self._log = io.StringIO()

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def vars(self) -> Dict[str, str]:
        return dict(self.trigger.variables)

    # ---- credentials ------------------------------------------------

    @property
    def grant(self) -> Optional[CredentialGrant]:
        """Current grant, re-issued when it is about to expire. None if the job needs no scope."""
        if not self.job.scope:
            return None
        if self._grant is None or self._grant.expires_within(GRANT_REFRESH_MARGIN):
            if self.broker is None or self.assertion_source is None:
                raise UntrustedIssuerError(
                    f"Job '{self.name}' needs scope {self.job.scope} but no identity provider is configured"
                )
            self._grant = self.broker.issue(self.name, self.assertion_source(self.name), self.job.scope)
            get_console().print_debug(
                f"[{self.name}] grant issued for {self._grant.subject}: "
                f"scope={','.join(self._grant.scope)} expires={self._grant.expires_at.isoformat()}"
            )
        return self._grant

    def environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.trigger.variables)
        env.update(self.job.env)
        env.update({
            "SHIPGATE_RUN_ID": self.run_id,
            "SHIPGATE_JOB": self.name,
            "SHIPGATE_EVENT": self.trigger.event,
            "SHIPGATE_REF": self.trigger.ref,
        })
        if self.trigger.sha:
            env["SHIPGATE_SHA"] = self.trigger.sha
        grant = self.grant
        if grant is not None:
            env.update(grant.env)
            env["SHIPGATE_GRANT_TOKEN"] = grant.token
            env["SHIPGATE_GRANT_SCOPE"] = ",".join(grant.scope)
        return env

    # ---- artifacts --------------------------------------------------

    def get_artifact(self, producer: str, name: str) -> bytes:
        if producer not in self.job.needs:
            raise ArtifactNotFoundError(producer, name, f"job '{self.name}' does not declare '{producer}' in needs")
        return self.store.get(producer, name).data

    def put_artifact(self, name: str, data: bytes | str) -> None:
        """Stage an output. It is written to the store only if the job succeeds."""
        self.store.check(name)
        if name in self.staged or name in self.store.list(self.name):
            raise DuplicateArtifactError(self.name, name)
        self.staged[name] = data.encode("utf-8") if isinstance(data, str) else bytes(data)

    # ---- logs -------------------------------------------------------

    def log(self, message: str) -> None:
        self._log.write(message if message.endswith("\n") else message + "\n")

    @property
    def logs(self) -> str:
        return self._log.getvalue()


@dataclass
class JobOutcome:
    status: JobStatus
    artifacts: Dict[str, bytes] = field(default_factory=dict)
    diagnostic: Optional[Diagnostic] = None
    logs: str = ""


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _materialize_inputs(ctx: JobContext) -> None:
    for ref, rel_path in ctx.job.inputs.items():
        producer, _, name = ref.partition("/")
        data = ctx.get_artifact(producer, name)
        dest = (ctx.repo_root / rel_path).resolve()
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        ctx.log(f"input {ref} -> {rel_path} ({len(data)} bytes)")


def _terminate(proc: subprocess.Popen) -> None:
    # steps run in their own session: signal the whole process group
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (AttributeError, ProcessLookupError):
        proc.terminate()


def _run_step(ctx: JobContext, step: Step) -> None:
    cwd = (ctx.repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{ctx.name}] step '{step.name}' cwd not found: {cwd}")

    env = ctx.environment()

    proc = subprocess.Popen(
        step.run,
        shell=True,
        cwd=str(cwd),
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=CANCEL_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if ctx.cancelled.is_set():
                _terminate(proc)
                stdout, stderr = proc.communicate()
                if stdout:
                    ctx.log(stdout)
                if stderr:
                    ctx.log(stderr)
                raise StepFailure(
                    job=ctx.name,
                    step=step.name,
                    cmd=step.run,
                    exit_code=proc.returncode,
                    stdout=stdout[-OUTPUT_TAIL:],
                    stderr="cancelled\n" + stderr[-OUTPUT_TAIL:],
                )

    if stdout:
        ctx.log(stdout)
    if stderr:
        ctx.log(stderr)

    if proc.returncode != 0:
        raise StepFailure(
            job=ctx.name,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            stdout=stdout[-OUTPUT_TAIL:],
            stderr=stderr[-OUTPUT_TAIL:],
        )


def _collect_outputs(ctx: JobContext) -> None:
    for name, rel_path in ctx.job.outputs.items():
        path = (ctx.repo_root / rel_path).resolve()
        if not path.is_file():
            raise ArtifactNotFoundError(ctx.name, name, f"declared output file missing: {rel_path}")
        ctx.put_artifact(name, path.read_bytes())


def execute_job(ctx: JobContext) -> JobOutcome:
    """
    Run one job: inputs -> action/steps -> outputs.

    Never raises for job-level problems; any exception becomes a Failed
    outcome carrying a Diagnostic. No retries.
    """
    console = get_console()
    job = ctx.job

    try:
        _materialize_inputs(ctx)

        if job.action is not None:
            console.print_step(job.name, getattr(job.action, "__name__", "action"))
            job.action(ctx)

        for step in job.steps:
            if ctx.cancelled.is_set():
                raise RuntimeError(f"[{job.name}] cancelled before step '{step.name}'")
            console.print_step(job.name, step.name)
            _run_step(ctx, step)

        _collect_outputs(ctx)
    except Exception as e:
        return JobOutcome(
            status=JobStatus.FAILED,
            diagnostic=Diagnostic.from_exception(job.name, e),
            logs=ctx.logs,
        )

    return JobOutcome(status=JobStatus.SUCCEEDED, artifacts=dict(ctx.staged), logs=ctx.logs)
