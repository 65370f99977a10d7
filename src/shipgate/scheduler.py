# scheduler.py
from __future__ import annotations

import os
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from .artifacts import ArtifactStore, InMemoryArtifactStore
from .broker import CredentialBroker
from .dag import build_graph, topo_levels
from .errors import Diagnostic, ShipgateError, UnknownGateError
from .executor import AssertionSource, JobContext, JobOutcome, execute_job
from .model import (
    SYSTEM_CANCEL,
    SYSTEM_TIMEOUT,
    ApprovalGate,
    Decision,
    GateStatus,
    Job,
    JobState,
    JobStatus,
    RunResult,
    Trigger,
    utc_now,
)
from .ui.console import get_console

StoreFactory = Callable[[str], ArtifactStore]

# loop events
_DONE = "done"
_WAKE = "wake"


class PipelineRun:
    """
    One execution of a job graph for one trigger event.

    Graph-state mutation is serialized behind a single lock; ready jobs run
    concurrently on a thread pool; job completions and gate resolutions are
    fed back to the loop through a queue. A gated job waits at
    AWAITING_APPROVAL until its gate is resolved (or the run is cancelled,
    or the optional gate timeout fires).
    """

    def __init__(
        self,
        jobs: Iterable[Job],
        gates: Iterable[ApprovalGate] = (),
        *,
        trigger: Optional[Trigger] = None,
        store_factory: StoreFactory = InMemoryArtifactStore,
        broker: Optional[CredentialBroker] = None,
        assertion_source: Optional[AssertionSource] = None,
        repo_root: str = ".",
        max_workers: Optional[int] = None,
        gate_timeout: Optional[float] = None,
        retain_artifacts: bool = False,
        run_id: Optional[str] = None,
        workflow_name: str = "workflow",
    ):
        # validation first: a bad graph never executes anything.
        # Each run owns its gate records; the workflow definition is never resolved.
        self.graph = build_graph(jobs, [replace(g) for g in gates])

        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.workflow_name = workflow_name
        self.trigger = trigger or Trigger()
        self.store_factory = store_factory
        self.store = store_factory(self.run_id)
        self.broker = broker
        self.assertion_source = assertion_source
        self.repo_root = repo_root
        self.gate_timeout = gate_timeout
        self.retain_artifacts = retain_artifacts

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        self.states: Dict[str, JobState] = {n: JobState(n) for n in self.graph.jobs}
        self.result: Optional[RunResult] = None
        self.error: Optional[BaseException] = None
        self.created_at = utc_now()
        self.finished_at = None

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._events: "queue.Queue[tuple]" = queue.Queue()
        self._cancel_flags: Dict[str, threading.Event] = {}
        self._waiting_since: Dict[str, float] = {}
        self._evaluated = False
        self._started = False
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def gates(self) -> Dict[str, ApprovalGate]:
        return self.graph.gates

    def status(self, job: str) -> JobStatus:
        with self._lock:
            return self.states[job].status

    def levels(self) -> List[List[str]]:
        return topo_levels(self.graph.dependents, self.graph.indeg)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "run_id": self.run_id,
                "workflow": self.workflow_name,
                "trigger": self.trigger.to_dict(),
                "result": self.result.value if self.result else None,
                "created_at": self.created_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "jobs": [self.states[n].to_dict() for n in sorted(self.states)],
                "gates": [g.to_dict() for _, g in sorted(self.graph.gates.items())],
            }

    @property
    def finished(self) -> bool:
        return self.result is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "PipelineRun":
        """Run the scheduling loop in a background thread."""
        with self._lock:
            if self._started:
                raise ShipgateError(f"Run {self.run_id} already started")
            self._started = True
        self._thread = threading.Thread(target=self._run_guarded, name=f"shipgate-{self.run_id}", daemon=True)
        self._thread.start()
        return self

    def run(self) -> RunResult:
        """Run the scheduling loop in the calling thread until every job is terminal."""
        with self._lock:
            if self._started:
                raise ShipgateError(f"Run {self.run_id} already started")
            self._started = True
        self._loop()
        return self.result

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        """Block until the run finishes. Returns None on timeout."""
        with self._changed:
            self._changed.wait_for(lambda: self.result is not None, timeout=timeout)
            return self.result

    def wait_until_blocked(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the run finishes or nothing can progress without an
        external decision (no job ready or running).
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: self.result is not None or (self._evaluated and not self._busy()),
                timeout=timeout,
            )

    def rerun(self) -> "PipelineRun":
        """Fresh run of the same graph and trigger with every gate re-opened."""
        return PipelineRun(
            list(self.graph.jobs.values()),
            [g.reopened() for g in self.graph.gates.values()],
            trigger=self.trigger,
            store_factory=self.store_factory,
            broker=self.broker,
            assertion_source=self.assertion_source,
            repo_root=self.repo_root,
            max_workers=self.max_workers,
            gate_timeout=self.gate_timeout,
            retain_artifacts=self.retain_artifacts,
            workflow_name=self.workflow_name,
        )

    # ------------------------------------------------------------------
    # External events
    # ------------------------------------------------------------------

    def submit_approval(
        self,
        gate: str,
        decision: Decision | str,
        approver: str,
        comment: Optional[str] = None,
    ) -> GateStatus:
        """
        Resolve `gate`. UnauthorizedApproverError / AlreadyResolvedError leave
        every gate and job untouched.
        """
        with self._lock:
            g = self.graph.gates.get(gate)
            if g is None:
                raise UnknownGateError(gate)
            status = g.resolve(Decision(decision), approver, comment)
            self._on_gate_resolved(g)
            self._evaluate()
        self._events.put((_WAKE,))
        return status

    def cancel(self) -> None:
        """
        Skip every non-terminal job and reject every open gate. Running jobs
        are signalled to stop; their outcome is ignored.
        """
        console = get_console()
        with self._lock:
            if self.result is not None:
                return
            for g in self.graph.gates.values():
                if not g.resolved:
                    g.resolve(Decision.REJECT, SYSTEM_CANCEL, system=True)
                    self._waiting_since.pop(g.name, None)
                    console.print_gate_resolved(g.name, g.status.value, SYSTEM_CANCEL)
            for name, st in self.states.items():
                if st.status is JobStatus.RUNNING:
                    self._cancel_flags[name].set()
                if not st.status.terminal:
                    self._skip(name, "run cancelled")
            self._changed.notify_all()
        self._events.put((_WAKE,))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_guarded(self) -> None:
        try:
            self._loop()
        except Exception as e:
            get_console().print_exception(e)
            with self._lock:
                self.error = e
                if self.result is None:
                    self.result = RunResult.FAILED
                    self.finished_at = utc_now()
                self._changed.notify_all()

    def _loop(self) -> None:
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"shipgate-{self.run_id}")
        try:
            with self._lock:
                self._evaluate()
                self._evaluated = True
                self._changed.notify_all()

            while True:
                with self._lock:
                    self._dispatch(pool)
                    if all(st.status.terminal for st in self.states.values()):
                        break
                    timeout = self._next_gate_deadline()

                try:
                    event = self._events.get(timeout=timeout)
                except queue.Empty:
                    event = (_WAKE,)

                with self._lock:
                    if event[0] == _DONE:
                        self._complete(event[1], event[2])
                    self._expire_gates()
                    self._evaluate()
        finally:
            # cancelled jobs may still be winding down; do not wait for them
            pool.shutdown(wait=False, cancel_futures=True)

        self._finalize()

    def _worker(self, ctx: JobContext) -> None:
        try:
            outcome = execute_job(ctx)
        except Exception as e:
            outcome = JobOutcome(status=JobStatus.FAILED, diagnostic=Diagnostic.from_exception(ctx.name, e))
        self._events.put((_DONE, ctx.name, outcome))

    # ------------------------------------------------------------------
    # Transitions (call with the lock held)
    # ------------------------------------------------------------------

    def _busy(self) -> bool:
        return any(st.status in (JobStatus.READY, JobStatus.RUNNING) for st in self.states.values())

    def _evaluate(self) -> None:
        """Promote PENDING / AWAITING_APPROVAL jobs whose inputs are settled."""
        console = get_console()
        for name in sorted(self.states):
            st = self.states[name]
            if st.status not in (JobStatus.PENDING, JobStatus.AWAITING_APPROVAL):
                continue
            job = self.graph.jobs[name]
            if not all(self.states[d].status is JobStatus.SUCCEEDED for d in job.needs):
                continue

            g = self.graph.gates.get(job.gate) if job.gate else None
            if g is None or g.status is GateStatus.APPROVED:
                st.status = JobStatus.READY
            elif g.status is GateStatus.REJECTED:
                self._skip_with_dependents(name, f"gate '{g.name}' rejected")
            elif st.status is JobStatus.PENDING:
                st.status = JobStatus.AWAITING_APPROVAL
                if g.name not in self._waiting_since:
                    self._waiting_since[g.name] = time.monotonic()
                    console.print_gate_waiting(g.name, g.blocks, g.approvers)
        self._changed.notify_all()

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        console = get_console()
        for name in sorted(self.states):
            st = self.states[name]
            if st.status is not JobStatus.READY:
                continue
            st.status = JobStatus.RUNNING
            st.started_at = utc_now()
            flag = threading.Event()
            self._cancel_flags[name] = flag
            ctx = JobContext(
                self.graph.jobs[name],
                run_id=self.run_id,
                trigger=self.trigger,
                store=self.store,
                repo_root=self.repo_root,
                broker=self.broker,
                assertion_source=self.assertion_source,
                cancelled=flag,
            )
            console.print_job_start(name)
            pool.submit(self._worker, ctx)
        self._changed.notify_all()

    def _complete(self, name: str, outcome: JobOutcome) -> None:
        console = get_console()
        st = self.states[name]
        st.logs = outcome.logs
        if st.status is not JobStatus.RUNNING:
            # cancelled while running: outcome is discarded
            return

        if outcome.status is JobStatus.SUCCEEDED:
            try:
                # write-then-publish: consumers only see complete outputs
                for art_name, data in outcome.artifacts.items():
                    self.store.put(name, art_name, data)
                self.store.publish(name)
            except Exception as e:
                outcome = JobOutcome(status=JobStatus.FAILED, diagnostic=Diagnostic.from_exception(name, e))

        st.finished_at = utc_now()
        if outcome.status is JobStatus.SUCCEEDED:
            st.status = JobStatus.SUCCEEDED
            st.artifacts = sorted(outcome.artifacts)
            console.print_job_succeeded(name, st.artifacts)
            return

        st.status = JobStatus.FAILED
        st.diagnostic = outcome.diagnostic
        diag = outcome.diagnostic
        console.print_job_failed(name, str(diag) if diag else "", diag.exit_code if diag else None)
        for dep in self.graph.descendants(name):
            self._skip(dep, f"dependency '{name}' failed")

    def _skip(self, name: str, reason: str) -> None:
        st = self.states[name]
        if st.status.terminal:
            return
        st.status = JobStatus.SKIPPED
        st.skip_reason = reason
        st.finished_at = utc_now()
        get_console().print_job_skipped(name, reason)

    def _skip_with_dependents(self, name: str, reason: str) -> None:
        self._skip(name, reason)
        for dep in self.graph.descendants(name):
            self._skip(dep, reason)

    def _on_gate_resolved(self, g: ApprovalGate) -> None:
        get_console().print_gate_resolved(g.name, g.status.value, g.resolved_by or "")
        self._waiting_since.pop(g.name, None)
        if g.status is GateStatus.REJECTED:
            for blocked in g.blocks:
                self._skip_with_dependents(blocked, f"gate '{g.name}' rejected")

    def _next_gate_deadline(self) -> Optional[float]:
        if self.gate_timeout is None or not self._waiting_since:
            return None
        oldest = min(self._waiting_since.values())
        return max(0.0, oldest + self.gate_timeout - time.monotonic())

    def _expire_gates(self) -> None:
        if self.gate_timeout is None:
            return
        now = time.monotonic()
        for gate_name, since in list(self._waiting_since.items()):
            if now - since >= self.gate_timeout:
                g = self.graph.gates[gate_name]
                g.resolve(Decision.REJECT, SYSTEM_TIMEOUT, f"no decision after {self.gate_timeout:g}s", system=True)
                self._on_gate_resolved(g)

    def _finalize(self) -> None:
        if not self.retain_artifacts:
            self.store.discard()
        with self._lock:
            statuses = [st.status for st in self.states.values()]
            # every skip traces back to a failure, a rejection or a cancellation
            ok = all(s is JobStatus.SUCCEEDED for s in statuses)
            self.result = RunResult.SUCCEEDED if ok else RunResult.FAILED
            self.finished_at = utc_now()
            self._changed.notify_all()
