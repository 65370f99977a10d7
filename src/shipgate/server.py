from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .dsl import Workflow
from .errors import AlreadyResolvedError, UnauthorizedApproverError, UnknownGateError
from .model import Decision, Trigger
from .runner import create_run
from .scheduler import PipelineRun
from .settings import Settings

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    event: str = "workflow_dispatch"
    ref: str = "HEAD"
    sha: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)

class CreateRunResponse(BaseModel):
    run_id: str
    jobs: List[str]

class GateDecisionRequest(BaseModel):
    actor: str
    comment: Optional[str] = None

class DiagnosticView(BaseModel):
    kind: str
    job: str
    message: str
    step: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    details: Dict[str, str] = Field(default_factory=dict)

class JobView(BaseModel):
    name: str
    status: str
    skip_reason: Optional[str] = None
    diagnostic: Optional[DiagnosticView] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifacts: List[str] = Field(default_factory=list)

class JobDetail(JobView):
    logs: str = ""

class GateView(BaseModel):
    name: str
    approvers: List[str]
    blocks: List[str]
    status: str
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    comment: Optional[str] = None

class RunResponse(BaseModel):
    run_id: str
    workflow: str
    trigger: Dict[str, Any]
    result: Optional[str]
    created_at: datetime
    finished_at: Optional[datetime] = None
    jobs: List[JobView]
    gates: List[GateView]


# -------------------- Registry --------------------

class RunRegistry:
    """
    In-process index of the runs this server started.

    Keeps at most `max_finished` finished runs; the oldest are dropped when
    a new run is added. Runs still in progress are never dropped.
    """

    def __init__(self, max_finished: int = 100) -> None:
        self.max_finished = max_finished
        self._runs: Dict[str, PipelineRun] = {}
        self._lock = threading.Lock()

    def add(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            self._runs[run.run_id] = run
            self._prune()
        return run

    def _prune(self) -> None:
        finished = [rid for rid, r in self._runs.items() if r.finished]
        for rid in finished[: max(0, len(finished) - self.max_finished)]:
            del self._runs[rid]

    def get(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    def all(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._runs.values())


# -------------------- App --------------------

def create_app(workflow: Workflow, settings: Settings, *, workflow_name: str = "workflow") -> FastAPI:
    app = FastAPI(title="shipgate control plane")
    registry = RunRegistry(max_finished=settings.max_retained_runs)
    app.state.registry = registry
    app.state.settings = settings

    def _start(run: PipelineRun) -> CreateRunResponse:
        registry.add(run).start()
        return CreateRunResponse(run_id=run.run_id, jobs=sorted(run.graph.jobs))

    def _decide(run_id: str, gate: str, decision: Decision, req: GateDecisionRequest) -> GateView:
        run = registry.get(run_id)
        try:
            run.submit_approval(gate, decision, req.actor, req.comment)
        except UnknownGateError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except UnauthorizedApproverError as e:
            raise HTTPException(status_code=403, detail=str(e))
        except AlreadyResolvedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return GateView.model_validate(run.gates[gate].to_dict())

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    def create(req: CreateRunRequest):
        trigger = Trigger(event=req.event, ref=req.ref, sha=req.sha, variables=req.variables)
        return _start(create_run(workflow, settings, trigger=trigger, workflow_name=workflow_name))

    @app.get("/runs", response_model=List[RunResponse])
    def list_runs():
        return [RunResponse.model_validate(r.snapshot()) for r in registry.all()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return RunResponse.model_validate(registry.get(run_id).snapshot())

    @app.get("/runs/{run_id}/jobs/{job_name}", response_model=JobDetail)
    def get_job(run_id: str, job_name: str):
        """Job status, diagnostic and captured logs."""
        run = registry.get(run_id)
        state = run.states.get(job_name)
        if state is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobDetail.model_validate({**state.to_dict(), "logs": state.logs})

    @app.post("/runs/{run_id}/gates/{gate}/approve", response_model=GateView)
    def approve(run_id: str, gate: str, req: GateDecisionRequest):
        return _decide(run_id, gate, Decision.APPROVE, req)

    @app.post("/runs/{run_id}/gates/{gate}/reject", response_model=GateView)
    def reject(run_id: str, gate: str, req: GateDecisionRequest):
        return _decide(run_id, gate, Decision.REJECT, req)

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel(run_id: str):
        run = registry.get(run_id)
        run.cancel()
        return RunResponse.model_validate(run.snapshot())

    @app.post("/runs/{run_id}/rerun", response_model=CreateRunResponse, status_code=201)
    def rerun(run_id: str):
        run = registry.get(run_id)
        if not run.finished:
            raise HTTPException(status_code=409, detail="Run is still in progress")
        return _start(run.rerun())

    return app
