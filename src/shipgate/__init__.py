from .dsl import job, sh, gate, wf, workflow, Workflow, JobBuilder, build
from .model import ApprovalGate, Decision, GateStatus, Job, JobStatus, RunResult, Step, Trigger
from .scheduler import PipelineRun
from .runner import create_run, load_workflow

__all__ = [
    "job", "sh", "gate", "wf", "workflow", "Workflow", "JobBuilder", "build",
    "ApprovalGate", "Decision", "GateStatus", "Job", "JobStatus", "RunResult", "Step", "Trigger",
    "PipelineRun", "create_run", "load_workflow",
]
