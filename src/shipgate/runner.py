# runner.py
from __future__ import annotations

import runpy
from functools import partial
from pathlib import Path
from typing import Optional

from .artifacts import make_artifact_store
from .broker import CredentialBroker, StsExchange
from .dsl import Workflow
from .executor import AssertionSource
from .identity import LocalIssuer, TrustedIssuer
from .model import ApprovalGate, Job, Trigger
from .scheduler import PipelineRun
from .settings import Settings


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow (from wf(...)) or List[Job]
      - JOBS = [Job, ...] and optionally GATES = [ApprovalGate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"shipgate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from shipgate import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        loaded = Workflow(jobs=list(globals_dict["JOBS"]), gates=list(globals_dict.get("GATES", [])))

    if isinstance(loaded, list):
        loaded = Workflow(jobs=loaded)

    if (
        not isinstance(loaded, Workflow)
        or not all(isinstance(j, Job) for j in loaded.jobs)
        or not all(isinstance(g, ApprovalGate) for g in loaded.gates)
    ):
        raise TypeError(
            "Workflow must return/define jobs and gates. "
            "Define workflow() -> wf(...) or JOBS = [Job, ...] (+ GATES = [...])."
        )

    return loaded


# ----------------------------------------------------------------------
# Credentials wiring
# ----------------------------------------------------------------------

def make_broker(settings: Settings, dev_issuer: Optional[LocalIssuer] = None) -> Optional[CredentialBroker]:
    issuers = []
    if settings.issuer_url and settings.issuer_public_key:
        issuers.append(TrustedIssuer.from_pem(settings.issuer_url, settings.issuer_public_key, settings.audience))
    if dev_issuer is not None:
        issuers.append(dev_issuer.trusted)
    if not issuers:
        return None

    exchange = None
    if settings.aws_role_arn:
        exchange = StsExchange(settings.aws_role_arn, region=settings.aws_region)
    return CredentialBroker(issuers, grant_ttl=settings.grant_ttl_seconds, exchange=exchange)


def _token_from_file(path: Path, job: str) -> str:
    # re-read on every request: CI runners rotate the file
    return path.read_text(encoding="utf-8").strip()


def _dev_token(issuer: LocalIssuer, trigger: Trigger, job: str) -> str:
    return issuer.mint(f"job:{job}", ref=trigger.ref, event=trigger.event)


def make_assertion_source(
    settings: Settings,
    trigger: Trigger,
    dev_issuer: Optional[LocalIssuer] = None,
) -> Optional[AssertionSource]:
    if dev_issuer is not None:
        return partial(_dev_token, dev_issuer, trigger)
    if settings.identity_token_file is not None:
        return partial(_token_from_file, settings.identity_token_file)
    if settings.identity_token:
        token = settings.identity_token
        return lambda job: token
    return None


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def create_run(
    workflow: Workflow,
    settings: Settings,
    *,
    trigger: Optional[Trigger] = None,
    repo_root: str | Path = ".",
    dev_identity: bool = False,
    workflow_name: str = "workflow",
) -> PipelineRun:
    """Build a PipelineRun with store, broker and assertion source taken from settings."""
    trigger = trigger or Trigger()
    dev_issuer = LocalIssuer(audience=settings.audience) if dev_identity else None
    return PipelineRun(
        workflow.jobs,
        workflow.gates,
        trigger=trigger,
        store_factory=partial(make_artifact_store, settings),
        broker=make_broker(settings, dev_issuer),
        assertion_source=make_assertion_source(settings, trigger, dev_issuer),
        repo_root=str(repo_root),
        max_workers=settings.max_workers,
        gate_timeout=settings.gate_timeout_seconds,
        retain_artifacts=settings.retain_artifacts,
        workflow_name=workflow_name,
    )
