# src/shipgate/dsl.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .model import ApprovalGate, Job, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    action: Optional[Callable[..., Any]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    gate: Optional[str] = None,
    scope: Optional[List[str]] = None,
    inputs: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final and action is None:
        raise ValueError(f"job({name!r}) must have at least one step or an action")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        action=action,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        gate=gate,
        scope=list(scope or []),
        inputs=dict(inputs or {}),
        outputs=dict(outputs or {}),
    )


def gate(name: str, approvers: Iterable[str], *, blocks: Iterable[str] = ()) -> ApprovalGate:
    """Declare a manual approval gate. Jobs join it via `blocks` or `job(..., gate=name)`."""
    approvers = tuple(approvers)
    if not approvers:
        raise ValueError(f"gate({name!r}) needs at least one approver")
    return ApprovalGate.open(name, approvers, blocks)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._action: Optional[Callable[..., Any]] = None
        self._env: dict[str, str] = {}
        self._gate: Optional[str] = None
        self._scope: list[str] = []
        self._inputs: dict[str, str] = {}
        self._outputs: dict[str, str] = {}

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def run_action(self, fn: Callable[..., Any]):
        self._action = fn
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def gated_by(self, gate_name: str):
        self._gate = gate_name
        return self

    def with_scope(self, *scopes: str):
        self._scope.extend(scopes)
        return self

    def consumes(self, ref: str, path: str):
        """consumes("provision/tfstate", "infra/terraform.tfstate")"""
        self._inputs[ref] = path
        return self

    def produces(self, name: str, path: str):
        self._outputs[name] = path
        return self

    def build(self) -> Job:
        if not self._steps and self._action is None:
            raise ValueError(f"Job '{self.name}' has no steps and no action")

        return Job(
            name=self.name,
            steps=list(self._steps),
            action=self._action,
            needs=list(self._needs),
            env=dict(self._env),
            gate=self._gate,
            scope=list(self._scope),
            inputs=dict(self._inputs),
            outputs=dict(self._outputs),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('deploy').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

@dataclass
class Workflow:
    jobs: List[Job] = field(default_factory=list)
    gates: List[ApprovalGate] = field(default_factory=list)


def wf(*items: Union[Job, ApprovalGate]) -> Workflow:
    """
    Workflow definition helper. Jobs and gates may be mixed freely.

        from shipgate import wf, job, sh, gate

        def workflow():
            return wf(
                job("build", sh(...)),
                job("provision", sh(...), needs=["build"]),
                gate("teardown", approvers=["alice"]),
                job("destroy", sh(...), needs=["provision"], gate="teardown"),
            )
    """
    out = Workflow()
    for item in items:
        if isinstance(item, ApprovalGate):
            out.gates.append(item)
        elif isinstance(item, Job):
            out.jobs.append(item)
        else:
            raise TypeError(f"wf() accepts Job and ApprovalGate objects, got {type(item).__name__}")
    return out


workflow = wf  # alias (avoid naming your own function workflow if you use it)
