# step_workflows/terraform.py
from __future__ import annotations

import shlex
from typing import Dict, List, Optional

from ..model import Step

# Terraform is an external collaborator: these helpers only build the shell
# steps. Its state file travels between jobs as an artifact.
STATE_ARTIFACT = "tfstate"
STATE_FILE = "terraform.tfstate"


def _var_flags(variables: Dict[str, str] | None) -> str:
    if not variables:
        return ""
    return " " + " ".join(f"-var {shlex.quote(f'{k}={v}')}" for k, v in sorted(variables.items()))


def terraform_step(
    name: str,
    command: str,
    workdir: str,
    *,
    variables: Dict[str, str] | None = None,
    args: str | None = None,
) -> Step:
    """Create a `terraform <command>` step running inside `workdir`."""
    cmd = f"terraform {command} -input=false"
    if command in ("apply", "destroy"):
        cmd += " -auto-approve"
    cmd += _var_flags(variables)
    if args:
        cmd += f" {args}"
    return Step(name=name, run=cmd, cwd=workdir)


def provision_steps(
    workdir: str,
    *,
    variables: Dict[str, str] | None = None,
    backend_config: Optional[List[str]] = None,
) -> List[Step]:
    """init -> plan -> apply, leaving terraform.tfstate in `workdir`."""
    init_args = " ".join(f"-backend-config={shlex.quote(b)}" for b in backend_config or []) or None
    return [
        terraform_step("Terraform init", "init", workdir, args=init_args),
        terraform_step("Terraform plan", "plan", workdir, variables=variables, args="-out=tfplan"),
        Step(name="Terraform apply", run="terraform apply -input=false -auto-approve tfplan", cwd=workdir),
    ]


def destroy_steps(workdir: str, *, variables: Dict[str, str] | None = None) -> List[Step]:
    """init -> destroy, expecting the provisioned terraform.tfstate in `workdir`."""
    return [
        terraform_step("Terraform init", "init", workdir),
        terraform_step("Terraform destroy", "destroy", workdir, variables=variables),
    ]


def state_path(workdir: str) -> str:
    return f"{workdir.rstrip('/')}/{STATE_FILE}"


def state_output(workdir: str) -> Dict[str, str]:
    """`outputs=` mapping for the job that provisions."""
    return {STATE_ARTIFACT: state_path(workdir)}


def state_input(provision_job: str, workdir: str) -> Dict[str, str]:
    """`inputs=` mapping for the job that tears down."""
    return {f"{provision_job}/{STATE_ARTIFACT}": state_path(workdir)}
