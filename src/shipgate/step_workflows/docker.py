# step_workflows/docker.py
from __future__ import annotations

import shlex
from typing import Dict, List

from ..model import Step


# ---------------------------------------------------------------------
# Docker build / push step helpers
# ---------------------------------------------------------------------

def image_ref(repository: str, tag: str) -> str:
    return f"{repository}:{tag}"


def docker_build_step(
    name: str,
    repository: str,
    tag: str,
    *,
    context: str = ".",
    dockerfile: str | None = None,
    build_args: Dict[str, str] | None = None,
    platform: str | None = None,
) -> Step:
    """Create a `docker build` step tagging `repository:tag`."""
    cmd = ["docker", "build", "-t", image_ref(repository, tag)]
    if dockerfile:
        cmd.extend(["-f", dockerfile])
    if platform:
        cmd.extend(["--platform", platform])
    for key, value in sorted((build_args or {}).items()):
        cmd.extend(["--build-arg", f"{key}={value}"])
    cmd.append(context)
    return Step(name=name, run=shlex.join(cmd))


def ecr_login_step(registry: str, region: str) -> Step:
    """Log docker in to an ECR registry with the job's AWS credentials."""
    return Step(
        name="ECR login",
        run=(
            f"aws ecr get-login-password --region {shlex.quote(region)} "
            f"| docker login --username AWS --password-stdin {shlex.quote(registry)}"
        ),
    )


def docker_push_step(name: str, repository: str, tag: str) -> Step:
    return Step(name=name, run=shlex.join(["docker", "push", image_ref(repository, tag)]))


def build_and_push_steps(
    repository: str,
    tag: str,
    *,
    context: str = ".",
    dockerfile: str | None = None,
    registry: str | None = None,
    region: str | None = None,
) -> List[Step]:
    """build -> (optional ECR login) -> push for one image."""
    steps = [docker_build_step(f"Build {repository}", repository, tag, context=context, dockerfile=dockerfile)]
    if registry and region:
        steps.append(ecr_login_step(registry, region))
    steps.append(docker_push_step(f"Push {repository}", repository, tag))
    return steps
