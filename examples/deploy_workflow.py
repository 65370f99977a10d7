# deploy_workflow.py
# Build and push the app image, provision the VPC/ECS stack with terraform,
# then hold the teardown behind a manual approval.
#
#   AWS_REGION=us-east-1 ECR_REPOSITORY=123456789012.dkr.ecr.us-east-1.amazonaws.com/app IMAGE_TAG=v1 \
#       shipgate run --workflow examples/deploy_workflow.py --dev-identity
from __future__ import annotations

import os

from shipgate import gate, job, wf
from shipgate.step_workflows.docker import build_and_push_steps
from shipgate.step_workflows.terraform import destroy_steps, provision_steps, state_input, state_output

TF_DIR = "infra"
REGION = os.environ.get("AWS_REGION", "us-east-1")
REPOSITORY = os.environ.get("ECR_REPOSITORY", "app")
TAG = os.environ.get("IMAGE_TAG", "latest")


def workflow():
    tf_vars = {"region": REGION, "image": f"{REPOSITORY}:{TAG}"}
    return wf(
        job(
            "build",
            *build_and_push_steps(REPOSITORY, TAG, registry=REPOSITORY.split("/")[0], region=REGION),
            scope=["ecr:push"],
        ),
        job(
            "provision",
            *provision_steps(TF_DIR, variables=tf_vars),
            needs=["build"],
            scope=["infra:apply"],
            outputs=state_output(TF_DIR),
        ),
        gate("teardown", approvers=["release-manager", "platform-oncall"]),
        job(
            "destroy",
            *destroy_steps(TF_DIR, variables=tf_vars),
            needs=["provision"],
            gate="teardown",
            scope=["infra:destroy"],
            inputs=state_input("provision", TF_DIR),
        ),
    )
