from shipgate.git_facts.git import repo_name
from shipgate.step_workflows.docker import build_and_push_steps, docker_build_step
from shipgate.step_workflows.terraform import (
    destroy_steps,
    provision_steps,
    state_input,
    state_output,
    terraform_step,
)


def test_terraform_apply_is_non_interactive():
    step = terraform_step("apply", "apply", "infra", variables={"region": "eu-west-1"})
    assert step.run == "terraform apply -input=false -auto-approve -var region=eu-west-1"
    assert step.cwd == "infra"


def test_provision_and_destroy_steps():
    provision = provision_steps("infra", variables={"image": "app:v1"}, backend_config=["bucket=tf-state"])
    assert [s.name for s in provision] == ["Terraform init", "Terraform plan", "Terraform apply"]
    assert "-backend-config=bucket=tf-state" in provision[0].run
    assert provision[1].run.endswith("-var image=app:v1 -out=tfplan")

    destroy = destroy_steps("infra")
    assert destroy[-1].run == "terraform destroy -input=false -auto-approve"


def test_state_hand_off_mappings():
    assert state_output("infra/") == {"tfstate": "infra/terraform.tfstate"}
    assert state_input("provision", "infra") == {"provision/tfstate": "infra/terraform.tfstate"}


def test_docker_steps():
    step = docker_build_step("build", "app", "v1", build_args={"PY": "3.12"}, platform="linux/amd64")
    assert step.run == "docker build -t app:v1 --platform linux/amd64 --build-arg PY=3.12 ."

    steps = build_and_push_steps("123.dkr.ecr.eu-west-1.amazonaws.com/app", "v1",
                                 registry="123.dkr.ecr.eu-west-1.amazonaws.com", region="eu-west-1")
    assert [s.name.split()[0] for s in steps] == ["Build", "ECR", "Push"]
    assert len(build_and_push_steps("app", "v1")) == 2


def test_repo_name_outside_git(tmp_path):
    assert repo_name(str(tmp_path)) == tmp_path.resolve().name
