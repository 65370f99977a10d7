import textwrap

import pytest
from click.testing import CliRunner

from shipgate.cli import cli, parse_vars
from shipgate.settings import load_settings

WORKFLOW = textwrap.dedent(
    """
    from shipgate import gate, job, wf


    def build(ctx):
        ctx.put_artifact("digest", "sha256:" + ctx.vars.get("TAG", "dev"))


    def deploy(ctx):
        assert ctx.get_artifact("build", "digest") == b"sha256:v2"


    def workflow():
        return wf(
            job("build", action=build),
            gate("release", approvers=["ci-bot", "alice"]),
            job("deploy", action=deploy, needs=["build"], gate="release"),
        )
    """
)


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "deploy_workflow.py").write_text(WORKFLOW)
    load_settings.cache_clear()
    yield tmp_path
    load_settings.cache_clear()


def invoke(*args, input=None):
    return CliRunner().invoke(cli, list(args), input=input)


def test_plan(workdir):
    result = invoke("plan", "--workflow", "deploy_workflow.py")
    assert result.exit_code == 0, result.output
    assert "stage 1: build" in result.output
    assert "stage 2: deploy" in result.output
    assert "gate release: blocks deploy" in result.output


def test_plan_rejects_cycles(workdir):
    (workdir / "loop_workflow.py").write_text(
        "from shipgate import job\n"
        "JOBS = [job('a', action=print, needs=['b']), job('b', action=print, needs=['a'])]\n"
    )
    result = invoke("plan", "--workflow", "loop_workflow.py")
    assert result.exit_code == 1
    assert "cycle" in result.output


def test_missing_workflow(workdir):
    result = invoke("plan", "--workflow", "nope.py")
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_run_with_pre_approval(workdir):
    result = invoke(
        "run", "--no-interactive", "--artifact-backend", "memory",
        "--var", "TAG=v2", "--approve", "release", "--actor", "ci-bot",
    )
    assert result.exit_code == 0, result.output
    assert "deploy: SUCCEEDED" in result.output
    assert "RUN: SUCCEEDED" in result.output


def test_run_blocked_without_decision(workdir):
    result = invoke("run", "--no-interactive", "--artifact-backend", "memory", "--var", "TAG=v2")
    assert result.exit_code == 1
    assert "Run blocked on approval" in result.output
    assert "deploy: SKIPPED" in result.output


def test_run_pre_rejected(workdir):
    result = invoke(
        "run", "--no-interactive", "--artifact-backend", "memory",
        "--reject", "release", "--actor", "alice",
    )
    assert result.exit_code == 1
    assert "RUN: FAILED" in result.output


def test_unauthorized_pre_approval(workdir):
    result = invoke("run", "--no-interactive", "--artifact-backend", "memory", "--approve", "release", "--actor", "mallory")
    assert result.exit_code == 1
    assert "not an authorized approver" in result.output


def test_interactive_approval(workdir):
    result = invoke(
        "run", "--interactive", "--artifact-backend", "memory", "--var", "TAG=v2", "--actor", "alice",
        input="alice\ny\nlgtm\n",
    )
    assert result.exit_code == 0, result.output
    assert "GATE APPROVED: release (by alice)" in result.output


def test_parse_vars():
    assert parse_vars(("REGION=eu-west-1", "EMPTY=", "URL=a=b")) == {
        "REGION": "eu-west-1",
        "EMPTY": "",
        "URL": "a=b",
    }
