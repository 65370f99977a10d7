import pytest

from shipgate import gate, job, sh, wf
from shipgate.artifacts import FileArtifactStore, InMemoryArtifactStore
from shipgate.broker import GRANT_REFRESH_MARGIN
from shipgate.identity import LocalIssuer
from shipgate.model import JobStatus, RunResult, Trigger
from shipgate.runner import create_run, make_assertion_source, make_broker
from shipgate.settings import Settings


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SHIPGATE_ARTIFACT_BACKEND", "sql")
    monkeypatch.setenv("SHIPGATE_GATE_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("SHIPGATE_MAX_WORKERS", "3")
    s = Settings()
    assert s.artifact_backend == "sql"
    assert s.gate_timeout_seconds == 30.0
    assert s.max_workers == 3


def test_settings_reject_unknown_backend():
    with pytest.raises(ValueError):
        Settings(artifact_backend="s3")


def test_grant_ttl_must_outlast_refresh_margin():
    with pytest.raises(ValueError):
        Settings(grant_ttl_seconds=GRANT_REFRESH_MARGIN)
    assert Settings(grant_ttl_seconds=GRANT_REFRESH_MARGIN + 1).grant_ttl_seconds == GRANT_REFRESH_MARGIN + 1


def test_no_identity_configured():
    settings = Settings()
    assert make_broker(settings) is None
    assert make_assertion_source(settings, Trigger()) is None


def test_token_file_is_reread(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("first\n")
    source = make_assertion_source(Settings(identity_token_file=token_file), Trigger())
    assert source("build") == "first"
    token_file.write_text("second\n")
    assert source("build") == "second"


def test_configured_issuer_from_pem(tmp_path):
    issuer = LocalIssuer(url="https://token.actions.example.com")
    pem = tmp_path / "issuer.pem"
    pem.write_bytes(issuer.public_key_pem())
    settings = Settings(issuer_url=issuer.url, issuer_public_key=pem, identity_token=issuer.mint("job:any"))

    broker = make_broker(settings)
    source = make_assertion_source(settings, Trigger())
    assert broker.issue("build", source("build"), ["ecr:push"]).subject == "job:any"


def test_create_run_with_dev_identity(tmp_path):
    seen = {}

    def provision(ctx):
        seen["subject"] = ctx.grant.subject
        ctx.put_artifact("tfstate", b"{}")

    workflow = wf(
        job("provision", action=provision, scope=["infra:apply"]),
        gate("teardown", ["alice"]),
        job("destroy", sh("destroy", "test -s infra/terraform.tfstate"), needs=["provision"], gate="teardown",
            inputs={"provision/tfstate": "infra/terraform.tfstate"}),
    )
    settings = Settings(artifact_backend="file", artifact_root=tmp_path / "artifacts")
    run = create_run(workflow, settings, trigger=Trigger(ref="main"), repo_root=tmp_path, dev_identity=True)
    assert isinstance(run.store, FileArtifactStore)

    run.submit_approval("teardown", "approve", "alice")
    assert run.run() is RunResult.SUCCEEDED, run.snapshot()
    assert seen["subject"] == "job:provision"
    assert run.status("destroy") is JobStatus.SUCCEEDED
    assert not (tmp_path / "artifacts" / run.run_id).exists()


def test_create_run_honours_settings():
    workflow = wf(job("lint", sh("ruff", "true")))
    settings = Settings(artifact_backend="memory", max_workers=2, gate_timeout_seconds=5, retain_artifacts=True)
    run = create_run(workflow, settings, workflow_name="lint_workflow.py")
    assert isinstance(run.store, InMemoryArtifactStore)
    assert (run.max_workers, run.gate_timeout, run.retain_artifacts) == (2, 5, True)
    assert run.workflow_name == "lint_workflow.py"
    assert run.broker is None
