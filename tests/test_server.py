"""
API tests for the run / approval control plane.
"""

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from shipgate import PipelineRun, gate, job, wf
from shipgate.server import RunRegistry, create_app
from shipgate.settings import Settings

TIMEOUT = 10


def _provision(ctx):
    ctx.put_artifact("tfstate", b"{}")
    ctx.log("applied 12 resources")


def _destroy(ctx):
    assert ctx.get_artifact("provision", "tfstate") == b"{}"


@pytest.fixture
def app():
    workflow = wf(
        job("provision", action=_provision),
        gate("teardown", approvers=["alice"]),
        job("destroy", action=_destroy, needs=["provision"], gate="teardown"),
    )
    return create_app(workflow, Settings(artifact_backend="memory"), workflow_name="deploy_workflow.py")


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _blocked_run(app, client):
    r = client.post("/runs", json={"event": "push", "ref": "refs/heads/main", "variables": {"REGION": "eu-west-1"}})
    assert r.status_code == 201
    run_id = r.json()["run_id"]
    run = app.state.registry.get(run_id)
    assert run.wait_until_blocked(timeout=TIMEOUT)
    return run_id, run


class TestRuns:
    def test_create_run(self, app, client):
        run_id, _ = _blocked_run(app, client)

        body = client.get(f"/runs/{run_id}").json()
        assert body["workflow"] == "deploy_workflow.py"
        assert body["trigger"]["variables"] == {"REGION": "eu-west-1"}
        assert body["result"] is None
        statuses = {j["name"]: j["status"] for j in body["jobs"]}
        assert statuses == {"provision": "succeeded", "destroy": "awaiting_approval"}
        assert body["gates"][0]["status"] == "open"

    def test_list_runs(self, app, client):
        _blocked_run(app, client)
        _blocked_run(app, client)
        assert len(client.get("/runs").json()) == 2

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_job_detail_includes_logs(self, app, client):
        run_id, _ = _blocked_run(app, client)
        body = client.get(f"/runs/{run_id}/jobs/provision").json()
        assert body["status"] == "succeeded"
        assert body["artifacts"] == ["tfstate"]
        assert "applied 12 resources" in body["logs"]
        assert client.get(f"/runs/{run_id}/jobs/ghost").status_code == 404


class TestGates:
    def test_approve(self, app, client):
        run_id, run = _blocked_run(app, client)

        r = client.post(f"/runs/{run_id}/gates/teardown/approve", json={"actor": "alice", "comment": "go"})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"
        assert r.json()["resolved_by"] == "alice"

        run.wait(timeout=TIMEOUT)
        assert client.get(f"/runs/{run_id}").json()["result"] == "succeeded"

    def test_unauthorized_approver(self, app, client):
        run_id, run = _blocked_run(app, client)
        r = client.post(f"/runs/{run_id}/gates/teardown/approve", json={"actor": "mallory"})
        assert r.status_code == 403
        assert run.gates["teardown"].status.value == "open"

    def test_second_decision_conflicts(self, app, client):
        run_id, run = _blocked_run(app, client)
        assert client.post(f"/runs/{run_id}/gates/teardown/reject", json={"actor": "alice"}).status_code == 200
        assert client.post(f"/runs/{run_id}/gates/teardown/approve", json={"actor": "alice"}).status_code == 409

        run.wait(timeout=TIMEOUT)
        body = client.get(f"/runs/{run_id}").json()
        assert body["result"] == "failed"
        destroy = next(j for j in body["jobs"] if j["name"] == "destroy")
        assert destroy["status"] == "skipped"
        assert destroy["skip_reason"] == "gate 'teardown' rejected"

    def test_unknown_gate(self, app, client):
        run_id, _ = _blocked_run(app, client)
        r = client.post(f"/runs/{run_id}/gates/release/approve", json={"actor": "alice"})
        assert r.status_code == 404


class TestLifecycle:
    def test_cancel(self, app, client):
        run_id, run = _blocked_run(app, client)
        client.post(f"/runs/{run_id}/cancel")
        run.wait(timeout=TIMEOUT)

        body = client.get(f"/runs/{run_id}").json()
        assert body["result"] == "failed"
        assert body["gates"][0]["resolved_by"] == "shipgate:cancel"

    def test_rerun(self, app, client):
        run_id, run = _blocked_run(app, client)
        assert client.post(f"/runs/{run_id}/rerun").status_code == 409

        client.post(f"/runs/{run_id}/gates/teardown/reject", json={"actor": "alice"})
        run.wait(timeout=TIMEOUT)

        r = client.post(f"/runs/{run_id}/rerun")
        assert r.status_code == 201
        new_id = r.json()["run_id"]
        assert new_id != run_id
        assert sorted(r.json()["jobs"]) == ["destroy", "provision"]

        fresh = app.state.registry.get(new_id)
        assert fresh.wait_until_blocked(timeout=TIMEOUT)
        assert fresh.gates["teardown"].status.value == "open"
        fresh.cancel()


class TestRegistry:
    def test_oldest_finished_runs_are_dropped(self):
        registry = RunRegistry(max_finished=2)
        waiting = registry.add(PipelineRun([job("provision", action=_provision)]))

        finished = []
        for _ in range(3):
            run = PipelineRun([job("provision", action=_provision)])
            run.run()
            finished.append(registry.add(run))

        with pytest.raises(HTTPException) as exc:
            registry.get(finished[0].run_id)
        assert exc.value.status_code == 404
        assert registry.get(waiting.run_id) is waiting
        assert [r.run_id for r in registry.all()] == [waiting.run_id] + [r.run_id for r in finished[1:]]

    def test_cap_comes_from_settings(self):
        workflow = wf(job("provision", action=_provision))
        app = create_app(workflow, Settings(artifact_backend="memory", max_retained_runs=5))
        assert app.state.registry.max_finished == 5
