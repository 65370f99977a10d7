import textwrap

import pytest

from shipgate import build, gate, job, sh, wf
from shipgate.model import ApprovalGate, Job
from shipgate.runner import load_workflow


def _write(tmp_path, body, name="ci_workflow.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


def test_load_wf_style(tmp_path):
    path = _write(tmp_path, """
        from shipgate import gate, job, sh, wf

        def workflow():
            return wf(
                job("provision", sh("apply", "true")),
                gate("teardown", approvers=["alice"]),
                job("destroy", sh("destroy", "true"), needs=["provision"], gate="teardown"),
            )
    """)
    loaded = load_workflow(path)
    assert [j.name for j in loaded.jobs] == ["provision", "destroy"]
    assert [g.name for g in loaded.gates] == ["teardown"]


def test_load_jobs_and_gates_variables(tmp_path):
    path = _write(tmp_path, """
        from shipgate import gate, job, sh

        JOBS = [job("lint", sh("ruff", "true"))]
        GATES = [gate("release", ["alice"], blocks=["lint"])]
    """)
    loaded = load_workflow(path)
    assert loaded.jobs[0].name == "lint"
    assert loaded.gates[0].blocks == ("lint",)


def test_load_plain_job_list(tmp_path):
    path = _write(tmp_path, """
        from shipgate import job, sh

        def workflow():
            return [job("lint", sh("ruff", "true"))]
    """)
    assert load_workflow(path).gates == []


def test_load_rejects_garbage(tmp_path):
    path = _write(tmp_path, "JOBS = ['not a job']\n")
    with pytest.raises(TypeError):
        load_workflow(path)


def test_load_requires_python_file(tmp_path):
    path = tmp_path / "workflow.yaml"
    path.write_text("jobs: []\n")
    with pytest.raises(ValueError):
        load_workflow(path)
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")


def test_job_helper_applies_default_cwd():
    j = job("plan", sh("init", "terraform init"), sh("fmt", "terraform fmt", cwd="modules"), cwd="infra")
    assert [s.cwd for s in j.steps] == ["infra", "modules"]


def test_job_needs_work():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("destroy")
        .depends_on("provision")
        .define_step("destroy", "terraform destroy -auto-approve", cwd="infra")
        .with_env(TF_IN_AUTOMATION=1)
        .gated_by("teardown")
        .with_scope("infra:destroy")
        .consumes("provision/tfstate", "infra/terraform.tfstate")
        .build()
    )
    assert isinstance(j, Job)
    assert j.needs == ["provision"]
    assert j.env == {"TF_IN_AUTOMATION": "1"}
    assert j.gate == "teardown"
    assert j.input_refs == [("provision", "tfstate")]


def test_wf_splits_jobs_and_gates():
    w = wf(job("a", sh("a", "true")), gate("g", ["alice"]))
    assert len(w.jobs) == 1
    assert isinstance(w.gates[0], ApprovalGate)
    with pytest.raises(TypeError):
        wf("a")


def test_bundled_deploy_example_is_valid():
    from pathlib import Path

    from shipgate.dag import build_graph, topo_levels

    loaded = load_workflow(Path(__file__).resolve().parents[1] / "examples" / "deploy_workflow.py")
    graph = build_graph(loaded.jobs, loaded.gates)
    assert topo_levels(graph.dependents, graph.indeg) == [["build"], ["provision"], ["destroy"]]
    assert graph.blocked_by("teardown") == ["destroy"]
    assert graph.jobs["destroy"].input_refs == [("provision", "tfstate")]
