import pytest

from shipgate import gate, job, sh
from shipgate.dag import build_dag, build_graph, topo_levels
from shipgate.errors import GraphCycleError, WorkflowError


def _noop(ctx):
    return None


def test_topo_levels_groups_independent_jobs():
    jobs = [
        job("lint", action=_noop),
        job("test", action=_noop),
        job("build", action=_noop, needs=["lint", "test"]),
        job("deploy", action=_noop, needs=["build"]),
    ]
    adj, indeg = build_dag(jobs)
    assert topo_levels(adj, indeg) == [["lint", "test"], ["build"], ["deploy"]]


def test_cycle_is_rejected_with_stuck_jobs():
    jobs = [
        job("a", action=_noop, needs=["c"]),
        job("b", action=_noop, needs=["a"]),
        job("c", action=_noop, needs=["b"]),
        job("root", action=_noop),
    ]
    with pytest.raises(GraphCycleError) as exc:
        build_graph(jobs)
    assert exc.value.stuck == ["a", "b", "c"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(GraphCycleError):
        build_graph([job("a", action=_noop, needs=["a"])])


def test_duplicate_and_missing_jobs():
    with pytest.raises(WorkflowError, match="Duplicate"):
        build_graph([job("a", action=_noop), job("a", action=_noop)])
    with pytest.raises(WorkflowError, match="missing job 'ghost'"):
        build_graph([job("a", action=_noop, needs=["ghost"])])


def test_unknown_gate_reference():
    with pytest.raises(WorkflowError, match="unknown gate"):
        build_graph([job("destroy", action=_noop, gate="teardown")])


def test_input_must_come_from_a_declared_dependency():
    jobs = [
        job("provision", action=_noop),
        job("destroy", action=_noop, inputs={"provision/tfstate": "state"}),
    ]
    with pytest.raises(WorkflowError, match="does not declare 'provision'"):
        build_graph(jobs)


def test_gate_blocks_and_job_gate_agree():
    jobs = [
        job("provision", sh("apply", "true")),
        job("destroy", sh("destroy", "true"), needs=["provision"]),
        job("notify", sh("notify", "true"), needs=["provision"], gate="teardown"),
    ]
    g = gate("teardown", ["alice"], blocks=["destroy"])
    graph = build_graph(jobs, [g])
    assert graph.jobs["destroy"].gate == "teardown"
    assert g.blocks == ("destroy", "notify")
    assert graph.blocked_by("teardown") == ["destroy", "notify"]


def test_descendants_are_transitive():
    jobs = [
        job("a", action=_noop),
        job("b", action=_noop, needs=["a"]),
        job("c", action=_noop, needs=["b"]),
        job("d", action=_noop),
    ]
    graph = build_graph(jobs)
    assert graph.descendants("a") == ["b", "c"]
    assert graph.descendants("d") == []


def test_build_graph_leaves_caller_jobs_untouched():
    destroy = job("destroy", sh("destroy", "true"))
    notify = job("notify", sh("notify", "true"), needs=["destroy"])
    graph = build_graph([destroy, notify], [gate("teardown", ["alice"], blocks=["destroy"])])

    assert graph.jobs["destroy"].gate == "teardown"
    assert graph.jobs["destroy"] is not destroy
    assert destroy.gate is None
    assert notify.gate is None

    # the same job list can back a second graph without a gate conflict
    again = build_graph([destroy, notify], [gate("freeze", ["bob"], blocks=["destroy"])])
    assert again.jobs["destroy"].gate == "freeze"
