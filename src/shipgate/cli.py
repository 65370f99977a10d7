# cli.py
from __future__ import annotations

import getpass
import subprocess
import sys
from pathlib import Path

import click

from shipgate.dag import build_graph, topo_levels
from shipgate.errors import (
    AlreadyResolvedError,
    ShipgateError,
    UnauthorizedApproverError,
    UnknownGateError,
    WorkflowError,
)
from shipgate.git_facts.git import get_current_ref, head_sha, repo_name, repo_root
from shipgate.model import Decision, GateStatus, JobStatus, RunResult, Trigger
from shipgate.runner import create_run, load_workflow
from shipgate.settings import load_settings
from shipgate.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "shipgate_workflow.py"


def find_workflow_files() -> list[Path]:
    """Find workflow files in the current directory."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  shipgate run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify one explicitly:\n  shipgate run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  shipgate run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        out[key] = value
    return out


def default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _git_default(fn, fallback):
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return fallback


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """shipgate: gated deployment pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--event", default="workflow_dispatch", show_default=True, help="Trigger event name")
@click.option("--ref", default=None, help="Git ref for the trigger (defaults to current branch)")
@click.option("--var", "variables", multiple=True, help="Run variable KEY=VALUE (repeatable)")
@click.option("--approve", "approve_gates", multiple=True, help="Approve GATE up front (repeatable)")
@click.option("--reject", "reject_gates", multiple=True, help="Reject GATE up front (repeatable)")
@click.option("--actor", default=None, help="Approver identity (defaults to the current user)")
@click.option("--interactive/--no-interactive", default=None, help="Prompt for approvals when blocked (default: if stdin is a TTY)")
@click.option("--dev-identity", is_flag=True, default=False, help="Mint identity assertions with a throwaway local issuer")
@click.option("--artifact-backend", type=click.Choice(["memory", "file", "sql"]), default=None, help="Artifact store backend")
@click.option("--retain-artifacts", is_flag=True, default=False, help="Keep artifacts after the run finishes")
@click.pass_context
def run(
    ctx, workflow, workers, event, ref, variables, approve_gates, reject_gates,
    actor, interactive, dev_identity, artifact_backend, retain_artifacts,
):
    """Run a shipgate workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    actor = actor or default_actor()
    if interactive is None:
        interactive = sys.stdin.isatty()

    updates = {}
    if workers is not None:
        updates["max_workers"] = workers
    if artifact_backend is not None:
        updates["artifact_backend"] = artifact_backend
    if retain_artifacts:
        updates["retain_artifacts"] = True
    settings = load_settings().model_copy(update=updates)

    pipeline = None
    try:
        wf = load_workflow(workflow_path)
        trigger = Trigger(
            event=event,
            ref=ref or _git_default(get_current_ref, "HEAD"),
            sha=_git_default(head_sha, None),
            variables=parse_vars(variables),
        )
        pipeline = create_run(
            wf,
            settings,
            trigger=trigger,
            repo_root=_git_default(repo_root, Path(".")),
            dev_identity=dev_identity,
            workflow_name=workflow_path.name,
        )

        for gate_name in approve_gates:
            pipeline.submit_approval(gate_name, Decision.APPROVE, actor)
        for gate_name in reject_gates:
            pipeline.submit_approval(gate_name, Decision.REJECT, actor)

        console.print_info(f"Repository: {repo_name()}")
        console.print_run_started(
            run_id=pipeline.run_id,
            workflow=workflow_path.name,
            job_count=len(wf.jobs),
            event=trigger.event,
            ref=trigger.ref,
        )

        pipeline.start()
        _drive(pipeline, actor=actor, interactive=interactive)

        snap = pipeline.snapshot()
        console.print_results({j["name"]: j["status"] for j in snap["jobs"]}, snap["result"])

        if pipeline.result is not RunResult.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run")
        if pipeline is not None:
            pipeline.cancel()
            pipeline.wait(timeout=10)
        sys.exit(130)
    except (UnauthorizedApproverError, AlreadyResolvedError, UnknownGateError, WorkflowError) as e:
        console.print_error("Cannot start run", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def _awaiting_gates(pipeline) -> list[str]:
    names = set()
    for name, st in pipeline.states.items():
        gate = pipeline.graph.jobs[name].gate
        if st.status is JobStatus.AWAITING_APPROVAL and pipeline.gates[gate].status is GateStatus.OPEN:
            names.add(gate)
    return sorted(names)


def _drive(pipeline, *, actor: str, interactive: bool) -> None:
    """Wait for the run, asking the operator whenever it blocks on a gate."""
    console = get_console()
    while True:
        pipeline.wait_until_blocked()
        if pipeline.finished:
            return

        pending = _awaiting_gates(pipeline)
        if not pending:
            pipeline.wait(timeout=0.1)
            continue

        if not interactive:
            console.print_error(
                "Run blocked on approval",
                f"Gate(s) waiting for a decision: {', '.join(pending)}",
                suggestion="Re-run with --approve GATE / --reject GATE, or use --interactive.",
            )
            pipeline.cancel()
            pipeline.wait()
            return

        for gate_name in pending:
            _prompt_gate(pipeline, gate_name, actor)


def _prompt_gate(pipeline, gate_name: str, actor: str) -> None:
    console = get_console()
    gate = pipeline.gates[gate_name]
    while not gate.resolved:
        who = click.prompt(f"Approver for gate '{gate_name}'", default=actor)
        decision = Decision.APPROVE if click.confirm(f"Approve '{gate_name}' (blocks {', '.join(gate.blocks)})?") else Decision.REJECT
        comment = click.prompt("Comment", default="", show_default=False) or None
        try:
            pipeline.submit_approval(gate_name, decision, who, comment)
        except UnauthorizedApproverError as e:
            console.print_error("Not an approver", str(e), details=[f"approvers: {', '.join(gate.approvers)}"])
        except AlreadyResolvedError:
            return


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def plan(workflow):
    """Validate a workflow and print its stages and gates without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        graph = build_graph(wf.jobs, wf.gates)
    except ShipgateError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    levels = topo_levels(graph.dependents, graph.indeg)
    console.print_plan(levels, {name: graph.blocked_by(name) for name in sorted(graph.gates)})


@cli.command()
@click.option("--workflow", default=None, help="Workflow file served by the API")
@click.option("--host", default=None, help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port")
def serve(workflow, host, port):
    """Serve the run/approval API for a workflow."""
    import uvicorn
    from shipgate.server import create_app

    settings = load_settings()
    workflow_path = discover_workflow(workflow or (str(settings.workflow) if settings.workflow else None))
    wf = load_workflow(workflow_path)
    set_console(Console(debug=get_console().debug, quiet=True))
    app = create_app(wf, settings, workflow_name=workflow_path.name)
    uvicorn.run(app, host=host or settings.host, port=port or settings.port)


if __name__ == "__main__":
    cli()
