# cli.py
from __future__ import annotations

import socket
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from gateci.agent.api_client import APIClient, APIError
from gateci.agent.executor import job_to_dict
from gateci.dag import plan as plan_stages
from gateci.facts import FactError, FactSet, Trigger, compute_facts
from gateci.git_facts.git import get_current_ref, get_remote_url
from gateci.runner import Workflow, load_workflow, run_dag
from gateci.settings import Settings, parse_flag, resolve_flags
from gateci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "gateci_workflow.py"


def find_workflow_files() -> list[Path]:
    """Find all workflow files in the current directory."""
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
                suggestion="Create a workflow file or specify a different path:\n  gateci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  gateci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  gateci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def resolve_trigger(event: Optional[str], ref: Optional[str], base_ref: Optional[str]) -> Trigger:
    """CLI options first, then GATECI_*/GITHUB_* env, then the local git branch."""
    if event or ref:
        if not (event and ref):
            raise FactError("--event and --ref must be given together")
        return Trigger.create(event, ref, base_ref)
    try:
        return Trigger.from_env()
    except FactError:
        return Trigger.from_git()


def resolve_facts(
    workflow: Optional[Workflow],
    *,
    event: Optional[str],
    ref: Optional[str],
    base_ref: Optional[str],
    main_branch: Optional[str],
    flag_args: tuple[str, ...],
    facts_file: Optional[str],
) -> tuple[FactSet, Optional[Trigger]]:
    """
    Compute the run's facts exactly once, or load them from a file written
    by `gateci facts` in another process. Raises FactError on any problem.
    """
    if facts_file:
        try:
            text = Path(facts_file).read_text(encoding="utf-8")
        except OSError as e:
            raise FactError(f"Could not read facts file: {e}") from e
        return FactSet.from_text(text), None

    try:
        settings = Settings.from_env()
        cli_flags = dict(parse_flag(f) for f in flag_args)
    except ValueError as e:
        raise FactError(str(e)) from e

    trigger = resolve_trigger(event, ref, base_ref)
    flags = resolve_flags(workflow.flags if workflow else None, settings, cli_flags)
    facts = compute_facts(
        trigger,
        main_branch=main_branch or settings.main_branch,
        flags=flags,
    )
    return facts, trigger


def _describe(trigger: Optional[Trigger]) -> Optional[str]:
    if trigger is None:
        return "facts file"
    text = f"{trigger.event.value} {trigger.ref}"
    if trigger.base_ref:
        text += f" -> {trigger.base_ref}"
    return text


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


def trigger_options(fn):
    fn = click.option("--facts-file", default=None, help="Read precomputed facts (name=value lines) instead of computing them")(fn)
    fn = click.option("--flag", "flags", multiple=True, help="Static flag fact, e.g. --flag publishDocs=false (repeatable)")(fn)
    fn = click.option("--main-branch", default=None, help="Main branch name (default: $GATECI_MAIN_BRANCH or master)")(fn)
    fn = click.option("--base-ref", default=None, help="Base branch of a pull request")(fn)
    fn = click.option("--ref", default=None, help="Git ref that triggered the run, e.g. refs/heads/master")(fn)
    fn = click.option("--event", default=None, help="Trigger event: push, pull_request, workflow_dispatch, schedule")(fn)
    return fn


def _fail_facts(e: FactError) -> None:
    get_console().print_error(
        "Fact computation failed",
        str(e),
        suggestion="No job was started. Fix the trigger metadata or flags and retry.",
    )
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """GateCI: run CI jobs gated on run facts and predecessor outcomes."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Cancel the run after the first failed job")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print stages and gates before running")
@click.pass_context
def run(ctx, workflow, event, ref, base_ref, main_branch, flags, facts_file, workers, fail_fast, print_plan):
    """Run a GateCI workflow locally."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        facts, trigger = resolve_facts(
            wf,
            event=event,
            ref=ref,
            base_ref=base_ref,
            main_branch=main_branch,
            flag_args=flags,
            facts_file=facts_file,
        )
    except FactError as e:
        _fail_facts(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    try:
        settings = Settings.from_env()
        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            job_count=len(wf.jobs),
            trigger=_describe(trigger),
        )
        console.print_facts(facts)

        result = run_dag(
            wf.jobs,
            facts,
            repo_root=".",
            work_dir=settings.work_dir,
            max_workers=workers or settings.workers,
            fail_fast=fail_fast,
            print_plan=print_plan,
        )

        console.print_results(result.results, result.status.value)

        if result.interrupted:
            console.print_info("\nInterrupted by user")
            sys.exit(130)
        if result.failed:
            sys.exit(1)

    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file whose FLAGS should be included")
@trigger_options
@click.option("--output", "output", default=None, help="Write facts to this file instead of stdout")
def facts(workflow, event, ref, base_ref, main_branch, flags, facts_file, output):
    """Compute run facts and print them as name=value lines."""
    console = get_console()
    try:
        wf = load_workflow(discover_workflow(workflow)) if workflow else None
        fact_set, _trigger = resolve_facts(
            wf,
            event=event,
            ref=ref,
            base_ref=base_ref,
            main_branch=main_branch,
            flag_args=flags,
            facts_file=facts_file,
        )
    except FactError as e:
        _fail_facts(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    text = fact_set.to_text()
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print_info(f"Wrote {len(fact_set)} fact(s) to {output}")
    else:
        click.echo(text, nl=False)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def plan(workflow):
    """Validate the workflow and print its stages and gates."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        levels = plan_stages(wf.jobs)
    except Exception as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_plan(levels, {j.name: j.if_ or "" for j in wf.jobs})


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when no jobs available")
@click.pass_context
def agent(ctx, api, agent_id, poll_interval):
    """Run GateCI agent loop to poll for and execute jobs."""
    from gateci.agent.agent import run_agent

    console = get_console()

    if not agent_id:
        agent_id = socket.gethostname()

    try:
        run_agent(api, agent_id, poll_interval)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--repo", default=None, help="Repository URL (defaults to git remote origin URL)")
@click.option("--checkout", default=None, help="What agents should check out (defaults to current branch or HEAD)")
@trigger_options
@click.pass_context
def submit(ctx, api, workflow, repo, checkout, event, ref, base_ref, main_branch, flags, facts_file):
    """Compute facts once and submit the run to the cloud API."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        plan_stages(wf.jobs)
        console.print_info(f"Loaded {len(wf.jobs)} job(s) from {workflow_path}")
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(1)

    try:
        fact_set, trigger = resolve_facts(
            wf,
            event=event,
            ref=ref,
            base_ref=base_ref,
            main_branch=main_branch,
            flag_args=flags,
            facts_file=facts_file,
        )
    except FactError as e:
        _fail_facts(e)

    try:
        repo = repo or get_remote_url("origin")
        checkout = checkout or get_current_ref()
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_error(
            "Could not read git metadata",
            "No --repo/--checkout given and git could not provide them.",
            suggestion="Specify them explicitly:\n  gateci submit --api <url> --repo <repo_url> --checkout <ref>",
        )
        sys.exit(1)

    payload = {
        "repo": repo,
        "ref": checkout,
        "trigger": _describe(trigger),
        "facts": fact_set.to_text(),
        "jobs": [
            {"job_name": j.name, "payload_json": {"repo_url": repo, "ref": checkout, "job": job_to_dict(j)}}
            for j in wf.jobs
        ],
    }

    try:
        result = APIClient(api).create_run(payload)
    except APIError as e:
        console.print_error(
            "API request failed",
            str(e),
            suggestion=f"Check the API at {api} and verify your request.",
        )
        sys.exit(1)

    console.print_info(f"\nSuccessfully submitted run to {api.rstrip('/')}")
    console.print_info(f"  Run ID: {result.get('run_id')}")
    console.print_info(f"  Job IDs: {', '.join(result.get('job_ids', []))}")
    console.print_facts(fact_set)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("run_id")
def status(api, run_id):
    """Show a submitted run's facts and job outcomes."""
    console = get_console()
    try:
        run_info = APIClient(api).get_run(run_id)
    except APIError as e:
        console.print_error("API request failed", str(e))
        sys.exit(1)

    console.print_facts(run_info.get("facts", {}))
    console.print_results(run_info.get("jobs", {}), run_info.get("status"))
    if run_info.get("status") == "failed":
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("run_id")
def cancel(api, run_id):
    """Cancel a submitted run. Jobs gated on always()/cancelled() still run."""
    console = get_console()
    try:
        result = APIClient(api).cancel_run(run_id)
    except APIError as e:
        console.print_error("API request failed", str(e))
        sys.exit(1)

    stopped = result.get("cancelled_running", [])
    console.print_info(f"Cancelled run {run_id}")
    for name in stopped:
        console.print_job_cancelled(name)


if __name__ == "__main__":
    cli()
