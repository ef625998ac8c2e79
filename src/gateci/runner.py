# runner.py
from __future__ import annotations

import os
import runpy
import signal
import subprocess
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from . import envfile
from .evaluator import RunState
from .facts import FactSet
from .gates import GateContext, GateError, NeedView, parse_gate
from .model import Job, JobRecord, JobResult, Outcome, RunStatus, Step
from .settings import default_workers
from .ui.console import get_console

POLL_SECONDS = 0.2
OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "pre-commit": "Install pre-commit (e.g., pip install pre-commit).",
    "make": "Install make or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

@dataclass
class Workflow:
    jobs: List[Job]
    flags: Dict[str, bool] = field(default_factory=dict)
    path: Optional[Path] = None


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    and may define FLAGS = {"publishDocs": True, ...}: static facts for
    every run of this workflow.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"gateci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from gateci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    flags = globals_dict.get("FLAGS", {}) or {}
    if not isinstance(flags, dict) or not all(isinstance(v, bool) for v in flags.values()):
        raise TypeError("FLAGS must be a dict of name -> bool")

    return Workflow(jobs=jobs, flags=dict(flags), path=wf_path)


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"

    @property
    def hint(self) -> Optional[str]:
        # 127: command not found in sh
        if self.exit_code != 127:
            return None
        tool = self.cmd.strip().split()[0] if self.cmd.strip() else ""
        return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


class JobCancelled(Exception):
    """The job's cancel event fired while a step was running."""


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Launch:
    """
    Everything a job is started with. The facts and predecessor views are
    read-only; `env` already contains them in environment form.

    `run_cancelled` is set once the run is cancelled, whether or not this
    job is stopped; step gates read cancelled() from it.
    """
    job: Job
    facts: FactSet
    needs: Mapping[str, NeedView]
    env: Mapping[str, str]
    run_cancelled: threading.Event = field(default_factory=threading.Event, compare=False)


Executor = Callable[[Launch, threading.Event], JobResult]


def launch_for(state: RunState, name: str, run_cancelled: Optional[threading.Event] = None) -> Launch:
    ctx = state.context_for(name)
    return Launch(
        job=state.jobs[name],
        facts=state.facts,
        needs=ctx.needs,
        env=state.launch_env(name),
        run_cancelled=run_cancelled or threading.Event(),
    )


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _run_step(
    job: Job,
    step: Step,
    repo_root: Path,
    env: Dict[str, str],
    cancel_event: threading.Event,
) -> None:
    cwd = (repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

    proc = subprocess.Popen(
        step.run,
        shell=True,
        cwd=str(cwd),
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        # own process group so the whole shell pipeline can be stopped
        start_new_session=True,
    )
    deadline = time.monotonic() + step.timeout if step.timeout else None

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel_event.is_set():
                _signal_group(proc, signal.SIGTERM)
                proc.communicate()
                raise JobCancelled(f"[{job.name}] cancelled during step '{step.name}'")
            if deadline is not None and time.monotonic() > deadline:
                _signal_group(proc, signal.SIGKILL)
                stdout, stderr = proc.communicate()
                raise StepFailure(
                    job=job.name,
                    step=step.name,
                    cmd=step.run,
                    exit_code=None,
                    stdout=stdout[-OUTPUT_TAIL:],
                    stderr=stderr[-OUTPUT_TAIL:],
                    timed_out=True,
                )

    console = get_console()
    if stdout:
        console.print_info(stdout.rstrip("\n"))

    if proc.returncode != 0:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            stdout=stdout[-OUTPUT_TAIL:],
            stderr=stderr[-OUTPUT_TAIL:],
        )
    if stderr:
        console.print_debug(stderr.rstrip("\n"))


class ShellExecutor:
    """
    Runs a job's steps as shell commands, one subprocess per step.

    Step outputs are collected from the file named by $GATECI_OUTPUT.
    """

    def __init__(self, repo_root: str | Path = ".", work_dir: str | Path = ".gateci"):
        self.repo_root = Path(repo_root).resolve()
        self.work_dir = Path(work_dir)
        if not self.work_dir.is_absolute():
            self.work_dir = self.repo_root / self.work_dir

    def __call__(self, launch: Launch, cancel_event: threading.Event) -> JobResult:
        job = launch.job
        console = get_console()
        out_dir = self.work_dir / "outputs"
        out_dir.mkdir(parents=True, exist_ok=True)
        fd, out_name = tempfile.mkstemp(prefix=f"{job.name}-", suffix=".env", dir=out_dir)
        os.close(fd)
        output_path = Path(out_name)

        env = os.environ.copy()
        env.update(job.env or {})
        # facts and predecessor outputs go last so a job cannot shadow them
        env.update(launch.env)
        env["GATECI_OUTPUT"] = str(output_path)
        env["GATECI_JOB"] = job.name

        failed_reason: Optional[str] = None
        try:
            for step in job.steps:
                gate = parse_gate(step.if_)
                cancelled = launch.run_cancelled.is_set() or cancel_event.is_set()
                ctx = GateContext(
                    facts=launch.facts,
                    needs=launch.needs,
                    success=failed_reason is None and not cancelled,
                    failure=failed_reason is not None,
                    cancelled=cancelled,
                )
                try:
                    run_it = gate.evaluate(ctx)
                except GateError as e:
                    console.print_failure(step.name, f"gate error: {e}")
                    failed_reason = failed_reason or f"step '{step.name}' gate error: {e}"
                    continue
                if not run_it:
                    console.print_step_skipped(job.name, step.name, f"if: {gate.text or 'success()'}")
                    continue

                console.print_step(job.name, step.name)
                try:
                    _run_step(job, step, self.repo_root, env, cancel_event)
                except StepFailure as e:
                    console.print_failure(
                        step.name,
                        e.stderr or str(e),
                        exit_code=e.exit_code,
                        hint=e.hint,
                    )
                    failed_reason = failed_reason or str(e)
                except FileNotFoundError as e:
                    console.print_failure(step.name, str(e))
                    failed_reason = failed_reason or str(e)

            outputs = envfile.read(output_path)
        except JobCancelled as e:
            return JobResult(Outcome.CANCELLED, reason=str(e))
        except envfile.EnvFileError as e:
            return JobResult(Outcome.FAILED, reason=f"malformed $GATECI_OUTPUT: {e}")
        finally:
            output_path.unlink(missing_ok=True)

        if failed_reason is not None:
            return JobResult(Outcome.FAILED, outputs=outputs, reason=failed_reason)

        missing = [name for name in job.outputs if not outputs.get(name)]
        if missing:
            return JobResult(
                Outcome.FAILED,
                outputs=outputs,
                reason=f"declared outputs missing or empty: {missing}",
            )
        return JobResult(Outcome.SUCCEEDED, outputs=outputs)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

@dataclass
class RunResult:
    facts: FactSet
    records: Dict[str, JobRecord]
    results: Dict[str, str]
    status: RunStatus
    interrupted: bool = False

    @property
    def failed(self) -> bool:
        return self.status is RunStatus.FAILED


def _report(decision_job: str, outcome: Outcome, reason: Optional[str]) -> None:
    console = get_console()
    if outcome is Outcome.SKIPPED:
        console.print_job_skipped(decision_job, reason or "gate is false")
    elif outcome is Outcome.CANCELLED:
        console.print_job_cancelled(decision_job)
    elif outcome is Outcome.FAILED:
        console.print_failure(decision_job, reason or "failed", is_job=True)
    elif outcome is Outcome.SUCCEEDED:
        console.print_success(decision_job)


def run_dag(
    jobs: List[Job],
    facts: FactSet,
    *,
    repo_root: str | Path = ".",
    work_dir: str | Path = ".gateci",
    max_workers: int | None = None,
    fail_fast: bool = False,
    executor: Optional[Executor] = None,
    cancel_event: Optional[threading.Event] = None,
    print_plan: bool = True,
) -> RunResult:
    """
    Run jobs as a DAG, gating each one on facts and predecessor outcomes.

    Independent jobs run in parallel. A failure never stops sibling jobs
    unless `fail_fast` is set, in which case it cancels the run. Setting
    `cancel_event` (or Ctrl-C) cancels the run; jobs whose gate opts out via
    always()/cancelled() are still evaluated.
    """
    console = get_console()
    state = RunState(jobs, facts)
    run_fn = executor or ShellExecutor(repo_root, work_dir)
    cancel_event = cancel_event or threading.Event()
    interrupted = False

    if print_plan:
        console.print_plan(state.levels, {j.name: j.if_ or "" for j in jobs})

    if max_workers is None:
        max_workers = default_workers()

    in_flight: Dict[Future, str] = {}
    job_events: Dict[str, threading.Event] = {}
    run_cancelled = threading.Event()

    def _cancel_run() -> None:
        run_cancelled.set()
        for name in state.cancel():
            job_events[name].set()
            console.print_job_cancelled(name)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while True:
            try:
                if cancel_event.is_set() and not state.cancelled:
                    _cancel_run()

                for d in state.advance():
                    if d.outcome is Outcome.RUNNING:
                        console.print_job_start(d.job)
                        job_events[d.job] = threading.Event()
                        fut = pool.submit(run_fn, launch_for(state, d.job, run_cancelled), job_events[d.job])
                        in_flight[fut] = d.job
                    else:
                        _report(d.job, d.outcome, d.reason)

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=POLL_SECONDS, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        result = JobResult(Outcome.FAILED, reason=f"{type(e).__name__}: {e}")

                    if state.complete(name, result.outcome, result.outputs, result.reason):
                        _report(name, result.outcome, result.reason)
                    if result.outcome is Outcome.FAILED and fail_fast:
                        cancel_event.set()
            except KeyboardInterrupt:
                interrupted = True
                cancel_event.set()

    if not state.done:
        stuck = [n for n, r in state.records.items() if not r.outcome.is_terminal]
        raise RuntimeError(f"Run stopped with non-terminal jobs: {stuck}")

    return RunResult(
        facts=facts,
        records=state.records,
        results=state.results(),
        status=state.status,
        interrupted=interrupted,
    )
