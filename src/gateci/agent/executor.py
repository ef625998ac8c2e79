# agent/executor.py
from __future__ import annotations

import io
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict

from gateci.facts import FactSet
from gateci.gates import NeedView
from gateci.evaluator import output_env_name
from gateci.model import Job, Outcome, Step
from gateci.runner import Launch, ShellExecutor

from .models import ExecutionResult, Lease


class LogCapture:
    """
    Context manager that captures stdout/stderr for later submission to API.

    Logs are captured in a buffer and sent at job completion via complete_lease().
    """

    def __init__(self):
        self.log_buffer = io.StringIO()
        self.original_stdout = sys.stdout
        self.original_stderr = sys.stderr

    def __enter__(self):
        sys.stdout = self
        sys.stderr = self
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        sys.stdout = self.original_stdout
        sys.stderr = self.original_stderr

    def write(self, text: str) -> int:
        self.log_buffer.write(text)
        return len(text)

    def flush(self) -> None:
        """No-op, logs are sent at completion."""

    def get_logs(self) -> str:
        return self.log_buffer.getvalue()


def _checkout(repo_path: Path, ref: str) -> None:
    result = subprocess.run(
        ["git", "checkout", ref],
        cwd=repo_path,
        check=False,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise RuntimeError(f"git checkout {ref} failed: {result.stderr}")


def _clone_or_update_repo(repo_url: str, ref: str, work_dir: Path) -> Path:
    """
    Clone or update a repository at the specified ref.

    Returns:
        Path to the checked out repository

    Raises:
        RuntimeError: If git operations fail
    """
    work_dir.mkdir(parents=True, exist_ok=True)

    repo_name = repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    repo_path = work_dir / repo_name

    try:
        if repo_path.exists():
            result = subprocess.run(
                ["git", "fetch", "origin"],
                cwd=repo_path,
                check=False,
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise RuntimeError(f"git fetch failed: {result.stderr}")
        else:
            result = subprocess.run(
                ["git", "clone", repo_url, str(repo_path)],
                check=False,
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise RuntimeError(f"git clone failed: {result.stderr}")
        _checkout(repo_path, ref)
    except subprocess.SubprocessError as e:
        raise RuntimeError(f"Git operation failed: {e}") from e
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.")

    return repo_path


def job_to_dict(job: Job) -> dict:
    """
    Convert a Job model to a dictionary for API submission.
    This is the reverse of dict_to_job().
    """
    steps = []
    for step in job.steps:
        step_dict = {
            "name": step.name,
            "run": step.run,
        }
        if step.cwd is not None:
            step_dict["cwd"] = step.cwd
        if step.if_ is not None:
            step_dict["if"] = step.if_
        if step.timeout is not None:
            step_dict["timeout"] = step.timeout
        steps.append(step_dict)

    job_dict = {
        "name": job.name,
        "steps": steps,
        "needs": list(job.needs),
        "outputs": list(job.outputs),
        "env": dict(job.env),
    }
    if job.if_:
        job_dict["if"] = job.if_
    return job_dict


def dict_to_job(job_dict: dict) -> Job:
    """Convert a job dictionary from the API to a Job model."""
    steps = [
        Step(
            name=s["name"],
            run=s.get("run", ""),
            cwd=s.get("cwd"),
            if_=s.get("if"),
            timeout=s.get("timeout"),
        )
        for s in job_dict.get("steps", [])
    ]
    return Job(
        name=job_dict["name"],
        steps=steps,
        needs=list(job_dict.get("needs", [])),
        if_=job_dict.get("if"),
        outputs=list(job_dict.get("outputs", [])),
        env=dict(job_dict.get("env", {})),
    )


def launch_from_lease(lease: Lease, run_cancelled: threading.Event | None = None) -> Launch:
    """
    Rebuild what the control plane decided at launch time: the job, the
    run's facts (parsed from their text form) and the predecessors' state.
    """
    run_cancelled = run_cancelled or threading.Event()
    if lease.run_cancelled:
        run_cancelled.set()
    job = dict_to_job(lease.job)
    facts = FactSet.from_text(lease.facts_text)

    needs: Dict[str, NeedView] = {}
    for name, info in lease.needs.items():
        needs[name] = NeedView(
            outcome=Outcome(info.get("outcome", "succeeded")),
            outputs=dict(info.get("outputs") or {}),
        )

    env = facts.to_env()
    for name, view in needs.items():
        for key, value in view.outputs.items():
            env[output_env_name(name, key)] = value

    return Launch(job=job, facts=facts, needs=needs, env=env, run_cancelled=run_cancelled)


def execute_lease(
    lease: Lease,
    work_dir: Path,
    cancel_event: threading.Event | None = None,
    run_cancelled: threading.Event | None = None,
) -> ExecutionResult:
    """
    Execute a job lease.

    Args:
        lease: Lease object with job details
        work_dir: Directory for repository checkouts
        cancel_event: set to stop the running step
        run_cancelled: set once the run is cancelled (read by step gates)

    Returns:
        ExecutionResult with outcome, outputs and logs
    """
    cancel_event = cancel_event or threading.Event()
    log_capture = LogCapture()

    try:
        with log_capture:
            repo_path = _clone_or_update_repo(lease.repo_url, lease.ref, work_dir)
            launch = launch_from_lease(lease, run_cancelled)
            executor = ShellExecutor(repo_root=repo_path, work_dir=work_dir.resolve() / "state")
            result = executor(launch, cancel_event)
            if result.reason:
                print(f"Error: {result.reason}", file=sys.stderr)
    except Exception as e:
        logs = log_capture.get_logs()
        error_msg = f"{type(e).__name__}: {e}"
        if error_msg not in logs:
            logs = f"{logs}\nError: {error_msg}" if logs else error_msg
        return ExecutionResult(outcome=Outcome.FAILED.value, logs=logs, reason=error_msg)

    return ExecutionResult(
        outcome=result.outcome.value,
        logs=log_capture.get_logs(),
        outputs=dict(result.outputs),
        reason=result.reason,
    )

