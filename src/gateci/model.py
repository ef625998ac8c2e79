# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict


class Outcome(str, Enum):
    """Lifecycle of a job inside one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_OUTCOMES


TERMINAL_OUTCOMES = frozenset(
    {Outcome.SUCCEEDED, Outcome.FAILED, Outcome.SKIPPED, Outcome.CANCELLED}
)


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    # gate expression evaluated right before the step runs
    if_: str | None = None
    timeout: float | None = None


@dataclass
class Job:
    """
    A CI job: steps + predecessors + the gate that decides whether it runs.

    `if_` is a gate expression (see gateci.gates). When empty the job runs
    only if every job in `needs` succeeded.
    `outputs` lists the names the job promises to write to $GATECI_OUTPUT;
    a promised output that ends up missing or empty fails the job.
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    if_: str | None = None
    outputs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class JobResult:
    """What an executor hands back for one job."""
    outcome: Outcome
    outputs: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None


@dataclass
class JobRecord:
    """Run-side bookkeeping for a single job."""
    outcome: Outcome = Outcome.PENDING
    reason: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)

