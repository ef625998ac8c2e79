# evaluator.py
"""
Run state machine: decides, for every job, when it may be considered and
whether it runs, is skipped, or is cancelled.

The state is plain data (facts + one JobRecord per job) so the same logic
serves the local threaded runner and the cloud control plane, which rebuilds
a RunState from its database on every event.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from .dag import ancestors, build_dag, topo_levels
from .facts import FactSet
from .gates import Gate, GateContext, GateError, NeedView, parse_gate
from .model import Job, JobRecord, Outcome, RunStatus


@dataclass(frozen=True)
class Decision:
    job: str
    outcome: Outcome  # RUNNING, SKIPPED, FAILED or CANCELLED
    reason: Optional[str] = None


def output_env_name(job: str, output: str) -> str:
    raw = f"GATECI_NEEDS_{job}_{output}"
    return re.sub(r"[^A-Za-z0-9]", "_", raw).upper()


class RunState:
    def __init__(
        self,
        jobs: List[Job],
        facts: FactSet,
        *,
        records: Optional[Mapping[str, JobRecord]] = None,
        cancelled: bool = False,
    ):
        if not isinstance(facts, FactSet):
            raise TypeError("facts must be a FactSet")

        adj, indeg = build_dag(jobs)
        self.levels: List[List[str]] = topo_levels(adj, indeg)
        self.facts = facts
        self.jobs: Dict[str, Job] = {j.name: j for j in jobs}
        self.cancelled = cancelled

        self._order = [name for level in self.levels for name in level]
        self._parents = {j.name: list(j.needs) for j in jobs}
        self._ancestors = {name: ancestors(name, self._parents) for name in self.jobs}
        self._gates: Dict[str, Gate] = {j.name: parse_gate(j.if_) for j in jobs}

        self.records: Dict[str, JobRecord] = {name: JobRecord() for name in self.jobs}
        for name, rec in (records or {}).items():
            if name not in self.records:
                raise ValueError(f"Record for unknown job '{name}'")
            self.records[name] = rec

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def outcome(self, name: str) -> Outcome:
        return self.records[name].outcome

    def needs_terminal(self, name: str) -> bool:
        return all(self.records[p].outcome.is_terminal for p in self._parents[name])

    def context_for(self, name: str) -> GateContext:
        parents = self._parents[name]
        return GateContext(
            facts=self.facts,
            needs={
                p: NeedView(self.records[p].outcome, dict(self.records[p].outputs))
                for p in parents
            },
            success=all(self.records[p].outcome is Outcome.SUCCEEDED for p in parents),
            failure=any(self.records[a].outcome is Outcome.FAILED for a in self._ancestors[name]),
            cancelled=self.cancelled,
        )

    def need_outputs(self, name: str) -> Dict[str, Dict[str, str]]:
        """Outputs visible to `name`: those of its declared predecessors only."""
        return {p: dict(self.records[p].outputs) for p in self._parents[name]}

    def launch_env(self, name: str) -> Dict[str, str]:
        """Read-only environment a job is started with."""
        env = self.facts.to_env()
        for need, outputs in self.need_outputs(name).items():
            for key, value in outputs.items():
                env[output_env_name(need, key)] = value
        return env

    @property
    def done(self) -> bool:
        return all(r.outcome.is_terminal for r in self.records.values())

    @property
    def status(self) -> RunStatus:
        if not self.done:
            return RunStatus.RUNNING
        bad = (Outcome.FAILED, Outcome.CANCELLED)
        if any(r.outcome in bad for r in self.records.values()):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def results(self) -> Dict[str, str]:
        return {name: self.records[name].outcome.value for name in self._order}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _decide(self, name: str) -> Decision:
        gate = self._gates[name]
        if self.cancelled and not gate.opts_out_of_cancellation:
            return Decision(name, Outcome.CANCELLED, "run cancelled")
        try:
            ok = gate.evaluate(self.context_for(name))
        except GateError as e:
            return Decision(name, Outcome.FAILED, f"gate error: {e}")
        if ok:
            return Decision(name, Outcome.RUNNING)
        return Decision(name, Outcome.SKIPPED, f"gate is false: {gate.text or 'success()'}")

    def _still_wanted(self, name: str) -> bool:
        try:
            return self._gates[name].evaluate(self.context_for(name))
        except GateError:
            return False

    def advance(self) -> List[Decision]:
        """
        Evaluate every pending job whose predecessors are all terminal.

        Jobs that should run are marked RUNNING and returned with that
        outcome; the caller launches them. Skips cascade within one call.
        """
        decisions: List[Decision] = []
        changed = True
        while changed:
            changed = False
            for name in self._order:
                rec = self.records[name]
                if rec.outcome is not Outcome.PENDING or not self.needs_terminal(name):
                    continue
                d = self._decide(name)
                rec.outcome = d.outcome
                rec.reason = d.reason
                decisions.append(d)
                if d.outcome.is_terminal:
                    changed = True
        return decisions

    def complete(
        self,
        name: str,
        outcome: Outcome,
        outputs: Optional[Mapping[str, str]] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record a running job's terminal outcome.

        Returns False (and changes nothing) when the job already reached a
        terminal outcome, e.g. it was cancelled while its executor was busy.
        """
        outcome = Outcome(outcome)
        if not outcome.is_terminal:
            raise ValueError(f"Outcome for '{name}' must be terminal, got {outcome.value}")
        rec = self.records[name]
        if rec.outcome.is_terminal:
            return False
        if rec.outcome is not Outcome.RUNNING:
            raise ValueError(f"Job '{name}' was never started (state {rec.outcome.value})")
        rec.outcome = outcome
        rec.reason = reason
        rec.outputs = dict(outputs or {})
        return True

    def cancel(self) -> List[str]:
        """
        Raise run cancellation. Every non-terminal job whose gate does not
        opt out (always()/cancelled()) becomes CANCELLED. A running job that
        opts out keeps running only while its gate still holds with the run
        cancelled, so `always() && !cancelled()` stops it. Pending opted-out
        jobs are left to advance(). Returns the names of jobs that were
        RUNNING and must be stopped by their executor.
        """
        self.cancelled = True
        stop: List[str] = []
        for name in self._order:
            rec = self.records[name]
            if rec.outcome.is_terminal:
                continue
            if self._gates[name].opts_out_of_cancellation:
                if rec.outcome is not Outcome.RUNNING or self._still_wanted(name):
                    continue
            if rec.outcome is Outcome.RUNNING:
                stop.append(name)
            rec.outcome = Outcome.CANCELLED
            rec.reason = "run cancelled"
        return stop
