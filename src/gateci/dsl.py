# src/gateci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .gates import parse_gate
from .model import Step, Job


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    if_: str | None = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    parse_gate(if_)  # fail at definition time on a bad expression
    return Step(name=name, run=cmd, cwd=cwd, if_=if_, timeout=timeout)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    outputs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    parse_gate(if_)

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        if_=if_,
        outputs=list(outputs or []),
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._if: str | None = None
        self._outputs: list[str] = []

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def when(self, expr: str):
        parse_gate(expr)
        self._if = expr
        return self

    def define_step(
        self,
        name: str,
        run: str,
        cwd: str | None = None,
        if_: str | None = None,
        timeout: float | None = None,
    ):
        self._steps.append(sh(name, run, cwd=cwd, if_=if_, timeout=timeout))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, *names: str):
        self._outputs.extend(names)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            if_=self._if,
            outputs=list(self._outputs),
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander. Expanded jobs are independent of each other,
    so one failing value never stops the others.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        out = [builder(v) for v in self.values]
        names = [j.name for j in out]
        if len(set(names)) != len(names):
            raise ValueError(
                f"matrix({self.key!r}) builder produced duplicate job names: {names}"
            )
        return out

    def names(self, builder: Callable[[Any], str]) -> List[str]:
        """Job names for use in `needs=`."""
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*items: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from gateci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                matrix("py", ["3.9"]).jobs(lambda v: job(...)),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    jobs: List[Job] = []
    for item in items:
        if isinstance(item, list):
            jobs.extend(item)
        else:
            jobs.append(item)
    return jobs

