from .dsl import job, sh, matrix, wf, JobBuilder, build
from .evaluator import RunState
from .facts import FactError, FactSet, Trigger, compute_facts
from .gates import GateError, parse_gate
from .model import Job, Outcome, RunStatus, Step
from .runner import load_workflow, run_dag

__all__ = [
    "job", "sh", "matrix", "wf", "JobBuilder", "build",
    "RunState", "FactError", "FactSet", "Trigger", "compute_facts",
    "GateError", "parse_gate", "Job", "Outcome", "RunStatus", "Step",
    "load_workflow", "run_dag",
]
