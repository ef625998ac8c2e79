"""Tests for the workflow definition helpers."""

import pytest

from gateci.dsl import build, job, matrix, sh, wf
from gateci.gates import GateSyntaxError


class TestSh:
    def test_step_fields(self):
        step = sh("Run tests", "pytest -q", cwd="pkg", if_="success()", timeout=60)
        assert (step.name, step.run, step.cwd, step.if_, step.timeout) == (
            "Run tests", "pytest -q", "pkg", "success()", 60,
        )

    def test_bad_gate_rejected_at_definition(self):
        with pytest.raises(GateSyntaxError):
            sh("x", "true", if_="failure(")


class TestJob:
    def test_positional_and_list_steps(self):
        j = job("a", sh("two", "true"), steps_list=[sh("one", "true")])
        assert [s.name for s in j.steps] == ["one", "two"]

    def test_default_cwd_fills_missing_only(self):
        j = job("a", sh("x", "true"), sh("y", "true", cwd="other"), cwd="pkg")
        assert [s.cwd for s in j.steps] == ["pkg", "other"]

    def test_requires_steps(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_env_values_become_strings(self):
        assert job("a", sh("x", "true"), env={"N": 3}).env == {"N": "3"}

    def test_gate_and_outputs(self):
        j = job("release", sh("x", "true"), needs=["deploy"], if_="facts.masterPush", outputs=["tag"])
        assert j.needs == ["deploy"]
        assert j.if_ == "facts.masterPush"
        assert j.outputs == ["tag"]

    def test_bad_job_gate(self):
        with pytest.raises(GateSyntaxError):
            job("a", sh("x", "true"), if_="facts.a &&")


class TestBuilder:
    def test_build(self):
        j = (
            build("deploy")
            .depends_on("tests", "docs")
            .when("always() && !failure()")
            .define_step("publish", "echo publish", timeout=30)
            .with_env(TARGET="prod")
            .with_outputs("url")
            .build()
        )
        assert j.needs == ["tests", "docs"]
        assert j.if_ == "always() && !failure()"
        assert j.steps[0].timeout == 30
        assert j.env == {"TARGET": "prod"}
        assert j.outputs == ["url"]

    def test_build_without_steps(self):
        with pytest.raises(ValueError, match="no steps"):
            build("x").build()


class TestMatrix:
    def test_jobs_and_names(self):
        m = matrix("py", ["3.11", "3.12"])
        jobs = m.jobs(lambda v: job(f"tests-py{v}", sh("t", f"echo {v}")))
        assert [j.name for j in jobs] == ["tests-py3.11", "tests-py3.12"]
        assert m.names(lambda v: f"tests-py{v}") == ["tests-py3.11", "tests-py3.12"]

    def test_duplicate_names(self):
        with pytest.raises(ValueError, match="duplicate job names"):
            matrix("py", ["3.11", "3.12"]).jobs(lambda v: job("tests", sh("t", "true")))


def test_wf_flattens_lists():
    a = job("a", sh("x", "true"))
    bs = matrix("n", [1, 2]).jobs(lambda v: job(f"b{v}", sh("x", "true")))
    assert [j.name for j in wf(a, bs)] == ["a", "b1", "b2"]
