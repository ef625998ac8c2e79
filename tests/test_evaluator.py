"""Tests for the run state machine: gating, pass-through skips, cancellation and run status."""

import pytest

from gateci.dsl import job, sh
from gateci.evaluator import RunState, output_env_name
from gateci.facts import FactSet, Trigger, compute_facts
from gateci.model import JobRecord, Outcome, RunStatus

DEPLOY_GATE = "always() && !cancelled() && !failure() && facts.masterPush"


def _job(name, needs=None, if_=None, outputs=None):
    return job(name, sh("noop", "true"), needs=needs, if_=if_, outputs=outputs)


@pytest.fixture
def release_jobs():
    """tests -> docs -> deploy -> release, the shape of a typical release pipeline."""
    return [
        _job("tests"),
        _job("docs", ["tests"], if_="facts.publishDocs"),
        _job("deploy", ["tests", "docs"], if_=DEPLOY_GATE),
        _job("release", ["deploy"], if_="facts.masterPush", outputs=["tag"]),
    ]


def _running(decisions):
    return [d.job for d in decisions if d.outcome is Outcome.RUNNING]


class TestAdvance:
    def test_roots_start_and_dependents_wait(self, release_jobs, master_push_facts):
        state = RunState(release_jobs, master_push_facts)
        assert _running(state.advance()) == ["tests"]
        assert state.outcome("docs") is Outcome.PENDING
        # nothing new until tests completes
        assert state.advance() == []
        assert state.status is RunStatus.RUNNING

    def test_master_push_runs_everything(self, release_jobs, master_push_facts):
        state = RunState(release_jobs, master_push_facts)
        state.advance()
        for name in ["tests", "docs", "deploy", "release"]:
            state.complete(name, Outcome.SUCCEEDED, {"tag": "v1"} if name == "release" else {})
            state.advance()
        assert state.results() == {
            "tests": "succeeded",
            "docs": "succeeded",
            "deploy": "succeeded",
            "release": "succeeded",
        }
        assert state.status is RunStatus.SUCCEEDED

    def test_skipped_docs_is_pass_through_for_deploy(self, release_jobs):
        facts = FactSet({"masterPush": True, "isPrTargetingMaster": False, "publishDocs": False})
        state = RunState(release_jobs, facts)
        state.advance()
        state.complete("tests", Outcome.SUCCEEDED)
        decisions = state.advance()

        assert state.outcome("docs") is Outcome.SKIPPED
        assert state.records["docs"].reason == "gate is false: facts.publishDocs"
        assert _running(decisions) == ["deploy"]

    def test_pull_request_skips_deploy_and_release(self, release_jobs, pr_facts):
        state = RunState(release_jobs, pr_facts)
        state.advance()
        state.complete("tests", Outcome.SUCCEEDED)
        state.advance()
        state.complete("docs", Outcome.SUCCEEDED)
        state.advance()

        assert state.outcome("deploy") is Outcome.SKIPPED
        # release's implicit success() sees deploy skipped
        assert state.outcome("release") is Outcome.SKIPPED
        assert state.status is RunStatus.SUCCEEDED

    def test_failed_tests_cascade(self, release_jobs, master_push_facts):
        state = RunState(release_jobs, master_push_facts)
        state.advance()
        state.complete("tests", Outcome.FAILED, reason="exit 1")
        decisions = state.advance()

        assert [d.job for d in decisions] == ["docs", "deploy", "release"]
        assert all(d.outcome is Outcome.SKIPPED for d in decisions)
        assert state.status is RunStatus.FAILED

    def test_failure_is_seen_through_skipped_jobs(self, master_push_facts):
        jobs = [
            _job("build"),
            _job("package", ["build"]),
            _job("notify", ["package"], if_="failure()"),
        ]
        state = RunState(jobs, master_push_facts)
        state.advance()
        state.complete("build", Outcome.FAILED)
        state.advance()

        assert state.outcome("package") is Outcome.SKIPPED
        assert state.outcome("notify") is Outcome.RUNNING

    def test_success_is_false_when_a_need_was_skipped(self, pr_facts):
        jobs = [
            _job("maybe", if_="facts.masterPush"),
            _job("strict", ["maybe"]),
            _job("lenient", ["maybe"], if_="!failure()"),
        ]
        state = RunState(jobs, pr_facts)
        decisions = state.advance()

        assert state.outcome("maybe") is Outcome.SKIPPED
        assert state.outcome("strict") is Outcome.SKIPPED
        assert _running(decisions) == ["lenient"]

    def test_gate_error_fails_the_job(self, master_push_facts):
        jobs = [_job("a", if_="facts.typo"), _job("b", ["a"])]
        state = RunState(jobs, master_push_facts)
        state.advance()

        assert state.outcome("a") is Outcome.FAILED
        assert state.records["a"].reason.startswith("gate error: Unknown fact 'typo'")
        assert state.outcome("b") is Outcome.SKIPPED
        assert state.status is RunStatus.FAILED

    def test_gate_on_need_output(self, master_push_facts):
        jobs = [
            _job("release", outputs=["tag"]),
            _job("announce", ["release"], if_="needs.release.outputs.tag != ''"),
        ]
        state = RunState(jobs, master_push_facts)
        state.advance()
        state.complete("release", Outcome.SUCCEEDED, {"tag": "v2.0"})
        assert _running(state.advance()) == ["announce"]


class TestComplete:
    def test_requires_terminal_outcome(self, master_push_facts):
        state = RunState([_job("a")], master_push_facts)
        state.advance()
        with pytest.raises(ValueError, match="must be terminal"):
            state.complete("a", Outcome.RUNNING)

    def test_job_never_started(self, master_push_facts):
        state = RunState([_job("a"), _job("b", ["a"])], master_push_facts)
        state.advance()
        with pytest.raises(ValueError, match="never started"):
            state.complete("b", Outcome.SUCCEEDED)

    def test_second_completion_is_ignored(self, master_push_facts):
        state = RunState([_job("a")], master_push_facts)
        state.advance()
        assert state.complete("a", Outcome.FAILED) is True
        assert state.complete("a", Outcome.SUCCEEDED) is False
        assert state.outcome("a") is Outcome.FAILED


class TestCancel:
    def test_cancel_stops_running_and_pending(self, master_push_facts):
        jobs = [
            _job("build"),
            _job("test", ["build"]),
            _job("cleanup", ["test"], if_="always()"),
            _job("report", ["test"], if_="cancelled()"),
        ]
        state = RunState(jobs, master_push_facts)
        state.advance()

        assert state.cancel() == ["build"]
        assert state.outcome("build") is Outcome.CANCELLED
        assert state.outcome("test") is Outcome.CANCELLED
        assert state.outcome("cleanup") is Outcome.PENDING

        # executor reports late; the record stays cancelled
        assert state.complete("build", Outcome.SUCCEEDED) is False

        assert sorted(_running(state.advance())) == ["cleanup", "report"]
        state.complete("cleanup", Outcome.SUCCEEDED)
        state.complete("report", Outcome.SUCCEEDED)
        assert state.status is RunStatus.FAILED

    def test_pending_job_decided_after_cancel(self, master_push_facts):
        state = RunState([_job("a"), _job("b", ["a"])], master_push_facts)
        state.advance()
        state.complete("a", Outcome.SUCCEEDED)
        state.cancelled = True
        decisions = state.advance()
        assert decisions[0].outcome is Outcome.CANCELLED

    def test_deploy_gate_opts_out_but_evaluates_false(self, release_jobs, master_push_facts):
        state = RunState(release_jobs, master_push_facts)
        state.advance()
        state.cancel()
        state.advance()
        assert state.outcome("deploy") is Outcome.SKIPPED
        assert state.outcome("release") is Outcome.CANCELLED

    def test_running_deploy_is_stopped(self, release_jobs, master_push_facts):
        state = RunState(release_jobs, master_push_facts)
        state.advance()
        state.complete("tests", Outcome.SUCCEEDED)
        state.advance()
        state.complete("docs", Outcome.SUCCEEDED)
        assert _running(state.advance()) == ["deploy"]

        assert state.cancel() == ["deploy"]
        assert state.outcome("deploy") is Outcome.CANCELLED
        assert state.outcome("release") is Outcome.CANCELLED
        assert state.complete("deploy", Outcome.SUCCEEDED) is False
        assert state.status is RunStatus.FAILED

    def test_running_always_job_keeps_running(self, master_push_facts):
        state = RunState([_job("a"), _job("cleanup", if_="always()")], master_push_facts)
        state.advance()

        assert state.cancel() == ["a"]
        assert state.outcome("cleanup") is Outcome.RUNNING
        assert state.complete("cleanup", Outcome.SUCCEEDED) is True


class TestOutputs:
    def test_env_name(self):
        assert output_env_name("release", "tag") == "GATECI_NEEDS_RELEASE_TAG"
        assert output_env_name("tests-py3.11", "cov") == "GATECI_NEEDS_TESTS_PY3_11_COV"

    def test_outputs_scoped_to_direct_needs(self, master_push_facts):
        jobs = [_job("a"), _job("b", ["a"]), _job("c", ["b"])]
        state = RunState(jobs, master_push_facts)
        state.advance()
        state.complete("a", Outcome.SUCCEEDED, {"x": "1"})
        state.advance()
        state.complete("b", Outcome.SUCCEEDED, {"y": "2"})
        state.advance()

        assert state.need_outputs("c") == {"b": {"y": "2"}}
        env = state.launch_env("c")
        assert env["GATECI_NEEDS_B_Y"] == "2"
        assert "GATECI_NEEDS_A_X" not in env
        assert env["MASTER_PUSH"] == "true"


class TestRestore:
    def test_records_resume_a_run(self, release_jobs, master_push_facts):
        records = {"tests": JobRecord(Outcome.SUCCEEDED)}
        state = RunState(release_jobs, master_push_facts, records=records)
        assert _running(state.advance()) == ["docs"]

    def test_unknown_record(self, release_jobs, master_push_facts):
        with pytest.raises(ValueError, match="unknown job"):
            RunState(release_jobs, master_push_facts, records={"nope": JobRecord()})

    def test_facts_must_be_a_fact_set(self, release_jobs):
        with pytest.raises(TypeError):
            RunState(release_jobs, {"masterPush": True})


class TestTriggerScenarios:
    @pytest.fixture
    def jobs(self):
        return [
            _job("on_master", if_="facts.masterPush == 'true'"),
            _job("on_pr", if_="facts.isPrTargetingMaster == 'true'"),
        ]

    def test_push_to_master(self, jobs):
        facts = compute_facts(Trigger.create("push", "refs/heads/master"))
        state = RunState(jobs, facts)
        state.advance()
        assert state.outcome("on_master") is Outcome.RUNNING
        assert state.outcome("on_pr") is Outcome.SKIPPED

    def test_pull_request_to_master(self, jobs):
        facts = compute_facts(Trigger.create("pull_request", "refs/pull/9/merge", "master"))
        state = RunState(jobs, facts)
        state.advance()
        assert state.outcome("on_master") is Outcome.SKIPPED
        assert state.outcome("on_pr") is Outcome.RUNNING

    def test_failed_tests(self, master_push_facts):
        jobs = [
            _job("tests"),
            _job("needs_green", ["tests"], if_="needs.tests.result == 'succeeded'"),
            _job("not_cancelled", ["tests"], if_="!cancelled()"),
        ]
        state = RunState(jobs, master_push_facts)
        state.advance()
        state.complete("tests", Outcome.FAILED)
        state.advance()

        assert state.outcome("needs_green") is Outcome.SKIPPED
        assert state.outcome("not_cancelled") is Outcome.RUNNING
