"""Tests for the agent side of remote execution: job payloads and lease launches."""

import threading
import time

import pytest

from gateci.agent.agent import LeaseWatcher
from gateci.agent.api_client import APIClient
from gateci.agent.executor import dict_to_job, job_to_dict, launch_from_lease
from gateci.agent.models import ExecutionResult, Lease
from gateci.dsl import job, sh
from gateci.model import Outcome
from gateci.runner import ShellExecutor


@pytest.fixture
def release_job():
    return job(
        "release",
        sh("version", 'echo "tag=v$VERSION" >> "$GATECI_OUTPUT"', timeout=30),
        sh("notify", "echo failed", if_="failure()"),
        needs=["deploy"],
        if_="facts.masterPush",
        outputs=["tag"],
        env={"VERSION": "1.0"},
    )


def _lease(job_dict, facts_text, needs=None):
    return Lease.from_dict(
        {
            "job_id": "j-1",
            "run_id": "r-1",
            "job_name": job_dict["name"],
            "payload_json": {
                "repo_url": "https://example.test/org/repo.git",
                "ref": "main",
                "job": job_dict,
                "facts": facts_text,
                "needs": needs or {},
            },
            "lease_expires_at": "2026-01-01T00:00:00+00:00",
        }
    )


class TestJobPayload:
    def test_job_dict_shape(self, release_job):
        d = job_to_dict(release_job)
        assert d["if"] == "facts.masterPush"
        assert d["outputs"] == ["tag"]
        assert d["steps"][0]["timeout"] == 30
        assert d["steps"][1]["if"] == "failure()"
        assert "cwd" not in d["steps"][0]

    def test_dict_to_job_restores_job(self, release_job):
        assert dict_to_job(job_to_dict(release_job)) == release_job

    def test_minimal_dict(self):
        j = dict_to_job({"name": "a", "steps": [{"name": "s", "run": "true"}]})
        assert j.needs == [] and j.if_ is None and j.outputs == []


class TestLease:
    def test_payload_properties(self, release_job, master_push_facts):
        lease = _lease(job_to_dict(release_job), master_push_facts.to_text())
        assert lease.repo_url.endswith("repo.git")
        assert lease.ref == "main"
        assert lease.job["name"] == "release"
        assert lease.facts_text == master_push_facts.to_text()

    def test_launch_from_lease(self, release_job, master_push_facts):
        needs = {"deploy": {"outcome": "succeeded", "outputs": {"url": "https://x"}}}
        launch = launch_from_lease(_lease(job_to_dict(release_job), master_push_facts.to_text(), needs))

        assert launch.job == release_job
        assert launch.facts == master_push_facts
        assert launch.needs["deploy"].outcome is Outcome.SUCCEEDED
        assert launch.env["GATECI_NEEDS_DEPLOY_URL"] == "https://x"
        assert launch.env["MASTER_PUSH"] == "true"

    def test_launch_runs_with_shell_executor(self, release_job, master_push_facts, tmp_path):
        launch = launch_from_lease(_lease(job_to_dict(release_job), master_push_facts.to_text()))
        result = ShellExecutor(repo_root=tmp_path, work_dir=tmp_path / "state")(launch, threading.Event())

        assert result.outcome is Outcome.SUCCEEDED
        assert result.outputs == {"tag": "v1.0"}


def test_execution_result_dict():
    result = ExecutionResult(outcome="failed", logs="boom", reason="exit 1")
    assert result.to_dict() == {"logs": "boom", "outputs": {}, "reason": "exit 1"}


def test_complete_lease_rejects_non_terminal_outcome():
    with pytest.raises(ValueError):
        APIClient("http://localhost:1", "agent").complete_lease("j-1", "running", {})


class FakeAPIClient:
    """Answers heartbeats from a script; the last answer repeats."""

    def __init__(self, *beats):
        self.beats = list(beats)
        self.calls = []

    def heartbeat(self, job_id):
        self.calls.append(job_id)
        if len(self.beats) > 1:
            return self.beats.pop(0)
        return self.beats[0]


class TestRemoteCancellation:
    def test_cancelled_job_is_stopped(self, master_push_facts, tmp_path):
        lease = _lease(job_to_dict(job("deploy", sh("publish", "sleep 10"))), master_push_facts.to_text())
        api = FakeAPIClient({"cancel": False}, {"cancel": True, "run_cancelled": True})
        cancel_event, run_cancelled = threading.Event(), threading.Event()
        watcher = LeaseWatcher(api, lease.job_id, cancel_event, run_cancelled, interval=0.1)

        watcher.start()
        start = time.monotonic()
        try:
            result = ShellExecutor(repo_root=tmp_path, work_dir=tmp_path / "state")(
                launch_from_lease(lease, run_cancelled), cancel_event
            )
        finally:
            watcher.stop()

        assert time.monotonic() - start < 8
        assert result.outcome is Outcome.CANCELLED
        assert run_cancelled.is_set()
        assert api.calls[0] == "j-1"

    def test_job_keeps_running_without_cancel(self):
        api = FakeAPIClient({"cancel": False, "run_cancelled": False})
        cancel_event, run_cancelled = threading.Event(), threading.Event()
        watcher = LeaseWatcher(api, "j-1", cancel_event, run_cancelled, interval=0.05)

        watcher.start()
        time.sleep(0.3)
        watcher.stop()

        assert len(api.calls) >= 2
        assert not cancel_event.is_set()
        assert not run_cancelled.is_set()

    def test_lease_of_cancelled_run(self, master_push_facts, tmp_path):
        cleanup = job(
            "cleanup",
            sh("notify", "touch notify_marker", if_="cancelled()"),
            sh("plain", "touch plain_marker"),
            if_="always()",
        )
        lease = _lease(job_to_dict(cleanup), master_push_facts.to_text())
        lease.payload_json["run_cancelled"] = True

        launch = launch_from_lease(lease)
        result = ShellExecutor(repo_root=tmp_path, work_dir=tmp_path / "state")(launch, threading.Event())

        assert launch.run_cancelled.is_set()
        assert result.outcome is Outcome.SUCCEEDED
        assert (tmp_path / "notify_marker").exists()
        assert not (tmp_path / "plain_marker").exists()
