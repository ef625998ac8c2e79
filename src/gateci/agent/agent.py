# agent/agent.py
from __future__ import annotations

import signal
import threading
import time
from pathlib import Path

from .api_client import APIClient, APIError
from .executor import execute_lease
from .models import Lease
from gateci.ui.console import get_console

HEARTBEAT_SECONDS = 10


class LeaseWatcher(threading.Thread):
    """
    Heartbeats a lease while its job runs.

    Sets `cancel_event` when the control plane has cancelled the job, and
    `run_cancelled` when the run was cancelled (the job itself may keep
    running if its gate opts out).
    """

    def __init__(
        self,
        api_client: APIClient,
        job_id: str,
        cancel_event: threading.Event,
        run_cancelled: threading.Event,
        interval: float = HEARTBEAT_SECONDS,
    ):
        super().__init__(name=f"lease-{job_id}", daemon=True)
        self.api_client = api_client
        self.job_id = job_id
        self.cancel_event = cancel_event
        self.run_cancelled = run_cancelled
        self.interval = interval
        self._finished = threading.Event()

    def run(self) -> None:
        while not self._finished.wait(self.interval):
            try:
                beat = self.api_client.heartbeat(self.job_id)
            except APIError as e:
                get_console().print_debug(f"Heartbeat for {self.job_id} failed: {e}")
                continue
            if beat.get("run_cancelled"):
                self.run_cancelled.set()
            if beat.get("cancel"):
                get_console().print_info(f"Job {self.job_id} was cancelled, stopping it.")
                self.cancel_event.set()
                return

    def stop(self) -> None:
        self._finished.set()
        self.join()


class Agent:
    """GateCI agent that polls for jobs and executes them."""

    def __init__(
        self,
        api_url: str,
        agent_id: str,
        poll_interval: int = 5,
        work_dir: str | Path = ".gateci/agent_work",
    ):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the API
            agent_id: Unique identifier for this agent instance
            poll_interval: Seconds to wait between polls when no jobs available
            work_dir: Where repositories are checked out
        """
        self.api_client = APIClient(api_url, agent_id)
        self.poll_interval = poll_interval
        self.work_dir = Path(work_dir)
        self.running = True
        # set on shutdown so the step in progress is terminated
        self.cancel_event = threading.Event()

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        console = get_console()
        console.print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        self.running = False
        self.cancel_event.set()

    def run(self) -> None:
        """Run the agent loop."""
        console = get_console()
        console.print_agent_started(
            agent_id=self.api_client.agent_id,
            api=self.api_client.base_url,
            poll_interval=self.poll_interval,
        )

        while self.running:
            try:
                lease = self.api_client.claim_lease()

                if lease:
                    console.print_lease_acquired(
                        job_name=lease.job_name,
                        run_id=lease.run_id,
                    )
                    self._execute_lease(lease)
                else:
                    time.sleep(self.poll_interval)

            except APIError as e:
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check API connectivity and retry.",
                )
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")

    def _execute_lease(self, lease: Lease) -> None:
        """Execute a single lease and report its outcome."""
        console = get_console()
        start_time = time.time()

        run_cancelled = threading.Event()
        watcher = LeaseWatcher(self.api_client, lease.job_id, self.cancel_event, run_cancelled)
        watcher.start()
        try:
            result = execute_lease(lease, self.work_dir, self.cancel_event, run_cancelled)
        finally:
            watcher.stop()
        if self.running:
            # a remote cancel only stops this job, not the agent
            self.cancel_event.clear()

        try:
            self.api_client.complete_lease(lease.job_id, result.outcome, result.to_dict())
        except APIError as api_err:
            console.print_error(
                "Failed to send completion",
                f"Could not send completion status to API: {api_err}",
            )

        console.print_execution_complete(
            outcome=result.outcome,
            duration=time.time() - start_time,
        )

        if console.debug and result.logs:
            console.print_info(f"\nLogs for {lease.job_name}:")
            console.print_info("=" * 60)
            console.print_info(result.logs)
            console.print_info("=" * 60)


def run_agent(api_url: str, agent_id: str, poll_interval: int = 5) -> None:
    """
    Run the GateCI agent loop.

    Args:
        api_url: Base URL of the API
        agent_id: Unique identifier for this agent instance
        poll_interval: Seconds to wait between polls when no jobs available
    """
    agent = Agent(api_url, agent_id, poll_interval)
    agent.run()
