# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Optional
from urllib.parse import urljoin

from .models import Lease

COMPLETION_OUTCOMES = ("succeeded", "failed", "cancelled")


class APIError(Exception):
    """Raised when API requests fail."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class APIClient:
    """HTTP client for communicating with the GateCI API."""

    def __init__(self, base_url: str, agent_id: str = ""):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "https://api.example.com")
            agent_id: Unique identifier for this agent instance
        """
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        """
        Make an HTTP request to the API.

        Returns:
            Parsed JSON response as dictionary ({} for an empty body)

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {
            "Content-Type": "application/json",
        }
        if headers:
            req_headers.update(headers)

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req) as response:
                if response.status == 204:
                    return {}
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}", status=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def create_run(self, payload: dict) -> dict:
        """Submit a run: {repo, ref, facts, jobs}."""
        return self._request("POST", "/runs", data=payload)

    def cancel_run(self, run_id: str) -> dict:
        return self._request("POST", f"/runs/{run_id}/cancel", data={})

    def get_run(self, run_id: str) -> dict:
        return self._request("GET", f"/runs/{run_id}")

    def claim_lease(self) -> Optional[Lease]:
        """
        Claim an available job lease from the queue.

        Returns:
            Lease object if a job is available, None otherwise
        """
        response = self._request(
            "POST",
            "/leases/claim",
            data={"agent_id": self.agent_id},
        )
        if not response:
            return None
        try:
            return Lease.from_dict(response)
        except (KeyError, TypeError) as e:
            raise APIError(f"Malformed lease response: {e}")

    def heartbeat(self, job_id: str) -> dict:
        """
        Keep a lease alive while its job runs.

        Returns:
            {"cancel": bool, "run_cancelled": bool, "lease_expires_at": str}
        """
        return self._request(
            "POST",
            f"/leases/{job_id}/heartbeat",
            data={"agent_id": self.agent_id},
        )

    def complete_lease(self, job_id: str, outcome: str, details: dict) -> None:
        """
        Report a job's terminal outcome.

        Args:
            job_id: ID of the job
            outcome: "succeeded", "failed" or "cancelled"
            details: logs, outputs and failure reason
        """
        if outcome not in COMPLETION_OUTCOMES:
            raise ValueError(f"outcome must be one of {COMPLETION_OUTCOMES}, got {outcome!r}")

        self._request(
            "POST",
            f"/leases/{job_id}/complete",
            data={
                "agent_id": self.agent_id,
                "outcome": outcome,
                "details": details,
            },
        )
