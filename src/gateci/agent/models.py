# agent/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Dict, Any


@dataclass
class Lease:
    """Represents a job lease from the API (ClaimedJob response)."""
    job_id: str
    run_id: str
    job_name: str
    payload_json: Dict[str, Any]  # job definition, repo info, facts, predecessor state
    lease_expires_at: str  # ISO format timestamp

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Lease:
        """Create Lease from API ClaimedJob response dictionary."""
        return cls(
            job_id=data["job_id"],
            run_id=data["run_id"],
            job_name=data["job_name"],
            payload_json=data["payload_json"],
            lease_expires_at=data["lease_expires_at"],
        )

    @property
    def repo_url(self) -> str:
        return self.payload_json.get("repo_url", "")

    @property
    def ref(self) -> str:
        return self.payload_json.get("ref", "HEAD")

    @property
    def job(self) -> Dict[str, Any]:
        return self.payload_json.get("job", self.payload_json)

    @property
    def facts_text(self) -> str:
        """Run facts in name=value form, exactly as computed at run start."""
        return self.payload_json.get("facts", "")

    @property
    def needs(self) -> Dict[str, Dict[str, Any]]:
        """{predecessor: {"outcome": ..., "outputs": {...}}}"""
        return self.payload_json.get("needs", {})

    @property
    def run_cancelled(self) -> bool:
        return bool(self.payload_json.get("run_cancelled", False))


@dataclass
class ExecutionResult:
    """Result of executing a job lease."""
    outcome: str  # succeeded | failed | cancelled
    logs: str
    outputs: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API submission."""
        return {
            "logs": self.logs,
            "outputs": self.outputs,
            "reason": self.reason,
        }
