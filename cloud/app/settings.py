from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    value = int(os.environ.get(name, str(default)))
    if value < 1:
        raise ValueError(f"{name} must be >= 1, got {value}")
    return value


DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ["REDIS_URL"]
QUEUE_NAME = os.environ.get("QUEUE_NAME", "gateci:queue")
# how long an agent owns a job before another agent may take it
LEASE_SECONDS = _int_env("LEASE_SECONDS", 600)
# how long /leases/claim blocks on an empty queue
CLAIM_WAIT_SECONDS = _int_env("CLAIM_WAIT_SECONDS", 5)
