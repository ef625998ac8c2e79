from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, QUEUE_NAME, LEASE_SECONDS

# Queue of job ids whose gate evaluated true. The database stays the source
# of truth: a dequeued id is only leased if its job is still running.
r = redis.from_url(REDIS_URL, decode_responses=True)

def lease_lock_key(job_id: str) -> str:
    return f"gateci:lease_lock:{job_id}"

async def enqueue_jobs(job_ids: list[str]) -> None:
    if job_ids:
        await r.rpush(QUEUE_NAME, *job_ids)  # FIFO: push right

async def dequeue_job(timeout_s: int) -> str | None:
    item = await r.blpop(QUEUE_NAME, timeout=timeout_s)  # FIFO: pop left
    if not item:
        return None
    _q, job_id = item
    return job_id

async def requeue_job(job_id: str) -> None:
    await r.lpush(QUEUE_NAME, job_id)

async def lock_lease(job_id: str, agent_id: str) -> bool:
    """Short-lived claim guard so two agents never race for one job id."""
    return bool(await r.set(lease_lock_key(job_id), agent_id, nx=True, ex=LEASE_SECONDS))

async def unlock_lease(job_id: str) -> None:
    await r.delete(lease_lock_key(job_id))
