from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gateci.agent.executor import dict_to_job
from gateci.evaluator import RunState
from gateci.facts import FactError, FactSet
from gateci.model import JobRecord, Outcome

from .db import SessionLocal, init_models, lock_run
from .models import Run, Job, Lease
from .redisq import enqueue_jobs, dequeue_job, requeue_job, lock_lease, unlock_lease
from .settings import CLAIM_WAIT_SECONDS, LEASE_SECONDS

app = FastAPI(title="GateCI Cloud Control Plane")

# -------------------- Schemas --------------------

class CreateRunJob(BaseModel):
    job_name: str
    payload_json: dict[str, Any] = Field(default_factory=dict)

class CreateRunRequest(BaseModel):
    repo: str
    ref: str
    trigger: str | None = None
    facts: str  # name=value lines, computed once by the submitter
    jobs: list[CreateRunJob]

class CreateRunResponse(BaseModel):
    run_id: str
    job_ids: list[str]

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedJob(BaseModel):
    job_id: str
    run_id: str
    job_name: str
    payload_json: dict[str, Any]
    lease_expires_at: str

class HeartbeatRequest(BaseModel):
    agent_id: str

class HeartbeatResponse(BaseModel):
    cancel: bool  # the job was stopped by run cancellation
    run_cancelled: bool
    lease_expires_at: str

class CompleteRequest(BaseModel):
    agent_id: str
    outcome: str  # succeeded|failed|cancelled
    details: dict[str, Any] = Field(default_factory=dict)

class JobResponse(BaseModel):
    id: str
    job_name: str
    outcome: str
    reason: str | None
    outputs: dict[str, str]
    logs: str | None
    created_at: datetime

class RunResponse(BaseModel):
    id: str
    repo: str
    ref: str
    trigger: str | None
    status: str
    cancelled: bool
    facts: dict[str, bool]
    jobs: dict[str, str]

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    await init_models()

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# -------------------- Run state --------------------

async def _job_rows(s: AsyncSession, run_id) -> dict[str, Job]:
    rows = (await s.execute(sa.select(Job).where(Job.run_id == run_id))).scalars().all()
    return {row.job_name: row for row in rows}

def _state_for(run: Run, rows: dict[str, Job]) -> RunState:
    """Rebuild the run's state machine from its rows."""
    jobs = [dict_to_job(row.payload_json["job"]) for row in rows.values()]
    records = {
        name: JobRecord(Outcome(row.status), row.reason, dict(row.outputs or {}))
        for name, row in rows.items()
    }
    return RunState(jobs, FactSet.from_text(run.facts), records=records, cancelled=run.cancelled)

def _advance(run: Run, rows: dict[str, Job], state: RunState) -> list[str]:
    """
    Evaluate gates, write every job's state back to its row and return the
    ids of jobs that became runnable (to be enqueued after commit).
    """
    launched = [d.job for d in state.advance() if d.outcome is Outcome.RUNNING]
    for name, rec in state.records.items():
        row = rows[name]
        row.status = rec.outcome.value
        row.reason = rec.reason
        row.outputs = dict(rec.outputs)
    run.status = state.status.value
    run.cancelled = state.cancelled
    return [str(rows[name].id) for name in launched]

# -------------------- Endpoints --------------------

@app.post("/runs", response_model=CreateRunResponse)
async def create_run(req: CreateRunRequest):
    try:
        facts = FactSet.from_text(req.facts)
    except FactError as e:
        raise HTTPException(status_code=400, detail=f"Invalid facts: {e}")

    jobs = []
    for j in req.jobs:
        if "job" not in j.payload_json:
            raise HTTPException(status_code=400, detail=f"Job {j.job_name!r} has no job definition")
        jobs.append(dict_to_job(j.payload_json["job"]))
    try:
        RunState(jobs, facts)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid workflow: {e}")

    async with SessionLocal() as s:
        async with s.begin():
            run = Run(repo=req.repo, ref=req.ref, trigger=req.trigger, facts=facts.to_text(), cancelled=False, status="running")
            s.add(run)
            await s.flush()

            rows: dict[str, Job] = {}
            for j in req.jobs:
                row = Job(run_id=run.id, job_name=j.job_name, status=Outcome.PENDING.value, payload_json=j.payload_json, outputs={})
                s.add(row)
                rows[j.job_name] = row
            await s.flush()

            to_enqueue = _advance(run, rows, _state_for(run, rows))
            run_id = str(run.id)
            job_ids = [str(row.id) for row in rows.values()]

    # push to Redis after DB commit
    await enqueue_jobs(to_enqueue)

    return CreateRunResponse(run_id=run_id, job_ids=job_ids)

@app.post("/leases/claim", response_model=ClaimedJob)
async def claim(req: ClaimRequest):
    job_id = await dequeue_job(timeout_s=CLAIM_WAIT_SECONDS)
    if not job_id:
        return Response(status_code=204)

    # Lock in Redis to reduce duplicate leasing during retries
    if not await lock_lease(job_id, req.agent_id):
        return await claim(req)  # try again

    expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)

    async with SessionLocal() as s:
        async with s.begin():
            job = await s.get(Job, uuid.UUID(job_id))
            if not job:
                await unlock_lease(job_id)
                raise HTTPException(status_code=404, detail="Job not found")

            if job.status != Outcome.RUNNING.value:
                # cancelled or already finished while it sat in the queue
                await unlock_lease(job_id)
                return await claim(req)

            lease = await s.get(Lease, uuid.UUID(job_id))
            if lease and lease.expires_at > now_utc():
                await unlock_lease(job_id)
                await requeue_job(job_id)
                return await claim(req)

            if lease:
                lease.agent_id = req.agent_id
                lease.leased_at = now_utc()
                lease.expires_at = expires_at
            else:
                s.add(Lease(job_id=uuid.UUID(job_id), agent_id=req.agent_id, leased_at=now_utc(), expires_at=expires_at))

            run = await s.get(Run, job.run_id)
            rows = await _job_rows(s, job.run_id)
            needs = {
                name: {"outcome": rows[name].status, "outputs": dict(rows[name].outputs or {})}
                for name in job.payload_json["job"].get("needs", [])
            }
            payload = dict(job.payload_json)
            payload["facts"] = run.facts
            payload["needs"] = needs
            payload["run_cancelled"] = run.cancelled

            return ClaimedJob(
                job_id=job_id,
                run_id=str(job.run_id),
                job_name=job.job_name,
                payload_json=payload,
                lease_expires_at=expires_at.isoformat(),
            )

@app.post("/leases/{job_id}/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(job_id: str, req: HeartbeatRequest):
    """Extend a lease and tell its agent whether the job should stop."""
    async with SessionLocal() as s:
        async with s.begin():
            job = await s.get(Job, uuid.UUID(job_id))
            if not job:
                raise HTTPException(status_code=404, detail="Job not found")

            lease = await s.get(Lease, uuid.UUID(job_id))
            if not lease:
                raise HTTPException(status_code=409, detail="No lease for job")
            if lease.agent_id != req.agent_id:
                raise HTTPException(status_code=403, detail="Lease owned by different agent")

            lease.expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)
            run = await s.get(Run, job.run_id)

            return HeartbeatResponse(
                cancel=job.status != Outcome.RUNNING.value,
                run_cancelled=run.cancelled,
                lease_expires_at=lease.expires_at.isoformat(),
            )

@app.post("/leases/{job_id}/complete")
async def complete(job_id: str, req: CompleteRequest):
    try:
        outcome = Outcome(req.outcome)
    except ValueError:
        outcome = None
    if outcome not in (Outcome.SUCCEEDED, Outcome.FAILED, Outcome.CANCELLED):
        raise HTTPException(status_code=400, detail="outcome must be succeeded|failed|cancelled")

    async with SessionLocal() as s:
        async with s.begin():
            job = await s.get(Job, uuid.UUID(job_id))
            if not job:
                raise HTTPException(status_code=404, detail="Job not found")

            lease = await s.get(Lease, uuid.UUID(job_id))
            if not lease:
                raise HTTPException(status_code=409, detail="No lease for job")
            if lease.agent_id != req.agent_id:
                raise HTTPException(status_code=403, detail="Lease owned by different agent")

            run = await lock_run(s, job.run_id)
            rows = await _job_rows(s, job.run_id)
            state = _state_for(run, rows)

            logs = req.details.get("logs", "")
            rows[job.job_name].logs = logs if logs else None
            outputs = {str(k): str(v) for k, v in (req.details.get("outputs") or {}).items()}
            # False when the run was cancelled under this job; its record stays cancelled
            state.complete(job.job_name, outcome, outputs, req.details.get("reason"))

            to_enqueue = _advance(run, rows, state)
            await s.delete(lease)

    await unlock_lease(job_id)
    await enqueue_jobs(to_enqueue)
    return {"ok": True}

@app.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    async with SessionLocal() as s:
        async with s.begin():
            run = await lock_run(s, uuid.UUID(run_id))
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            rows = await _job_rows(s, run.id)
            state = _state_for(run, rows)
            stopped = state.cancel()
            # jobs whose gate opts out of cancellation may become runnable now
            to_enqueue = _advance(run, rows, state)

    await enqueue_jobs(to_enqueue)
    return {"ok": True, "cancelled_running": stopped}

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, uuid.UUID(run_id))
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        rows = await _job_rows(s, run.id)
        return RunResponse(
            id=str(run.id),
            repo=run.repo,
            ref=run.ref,
            trigger=run.trigger,
            status=run.status,
            cancelled=run.cancelled,
            facts=FactSet.from_text(run.facts).to_dict(),
            jobs={name: row.status for name, row in rows.items()},
        )

@app.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str):
    """Get job details including logs."""
    async with SessionLocal() as s:
        job = await s.get(Job, uuid.UUID(job_id))
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        return JobResponse(
            id=str(job.id),
            job_name=job.job_name,
            outcome=job.status,
            reason=job.reason,
            outputs=dict(job.outputs or {}),
            logs=job.logs,
            created_at=job.created_at,
        )
