# dashboard.py
"""Read-only JSON status API for admin and observability surfaces."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException

from models import (
    AGENT_IDLE, AGENT_OCCUPIED, AGENT_OFFLINE,
    JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_RUNNING,
)
from repositories import sqlite_repositories
from storage import Storage

app = FastAPI(title="Eval agent scheduler status")


@lru_cache(maxsize=1)
def get_storage() -> Storage:
    return Storage()


def get_repositories(db: Storage = Depends(get_storage)):
    return sqlite_repositories(db)


# ---------- Agents ----------
@app.get("/agents")
def list_agents(region: Optional[str] = None, state: Optional[str] = None,
                repos=Depends(get_repositories)):
    agents, _ = repos
    return [a.summary() for a in agents.list(region=region, state=state)]


@app.get("/agents/{agent_id}")
def agent_detail(agent_id: str, repos=Depends(get_repositories)):
    agents, jobs = repos
    agent = agents.get(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    body = agent.summary()
    body["running_jobs"] = [j.id for j in jobs.list(status=JOB_RUNNING, owner_agent_id=agent_id)]
    return body


# ---------- Jobs ----------
@app.get("/jobs")
def list_jobs(status: Optional[str] = None, region: Optional[str] = None,
              repos=Depends(get_repositories)):
    _, jobs = repos
    return [j.summary() for j in jobs.list(status=status, region=region)]


@app.get("/jobs/{job_id}")
def job_detail(job_id: str, repos=Depends(get_repositories)):
    _, jobs = repos
    job = jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.summary()


# ---------- Metrics ----------
@app.get("/metrics/json")
def metrics_json(db: Storage = Depends(get_storage)):
    job_counts = {s: 0 for s in (JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED)}
    for row in db.query("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status"):
        job_counts[row["status"]] = row["c"]

    agent_counts = {s: 0 for s in (AGENT_IDLE, AGENT_OCCUPIED, AGENT_OFFLINE)}
    for row in db.query("SELECT state, COUNT(*) AS c FROM agents GROUP BY state"):
        agent_counts[row["state"]] = row["c"]

    rows = db.query(
        "SELECT AVG(duration_seconds) AS avg_dur FROM jobs WHERE status='completed' AND duration_seconds IS NOT NULL"
    )
    return {"jobs": job_counts, "agents": agent_counts, "avg_duration": rows[0]["avg_dur"]}
