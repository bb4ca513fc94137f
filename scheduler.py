# scheduler.py
"""Job lifecycle: enqueue, claim and completion.

Every job transition is a compare-and-set on the job's ``version``. A claim
also flips the agent to occupied, so it runs inside the repositories'
``atomic()`` block; the version check alone still guarantees a single winner
per job version.
"""
import json
import uuid

from events import log, log_transition
from models import (
    AGENT_IDLE, AGENT_OCCUPIED, CLAIMED, CONFLICT, JOB_COMPLETED, JOB_FAILED,
    JOB_PENDING, JOB_RUNNING, NOT_FOUND, OK, REGIONS, REJECTED,
    ClaimResult, CompleteResult, InvalidJob, InvalidRegion, Job, utcnow,
)


def release_changes(job, now, error):
    """Field changes for giving up one attempt of a running job.

    Used by both the reclaimer (agent timeout) and agent-reported failures.
    The retry counter is bumped on the exhausting transition too.
    """
    if job.retry_count >= job.max_retries:
        return {
            "status": JOB_FAILED,
            "owner_agent_id": None,
            "started_at": None,
            "finished_at": now,
            "error": error,
            "retry_count": job.retry_count + 1,
        }
    return {
        "status": JOB_PENDING,
        "owner_agent_id": None,
        "started_at": None,
        "error": None,
        "retry_count": job.retry_count + 1,
    }


class Scheduler:
    def __init__(self, agents, jobs, clock=None):
        self.agents = agents
        self.jobs = jobs
        self.clock = clock or utcnow

    # ---------------- Job creation ----------------
    def enqueue(self, region, max_retries=3, priority=0, config=None, job_id=None):
        if region not in REGIONS:
            raise InvalidRegion(f"unknown region {region!r} (expected one of {', '.join(REGIONS)})")
        if max_retries is None or int(max_retries) < 0:
            raise InvalidJob("max_retries must be a non-negative integer")
        now = self.clock()
        job = Job(
            id=job_id or f"job-{uuid.uuid4().hex[:8]}",
            region=region,
            max_retries=int(max_retries),
            priority=int(priority),
            config=dict(config or {}),
            created_at=now,
            updated_at=now,
        )
        if self.jobs.get(job.id) is not None:
            raise InvalidJob(f"job {job.id} already exists")
        self.jobs.add(job)
        log_transition("Job", job.id, "-", JOB_PENDING, f"(region={region}, max_retries={job.max_retries})")
        return job

    # ---------------- Polling ----------------
    def list_claimable(self, region):
        return self.jobs.list(status=JOB_PENDING, region=region)

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def list_jobs(self, status=None, region=None):
        return self.jobs.list(status=status, region=region)

    # ---------------- Claim ----------------
    def claim(self, job_id, agent_id, expected_version):
        with self.jobs.atomic():
            job = self.jobs.get(job_id)
            agent = self.agents.get(agent_id)
            if job is None or agent is None:
                return ClaimResult(NOT_FOUND, reason="unknown job" if job is None else "unknown agent")

            reason = None
            if job.status != JOB_PENDING:
                reason = f"job is {job.status}"
            elif job.version != expected_version:
                reason = f"version {expected_version} is stale (current {job.version})"
            elif agent.state != AGENT_IDLE:
                reason = f"agent is {agent.state}"
            elif agent.region != job.region:
                reason = f"agent region {agent.region} does not match job region {job.region}"
            if reason:
                log(f"Job {job_id}: claim by {agent_id} lost ({reason})")
                return ClaimResult(CONFLICT, job=job, reason=reason)

            now = self.clock()
            if not self.agents.update(agent_id, {"state": AGENT_IDLE}, state=AGENT_OCCUPIED, last_job_at=now):
                return ClaimResult(CONFLICT, job=job, reason="agent no longer idle")
            claimed = self.jobs.conditional_update(
                job_id, expected_version,
                status=JOB_RUNNING, owner_agent_id=agent_id, started_at=now,
                updated_at=now,
            )
            if claimed is None:
                self.agents.update(agent_id, {"state": AGENT_OCCUPIED}, state=AGENT_IDLE)
                log(f"Job {job_id}: claim by {agent_id} lost (concurrent update)")
                return ClaimResult(CONFLICT, job=self.jobs.get(job_id), reason="concurrent update")

        log_transition("Job", job_id, JOB_PENDING, JOB_RUNNING, f"(claimed by {agent_id}, version={claimed.version})")
        return ClaimResult(CLAIMED, job=claimed)

    # ---------------- Completion ----------------
    def complete(self, job_id, agent_id, result=None, error=None):
        """Finish the running job owned by ``agent_id``.

        A non-None ``error`` is an agent-reported failure and consumes one attempt.
        A result is stored as JSON; values JSON cannot carry, such as datetimes, are
        kept as their ``str()`` form on every backend.
        """
        if result is not None:
            result = json.loads(json.dumps(result, default=str))
        with self.jobs.atomic():
            job = self.jobs.get(job_id)
            if job is None:
                return CompleteResult(NOT_FOUND, reason="unknown job")
            if job.status != JOB_RUNNING or job.owner_agent_id != agent_id:
                reason = (f"job is {job.status}" if job.status != JOB_RUNNING
                          else f"job is owned by {job.owner_agent_id}")
                log(f"Job {job_id}: late result from {agent_id} rejected ({reason})")
                return CompleteResult(REJECTED, job=job, reason=reason)

            now = self.clock()
            duration = (now - job.started_at).total_seconds() if job.started_at else None
            if error is None:
                changes = {
                    "status": JOB_COMPLETED,
                    "owner_agent_id": None,
                    "started_at": None,
                    "finished_at": now,
                    "duration_seconds": duration,
                    "result": result,
                    "error": None,
                }
            else:
                changes = release_changes(job, now, str(error))
                changes["duration_seconds"] = duration
            changes["updated_at"] = now

            updated = self.jobs.conditional_update(job_id, job.version, **changes)
            if updated is None:
                return CompleteResult(REJECTED, job=self.jobs.get(job_id), reason="concurrent update")

            # An agent already marked offline stays offline until it heartbeats
            self.agents.update(agent_id, {"state": AGENT_OCCUPIED}, state=AGENT_IDLE)

        details = [f"agent={agent_id}", f"retry_count={updated.retry_count}/{updated.max_retries}"]
        if duration is not None:
            details.append(f"duration={duration:.3f}s")
        if error is not None:
            details.append(f"error={error}")
        log_transition("Job", job_id, JOB_RUNNING, updated.status, f"({', '.join(details)})")
        return CompleteResult(OK, job=updated)
