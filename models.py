# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

REGIONS = ("na", "apac", "eu")
VISIBILITIES = ("public", "private")

AGENT_IDLE = "idle"
AGENT_OCCUPIED = "occupied"
AGENT_OFFLINE = "offline"

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED)

AGENT_TIMEOUT_ERROR = "Agent timeout - max retries exceeded"

# Protocol outcomes
CLAIMED = "claimed"
CONFLICT = "conflict"
NOT_FOUND = "not_found"
OK = "ok"
REJECTED = "rejected"


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(dt):
    """Fixed-width ISO timestamp so stored values compare lexicographically."""
    if dt is None:
        return None
    return dt.isoformat(timespec="microseconds")


def from_iso(value):
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Agent:
    id: str
    name: str
    region: str
    visibility: str = "public"   # public | private
    state: str = AGENT_IDLE      # idle | occupied | offline
    last_seen_at: Optional[datetime] = None
    last_job_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_stale(self, threshold: datetime) -> bool:
        # The boundary itself belongs to the fresh side.
        return self.last_seen_at is None or self.last_seen_at < threshold

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "region": self.region,
            "visibility": self.visibility,
            "state": self.state,
            "last_seen_at": to_iso(self.last_seen_at),
            "last_job_at": to_iso(self.last_job_at),
        }


@dataclass
class Job:
    id: str
    region: str
    status: str = JOB_PENDING   # pending | running | completed | failed
    owner_agent_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    version: int = 1
    priority: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Any] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "region": self.region,
            "status": self.status,
            "owner_agent_id": self.owner_agent_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "version": self.version,
            "priority": self.priority,
            "config": self.config,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "result": self.result,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class ClaimResult:
    status: str                  # claimed | conflict | not_found
    job: Optional[Job] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CLAIMED

    @property
    def version(self) -> Optional[int]:
        return self.job.version if self.job is not None and self.ok else None


@dataclass
class CompleteResult:
    status: str                  # ok | rejected | not_found
    job: Optional[Job] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OK


@dataclass
class ReclaimReport:
    offline_agents: int = 0
    released_jobs: int = 0
    failed_jobs: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.offline_agents or self.released_jobs or self.failed_jobs)


class SchedulerError(Exception):
    """Base class for caller mistakes (not protocol outcomes)."""


class InvalidRegion(SchedulerError, ValueError):
    pass


class InvalidVisibility(SchedulerError, ValueError):
    pass


class InvalidJob(SchedulerError, ValueError):
    pass
