# repositories.py
"""Agent and job repositories.

The scheduler only talks to these narrow interfaces: ``get``, ``list``, ``add``,
a conditional update and ``atomic()``. Two implementations are provided, an
in-memory one (shared lock) and one backed by :class:`storage.Storage`.

Job updates are compare-and-set on ``version``; every successful update bumps
the version by one. Agent updates are compare-and-set on arbitrary expected
field values.
"""
import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace

from models import Agent, Job, from_iso, to_iso, utcnow

_DATETIME_FIELDS = ("last_seen_at", "last_job_at", "created_at",
                    "started_at", "finished_at", "updated_at")


class AgentRepository:
    def atomic(self):
        raise NotImplementedError

    def add(self, agent):
        raise NotImplementedError

    def get(self, agent_id):
        raise NotImplementedError

    def list(self, region=None, state=None):
        raise NotImplementedError

    def update(self, agent_id, expected, **changes):
        """Apply ``changes`` only if every ``expected`` field still matches. Returns bool."""
        raise NotImplementedError


class JobRepository:
    def atomic(self):
        raise NotImplementedError

    def add(self, job):
        raise NotImplementedError

    def get(self, job_id):
        raise NotImplementedError

    def list(self, status=None, region=None, owner_agent_id=None):
        raise NotImplementedError

    def conditional_update(self, job_id, expected_version, **changes):
        """Apply ``changes`` iff the stored version equals ``expected_version``.

        Returns the updated job (with ``version`` bumped) or None.
        """
        raise NotImplementedError


def _sort_jobs(jobs):
    # Highest priority first, then oldest
    return sorted(jobs, key=lambda j: (-j.priority, j.created_at, j.id))


# ---------------- In-memory ----------------
class MemoryAgentRepository(AgentRepository):
    def __init__(self, lock=None):
        self._lock = lock or threading.RLock()
        self._agents = {}

    @contextmanager
    def atomic(self):
        with self._lock:
            yield

    def add(self, agent):
        with self._lock:
            self._agents[agent.id] = copy.deepcopy(agent)
            return copy.deepcopy(agent)

    def get(self, agent_id):
        with self._lock:
            agent = self._agents.get(agent_id)
            return copy.deepcopy(agent) if agent else None

    def list(self, region=None, state=None):
        with self._lock:
            agents = [copy.deepcopy(a) for a in self._agents.values()
                      if (region is None or a.region == region)
                      and (state is None or a.state == state)]
        return sorted(agents, key=lambda a: (a.created_at, a.id))

    def update(self, agent_id, expected, **changes):
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return False
            if any(getattr(agent, k) != v for k, v in expected.items()):
                return False
            self._agents[agent_id] = replace(agent, **changes)
            return True


class MemoryJobRepository(JobRepository):
    def __init__(self, lock=None):
        self._lock = lock or threading.RLock()
        self._jobs = {}

    @contextmanager
    def atomic(self):
        with self._lock:
            yield

    def add(self, job):
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list(self, status=None, region=None, owner_agent_id=None):
        with self._lock:
            jobs = [copy.deepcopy(j) for j in self._jobs.values()
                    if (status is None or j.status == status)
                    and (region is None or j.region == region)
                    and (owner_agent_id is None or j.owner_agent_id == owner_agent_id)]
        return _sort_jobs(jobs)

    def conditional_update(self, job_id, expected_version, **changes):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.version != expected_version:
                return None
            changes.setdefault("updated_at", utcnow())
            updated = replace(job, version=job.version + 1, **changes)
            self._jobs[job_id] = updated
            return copy.deepcopy(updated)


def memory_repositories():
    """Agent and job repositories sharing one lock, so atomic() spans both."""
    lock = threading.RLock()
    return MemoryAgentRepository(lock), MemoryJobRepository(lock)


# ---------------- SQLite ----------------
def _encode(key, value):
    if key in _DATETIME_FIELDS:
        return to_iso(value)
    if key in ("config", "result"):
        return json.dumps(value, default=str) if value is not None else None
    return value


def _row_to_agent(row):
    return Agent(
        id=row["id"],
        name=row["name"],
        region=row["region"],
        visibility=row["visibility"],
        state=row["state"],
        last_seen_at=from_iso(row["last_seen_at"]),
        last_job_at=from_iso(row["last_job_at"]),
        created_at=from_iso(row["created_at"]),
    )


def _row_to_job(row):
    return Job(
        id=row["id"],
        region=row["region"],
        status=row["status"],
        owner_agent_id=row["owner_agent_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        version=row["version"],
        priority=row["priority"],
        config=json.loads(row["config"]) if row["config"] else {},
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
        duration_seconds=row["duration_seconds"],
        error=row["error"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


class SqliteAgentRepository(AgentRepository):
    COLUMNS = ("id", "name", "region", "visibility", "state",
               "last_seen_at", "last_job_at", "created_at")

    def __init__(self, db):
        self.db = db

    def atomic(self):
        return self.db.transaction()

    def add(self, agent):
        values = [_encode(c, getattr(agent, c)) for c in self.COLUMNS]
        self.db.execute(
            f"INSERT INTO agents ({', '.join(self.COLUMNS)}) VALUES ({', '.join('?' for _ in self.COLUMNS)})",
            values,
        )
        return agent

    def get(self, agent_id):
        rows = self.db.query("SELECT * FROM agents WHERE id=?", (agent_id,))
        return _row_to_agent(rows[0]) if rows else None

    def list(self, region=None, state=None):
        clauses, params = [], []
        if region is not None:
            clauses.append("region=?")
            params.append(region)
        if state is not None:
            clauses.append("state=?")
            params.append(state)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(f"SELECT * FROM agents {where} ORDER BY created_at, id", params)
        return [_row_to_agent(r) for r in rows]

    def update(self, agent_id, expected, **changes):
        if not changes:
            return False
        sets = ", ".join(f"{k}=?" for k in changes)
        params = [_encode(k, v) for k, v in changes.items()]
        where = ["id=?"]
        params.append(agent_id)
        for k, v in expected.items():
            if v is None:
                where.append(f"{k} IS NULL")
            else:
                where.append(f"{k}=?")
                params.append(_encode(k, v))
        updated = self.db.execute(f"UPDATE agents SET {sets} WHERE {' AND '.join(where)}", params)
        return updated == 1


class SqliteJobRepository(JobRepository):
    COLUMNS = ("id", "region", "status", "owner_agent_id", "retry_count", "max_retries",
               "version", "priority", "config", "started_at", "finished_at",
               "duration_seconds", "error", "result", "created_at", "updated_at")

    def __init__(self, db):
        self.db = db

    def atomic(self):
        return self.db.transaction()

    def add(self, job):
        values = [_encode(c, getattr(job, c)) for c in self.COLUMNS]
        self.db.execute(
            f"INSERT INTO jobs ({', '.join(self.COLUMNS)}) VALUES ({', '.join('?' for _ in self.COLUMNS)})",
            values,
        )
        return job

    def get(self, job_id):
        rows = self.db.query("SELECT * FROM jobs WHERE id=?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    def list(self, status=None, region=None, owner_agent_id=None):
        clauses, params = [], []
        for column, value in (("status", status), ("region", region), ("owner_agent_id", owner_agent_id)):
            if value is not None:
                clauses.append(f"{column}=?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(
            f"SELECT * FROM jobs {where} ORDER BY priority DESC, created_at ASC, id ASC", params
        )
        return [_row_to_job(r) for r in rows]

    def conditional_update(self, job_id, expected_version, **changes):
        changes.setdefault("updated_at", utcnow())
        sets = ", ".join(f"{k}=?" for k in changes)
        params = [_encode(k, v) for k, v in changes.items()]
        with self.db.transaction():
            updated = self.db.execute(
                f"UPDATE jobs SET {sets}, version=version+1 WHERE id=? AND version=?",
                (*params, job_id, expected_version),
            )
            if updated != 1:
                return None  # lost the race
            return self.get(job_id)


def sqlite_repositories(db):
    return SqliteAgentRepository(db), SqliteJobRepository(db)
