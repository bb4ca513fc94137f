# reclaimer.py
import time
from datetime import timedelta

from events import log, log_transition
from models import (
    AGENT_OFFLINE, AGENT_TIMEOUT_ERROR, JOB_FAILED, JOB_RUNNING,
    ReclaimReport, utcnow,
)
from scheduler import release_changes


class Reclaimer:
    """Marks silent agents offline and releases (or fails) the jobs they held."""

    def __init__(self, agents, jobs, stale_minutes=5, interval_seconds=60, clock=None, stop_event=None):
        self.agents = agents
        self.jobs = jobs
        self.stale_minutes = stale_minutes
        self.interval_seconds = interval_seconds
        self.clock = clock or utcnow
        self.stop_event = stop_event  # threading.Event() passed in by CLI

    def run(self):
        """Run immediately, then every ``interval_seconds`` until stopped."""
        while not (self.stop_event and self.stop_event.is_set()):
            try:
                report = self.run_once()
                if report.changed:
                    log(f"Reclaimer: {report.offline_agents} agent(s) offline, "
                        f"{report.released_jobs} job(s) released, {report.failed_jobs} job(s) failed")
            except Exception as e:
                log(f"Reclaimer run failed: {e!r}")
            if self.stop_event:
                self.stop_event.wait(self.interval_seconds)
            else:
                time.sleep(self.interval_seconds)

    def stale_threshold(self, now=None):
        return (now or self.clock()) - timedelta(minutes=self.stale_minutes)

    def run_once(self):
        now = self.clock()
        threshold = self.stale_threshold(now)
        report = ReclaimReport()

        # One short transaction per stale agent, never one for the whole run
        for agent in self.agents.list():
            if agent.state == AGENT_OFFLINE or not agent.is_stale(threshold):
                continue
            with self.jobs.atomic():
                # A heartbeat that landed since list() changes last_seen_at and wins
                if not self.agents.update(
                    agent.id,
                    {"state": agent.state, "last_seen_at": agent.last_seen_at},
                    state=AGENT_OFFLINE,
                ):
                    continue
                report.offline_agents += 1
                log_transition("Agent", agent.id, agent.state, AGENT_OFFLINE,
                               f"(last_seen_at={agent.last_seen_at.isoformat() if agent.last_seen_at else '-'})")
                for job in self.jobs.list(status=JOB_RUNNING, owner_agent_id=agent.id):
                    self._release(job, now, report)

        # Running jobs whose owner is already offline (or gone), e.g. an interrupted earlier run
        for job in self.jobs.list(status=JOB_RUNNING):
            with self.jobs.atomic():
                owner = self.agents.get(job.owner_agent_id)
                if owner is not None and owner.state != AGENT_OFFLINE:
                    continue
                self._release(job, now, report)

        return report

    def _release(self, job, now, report):
        changes = release_changes(job, now, AGENT_TIMEOUT_ERROR)
        updated = self.jobs.conditional_update(job.id, job.version, updated_at=now, **changes)
        if updated is None:
            return  # completed or reclaimed by someone else first
        if updated.status == JOB_FAILED:
            report.failed_jobs += 1
        else:
            report.released_jobs += 1
        log_transition("Job", job.id, JOB_RUNNING, updated.status,
                       f"(agent timeout, owner={job.owner_agent_id}, "
                       f"retry_count={updated.retry_count}/{updated.max_retries})")
