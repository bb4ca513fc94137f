# agents.py
import uuid

from events import log_transition
from models import (
    AGENT_IDLE, AGENT_OFFLINE, NOT_FOUND, OK, REGIONS, VISIBILITIES,
    Agent, InvalidRegion, InvalidVisibility, utcnow,
)


class AgentDirectory:
    """Registration and liveness for eval agents."""

    def __init__(self, agents, clock=None):
        self.agents = agents
        self.clock = clock or utcnow

    def register(self, name, region, visibility="public"):
        if region not in REGIONS:
            raise InvalidRegion(f"unknown region {region!r} (expected one of {', '.join(REGIONS)})")
        if visibility not in VISIBILITIES:
            raise InvalidVisibility(f"unknown visibility {visibility!r}")
        now = self.clock()
        agent = Agent(
            id=f"agent-{uuid.uuid4().hex[:8]}",
            name=name,
            region=region,
            visibility=visibility,
            state=AGENT_IDLE,
            last_seen_at=now,
            created_at=now,
        )
        self.agents.add(agent)
        log_transition("Agent", agent.id, "-", AGENT_IDLE, f"(registered name={name}, region={region})")
        return agent

    def heartbeat(self, agent_id):
        """Refresh liveness. Returns ``ok`` or ``not_found``; never blocks on jobs."""
        now = self.clock()
        if not self.agents.update(agent_id, {}, last_seen_at=now):
            return NOT_FOUND
        # Separate compare-and-set so a concurrent claim's occupied state is never clobbered
        if self.agents.update(agent_id, {"state": AGENT_OFFLINE}, state=AGENT_IDLE):
            log_transition("Agent", agent_id, AGENT_OFFLINE, AGENT_IDLE, "(heartbeat resumed)")
        return OK

    def get(self, agent_id):
        return self.agents.get(agent_id)

    def list(self, region=None, state=None):
        return self.agents.list(region=region, state=state)
