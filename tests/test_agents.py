import pytest

from models import (
    AGENT_IDLE, AGENT_OCCUPIED, AGENT_OFFLINE, NOT_FOUND, OK,
    InvalidRegion, InvalidVisibility,
)


def test_register_creates_idle_agent(env):
    agent = env.directory.register("runner-1", "na")

    stored = env.directory.get(agent.id)
    assert stored.state == AGENT_IDLE
    assert stored.region == "na"
    assert stored.visibility == "public"
    assert stored.last_seen_at == env.clock.now


def test_register_allows_duplicate_names(env):
    a = env.directory.register("same", "eu")
    b = env.directory.register("same", "eu")
    assert a.id != b.id
    assert len(env.directory.list(region="eu")) == 2


def test_register_rejects_unknown_region(env):
    with pytest.raises(InvalidRegion):
        env.directory.register("x", "mars")


def test_register_rejects_unknown_visibility(env):
    with pytest.raises(InvalidVisibility):
        env.directory.register("x", "na", visibility="secret")


def test_heartbeat_refreshes_last_seen(env):
    agent = env.directory.register("runner", "na")
    env.clock.advance(minutes=3)

    assert env.directory.heartbeat(agent.id) == OK
    assert env.directory.get(agent.id).last_seen_at == env.clock.now


def test_heartbeat_unknown_agent(env):
    assert env.directory.heartbeat("agent-missing") == NOT_FOUND


def test_heartbeat_resurrects_offline_agent(env):
    agent = env.directory.register("runner", "na")
    env.agents.update(agent.id, {}, state=AGENT_OFFLINE)

    env.directory.heartbeat(agent.id)

    assert env.directory.get(agent.id).state == AGENT_IDLE


def test_heartbeat_keeps_occupied_agent_occupied(env):
    agent = env.directory.register("runner", "na")
    job = env.scheduler.enqueue("na")
    env.scheduler.claim(job.id, agent.id, job.version)

    env.directory.heartbeat(agent.id)

    assert env.directory.get(agent.id).state == AGENT_OCCUPIED


def test_list_filters_by_state(env):
    a = env.directory.register("a", "na")
    env.directory.register("b", "na")
    env.agents.update(a.id, {}, state=AGENT_OFFLINE)

    assert [x.id for x in env.directory.list(state=AGENT_OFFLINE)] == [a.id]
    assert len(env.directory.list(state=AGENT_IDLE)) == 1
