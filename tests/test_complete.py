from models import (
    AGENT_IDLE, AGENT_OFFLINE, JOB_COMPLETED, JOB_FAILED, JOB_PENDING,
    NOT_FOUND, REJECTED,
)


def _claimed(env, region="na", max_retries=3, retry_count=0):
    agent = env.directory.register("runner", region)
    job = env.scheduler.enqueue(region, max_retries=max_retries)
    if retry_count:
        job = env.jobs.conditional_update(job.id, job.version, retry_count=retry_count)
    claim = env.scheduler.claim(job.id, agent.id, job.version)
    assert claim.ok
    return agent, claim.job


def test_complete_with_result(env):
    agent, job = _claimed(env)
    env.clock.advance(seconds=42)

    outcome = env.scheduler.complete(job.id, agent.id, result={"latency_ms": 120})

    assert outcome.ok
    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_COMPLETED
    assert stored.result == {"latency_ms": 120}
    assert stored.owner_agent_id is None
    assert stored.started_at is None
    assert stored.finished_at == env.clock.now
    assert stored.duration_seconds == 42
    assert stored.version == job.version + 1
    assert env.directory.get(agent.id).state == AGENT_IDLE


def test_complete_from_non_owner_is_rejected(env):
    agent, job = _claimed(env)
    other = env.directory.register("other", "na")

    outcome = env.scheduler.complete(job.id, other.id, result={})

    assert outcome.status == REJECTED
    assert env.scheduler.get_job(job.id).version == job.version


def test_complete_terminal_job_is_rejected(env):
    agent, job = _claimed(env)
    env.scheduler.complete(job.id, agent.id, result={"n": 1})

    outcome = env.scheduler.complete(job.id, agent.id, result={"n": 2})

    assert outcome.status == REJECTED
    assert env.scheduler.get_job(job.id).result == {"n": 1}


def test_complete_unknown_job(env):
    agent = env.directory.register("runner", "na")
    assert env.scheduler.complete("job-missing", agent.id, result={}).status == NOT_FOUND


def test_reported_failure_with_retries_left_requeues(env):
    agent, job = _claimed(env, max_retries=3)

    outcome = env.scheduler.complete(job.id, agent.id, error="benchmark crashed")

    assert outcome.ok
    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_PENDING
    assert stored.retry_count == 1
    assert stored.error is None
    assert stored.owner_agent_id is None
    assert stored.started_at is None
    assert env.directory.get(agent.id).state == AGENT_IDLE
    assert [j.id for j in env.scheduler.list_claimable("na")] == [job.id]


def test_reported_failure_with_retries_exhausted_fails(env):
    agent, job = _claimed(env, max_retries=1, retry_count=1)

    env.scheduler.complete(job.id, agent.id, error="benchmark crashed")

    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_FAILED
    assert stored.error == "benchmark crashed"
    assert stored.retry_count == 2
    assert stored.owner_agent_id is None


def test_complete_leaves_offline_agent_offline(env):
    agent, job = _claimed(env)
    env.agents.update(agent.id, {}, state=AGENT_OFFLINE)

    assert env.scheduler.complete(job.id, agent.id, result={}).ok
    assert env.directory.get(agent.id).state == AGENT_OFFLINE
