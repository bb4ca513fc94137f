import threading
from datetime import datetime

import pytest

from models import AGENT_IDLE, JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_RUNNING
from scheduler import Scheduler
from worker import EvalAgentWorker, ExecutionError, run_command


def _worker(env, executor, region="na", **kwargs):
    w = EvalAgentWorker(env.directory, env.scheduler, name="bench", region=region,
                        executor=executor, **kwargs)
    w.register()
    return w


def test_process_once_without_jobs(env):
    w = _worker(env, executor=lambda job: {})
    assert w.process_once() is False


def test_process_once_completes_job(env):
    job = env.scheduler.enqueue("na", config={"scenario": "basic"})
    seen = []

    def executor(j):
        seen.append(j.config["scenario"])
        return {"score": 1}

    w = _worker(env, executor)
    assert w.process_once() is True

    stored = env.scheduler.get_job(job.id)
    assert seen == ["basic"]
    assert stored.status == JOB_COMPLETED
    assert stored.result == {"score": 1}
    assert env.directory.get(w.agent_id).state == AGENT_IDLE


def test_executor_exception_is_reported_as_failure(env):
    job = env.scheduler.enqueue("na", max_retries=1)

    def executor(j):
        raise RuntimeError("tester exited early")

    w = _worker(env, executor)
    w.process_once()
    assert env.scheduler.get_job(job.id).status == JOB_PENDING

    w.process_once()
    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_FAILED
    assert stored.error == "tester exited early"
    assert stored.retry_count == 2


def test_result_with_datetime_is_stored(env):
    job = env.scheduler.enqueue("na")
    w = _worker(env, executor=lambda j: {"finished": datetime(2026, 1, 1)})

    assert w.process_once() is True
    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_COMPLETED
    assert stored.result == {"finished": "2026-01-01 00:00:00"}
    assert env.directory.get(w.agent_id).state == AGENT_IDLE

    # Nothing left running for the reclaimer to find
    env.clock.advance(minutes=10)
    env.directory.heartbeat(w.agent_id)
    report = env.reclaimer.run_once()
    assert not report.changed
    assert env.scheduler.list_jobs(status=JOB_RUNNING) == []
    assert env.scheduler.get_job(job.id).status == JOB_COMPLETED


class _ResultStoreFails(Scheduler):
    def complete(self, job_id, agent_id, result=None, error=None):
        if result is not None:
            raise TypeError("result is not storable")
        return super().complete(job_id, agent_id, result=result, error=error)


def test_unstorable_result_gives_the_attempt_back(env):
    job = env.scheduler.enqueue("na")
    scheduler = _ResultStoreFails(env.agents, env.jobs, clock=env.clock)
    w = EvalAgentWorker(env.directory, scheduler, name="bench", region="na",
                        executor=lambda j: {"score": 1})
    w.register()

    assert w.process_once() is True
    stored = env.scheduler.get_job(job.id)
    assert stored.status == JOB_PENDING
    assert stored.owner_agent_id is None
    assert stored.retry_count == 1
    assert env.directory.get(w.agent_id).state == AGENT_IDLE


def test_worker_only_sees_its_region(env):
    job = env.scheduler.enqueue("eu")
    w = _worker(env, executor=lambda j: {}, region="na")

    assert w.process_once() is False
    assert env.scheduler.get_job(job.id).status == JOB_PENDING


def test_run_loop_processes_until_stopped(env):
    stop = threading.Event()
    done = threading.Event()
    job = env.scheduler.enqueue("na")

    def executor(j):
        done.set()
        return {"ok": True}

    w = _worker(env, executor, heartbeat_interval=0.01, poll_interval=0.01, stop_event=stop)
    t = threading.Thread(target=w.run, daemon=True)
    t.start()
    assert done.wait(2)
    stop.set()
    t.join(timeout=2)

    assert not t.is_alive()
    assert not w._heartbeat_thread.is_alive()
    assert env.scheduler.get_job(job.id).status == JOB_COMPLETED


def test_run_command_success(env):
    job = env.scheduler.enqueue("na", config={"command": "echo hello"})
    result = run_command(job)
    assert result["exit_code"] == 0
    assert "hello" in result["output"]


def test_run_command_failure(env):
    job = env.scheduler.enqueue("na", config={"command": "echo boom >&2; exit 3"})
    with pytest.raises(ExecutionError, match="exit_code=3: boom"):
        run_command(job)


def test_run_command_requires_command(env):
    job = env.scheduler.enqueue("na")
    with pytest.raises(ExecutionError):
        run_command(job)
