from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from agents import AgentDirectory
from reclaimer import Reclaimer
from repositories import memory_repositories, sqlite_repositories
from scheduler import Scheduler
from storage import Storage


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    db = Storage(str(tmp_path / "scheduler.db"))
    yield db
    db.close()


@pytest.fixture(params=["memory", "sqlite"])
def repos(request, tmp_path):
    if request.param == "memory":
        yield memory_repositories()
        return
    db = Storage(str(tmp_path / "scheduler.db"))
    yield sqlite_repositories(db)
    db.close()


@pytest.fixture
def env(repos, clock):
    agents, jobs = repos
    return SimpleNamespace(
        agents=agents,
        jobs=jobs,
        clock=clock,
        directory=AgentDirectory(agents, clock=clock),
        scheduler=Scheduler(agents, jobs, clock=clock),
        reclaimer=Reclaimer(agents, jobs, stale_minutes=5, clock=clock),
    )
