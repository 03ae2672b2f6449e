# tests/conftest.py

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict

import pytest

from app.database import build_engine, build_session_factory, create_tables
from app.services.scheduler_service import SchedulerService
from app.services.subscription_store import SubscriptionStore
from app.services.task_registry import TaskRegistry

from .fakes import FakeClock, FakeRunner

T0 = datetime(2026, 1, 1, 12, 0, 0)


def subscription_values(**overrides: Any) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "name": "Demo scripts",
        "alias": "demo",
        "type": "public-repo",
        "url": "https://example.com/demo/scripts.git",
        "branch": "main",
        "schedule_type": "interval",
        "interval_schedule": {"value": 5, "type": "minutes"},
    }
    values.update(overrides)
    return values


@pytest.fixture()
def engine(tmp_path: Path):
    engine = build_engine(f"sqlite:///{tmp_path / 'db' / 'subscriptions.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine) -> SubscriptionStore:
    return SubscriptionStore(build_session_factory(engine))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture()
def service(store: SubscriptionStore, runner: FakeRunner, registry: TaskRegistry, clock: FakeClock):
    """
    SchedulerService wired with a fake runner and a fake clock.

    APScheduler is never started here: armed timers stay pending and tests
    fire them explicitly with service.fire(id).
    """
    svc = SchedulerService(store, runner, registry, kill_grace_seconds=0.1, clock=clock)
    yield svc
    svc.shutdown(wait=False)
