# tests/test_subscription_store.py

from __future__ import annotations

import pytest

from app.database import Base
from app.models import SubscriptionStatus
from app.services.exceptions import InfrastructureError, NotFoundError, ValidationError
from app.services.subscription_store import SubscriptionStore

from .conftest import subscription_values


def test_insert_and_get(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    assert created.id == 1
    assert created.status == SubscriptionStatus.IDLE
    assert created.is_disabled is False
    assert created.pid is None

    loaded = store.get(created.id)
    assert loaded.alias == "demo"
    assert loaded.interval_schedule == {"value": 5, "type": "minutes"}


def test_get_missing_raises(store: SubscriptionStore) -> None:
    with pytest.raises(NotFoundError) as excinfo:
        store.get(404)
    assert excinfo.value.subscription_id == 404


def test_list_search_matches_name_alias_and_url(store: SubscriptionStore) -> None:
    store.insert(subscription_values(name="Daily checkin", alias="checkin"))
    store.insert(subscription_values(name="Weather", alias="weather", url="https://example.com/wx.git"))

    assert {s.alias for s in store.list()} == {"checkin", "weather"}
    assert [s.alias for s in store.list("CHECK")] == ["checkin"]
    assert [s.alias for s in store.list("wx.git")] == ["weather"]
    assert store.list("nothing-matches") == []


def test_update_changes_fields(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    updated = store.update(created.id, branch="dev", last_exit_code=2)
    assert updated.branch == "dev"
    assert updated.last_exit_code == 2


def test_update_rejects_unknown_fields(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    with pytest.raises(ValidationError):
        store.update(created.id, pid=123)


def test_insert_rejects_unknown_fields(store: SubscriptionStore) -> None:
    with pytest.raises(ValidationError):
        store.insert(subscription_values(keyword="nope"))


def test_delete_returns_count_and_ids_are_not_reused(store: SubscriptionStore) -> None:
    first = store.insert(subscription_values(alias="a"))
    second = store.insert(subscription_values(alias="b"))

    assert store.delete([second.id, 999]) == 1
    assert store.delete([]) == 0

    third = store.insert(subscription_values(alias="c"))
    assert third.id == second.id + 1
    assert {s.id for s in store.list()} == {first.id, third.id}


def test_running_status_requires_pid(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    with pytest.raises(ValidationError):
        store.set_status(created.id, SubscriptionStatus.RUNNING)


def test_set_status_manages_pid_and_log_path(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())

    running = store.set_status(created.id, SubscriptionStatus.RUNNING, pid=4242, log_path="/tmp/demo.log")
    assert running.status == SubscriptionStatus.RUNNING
    assert running.pid == 4242
    assert running.last_execution_at is not None

    idle = store.set_status(created.id, "idle", pid=4242)
    assert idle.status == SubscriptionStatus.IDLE
    assert idle.pid is None
    assert idle.log_path == "/tmp/demo.log"


def test_set_status_accepts_numeric_codes(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    assert store.set_status(created.id, 4).status == SubscriptionStatus.STOPPED
    assert store.set_status(created.id, "2").status == SubscriptionStatus.DISABLED


def test_storage_failure_becomes_infrastructure_error(engine, store: SubscriptionStore) -> None:
    Base.metadata.drop_all(bind=engine)
    with pytest.raises(InfrastructureError):
        store.list()


def test_constraint_failure_message_hides_sql(store: SubscriptionStore) -> None:
    created = store.insert(subscription_values())
    with pytest.raises(InfrastructureError) as exc_info:
        store.update(created.id, url=None)
    assert str(exc_info.value) == "Subscription store unavailable: IntegrityError"
    assert store.get(created.id).url == subscription_values()["url"]
