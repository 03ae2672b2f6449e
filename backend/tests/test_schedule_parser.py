# tests/test_schedule_parser.py

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.services.exceptions import InvalidScheduleError, ValidationError
from app.services.schedule_parser import (
    CronSchedule,
    IntervalSchedule,
    IntervalUnit,
    describe,
    next_fire_after,
    parse_cron,
    parse_interval,
    parse_schedule,
    parse_schedule_fields,
    schedule_to_fields,
)

from .conftest import T0


def test_five_field_cron_next_fire() -> None:
    schedule = parse_cron("0 */6 * * *", now=T0)
    assert schedule == CronSchedule("0 */6 * * *")
    assert next_fire_after(schedule, T0) == datetime(2026, 1, 1, 18, 0, 0)


def test_six_field_cron_has_leading_seconds() -> None:
    schedule = parse_cron("30 0 12 * * *", now=T0)
    assert next_fire_after(schedule, T0) == datetime(2026, 1, 1, 12, 0, 30)
    assert next_fire_after(schedule, datetime(2026, 1, 1, 12, 0, 30)) == datetime(2026, 1, 2, 12, 0, 30)


def test_cron_whitespace_is_normalized() -> None:
    assert parse_cron("  */5   *  * * * ", now=T0).expression == "*/5 * * * *"


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "* * *",
        "* * * * * * *",
        "61 * * * *",
        "not a cron",
        "0 0 30 2 *",
    ],
)
def test_invalid_cron_is_rejected(expression: str) -> None:
    with pytest.raises(InvalidScheduleError):
        parse_cron(expression, now=T0)


def test_invalid_schedule_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        parse_schedule("0 0 30 2 *", now=T0)


def test_cron_fires_are_strictly_increasing() -> None:
    schedule = parse_cron("*/15 * * * *", now=T0)
    moment = T0
    fires = []
    for _ in range(6):
        moment = next_fire_after(schedule, moment)
        fires.append(moment)

    assert fires == sorted(set(fires))
    assert fires[0] == T0 + timedelta(minutes=15)
    assert fires[-1] == T0 + timedelta(minutes=90)


def test_next_fire_is_pure() -> None:
    schedule = parse_cron("0 3 * * *", now=T0)
    assert next_fire_after(schedule, T0) == next_fire_after(schedule, T0)


def test_interval_next_fire_is_relative_to_given_time() -> None:
    schedule = parse_interval({"value": 5, "type": "minutes"})
    assert schedule == IntervalSchedule(5, IntervalUnit.MINUTES)

    completed_at = T0 + timedelta(minutes=2)
    assert next_fire_after(schedule, completed_at) == T0 + timedelta(minutes=7)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"value": 30, "type": "seconds"}, timedelta(seconds=30)),
        ({"value": "3", "unit": "hours"}, timedelta(hours=3)),
        ({"value": 2.0, "type": "DAYS"}, timedelta(days=2)),
    ],
)
def test_interval_units(raw, expected) -> None:
    assert parse_interval(raw).delta == expected


@pytest.mark.parametrize(
    "raw",
    [
        {"value": 0, "type": "minutes"},
        {"value": -1, "type": "minutes"},
        {"value": 1.5, "type": "minutes"},
        {"value": True, "type": "minutes"},
        {"value": "abc", "type": "minutes"},
        {"value": 5, "type": "weeks"},
        {"value": 5},
        "5 minutes",
    ],
)
def test_invalid_interval_is_rejected(raw) -> None:
    with pytest.raises(InvalidScheduleError):
        parse_interval(raw)


def test_parse_schedule_dispatches_on_shape() -> None:
    assert isinstance(parse_schedule("0 * * * *", now=T0), CronSchedule)
    assert isinstance(parse_schedule({"value": 1, "type": "hours"}), IntervalSchedule)
    with pytest.raises(InvalidScheduleError):
        parse_schedule(42)


def test_parse_schedule_fields_infers_interval() -> None:
    schedule = parse_schedule_fields(None, None, {"value": 10, "type": "minutes"})
    assert schedule == IntervalSchedule(10, IntervalUnit.MINUTES)


def test_parse_schedule_fields_requires_matching_field() -> None:
    with pytest.raises(InvalidScheduleError):
        parse_schedule_fields("interval", "0 * * * *", None)
    with pytest.raises(InvalidScheduleError):
        parse_schedule_fields("crontab", None, {"value": 1, "type": "hours"})
    with pytest.raises(InvalidScheduleError):
        parse_schedule_fields("weekly", "0 * * * *", None)


def test_schedule_to_fields_keeps_one_representation() -> None:
    assert schedule_to_fields(CronSchedule("0 * * * *")) == ("crontab", "0 * * * *", None)
    assert schedule_to_fields(IntervalSchedule(2, IntervalUnit.HOURS)) == (
        "interval",
        None,
        {"value": 2, "type": "hours"},
    )


def test_describe() -> None:
    assert describe(CronSchedule("0 * * * *")) == "cron(0 * * * *)"
    assert describe(IntervalSchedule(2, IntervalUnit.HOURS)) == "every 2 hours"
