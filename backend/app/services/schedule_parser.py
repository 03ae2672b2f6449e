"""
定时规则解析

两种形态的定时规则统一解析为带标签的变体：
- CronSchedule: cron 表达式（5 段，或 6 段且首段为秒）
- IntervalSchedule: 固定间隔（数值 + 单位）

cron 由 croniter 校验，必须至少存在一次未来的触发时间。
间隔规则的下次触发时间总是相对传入的时间点计算（通常为上次执行结束时间），
不按起始时间对齐，因此重启后不会累积漂移。
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from croniter import croniter, CroniterBadCronError, CroniterBadDateError

from app.services.exceptions import InvalidScheduleError

SCHEDULE_TYPE_CRON = "crontab"
SCHEDULE_TYPE_INTERVAL = "interval"


class IntervalUnit(str, enum.Enum):
    """间隔单位"""
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


@dataclass(frozen=True)
class CronSchedule:
    expression: str

    def next_fire_after(self, from_: datetime) -> datetime:
        try:
            return croniter(_to_croniter_expression(self.expression), from_).get_next(datetime)
        except CroniterBadDateError:
            raise InvalidScheduleError(f"cron {self.expression!r} has no occurrence after {from_}")


@dataclass(frozen=True)
class IntervalSchedule:
    value: int
    unit: IntervalUnit

    @property
    def delta(self) -> timedelta:
        return timedelta(**{self.unit.value: self.value})

    def next_fire_after(self, from_: datetime) -> datetime:
        return from_ + self.delta

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "type": self.unit.value}


Schedule = Union[CronSchedule, IntervalSchedule]


def _to_croniter_expression(expression: str) -> str:
    # 6 段表达式的秒在首位，croniter 约定秒在末位
    parts = expression.split()
    if len(parts) == 6:
        parts = parts[1:] + parts[:1]
    return " ".join(parts)


def parse_cron(expression: str, now: Optional[datetime] = None) -> CronSchedule:
    """校验 cron 表达式，并确认存在未来的触发时间"""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError("param schedule error: empty cron expression")

    normalized = " ".join(expression.split())
    if len(normalized.split()) not in (5, 6):
        raise InvalidScheduleError(f"param schedule error: {expression!r} must have 5 or 6 fields")

    base = now or datetime.utcnow()
    try:
        croniter(_to_croniter_expression(normalized), base).get_next(datetime)
    except CroniterBadDateError:
        raise InvalidScheduleError(f"param schedule error: {expression!r} never fires")
    except (CroniterBadCronError, ValueError, KeyError) as e:
        raise InvalidScheduleError(f"param schedule error: {expression!r} ({e})")

    return CronSchedule(expression=normalized)


def parse_interval(raw: Mapping[str, Any]) -> IntervalSchedule:
    """解析间隔规则，兼容 {"value", "type"} 和 {"value", "unit"} 两种写法"""
    if not isinstance(raw, Mapping):
        raise InvalidScheduleError("param interval_schedule error: must be an object")

    raw_unit = raw.get("unit", raw.get("type"))
    try:
        unit = IntervalUnit(str(raw_unit).strip().lower())
    except ValueError:
        raise InvalidScheduleError(f"param interval_schedule error: unknown unit {raw_unit!r}")

    raw_value = raw.get("value")
    invalid = InvalidScheduleError("param interval_schedule error: value must be a positive integer")
    if isinstance(raw_value, bool) or (isinstance(raw_value, float) and not raw_value.is_integer()):
        raise invalid
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise invalid
    if value <= 0:
        raise invalid

    return IntervalSchedule(value=value, unit=unit)


def parse_schedule(raw: Any, now: Optional[datetime] = None) -> Schedule:
    """
    解析定时规则

    Args:
        raw: cron 字符串 / 间隔字典 / 已解析的规则
        now: 校验 cron 未来触发时间的基准时间

    Raises:
        InvalidScheduleError: 规则非法
    """
    if isinstance(raw, CronSchedule):
        return parse_cron(raw.expression, now)
    if isinstance(raw, IntervalSchedule):
        return raw
    if isinstance(raw, str):
        return parse_cron(raw, now)
    if isinstance(raw, Mapping):
        return parse_interval(raw)
    raise InvalidScheduleError(f"param schedule error: unsupported schedule {raw!r}")


def parse_schedule_fields(
    schedule_type: Optional[str],
    schedule: Optional[str],
    interval_schedule: Optional[Mapping[str, Any]],
    now: Optional[datetime] = None,
) -> Schedule:
    """把接口/数据库中的两字段表示解析为定时规则变体"""
    if schedule_type == SCHEDULE_TYPE_INTERVAL or (not schedule_type and interval_schedule and not schedule):
        if not interval_schedule:
            raise InvalidScheduleError("param interval_schedule error: required for interval schedule")
        return parse_interval(interval_schedule)

    if schedule_type not in (None, "", SCHEDULE_TYPE_CRON):
        raise InvalidScheduleError(f"param schedule_type error: {schedule_type!r}")
    if not schedule:
        raise InvalidScheduleError("param schedule error: required for crontab schedule")
    return parse_cron(schedule, now)


def schedule_to_fields(schedule: Schedule) -> Tuple[str, Optional[str], Optional[Dict[str, Any]]]:
    """规则变体 -> (schedule_type, schedule, interval_schedule)，保证只有一个字段有值"""
    if isinstance(schedule, CronSchedule):
        return SCHEDULE_TYPE_CRON, schedule.expression, None
    return SCHEDULE_TYPE_INTERVAL, None, schedule.to_dict()


def next_fire_after(schedule: Schedule, from_: datetime) -> datetime:
    """计算 from_ 之后的下一次触发时间（纯函数）"""
    return schedule.next_fire_after(from_)


def describe(schedule: Schedule) -> str:
    if isinstance(schedule, CronSchedule):
        return f"cron({schedule.expression})"
    return f"every {schedule.value} {schedule.unit.value}"
