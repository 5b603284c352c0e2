"""Schedule configuration and fire-time computation.

Occurrences come from APScheduler triggers; the monitor only asks whether an
occurrence fell inside the window since its last tick.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

# day_of_week in trigger configs counts from Sunday.
DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

# Anchor for interval schedules without a start date.
INTERVAL_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)

_TIME = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def crontab_day_of_week(field: str) -> str:
    """Translate numeric crontab weekdays (0 or 7 = Sunday) to day names."""

    def name(token: str) -> str:
        if token.isdigit():
            return DAY_NAMES[int(token) % 7]
        return token

    parts = []
    for part in field.split(","):
        step = ""
        if "/" in part:
            part, step = part.split("/", 1)
            step = "/" + step
        if "-" in part:
            low, high = part.split("-", 1)
            part = f"{name(low)}-{name(high)}"
        else:
            part = name(part)
        parts.append(part + step)
    return ",".join(parts)


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal[
        "once", "daily", "weekly", "monthly", "yearly", "interval", "custom_cron"
    ]
    timezone: str = "UTC"
    time: str = "00:00"
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    month: Optional[int] = None
    cron_expression: Optional[str] = None
    interval_seconds: Optional[float] = None
    run_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    exclude_weekends: bool = False
    exclude_holidays: bool = False
    holidays: List[date] = []

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{value}'") from None
        return value

    @field_validator("time")
    @classmethod
    def _clock_time(cls, value: str) -> str:
        if not _TIME.match(value):
            raise ValueError(f"time must be HH:MM, got '{value}'")
        return value

    @model_validator(mode="after")
    def _required_fields(self) -> "ScheduleConfig":
        if self.type == "weekly" and self.day_of_week is None:
            raise ValueError("weekly schedules need day_of_week")
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be 0 (Sunday) to 6 (Saturday)")
        if self.type in ("monthly", "yearly") and self.day_of_month is None:
            raise ValueError(f"{self.type} schedules need day_of_month")
        if self.type == "yearly" and self.month is None:
            raise ValueError("yearly schedules need month")
        if self.type == "interval" and not self.interval_seconds:
            raise ValueError("interval schedules need a positive interval_seconds")
        if self.type == "custom_cron" and not self.cron_expression:
            raise ValueError("custom_cron schedules need cron_expression")
        if self.type == "once" and self.run_at is None and self.start_date is None:
            raise ValueError("once schedules need run_at or start_date")
        self.build_trigger()
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def build_trigger(self) -> BaseTrigger:
        hour, minute = (int(p) for p in self.time.split(":"))
        window = dict(start_date=self.start_date, end_date=self.end_date, timezone=self.tz)
        if self.type == "once":
            return DateTrigger(run_date=self.run_at or self.start_date, timezone=self.tz)
        if self.type == "interval":
            return IntervalTrigger(
                seconds=self.interval_seconds,
                start_date=self.start_date or INTERVAL_EPOCH,
                end_date=self.end_date,
                timezone=self.tz,
            )
        if self.type == "custom_cron":
            fields = self.cron_expression.split()
            if len(fields) != 5:
                raise ValueError(
                    f"cron_expression needs 5 fields, got {len(fields)}: '{self.cron_expression}'"
                )
            minute_f, hour_f, day_f, month_f, dow_f = fields
            return CronTrigger(
                minute=minute_f,
                hour=hour_f,
                day=day_f,
                month=month_f,
                day_of_week=crontab_day_of_week(dow_f),
                **window,
            )
        if self.type == "weekly":
            return CronTrigger(
                day_of_week=DAY_NAMES[self.day_of_week], hour=hour, minute=minute, **window
            )
        if self.type == "monthly":
            return CronTrigger(day=self.day_of_month, hour=hour, minute=minute, **window)
        if self.type == "yearly":
            return CronTrigger(
                month=self.month, day=self.day_of_month, hour=hour, minute=minute, **window
            )
        return CronTrigger(hour=hour, minute=minute, **window)


class Schedule:
    """Answers "is an occurrence due?" for one schedule configuration."""

    def __init__(self, config: ScheduleConfig) -> None:
        self.config = config
        self.trigger = config.build_trigger()

    def is_excluded(self, occurrence: datetime) -> bool:
        local = occurrence.astimezone(self.config.tz).date()
        if self.config.exclude_weekends and local.weekday() >= 5:
            return True
        if self.config.exclude_holidays and local in self.config.holidays:
            return True
        return False

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """First non-excluded occurrence strictly after ``after``."""
        previous = None
        candidate = self.trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
        for _ in range(1000):
            if candidate is None:
                return None
            if candidate > after and not self.is_excluded(candidate):
                return candidate
            previous = candidate
            candidate = self.trigger.get_next_fire_time(
                previous, previous + timedelta(microseconds=1)
            )
        return None

    def due_occurrence(
        self, last_fired: Optional[datetime], now: datetime, grace_seconds: float
    ) -> Optional[datetime]:
        """Latest non-excluded occurrence in ``(max(last_fired, now - grace), now]``."""
        low = now - timedelta(seconds=grace_seconds)
        if last_fired is not None and last_fired > low:
            low = last_fired
        due = None
        candidate = self.trigger.get_next_fire_time(None, low + timedelta(microseconds=1))
        while candidate is not None and candidate <= now:
            if candidate > low and not self.is_excluded(candidate):
                due = candidate
            previous = candidate
            candidate = self.trigger.get_next_fire_time(
                previous, previous + timedelta(microseconds=1)
            )
        return due
