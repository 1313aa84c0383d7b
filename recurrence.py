"""
Repetition rules for recurring tasks and the next-occurrence evaluator.

Model: one task, one rule, one live anchor. A recurring task is a single row whose
next_due_at is advanced in place every time an occurrence is completed; no new task
instances are created.

compute_next_occurrence() is pure: it reads only its arguments (including "now") and
returns either the next instant strictly after now or EXHAUSTED.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from date_utils import ensure_utc, format_instant, parse_instant

# Weekday indices used by rules and clients: 0=Sunday .. 6=Saturday
DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
DAY_NAMES_FULL = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Exhausted:
    """Result marker: the rule's ends_at bound has been passed, no further occurrence."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "EXHAUSTED"


EXHAUSTED = Exhausted()


class RepetitionRule(BaseModel):
    """
    Validated repetition rule. Immutable; an edit replaces the whole rule.
    Wire names are camelCase (daysOfWeek, dayOfMonth, monthOfYear, endsAt); snake_case is accepted too.
    Fields that do not apply to the frequency (e.g. daysOfWeek on a monthly rule) are kept but ignored.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    frequency: Frequency
    interval: int = Field(default=1, ge=1, description="Frequency units between occurrences")
    days_of_week: tuple[int, ...] | None = Field(default=None, description="0=Sunday..6=Saturday; weekly only")
    day_of_month: int | None = Field(default=None, ge=1, le=31, description="Monthly and yearly; clamped to month length")
    month_of_year: int | None = Field(default=None, ge=1, le=12, description="Yearly only")
    ends_at: datetime | None = Field(default=None, description="No occurrence may fall after this instant")

    @field_validator("days_of_week")
    @classmethod
    def _check_days_of_week(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if not value:
            return None
        if len(set(value)) != len(value):
            raise ValueError("daysOfWeek must not contain duplicates")
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError("daysOfWeek values must be 0 (Sunday) through 6 (Saturday)")
        return tuple(sorted(value))

    @field_validator("ends_at")
    @classmethod
    def _ends_at_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def to_wire(self) -> dict[str, Any]:
        """Flat JSON-ready record with camelCase keys; unset optional fields are omitted."""
        out: dict[str, Any] = {"frequency": self.frequency.value, "interval": self.interval}
        if self.days_of_week:
            out["daysOfWeek"] = list(self.days_of_week)
        if self.day_of_month is not None:
            out["dayOfMonth"] = self.day_of_month
        if self.month_of_year is not None:
            out["monthOfYear"] = self.month_of_year
        if self.ends_at is not None:
            out["endsAt"] = format_instant(self.ends_at)
        return out


def parse_rule(data: Mapping[str, Any] | RepetitionRule | None) -> RepetitionRule | None:
    """
    Build a rule from a wire payload. None or {} means "no recurrence".
    Raises ValueError with a readable message for invalid shapes.
    """
    if data is None or isinstance(data, RepetitionRule):
        return data
    if not isinstance(data, Mapping):
        raise ValueError("recurrence must be an object")
    if not data:
        return None
    try:
        return RepetitionRule.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'recurrence'}: {err['msg']}" for err in e.errors()
        )
        raise ValueError(f"Invalid recurrence rule: {problems}") from e


# --- Persistence columns ---

RULE_COLUMNS = (
    "recurrence_frequency",
    "recurrence_interval",
    "recurrence_days_of_week",
    "recurrence_day_of_month",
    "recurrence_month_of_year",
    "recurrence_ends_at",
)


def rule_to_columns(rule: RepetitionRule | None) -> dict[str, Any]:
    """Flatten a rule into the recurrence_* task columns (all None clears the rule)."""
    if rule is None:
        return {col: None for col in RULE_COLUMNS}
    return {
        "recurrence_frequency": rule.frequency.value,
        "recurrence_interval": rule.interval,
        "recurrence_days_of_week": json.dumps(list(rule.days_of_week)) if rule.days_of_week else None,
        "recurrence_day_of_month": rule.day_of_month,
        "recurrence_month_of_year": rule.month_of_year,
        "recurrence_ends_at": format_instant(rule.ends_at),
    }


def rule_from_columns(row: Mapping[str, Any]) -> RepetitionRule | None:
    """Rebuild a rule from a task row; None when the task does not repeat."""
    freq = row.get("recurrence_frequency")
    if not freq:
        return None
    days = row.get("recurrence_days_of_week")
    if isinstance(days, str):
        days = json.loads(days)
    return RepetitionRule(
        frequency=freq,
        interval=row.get("recurrence_interval") or 1,
        days_of_week=days or None,
        day_of_month=row.get("recurrence_day_of_month"),
        month_of_year=row.get("recurrence_month_of_year"),
        ends_at=parse_instant(row.get("recurrence_ends_at")),
    )


# --- Evaluator ---


def _sunday_weekday(value: datetime) -> int:
    """Python: Mon=0..Sun=6. Rules: Sun=0..Sat=6."""
    return (value.weekday() + 1) % 7


def _advance_weekly(value: datetime, rule: RepetitionRule) -> datetime:
    if not rule.days_of_week:
        return value + timedelta(weeks=rule.interval)
    current = _sunday_weekday(value)
    later = [d for d in rule.days_of_week if d > current]
    if later:
        return value + timedelta(days=later[0] - current)
    # First listed day of the week that is `interval` weeks later
    return value + timedelta(days=7 * rule.interval - current + rule.days_of_week[0])


def _advance_once(value: datetime, rule: RepetitionRule) -> datetime:
    """Apply a single step of the rule. Always returns an instant later than value."""
    if rule.frequency is Frequency.DAILY:
        return value + timedelta(days=rule.interval)
    if rule.frequency is Frequency.WEEKLY:
        return _advance_weekly(value, rule)
    # relativedelta clamps the day to the target month's length (Jan 31 + 1 month = Feb 28/29)
    if rule.frequency is Frequency.MONTHLY:
        return value + relativedelta(months=rule.interval, day=rule.day_of_month)
    return value + relativedelta(years=rule.interval, month=rule.month_of_year, day=rule.day_of_month)


def _fixed_step(rule: RepetitionRule) -> timedelta | None:
    """Constant step length for rules that can jump over a gap arithmetically."""
    if rule.frequency is Frequency.DAILY:
        return timedelta(days=rule.interval)
    if rule.frequency is Frequency.WEEKLY and not rule.days_of_week:
        return timedelta(weeks=rule.interval)
    return None


def compute_next_occurrence(
    basis: datetime,
    rule: RepetitionRule,
    now: datetime,
) -> datetime | Exhausted:
    """
    Next qualifying instant strictly after `now`, advancing from `basis`.

    A stale basis (far in the past) is advanced repeatedly until the result passes now.
    Returns EXHAUSTED as soon as a candidate lies after rule.ends_at.
    """
    basis = ensure_utc(basis)
    now = ensure_utc(now)
    candidate = _advance_once(basis, rule)
    step = _fixed_step(rule)
    if step is not None and candidate <= now:
        candidate += step * ((now - candidate) // step + 1)
    while True:
        if rule.ends_at is not None and candidate > rule.ends_at:
            return EXHAUSTED
        if candidate > now:
            return candidate
        candidate = _advance_once(candidate, rule)


# --- Labels and presets ---


def recurrence_label(rule: RepetitionRule) -> str:
    """Short human-readable description, e.g. 'Every 2 weeks (Mon, Thu)'."""
    n = rule.interval
    if rule.frequency is Frequency.DAILY:
        return "Every day" if n == 1 else f"Every {n} days"
    if rule.frequency is Frequency.WEEKLY:
        if rule.days_of_week:
            names = ", ".join(DAY_NAMES[d] for d in rule.days_of_week)
            if n == 1:
                if len(rule.days_of_week) == 1:
                    return f"Every {DAY_NAMES_FULL[rule.days_of_week[0]]}"
                return f"Every {names}"
            return f"Every {n} weeks ({names})"
        return "Every week" if n == 1 else f"Every {n} weeks"
    if rule.frequency is Frequency.MONTHLY:
        if rule.day_of_month:
            if n == 1:
                return f"On day {rule.day_of_month} of every month"
            return f"On day {rule.day_of_month} every {n} months"
        return "Every month" if n == 1 else f"Every {n} months"
    every = "every year" if n == 1 else f"every {n} years"
    if rule.month_of_year and rule.day_of_month:
        return f"On {MONTH_NAMES[rule.month_of_year - 1]} {rule.day_of_month} {every}"
    if rule.day_of_month:
        return f"On day {rule.day_of_month} {every}"
    if rule.month_of_year:
        return f"In {MONTH_NAMES[rule.month_of_year - 1]} {every}"
    return "Every year" if n == 1 else f"Every {n} years"


class RecurrencePreset(BaseModel):
    label: str
    rule: RepetitionRule


RECURRENCE_PRESETS: tuple[RecurrencePreset, ...] = (
    RecurrencePreset(label="Every day", rule=RepetitionRule(frequency="daily")),
    RecurrencePreset(label="Every week", rule=RepetitionRule(frequency="weekly")),
    RecurrencePreset(label="Weekdays", rule=RepetitionRule(frequency="weekly", days_of_week=(1, 2, 3, 4, 5))),
    RecurrencePreset(label="Every month", rule=RepetitionRule(frequency="monthly")),
    RecurrencePreset(label="Every year", rule=RepetitionRule(frequency="yearly")),
)
