"""
SLA Catalog
============

Pydantic models for the YAML catalog of schedules, holiday calendars,
SLA rules and escalation ladders.

The catalog is the configuration surface seeded into the relational
store at startup and re-applied when the file changes. Times of day are
written as ``"HH:MM"`` and normalized to minutes on load; ``"24:00"``
is end of day.

Example:
    schedules:
      - name: business-hours
        timezone: Asia/Kolkata
        days:
          monday: {start: "09:00", end: "17:00"}
        breaks:
          - {start: "13:00", end: "14:00"}
"""

from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import (
    Weekday, TriggerType, ReferenceThreshold, RecipientType,
)
from core.exceptions import ConfigurationError
from sla.domain.value_objects import to_minute_of_day, resolve_timezone

WEEKDAY_NAMES = {w.name.lower(): w for w in Weekday}


def _weekday(value) -> Weekday:
    if isinstance(value, int):
        return Weekday(value)
    name = str(value).strip().lower()
    if name not in WEEKDAY_NAMES:
        raise ValueError(f"Unknown weekday '{value}'")
    return WEEKDAY_NAMES[name]


class DayConfig(BaseModel):
    """Working window of one weekday."""
    is_working_day: bool = True
    start: int = Field(default=0, description="Minutes from midnight")
    end: int = Field(default=1440, description="Minutes from midnight, 1440 = 24:00")

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_time(cls, v):
        return to_minute_of_day(v)

    @model_validator(mode="after")
    def check_window(self) -> "DayConfig":
        if self.is_working_day and self.start >= self.end:
            raise ValueError("day start must be before end")
        return self


class BreakConfig(BaseModel):
    """Break inside the working window; empty ``days`` means every day."""
    name: Optional[str] = None
    start: int
    end: int
    days: List[Weekday] = Field(default_factory=list)

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_time(cls, v):
        return to_minute_of_day(v)

    @field_validator("days", mode="before")
    @classmethod
    def parse_days(cls, v):
        return [_weekday(d) for d in (v or [])]

    @model_validator(mode="after")
    def check_window(self) -> "BreakConfig":
        if self.start >= self.end:
            raise ValueError("break start must be before end")
        return self


class ScheduleConfig(BaseModel):
    """Business-hours schedule."""
    name: str
    description: Optional[str] = None
    timezone: str = "UTC"
    is_24x7: bool = False
    days: Dict[Weekday, DayConfig] = Field(default_factory=dict)
    breaks: List[BreakConfig] = Field(default_factory=list)

    @field_validator("days", mode="before")
    @classmethod
    def parse_days(cls, v):
        return {_weekday(k): cfg for k, cfg in (v or {}).items()}

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            resolve_timezone(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return v


class HolidayConfig(BaseModel):
    """Full-day holiday, or partial when ``start``/``end`` are given."""
    model_config = ConfigDict(populate_by_name=True)

    day: date = Field(alias="date")
    name: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_time(cls, v):
        return None if v is None else to_minute_of_day(v)

    @property
    def is_full_day(self) -> bool:
        return self.start is None or self.end is None


class HolidayCalendarConfig(BaseModel):
    """Named set of holiday dates."""
    name: str
    year: Optional[int] = None
    description: Optional[str] = None
    dates: List[HolidayConfig] = Field(default_factory=list)


class EscalationConfig(BaseModel):
    """One level of a rule's escalation ladder."""
    level: int = Field(ge=1)
    trigger_type: TriggerType
    reference_threshold: Optional[ReferenceThreshold] = None
    trigger_offset_minutes: Optional[int] = None
    repeat_interval_minutes: Optional[int] = Field(default=None, ge=1)
    max_repeat_count: Optional[int] = Field(default=None, ge=1)
    recipient_type: RecipientType = RecipientType.ASSIGNED_ENGINEER
    recipient_role: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    number_of_recipients: int = Field(default=3, ge=1)
    template_id: Optional[str] = None
    include_ticket_details: bool = True
    is_active: bool = True

    @model_validator(mode="after")
    def check_recipients(self) -> "EscalationConfig":
        if self.recipient_type == RecipientType.STATIC and not self.recipients:
            raise ValueError("static escalations need at least one recipient")
        if self.recipient_type == RecipientType.CUSTOM_ROLE and not self.recipient_role:
            raise ValueError("custom_role escalations need recipient_role")
        return self


class RuleConfig(BaseModel):
    """SLA rule with its filters, TATs and escalation ladder."""
    name: str
    description: Optional[str] = None
    priority_order: int
    is_vip_override: bool = False
    asset_importance: Optional[str] = None
    asset_categories: Optional[str] = None
    user_category: Optional[str] = None
    ticket_type: Optional[str] = None
    ticket_channels: Optional[str] = None
    priority: Optional[str] = None
    min_tat: int = Field(default=30, ge=1)
    avg_tat: int = Field(default=240, ge=1)
    max_tat: int = Field(default=480, ge=1)
    schedule: Optional[str] = None
    holiday_calendar: Optional[str] = None
    allow_pause_resume: bool = True
    pause_conditions: Dict[str, bool] = Field(default_factory=dict)
    is_active: bool = True
    escalations: List[EscalationConfig] = Field(default_factory=list)

    @field_validator(
        "asset_importance", "asset_categories", "user_category",
        "ticket_type", "ticket_channels", "priority",
        mode="before",
    )
    @classmethod
    def join_lists(cls, v):
        if isinstance(v, (list, tuple)):
            return ",".join(str(i) for i in v)
        return v

    @model_validator(mode="after")
    def check_tats(self) -> "RuleConfig":
        if not self.min_tat < self.avg_tat < self.max_tat:
            raise ValueError(f"rule '{self.name}' requires min_tat < avg_tat < max_tat")
        return self


class SlaCatalog(BaseModel):
    """
    Complete SLA configuration loaded from YAML.

    Names are the identities used to upsert into the store, and rules
    reference schedules and holiday calendars by name.
    """
    schedules: List[ScheduleConfig] = Field(default_factory=list)
    holiday_calendars: List[HolidayCalendarConfig] = Field(default_factory=list)
    rules: List[RuleConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self) -> "SlaCatalog":
        schedules = {s.name for s in self.schedules}
        calendars = {c.name for c in self.holiday_calendars}
        for rule in self.rules:
            if rule.schedule and rule.schedule not in schedules:
                raise ValueError(f"rule '{rule.name}' references unknown schedule '{rule.schedule}'")
            if rule.holiday_calendar and rule.holiday_calendar not in calendars:
                raise ValueError(
                    f"rule '{rule.name}' references unknown holiday calendar '{rule.holiday_calendar}'"
                )
        return self
