"""
Unit tests for the SLA catalog models.

WHAT: Tests validation of the YAML catalog and escalation defaults.

WHY: The catalog is the only configuration surface; a bad file must be
rejected before it reaches the store.

HOW: Validates dicts with Pydantic and parses the shipped catalog file.
"""

from datetime import date
from pathlib import Path

import pytest
from pydantic import ValidationError

from config import Weekday, TriggerType, ReferenceThreshold, RecipientType, settings
from sla.domain.catalog import SlaCatalog, EscalationConfig, ScheduleConfig, HolidayConfig
from sla.infrastructure.external import SlaCatalogManager
from sla.infrastructure.repositories import escalation_defaults

from conftest import TEST_CATALOG


SHIPPED_CATALOG = Path(__file__).resolve().parents[1] / "sla_catalog.yaml"


def rule(**overrides):
    data = {"name": "Rule", "priority_order": 1, "min_tat": 30, "avg_tat": 60, "max_tat": 120}
    data.update(overrides)
    return data


class TestScheduleConfig:
    """Tests for schedule parsing."""

    def test_weekday_names_and_times(self):
        schedule = ScheduleConfig.model_validate({
            "name": "late",
            "timezone": "Europe/Berlin",
            "days": {"monday": {"start": "12:00", "end": "24:00"}, "Saturday": {"start": "10:00", "end": "14:00"}},
            "breaks": [{"start": "18:00", "end": "18:30", "days": ["monday"]}],
        })

        assert schedule.days[Weekday.MONDAY].start == 720
        assert schedule.days[Weekday.MONDAY].end == 1440
        assert Weekday.SATURDAY in schedule.days
        assert schedule.breaks[0].days == [Weekday.MONDAY]

    def test_unknown_timezone(self):
        with pytest.raises(ValidationError):
            ScheduleConfig.model_validate({"name": "x", "timezone": "Mars/Olympus"})

    def test_unknown_weekday(self):
        with pytest.raises(ValidationError):
            ScheduleConfig.model_validate({"name": "x", "days": {"funday": {"start": "09:00", "end": "17:00"}}})

    def test_day_window_must_be_ordered(self):
        with pytest.raises(ValidationError):
            ScheduleConfig.model_validate({"name": "x", "days": {"monday": {"start": "17:00", "end": "09:00"}}})


class TestHolidayConfig:
    """Tests for holiday parsing."""

    def test_full_day(self):
        holiday = HolidayConfig.model_validate({"date": "2025-01-26", "name": "Republic Day"})

        assert holiday.day == date(2025, 1, 26)
        assert holiday.is_full_day

    def test_partial_day(self):
        holiday = HolidayConfig.model_validate({"date": "2025-12-24", "start": "13:00", "end": "17:00"})

        assert not holiday.is_full_day
        assert (holiday.start, holiday.end) == (780, 1020)


class TestRuleConfig:
    """Tests for rule and escalation validation."""

    def test_list_filters_become_comma_sets(self):
        catalog = SlaCatalog.model_validate({"rules": [rule(asset_importance=["critical", "high"])]})

        assert catalog.rules[0].asset_importance == "critical,high"

    def test_tats_must_increase(self):
        with pytest.raises(ValidationError):
            SlaCatalog.model_validate({"rules": [rule(min_tat=120, avg_tat=60, max_tat=240)]})

    def test_unknown_schedule_reference(self):
        with pytest.raises(ValidationError) as exc_info:
            SlaCatalog.model_validate({"rules": [rule(schedule="missing")]})

        assert "unknown schedule" in str(exc_info.value)

    def test_static_escalation_needs_recipients(self):
        with pytest.raises(ValidationError):
            EscalationConfig.model_validate({"level": 1, "trigger_type": "breached", "recipient_type": "static"})

    def test_custom_role_needs_role(self):
        with pytest.raises(ValidationError):
            EscalationConfig.model_validate({"level": 1, "trigger_type": "breached", "recipient_type": "custom_role"})

    def test_sample_catalog_is_valid(self):
        catalog = SlaCatalog.model_validate(TEST_CATALOG)

        assert [r.name for r in catalog.rules] == ["VIP", "Critical assets", "Default"]
        assert catalog.rules[1].escalations[3].max_repeat_count == 2


class TestEscalationDefaults:
    """Tests for trigger type defaults applied when the catalog is stored."""

    def test_warning_defaults_to_min_tat(self):
        config = EscalationConfig(level=1, trigger_type=TriggerType.WARNING_ZONE)

        assert escalation_defaults(config) == (ReferenceThreshold.MIN_TAT, 0)

    def test_imminent_breach_defaults_before_max_tat(self):
        config = EscalationConfig(level=2, trigger_type=TriggerType.IMMINENT_BREACH)

        assert escalation_defaults(config) == (
            ReferenceThreshold.MAX_TAT, settings.sla_imminent_breach_offset_minutes
        )

    def test_breach_defaults_to_max_tat(self):
        config = EscalationConfig(level=3, trigger_type=TriggerType.RECURRING_BREACH)

        assert escalation_defaults(config) == (ReferenceThreshold.MAX_TAT, 0)

    def test_explicit_values_win(self):
        config = EscalationConfig(
            level=1,
            trigger_type=TriggerType.WARNING_ZONE,
            reference_threshold=ReferenceThreshold.AVG_TAT,
            trigger_offset_minutes=-15,
            recipient_type=RecipientType.IT_HEAD,
        )

        assert escalation_defaults(config) == (ReferenceThreshold.AVG_TAT, -15)


class TestShippedCatalog:
    """The catalog file shipped with the service must always load."""

    def test_parses(self):
        catalog = SlaCatalogManager.parse(SHIPPED_CATALOG)

        assert {s.name for s in catalog.schedules} == {"business-hours", "extended-hours", "always-on"}
        assert catalog.rules[-1].name == "Default"
        assert any(not h.is_full_day for h in catalog.holiday_calendars[0].dates)
