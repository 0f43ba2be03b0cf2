"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum, IntEnum
from datetime import date
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/sla",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_catalog_path: Path = Field(
        default=Path("sla_catalog.yaml"),
        description="Path to the YAML catalog of schedules, holidays and SLA rules"
    )
    sla_sweep_interval_seconds: int = Field(
        default=300,
        description="Seconds between escalation sweeps",
        ge=10
    )
    sla_calendar_cache_ttl_seconds: int = Field(
        default=300,
        description="Lifetime of cached schedules and holiday calendars",
        ge=0
    )
    sla_max_calendar_walk_days: int = Field(
        default=366,
        description="Upper bound on days walked when searching for working time",
        ge=7
    )
    sla_default_pause_statuses: List[str] = Field(
        default=["pending_closure", "awaiting_info", "on_hold"],
        description="Ticket statuses that pause the SLA clock for every rule"
    )
    sla_closing_statuses: List[str] = Field(
        default=["closed", "cancelled"],
        description="Ticket statuses that stop SLA tracking"
    )
    sla_default_reopen_mode: str = Field(
        default="continue",
        description="Reopen mode used by the lifecycle hook (reset, continue, new_sla)"
    )
    sla_imminent_breach_offset_minutes: int = Field(
        default=-30,
        description="Default trigger offset from max TAT for imminent breach escalations",
        le=0
    )
    sla_approaching_breach_threshold_minutes: int = Field(
        default=30,
        description="Remaining minutes below which a ticket is approaching breach",
        ge=1
    )
    sla_apply_rule_changes: bool = Field(
        default=True,
        description="Switch tracked tickets to a newly matched rule on priority/asset changes"
    )
    sla_event_queue_size: int = Field(
        default=1000,
        description="Capacity of the lifecycle event queue",
        ge=1
    )

    # ========== Notification Webhook ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving escalation messages (unset = log only)"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )
    notification_max_retries: int = Field(
        default=3,
        description="Attempts per recipient before reporting failure",
        ge=1,
        le=10
    )

    # ========== Ticket Directory ==========
    ticket_service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the ticket service REST API"
    )
    ticket_service_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for ticket service calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("sla_default_reopen_mode")
    @classmethod
    def validate_reopen_mode(cls, v: str) -> str:
        """Ensure the reopen mode is a known one."""
        if v not in VALID_REOPEN_MODES:
            raise ValueError(f"sla_default_reopen_mode must be one of {VALID_REOPEN_MODES}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class SlaStatus(str, Enum):
    """SLA status of a tracked ticket."""
    ON_TRACK = "on_track"
    WARNING = "warning"
    CRITICAL = "critical"
    BREACHED = "breached"


class SlaZone(str, Enum):
    """Display zone paired with each status."""
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"


class TriggerType(str, Enum):
    """Escalation trigger types."""
    WARNING_ZONE = "warning_zone"
    IMMINENT_BREACH = "imminent_breach"
    BREACHED = "breached"
    RECURRING_BREACH = "recurring_breach"


class ReferenceThreshold(str, Enum):
    """TAT an escalation trigger point is measured from."""
    MIN_TAT = "min_tat"
    AVG_TAT = "avg_tat"
    MAX_TAT = "max_tat"


class Weekday(IntEnum):
    """Day of week, Sunday first."""
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, day: date) -> "Weekday":
        return cls((day.weekday() + 1) % 7)


class ReopenMode(str, Enum):
    """How a closed tracking record is revived."""
    RESET = "reset"
    CONTINUE = "continue"
    NEW_SLA = "new_sla"


class DeliveryStatus(str, Enum):
    """Overall delivery status of an escalation notification."""
    PENDING = "pending"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


class RecipientOutcome(str, Enum):
    """Per-recipient delivery outcome."""
    SENT = "sent"
    FAILED = "failed"
    LOGGED = "logged"


class PauseKind(str, Enum):
    """Pause log entry kinds."""
    PAUSE = "pause"
    CLOSED = "closed"


class RecipientType(str, Enum):
    """Ways an escalation rule names its recipients."""
    ASSIGNED_ENGINEER = "assigned_engineer"
    COORDINATOR = "coordinator"
    IT_HEAD = "it_head"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    CUSTOM_ROLE = "custom_role"
    STATIC = "static"


class LifecycleEventType(str, Enum):
    """Ticket lifecycle events accepted by the engine."""
    TICKET_CREATED = "ticket_created"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    ASSET_LINKED = "asset_linked"
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_REOPENED = "ticket_reopened"


# ========== Lists for validation ==========

VALID_SLA_STATUSES = [s.value for s in SlaStatus]
VALID_TRIGGER_TYPES = [t.value for t in TriggerType]
VALID_REFERENCE_THRESHOLDS = [r.value for r in ReferenceThreshold]
VALID_REOPEN_MODES = [m.value for m in ReopenMode]
VALID_RECIPIENT_TYPES = [r.value for r in RecipientType]

ASSET_IMPORTANCE_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}


# Global settings instance
settings = get_settings()
