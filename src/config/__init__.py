"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="assignment-orchestrator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/facility_ops",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Orchestrator ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to escalation policy YAML file"
    )
    tick_interval_seconds: int = Field(
        default=60,
        description="Seconds between orchestration ticks (0 disables the in-process scheduler)",
        ge=0,
        le=299
    )
    tick_shutdown_timeout_seconds: float = Field(
        default=30.0,
        description="How long shutdown waits for an aborting tick to finish its record in flight",
        gt=0
    )
    ticket_link_base: str = Field(
        default="/staff/maintenance/requests",
        description="Path prefix for ticket deep links in notifications"
    )

    # ========== Notification webhook ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Optional webhook that mirrors every notification record"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
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


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TicketPriority(str, Enum):
    """Ticket priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AvailabilityStatus(str, Enum):
    """Staff availability states."""
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class StaffRole(str, Enum):
    """Application roles used as notification audiences."""
    FIELD_STAFF = "field_staff"
    OPS_SUPERVISOR = "ops_supervisor"
    ADMIN = "admin"


class AssignmentType(str, Enum):
    """How a ticket came to be assigned."""
    AUTO = "auto"
    REASSIGNMENT = "reassignment"
    MANUAL = "manual"


class EscalationType(str, Enum):
    """What triggered an escalation."""
    SLA_BREACH = "sla_breach"
    ACKNOWLEDGEMENT_TIMEOUT = "acknowledgement_timeout"


class NotificationType(str, Enum):
    """Notification categories understood by the notification sink."""
    ASSIGNMENT = "assignment"
    REASSIGNMENT = "reassignment"
    ESCALATION = "escalation"
    CRISIS = "crisis"


# ========== Lists for validation ==========

ACTIVE_STATUSES = [TicketStatus.PENDING, TicketStatus.IN_PROGRESS]
MIN_ESCALATION_LEVEL = 1
MAX_ESCALATION_LEVEL = 5
ASSIGNABLE_STAFF_LEVELS = [1, 2]
