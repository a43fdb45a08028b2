"""
Configuration Module
====================

Application settings and workflow constants using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="rma-workflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Case Store ==========
    case_store_backend: Literal["sql", "memory"] = Field(
        default="sql",
        description="Case store implementation (sql or memory)"
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/rma",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Workflow Rules ==========
    rules_config_path: Path = Field(
        default=Path("rules_config.yaml"),
        description="Path to workflow rules YAML file"
    )

    # ========== SLA Sweeper ==========
    sweep_interval_seconds: int = Field(
        default=300,
        description="Seconds between SLA sweep cycles (0 disables the scheduler)",
        ge=0
    )
    sweep_case_timeout_seconds: float = Field(
        default=10.0,
        description="Per-case processing timeout inside a sweep cycle",
        gt=0
    )
    sweep_late_write_grace_seconds: float = Field(
        default=30.0,
        description="How long a sweep cycle waits for escalation writes that overran the per-case timeout",
        ge=0
    )

    # ========== Notifier ==========
    notifier_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook of the e-mail/SMS gateway that delivers notifications"
    )
    notifier_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notifier calls",
        ge=0.1,
        le=30
    )
    notifier_max_retries: int = Field(
        default=3,
        description="Delivery attempts per notification",
        ge=1,
        le=10
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

    @field_validator("sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        """Interval is either disabled (0) or at least 10 seconds."""
        if 0 < v < 10:
            raise ValueError("sweep_interval_seconds must be 0 or >= 10")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Stage(str, Enum):
    """RMA case stages, in forward order, plus the Rejected side exit."""
    UNDER_REVIEW = "Under Review"
    SENT_TO_CDS = "Sent to CDS"
    CDS_APPROVED = "CDS Approved"
    REPLACEMENT_SHIPPED = "Replacement Shipped"
    REPLACEMENT_RECEIVED = "Replacement Received"
    FAULTY_PART_RETURNED = "Faulty Part Returned"
    CDS_CONFIRMED_RETURN = "CDS Confirmed Return"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class Priority(str, Enum):
    """Case priority levels, lowest first."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class WarrantyStatus(str, Enum):
    """Warranty status recorded at intake."""
    IN_WARRANTY = "In Warranty"
    EXTENDED_WARRANTY = "Extended Warranty"
    OUT_OF_WARRANTY = "Out of Warranty"
    EXPIRED = "Expired"


class CommentCategory(str, Enum):
    """Comment categories on the case log."""
    GENERAL = "general"
    STATUS = "status"
    TECHNICAL = "technical"
    CUSTOMER = "customer"


class AssignmentSource(str, Enum):
    """How the current owner was chosen."""
    RULE = "rule"
    MANUAL = "manual"
    ESCALATION = "escalation"


class EventType(str, Enum):
    """Outbound notification events."""
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    ESCALATION = "escalation"
    COMMENT = "comment"


# ========== Lists for validation ==========

STAGE_ORDER = [
    Stage.UNDER_REVIEW, Stage.SENT_TO_CDS, Stage.CDS_APPROVED,
    Stage.REPLACEMENT_SHIPPED, Stage.REPLACEMENT_RECEIVED,
    Stage.FAULTY_PART_RETURNED, Stage.CDS_CONFIRMED_RETURN, Stage.COMPLETED
]
TERMINAL_STAGES = [Stage.COMPLETED, Stage.REJECTED]
ACTIVE_STAGES = [s for s in Stage if s not in TERMINAL_STAGES]
PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]
INTERNAL_CATEGORIES = [CommentCategory.STATUS, CommentCategory.TECHNICAL]
SYSTEM_AUTHOR = "system"
