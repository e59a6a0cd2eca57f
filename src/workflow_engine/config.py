"""Workflow engine configuration using pydantic-settings.

This module defines the WorkflowEngineSettings class that reads
configuration from environment variables with the WORKFLOW_ prefix.

When database_url is not set the service runs in development mode with the
in-memory repository and audit recorder.
"""

from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.workflow_engine.audit.recorder import AuditSinkType


class WorkflowEngineSettings(BaseSettings):
    """Workflow engine configuration from environment variables.

    All environment variables are prefixed with WORKFLOW_ (e.g.,
    WORKFLOW_DATABASE_URL). List values such as audit_sinks are given as
    JSON, e.g. WORKFLOW_AUDIT_SINKS='["database", "logging"]'.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset means in-memory development mode
    database_url: Optional[str] = None

    db_min_pool_size: int = 2

    db_max_pool_size: int = 10

    # Per-statement timeout; a timeout surfaces as a DatabaseError
    db_command_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Audit Configuration
    # -------------------------------------------------------------------------
    audit_sinks: List[AuditSinkType] = [
        AuditSinkType.DATABASE,
        AuditSinkType.LOGGING,
    ]

    # How long a committed transition waits for its audit write
    audit_timeout_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    log_level: str = "INFO"

    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that a configured database URL has a PostgreSQL scheme."""
        if v is None:
            return v
        if not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("db_min_pool_size")
    @classmethod
    def validate_min_pool_size(cls, v: int) -> int:
        """Validate that the minimum pool size is positive."""
        if v < 1:
            raise ValueError("db_min_pool_size must be at least 1")
        return v

    @field_validator("db_command_timeout_seconds", "audit_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate that timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log_level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "WorkflowEngineSettings":
        """Validate that the pool maximum is not below the minimum."""
        if self.db_max_pool_size < self.db_min_pool_size:
            raise ValueError("db_max_pool_size must be >= db_min_pool_size")
        return self


def get_settings() -> WorkflowEngineSettings:
    """Create and return a WorkflowEngineSettings instance.

    Raises:
        pydantic.ValidationError: If a configured value is invalid.
    """
    return WorkflowEngineSettings()
