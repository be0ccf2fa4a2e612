"""
Audit logging for template lifecycle transitions.

Provides structured logging with structlog for:
- Draft saves, publishes, suspends and activations
- Snapshots and restores
- Failed transitions (engine errors, rejected publishes)
- Performance tracking (duration_ms)
"""

import logging
import structlog
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field


def configure_audit_logging(level: str = "INFO") -> None:
    """
    Configure structlog with JSON output for audit logging.

    Uses stdout for container compatibility (no file configuration).

    Args:
        level: Minimum level name (e.g. "INFO", "WARNING")
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_audit_logger(name: str) -> structlog.BoundLogger:
    """
    Get a bound logger with the specified module name.

    Args:
        name: Module name for log attribution (e.g., "lifecycle")
    """
    return structlog.get_logger(module=name)


class LifecycleAuditEvent(BaseModel):
    """Audit event model for lifecycle logging."""

    action: str = Field(
        description="Lifecycle action (e.g., 'publish', 'suspend', 'restore')"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event"
    )
    tenant_id: str = Field(description="Scope tenant")
    app_id: Optional[str] = None
    context_id: Optional[str] = None
    template_key: Optional[str] = Field(
        default=None,
        description="Template the action applied to"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Draft, published or snapshot id"
    )
    version: Optional[int] = None
    user_id: str = Field(default="system", description="Acting user")
    result: str = Field(
        default="SUCCESS",
        description="SUCCESS or FAILED"
    )
    duration_ms: int = Field(
        default=0,
        ge=0,
        description="Time taken by the action in milliseconds"
    )
    reason: Optional[str] = Field(
        default=None,
        description="Error message for FAILED actions"
    )


def log_lifecycle_event(
    logger: structlog.BoundLogger,
    event: LifecycleAuditEvent
) -> None:
    """
    Log a lifecycle action with appropriate log level.

    Logs at INFO level for SUCCESS, WARNING for FAILED.
    """
    event_dict = event.model_dump()
    # Convert datetime to ISO string for JSON serialization
    event_dict["timestamp"] = event.timestamp.isoformat()

    if event.result == "SUCCESS":
        logger.info("lifecycle_event", **event_dict)
    else:
        logger.warning("lifecycle_event", **event_dict)
