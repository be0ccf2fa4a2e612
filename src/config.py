"""
Configuration and service wiring.

Settings are read from environment variables (a local .env file is loaded
first for development). build_services() creates the stores, engine,
dispatcher and coordinator once per process; callers pass the resulting
TemplateService around explicitly.

Environment variables:
- PTM_DATA_DIR: directory for JSON tables (unset keeps everything in memory)
- PTM_ENGINE_BASE_URL / PTM_ENGINE_USERNAME / PTM_ENGINE_PASSWORD: REST
  engine endpoint (unset uses the in-memory engine)
- PTM_ENGINE_TIMEOUT_SECONDS: bound on every engine call (default 10)
- PTM_NOTIFICATION_WEBHOOK_URL: webhook for lifecycle events (unset logs them)
- PTM_DUPLICATE_DRAFT_POLICY: reject | overwrite
- PTM_RESTORE_POLICY: overwrite | create | new_key
- PTM_UNCHANGED_PUBLISH_POLICY: allow | reject
- PTM_BLOCK_SUSPEND_WITH_RUNNING_INSTANCES: true | false
- PTM_MAX_BPMN_SIZE_BYTES, PTM_DEFAULT_PAGE_LIMIT, PTM_MAX_PAGE_LIMIT
- PTM_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from src.categories.tree import CategoryTreeStore
from src.engine.client import GuardedExecutionEngine, HttpExecutionEngine, InMemoryExecutionEngine
from src.notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from src.templates.audit import configure_audit_logging
from src.templates.lifecycle import LifecycleCoordinator, LifecyclePolicies
from src.templates.schemas import DuplicateDraftPolicy, RestorePolicy, UnchangedPublishPolicy
from src.templates.snapshots import SnapshotStore
from src.templates.storage import DraftTemplateRepository, PublishedTemplateRepository
from src.templates.validation import MAX_BPMN_SIZE_BYTES


logger = logging.getLogger(__name__)


ENV_VARS = {
    "data_dir": "PTM_DATA_DIR",
    "engine_base_url": "PTM_ENGINE_BASE_URL",
    "engine_username": "PTM_ENGINE_USERNAME",
    "engine_password": "PTM_ENGINE_PASSWORD",
    "engine_timeout_seconds": "PTM_ENGINE_TIMEOUT_SECONDS",
    "notification_webhook_url": "PTM_NOTIFICATION_WEBHOOK_URL",
    "duplicate_draft_policy": "PTM_DUPLICATE_DRAFT_POLICY",
    "restore_policy": "PTM_RESTORE_POLICY",
    "unchanged_publish_policy": "PTM_UNCHANGED_PUBLISH_POLICY",
    "block_suspend_with_running_instances": "PTM_BLOCK_SUSPEND_WITH_RUNNING_INSTANCES",
    "max_bpmn_size_bytes": "PTM_MAX_BPMN_SIZE_BYTES",
    "default_page_limit": "PTM_DEFAULT_PAGE_LIMIT",
    "max_page_limit": "PTM_MAX_PAGE_LIMIT",
    "log_level": "PTM_LOG_LEVEL",
}

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseModel):
    """Runtime configuration."""
    data_dir: Optional[Path] = Field(
        default=None,
        description="Directory for JSON tables; None keeps state in memory"
    )
    engine_base_url: Optional[str] = Field(
        default=None,
        description="Flowable-style REST base URL; None uses the in-memory engine"
    )
    engine_username: Optional[str] = None
    engine_password: Optional[str] = None
    engine_timeout_seconds: float = Field(default=10.0, gt=0)
    notification_webhook_url: Optional[str] = None
    duplicate_draft_policy: DuplicateDraftPolicy = DuplicateDraftPolicy.REJECT
    restore_policy: RestorePolicy = RestorePolicy.OVERWRITE
    unchanged_publish_policy: UnchangedPublishPolicy = UnchangedPublishPolicy.ALLOW
    block_suspend_with_running_instances: bool = True
    max_bpmn_size_bytes: int = Field(default=MAX_BPMN_SIZE_BYTES, gt=0)
    default_page_limit: int = Field(default=20, ge=1)
    max_page_limit: int = Field(default=100, ge=1)
    log_level: str = "INFO"

    @field_validator('duplicate_draft_policy', 'restore_policy', 'unchanged_publish_policy', mode='before')
    @classmethod
    def lowercase_policy(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(LOG_LEVELS)}, got '{v}'")
        return v

    @model_validator(mode='after')
    def validate_page_limits(self) -> "Settings":
        if self.default_page_limit > self.max_page_limit:
            raise ValueError(
                f"default_page_limit ({self.default_page_limit}) exceeds "
                f"max_page_limit ({self.max_page_limit})"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (no .env loading)

        Raises:
            ValueError: If any variable holds an invalid value
        """
        if environ is None:
            load_dotenv()  # Loads .env for local development
            environ = os.environ

        values = {
            field: environ[var].strip()
            for field, var in ENV_VARS.items()
            if environ.get(var, "").strip()
        }
        return cls(**values)

    def policies(self) -> LifecyclePolicies:
        return LifecyclePolicies(
            duplicate_draft=self.duplicate_draft_policy,
            restore=self.restore_policy,
            unchanged_publish=self.unchanged_publish_policy,
            block_suspend_with_running_instances=self.block_suspend_with_running_instances,
        )


def configure_logging(settings: Settings) -> None:
    """Set the stdlib log level and configure structured audit logging."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    configure_audit_logging(settings.log_level)


@dataclass
class TemplateService:
    """Everything one process needs, created once at startup."""
    settings: Settings
    drafts: DraftTemplateRepository
    published: PublishedTemplateRepository
    snapshots: SnapshotStore
    categories: CategoryTreeStore
    engine: GuardedExecutionEngine
    dispatcher: NotificationDispatcher
    coordinator: LifecycleCoordinator

    def close(self) -> None:
        self.engine.shutdown()
        for resource in (self.engine.engine, self.dispatcher):
            close = getattr(resource, "close", None)
            if close is not None:
                close()


def build_services(settings: Optional[Settings] = None) -> TemplateService:
    """
    Wire stores, engine, dispatcher and coordinator from settings.

    Args:
        settings: Configuration (read from the environment when None)

    Returns:
        TemplateService holding the shared instances
    """
    if settings is None:
        settings = Settings.from_env()

    drafts = DraftTemplateRepository(settings.data_dir)
    published = PublishedTemplateRepository(settings.data_dir)
    snapshots = SnapshotStore(settings.data_dir)
    categories = CategoryTreeStore(settings.data_dir)

    if settings.engine_base_url:
        raw_engine = HttpExecutionEngine(
            settings.engine_base_url,
            username=settings.engine_username,
            password=settings.engine_password,
            timeout=settings.engine_timeout_seconds,
        )
    else:
        logger.warning("PTM_ENGINE_BASE_URL not set; using the in-memory execution engine")
        raw_engine = InMemoryExecutionEngine()
    engine = GuardedExecutionEngine(raw_engine, settings.engine_timeout_seconds)

    if settings.notification_webhook_url:
        dispatcher = WebhookNotificationDispatcher(settings.notification_webhook_url)
    else:
        dispatcher = LoggingNotificationDispatcher()

    coordinator = LifecycleCoordinator(
        drafts,
        published,
        snapshots,
        categories,
        engine,
        dispatcher=dispatcher,
        policies=settings.policies(),
        max_bpmn_size=settings.max_bpmn_size_bytes,
        max_page_limit=settings.max_page_limit,
    )

    logger.info(
        f"Services ready (data_dir={settings.data_dir}, "
        f"engine={type(raw_engine).__name__}, dispatcher={type(dispatcher).__name__})"
    )
    return TemplateService(
        settings=settings,
        drafts=drafts,
        published=published,
        snapshots=snapshots,
        categories=categories,
        engine=engine,
        dispatcher=dispatcher,
        coordinator=coordinator,
    )
