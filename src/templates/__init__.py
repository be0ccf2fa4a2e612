"""
Templates module for the process template manager.

Provides process template storage, BPMN validation, versioning and snapshots.
The lifecycle coordinator lives in src.templates.lifecycle (it depends on the
categories, engine and notifications packages, which import this one).
"""

from src.templates.schemas import (
    TemplateStatus,
    SourceTemplateType,
    DuplicateDraftPolicy,
    RestorePolicy,
    UnchangedPublishPolicy,
    ALLOWED_TRANSITIONS,
    Scope,
    DraftTemplate,
    PublishedTemplate,
    TemplateSnapshot,
    TemplateEntity,
    Category,
    CategoryNode,
    CreateDraftRequest,
    UpdateDraftRequest,
    TemplateQuery,
    TemplateView,
    Page,
)
from src.templates.errors import (
    TemplateError,
    NotFoundError,
    ValidationError,
    ConflictError,
    CategoryCycleError,
    ConcurrencyError,
    InvalidStateError,
    HasChildrenError,
    HasTemplatesError,
    EngineError,
    DeploymentError,
    EngineTimeoutError,
)
from src.templates.storage import (
    JsonTable,
    DraftTemplateRepository,
    PublishedTemplateRepository,
)
from src.templates.snapshots import SnapshotStore
from src.templates.locking import KeyedLock
from src.templates.versioning import (
    next_version,
    check_expected_version,
    content_checksum,
    restored_template_key,
    format_version_change,
)
from src.templates.validation import (
    validate_bpmn_size,
    validate_bpmn_xml,
    ensure_valid_bpmn,
    BpmnValidationResult,
    MAX_BPMN_SIZE_BYTES,
)
from src.templates.views import (
    build_template_view,
    list_template_views,
    list_templates,
    clamp_limit,
)
from src.templates.audit import (
    configure_audit_logging,
    get_audit_logger,
    LifecycleAuditEvent,
    log_lifecycle_event,
)

__all__ = [
    # Enums and policies
    "TemplateStatus",
    "SourceTemplateType",
    "DuplicateDraftPolicy",
    "RestorePolicy",
    "UnchangedPublishPolicy",
    "ALLOWED_TRANSITIONS",
    # Models
    "Scope",
    "DraftTemplate",
    "PublishedTemplate",
    "TemplateSnapshot",
    "TemplateEntity",
    "Category",
    "CategoryNode",
    "CreateDraftRequest",
    "UpdateDraftRequest",
    "TemplateQuery",
    "TemplateView",
    "Page",
    # Errors
    "TemplateError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "CategoryCycleError",
    "ConcurrencyError",
    "InvalidStateError",
    "HasChildrenError",
    "HasTemplatesError",
    "EngineError",
    "DeploymentError",
    "EngineTimeoutError",
    # Storage
    "JsonTable",
    "DraftTemplateRepository",
    "PublishedTemplateRepository",
    "SnapshotStore",
    "KeyedLock",
    # Versioning utilities
    "next_version",
    "check_expected_version",
    "content_checksum",
    "restored_template_key",
    "format_version_change",
    # BPMN validation
    "validate_bpmn_size",
    "validate_bpmn_xml",
    "ensure_valid_bpmn",
    "BpmnValidationResult",
    "MAX_BPMN_SIZE_BYTES",
    # Views
    "build_template_view",
    "list_template_views",
    "list_templates",
    "clamp_limit",
    # Audit logging
    "configure_audit_logging",
    "get_audit_logger",
    "LifecycleAuditEvent",
    "log_lifecycle_event",
]
