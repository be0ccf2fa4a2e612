"""
Pydantic models for process template lifecycle management.

Provides data structures for:
- Template status and source type enumerations
- Allowed lifecycle transitions between published states
- Tenant/application/context scope carried by every entity
- The three template shapes (draft, published, snapshot) as a tagged union
- Category tree nodes
- Request payloads, list projections and pages
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, Set, Tuple, TypeVar, Union

from pydantic import BaseModel, Field, field_validator


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class TemplateStatus(str, Enum):
    """Template lifecycle status."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SourceTemplateType(str, Enum):
    """Kind of entity a snapshot was captured from."""
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


# draft -> active (publish), active <-> inactive (suspend/activate)
ALLOWED_TRANSITIONS: Dict[TemplateStatus, Set[TemplateStatus]] = {
    TemplateStatus.DRAFT: {TemplateStatus.ACTIVE},
    TemplateStatus.ACTIVE: {TemplateStatus.INACTIVE},
    TemplateStatus.INACTIVE: {TemplateStatus.ACTIVE},
}


class DuplicateDraftPolicy(str, Enum):
    """What create_draft does when a live draft already exists for the key."""
    REJECT = "reject"
    OVERWRITE = "overwrite"


class RestorePolicy(str, Enum):
    """How restoring a snapshot produces a draft."""
    OVERWRITE = "overwrite"
    CREATE = "create"
    NEW_KEY = "new_key"


class UnchangedPublishPolicy(str, Enum):
    """Whether publishing content identical to the latest version is allowed."""
    ALLOW = "allow"
    REJECT = "reject"


# BPMN process ids are XML NCNames; keys follow the same shape
TEMPLATE_KEY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_.\-]*$')


def _check_template_key(v: str) -> str:
    v = v.strip()
    if not TEMPLATE_KEY_PATTERN.match(v):
        raise ValueError(
            f"template_key must start with a letter or underscore and contain only "
            f"letters, digits, '_', '-' or '.', got '{v}'"
        )
    return v


def _dedupe_tags(tags: List[str]) -> List[str]:
    seen: List[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class Scope(BaseModel):
    """Multi-tenant scope supplied by the caller with every operation."""
    tenant_id: str = Field(
        min_length=1,
        description="Tenant identifier (required)"
    )
    app_id: Optional[str] = Field(
        default=None,
        description="Application identifier for finer isolation"
    )
    context_id: Optional[str] = Field(
        default=None,
        description="Business context identifier"
    )

    def key(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.tenant_id, self.app_id, self.context_id)


class ScopedModel(BaseModel):
    """Base for persisted rows that belong to one scope."""
    tenant_id: str = Field(description="Owning tenant")
    app_id: Optional[str] = Field(default=None, description="Owning application")
    context_id: Optional[str] = Field(default=None, description="Owning context")

    @property
    def scope(self) -> Scope:
        return Scope(tenant_id=self.tenant_id, app_id=self.app_id, context_id=self.context_id)

    def in_scope(self, scope: Scope) -> bool:
        return (self.tenant_id, self.app_id, self.context_id) == scope.key()


class TemplateContent(ScopedModel):
    """Fields shared by drafts, published versions and snapshots."""
    template_key: str = Field(
        description="Stable logical identifier shared by all versions"
    )
    template_name: str = Field(
        description="Human-readable template name"
    )
    description: Optional[str] = Field(
        default=None,
        description="Brief description of the template's purpose"
    )
    bpmn_xml: str = Field(
        description="BPMN 2.0 process definition XML"
    )
    category_id: Optional[str] = Field(
        default=None,
        description="Category this template is filed under"
    )
    tags: List[str] = Field(
        default_factory=list,
        description="Free-form labels"
    )
    form_config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Form configuration (fields, validation rules)"
    )


class DraftTemplate(TemplateContent):
    """
    Mutable working copy of a template.

    Created on first save; every later save bumps ``version``. At most one
    live draft exists per template_key in a scope.
    """
    kind: Literal["DRAFT"] = "DRAFT"
    id: str = Field(description="Draft id (UUID)")
    status: TemplateStatus = Field(
        default=TemplateStatus.DRAFT,
        description="Always DRAFT"
    )
    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic-concurrency version, +1 per save"
    )
    created_time: str = Field(default_factory=utc_now_iso)
    updated_time: str = Field(default_factory=utc_now_iso)
    created_by: str = Field(default="system")
    updated_by: str = Field(default="system")

    @field_validator('status')
    @classmethod
    def validate_draft_status(cls, v: TemplateStatus) -> TemplateStatus:
        """Drafts are always DRAFT."""
        if v != TemplateStatus.DRAFT:
            raise ValueError("draft templates always have status DRAFT")
        return v


class PublishedTemplate(TemplateContent):
    """
    Immutable-content version deployed to the execution engine.

    Only ``status``, ``suspended_time``, the instance counters and
    ``category_id`` change after insert.
    """
    kind: Literal["PUBLISHED"] = "PUBLISHED"
    id: str = Field(description="Published row id (UUID)")
    version: int = Field(
        ge=1,
        description="Published version, unique per template_key"
    )
    status: TemplateStatus = Field(
        default=TemplateStatus.ACTIVE,
        description="ACTIVE or INACTIVE"
    )
    process_definition_id: str = Field(
        description="Process definition id in the execution engine"
    )
    deployment_id: str = Field(
        description="Deployment id in the execution engine"
    )
    instance_count: int = Field(default=0, ge=0)
    running_instance_count: int = Field(default=0, ge=0)
    source_draft_id: Optional[str] = Field(
        default=None,
        description="Draft this version was published from"
    )
    source_draft_version: Optional[int] = Field(
        default=None,
        description="Draft version at publish time"
    )
    content_checksum: str = Field(
        default="",
        description="sha256 of the published content"
    )
    published_time: str = Field(default_factory=utc_now_iso)
    suspended_time: Optional[str] = None
    created_by: str = Field(default="system")

    @field_validator('status')
    @classmethod
    def validate_published_status(cls, v: TemplateStatus) -> TemplateStatus:
        """Published rows are never DRAFT."""
        if v == TemplateStatus.DRAFT:
            raise ValueError("published templates must be ACTIVE or INACTIVE")
        return v


class TemplateSnapshot(TemplateContent):
    """Immutable historical capture of a draft or published template."""
    kind: Literal["SNAPSHOT"] = "SNAPSHOT"
    id: str = Field(description="Snapshot id (UUID)")
    snapshot_name: str = Field(description="Label given when captured")
    snapshot_version: int = Field(
        ge=1,
        description="Sequential per template_key, no gaps"
    )
    source_template_id: str = Field(description="Id of the captured entity")
    source_template_type: SourceTemplateType = Field(
        description="DRAFT or PUBLISHED"
    )
    source_template_status: TemplateStatus = Field(
        description="Status of the source at capture time"
    )
    source_template_version: int = Field(
        description="Version of the source at capture time"
    )
    created_time: str = Field(default_factory=utc_now_iso)
    created_by: str = Field(default="system")


TemplateEntity = Annotated[
    Union[DraftTemplate, PublishedTemplate, TemplateSnapshot],
    Field(discriminator="kind"),
]


class Category(ScopedModel):
    """Node in the category tree, stored flat with a materialized path."""
    id: str = Field(description="Category id (UUID)")
    name: str = Field(min_length=1, description="Display name")
    code: str = Field(min_length=1, description="Code, unique among siblings")
    parent_id: Optional[str] = Field(default=None, description="None for roots")
    path: str = Field(description="'/root/.../self' chain of ids")
    level: int = Field(ge=0, description="Depth, roots are 0")
    sort_order: int = Field(default=0, description="Ordering among siblings")
    description: Optional[str] = None
    icon: Optional[str] = None
    created_time: str = Field(default_factory=utc_now_iso)
    updated_time: str = Field(default_factory=utc_now_iso)
    created_by: str = Field(default="system")
    updated_by: str = Field(default="system")

    def path_ids(self) -> List[str]:
        return [part for part in self.path.split("/") if part]


class CategoryNode(BaseModel):
    """Category with its children, for tree display."""
    category: Category
    children: List["CategoryNode"] = Field(default_factory=list)
    has_children: bool = False
    template_count: int = Field(
        default=0,
        description="Templates in this category and all descendants"
    )
    path_names: str = Field(
        default="",
        description="'/'-joined names of the ancestor chain"
    )


# ============ Requests ============

class CreateDraftRequest(BaseModel):
    """Payload for creating a draft template."""
    template_key: str
    template_name: str = Field(min_length=1)
    description: Optional[str] = None
    bpmn_xml: str
    category_id: str
    tags: List[str] = Field(default_factory=list)
    form_config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('template_key')
    @classmethod
    def validate_key(cls, v: str) -> str:
        return _check_template_key(v)

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return _dedupe_tags(v)


class UpdateDraftRequest(BaseModel):
    """Payload for saving a draft. Omitted optional fields are left unchanged."""
    template_name: str = Field(min_length=1)
    description: Optional[str] = None
    bpmn_xml: str
    category_id: Optional[str] = None
    tags: Optional[List[str]] = None
    form_config: Optional[Dict[str, Any]] = None

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return None if v is None else _dedupe_tags(v)


class CreateSnapshotRequest(BaseModel):
    source_template_id: str
    source_template_type: SourceTemplateType
    snapshot_name: str = Field(min_length=1)


class RestoreSnapshotRequest(BaseModel):
    new_template_name: Optional[str] = None


class CreateCategoryRequest(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1)
    parent_id: Optional[str] = None
    sort_order: int = 0
    description: Optional[str] = None
    icon: Optional[str] = None


class UpdateCategoryRequest(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1)
    sort_order: Optional[int] = None
    description: Optional[str] = None
    icon: Optional[str] = None


class MoveCategoryRequest(BaseModel):
    new_parent_id: Optional[str] = None


class SortOrderItem(BaseModel):
    id: str
    sort_order: int


class ReassignCategoryRequest(BaseModel):
    to_category_id: str


class TemplateQuery(BaseModel):
    """Filters shared by the listing operations."""
    keyword: Optional[str] = None
    category_id: Optional[str] = None
    status: Optional[TemplateStatus] = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=20, ge=1)


# ============ Projections ============

class TemplateView(BaseModel):
    """
    Read-only list row joining a template's draft and published versions.

    ``status``/``version`` describe the latest published version when one
    exists, otherwise the draft.
    """
    template_key: str
    template_name: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    status: TemplateStatus
    version: int
    published_id: Optional[str] = None
    published_versions: int = 0
    draft_id: Optional[str] = None
    draft_version: Optional[int] = None
    has_draft: bool = False
    instance_count: int = 0
    running_instance_count: int = 0
    created_time: str
    updated_time: str


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a filtered listing plus the unpaged total."""
    total: int
    offset: int
    limit: int
    items: List[T]


CategoryNode.model_rebuild()
