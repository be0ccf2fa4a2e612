# api.py
# PROCESS TEMPLATE MANAGER: HTTP API
# Features: Category Tree + Draft Authoring + Publish/Suspend/Activate + Snapshots
# Scope comes from trusted headers; no authentication here.

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.config import Settings, TemplateService, build_services, configure_logging
from src.templates.errors import (
    ConcurrencyError,
    ConflictError,
    EngineError,
    EngineTimeoutError,
    HasChildrenError,
    HasTemplatesError,
    InvalidStateError,
    NotFoundError,
    TemplateError,
    ValidationError,
)
from src.templates.schemas import (
    Category,
    CategoryNode,
    CreateCategoryRequest,
    CreateDraftRequest,
    CreateSnapshotRequest,
    DraftTemplate,
    MoveCategoryRequest,
    Page,
    PublishedTemplate,
    ReassignCategoryRequest,
    RestoreSnapshotRequest,
    Scope,
    SortOrderItem,
    TemplateQuery,
    TemplateSnapshot,
    TemplateStatus,
    TemplateView,
    UpdateCategoryRequest,
    UpdateDraftRequest,
)
from src.templates.views import clamp_limit


# 1. ERROR MAPPING
# Most specific classes first
ERROR_STATUS_CODES = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (ConcurrencyError, 409),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (HasChildrenError, 409),
    (HasTemplatesError, 409),
    (EngineTimeoutError, 504),
    (EngineError, 502),
]


def status_code_for(exc: TemplateError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 500


# 2. MODELS
class SaveDraftBody(UpdateDraftRequest):
    expected_version: Optional[int] = None


class PublishBody(BaseModel):
    expected_version: Optional[int] = None


class UpdateSortOrderBody(BaseModel):
    items: List[SortOrderItem]


# 3. DEPENDENCIES
def get_services(request: Request) -> TemplateService:
    return request.app.state.services


def get_scope(
    x_tenant_id: str = Header(..., min_length=1),
    x_app_id: Optional[str] = Header(None),
    x_context_id: Optional[str] = Header(None),
) -> Scope:
    return Scope(tenant_id=x_tenant_id, app_id=x_app_id, context_id=x_context_id)


def get_user_id(x_user_id: str = Header("system")) -> str:
    return x_user_id


def get_query(
    services: TemplateService = Depends(get_services),
    keyword: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    status: Optional[TemplateStatus] = Query(None),
    offset: int = Query(0, ge=0),
    limit: Optional[int] = Query(None),
) -> TemplateQuery:
    settings = services.settings
    return TemplateQuery(
        keyword=keyword,
        category_id=category_id,
        status=status,
        offset=offset,
        limit=clamp_limit(limit, settings.default_page_limit, settings.max_page_limit),
    )


def create_app(services: Optional[TemplateService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests); built from the environment when None
    """
    if services is None:
        settings = Settings.from_env()
        configure_logging(settings)
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.close()

    app = FastAPI(title="Process Template Manager", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TemplateError)
    async def template_error_handler(request: Request, exc: TemplateError):
        return JSONResponse(status_code=status_code_for(exc), content={"error": exc.to_dict()})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # 4. HEALTH

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # 5. CATEGORY ENDPOINTS

    @app.get("/categories", response_model=List[CategoryNode])
    def get_category_tree(
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        """Nested category tree with recursive template counts."""
        return services.categories.get_tree(scope)

    @app.post("/categories", response_model=Category, status_code=201)
    def create_category(
        req: CreateCategoryRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.categories.create(scope, req, user_id)

    @app.get("/categories/search", response_model=List[CategoryNode])
    def search_categories(
        keyword: str = Query(""),
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.categories.search(scope, keyword)

    @app.put("/categories/sort-order", response_model=List[Category])
    def update_sort_order(
        req: UpdateSortOrderBody,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        """Apply several sort orders at once; one unknown id applies nothing."""
        return services.categories.batch_update_sort_order(scope, req.items, user_id)

    @app.get("/categories/{category_id}", response_model=Category)
    def get_category(
        category_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.categories.require(scope, category_id)

    @app.put("/categories/{category_id}", response_model=Category)
    def update_category(
        category_id: str,
        req: UpdateCategoryRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.categories.update(scope, category_id, req, user_id)

    @app.delete("/categories/{category_id}")
    def delete_category(
        category_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        services.categories.delete(scope, category_id)
        return {"success": True, "id": category_id}

    @app.post("/categories/{category_id}/move", response_model=Category)
    def move_category(
        category_id: str,
        req: MoveCategoryRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.categories.move(scope, category_id, req.new_parent_id, user_id)

    @app.post("/categories/{category_id}/reassign")
    def reassign_category(
        category_id: str,
        req: ReassignCategoryRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        """Move every template filed under this category to another one."""
        moved = services.coordinator.reassign_category(scope, category_id, req.to_category_id, user_id)
        return {"success": True, "moved": moved}

    # 6. TEMPLATE LIST

    @app.get("/templates", response_model=Page[TemplateView])
    def list_templates(
        query: TemplateQuery = Depends(get_query),
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        """One row per template_key joining its draft and published versions."""
        return services.coordinator.list_templates(scope, query)

    # 7. DRAFT ENDPOINTS

    @app.post("/templates/drafts", response_model=DraftTemplate, status_code=201)
    def create_draft(
        req: CreateDraftRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.create_draft(scope, req, user_id)

    @app.get("/templates/drafts", response_model=Page[DraftTemplate])
    def list_drafts(
        query: TemplateQuery = Depends(get_query),
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.list_drafts(scope, query)

    @app.get("/templates/drafts/{draft_id}", response_model=DraftTemplate)
    def get_draft(
        draft_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.get_draft(scope, draft_id)

    @app.put("/templates/drafts/{draft_id}", response_model=DraftTemplate)
    def save_draft(
        draft_id: str,
        req: SaveDraftBody,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        """
        Save a draft.

        Send the version last read as ``expected_version``; a stale version
        returns 409 and nothing is written.
        """
        request = UpdateDraftRequest.model_validate(
            req.model_dump(exclude={"expected_version"}, exclude_unset=True)
        )
        return services.coordinator.save_draft(scope, draft_id, request, req.expected_version, user_id)

    @app.delete("/templates/drafts/{draft_id}")
    def delete_draft(
        draft_id: str,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        services.coordinator.delete_draft(scope, draft_id, user_id)
        return {"success": True, "id": draft_id}

    @app.post("/templates/drafts/{draft_id}/publish", response_model=PublishedTemplate)
    def publish_draft(
        draft_id: str,
        req: Optional[PublishBody] = None,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        """Deploy the draft as the next published version of its template_key."""
        expected_version = req.expected_version if req else None
        return services.coordinator.publish(scope, draft_id, user_id, expected_version)

    # 8. PUBLISHED ENDPOINTS

    @app.get("/templates/published", response_model=Page[PublishedTemplate])
    def list_published(
        query: TemplateQuery = Depends(get_query),
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.list_published(scope, query)

    @app.get("/templates/published/{published_id}", response_model=PublishedTemplate)
    def get_published(
        published_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.get_published(scope, published_id)

    @app.post("/templates/published/{published_id}/suspend", response_model=PublishedTemplate)
    def suspend_published(
        published_id: str,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.suspend(scope, published_id, user_id)

    @app.post("/templates/published/{published_id}/activate", response_model=PublishedTemplate)
    def activate_published(
        published_id: str,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.activate(scope, published_id, user_id)

    @app.post("/templates/published/{published_id}/refresh-counts", response_model=PublishedTemplate)
    def refresh_counts(
        published_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.refresh_instance_counts(scope, published_id)

    # 9. SNAPSHOT ENDPOINTS

    @app.post("/templates/snapshots", response_model=TemplateSnapshot, status_code=201)
    def create_snapshot(
        req: CreateSnapshotRequest,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.snapshot(
            scope, req.source_template_id, req.source_template_type, req.snapshot_name, user_id
        )

    @app.get("/templates/snapshots", response_model=List[TemplateSnapshot])
    def list_snapshots(
        template_key: str = Query(..., min_length=1),
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.list_snapshots(scope, template_key)

    @app.get("/templates/snapshots/{snapshot_id}", response_model=TemplateSnapshot)
    def get_snapshot(
        snapshot_id: str,
        scope: Scope = Depends(get_scope),
        services: TemplateService = Depends(get_services),
    ):
        return services.coordinator.get_snapshot(scope, snapshot_id)

    @app.delete("/templates/snapshots/{snapshot_id}")
    def delete_snapshot(
        snapshot_id: str,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        services.coordinator.delete_snapshot(scope, snapshot_id, user_id)
        return {"success": True, "id": snapshot_id}

    @app.post("/templates/snapshots/{snapshot_id}/restore", response_model=DraftTemplate)
    def restore_snapshot(
        snapshot_id: str,
        req: Optional[RestoreSnapshotRequest] = None,
        scope: Scope = Depends(get_scope),
        user_id: str = Depends(get_user_id),
        services: TemplateService = Depends(get_services),
    ):
        """Rebuild a draft from the snapshot according to the configured restore policy."""
        new_name = req.new_template_name if req else None
        return services.coordinator.restore(scope, snapshot_id, new_name, user_id)


app = create_app()
