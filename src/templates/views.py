"""
Template list projections.

A TemplateView is a read-only row per template_key joining the live draft
(if any) with the published versions of that key. It never includes the
BPMN content, only what a template list or picker needs to display.
"""

import logging
from typing import Dict, List, Optional

from src.templates.schemas import (
    DraftTemplate,
    Page,
    PublishedTemplate,
    Scope,
    TemplateQuery,
    TemplateStatus,
    TemplateView,
)
from src.templates.storage import (
    DraftTemplateRepository,
    PublishedTemplateRepository,
    matches_keyword,
    paginate,
)


# Configure logging for the views module
logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int], default_limit: int = 20, max_limit: int = 100) -> int:
    """
    Bound a requested page size to [1, max_limit].

    Examples:
        >>> clamp_limit(None)
        20
        >>> clamp_limit(500)
        100
    """
    if limit is None:
        limit = default_limit
    return max(1, min(limit, max_limit))


def build_template_view(
    draft: Optional[DraftTemplate],
    published: List[PublishedTemplate],
    category_names: Optional[Dict[str, str]] = None,
) -> TemplateView:
    """
    Join one key's draft and published versions into a TemplateView.

    Name, description and category come from the draft when one exists
    (it is the working copy), otherwise from the latest published version.
    Status and version come from the latest published version, or from the
    draft when nothing is published yet.

    Args:
        draft: Live draft for the key, if any
        published: Published versions for the key (any order)
        category_names: Map of category id to display name

    Returns:
        TemplateView for the key
    """
    if draft is None and not published:
        raise ValueError("A template view needs a draft or at least one published version")

    published = sorted(published, key=lambda p: p.version)
    latest = published[-1] if published else None
    source = draft if draft is not None else latest

    created = [p.published_time for p in published]
    updated = [p.published_time for p in published]
    if draft is not None:
        created.append(draft.created_time)
        updated.append(draft.updated_time)

    return TemplateView(
        template_key=source.template_key,
        template_name=source.template_name,
        description=source.description,
        category_id=source.category_id,
        category_name=(category_names or {}).get(source.category_id) if source.category_id else None,
        status=latest.status if latest else TemplateStatus.DRAFT,
        version=latest.version if latest else draft.version,
        published_id=latest.id if latest else None,
        published_versions=len(published),
        draft_id=draft.id if draft else None,
        draft_version=draft.version if draft else None,
        has_draft=draft is not None,
        instance_count=sum(p.instance_count for p in published),
        running_instance_count=sum(p.running_instance_count for p in published),
        created_time=min(created),
        updated_time=max(updated),
    )


def list_template_views(
    scope: Scope,
    drafts: DraftTemplateRepository,
    published: PublishedTemplateRepository,
    category_names: Optional[Dict[str, str]] = None,
) -> List[TemplateView]:
    """All template views in a scope, most recently updated first."""
    drafts_by_key = {d.template_key: d for d in drafts.list_in_scope(scope)}
    published_by_key: Dict[str, List[PublishedTemplate]] = {}
    for row in published.list_in_scope(scope):
        published_by_key.setdefault(row.template_key, []).append(row)

    views = [
        build_template_view(drafts_by_key.get(key), published_by_key.get(key, []), category_names)
        for key in set(drafts_by_key) | set(published_by_key)
    ]
    views.sort(key=lambda v: (v.updated_time, v.template_key), reverse=True)
    return views


def list_templates(
    scope: Scope,
    query: TemplateQuery,
    drafts: DraftTemplateRepository,
    published: PublishedTemplateRepository,
    category_names: Optional[Dict[str, str]] = None,
    max_limit: int = 100,
) -> Page[TemplateView]:
    """
    Filtered page of template views.

    Args:
        scope: Caller scope
        query: keyword (key/name/description), category_id, status, offset, limit
        drafts: Draft repository
        published: Published repository
        category_names: Map of category id to display name
        max_limit: Upper bound applied to query.limit

    Returns:
        Page of TemplateView with the unpaged total
    """
    limit = clamp_limit(query.limit, max_limit=max_limit)
    views = [
        view for view in list_template_views(scope, drafts, published, category_names)
        if (query.category_id is None or view.category_id == query.category_id)
        and (query.status is None or view.status == query.status)
        and matches_keyword(view, query.keyword)
    ]
    total, items = paginate(views, query.offset, limit)
    logger.debug(f"Listed {len(items)}/{total} template views for tenant {scope.tenant_id}")
    return Page[TemplateView](total=total, offset=query.offset, limit=limit, items=items)
