# tests/test_drafts.py
"""
Draft authoring through the coordinator: creation policy, optimistic saves,
content validation and concurrent edits.
"""

import threading

import pytest

from src.templates.errors import (
    ConcurrencyError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from src.templates.schemas import (
    DuplicateDraftPolicy,
    TemplateQuery,
    TemplateStatus,
    UpdateDraftRequest,
)


def save_request(bpmn, name="Leave request v2", **overrides):
    values = {"template_name": name, "bpmn_xml": bpmn()}
    values.update(overrides)
    return UpdateDraftRequest(**values)


def test_create_draft_starts_at_version_one(coordinator, scope, draft_request):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    assert draft.version == 1
    assert draft.status == TemplateStatus.DRAFT
    assert draft.created_by == "alice"
    assert draft.tenant_id == "tenant-a"
    assert coordinator.get_draft(scope, draft.id).template_key == "leave_request"


def test_create_draft_rejects_duplicate_key_by_default(coordinator, scope, draft_request):
    coordinator.create_draft(scope, draft_request(), "alice")
    with pytest.raises(ConflictError):
        coordinator.create_draft(scope, draft_request(), "alice")


def test_create_draft_overwrite_policy(coordinator, scope, draft_request, policies):
    policies.duplicate_draft = DuplicateDraftPolicy.OVERWRITE
    first = coordinator.create_draft(scope, draft_request(), "alice")
    second = coordinator.create_draft(scope, draft_request(template_name="Renamed"), "bob")
    assert second.id == first.id
    assert second.version == 2
    assert second.template_name == "Renamed"
    assert second.updated_by == "bob"


def test_create_draft_with_unknown_category(coordinator, scope, draft_request):
    with pytest.raises(ValidationError):
        coordinator.create_draft(scope, draft_request(category_id="missing"), "alice")


def test_create_draft_with_invalid_bpmn(coordinator, scope, draft_request):
    with pytest.raises(ValidationError) as exc_info:
        coordinator.create_draft(scope, draft_request(bpmn_xml="<not-closed>"), "alice")
    assert exc_info.value.errors


def test_invalid_template_key_fails_request_validation(draft_request):
    from pydantic import ValidationError as RequestValidationError
    with pytest.raises(RequestValidationError):
        draft_request(template_key="1 bad key")


def test_save_draft_increments_version(coordinator, scope, draft_request, bpmn):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    saved = coordinator.save_draft(scope, draft.id, save_request(bpmn), expected_version=1, user_id="bob")
    assert saved.version == 2
    assert saved.template_name == "Leave request v2"
    assert saved.updated_by == "bob"
    assert saved.created_by == "alice"
    # omitted optional fields keep their values
    assert saved.tags == ["hr"]
    assert saved.form_config == draft.form_config


def test_save_draft_with_stale_version(coordinator, scope, draft_request, bpmn):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    coordinator.save_draft(scope, draft.id, save_request(bpmn), expected_version=1)
    with pytest.raises(ConcurrencyError) as exc_info:
        coordinator.save_draft(scope, draft.id, save_request(bpmn, name="lost"), expected_version=1)
    assert exc_info.value.expected_version == 1
    assert exc_info.value.actual_version == 2
    assert coordinator.get_draft(scope, draft.id).template_name == "Leave request v2"


def test_save_draft_validates_before_writing(coordinator, scope, draft_request, bpmn):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    with pytest.raises(ValidationError):
        coordinator.save_draft(scope, draft.id, save_request(bpmn, bpmn_xml="<definitions/>"))
    with pytest.raises(ValidationError):
        coordinator.save_draft(scope, draft.id, save_request(bpmn, category_id="missing"))
    assert coordinator.get_draft(scope, draft.id).version == 1


def test_concurrent_saves_with_same_expected_version(coordinator, scope, draft_request, bpmn):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    for _ in range(4):
        draft = coordinator.save_draft(scope, draft.id, save_request(bpmn))
    assert draft.version == 5

    barrier = threading.Barrier(2)
    outcomes = []

    def save(name):
        barrier.wait()
        try:
            saved = coordinator.save_draft(scope, draft.id, save_request(bpmn, name=name), expected_version=5)
            outcomes.append(("ok", saved.version))
        except ConcurrencyError:
            outcomes.append(("conflict", None))

    threads = [threading.Thread(target=save, args=(f"writer-{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes, key=lambda o: o[0]) == [("conflict", None), ("ok", 6)]
    assert coordinator.get_draft(scope, draft.id).version == 6


def test_delete_draft(coordinator, scope, draft_request):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    coordinator.delete_draft(scope, draft.id)
    with pytest.raises(NotFoundError):
        coordinator.get_draft(scope, draft.id)
    with pytest.raises(NotFoundError):
        coordinator.delete_draft(scope, draft.id)


def test_recreated_draft_continues_version_sequence(coordinator, scope, draft_request, bpmn):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    coordinator.save_draft(scope, draft.id, save_request(bpmn))
    coordinator.delete_draft(scope, draft.id)
    again = coordinator.create_draft(scope, draft_request(), "alice")
    assert again.version == 3


def test_drafts_are_scoped(coordinator, scope, other_scope, draft_request):
    draft = coordinator.create_draft(scope, draft_request(), "alice")
    with pytest.raises(NotFoundError):
        coordinator.get_draft(other_scope, draft.id)


def test_list_drafts_pages_and_clamps(coordinator, scope, draft_request):
    for i in range(3):
        coordinator.create_draft(scope, draft_request(f"key_{i}", template_name=f"Template {i}"), "alice")

    page = coordinator.list_drafts(scope, TemplateQuery(limit=2))
    assert page.total == 3
    assert len(page.items) == 2

    page = coordinator.list_drafts(scope, TemplateQuery(keyword="template 1"))
    assert [d.template_key for d in page.items] == ["key_1"]

    coordinator.max_page_limit = 1
    assert coordinator.list_drafts(scope, TemplateQuery(limit=50)).limit == 1
