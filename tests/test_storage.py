# tests/test_storage.py
"""
JSON-table persistence and the draft/published repositories.
"""

import json

import pytest

from src.templates.errors import ConcurrencyError, ConflictError, NotFoundError
from src.templates.schemas import DraftTemplate, PublishedTemplate, Scope, TemplateStatus
from src.templates.storage import (
    DraftTemplateRepository,
    JsonTable,
    PublishedTemplateRepository,
)


SCOPE = Scope(tenant_id="tenant-a")


def make_draft(template_key="leave_request", draft_id="d1", **overrides):
    values = dict(
        id=draft_id,
        template_key=template_key,
        template_name="Leave request",
        bpmn_xml="<definitions/>",
        category_id="c1",
        tenant_id="tenant-a",
    )
    values.update(overrides)
    return DraftTemplate(**values)


def make_published(version=1, template_key="leave_request", **overrides):
    values = dict(
        id=f"p{version}",
        template_key=template_key,
        template_name="Leave request",
        bpmn_xml="<definitions/>",
        category_id="c1",
        tenant_id="tenant-a",
        version=version,
        process_definition_id=f"{template_key}:{version}:dep",
        deployment_id="dep",
    )
    values.update(overrides)
    return PublishedTemplate(**values)


# ============ JsonTable ============

def test_table_persists_and_reloads(tmp_path):
    table = JsonTable("drafts", DraftTemplate, data_dir=tmp_path)
    table.put(make_draft())

    reloaded = JsonTable("drafts", DraftTemplate, data_dir=tmp_path)
    assert len(reloaded) == 1
    assert reloaded.get("d1").template_key == "leave_request"


def test_table_skips_invalid_rows_on_load(tmp_path):
    good = make_draft().model_dump(mode="json")
    (tmp_path / "drafts.json").write_text(json.dumps([good, {"id": "broken"}]), encoding="utf-8")

    table = JsonTable("drafts", DraftTemplate, data_dir=tmp_path)
    assert len(table) == 1
    assert table.get("broken") is None


def test_table_returns_copies():
    table = JsonTable("drafts", DraftTemplate)
    table.put(make_draft())
    row = table.get("d1")
    row.template_name = "changed"
    assert table.get("d1").template_name == "Leave request"


def test_table_delete_rewrites_file(tmp_path):
    table = JsonTable("drafts", DraftTemplate, data_dir=tmp_path)
    table.put(make_draft())
    assert table.delete("d1") is True
    assert table.delete("d1") is False
    assert json.loads((tmp_path / "drafts.json").read_text(encoding="utf-8")) == []


def test_failed_flush_leaves_rows_unchanged(tmp_path, monkeypatch):
    table = JsonTable("drafts", DraftTemplate, data_dir=tmp_path)
    table.put(make_draft(template_name="Saved"))

    def broken_flush():
        raise OSError("disk full")

    monkeypatch.setattr(table, "_flush", broken_flush)
    with pytest.raises(OSError):
        table.put_many([make_draft(template_name="Lost"), make_draft(draft_id="d2")])
    with pytest.raises(OSError):
        table.delete("d1")

    assert table.get("d1").template_name == "Saved"
    assert table.get("d2") is None
    assert len(table) == 1
    # memory and disk still agree
    assert JsonTable("drafts", DraftTemplate, data_dir=tmp_path).get("d1").template_name == "Saved"


# ============ Drafts ============

def test_insert_rejects_second_draft_for_key():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())
    with pytest.raises(ConflictError):
        repo.insert(make_draft(draft_id="d2"))


def test_same_key_in_other_scope_is_independent():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())
    repo.insert(make_draft(draft_id="d2", tenant_id="tenant-b"))
    assert repo.get(SCOPE, "d2") is None
    assert repo.get(Scope(tenant_id="tenant-b"), "d2") is not None


def test_update_bumps_version_and_checks_expected():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())

    saved = repo.update(make_draft(template_name="v2 name"), expected_version=1)
    assert saved.version == 2
    assert repo.get(SCOPE, "d1").template_name == "v2 name"

    with pytest.raises(ConcurrencyError) as exc_info:
        repo.update(make_draft(template_name="stale"), expected_version=1)
    assert exc_info.value.actual_version == 2
    assert repo.get(SCOPE, "d1").template_name == "v2 name"


def test_update_missing_draft_raises_not_found():
    with pytest.raises(NotFoundError):
        DraftTemplateRepository().update(make_draft(), expected_version=None)


def test_last_version_survives_delete():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())
    repo.update(make_draft(), expected_version=None)
    repo.delete(SCOPE, "d1")
    assert repo.find_by_key(SCOPE, "leave_request") is None
    assert repo.last_version(SCOPE, "leave_request") == 2


def test_list_page_filters_by_keyword_and_category():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())
    repo.insert(make_draft("expense_claim", "d2", template_name="Expense claim", category_id="c2"))

    total, items = repo.list_page(SCOPE, keyword="EXPENSE")
    assert total == 1 and items[0].id == "d2"

    total, items = repo.list_page(SCOPE, category_id="c1")
    assert [d.id for d in items] == ["d1"]

    total, items = repo.list_page(SCOPE, offset=1, limit=1)
    assert total == 2 and len(items) == 1


def test_reassign_moves_drafts_without_version_bump():
    repo = DraftTemplateRepository()
    repo.insert(make_draft())
    assert repo.reassign_category(SCOPE, "c1", "c9", "bob") == 1
    draft = repo.get(SCOPE, "d1")
    assert draft.category_id == "c9"
    assert draft.version == 1
    assert repo.count_by_category(SCOPE, "c1") == 0


# ============ Published ============

def test_published_insert_rejects_duplicate_version():
    repo = PublishedTemplateRepository()
    repo.insert(make_published(1))
    with pytest.raises(ConflictError):
        repo.insert(make_published(1, id="other"))


def test_latest_and_max_version():
    repo = PublishedTemplateRepository()
    repo.insert(make_published(2))
    repo.insert(make_published(1))
    assert [p.version for p in repo.find_by_key(SCOPE, "leave_request")] == [1, 2]
    assert repo.latest_for_key(SCOPE, "leave_request").version == 2
    assert repo.max_version(SCOPE, "leave_request") == 2
    assert repo.max_version(SCOPE, "unknown") == 0


def test_find_by_source_draft():
    repo = PublishedTemplateRepository()
    repo.insert(make_published(1, source_draft_id="d1", source_draft_version=3))
    assert repo.find_by_source_draft(SCOPE, "d1", 3).id == "p1"
    assert repo.find_by_source_draft(SCOPE, "d1", 4) is None


def test_update_status_only_touches_one_version():
    repo = PublishedTemplateRepository()
    repo.insert(make_published(1))
    repo.insert(make_published(2))
    repo.update_status(SCOPE, "p1", TemplateStatus.INACTIVE, "2026-01-01T00:00:00+00:00")
    assert repo.get(SCOPE, "p1").status == TemplateStatus.INACTIVE
    assert repo.get(SCOPE, "p2").status == TemplateStatus.ACTIVE


def test_published_list_page_filters_status():
    repo = PublishedTemplateRepository()
    repo.insert(make_published(1, status=TemplateStatus.INACTIVE))
    repo.insert(make_published(2))
    total, items = repo.list_page(SCOPE, status=TemplateStatus.ACTIVE)
    assert total == 1 and items[0].version == 2
