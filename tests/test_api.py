# tests/test_api.py
"""
HTTP surface: routing, scope headers and error bodies.
"""

import pytest
from fastapi.testclient import TestClient

from api import create_app
from src.config import Settings, build_services

HEADERS = {"X-Tenant-Id": "tenant-a", "X-User-Id": "alice"}


@pytest.fixture
def client():
    app = create_app(build_services(Settings()))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def category_id(client):
    response = client.post("/categories", json={"name": "HR", "code": "hr"}, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def draft(client, category_id, bpmn):
    response = client.post("/templates/drafts", headers=HEADERS, json={
        "template_key": "leave_request",
        "template_name": "Leave request",
        "bpmn_xml": bpmn(),
        "category_id": category_id,
    })
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_missing_tenant_header_is_rejected(client):
    assert client.get("/categories").status_code == 422


def test_error_body_shape(client):
    response = client.get("/templates/drafts/missing", headers=HEADERS)
    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "NOT_FOUND"
    assert error["details"] == {"entity": "Draft template", "id": "missing"}


def test_invalid_bpmn_returns_422(client, category_id):
    response = client.post("/templates/drafts", headers=HEADERS, json={
        "template_key": "broken",
        "template_name": "Broken",
        "bpmn_xml": "<definitions/>",
        "category_id": category_id,
    })
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_draft_lifecycle_over_http(client, draft, bpmn):
    assert draft["version"] == 1
    assert draft["created_by"] == "alice"

    saved = client.put(f"/templates/drafts/{draft['id']}", headers=HEADERS, json={
        "template_name": "Leave request v2",
        "bpmn_xml": bpmn(),
        "expected_version": 1,
    })
    assert saved.status_code == 200
    assert saved.json()["version"] == 2

    stale = client.put(f"/templates/drafts/{draft['id']}", headers=HEADERS, json={
        "template_name": "lost",
        "bpmn_xml": bpmn(),
        "expected_version": 1,
    })
    assert stale.status_code == 409
    assert stale.json()["error"]["code"] == "CONCURRENCY_CONFLICT"

    published = client.post(f"/templates/drafts/{draft['id']}/publish", headers=HEADERS)
    assert published.status_code == 200
    version = published.json()
    assert version["status"] == "ACTIVE" and version["version"] == 1

    suspended = client.post(f"/templates/published/{version['id']}/suspend", headers=HEADERS)
    assert suspended.json()["status"] == "INACTIVE"
    again = client.post(f"/templates/published/{version['id']}/suspend", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"

    listed = client.get("/templates", headers=HEADERS, params={"status": "INACTIVE"}).json()
    assert listed["total"] == 1
    assert listed["items"][0]["template_key"] == "leave_request"


def test_publish_with_stale_expected_version(client, draft):
    response = client.post(
        f"/templates/drafts/{draft['id']}/publish", headers=HEADERS, json={"expected_version": 5}
    )
    assert response.status_code == 409


def test_scope_isolation(client, draft):
    other = {"X-Tenant-Id": "tenant-b"}
    assert client.get(f"/templates/drafts/{draft['id']}", headers=other).status_code == 404
    assert client.get("/templates/drafts", headers=other).json()["total"] == 0


def test_snapshot_and_restore(client, draft, bpmn):
    snap = client.post("/templates/snapshots", headers=HEADERS, json={
        "source_template_id": draft["id"],
        "source_template_type": "DRAFT",
        "snapshot_name": "original",
    })
    assert snap.status_code == 201
    snapshot = snap.json()
    assert snapshot["snapshot_version"] == 1

    client.put(f"/templates/drafts/{draft['id']}", headers=HEADERS, json={
        "template_name": "Edited",
        "bpmn_xml": bpmn(),
    })
    restored = client.post(f"/templates/snapshots/{snapshot['id']}/restore", headers=HEADERS)
    assert restored.status_code == 200
    assert restored.json()["template_name"] == "original"
    assert restored.json()["version"] == 3

    listed = client.get("/templates/snapshots", headers=HEADERS, params={"template_key": "leave_request"})
    assert [s["id"] for s in listed.json()] == [snapshot["id"]]

    deleted = client.delete(f"/templates/snapshots/{snapshot['id']}", headers=HEADERS)
    assert deleted.json() == {"success": True, "id": snapshot["id"]}


def test_category_routes(client, category_id, draft):
    child = client.post(
        "/categories", headers=HEADERS, json={"name": "Leave", "code": "leave", "parent_id": category_id}
    ).json()

    tree = client.get("/categories", headers=HEADERS).json()
    assert tree[0]["category"]["id"] == category_id
    assert tree[0]["template_count"] == 1
    assert tree[0]["children"][0]["category"]["id"] == child["id"]

    search = client.get("/categories/search", headers=HEADERS, params={"keyword": "leave"}).json()
    assert [n["category"]["id"] for n in search] == [child["id"]]

    cycle = client.post(f"/categories/{category_id}/move", headers=HEADERS, json={"new_parent_id": child["id"]})
    assert cycle.status_code == 409
    assert cycle.json()["error"]["code"] == "CATEGORY_CYCLE"

    assert client.delete(f"/categories/{category_id}", headers=HEADERS).json()["error"]["code"] == "CATEGORY_HAS_CHILDREN"

    moved = client.post(f"/categories/{child['id']}/move", headers=HEADERS, json={"new_parent_id": None})
    assert moved.json()["level"] == 0

    blocked = client.delete(f"/categories/{category_id}", headers=HEADERS)
    assert blocked.status_code == 409
    assert blocked.json()["error"]["code"] == "CATEGORY_HAS_TEMPLATES"

    reassigned = client.post(
        f"/categories/{category_id}/reassign", headers=HEADERS, json={"to_category_id": child["id"]}
    )
    assert reassigned.json() == {"success": True, "moved": 1}
    assert client.delete(f"/categories/{category_id}", headers=HEADERS).status_code == 200


def test_sort_order_route(client, category_id):
    other = client.post("/categories", headers=HEADERS, json={"name": "Finance", "code": "finance"}).json()
    response = client.put("/categories/sort-order", headers=HEADERS, json={"items": [
        {"id": other["id"], "sort_order": -1},
    ]})
    assert response.status_code == 200
    tree = client.get("/categories", headers=HEADERS).json()
    assert [n["category"]["name"] for n in tree] == ["Finance", "HR"]


def test_page_limit_is_clamped(client, draft):
    page = client.get("/templates/drafts", headers=HEADERS, params={"limit": 5000}).json()
    assert page["limit"] == 100
