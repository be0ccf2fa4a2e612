# tests/conftest.py
"""
Shared fixtures: in-memory stores, a local execution engine, a recording
notification dispatcher and a coordinator wired from them.
"""

import pytest

from src.categories.tree import CategoryTreeStore
from src.engine.client import GuardedExecutionEngine, InMemoryExecutionEngine
from src.templates.lifecycle import LifecycleCoordinator, LifecyclePolicies
from src.templates.schemas import CreateCategoryRequest, CreateDraftRequest, Scope
from src.templates.snapshots import SnapshotStore
from src.templates.storage import DraftTemplateRepository, PublishedTemplateRepository


BPMN_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<definitions xmlns="http://www.omg.org/spec/BPMN/20100524/MODEL"
             xmlns:flowable="http://flowable.org/bpmn"
             targetNamespace="http://example.com/processes">
  <process id="{process_id}" name="{process_name}" isExecutable="true">
    <startEvent id="start"/>
    <userTask id="approve" name="{task_name}" flowable:assignee="manager"/>
    <endEvent id="end"/>
    <sequenceFlow id="f1" sourceRef="start" targetRef="approve"/>
    <sequenceFlow id="f2" sourceRef="approve" targetRef="end"/>
  </process>
</definitions>
"""


def build_bpmn(process_id: str = "leave_request", process_name: str = "Leave request", task_name: str = "Approve") -> str:
    return BPMN_TEMPLATE.format(process_id=process_id, process_name=process_name, task_name=task_name)


class RecordingDispatcher:
    """Keeps every dispatched event; optionally fails every call."""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def dispatch(self, event):
        if self.fail:
            raise RuntimeError("webhook down")
        self.events.append(event)

    def types(self):
        return [e.event_type.value for e in self.events]


@pytest.fixture
def bpmn():
    return build_bpmn


@pytest.fixture
def scope():
    return Scope(tenant_id="tenant-a")


@pytest.fixture
def other_scope():
    return Scope(tenant_id="tenant-b")


@pytest.fixture
def engine():
    return InMemoryExecutionEngine()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def categories():
    return CategoryTreeStore()


@pytest.fixture
def policies():
    return LifecyclePolicies()


@pytest.fixture
def coordinator(engine, dispatcher, categories, policies):
    guarded = GuardedExecutionEngine(engine, timeout_seconds=2.0)
    coord = LifecycleCoordinator(
        DraftTemplateRepository(),
        PublishedTemplateRepository(),
        SnapshotStore(),
        categories,
        guarded,
        dispatcher=dispatcher,
        policies=policies,
    )
    yield coord
    guarded.shutdown()


@pytest.fixture
def category(categories, scope):
    return categories.create(scope, CreateCategoryRequest(name="HR", code="hr"), "alice")


@pytest.fixture
def draft_request(category, bpmn):
    def make(template_key: str = "leave_request", **overrides) -> CreateDraftRequest:
        values = {
            "template_key": template_key,
            "template_name": "Leave request",
            "description": "Employee leave approval",
            "bpmn_xml": bpmn(template_key),
            "category_id": category.id,
            "tags": ["hr"],
            "form_config": {"fields": [{"name": "days", "type": "number"}]},
        }
        values.update(overrides)
        return CreateDraftRequest(**values)
    return make
