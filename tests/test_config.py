# tests/test_config.py
"""
Settings parsing and service wiring.
"""

import pytest
from pydantic import ValidationError as SettingsError

from src.config import Settings, build_services
from src.engine.client import HttpExecutionEngine, InMemoryExecutionEngine
from src.notifications.dispatcher import LoggingNotificationDispatcher, WebhookNotificationDispatcher
from src.templates.schemas import CreateCategoryRequest, RestorePolicy, Scope, UnchangedPublishPolicy


def test_defaults_from_empty_environment():
    settings = Settings.from_env({})
    assert settings.data_dir is None
    assert settings.engine_base_url is None
    assert settings.engine_timeout_seconds == 10.0
    assert settings.restore_policy == RestorePolicy.OVERWRITE
    assert settings.block_suspend_with_running_instances is True
    assert settings.default_page_limit == 20
    assert settings.max_page_limit == 100


def test_values_are_read_and_normalized(tmp_path):
    settings = Settings.from_env({
        "PTM_DATA_DIR": str(tmp_path),
        "PTM_ENGINE_TIMEOUT_SECONDS": "2.5",
        "PTM_RESTORE_POLICY": " NEW_KEY ",
        "PTM_UNCHANGED_PUBLISH_POLICY": "Reject",
        "PTM_BLOCK_SUSPEND_WITH_RUNNING_INSTANCES": "false",
        "PTM_LOG_LEVEL": "debug",
        "PTM_ENGINE_USERNAME": "",
    })
    assert settings.data_dir == tmp_path
    assert settings.engine_timeout_seconds == 2.5
    assert settings.restore_policy == RestorePolicy.NEW_KEY
    assert settings.unchanged_publish_policy == UnchangedPublishPolicy.REJECT
    assert settings.block_suspend_with_running_instances is False
    assert settings.log_level == "DEBUG"
    assert settings.engine_username is None

    policies = settings.policies()
    assert policies.restore == RestorePolicy.NEW_KEY
    assert policies.block_suspend_with_running_instances is False


@pytest.mark.parametrize("environ", [
    {"PTM_RESTORE_POLICY": "replace"},
    {"PTM_LOG_LEVEL": "verbose"},
    {"PTM_ENGINE_TIMEOUT_SECONDS": "0"},
    {"PTM_DEFAULT_PAGE_LIMIT": "50", "PTM_MAX_PAGE_LIMIT": "10"},
])
def test_invalid_values_are_rejected(environ):
    with pytest.raises(SettingsError):
        Settings.from_env(environ)


def test_build_services_in_memory():
    services = build_services(Settings())
    try:
        assert isinstance(services.engine.engine, InMemoryExecutionEngine)
        assert isinstance(services.dispatcher, LoggingNotificationDispatcher)
        assert services.coordinator.engine is services.engine
    finally:
        services.close()


def test_build_services_with_remote_endpoints():
    services = build_services(Settings(
        engine_base_url="http://engine.local/flowable-rest/service",
        notification_webhook_url="http://hooks.local/templates",
        engine_timeout_seconds=3,
    ))
    try:
        assert isinstance(services.engine.engine, HttpExecutionEngine)
        assert services.engine.timeout_seconds == 3
        assert isinstance(services.dispatcher, WebhookNotificationDispatcher)
    finally:
        services.close()


def test_data_dir_persists_across_builds(tmp_path):
    scope = Scope(tenant_id="tenant-a")
    first = build_services(Settings(data_dir=tmp_path))
    category = first.categories.create(scope, CreateCategoryRequest(name="HR", code="hr"))
    first.close()

    second = build_services(Settings(data_dir=tmp_path))
    try:
        assert second.categories.get(scope, category.id).name == "HR"
    finally:
        second.close()
