"""
Unit tests for ServiceManager module.

Tests per-project service caching, shared services and statistics.
"""

import pytest
from unittest.mock import Mock
from planner_sync.auth import JiraAuth
from planner_sync.config import SyncSettings
from planner_sync.service_manager import ServiceManager
from planner_sync.services.sync_service import SyncService
from planner_sync.storage import Store
from planner_sync.validation import ValidationError


def _manager(default_project="REF", **overrides):
    auth = Mock(spec=JiraAuth)
    auth.client = Mock()  # Simulate initialized auth
    settings = SyncSettings(
        jira_base_url="https://example.atlassian.net",
        default_project=default_project,
        **overrides
    )
    return ServiceManager(auth, Mock(spec=Store), settings)


class TestServiceManagerInitialization:
    """Test ServiceManager initialization."""

    def test_initialization(self):
        """Test creating ServiceManager wires shared services."""
        manager = _manager(regeneration_cooldown_seconds=12)

        assert manager.default_project == "REF"
        assert manager.sprint_service.guard is manager.guard
        assert manager.guard.cooldown_seconds == 12
        assert manager.get_loaded_projects() == []

    def test_initialization_requires_initialized_auth(self):
        """Test that ServiceManager requires initialized auth."""
        auth = Mock(spec=JiraAuth)
        auth.client = None  # Not initialized

        with pytest.raises(ValueError, match="initialized JiraAuth"):
            ServiceManager(auth, Mock(spec=Store), SyncSettings(jira_base_url="https://x.atlassian.net"))

    def test_initialization_requires_auth_parameter(self):
        with pytest.raises(ValueError, match="initialized JiraAuth"):
            ServiceManager(None, Mock(spec=Store), SyncSettings(jira_base_url="https://x.atlassian.net"))


class TestServiceManagerSyncService:
    """Test ServiceManager sync service management."""

    def test_get_sync_service_creates_new_instance(self):
        manager = _manager()

        service = manager.get_sync_service("OPS")

        assert isinstance(service, SyncService)
        assert service.project == "OPS"
        assert service.client is manager.client
        assert manager.get_loaded_projects() == ["OPS"]

    def test_get_sync_service_returns_cached_instance(self):
        """Test keys are normalized before the cache lookup."""
        manager = _manager()

        first = manager.get_sync_service("ops")
        second = manager.get_sync_service(" OPS ")

        assert first is second
        stats = manager.get_statistics()
        assert stats["service_creations"] == 1
        assert stats["cache_hits"] == 1
        assert stats["cache_hit_rate_percent"] == 50.0

    def test_default_project_used(self):
        manager = _manager()
        assert manager.get_sync_service().project == "REF"

    def test_no_project_and_no_default(self):
        manager = _manager(default_project=None)

        with pytest.raises(ValidationError):
            manager.get_sync_service()

    def test_invalid_project_key(self):
        with pytest.raises(ValidationError):
            _manager().get_sync_service("not a key!")

    def test_epic_import_service_without_default(self):
        manager = _manager(default_project=None)

        service = manager.get_epic_import_service()

        assert service.project is None
        assert manager.get_loaded_projects() == []

    def test_clear_services(self):
        manager = _manager()
        manager.get_sync_service("REF")
        manager.get_sync_service("OPS")

        manager.clear_project_services("ops")
        assert manager.get_loaded_projects() == ["REF"]

        manager.clear_all_services()
        assert manager.get_loaded_projects() == []


class TestServiceManagerStatistics:
    """Test statistics reporting."""

    def test_statistics(self):
        manager = _manager()
        manager.get_sync_service("REF")

        stats = manager.get_statistics()

        assert stats["loaded_projects"] == 1
        assert stats["default_project"] == "REF"
        assert stats["tracker_requests"] == 0
        assert stats["skipped_sprint_definitions"] == 0
        assert stats["regeneration"]["in_flight"] is False

    def test_empty_statistics(self):
        stats = _manager().get_statistics()
        assert stats["cache_hit_rate_percent"] == 0.0

    def test_repr(self):
        assert repr(_manager()) == "ServiceManager(projects=0, services=0, default='REF')"
