"""
Service Manager wiring the tracker client, the store and the services
Provides lazy-loading sync service instances with caching per project
"""
from typing import Any, Dict, List, Optional

from .auth import JiraAuth
from .config import SyncSettings
from .services.sprint_service import RegenerationGuard, SprintService
from .services.sync_service import SyncService
from .services.tracker_client import IssueQueryClient
from .services.workitem_service import WorkItemService
from .storage import Store
from .validation import validate_project_key


class ServiceManager:
    """
    Manages service instances for one tracker site and one store

    Features:
    - Single authenticated client shared across all projects
    - Lazy-loading: sync services created only when first accessed
    - One regeneration guard for the whole process
    - Project validation and listing

    Example:
        auth = JiraAuth(settings.jira_base_url)
        await auth.initialize()

        manager = ServiceManager(auth, store, settings)

        service = manager.get_sync_service("REF")
        same_service = manager.get_sync_service("ref")
    """

    def __init__(self, auth: JiraAuth, store: Store, settings: SyncSettings):
        """
        Initialize service manager

        Args:
            auth: Authenticated JiraAuth instance
            store: Store instance (schema created)
            settings: Runtime settings
        """
        if not auth or not auth.client:
            raise ValueError(
                "ServiceManager requires an initialized JiraAuth instance. "
                "Call auth.initialize() before creating ServiceManager."
            )

        self.auth = auth
        self.store = store
        self.settings = settings
        self.default_project = settings.default_project

        self.client = IssueQueryClient(auth, settings)
        self.guard = RegenerationGuard(cooldown_seconds=settings.regeneration_cooldown_seconds)
        self.sprint_service = SprintService(store, self.guard)
        self.workitem_service = WorkItemService(store)

        # Sync service cache (keyed by project key)
        self._sync_services: Dict[str, SyncService] = {}

        # Statistics
        self._service_creation_count = 0
        self._cache_hit_count = 0

    def get_sync_service(self, project: Optional[str] = None) -> SyncService:
        """
        Get or create a SyncService instance for a project

        Args:
            project: Tracker project key. If None, uses default_project.

        Raises:
            ValidationError: If no project specified and no default set
        """
        project = self._resolve_project(project)

        if project in self._sync_services:
            self._cache_hit_count += 1
            return self._sync_services[project]

        service = SyncService(self.client, self.store, self.settings, project)
        self._sync_services[project] = service
        self._service_creation_count += 1

        return service

    def get_epic_import_service(self) -> SyncService:
        """Sync service for operations keyed by issue rather than project"""
        if self.default_project:
            return self.get_sync_service(self.default_project)
        return SyncService(self.client, self.store, self.settings)

    def _resolve_project(self, project: Optional[str]) -> str:
        """
        Resolve project key, using default if not specified

        Raises:
            ValidationError: If no project specified and no default
        """
        return validate_project_key(project or self.default_project or "")

    def get_loaded_projects(self) -> List[str]:
        """Project keys that have a sync service loaded"""
        return sorted(self._sync_services.keys())

    def clear_project_services(self, project: str) -> None:
        """Remove the cached sync service for a project"""
        self._sync_services.pop(project.strip().upper(), None)

    def clear_all_services(self) -> None:
        self._sync_services.clear()

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get service manager statistics

        Returns:
            Dictionary with usage statistics:
            - loaded_projects: Number of unique projects loaded
            - sync_services: Number of sync service instances
            - service_creations: Total services created (including cleared)
            - cache_hits: Number of times cached service was returned
            - cache_hit_rate_percent: Cache hits vs total requests
            - tracker_requests: Search calls issued
            - regeneration: Regeneration guard state
        """
        total_requests = self._service_creation_count + self._cache_hit_count
        cache_hit_rate = (
            (self._cache_hit_count / total_requests * 100)
            if total_requests > 0 else 0.0
        )

        return {
            "loaded_projects": len(self.get_loaded_projects()),
            "sync_services": len(self._sync_services),
            "service_creations": self._service_creation_count,
            "cache_hits": self._cache_hit_count,
            "cache_hit_rate_percent": round(cache_hit_rate, 2),
            "default_project": self.default_project,
            "tracker_requests": self.client.request_count,
            "skipped_sprint_definitions": self.sprint_service.skipped_definitions,
            "regeneration": self.guard.get_state()
        }

    def __repr__(self) -> str:
        stats = self.get_statistics()
        return (
            f"ServiceManager(projects={stats['loaded_projects']}, "
            f"services={stats['sync_services']}, "
            f"default='{self.default_project}')"
        )
