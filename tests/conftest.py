"""
Shared fixtures: in-memory store, settings and a query client backed by httpx.MockTransport
"""
import json

import httpx
import pytest
import pytest_asyncio
from unittest.mock import Mock
from sqlalchemy.pool import StaticPool

from planner_sync.config import SyncSettings
from planner_sync.services.tracker_client import IssueQueryClient
from planner_sync.storage import Store


BASE_URL = "https://example.atlassian.net"


def make_issue(
    key,
    summary="Issue",
    status="To Do",
    points=None,
    issue_type="Story",
    description=None,
    labels=None,
    parent=None,
    fix_versions=None,
    sprints=None,
    created="2024-01-01T09:00:00.000+0000",
    updated="2024-01-10T09:00:00.000+0000",
    resolved=None
):
    """Raw search-result issue as the tracker returns it"""
    fields = {
        "summary": summary,
        "status": {"name": status},
        "issuetype": {"name": issue_type},
        "description": description,
        "labels": labels or [],
        "created": created,
        "updated": updated,
        "resolutiondate": resolved,
        "customfield_10016": points,
    }
    if parent:
        fields["parent"] = {"key": parent}
    if fix_versions is not None:
        fields["fixVersions"] = [{"name": name} for name in fix_versions]
    if sprints is not None:
        fields["customfield_10020"] = sprints
    return {"key": key, "fields": fields}


def search_response(issues, total=None, start_at=0):
    return {
        "startAt": start_at,
        "maxResults": len(issues),
        "total": len(issues) if total is None else total,
        "issues": issues,
    }


def jql_of(request: httpx.Request) -> str:
    return json.loads(request.content)["jql"]


@pytest.fixture
def settings():
    return SyncSettings(
        jira_base_url=BASE_URL,
        default_project="REF",
        child_batch_pause_seconds=0,
        epic_import_timeout_seconds=5
    )


@pytest.fixture
def make_client(settings):
    """Factory: IssueQueryClient whose HTTP calls are answered by `handler`"""
    def factory(handler, client_settings=None):
        http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        auth = Mock()
        auth.client = http
        auth.get_client.return_value = http
        return IssueQueryClient(auth, client_settings or settings)
    return factory


@pytest_asyncio.fixture
async def store():
    store = Store(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    await store.create_all()
    yield store
    await store.close()
