"""
Unit tests for the sync orchestrator.

The tracker is faked with httpx.MockTransport and the store is in-memory SQLite.
"""

import pytest
import httpx
from planner_sync.constants import MatchStrategy, WorkStatus
from planner_sync.errors import TransientError
from planner_sync.services.sprint_service import SprintService
from planner_sync.services.sync_service import SyncService, velocity_group_for
from planner_sync.services.workitem_service import WorkItemService
from planner_sync.models import TrackerIssue, SprintAssociation
from conftest import make_issue, search_response, jql_of


COMPLETED = [
    make_issue("REF-1", status="Done", points=3, sprints=[{"name": "Sprint 11"}]),
    make_issue("REF-2", status="Closed", points=5, updated="2024-04-20T10:00:00.000+0000"),
    make_issue("REF-3", status="Resolved", points=None, updated="2023-06-01T10:00:00.000+0000"),
]


def _answer(issues, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(jql_of(request))
        return httpx.Response(200, json=search_response(issues))
    return handler


async def _plan_past_sprints(store, sprint_11_actual=None):
    sprint_11 = {"name": "Sprint 11", "startDate": "2024-04-01", "endDate": "2024-04-14", "plannedVelocity": 20}
    if sprint_11_actual is not None:
        sprint_11["actualVelocity"] = sprint_11_actual
    return await SprintService(store).apply_batch([
        sprint_11,
        {"name": "Sprint 12", "startDate": "2024-04-15", "endDate": "2024-04-28", "plannedVelocity": 20},
    ])


class TestSyncCompletedTickets:
    """Test SyncService.sync_completed_tickets_to_past_sprints."""

    @pytest.mark.asyncio
    async def test_tickets_matched_and_persisted(self, store, settings, make_client):
        sprint_11, sprint_12 = await _plan_past_sprints(store)
        service = SyncService(make_client(_answer(COMPLETED)), store, settings, project="REF")

        report = await service.sync_completed_tickets_to_past_sprints()

        strategies = {r.ticket_key: (r.matched_sprint_id, r.match_strategy) for r in report.sync_results}
        assert strategies == {
            "REF-1": (sprint_11.id, MatchStrategy.SPRINT_FIELD),
            "REF-2": (sprint_12.id, MatchStrategy.DATE_RANGE),
            "REF-3": (sprint_12.id, MatchStrategy.FALLBACK_LATEST),
        }

        items = await WorkItemService(store).list_work_items()
        assert sorted(i["jira_id"] for i in items) == ["REF-1", "REF-2", "REF-3"]
        assert all(i["status"] == WorkStatus.COMPLETED for i in items)

        velocities = {s["name"]: s["actual_velocity"] for s in await SprintService(store).list_sprints()}
        assert velocities == {"Sprint 11": 3, "Sprint 12": 6}

    @pytest.mark.asyncio
    async def test_query_targets_completed_statuses(self, store, settings, make_client):
        seen = []
        service = SyncService(make_client(_answer([], seen)), store, settings, project="REF")

        await service.sync_completed_tickets_to_past_sprints()

        assert seen[0].startswith('project = "REF" AND status IN (')
        for status in ("Done", "Closed", "Resolved"):
            assert f'"{status}"' in seen[0]

    @pytest.mark.asyncio
    async def test_only_changed_velocities_reported(self, store, settings, make_client):
        """Test that sprints whose velocity is unchanged are not rewritten."""
        await _plan_past_sprints(store, sprint_11_actual=3)
        service = SyncService(make_client(_answer(COMPLETED)), store, settings, project="REF")

        first = await service.sync_completed_tickets_to_past_sprints()

        assert [(u.sprint_name, u.previous_velocity, u.new_velocity) for u in first.sprint_updates] == [
            ("Sprint 12", None, 6)
        ]

        second = await service.sync_completed_tickets_to_past_sprints()
        assert second.sprint_updates == []
        assert len(second.sync_results) == 3

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, store, settings, make_client):
        await _plan_past_sprints(store)
        service = SyncService(make_client(_answer(COMPLETED)), store, settings, project="REF")

        await service.sync_completed_tickets_to_past_sprints()
        await service.sync_completed_tickets_to_past_sprints()

        items = await WorkItemService(store).list_work_items()
        assert len(items) == 3
        assert all(len(i["assigned_sprints"]) == 1 for i in items)

    @pytest.mark.asyncio
    async def test_rerun_moves_reattributed_ticket(self, store, settings, make_client):
        """Test a ticket re-attributed on a later run leaves its old sprint."""
        sprints = SprintService(store)
        [sprint_a] = await sprints.apply_batch([
            {"name": "Sprint A", "startDate": "2024-04-01", "endDate": "2024-04-14", "plannedVelocity": 20}
        ])
        ticket = make_issue("REF-9", status="Done", points=5, updated="2023-06-01T10:00:00.000+0000")
        service = SyncService(make_client(_answer([ticket])), store, settings, project="REF")

        first = await service.sync_completed_tickets_to_past_sprints()
        assert first.sync_results[0].matched_sprint_id == sprint_a.id

        [sprint_b] = await sprints.apply_batch([
            {"name": "Sprint B", "startDate": "2024-05-01", "endDate": "2024-05-14", "plannedVelocity": 20}
        ])
        second = await service.sync_completed_tickets_to_past_sprints()

        assert second.sync_results[0].matched_sprint_id == sprint_b.id
        assert second.sync_results[0].match_strategy == MatchStrategy.FALLBACK_LATEST
        assert [(u.sprint_name, u.previous_velocity, u.new_velocity) for u in second.sprint_updates] == [
            ("Sprint A", 5, 0),
            ("Sprint B", None, 5),
        ]

        [item] = await WorkItemService(store).list_work_items()
        assert item["assigned_sprints"] == [sprint_b.id]

        velocities = {s["name"]: s["actual_velocity"] for s in await sprints.list_sprints()}
        assert velocities == {"Sprint A": 0, "Sprint B": 5}

    @pytest.mark.asyncio
    async def test_existing_item_completed(self, store, settings, make_client):
        await _plan_past_sprints(store)
        work_items = WorkItemService(store)
        existing = await work_items.create_work_item("Tags API", jira_id="REF-2")
        service = SyncService(make_client(_answer(COMPLETED[1:2])), store, settings, project="REF")

        await service.sync_completed_tickets_to_past_sprints()

        [item] = await work_items.list_work_items()
        assert item["id"] == existing.id
        assert item["status"] == WorkStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_sprints(self, store, settings, make_client):
        service = SyncService(make_client(_answer(COMPLETED)), store, settings, project="REF")

        report = await service.sync_completed_tickets_to_past_sprints()

        assert {r.match_strategy for r in report.sync_results} == {MatchStrategy.NO_SPRINT_FOUND}
        assert all(r.matched_sprint_id is None for r in report.sync_results)
        assert report.sprint_updates == []

    @pytest.mark.asyncio
    async def test_future_and_archived_sprints_ignored(self, store, settings, make_client):
        sprints = SprintService(store)
        [archived] = await sprints.apply_batch([
            {"name": "Sprint 11", "startDate": "2024-04-01", "endDate": "2024-04-14", "plannedVelocity": 20}
        ])
        await sprints.archive_sprint(archived.id)
        await sprints.apply_batch([
            {"name": "Next year", "startDate": "2099-01-05", "endDate": "2099-01-18", "plannedVelocity": 20}
        ])
        service = SyncService(make_client(_answer(COMPLETED[:1])), store, settings, project="REF")

        report = await service.sync_completed_tickets_to_past_sprints()

        assert report.sync_results[0].match_strategy == MatchStrategy.NO_SPRINT_FOUND

    @pytest.mark.asyncio
    async def test_tracker_failure_writes_nothing(self, store, settings, make_client):
        def handler(request):
            return httpx.Response(503, text="maintenance")

        service = SyncService(make_client(handler), store, settings, project="REF")

        with pytest.raises(TransientError):
            await service.sync_completed_tickets_to_past_sprints()

        assert await WorkItemService(store).list_work_items() == []


class TestAnalyzeVelocity:
    """Test SyncService.analyze_velocity."""

    @pytest.mark.asyncio
    async def test_grouping(self, store, settings, make_client):
        tickets = [
            make_issue("REF-1", status="Done", points=3, fix_versions=["2024.05"]),
            make_issue("REF-2", status="Done", points=5, fix_versions=["2024.05"], sprints=[{"name": "Sprint 9"}]),
            make_issue("REF-3", status="Closed", points=2, sprints=[{"name": "Sprint 8"}, {"name": "Sprint 9"}]),
            make_issue("REF-4", status="Resolved", points=None),
        ]
        service = SyncService(make_client(_answer(tickets)), store, settings, project="REF")

        report = await service.analyze_velocity()

        groups = [(g.group, g.source, g.ticket_count, g.story_points, g.tickets) for g in report.sync_results]
        assert groups == [
            ("2024.05", "fix_version", 2, 8, ["REF-1", "REF-2"]),
            ("Sprint 9", "sprint", 1, 2, ["REF-3"]),
            ("Unassigned", "none", 1, 1, ["REF-4"]),
        ]

    @pytest.mark.asyncio
    async def test_nothing_persisted(self, store, settings, make_client):
        service = SyncService(make_client(_answer(COMPLETED)), store, settings, project="REF")

        await service.analyze_velocity()

        assert await WorkItemService(store).list_work_items() == []

    def test_velocity_group_for(self):
        ticket = TrackerIssue(key="REF-1", summary="t", sprints=[SprintAssociation(name="Sprint 3")])
        assert velocity_group_for(ticket) == ("Sprint 3", "sprint")
