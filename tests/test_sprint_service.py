"""
Unit tests for sprint batches, the regeneration guard and horizon planning.

Runs against an in-memory SQLite store.
"""

import asyncio
import pytest
from datetime import datetime
from planner_sync.errors import ConflictError, NotFoundError
from planner_sync.services.sprint_service import (
    RegenerationGuard,
    SprintService,
    plan_sprint_horizon
)
from planner_sync.services.workitem_service import WorkItemService
from planner_sync.validation import ValidationError


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _definition(name, start, end, planned=20, actual=None):
    data = {"name": name, "startDate": start, "endDate": end, "plannedVelocity": planned}
    if actual is not None:
        data["actualVelocity"] = actual
    return data


HORIZON = [
    _definition("Q1 2025 Sprint 1", "2025-01-06", "2025-01-19", 20),
    _definition("Q1 2025 Sprint 2", "2025-01-20", "2025-02-02", 22),
    _definition("Q1 2025 Sprint 3", "2025-02-03", "2025-02-16", 24),
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(store, clock):
    return SprintService(store, RegenerationGuard(cooldown_seconds=5, clock=clock))


class TestRegenerationGuard:
    """Test single-flight and cooldown behavior."""

    @pytest.mark.asyncio
    async def test_concurrent_regeneration_single_flight(self, service):
        """Test two simultaneous regenerations: one succeeds, one conflicts."""
        results = await asyncio.gather(
            service.apply_batch(HORIZON, is_regeneration=True),
            service.apply_batch(HORIZON, is_regeneration=True),
            return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        successes = [r for r in results if isinstance(r, list)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert conflicts[0].kind == "conflict"

        sprints = await service.list_sprints()
        assert len(sprints) == 3

    @pytest.mark.asyncio
    async def test_cooldown_after_success(self, service, clock):
        await service.apply_batch(HORIZON, is_regeneration=True)

        clock.now += 1
        with pytest.raises(ConflictError) as exc_info:
            await service.apply_batch(HORIZON, is_regeneration=True)
        assert exc_info.value.retry_after_seconds == 4.0

        clock.now += 5
        sprints = await service.apply_batch(HORIZON, is_regeneration=True)
        assert len(sprints) == 3
        assert service.guard.rejections == 1

    @pytest.mark.asyncio
    async def test_merge_not_guarded(self, service):
        await service.apply_batch(HORIZON, is_regeneration=True)
        sprints = await service.apply_batch(HORIZON[:1])
        assert len(sprints) == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_start_cooldown(self, clock):
        guard = RegenerationGuard(cooldown_seconds=5, clock=clock)

        with pytest.raises(RuntimeError):
            async with guard.hold():
                raise RuntimeError("database went away")

        assert not guard.in_flight
        async with guard.hold():
            assert guard.in_flight

    def test_state(self, clock):
        guard = RegenerationGuard(cooldown_seconds=5, clock=clock)
        state = guard.get_state()

        assert state["in_flight"] is False
        assert state["seconds_since_last_regeneration"] is None
        assert state["rejections"] == 0


class TestRegeneration:
    """Test horizon replacement."""

    @pytest.mark.asyncio
    async def test_idempotent(self, store):
        service = SprintService(store, RegenerationGuard(cooldown_seconds=0))

        await service.apply_batch(HORIZON, is_regeneration=True)
        first = await service.list_sprints()
        await service.apply_batch(HORIZON, is_regeneration=True)
        second = await service.list_sprints()

        def summary(sprints):
            return [(s["name"], s["start_date"], s["planned_velocity"]) for s in sprints]

        assert summary(first) == summary(second)
        assert len(second) == 3

    @pytest.mark.asyncio
    async def test_overlapping_sprints_replaced(self, store):
        service = SprintService(store, RegenerationGuard(cooldown_seconds=0))
        await service.apply_batch([
            _definition("Old plan", "2025-01-10", "2025-01-23", 15),
            _definition("Last year", "2024-12-09", "2024-12-22", 18),
        ])

        await service.apply_batch(HORIZON, is_regeneration=True)

        names = [s["name"] for s in await service.list_sprints()]
        assert "Old plan" not in names
        assert names == ["Last year", "Q1 2025 Sprint 1", "Q1 2025 Sprint 2", "Q1 2025 Sprint 3"]

    @pytest.mark.asyncio
    async def test_archived_sprints_untouched(self, store):
        service = SprintService(store, RegenerationGuard(cooldown_seconds=0))
        [old] = await service.apply_batch([_definition("Old plan", "2025-01-10", "2025-01-23")])
        await service.archive_sprint(old.id)

        await service.apply_batch(HORIZON, is_regeneration=True)

        everything = await service.list_sprints(include_archived=True)
        assert [s["name"] for s in everything if s["archived"]] == ["Old plan"]

    @pytest.mark.asyncio
    async def test_assignments_of_replaced_sprints_removed(self, store):
        service = SprintService(store, RegenerationGuard(cooldown_seconds=0))
        [old] = await service.apply_batch([_definition("Old plan", "2025-01-10", "2025-01-23")])
        work_items = WorkItemService(store)
        item = await work_items.create_work_item("Tags API", jira_id="REF-5")
        await work_items.assign_to_sprint(item.id, old.id)

        await service.apply_batch(HORIZON, is_regeneration=True)

        listed = await work_items.list_work_items()
        assert listed[0]["assigned_sprints"] == []


class TestBatchValidation:
    """Test all-or-nothing batches."""

    @pytest.mark.asyncio
    async def test_one_invalid_definition_rejects_batch(self, service):
        batch = HORIZON + [{"name": "Q1 2025 Sprint 4", "startDate": "2025-02-17", "endDate": "2025-03-02"}]

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_batch(batch)

        assert "Q1 2025 Sprint 4" in str(exc_info.value)
        assert exc_info.value.field == "planned_velocity"
        assert await service.list_sprints() == []

    @pytest.mark.asyncio
    async def test_non_numeric_velocity_rejects_batch(self, service):
        batch = HORIZON + [{
            "name": "Q1 2025 Sprint 4", "startDate": "2025-02-17", "endDate": "2025-03-02", "plannedVelocity": "abc"
        }]

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_batch(batch)

        assert "Q1 2025 Sprint 4" in str(exc_info.value)
        assert await service.list_sprints() == []

    @pytest.mark.asyncio
    async def test_invalid_regeneration_does_not_claim_guard(self, service):
        with pytest.raises(ValidationError):
            await service.apply_batch([{"name": "x"}], is_regeneration=True)

        assert service.guard.rejections == 0
        assert len(await service.apply_batch(HORIZON, is_regeneration=True)) == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        with pytest.raises(ValidationError):
            await service.apply_batch([])


class TestMerge:
    """Test merge-mode matching of definitions to existing sprints."""

    @pytest.mark.asyncio
    async def test_exact_name_updates_velocity_only(self, service):
        await service.apply_batch([_definition("Sprint 1", "2025-01-06", "2025-01-19", 20, actual=17)])

        [sprint] = await service.apply_batch([_definition("Sprint 1", "2025-03-01", "2025-03-14", 30)])

        assert sprint.planned_velocity == 30
        assert sprint.actual_velocity == 17
        assert sprint.start_date == datetime(2025, 1, 6)
        assert len(await service.list_sprints()) == 1

    @pytest.mark.asyncio
    async def test_single_loose_match_updated(self, service):
        await service.apply_batch([_definition("Q1 2025 Sprint 1", "2025-01-06", "2025-01-19", 20)])

        [sprint] = await service.apply_batch([_definition("Sprint 1", "2025-01-06", "2025-01-19", 25, actual=21)])

        assert sprint.name == "Q1 2025 Sprint 1"
        assert sprint.planned_velocity == 25
        assert sprint.actual_velocity == 21

    @pytest.mark.asyncio
    async def test_ambiguous_loose_match_skipped(self, service, caplog):
        await service.apply_batch([
            _definition("Q1 2025 Sprint 1", "2025-01-06", "2025-01-19", 20),
            _definition("Q1 2025 Sprint 10", "2025-05-12", "2025-05-25", 20),
        ], is_regeneration=True)

        applied = await service.apply_batch([_definition("Sprint 1", "2025-06-01", "2025-06-14", 99)])

        assert applied == []
        assert service.skipped_definitions == 1
        assert "loosely matches 2 existing sprints" in caplog.text
        velocities = {s["name"]: s["planned_velocity"] for s in await service.list_sprints()}
        assert velocities == {"Q1 2025 Sprint 1": 20, "Q1 2025 Sprint 10": 20}

    @pytest.mark.asyncio
    async def test_no_match_creates(self, service):
        sprints = await service.apply_batch(HORIZON)

        assert [s.name for s in sprints] == [d["name"] for d in HORIZON]
        assert all(s.id for s in sprints)


class TestListAndArchive:
    """Test listing and archiving."""

    @pytest.mark.asyncio
    async def test_listed_by_start_date(self, service):
        await service.apply_batch(list(reversed(HORIZON)))

        names = [s["name"] for s in await service.list_sprints()]
        assert names == [d["name"] for d in HORIZON]

    @pytest.mark.asyncio
    async def test_archive_hides_sprint(self, service):
        [sprint] = await service.apply_batch(HORIZON[:1])

        archived = await service.archive_sprint(sprint.id)

        assert archived.archived is True
        assert await service.list_sprints() == []

    @pytest.mark.asyncio
    async def test_archive_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.archive_sprint("no-such-sprint")


class TestPlanSprintHorizon:
    """Test horizon layout and naming."""

    def test_quarter_naming(self):
        definitions = plan_sprint_horizon(datetime(2025, 3, 17), 14, 20, 3)

        assert [d.name for d in definitions] == [
            "Q1 2025 Sprint 1",
            "Q1 2025 Sprint 2",
            "Q2 2025 Sprint 1",
        ]
        assert definitions[0].end_date == datetime(2025, 3, 30)
        assert definitions[1].start_date == datetime(2025, 3, 31)
        assert all(d.planned_velocity == 20 for d in definitions)

    def test_starting_number(self):
        definitions = plan_sprint_horizon(datetime(2025, 3, 17), 14, 20, 3, starting_quarter_sprint_number=5)
        assert [d.name for d in definitions] == [
            "Q1 2025 Sprint 5",
            "Q1 2025 Sprint 6",
            "Q2 2025 Sprint 1",
        ]

    def test_year_rollover(self):
        definitions = plan_sprint_horizon(datetime(2025, 12, 22), 14, 20, 2)
        assert [d.name for d in definitions] == ["Q4 2025 Sprint 1", "Q1 2026 Sprint 1"]

    @pytest.mark.parametrize("kwargs", [
        {"duration_days": 0},
        {"default_velocity": 0},
        {"count": 0},
        {"starting_quarter_sprint_number": 0},
    ])
    def test_invalid_inputs(self, kwargs):
        args = dict(first_start=datetime(2025, 1, 6), duration_days=14, default_velocity=20, count=4)
        args.update(kwargs)

        with pytest.raises(ValidationError):
            plan_sprint_horizon(**args)
