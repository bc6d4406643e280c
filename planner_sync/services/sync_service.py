"""
Sync orchestration between the issue tracker and the local plan
Imports epics, attributes completed tickets to past sprints and recomputes velocity
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, func, select

from ..config import SyncSettings
from ..constants import COMPLETED_TICKET_FIELDS, IssueStatuses, MatchStrategy, UNASSIGNED_GROUP, WorkStatus
from ..decorators import PerformanceMonitor, log_execution, run_with_timeout
from ..models import (
    EpicAggregate,
    IssueQuery,
    PaginatedEpics,
    SprintUpdate,
    SyncReport,
    SyncResult,
    TrackerIssue,
    VelocityGroup,
    VelocityReport
)
from ..storage import SprintRecord, SprintWorkItem, Store, WorkItemRecord
from ..validation import validate_date_range, validate_project_key
from .epic_service import EpicAggregator
from .sprint_matcher import extract_sprint_name, find_sprint_match
from .workitem_service import assign_in_session, detach_from_other_sprints, upsert_completed_ticket

logger = logging.getLogger(__name__)


def velocity_group_for(ticket: TrackerIssue):
    """(group name, source) for velocity reporting"""
    if ticket.fix_versions:
        return ticket.fix_versions[0], "fix_version"
    if ticket.sprints:
        name = extract_sprint_name(ticket.sprints[-1])
        if name:
            return name, "sprint"
    return UNASSIGNED_GROUP, "none"


class SyncService:
    """Service composing tracker queries, epic aggregation and the store for one project"""

    def __init__(self, client, store: Store, settings: SyncSettings, project: Optional[str] = None):
        """
        Initialize sync service

        Args:
            client: IssueQueryClient instance
            store: Store instance
            settings: Timeout and pacing settings
            project: Project key this service is bound to
        """
        self.client = client
        self.store = store
        self.settings = settings
        self.project = project
        self.aggregator = EpicAggregator(
            client,
            child_batch_size=settings.child_batch_size,
            child_batch_pause_seconds=settings.child_batch_pause_seconds
        )

    def _project(self, project_key: Optional[str]) -> str:
        return validate_project_key(project_key or self.project or "")

    async def import_epics_with_children(
        self,
        project_key: Optional[str] = None,
        limit: int = 50,
        start_at: int = 0
    ) -> PaginatedEpics:
        """
        One page of open epics with children, bounded by the import deadline.

        Raises:
            TimeoutError: If the deadline elapses; no partial result is returned
            RemoteQueryFailure: If the epic query fails
        """
        project_key = self._project(project_key)

        async with PerformanceMonitor("import_epics_with_children", warn_threshold_ms=30000):
            return await run_with_timeout(
                self.aggregator.fetch_epics_with_children(project_key, limit, start_at),
                self.settings.epic_import_timeout_seconds,
                "Epic import"
            )

    async def import_single_epic_with_children(self, epic_key: str) -> EpicAggregate:
        """
        One epic with its children, bounded by the import deadline.

        Raises:
            NotFoundError: If the epic does not exist
            TimeoutError: If the deadline elapses
        """
        async with PerformanceMonitor("import_single_epic_with_children"):
            return await run_with_timeout(
                self.aggregator.fetch_single_epic(epic_key),
                self.settings.epic_import_timeout_seconds,
                "Single epic import"
            )

    async def fetch_completed_tickets(
        self,
        project_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[TrackerIssue]:
        """All Done, Closed or Resolved tickets of a project, optionally by resolution date"""
        query = IssueQuery(
            project=project_key,
            statuses=IssueStatuses.COMPLETED_QUERY_STATUSES,
            resolved_after=start,
            resolved_before=end,
            order_by="resolved ASC"
        )
        tickets = await self.client.search_all(query, COMPLETED_TICKET_FIELDS)
        logger.info(f"Fetched {len(tickets)} completed tickets for {project_key}")
        return tickets

    async def _candidate_sprints(
        self,
        session,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> List[SprintRecord]:
        query = select(SprintRecord).where(
            SprintRecord.archived.is_(False),
            SprintRecord.start_date <= datetime.utcnow()
        )
        if start is not None:
            query = query.where(SprintRecord.end_date >= start)
        if end is not None:
            query = query.where(SprintRecord.start_date <= end)

        result = await session.execute(query.order_by(SprintRecord.start_date))
        return list(result.scalars().all())

    async def _completed_points(self, session, sprint_id: str) -> float:
        result = await session.execute(
            select(func.coalesce(func.sum(WorkItemRecord.estimate_story_points), 0.0))
            .select_from(SprintWorkItem)
            .join(WorkItemRecord, WorkItemRecord.id == SprintWorkItem.work_item_id)
            .where(and_(
                SprintWorkItem.sprint_id == sprint_id,
                WorkItemRecord.status == WorkStatus.COMPLETED
            ))
        )
        return float(result.scalar_one())

    @log_execution()
    async def sync_completed_tickets_to_past_sprints(
        self,
        project_key: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> SyncReport:
        """
        Attribute completed tickets to past sprints and refresh actual velocity.

        Work item upserts, sprint assignments and velocity updates commit
        together or not at all.

        Returns:
            SyncReport with one result per ticket and the sprints whose
            actual velocity changed
        """
        project_key = self._project(project_key)
        start, end = validate_date_range(start, end)

        tickets = await self.fetch_completed_tickets(project_key, start, end)
        report = SyncReport()
        touched: "OrderedDict[str, SprintRecord]" = OrderedDict()

        async with self.store.transaction() as session:
            candidates = await self._candidate_sprints(session, start, end)
            logger.info(f"Matching {len(tickets)} tickets against {len(candidates)} past sprints")

            for ticket in tickets:
                match = find_sprint_match(ticket, candidates)
                item, created = await upsert_completed_ticket(session, ticket)

                if match.sprint is not None:
                    for previous_id in await detach_from_other_sprints(session, item.id, match.sprint.id):
                        previous = await session.get(SprintRecord, previous_id)
                        if previous is not None:
                            logger.info(f"Moving {ticket.key} from sprint {previous.name} to {match.sprint.name}")
                            touched[previous.id] = previous
                    await assign_in_session(session, item.id, match.sprint.id)
                    touched[match.sprint.id] = match.sprint

                report.sync_results.append(SyncResult(
                    ticket_key=ticket.key,
                    matched_sprint_id=match.sprint.id if match.sprint else None,
                    match_strategy=match.strategy,
                    story_points=item.estimate_story_points,
                    matched_sprint_name=match.sprint.name if match.sprint else None
                ))

            for sprint in touched.values():
                velocity = await self._completed_points(session, sprint.id)
                if sprint.actual_velocity is not None and abs(sprint.actual_velocity - velocity) < 1e-9:
                    continue

                report.sprint_updates.append(SprintUpdate(
                    sprint_id=sprint.id,
                    sprint_name=sprint.name,
                    previous_velocity=sprint.actual_velocity,
                    new_velocity=velocity
                ))
                sprint.actual_velocity = velocity
                sprint.updated_at = datetime.utcnow()

        unmatched = sum(1 for r in report.sync_results if r.match_strategy == MatchStrategy.NO_SPRINT_FOUND)
        logger.info(
            f"Synced {len(report.sync_results)} tickets for {project_key}: "
            f"{len(report.sprint_updates)} sprint velocities updated, {unmatched} without a sprint"
        )
        return report

    @log_execution(level=logging.DEBUG)
    async def analyze_velocity(self, project_key: Optional[str] = None) -> VelocityReport:
        """
        Group completed tickets by fix-version or sprint tag.

        Read-only; nothing is persisted.
        """
        project_key = self._project(project_key)
        tickets = await self.fetch_completed_tickets(project_key)

        groups: Dict[str, VelocityGroup] = OrderedDict()
        for ticket in tickets:
            name, source = velocity_group_for(ticket)
            group = groups.get(name)
            if group is None:
                group = groups[name] = VelocityGroup(group=name, source=source)
            group.ticket_count += 1
            group.story_points += ticket.story_points
            group.tickets.append(ticket.key)

        return VelocityReport(sync_results=list(groups.values()))
