"""
Epic aggregation for tracker imports
Fetches epics page by page, joins each with its children and totals their story points
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..constants import (
    CHILD_FIELDS,
    EPIC_FIELDS,
    IssueStatuses,
    IssueTypes,
    QueryLimits,
    Pacing
)
from ..errors import BadRequestError, NotFoundError, RemoteQueryFailure
from ..log_sanitizer import sanitize_error
from ..models import (
    EpicAggregate,
    EpicChild,
    IssueQuery,
    PaginatedEpics,
    Pagination,
    TrackerIssue
)
from ..normalizer import is_completed_status, parse_timestamp
from ..validation import validate_issue_key, validate_pagination, validate_project_key

logger = logging.getLogger(__name__)


def build_aggregate(epic: TrackerIssue, children: List[TrackerIssue]) -> EpicAggregate:
    """
    Join an epic with its children.

    total_story_points sums every child's normalized estimate;
    completed_story_points only those whose raw status is Done,
    Closed or Resolved.
    """
    aggregate = EpicAggregate(
        key=epic.key,
        title=epic.summary,
        description=epic.description,
        status=epic.work_status,
        jira_status=epic.status,
        story_points=epic.story_points,
        created=epic.created,
        updated=epic.updated
    )

    for child in children:
        points = child.story_points
        aggregate.children.append(EpicChild(
            key=child.key,
            title=child.summary,
            description=child.description,
            story_points=points,
            status=child.work_status,
            jira_status=child.status,
            labels=list(child.labels)
        ))
        aggregate.total_story_points += points
        if is_completed_status(child.status):
            aggregate.completed_story_points += points

    return aggregate


class EpicAggregator:
    """Builds epic aggregates from tracker searches"""

    def __init__(
        self,
        client,
        child_batch_size: int = Pacing.CHILD_BATCH_SIZE,
        child_batch_pause_seconds: float = Pacing.CHILD_BATCH_PAUSE_SECONDS
    ):
        """
        Initialize epic aggregator

        Args:
            client: IssueQueryClient instance
            child_batch_size: Epics whose children are fetched concurrently
            child_batch_pause_seconds: Pause between child batches
        """
        self.client = client
        self.child_batch_size = max(1, int(child_batch_size))
        self.child_batch_pause_seconds = child_batch_pause_seconds
        self.child_failures = 0

    async def fetch_epics_with_children(
        self,
        project_key: str,
        limit: int = QueryLimits.DEFAULT_EPIC_LIMIT,
        start_at: int = 0
    ) -> PaginatedEpics:
        """
        Fetch one page of open epics with their children.

        Args:
            project_key: Tracker project key
            limit: Page size
            start_at: Zero-based offset into the epic list

        Returns:
            PaginatedEpics, epics in the order the tracker returned them

        Raises:
            ValidationError: If the project key or page window is invalid
            RemoteQueryFailure: If the epic query itself fails
        """
        project_key = validate_project_key(project_key)
        limit, start_at = validate_pagination(limit, start_at)

        query = IssueQuery(
            project=project_key,
            issue_types=[IssueTypes.EPIC],
            excluded_statuses=IssueStatuses.EXCLUDED_EPIC_STATUSES,
            order_by="created DESC"
        )
        page = await self.client.search(query, EPIC_FIELDS, start_at=start_at, limit=limit)
        logger.info(
            f"Fetched {len(page.issues)} epics for {project_key} "
            f"(startAt={start_at}, total={page.total})"
        )

        aggregates = await self._aggregate_all(page.issues)

        return PaginatedEpics(
            epics=aggregates,
            pagination=Pagination(
                limit=limit,
                start_at=start_at,
                total=page.total,
                has_more=start_at + len(page.issues) < page.total
            )
        )

    async def fetch_single_epic(self, epic_key: str) -> EpicAggregate:
        """
        Fetch one epic by key with its children.

        Raises:
            NotFoundError: If the tracker has no such epic
            RemoteQueryFailure: If the epic query fails
        """
        epic_key = validate_issue_key(epic_key)

        try:
            epic = await self.client.get_issue(epic_key, EPIC_FIELDS)
        except BadRequestError as e:
            # The search endpoint answers 400 for keys that do not exist
            raise NotFoundError("Epic", epic_key, original_error=e)

        if epic is None:
            raise NotFoundError("Epic", epic_key)

        children = await self._fetch_children(epic.key)
        return build_aggregate(epic, children)

    async def _fetch_children(self, epic_key: str) -> List[TrackerIssue]:
        """Children of one epic; a failed query yields an empty list"""
        try:
            page = await self.client.search(
                IssueQuery(parent=epic_key, order_by="created ASC"),
                CHILD_FIELDS,
                limit=QueryLimits.CHILDREN_LIMIT
            )
            return page.issues
        except RemoteQueryFailure as e:
            self.child_failures += 1
            logger.warning(
                f"Failed to fetch children for epic {epic_key}, continuing without them: "
                f"{sanitize_error(e)}"
            )
            return []

    async def _aggregate_all(self, epics: List[TrackerIssue]) -> List[EpicAggregate]:
        aggregates: List[EpicAggregate] = []

        for offset in range(0, len(epics), self.child_batch_size):
            if offset and self.child_batch_pause_seconds:
                await asyncio.sleep(self.child_batch_pause_seconds)

            batch = epics[offset:offset + self.child_batch_size]
            children_lists = await asyncio.gather(
                *(self._fetch_children(epic.key) for epic in batch)
            )
            for epic, children in zip(batch, children_lists):
                aggregates.append(build_aggregate(epic, children))

        return aggregates


def _created(record: Dict[str, Any]) -> datetime:
    value = record.get('created_at')
    if isinstance(value, str):
        value = parse_timestamp(value)
    return value or datetime.min


def deduplicate_epics(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Collapse duplicate epic records and attach children to the survivors.

    Epics are grouped by external id (internal id when there is none) and
    only the most recently created record of each group is kept. A child's
    epic_id is resolved by external id first, then by the internal id of
    any epic record, surviving or not, so children of a discarded duplicate
    land under the surviving epic.

    Args:
        records: Work item dicts with id, jira_id, is_epic, epic_id and created_at

    Returns:
        Surviving epics (each with a 'children' list) and every non-epic
        record, in input order
    """
    epics = [r for r in records if r.get('is_epic')]

    survivors: Dict[str, Dict[str, Any]] = {}
    external_by_internal: Dict[str, str] = {}

    for epic in epics:
        external_id = epic.get('jira_id') or epic['id']
        external_by_internal[epic['id']] = external_id

        current = survivors.get(external_id)
        if current is None or _created(epic) > _created(current):
            survivors[external_id] = epic

    surviving = {}
    for external_id, epic in survivors.items():
        surviving[external_id] = dict(epic, children=[])

    def resolve_parent(reference: Optional[str]) -> Optional[Dict[str, Any]]:
        if not reference:
            return None
        if reference in surviving:
            return surviving[reference]
        external_id = external_by_internal.get(reference)
        if external_id is not None:
            return surviving.get(external_id)
        return None

    result = []
    emitted = set()

    for record in records:
        if record.get('is_epic'):
            external_id = record.get('jira_id') or record['id']
            survivor = surviving[external_id]
            if survivor['id'] == record['id'] and external_id not in emitted:
                emitted.add(external_id)
                result.append(survivor)
            continue

        parent = resolve_parent(record.get('epic_id'))
        if parent is not None:
            child = dict(record, epic_id=parent['id'])
            parent['children'].append(child['id'])
        else:
            child = dict(record)
        result.append(child)

    discarded = len(epics) - len(surviving)
    if discarded:
        logger.info(f"Discarded {discarded} duplicate epic record(s)")

    return result
