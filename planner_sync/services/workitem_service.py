"""
Work item service for locally stored tickets and epics
Handles listing with epic deduplication, dependencies, sprint assignment and estimates
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select

from ..constants import KNOWN_SKILLS, WorkStatus
from ..errors import ConflictError, NotFoundError
from ..models import TrackerIssue
from ..storage import (
    SprintRecord,
    SprintWorkItem,
    Store,
    WorkItemDependency,
    WorkItemRecord
)
from ..validation import validate_dependencies, validate_story_points
from .epic_service import deduplicate_epics

logger = logging.getLogger(__name__)


def skills_from_labels(labels: List[str]) -> List[str]:
    """Known skills found in the labels, or every known skill when none are"""
    lowered = {label.lower() for label in labels or []}
    skills = [skill for skill in KNOWN_SKILLS if skill in lowered]
    return skills or list(KNOWN_SKILLS)


async def upsert_completed_ticket(session, ticket: TrackerIssue) -> Tuple[WorkItemRecord, bool]:
    """
    Create or complete the work item for a completed tracker ticket.

    Must be called inside a transaction.

    Returns:
        (work item, created) where created is True for a new row
    """
    result = await session.execute(
        select(WorkItemRecord)
        .where(WorkItemRecord.jira_id == ticket.key)
        .order_by(WorkItemRecord.created_at.desc())
    )
    item = result.scalars().first()

    if item is None:
        item = WorkItemRecord(
            jira_id=ticket.key,
            title=ticket.summary,
            description=ticket.description,
            estimate_story_points=ticket.story_points,
            required_skills=skills_from_labels(ticket.labels),
            status=WorkStatus.COMPLETED,
            jira_status=ticket.status,
            epic_id=ticket.parent_key,
            is_epic=False
        )
        session.add(item)
        await session.flush()
        return item, True

    if item.status != WorkStatus.COMPLETED:
        item.status = WorkStatus.COMPLETED
        item.jira_status = ticket.status
        item.updated_at = datetime.utcnow()
        await session.flush()

    return item, False


async def assign_in_session(session, work_item_id: str, sprint_id: str) -> bool:
    """
    Link a work item to a sprint inside an open transaction.

    Returns:
        True if a new assignment was made, False if it already existed
    """
    existing = await session.get(SprintWorkItem, (sprint_id, work_item_id))
    if existing is not None:
        return False

    session.add(SprintWorkItem(sprint_id=sprint_id, work_item_id=work_item_id))
    await session.flush()
    return True


async def detach_from_other_sprints(session, work_item_id: str, keep_sprint_id: str) -> List[str]:
    """
    Remove a work item's assignments to every sprint except one.

    Returns:
        Ids of the sprints the item was removed from
    """
    result = await session.execute(
        select(SprintWorkItem.sprint_id).where(
            SprintWorkItem.work_item_id == work_item_id,
            SprintWorkItem.sprint_id != keep_sprint_id
        )
    )
    sprint_ids = list(result.scalars().all())
    if sprint_ids:
        await session.execute(
            delete(SprintWorkItem).where(
                SprintWorkItem.work_item_id == work_item_id,
                SprintWorkItem.sprint_id.in_(sprint_ids)
            )
        )
        await session.flush()
    return sprint_ids


class WorkItemService:
    """Service for work item operations against the store"""

    def __init__(self, store: Store):
        """
        Initialize work item service

        Args:
            store: Store instance
        """
        self.store = store

    async def list_work_items(self) -> List[Dict[str, Any]]:
        """
        List work items with their dependency and sprint ids.

        Duplicate epic records are collapsed to the most recently created
        one and every surviving epic carries a 'children' id list.
        """
        async with self.store.session() as session:
            items = (await session.execute(
                select(WorkItemRecord).order_by(WorkItemRecord.created_at)
            )).scalars().all()
            edges = (await session.execute(select(WorkItemDependency))).scalars().all()
            links = (await session.execute(select(SprintWorkItem))).scalars().all()

        dependencies: Dict[str, List[str]] = {}
        for edge in edges:
            dependencies.setdefault(edge.work_item_id, []).append(edge.depends_on_id)

        sprints: Dict[str, List[str]] = {}
        for link in links:
            sprints.setdefault(link.work_item_id, []).append(link.sprint_id)

        records = []
        for item in items:
            record = item.to_dict()
            record['created_at'] = item.created_at
            record['dependencies'] = dependencies.get(item.id, [])
            record['assigned_sprints'] = sprints.get(item.id, [])
            records.append(record)

        result = deduplicate_epics(records)
        for record in result:
            if isinstance(record.get('created_at'), datetime):
                record['created_at'] = record['created_at'].isoformat()
        return result

    async def get_work_item(self, work_item_id: str) -> WorkItemRecord:
        """
        Raises:
            NotFoundError: If the work item does not exist
        """
        async with self.store.session() as session:
            item = await session.get(WorkItemRecord, work_item_id)
        if item is None:
            raise NotFoundError("Work item", work_item_id)
        return item

    async def set_dependencies(self, work_item_id: str, depends_on: List[str]) -> List[str]:
        """
        Replace the dependencies of a work item.

        Args:
            work_item_id: Work item that depends on the others
            depends_on: Ids of the work items it depends on

        Returns:
            The stored dependency ids

        Raises:
            ValidationError: If the item depends on itself
            NotFoundError: If the item or any dependency does not exist
        """
        targets = validate_dependencies(work_item_id, list(depends_on or []))

        async with self.store.transaction() as session:
            if await session.get(WorkItemRecord, work_item_id) is None:
                raise NotFoundError("Work item", work_item_id)

            if targets:
                found = set((await session.execute(
                    select(WorkItemRecord.id).where(WorkItemRecord.id.in_(targets))
                )).scalars().all())
                missing = [t for t in targets if t not in found]
                if missing:
                    raise NotFoundError("Work item", ", ".join(missing))

            await session.execute(
                delete(WorkItemDependency).where(WorkItemDependency.work_item_id == work_item_id)
            )
            for target in targets:
                session.add(WorkItemDependency(work_item_id=work_item_id, depends_on_id=target))

        logger.info(f"Set {len(targets)} dependencies for work item {work_item_id}")
        return targets

    async def assign_to_sprint(self, work_item_id: str, sprint_id: str) -> None:
        """
        Assign a work item to a sprint.

        Raises:
            NotFoundError: If the work item or sprint does not exist
            ConflictError: If the item is already assigned to the sprint
        """
        async with self.store.transaction() as session:
            if await session.get(WorkItemRecord, work_item_id) is None:
                raise NotFoundError("Work item", work_item_id)
            if await session.get(SprintRecord, sprint_id) is None:
                raise NotFoundError("Sprint", sprint_id)

            if not await assign_in_session(session, work_item_id, sprint_id):
                raise ConflictError(
                    message=f"Work item {work_item_id} is already assigned to sprint {sprint_id}"
                )

    async def update_story_points(self, work_item_id: str, story_points: float) -> WorkItemRecord:
        """
        Set a manual estimate; values above 100 are capped at 20.

        Raises:
            ValidationError: If the estimate is not greater than 0
            NotFoundError: If the work item does not exist
        """
        value = validate_story_points(story_points)

        async with self.store.transaction() as session:
            item = await session.get(WorkItemRecord, work_item_id)
            if item is None:
                raise NotFoundError("Work item", work_item_id)
            item.estimate_story_points = value
            item.updated_at = datetime.utcnow()

        return item

    async def create_work_item(
        self,
        title: str,
        estimate_story_points: float = 1.0,
        jira_id: Optional[str] = None,
        is_epic: bool = False,
        epic_id: Optional[str] = None,
        status: str = WorkStatus.NOT_STARTED,
        required_skills: Optional[List[str]] = None,
        description: str = "",
        created_at: Optional[datetime] = None
    ) -> WorkItemRecord:
        """Insert a work item; used when persisting imported epics and children"""
        item = WorkItemRecord(
            title=title,
            description=description,
            estimate_story_points=validate_story_points(estimate_story_points),
            jira_id=jira_id,
            is_epic=is_epic,
            epic_id=epic_id,
            status=status,
            required_skills=required_skills if required_skills is not None else list(KNOWN_SKILLS)
        )
        if created_at is not None:
            item.created_at = created_at

        async with self.store.transaction() as session:
            session.add(item)

        return item
