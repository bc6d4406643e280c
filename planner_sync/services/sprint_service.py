"""
Sprint service for batch sprint planning
Handles merge and regeneration of sprint batches, listing and archiving
"""
import logging
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import and_, func, or_, select

from ..constants import Pacing
from ..errors import ConflictError, NotFoundError
from ..models import SprintDefinition
from ..storage import SprintRecord, SprintWorkItem, Store, delete_sprints
from ..validation import ValidationError, validate_sprint_definition

logger = logging.getLogger(__name__)

# Marker for merge definitions that loosely match several sprints
_AMBIGUOUS = object()


class RegenerationGuard:
    """
    Process-wide single-flight guard with a cooldown.

    Only one regeneration may hold the guard at a time, and a new one is
    refused until cooldown_seconds have passed since the last successful
    regeneration finished. State lives in memory only and is lost on
    restart.
    """

    def __init__(
        self,
        cooldown_seconds: float = Pacing.REGENERATION_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = False
        self._last_completed: Optional[float] = None
        self.rejections = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _claim(self):
        with self._lock:
            if self._in_flight:
                self.rejections += 1
                raise ConflictError()

            if self._last_completed is not None:
                elapsed = self._clock() - self._last_completed
                remaining = self.cooldown_seconds - elapsed
                if remaining > 0:
                    self.rejections += 1
                    raise ConflictError(
                        message=(
                            "Sprint regeneration ran moments ago. "
                            f"Please wait {remaining:.1f} seconds before regenerating again."
                        ),
                        retry_after_seconds=round(remaining, 2)
                    )

            self._in_flight = True

    def _release(self, succeeded: bool):
        with self._lock:
            self._in_flight = False
            if succeeded:
                self._last_completed = self._clock()

    @asynccontextmanager
    async def hold(self):
        """
        Hold the guard for the duration of the block.

        Raises:
            ConflictError: If another regeneration is running or the
                cooldown has not elapsed
        """
        self._claim()
        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            self._release(succeeded)

    def get_state(self) -> Dict[str, Any]:
        return {
            "in_flight": self._in_flight,
            "cooldown_seconds": self.cooldown_seconds,
            "seconds_since_last_regeneration": (
                round(self._clock() - self._last_completed, 2)
                if self._last_completed is not None else None
            ),
            "rejections": self.rejections
        }


def plan_sprint_horizon(
    first_start: datetime,
    duration_days: int,
    default_velocity: float,
    count: int,
    starting_quarter_sprint_number: int = 1
) -> List[SprintDefinition]:
    """
    Lay out consecutive sprints from a start date.

    Sprints are named "Q<quarter> <year> Sprint <n>" after the quarter
    they start in. Numbering restarts at 1 whenever a sprint starts in a
    new quarter; the first quarter starts at starting_quarter_sprint_number.

    Raises:
        ValidationError: If duration, velocity, count or the starting
            number is not positive
    """
    if not duration_days or duration_days <= 0:
        raise ValidationError("Sprint duration must be greater than 0", field="sprint_duration_days")
    if not default_velocity or default_velocity <= 0:
        raise ValidationError("Default velocity must be greater than 0", field="default_velocity")
    if not count or count <= 0:
        raise ValidationError("Sprint count must be greater than 0", field="sprint_count")
    if starting_quarter_sprint_number < 1:
        raise ValidationError(
            "Starting sprint number must be at least 1",
            field="starting_quarter_sprint_number"
        )

    definitions = []
    quarter_key = None
    number = starting_quarter_sprint_number - 1

    for index in range(count):
        start = first_start + timedelta(days=index * duration_days)
        end = start + timedelta(days=duration_days - 1)

        quarter = (start.month - 1) // 3 + 1
        if quarter_key is None:
            quarter_key = (start.year, quarter)
        elif (start.year, quarter) != quarter_key:
            quarter_key = (start.year, quarter)
            number = 0
        number += 1

        definitions.append(SprintDefinition(
            name=f"Q{quarter} {start.year} Sprint {number}",
            start_date=start,
            end_date=end,
            planned_velocity=default_velocity
        ))

    return definitions


class SprintService:
    """Service for sprint batch operations against the store"""

    def __init__(self, store: Store, guard: Optional[RegenerationGuard] = None):
        """
        Initialize sprint service

        Args:
            store: Store instance
            guard: Regeneration guard shared by every caller in the process
        """
        self.store = store
        self.guard = guard or RegenerationGuard()
        self.skipped_definitions = 0

    async def apply_batch(
        self,
        definitions: List[Union[SprintDefinition, Dict[str, Any]]],
        is_regeneration: bool = False
    ) -> List[SprintRecord]:
        """
        Create or update a batch of sprints in one transaction.

        Args:
            definitions: Sprint definitions (objects or request dicts)
            is_regeneration: Replace the planning horizon instead of merging

        Returns:
            Sprints created, updated or reused, in batch order. Definitions
            skipped as ambiguous in merge mode are not included.

        Raises:
            ValidationError: If the batch is empty or any definition is
                invalid; nothing is written
            ConflictError: If a regeneration is already running or the
                cooldown has not elapsed
        """
        if not definitions:
            raise ValidationError("Sprint batch cannot be empty", field="sprints")

        parsed = [
            d if isinstance(d, SprintDefinition) else SprintDefinition.from_dict(d)
            for d in definitions
        ]
        for definition in parsed:
            validate_sprint_definition(definition)

        if is_regeneration:
            async with self.guard.hold():
                async with self.store.transaction() as session:
                    sprints = await self._regenerate(session, parsed)
            logger.info(f"Regenerated sprint horizon with {len(sprints)} sprints")
        else:
            async with self.store.transaction() as session:
                sprints = await self._merge(session, parsed)
            logger.info(f"Merged sprint batch: {len(sprints)} of {len(parsed)} definitions applied")

        return sprints

    async def _find_by_exact_name(self, session, name: str) -> Optional[SprintRecord]:
        result = await session.execute(
            select(SprintRecord)
            .where(SprintRecord.archived.is_(False), SprintRecord.name == name)
            .order_by(SprintRecord.created_at)
        )
        return result.scalars().first()

    async def _regenerate(self, session, definitions: List[SprintDefinition]) -> List[SprintRecord]:
        names = [d.name for d in definitions]
        window_start = min(d.start_date for d in definitions)
        window_end = max(d.end_date for d in definitions)

        result = await session.execute(
            select(SprintRecord.id).where(
                SprintRecord.archived.is_(False),
                or_(
                    SprintRecord.name.in_(names),
                    and_(
                        SprintRecord.start_date <= window_end,
                        SprintRecord.end_date >= window_start
                    )
                )
            )
        )
        stale_ids = list(result.scalars().all())
        deleted = await delete_sprints(session, stale_ids)
        if deleted:
            logger.info(
                f"Deleted {deleted} sprints overlapping {window_start.date()} - {window_end.date()}"
            )

        sprints = []
        for definition in definitions:
            existing = await self._find_by_exact_name(session, definition.name)
            if existing is not None:
                logger.warning(f"Sprint '{definition.name}' already exists in this batch, reusing it")
                sprints.append(existing)
                continue

            sprint = self._new_sprint(definition)
            session.add(sprint)
            await session.flush()
            sprints.append(sprint)

        return sprints

    async def _merge(self, session, definitions: List[SprintDefinition]) -> List[SprintRecord]:
        sprints = []

        for definition in definitions:
            sprint = await self._find_merge_target(session, definition)

            if sprint is _AMBIGUOUS:
                self.skipped_definitions += 1
                continue

            if sprint is None:
                sprint = self._new_sprint(definition)
                session.add(sprint)
                await session.flush()
                logger.info(f"Created sprint '{sprint.name}'")
            else:
                sprint.planned_velocity = definition.planned_velocity
                if definition.actual_velocity is not None:
                    sprint.actual_velocity = definition.actual_velocity
                sprint.updated_at = datetime.utcnow()
                await session.flush()
                logger.info(f"Updated velocity of sprint '{sprint.name}'")

            sprints.append(sprint)

        return sprints

    async def _find_merge_target(self, session, definition: SprintDefinition):
        exact = await self._find_by_exact_name(session, definition.name)
        if exact is not None:
            return exact

        result = await session.execute(
            select(SprintRecord).where(
                SprintRecord.archived.is_(False),
                func.lower(SprintRecord.name) == definition.name.lower(),
                SprintRecord.start_date == definition.start_date,
                SprintRecord.end_date == definition.end_date
            )
        )
        same_dates = result.scalars().first()
        if same_dates is not None:
            return same_dates

        wanted = definition.name.lower()
        result = await session.execute(
            select(SprintRecord).where(SprintRecord.archived.is_(False))
        )
        fuzzy = [
            s for s in result.scalars().all()
            if s.name.lower() in wanted or wanted in s.name.lower()
        ]

        if len(fuzzy) == 1:
            return fuzzy[0]
        if len(fuzzy) > 1:
            for sprint in fuzzy:
                if sprint.name == definition.name:
                    return sprint
            logger.warning(
                f"Skipping sprint '{definition.name}': it loosely matches "
                f"{len(fuzzy)} existing sprints ({', '.join(s.name for s in fuzzy)})"
            )
            return _AMBIGUOUS

        return None

    @staticmethod
    def _new_sprint(definition: SprintDefinition) -> SprintRecord:
        return SprintRecord(
            name=definition.name,
            start_date=definition.start_date,
            end_date=definition.end_date,
            planned_velocity=definition.planned_velocity,
            actual_velocity=definition.actual_velocity,
            archived=False
        )

    async def list_sprints(self, include_archived: bool = False) -> List[Dict[str, Any]]:
        """
        List sprints ordered by start date, each with its work item ids.
        """
        async with self.store.session() as session:
            query = select(SprintRecord).order_by(SprintRecord.start_date)
            if not include_archived:
                query = query.where(SprintRecord.archived.is_(False))
            sprints = (await session.execute(query)).scalars().all()

            links = (await session.execute(select(SprintWorkItem))).scalars().all()

        items_by_sprint: Dict[str, List[str]] = {}
        for link in links:
            items_by_sprint.setdefault(link.sprint_id, []).append(link.work_item_id)

        return [
            dict(sprint.to_dict(), work_item_ids=items_by_sprint.get(sprint.id, []))
            for sprint in sprints
        ]

    async def archive_sprint(self, sprint_id: str) -> SprintRecord:
        """
        Archive a sprint; archived sprints are ignored by batches and sync.

        Raises:
            NotFoundError: If the sprint does not exist
        """
        async with self.store.transaction() as session:
            sprint = await session.get(SprintRecord, sprint_id)
            if sprint is None:
                raise NotFoundError("Sprint", sprint_id)
            sprint.archived = True
            sprint.updated_at = datetime.utcnow()

        logger.info(f"Archived sprint '{sprint.name}'")
        return sprint

