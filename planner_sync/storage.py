"""
Relational store for work items, sprints and their associations.

Tables:
- work_items: imported tickets and epics (epic_id points at the parent epic row)
- work_item_dependencies: directed "depends on" edges between work items
- sprints: planned sprints with planned and actual velocity
- sprint_work_items: many-to-many assignment of work items to sprints

All timestamps are stored as naive UTC.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
    delete,
    text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .constants import WorkStatus

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class WorkItemRecord(Base):
    """A locally tracked ticket or epic."""
    __tablename__ = "work_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    jira_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    estimate_story_points: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    required_completion_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    required_skills: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=WorkStatus.NOT_STARTED, nullable=False)
    jira_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    epic_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    is_epic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'jira_id': self.jira_id,
            'title': self.title,
            'description': self.description,
            'estimate_story_points': self.estimate_story_points,
            'required_completion_date': _iso(self.required_completion_date),
            'required_skills': list(self.required_skills or []),
            'status': self.status,
            'jira_status': self.jira_status,
            'epic_id': self.epic_id,
            'is_epic': self.is_epic,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class WorkItemDependency(Base):
    """Directed edge: work_item_id depends on depends_on_id."""
    __tablename__ = "work_item_dependencies"

    work_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("work_items.id", ondelete="CASCADE"), primary_key=True
    )
    depends_on_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("work_items.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (
        CheckConstraint("work_item_id != depends_on_id", name="ck_dependency_not_self"),
    )


class SprintRecord(Base):
    """A planned sprint."""
    __tablename__ = "sprints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    planned_velocity: Mapped[float] = mapped_column(Float, nullable=False)
    actual_velocity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_sprints_archived_start", "archived", "start_date"),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'planned_velocity': self.planned_velocity,
            'actual_velocity': self.actual_velocity,
            'archived': self.archived,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class SprintWorkItem(Base):
    """Assignment of a work item to a sprint."""
    __tablename__ = "sprint_work_items"

    sprint_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sprints.id", ondelete="CASCADE"), primary_key=True
    )
    work_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("work_items.id", ondelete="CASCADE"), primary_key=True
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def delete_sprints(session: AsyncSession, sprint_ids: List[str]) -> int:
    """
    Delete sprints and their work item assignments.

    Assignment rows are removed first; SQLite does not enforce
    ON DELETE CASCADE by default.

    Returns:
        Number of sprints deleted
    """
    if not sprint_ids:
        return 0

    await session.execute(
        delete(SprintWorkItem).where(SprintWorkItem.sprint_id.in_(sprint_ids))
    )
    result = await session.execute(
        delete(SprintRecord).where(SprintRecord.id.in_(sprint_ids))
    )
    return result.rowcount or 0


class Store:
    """
    Owns the async engine and hands out sessions and transactions.
    """

    def __init__(self, database_url: str, **engine_kwargs):
        """
        Args:
            database_url: SQLAlchemy async URL (e.g. sqlite+aiosqlite:///planner.db)
            **engine_kwargs: Passed to create_async_engine (e.g. poolclass)
        """
        self.database_url = database_url
        self.engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self):
        """Create tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    def session(self) -> AsyncSession:
        """New session for read-only work; the caller closes it."""
        return self._sessionmaker()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session wrapped in a single transaction.

        Commits on normal exit and rolls back if the block raises.
        """
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self):
        await self.engine.dispose()
