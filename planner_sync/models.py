"""
Data models for the sprint planner sync engine
"""
import re
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime

from .normalizer import (
    extract_plain_text,
    normalize_story_points,
    map_external_status,
    parse_timestamp
)
from .validation import ValidationError


_SPRINT_NAME_PATTERN = re.compile(r'name=([^,\]]*)')


@dataclass
class SprintAssociation:
    """A sprint an external ticket was tagged with"""
    name: Optional[str]
    state: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "SprintAssociation":
        """
        Parse either a structured sprint object or the legacy
        'name=...,startDate=...,endDate=...,state=...' string form.
        """
        if isinstance(raw, dict):
            return cls(
                name=raw.get('name'),
                state=raw.get('state'),
                start_date=_safe_timestamp(raw.get('startDate')),
                end_date=_safe_timestamp(raw.get('endDate'))
            )

        text = str(raw or '')
        attributes = {}
        body = text
        if '[' in text:
            start = text.find('[') + 1
            end = text.rfind(']')
            body = text[start:end] if end >= start else text[start:]
        for part in body.split(','):
            if '=' in part:
                key, _, value = part.partition('=')
                attributes[key.strip()] = value.strip()

        name = attributes.get('name')
        if name is None:
            match = _SPRINT_NAME_PATTERN.search(text)
            name = match.group(1).strip() if match else None

        return cls(
            name=name or None,
            state=attributes.get('state'),
            start_date=_safe_timestamp(_nullable(attributes.get('startDate'))),
            end_date=_safe_timestamp(_nullable(attributes.get('endDate')))
        )


@dataclass
class TrackerIssue:
    """Typed view of an issue returned by the tracker search"""
    key: str
    summary: str
    status: Optional[str] = None
    issue_type: Optional[str] = None
    description: str = ""
    labels: List[str] = field(default_factory=list)
    story_points_raw: Any = None
    parent_key: Optional[str] = None
    fix_versions: List[str] = field(default_factory=list)
    sprints: List[SprintAssociation] = field(default_factory=list)
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    resolved: Optional[datetime] = None

    @property
    def story_points(self) -> float:
        return normalize_story_points(self.story_points_raw)

    @property
    def work_status(self) -> str:
        return map_external_status(self.status)

    @classmethod
    def from_api(
        cls,
        raw: Dict[str, Any],
        story_points_field: str,
        sprint_field: Optional[str] = None
    ) -> "TrackerIssue":
        """
        Build a TrackerIssue from a raw search result entry.

        Args:
            raw: Issue JSON ({"key": ..., "fields": {...}})
            story_points_field: Field id carrying the numeric estimate
            sprint_field: Field id carrying sprint associations
        """
        fields = raw.get('fields') or {}

        status = fields.get('status') or {}
        issue_type = fields.get('issuetype') or {}
        parent = fields.get('parent') or {}

        sprints_raw = fields.get(sprint_field) if sprint_field else None
        if sprints_raw and not isinstance(sprints_raw, list):
            sprints_raw = [sprints_raw]

        return cls(
            key=raw.get('key'),
            summary=fields.get('summary') or '',
            status=status.get('name') if isinstance(status, dict) else status,
            issue_type=issue_type.get('name') if isinstance(issue_type, dict) else issue_type,
            description=extract_plain_text(fields.get('description')),
            labels=list(fields.get('labels') or []),
            story_points_raw=fields.get(story_points_field),
            parent_key=parent.get('key') if isinstance(parent, dict) else None,
            fix_versions=[
                v.get('name') for v in (fields.get('fixVersions') or [])
                if isinstance(v, dict) and v.get('name')
            ],
            sprints=[SprintAssociation.from_raw(s) for s in (sprints_raw or [])],
            created=_safe_timestamp(fields.get('created')),
            updated=_safe_timestamp(fields.get('updated')),
            resolved=_safe_timestamp(fields.get('resolutiondate'))
        )


@dataclass
class SearchPage:
    """One page of tracker search results"""
    issues: List[TrackerIssue]
    total: int
    start_at: int = 0
    limit: int = 0


@dataclass
class IssueQuery:
    """Structured tracker query, rendered to JQL by the query client"""
    project: Optional[str] = None
    issue_types: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)
    excluded_statuses: List[str] = field(default_factory=list)
    parent: Optional[str] = None
    assignee: Optional[str] = None
    keys: List[str] = field(default_factory=list)
    resolved_after: Optional[datetime] = None
    resolved_before: Optional[datetime] = None
    order_by: Optional[str] = None


@dataclass
class EpicChild:
    """A child issue of an imported epic"""
    key: str
    title: str
    description: str
    story_points: float
    status: str
    jira_status: Optional[str]
    labels: List[str] = field(default_factory=list)


@dataclass
class EpicAggregate:
    """An epic joined with its children and their story point totals"""
    key: str
    title: str
    description: str
    status: str
    jira_status: Optional[str]
    story_points: float
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    children: List[EpicChild] = field(default_factory=list)
    total_story_points: float = 0.0
    completed_story_points: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class Pagination:
    """Page window echoed back with paginated results"""
    limit: int
    start_at: int
    total: int
    has_more: bool


@dataclass
class PaginatedEpics:
    """Epics page plus its pagination envelope"""
    epics: List[EpicAggregate]
    pagination: Pagination

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epics': [epic.to_dict() for epic in self.epics],
            'pagination': asdict(self.pagination)
        }


@dataclass
class SprintDefinition:
    """A sprint submitted for batch creation or update"""
    name: Optional[str]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    planned_velocity: Optional[float]
    actual_velocity: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SprintDefinition":
        """
        Build a definition from request data, accepting camelCase or
        snake_case keys. Missing fields stay None; validation happens
        later so the whole batch can be rejected at once.

        Raises:
            ValidationError: If a date is present but unparseable
        """
        name = data.get('name')
        label = name or 'unnamed'

        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        try:
            start = parse_timestamp(pick('startDate', 'start_date'))
            end = parse_timestamp(pick('endDate', 'end_date'))
        except ValueError as e:
            raise ValidationError(f"Invalid date for sprint: {label} ({e})", field="start_date")

        return cls(
            name=name.strip() if isinstance(name, str) else name,
            start_date=start,
            end_date=end,
            planned_velocity=pick('plannedVelocity', 'planned_velocity'),
            actual_velocity=pick('actualVelocity', 'actual_velocity')
        )


@dataclass
class SyncResult:
    """Per-ticket attribution outcome"""
    ticket_key: str
    matched_sprint_id: Optional[str]
    match_strategy: str
    story_points: float
    matched_sprint_name: Optional[str] = None


@dataclass
class SprintUpdate:
    """Actual velocity change applied to one sprint"""
    sprint_id: str
    sprint_name: str
    previous_velocity: Optional[float]
    new_velocity: float


@dataclass
class SyncReport:
    """Result of syncing completed tickets into past sprints"""
    sync_results: List[SyncResult] = field(default_factory=list)
    sprint_updates: List[SprintUpdate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class VelocityGroup:
    """Completed tickets grouped by fix-version or sprint tag"""
    group: str
    source: str
    ticket_count: int = 0
    story_points: float = 0.0
    tickets: List[str] = field(default_factory=list)


@dataclass
class VelocityReport:
    """Read-only velocity analysis"""
    sync_results: List[VelocityGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


def _nullable(value: Optional[str]) -> Optional[str]:
    if value in (None, '', '<null>', 'null'):
        return None
    return value


def _safe_timestamp(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value
