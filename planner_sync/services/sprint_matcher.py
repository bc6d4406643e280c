"""
Attribution of completed tracker tickets to known sprints.

Strategies are tried in order and the first hit wins:
1. sprint_field: the ticket's most recent sprint tag, matched by name
2. date_range: the sprint whose days contain the ticket's last update
3. fallback_latest: the most recently started candidate
4. no_sprint_found: there were no candidates at all
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Optional, Sequence

from ..constants import MatchStrategy
from ..models import SprintAssociation, TrackerIssue


@dataclass
class SprintMatch:
    sprint: Optional[Any]
    strategy: str


def extract_sprint_name(association: Any) -> Optional[str]:
    """Name from a sprint association, a raw dict or the legacy string form"""
    if association is None:
        return None
    if not isinstance(association, SprintAssociation):
        association = SprintAssociation.from_raw(association)
    name = (association.name or "").strip()
    return name or None


def _match_by_name(name: str, candidates: Sequence[Any]) -> Optional[Any]:
    wanted = name.lower()

    for sprint in candidates:
        if sprint.name.strip().lower() == wanted:
            return sprint

    hits = [
        sprint for sprint in candidates
        if sprint.name.strip() and (
            sprint.name.strip().lower() in wanted or wanted in sprint.name.strip().lower()
        )
    ]
    if not hits:
        return None

    # Longest containing name wins, later start breaks ties
    return max(hits, key=lambda s: (len(s.name.strip()), s.start_date))


def _window_end(sprint: Any) -> datetime:
    """Exclusive upper bound: midnight after the sprint's last day"""
    return datetime.combine(sprint.end_date.date(), time.min) + timedelta(days=1)


def find_sprint_match(ticket: TrackerIssue, candidates: Sequence[Any]) -> SprintMatch:
    """
    Pick the sprint a completed ticket belongs to.

    Args:
        ticket: Completed tracker issue
        candidates: Sprint records with name, start_date and end_date

    Returns:
        SprintMatch; sprint is None only with strategy no_sprint_found
    """
    if not candidates:
        return SprintMatch(None, MatchStrategy.NO_SPRINT_FOUND)

    if ticket.sprints:
        name = extract_sprint_name(ticket.sprints[-1])
        if name:
            sprint = _match_by_name(name, candidates)
            if sprint is not None:
                return SprintMatch(sprint, MatchStrategy.SPRINT_FIELD)

    if ticket.updated is not None:
        for sprint in candidates:
            if sprint.start_date <= ticket.updated < _window_end(sprint):
                return SprintMatch(sprint, MatchStrategy.DATE_RANGE)

    latest = max(candidates, key=lambda s: s.start_date)
    return SprintMatch(latest, MatchStrategy.FALLBACK_LATEST)


def match_ticket_to_sprint(ticket: TrackerIssue, candidates: Sequence[Any]) -> Optional[Any]:
    """The matched sprint, or None when there were no candidates."""
    return find_sprint_match(ticket, candidates).sprint
