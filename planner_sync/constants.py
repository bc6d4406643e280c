"""
Constants and field definitions for issue tracker operations.

Defines field sets for the queries the sync engine issues, query limits,
status vocabularies and pacing defaults.
"""

from typing import List


# ============================================================================
# Field Names
# ============================================================================

class FieldNames:
    """Issue tracker field ids used in search projections."""

    SUMMARY = "summary"
    DESCRIPTION = "description"
    STATUS = "status"
    LABELS = "labels"
    ISSUE_TYPE = "issuetype"
    PARENT = "parent"
    FIX_VERSIONS = "fixVersions"
    CREATED = "created"
    UPDATED = "updated"
    RESOLUTION_DATE = "resolutiondate"
    ASSIGNEE = "assignee"

    # Custom fields differ per site; these are the Jira Cloud defaults
    DEFAULT_STORY_POINTS = "customfield_10016"
    DEFAULT_SPRINT = "customfield_10020"


# ============================================================================
# Field Sets for Different Query Types
# ============================================================================

# Fields every issue projection carries
BASIC_FIELDS: List[str] = [
    FieldNames.SUMMARY,
    FieldNames.STATUS,
    FieldNames.ISSUE_TYPE,
    FieldNames.CREATED,
    FieldNames.UPDATED,
]

# Epic list queries
EPIC_FIELDS: List[str] = [
    *BASIC_FIELDS,
    FieldNames.DESCRIPTION,
    FieldNames.LABELS,
]

# Children of one epic
CHILD_FIELDS: List[str] = [
    *BASIC_FIELDS,
    FieldNames.DESCRIPTION,
    FieldNames.LABELS,
    FieldNames.PARENT,
]

# Completed tickets pulled for sprint attribution and velocity analysis
COMPLETED_TICKET_FIELDS: List[str] = [
    *BASIC_FIELDS,
    FieldNames.DESCRIPTION,
    FieldNames.LABELS,
    FieldNames.FIX_VERSIONS,
    FieldNames.RESOLUTION_DATE,
]


# ============================================================================
# Query Limits
# ============================================================================

class QueryLimits:
    """Default limits for different query types."""

    # Epic pages
    DEFAULT_EPIC_LIMIT = 50

    # Maximum page size accepted by the search endpoint
    MAX_LIMIT = 100

    # Children fetched per epic
    CHILDREN_LIMIT = 100

    # Page size when draining completed tickets
    SEARCH_PAGE_SIZE = 100

    # Hard stop when draining paginated results
    MAX_PAGES = 50


# ============================================================================
# Statuses
# ============================================================================

class IssueStatuses:
    """Tracker status vocabularies, compared lower-cased."""

    DONE = "Done"
    CLOSED = "Closed"
    RESOLVED = "Resolved"
    CANCELLED = "Cancelled"

    COMPLETED_STATES = {"done", "closed", "resolved"}

    IN_PROGRESS_STATES = {"in progress", "in development", "in review"}

    # Epics in these statuses are not imported
    EXCLUDED_EPIC_STATUSES = [DONE, CANCELLED]

    # Statuses pulled when syncing completed tickets
    COMPLETED_QUERY_STATUSES = [DONE, CLOSED, RESOLVED]


class WorkStatus:
    """Internal three-state lifecycle status."""

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"

    ALL = {NOT_STARTED, IN_PROGRESS, COMPLETED}


class IssueTypes:
    """Issue type names used in queries."""

    EPIC = "Epic"


# ============================================================================
# Story Points Policy
# ============================================================================

class StoryPoints:
    """Story point normalization bounds."""

    DEFAULT = 1.0
    MIN = 0.5
    MAX = 20.0

    # Anything above this is treated as a mis-mapped field
    GARBAGE_THRESHOLD = 100.0

    # Manual edits above the garbage threshold are capped here
    MANUAL_CAP = 20.0


# ============================================================================
# Skills
# ============================================================================

KNOWN_SKILLS = ["frontend", "backend"]


# ============================================================================
# Pacing and Budgets
# ============================================================================

class Pacing:
    """Concurrency and wall-clock defaults."""

    CHILD_BATCH_SIZE = 10
    CHILD_BATCH_PAUSE_SECONDS = 0.1
    EPIC_IMPORT_TIMEOUT_SECONDS = 300
    REQUEST_TIMEOUT_SECONDS = 30
    REGENERATION_COOLDOWN_SECONDS = 5


class MatchStrategy:
    """How a completed ticket was attributed to a sprint."""

    SPRINT_FIELD = "sprint_field"
    DATE_RANGE = "date_range"
    FALLBACK_LATEST = "fallback_latest"
    NO_SPRINT_FOUND = "no_sprint_found"


UNASSIGNED_GROUP = "Unassigned"


# ============================================================================
# Helper Functions
# ============================================================================

def with_custom_fields(fields: List[str], *custom_fields: str) -> List[str]:
    """
    Append configured custom field ids to a field set.

    Args:
        fields: Base field list
        *custom_fields: Custom field ids (falsy values are skipped)

    Returns:
        New list with duplicates removed, order preserved
    """
    result = list(fields)
    for field in custom_fields:
        if field and field not in result:
            result.append(field)
    return result


def format_jql_list(values: List[str]) -> str:
    """
    Format values for a JQL IN clause.

    Returns:
        Parenthesised, quoted list (e.g. '("Done", "Cancelled")')
    """
    quoted = []
    for value in values:
        escaped = value.replace('\\', '\\\\').replace('"', '\\"')
        quoted.append(f'"{escaped}"')
    return '(' + ', '.join(quoted) + ')'
