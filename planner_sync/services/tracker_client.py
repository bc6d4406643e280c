"""
Issue query client for the Jira search API
Renders structured queries to JQL and returns typed issue pages
"""
import logging
from typing import List, Optional

from ..config import SyncSettings
from ..constants import QueryLimits, format_jql_list, with_custom_fields
from ..decorators import handle_tracker_error, tracker_operation
from ..models import IssueQuery, SearchPage, TrackerIssue
from ..validation import sanitize_jql_string, validate_pagination

logger = logging.getLogger(__name__)

SEARCH_PATH = "/rest/api/3/search"
SERVER_INFO_PATH = "/rest/api/3/serverInfo"


def build_jql(query: IssueQuery) -> str:
    """
    Render an IssueQuery to JQL.

    String values are quoted and escaped; dates are rendered as
    "yyyy-MM-dd HH:mm".
    """
    clauses = []

    if query.project:
        clauses.append(f'project = "{sanitize_jql_string(query.project)}"')
    if query.keys:
        clauses.append(f'key IN {format_jql_list(query.keys)}')
    if query.issue_types:
        if len(query.issue_types) == 1:
            clauses.append(f'issuetype = "{sanitize_jql_string(query.issue_types[0])}"')
        else:
            clauses.append(f'issuetype IN {format_jql_list(query.issue_types)}')
    if query.statuses:
        clauses.append(f'status IN {format_jql_list(query.statuses)}')
    if query.excluded_statuses:
        clauses.append(f'status NOT IN {format_jql_list(query.excluded_statuses)}')
    if query.parent:
        clauses.append(f'parent = "{sanitize_jql_string(query.parent)}"')
    if query.assignee:
        clauses.append(f'assignee = "{sanitize_jql_string(query.assignee)}"')
    if query.resolved_after:
        clauses.append(f'resolved >= "{query.resolved_after.strftime("%Y-%m-%d %H:%M")}"')
    if query.resolved_before:
        clauses.append(f'resolved <= "{query.resolved_before.strftime("%Y-%m-%d %H:%M")}"')

    jql = " AND ".join(clauses)
    if query.order_by:
        jql = f"{jql} ORDER BY {query.order_by}" if jql else f"ORDER BY {query.order_by}"
    return jql


class IssueQueryClient:
    """Executes searches against the tracker and parses the results"""

    def __init__(self, auth, settings: SyncSettings):
        """
        Initialize query client

        Args:
            auth: JiraAuth instance (initialized)
            settings: Field mapping and timeout settings
        """
        self.auth = auth
        self.settings = settings
        self.request_count = 0

    def fields_for(self, base_fields: List[str]) -> List[str]:
        """Base field set plus the configured estimate and sprint fields"""
        return with_custom_fields(
            base_fields,
            self.settings.story_points_field,
            self.settings.sprint_field
        )

    @handle_tracker_error
    async def _post_search(self, payload: dict) -> dict:
        client = self.auth.get_client()
        self.request_count += 1
        response = await client.post(SEARCH_PATH, json=payload)
        response.raise_for_status()
        return response.json()

    async def search(
        self,
        query: IssueQuery,
        fields: List[str],
        start_at: int = 0,
        limit: int = QueryLimits.DEFAULT_EPIC_LIMIT
    ) -> SearchPage:
        """
        Run one page of a search.

        Args:
            query: Structured query
            fields: Field ids to project (custom fields are added)
            start_at: Zero-based offset
            limit: Page size, capped at the search maximum

        Returns:
            SearchPage with at most `limit` issues and the server-reported total

        Raises:
            ValidationError: If the page window is invalid
            RemoteQueryFailure: If the tracker call failed or returned non-success
        """
        limit, start_at = validate_pagination(limit, start_at)

        payload = {
            "jql": build_jql(query),
            "fields": self.fields_for(fields),
            "startAt": start_at,
            "maxResults": limit,
        }
        logger.debug(f"Searching issues: {payload['jql']} (startAt={start_at}, maxResults={limit})")

        data = await self._post_search(payload)

        raw_issues = (data.get("issues") or [])[:limit]
        issues = [
            TrackerIssue.from_api(
                raw,
                self.settings.story_points_field,
                self.settings.sprint_field
            )
            for raw in raw_issues
        ]

        total = data.get("total")
        if total is None:
            total = start_at + len(issues)

        return SearchPage(
            issues=issues,
            total=int(total),
            start_at=int(data.get("startAt", start_at)),
            limit=limit
        )

    async def search_all(
        self,
        query: IssueQuery,
        fields: List[str],
        page_size: int = QueryLimits.SEARCH_PAGE_SIZE,
        max_pages: int = QueryLimits.MAX_PAGES
    ) -> List[TrackerIssue]:
        """
        Drain a search page by page.

        Stops when the reported total is reached, a page comes back empty
        or max_pages pages were read.
        """
        issues: List[TrackerIssue] = []
        start_at = 0

        for _ in range(max_pages):
            page = await self.search(query, fields, start_at=start_at, limit=page_size)
            if not page.issues:
                break
            issues.extend(page.issues)
            start_at += len(page.issues)
            if start_at >= page.total:
                break
        else:
            logger.warning(
                f"Stopped after {max_pages} pages ({len(issues)} issues); results may be incomplete"
            )

        return issues

    async def get_issue(self, issue_key: str, fields: List[str]) -> Optional[TrackerIssue]:
        """Fetch a single issue by key, or None when the search finds nothing"""
        page = await self.search(IssueQuery(keys=[issue_key]), fields, limit=1)
        return page.issues[0] if page.issues else None

    @tracker_operation(timeout_seconds=10)
    async def server_info(self) -> dict:
        """Site version and deployment type; doubles as a connectivity probe"""
        client = self.auth.get_client()
        self.request_count += 1
        response = await client.get(SERVER_INFO_PATH)
        response.raise_for_status()
        return response.json()
