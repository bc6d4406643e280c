"""
Sprint Planner Sync MCP Server
MCP server that imports epics from Jira, plans sprints and reconciles completed work
"""
from fastmcp import FastMCP, Context
from typing import Optional, List, Dict, Any
import logging
import os
from datetime import datetime
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from .auth import JiraAuth
from .config import SyncSettings
from .errors import PlannerSyncError
from .normalizer import parse_timestamp
from .service_manager import ServiceManager
from .services.sprint_service import plan_sprint_horizon
from .storage import Store
from .validation import ValidationError

logger = logging.getLogger(__name__)


# Global state, initialized during lifespan startup
_auth = None
_store = None
_service_manager = None


@asynccontextmanager
async def lifespan(app):
    """Initialize services on startup"""
    global _auth, _store, _service_manager

    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    settings = SyncSettings.from_env()

    _auth = JiraAuth(settings.jira_base_url, timeout=settings.request_timeout_seconds)
    await _auth.initialize()

    _store = Store(settings.database_url)
    await _store.create_all()

    _service_manager = ServiceManager(_auth, _store, settings)

    yield  # Server runs

    await _auth.close()
    await _store.close()


mcp = FastMCP(
    name="Sprint Planner Sync",
    lifespan=lifespan
)


async def _info(ctx: Optional[Context], message: str):
    if ctx is not None:
        await ctx.info(message)


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise ValidationError(
            f"Invalid date for {field}: {value!r}",
            field=field,
            suggestion="Use ISO-8601, e.g. 2025-01-31 or 2025-01-31T17:00:00Z"
        )


# ============================================================================
# IMPORT TOOLS
# ============================================================================

@mcp.tool()
async def import_epics_with_children(
    project_key: Optional[str] = None,
    limit: int = 50,
    start_at: int = 0,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Import one page of open epics with their child issues and story point totals.

    Args:
        project_key: Jira project key (e.g. "REF"). If None, uses the default project.
        limit: Epics per page (max 100)
        start_at: Zero-based offset into the epic list

    Returns:
        {"epics": [...], "pagination": {limit, start_at, total, has_more}}
    """
    try:
        service = _service_manager.get_sync_service(project_key)
        await _info(ctx, f"Importing epics from {service.project} (startAt={start_at}, limit={limit})...")

        result = await service.import_epics_with_children(service.project, limit, start_at)

        await _info(ctx, f"Imported {len(result.epics)} of {result.pagination.total} epics")
        return result.to_dict()
    except PlannerSyncError as e:
        return e.to_dict()


@mcp.tool()
async def import_single_epic_with_children(epic_key: str, ctx: Context = None) -> Dict[str, Any]:
    """
    Import a single epic with its child issues.

    Args:
        epic_key: Epic issue key (e.g. "REF-2903")

    Returns:
        Epic aggregate with children and story point totals
    """
    try:
        await _info(ctx, f"Importing epic {epic_key}...")
        aggregate = await _service_manager.get_epic_import_service().import_single_epic_with_children(epic_key)

        await _info(ctx, f"Epic {aggregate.key} has {len(aggregate.children)} children")
        return aggregate.to_dict()
    except PlannerSyncError as e:
        return e.to_dict()


# ============================================================================
# SPRINT PLANNING TOOLS
# ============================================================================

@mcp.tool()
async def batch_upsert_sprints(
    sprints: List[Dict[str, Any]],
    is_regeneration: bool = False,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Create or update a batch of sprints in a single transaction.

    Args:
        sprints: Sprint definitions with name, startDate, endDate,
                 plannedVelocity and optional actualVelocity
        is_regeneration: Replace every sprint named in the batch or
                 overlapping its date window instead of merging

    Returns:
        {"sprints": [...]} or a structured error (conflict, validation_failure)
    """
    try:
        mode = "Regenerating" if is_regeneration else "Merging"
        await _info(ctx, f"{mode} {len(sprints)} sprints...")

        result = await _service_manager.sprint_service.apply_batch(sprints, is_regeneration)

        await _info(ctx, f"Applied {len(result)} sprints")
        return {"sprints": [sprint.to_dict() for sprint in result]}
    except PlannerSyncError as e:
        return e.to_dict()


@mcp.tool()
async def regenerate_sprint_horizon(
    first_sprint_start_date: str,
    sprint_duration_days: int,
    default_velocity: float,
    sprint_count: int,
    starting_quarter_sprint_number: int = 1,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Lay out consecutive sprints and regenerate the planning horizon with them.

    Args:
        first_sprint_start_date: Start date of the first sprint (ISO-8601)
        sprint_duration_days: Length of each sprint in days
        default_velocity: Planned velocity for every sprint
        sprint_count: Number of sprints to lay out
        starting_quarter_sprint_number: Number of the first sprint within its quarter

    Returns:
        {"sprints": [...]} or a structured error
    """
    try:
        start = _parse_date(first_sprint_start_date, "first_sprint_start_date")
        if start is None:
            raise ValidationError("first_sprint_start_date is required", field="first_sprint_start_date")

        definitions = plan_sprint_horizon(
            start,
            sprint_duration_days,
            default_velocity,
            sprint_count,
            starting_quarter_sprint_number
        )
        await _info(ctx, f"Regenerating {len(definitions)} sprints from {start.date()}...")

        result = await _service_manager.sprint_service.apply_batch(definitions, is_regeneration=True)
        return {"sprints": [sprint.to_dict() for sprint in result]}
    except PlannerSyncError as e:
        return e.to_dict()


@mcp.tool()
async def list_sprints(include_archived: bool = False, ctx: Context = None) -> Dict[str, Any]:
    """
    List sprints ordered by start date with their assigned work item ids.
    """
    sprints = await _service_manager.sprint_service.list_sprints(include_archived)
    return {"sprints": sprints}


@mcp.tool()
async def archive_sprint(sprint_id: str, ctx: Context = None) -> Dict[str, Any]:
    """
    Archive a sprint so batches and syncs ignore it.

    Args:
        sprint_id: Sprint id
    """
    try:
        sprint = await _service_manager.sprint_service.archive_sprint(sprint_id)
        await _info(ctx, f"Archived sprint {sprint.name}")
        return sprint.to_dict()
    except PlannerSyncError as e:
        return e.to_dict()


# ============================================================================
# SYNC TOOLS
# ============================================================================

@mcp.tool()
async def sync_completed_tickets_to_past_sprints(
    project_key: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Attribute completed Jira tickets to past sprints and refresh actual velocity.

    Args:
        project_key: Jira project key. If None, uses the default project.
        start_date: Only tickets resolved on or after this date (ISO-8601)
        end_date: Only tickets resolved on or before this date (ISO-8601)

    Returns:
        {"sync_results": [...], "sprint_updates": [...]}
    """
    try:
        start = _parse_date(start_date, "start_date")
        end = _parse_date(end_date, "end_date")

        service = _service_manager.get_sync_service(project_key)
        await _info(ctx, f"Syncing completed tickets from {service.project}...")

        report = await service.sync_completed_tickets_to_past_sprints(service.project, start, end)

        await _info(
            ctx,
            f"Synced {len(report.sync_results)} tickets, "
            f"updated {len(report.sprint_updates)} sprints"
        )
        return report.to_dict()
    except PlannerSyncError as e:
        return e.to_dict()


@mcp.tool()
async def analyze_velocity(project_key: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
    """
    Group completed tickets by fix version or sprint tag. Nothing is stored.

    Args:
        project_key: Jira project key. If None, uses the default project.
    """
    try:
        service = _service_manager.get_sync_service(project_key)
        await _info(ctx, f"Analyzing velocity for {service.project}...")

        report = await service.analyze_velocity(service.project)
        return report.to_dict()
    except PlannerSyncError as e:
        return e.to_dict()


# ============================================================================
# WORK ITEM TOOLS
# ============================================================================

@mcp.tool()
async def list_work_items(ctx: Context = None) -> Dict[str, Any]:
    """
    List work items with duplicate epics collapsed.

    Surviving epics carry a "children" list of work item ids.
    """
    items = await _service_manager.workitem_service.list_work_items()
    return {"work_items": items}


@mcp.tool()
async def set_work_item_dependencies(
    work_item_id: str,
    depends_on: List[str],
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Replace the dependencies of a work item.

    Args:
        work_item_id: Work item id
        depends_on: Ids of the work items it depends on
    """
    try:
        stored = await _service_manager.workitem_service.set_dependencies(work_item_id, depends_on)
        return {"work_item_id": work_item_id, "dependencies": stored}
    except PlannerSyncError as e:
        return e.to_dict()


# ============================================================================
# MONITORING TOOLS (Health and Statistics)
# ============================================================================

@mcp.tool()
async def health_check(ctx: Context = None) -> Dict[str, Any]:
    """
    Get server health status for monitoring.

    Returns:
        Dictionary with health status, authentication info and store reachability
    """
    try:
        auth_info = _auth.get_auth_info() if _auth else None
        auth_failure_stats = _auth.get_auth_failure_stats() if _auth else {}
        database_ok = await _store.ping() if _store else False

        tracker_ok = False
        server_info = {}
        if _service_manager:
            try:
                server_info = await _service_manager.client.server_info()
                tracker_ok = True
            except PlannerSyncError as e:
                logger.warning(f"Tracker probe failed: {e}")

        return {
            "status": "healthy" if database_ok and tracker_ok else "degraded",
            "service": "Sprint Planner Sync",
            "version": "1.0",
            "authenticated": auth_info.get("authenticated") if auth_info else False,
            "auth_method": auth_info.get("method") if auth_info else None,
            "jira_base_url": auth_info.get("base_url") if auth_info else None,
            "database": "reachable" if database_ok else "unavailable",
            "tracker": "reachable" if tracker_ok else "unavailable",
            "tracker_version": server_info.get("version"),
            "auth_failure_stats": auth_failure_stats
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e)
        }


@mcp.tool()
async def get_service_statistics(ctx: Context = None) -> Dict[str, Any]:
    """
    Get service manager statistics.

    Returns:
        Dictionary with service manager stats and loaded projects
    """
    if not _service_manager:
        return {"error": "Service manager not initialized"}

    return {
        "service_manager": _service_manager.get_statistics(),
        "loaded_projects": _service_manager.get_loaded_projects(),
        "timestamp": datetime.utcnow().isoformat()
    }


def main():
    """Run the server with the transport chosen by MCP_TRANSPORT"""
    transport_mode = os.getenv("MCP_TRANSPORT", "stdio").lower()

    if transport_mode == "stdio":
        import sys
        print("Starting MCP server in STDIO mode", file=sys.stderr)
        mcp.run()
    else:
        port = int(os.getenv("PORT", 8000))

        print(f"Starting MCP server with HTTP streaming on port {port}")
        print(f"Server URL: http://localhost:{port}/mcp")

        mcp.run(transport="streamable-http", port=port, host="0.0.0.0")


if __name__ == "__main__":
    main()
