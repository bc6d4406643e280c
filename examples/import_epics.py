#!/usr/bin/env python
"""Import open epics with their children and print story point totals"""
import asyncio
import os
from dotenv import load_dotenv
from planner_sync.auth import JiraAuth
from planner_sync.config import SyncSettings
from planner_sync.services.epic_service import EpicAggregator
from planner_sync.services.sync_service import SyncService
from planner_sync.services.tracker_client import IssueQueryClient
from planner_sync.storage import Store


async def main():
    # Load environment
    load_dotenv()
    settings = SyncSettings.from_env()
    project = settings.default_project or os.getenv('JIRA_PROJECT', 'REF')

    print(f"🔗 Jira: {settings.jira_base_url}")
    print(f"📁 Project: {project}\n")

    # Initialize auth
    auth = JiraAuth(settings.jira_base_url, timeout=settings.request_timeout_seconds)
    await auth.initialize()

    client = IssueQueryClient(auth, settings)
    aggregator = EpicAggregator(
        client,
        child_batch_size=settings.child_batch_size,
        child_batch_pause_seconds=settings.child_batch_pause_seconds
    )

    print("=" * 70)
    print("📊 OPEN EPICS")
    print("=" * 70)

    page = await aggregator.fetch_epics_with_children(project, limit=20)

    for idx, epic in enumerate(page.epics, 1):
        print(f"\n{idx}. [{epic.key}] {epic.title}")
        print(f"   Status: {epic.status} ({epic.jira_status})")
        print(f"   Children: {len(epic.children)}")
        print(f"   Story Points: {epic.completed_story_points:g} / {epic.total_story_points:g} completed")

    print(f"\n  Showing {len(page.epics)} of {page.pagination.total} epics"
          f"{' (more available)' if page.pagination.has_more else ''}")

    # Velocity grouping does not touch the database
    print(f"\n{'=' * 70}")
    print("📈 VELOCITY BY RELEASE")
    print("=" * 70)

    store = Store(settings.database_url)
    sync_service = SyncService(client, store, settings, project)
    report = await sync_service.analyze_velocity(project)

    for group in report.sync_results:
        print(f"  {group.group}: {group.story_points:g} points across {group.ticket_count} tickets")

    # Cleanup
    await store.close()
    await auth.close()

    print(f"\n{'=' * 70}")
    print("✓ Import completed successfully!")
    print("=" * 70)

if __name__ == '__main__':
    asyncio.run(main())
