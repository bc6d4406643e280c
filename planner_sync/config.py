"""
Runtime settings for the sync engine, read from the environment.
"""
import os
from dataclasses import dataclass
from typing import Optional, Mapping

from .constants import FieldNames, Pacing


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///planner.db"


@dataclass
class SyncSettings:
    """Connection, field-mapping and pacing settings"""
    jira_base_url: str
    default_project: Optional[str] = None
    story_points_field: str = FieldNames.DEFAULT_STORY_POINTS
    sprint_field: str = FieldNames.DEFAULT_SPRINT
    database_url: str = DEFAULT_DATABASE_URL
    epic_import_timeout_seconds: float = Pacing.EPIC_IMPORT_TIMEOUT_SECONDS
    request_timeout_seconds: float = Pacing.REQUEST_TIMEOUT_SECONDS
    child_batch_size: int = Pacing.CHILD_BATCH_SIZE
    child_batch_pause_seconds: float = Pacing.CHILD_BATCH_PAUSE_SECONDS
    regeneration_cooldown_seconds: float = Pacing.REGENERATION_COOLDOWN_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncSettings":
        """
        Build settings from environment variables.

        Call load_dotenv() first if a .env file should be honoured.

        Raises:
            ValueError: If JIRA_BASE_URL is missing or a numeric setting
                cannot be parsed
        """
        env = os.environ if environ is None else environ

        base_url = env.get("JIRA_BASE_URL")
        if not base_url:
            raise ValueError("JIRA_BASE_URL environment variable is required")

        default_project = env.get("JIRA_DEFAULT_PROJECT") or None
        if default_project:
            default_project = default_project.strip().upper()

        return cls(
            jira_base_url=base_url.rstrip("/"),
            default_project=default_project,
            story_points_field=env.get("JIRA_STORY_POINTS_FIELD") or FieldNames.DEFAULT_STORY_POINTS,
            sprint_field=env.get("JIRA_SPRINT_FIELD") or FieldNames.DEFAULT_SPRINT,
            database_url=env.get("PLANNER_DATABASE_URL") or DEFAULT_DATABASE_URL,
            epic_import_timeout_seconds=_number(
                env, "EPIC_IMPORT_TIMEOUT_SECONDS", Pacing.EPIC_IMPORT_TIMEOUT_SECONDS
            ),
            request_timeout_seconds=_number(
                env, "JIRA_REQUEST_TIMEOUT_SECONDS", Pacing.REQUEST_TIMEOUT_SECONDS
            ),
            child_batch_size=int(_number(env, "EPIC_CHILD_BATCH_SIZE", Pacing.CHILD_BATCH_SIZE)),
            child_batch_pause_seconds=_number(
                env, "EPIC_CHILD_BATCH_PAUSE_SECONDS", Pacing.CHILD_BATCH_PAUSE_SECONDS
            ),
            regeneration_cooldown_seconds=_number(
                env, "SPRINT_REGENERATION_COOLDOWN_SECONDS", Pacing.REGENERATION_COOLDOWN_SECONDS
            )
        )


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value
