"""
Input validation and JQL sanitization.

This module provides validation for everything that reaches the sync
engine from the outside: project and issue keys, pagination windows,
sprint definitions, dependency edges and manual story point edits.
"""

import re
from datetime import datetime
from typing import Optional, List, Any

from .constants import QueryLimits, StoryPoints
from .errors import PlannerSyncError


class ValidationError(PlannerSyncError):
    """Raised when input validation fails."""

    kind = "validation_failure"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggestion: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=400,
            suggestion=suggestion,
            details={'field': field} if field else None
        )
        self.field = field


class ProjectKeyValidator:
    """Validator for tracker project keys."""

    PATTERN = re.compile(r'^[A-Z][A-Z0-9_]{0,9}$')

    @staticmethod
    def validate(project_key: str) -> str:
        """
        Validate and normalize a project key.

        Args:
            project_key: The project key (e.g. "REF")

        Returns:
            The upper-cased, stripped project key

        Raises:
            ValidationError: If the key is empty or malformed
        """
        if not project_key or not project_key.strip():
            raise ValidationError(
                "Project key cannot be empty",
                field="project_key",
                suggestion="Pass project_key or set JIRA_DEFAULT_PROJECT."
            )

        normalized = project_key.strip().upper()
        if not ProjectKeyValidator.PATTERN.match(normalized):
            raise ValidationError(
                f"Invalid project key: '{project_key}'. "
                "Keys are 1-10 characters, start with a letter and contain only letters, digits or '_'.",
                field="project_key"
            )

        return normalized


class IssueKeyValidator:
    """Validator for issue keys such as REF-1234."""

    PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*-\d+$')

    @staticmethod
    def validate(issue_key: str) -> str:
        """
        Validate and normalize an issue key.

        Raises:
            ValidationError: If the key is empty or malformed
        """
        if not issue_key or not issue_key.strip():
            raise ValidationError("Issue key cannot be empty", field="issue_key")

        normalized = issue_key.strip().upper()
        if not IssueKeyValidator.PATTERN.match(normalized):
            raise ValidationError(
                f"Invalid issue key: '{issue_key}'. Expected format PROJECT-123.",
                field="issue_key"
            )

        return normalized


class JqlValidator:
    """Helpers for building JQL safely."""

    @staticmethod
    def sanitize_string_literal(value: str) -> str:
        """
        Sanitize a string value for use inside a double-quoted JQL literal.

        Backslashes and double quotes are escaped so a value cannot close
        the literal and inject extra clauses.

        Args:
            value: The string value to sanitize

        Returns:
            The sanitized string value
        """
        if value is None:
            return None

        return value.replace('\\', '\\\\').replace('"', '\\"')


class PaginationValidator:
    """Validator for (start_at, limit) page windows."""

    @staticmethod
    def validate(limit: int, start_at: int) -> tuple:
        """
        Validate a page window.

        Returns:
            (limit, start_at) with limit capped at the search maximum

        Raises:
            ValidationError: If limit < 1 or start_at < 0
        """
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError(f"Invalid limit: {limit}. Must be a positive integer.", field="limit")

        if not isinstance(start_at, int) or isinstance(start_at, bool) or start_at < 0:
            raise ValidationError(f"Invalid start_at: {start_at}. Must be zero or greater.", field="start_at")

        return min(limit, QueryLimits.MAX_LIMIT), start_at


class SprintDefinitionValidator:
    """Validator for sprint definitions submitted in a batch."""

    REQUIRED_FIELDS = ('name', 'start_date', 'end_date', 'planned_velocity')

    @staticmethod
    def validate(definition: Any) -> Any:
        """
        Validate a sprint definition.

        Args:
            definition: Object with name, start_date, end_date and planned_velocity

        Returns:
            The definition, velocities coerced to float

        Raises:
            ValidationError: Naming the offending sprint when a field is
                missing, a velocity is not numeric or the date range is inverted
        """
        name = getattr(definition, 'name', None)
        label = name or 'unnamed'

        missing = [
            field for field in SprintDefinitionValidator.REQUIRED_FIELDS
            if not getattr(definition, field, None)
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields for sprint: {label} ({', '.join(missing)})",
                field=missing[0],
                suggestion="name, startDate, endDate, and plannedVelocity are required"
            )

        planned_velocity = SprintDefinitionValidator._velocity(
            definition.planned_velocity, "planned_velocity", label
        )
        actual_velocity = SprintDefinitionValidator._velocity(
            definition.actual_velocity, "actual_velocity", label
        )

        if planned_velocity < 0:
            raise ValidationError(
                f"Planned velocity must be positive for sprint: {label}",
                field="planned_velocity"
            )

        if definition.end_date < definition.start_date:
            raise ValidationError(
                f"End date is before start date for sprint: {label}",
                field="end_date"
            )

        definition.planned_velocity = planned_velocity
        definition.actual_velocity = actual_velocity
        return definition

    @staticmethod
    def _velocity(value: Any, field: str, label: str) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Velocity must be a number for sprint: {label} ({field}={value!r})",
                field=field
            )


class StoryPointsValidator:
    """Validator for manually edited story point estimates."""

    @staticmethod
    def validate(story_points: float) -> float:
        """
        Validate a manual estimate.

        Returns:
            The estimate, capped when it exceeds the garbage threshold

        Raises:
            ValidationError: If the estimate is not greater than zero
        """
        if story_points is None or story_points <= 0:
            raise ValidationError(
                "Story points must be greater than 0",
                field="estimate_story_points"
            )

        if story_points > StoryPoints.GARBAGE_THRESHOLD:
            return StoryPoints.MANUAL_CAP

        return story_points


class DependencyValidator:
    """Validator for work item dependency edges."""

    @staticmethod
    def validate(work_item_id: str, depends_on: List[str]) -> List[str]:
        """
        Reject self-loops and de-duplicate the target list.

        Cycles spanning several items are not detected.

        Raises:
            ValidationError: If the item depends on itself
        """
        if work_item_id in depends_on:
            raise ValidationError(
                "Work item cannot depend on itself",
                field="dependencies"
            )

        return list(dict.fromkeys(depends_on))


class DateRangeValidator:
    """Validator for optional [start, end] windows."""

    @staticmethod
    def validate(start: Optional[datetime], end: Optional[datetime]) -> tuple:
        """
        Raises:
            ValidationError: If both bounds are set and end precedes start
        """
        if start and end and end < start:
            raise ValidationError(
                "End date must not be before start date",
                field="end_date"
            )
        return start, end


# Convenience functions for common validations

def validate_project_key(project_key: str) -> str:
    """Validate and normalize a project key."""
    return ProjectKeyValidator.validate(project_key)


def validate_issue_key(issue_key: str) -> str:
    """Validate and normalize an issue key."""
    return IssueKeyValidator.validate(issue_key)


def validate_pagination(limit: int, start_at: int) -> tuple:
    """Validate a page window."""
    return PaginationValidator.validate(limit, start_at)


def validate_sprint_definition(definition: Any) -> Any:
    """Validate one sprint definition."""
    return SprintDefinitionValidator.validate(definition)


def validate_story_points(story_points: float) -> float:
    """Validate a manual estimate."""
    return StoryPointsValidator.validate(story_points)


def validate_dependencies(work_item_id: str, depends_on: List[str]) -> List[str]:
    """Validate dependency targets for a work item."""
    return DependencyValidator.validate(work_item_id, depends_on)


def validate_date_range(start: Optional[datetime], end: Optional[datetime]) -> tuple:
    """Validate an optional date window."""
    return DateRangeValidator.validate(start, end)


def sanitize_jql_string(value: str) -> str:
    """Sanitize a string value for use in JQL queries."""
    return JqlValidator.sanitize_string_literal(value)
