"""
Unit tests for validation module.

Tests key validation, JQL sanitization, sprint definitions and estimates.
"""

import pytest
from datetime import datetime
from planner_sync.models import SprintDefinition
from planner_sync.validation import (
    validate_project_key,
    validate_issue_key,
    validate_pagination,
    validate_sprint_definition,
    validate_story_points,
    validate_dependencies,
    validate_date_range,
    sanitize_jql_string,
    ValidationError
)


class TestProjectKeyValidation:
    """Test project key validation."""

    def test_valid_keys_normalized(self):
        """Test that keys are stripped and upper-cased."""
        assert validate_project_key("REF") == "REF"
        assert validate_project_key(" ref ") == "REF"
        assert validate_project_key("AB_12") == "AB_12"

    @pytest.mark.parametrize("key", ["", "   ", "1ABC", "REF-1", 'REF" OR 1=1'])
    def test_invalid_keys(self, key):
        """Test that malformed keys raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            validate_project_key(key)

        assert exc_info.value.field == "project_key"

    def test_none_key(self):
        """Test that None raises ValidationError."""
        with pytest.raises(ValidationError):
            validate_project_key(None)


class TestIssueKeyValidation:
    """Test issue key validation."""

    def test_valid_issue_key(self):
        assert validate_issue_key("ref-2903") == "REF-2903"

    def test_invalid_issue_key(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_issue_key("2903")

        assert "PROJECT-123" in str(exc_info.value)


class TestJqlSanitization:
    """Test JQL string literal sanitization."""

    def test_quotes_escaped(self):
        """Test that quotes cannot close the literal."""
        assert sanitize_jql_string('Sprint "12"') == 'Sprint \\"12\\"'

    def test_backslash_escaped(self):
        assert sanitize_jql_string('a\\b') == 'a\\\\b'

    def test_none_passthrough(self):
        assert sanitize_jql_string(None) is None


class TestPaginationValidation:
    """Test page window validation."""

    def test_limit_capped(self):
        """Test that limits above the maximum are capped."""
        assert validate_pagination(500, 0) == (100, 0)

    def test_valid_window(self):
        assert validate_pagination(25, 50) == (25, 50)

    @pytest.mark.parametrize("limit,start_at", [(0, 0), (-1, 0), (10, -5)])
    def test_invalid_window(self, limit, start_at):
        with pytest.raises(ValidationError):
            validate_pagination(limit, start_at)


class TestSprintDefinitionValidation:
    """Test sprint definition validation."""

    def _definition(self, **overrides):
        values = dict(
            name="Sprint 1",
            start_date=datetime(2025, 1, 6),
            end_date=datetime(2025, 1, 19),
            planned_velocity=20
        )
        values.update(overrides)
        return SprintDefinition(**values)

    def test_valid_definition(self):
        definition = self._definition()
        assert validate_sprint_definition(definition) is definition

    def test_missing_velocity_names_sprint(self):
        """Test that the error names the offending sprint."""
        with pytest.raises(ValidationError) as exc_info:
            validate_sprint_definition(self._definition(planned_velocity=None))

        assert "Sprint 1" in str(exc_info.value)
        assert exc_info.value.field == "planned_velocity"

    def test_missing_name(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_sprint_definition(self._definition(name=None))

        assert "unnamed" in str(exc_info.value)

    def test_inverted_dates(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_sprint_definition(self._definition(end_date=datetime(2025, 1, 1)))

        assert exc_info.value.field == "end_date"

    def test_negative_velocity(self):
        with pytest.raises(ValidationError):
            validate_sprint_definition(self._definition(planned_velocity=-3))

    def test_non_numeric_velocity_names_sprint(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_sprint_definition(self._definition(planned_velocity="abc"))

        assert "Sprint 1" in str(exc_info.value)
        assert exc_info.value.field == "planned_velocity"

    def test_non_numeric_actual_velocity(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_sprint_definition(self._definition(actual_velocity=[3]))

        assert exc_info.value.field == "actual_velocity"

    def test_numeric_strings_coerced(self):
        definition = validate_sprint_definition(self._definition(planned_velocity="18", actual_velocity="12.5"))

        assert definition.planned_velocity == 18.0
        assert definition.actual_velocity == 12.5


class TestStoryPointsValidation:
    """Test manual estimate validation."""

    def test_valid_estimate(self):
        assert validate_story_points(8) == 8

    def test_garbage_estimate_capped(self):
        """Test that estimates above 100 are capped at 20."""
        assert validate_story_points(250) == 20

    @pytest.mark.parametrize("value", [0, -1, None])
    def test_non_positive_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_story_points(value)


class TestDependencyValidation:
    """Test dependency edge validation."""

    def test_self_loop_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_dependencies("a", ["b", "a"])

        assert "itself" in str(exc_info.value)

    def test_duplicates_removed(self):
        assert validate_dependencies("a", ["b", "c", "b"]) == ["b", "c"]


class TestDateRangeValidation:
    """Test optional date window validation."""

    def test_open_bounds(self):
        assert validate_date_range(None, None) == (None, None)

    def test_inverted_range(self):
        with pytest.raises(ValidationError):
            validate_date_range(datetime(2025, 2, 1), datetime(2025, 1, 1))
