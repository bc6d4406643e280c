"""
Custom exception classes for the sprint planner sync engine.

Provides structured error handling with a machine-classifiable kind,
a human-readable message and, where useful, a remediation suggestion.
"""

from typing import Optional, Any


class PlannerSyncError(Exception):
    """
    Base exception for all sync engine errors.

    Attributes:
        kind: Machine-classifiable error kind
        status_code: HTTP-style status code describing the failure
        message: Human-readable error message
        suggestion: Optional remediation hint for the caller
        original_error: The original exception that was caught
        details: Additional error details
    """

    kind = "planner_sync_error"

    def __init__(
        self,
        message: str = "Sprint planner sync error",
        status_code: Optional[int] = None,
        suggestion: Optional[str] = None,
        original_error: Optional[Exception] = None,
        details: Optional[Any] = None
    ):
        self.status_code = status_code
        self.message = message
        self.suggestion = suggestion
        self.original_error = original_error
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        """String representation of the error."""
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Convert error to dictionary for JSON serialization."""
        return {
            'error': self.__class__.__name__,
            'kind': self.kind,
            'status_code': self.status_code,
            'message': self.message,
            'suggestion': self.suggestion,
            'details': self.details if self.details else None
        }


class RemoteQueryFailure(PlannerSyncError):
    """
    Raised when the issue tracker call failed or returned non-success.

    The response body is preserved for diagnostics. Never retried
    automatically; callers decide.
    """

    kind = "remote_query_failure"

    def __init__(
        self,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        message: Optional[str] = None,
        suggestion: Optional[str] = None,
        original_error: Optional[Exception] = None,
        details: Optional[Any] = None
    ):
        if message is None:
            if status_code:
                message = f"Issue tracker query failed with HTTP {status_code}"
            else:
                message = "Issue tracker query failed"

        self.body = body
        merged = {'body': body} if body else {}
        if details:
            merged.update(details)

        super().__init__(
            message=message,
            status_code=status_code,
            suggestion=suggestion,
            original_error=original_error,
            details=merged or None
        )


class AuthenticationError(RemoteQueryFailure):
    """
    Raised when the tracker rejects the credentials (HTTP 401).

    This can occur when:
    - The API token was revoked or has expired
    - The account email does not match the token
    """

    def __init__(
        self,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        super().__init__(
            status_code=401,
            body=body,
            message="Authentication failed. Your API token may have expired or been revoked.",
            suggestion="Check JIRA_EMAIL/JIRA_API_TOKEN (or JIRA_PAT) and refresh the credentials.",
            original_error=original_error
        )


class PermissionDeniedError(RemoteQueryFailure):
    """
    Raised when the account lacks permission for a query (HTTP 403).
    """

    def __init__(
        self,
        body: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        if operation:
            message = f"Permission denied for {operation}. Please check your project permissions."
        else:
            message = "Permission denied. Please check your credentials and project permissions."

        super().__init__(
            status_code=403,
            body=body,
            message=message,
            suggestion="Ask a project administrator for 'Browse projects' permission.",
            original_error=original_error,
            details={'operation': operation} if operation else None
        )


class BadRequestError(RemoteQueryFailure):
    """
    Raised for malformed queries (HTTP 400).

    This can occur when:
    - The JQL references an unknown field or project
    - A requested field is not available on the issue type
    """

    def __init__(
        self,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        super().__init__(
            status_code=400,
            body=body,
            message="Issue tracker rejected the query. Please check the project key and field names.",
            suggestion="Verify the project key exists and the configured estimate field id is valid.",
            original_error=original_error
        )


class RateLimitError(RemoteQueryFailure):
    """
    Raised when the tracker rate limit is exceeded (HTTP 429).
    """

    def __init__(
        self,
        body: Optional[str] = None,
        retry_after: Optional[int] = None,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        if retry_after:
            message = f"Rate limit exceeded. Please retry after {retry_after} seconds."
        else:
            message = "Rate limit exceeded. Please retry after a brief delay."

        super().__init__(
            status_code=429,
            body=body,
            message=message,
            suggestion="Reduce the page size or wait before retrying.",
            original_error=original_error,
            details={'retry_after': retry_after}
        )
        self.retry_after = retry_after


class TransientError(RemoteQueryFailure):
    """
    Raised for temporary tracker errors (HTTP 500, 502, 503, 504).
    """

    def __init__(
        self,
        status_code: int,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        super().__init__(
            status_code=status_code,
            body=body,
            message=f"Issue tracker temporarily unavailable (HTTP {status_code}).",
            suggestion="This error is usually transient. Retry the operation later.",
            original_error=original_error
        )


class ConflictError(PlannerSyncError):
    """
    Raised when a sprint regeneration is already running or the
    cooldown window since the last regeneration has not elapsed.
    """

    kind = "conflict"

    def __init__(
        self,
        message: str = "Sprint regeneration is already in progress. Please wait for it to complete.",
        retry_after_seconds: Optional[float] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            status_code=409,
            suggestion="Back off and retry once the running regeneration has finished.",
            original_error=original_error,
            details={'retry_after_seconds': retry_after_seconds} if retry_after_seconds else None
        )
        self.retry_after_seconds = retry_after_seconds


class TimeoutError(PlannerSyncError):
    """
    Raised when an operation exceeds its wall-clock budget.

    Distinct from RemoteQueryFailure even when the underlying cause is
    a slow tracker.
    """

    kind = "timeout"

    def __init__(
        self,
        timeout_seconds: float = 300,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        target = operation or "Operation"
        message = (
            f"{target} timed out after {timeout_seconds:g} seconds. "
            "The issue tracker may be slow or the page is too large."
        )

        super().__init__(
            message=message,
            status_code=408,
            suggestion="Request a smaller page (lower limit) or retry later.",
            original_error=original_error,
            details={'timeout_seconds': timeout_seconds, 'operation': operation}
        )
        self.timeout_seconds = timeout_seconds
        self.operation = operation


class NotFoundError(PlannerSyncError):
    """
    Raised when a referenced epic, ticket, work item or sprint does not
    exist on the tracker or in the local store.
    """

    kind = "not_found"

    def __init__(
        self,
        resource: str = "Resource",
        identifier: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        if identifier:
            message = f"{resource} {identifier} not found. Please verify it exists and you have access."
        else:
            message = f"{resource} not found. Please verify it exists and you have access."

        super().__init__(
            message=message,
            status_code=404,
            suggestion="Check the identifier and that it has not been archived or deleted.",
            original_error=original_error,
            details={'resource': resource, 'identifier': identifier}
        )
        self.resource = resource
        self.identifier = identifier


def map_status_code_to_error(
    status_code: int,
    body: Optional[str] = None,
    original_error: Optional[Exception] = None,
    **kwargs
) -> RemoteQueryFailure:
    """
    Map a tracker HTTP status code to the appropriate error class.

    Args:
        status_code: HTTP status code from the tracker
        body: Raw response body, preserved for diagnostics
        original_error: The original exception
        **kwargs: Additional error-specific parameters

    Returns:
        RemoteQueryFailure subclass instance
    """
    if status_code == 400:
        return BadRequestError(body=body, original_error=original_error)
    elif status_code == 401:
        return AuthenticationError(body=body, original_error=original_error)
    elif status_code == 403:
        return PermissionDeniedError(body=body, original_error=original_error, **kwargs)
    elif status_code == 429:
        return RateLimitError(body=body, original_error=original_error, **kwargs)
    elif status_code in [500, 502, 503, 504]:
        return TransientError(status_code=status_code, body=body, original_error=original_error)
    else:
        return RemoteQueryFailure(
            status_code=status_code,
            body=body,
            original_error=original_error
        )
