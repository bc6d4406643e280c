"""
Decorators for error handling, timeouts, and request management.

Tracker failures are surfaced to the caller as classified errors and are
never retried automatically.
"""

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, TypeVar, Optional

import httpx

from .errors import (
    PlannerSyncError,
    RemoteQueryFailure,
    map_status_code_to_error,
    TimeoutError as SyncTimeoutError
)
from .log_sanitizer import sanitize_response_body

# Type variable for generic function signatures
T = TypeVar('T')

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[int]:
    header = response.headers.get('Retry-After')
    if not header:
        return None
    try:
        return int(header)
    except (ValueError, TypeError):
        logger.warning(f"Could not parse Retry-After header: {header}")
        return 60


def handle_tracker_error(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator to translate HTTP client failures into sync engine errors.

    Responses with a non-success status become the matching
    RemoteQueryFailure subclass with the body preserved. Transport
    failures (connection refused, DNS, read errors) become a
    RemoteQueryFailure without a status code.

    Example:
        @handle_tracker_error
        async def search(self, query):
            response = await client.post(...)
            response.raise_for_status()
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PlannerSyncError:
            raise
        except httpx.HTTPStatusError as e:
            response = e.response
            extra = {}
            if response.status_code == 429:
                extra['retry_after'] = _retry_after(response)

            error = map_status_code_to_error(
                response.status_code,
                body=response.text,
                original_error=e,
                **extra
            )
            logger.error(
                f"Issue tracker error in {func.__name__}: {error} "
                f"body={sanitize_response_body(response.text)}"
            )
            raise error
        except httpx.TimeoutException as e:
            logger.error(f"Issue tracker request timed out in {func.__name__}: {e}")
            raise RemoteQueryFailure(
                message=f"Issue tracker request timed out in {func.__name__}",
                original_error=e
            )
        except httpx.RequestError as e:
            logger.error(f"Issue tracker unreachable in {func.__name__}: {e}")
            raise RemoteQueryFailure(
                message=f"Could not reach the issue tracker: {e}",
                suggestion="Check JIRA_BASE_URL and network connectivity.",
                original_error=e
            )

    return wrapper


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """
    Await with a wall-clock budget.

    Raises:
        TimeoutError: The sync engine timeout (not asyncio's) when the
            budget is exceeded; the pending work is cancelled
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.error(f"Timeout after {timeout_seconds}s in {operation}")
        raise SyncTimeoutError(
            timeout_seconds=timeout_seconds,
            operation=operation,
            original_error=e
        )


def with_timeout(timeout_seconds: float = 30) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator to add timeout to async operations.

    Example:
        @with_timeout(timeout_seconds=300)
        async def fetch_epics_with_children(self, project_key):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await run_with_timeout(
                func(*args, **kwargs),
                timeout_seconds,
                func.__name__
            )

        return wrapper
    return decorator


def log_execution(
    level: int = logging.INFO,
    log_args: bool = False,
    log_result: bool = False
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator to log function execution.

    Args:
        level: Logging level (default: INFO)
        log_args: Whether to log function arguments (default: False)
        log_result: Whether to log function result (default: False)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            func_name = func.__name__

            if log_args:
                logger.log(level, f"Calling {func_name} with args={args}, kwargs={kwargs}")
            else:
                logger.log(level, f"Calling {func_name}")

            try:
                result = await func(*args, **kwargs)

                if log_result:
                    logger.log(level, f"{func_name} completed with result: {result}")
                else:
                    logger.log(level, f"{func_name} completed successfully")

                return result
            except Exception as e:
                logger.log(level, f"{func_name} failed with error: {e}")
                raise

        return wrapper
    return decorator


def tracker_operation(timeout_seconds: float = 30) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Convenience decorator combining timeout and error handling.

    Applies decorators in order:
    1. Timeout wrapper (outermost)
    2. Error handling (innermost)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        decorated = handle_tracker_error(func)
        decorated = with_timeout(timeout_seconds)(decorated)
        return decorated

    return decorator


class PerformanceMonitor:
    """
    Context manager and decorator for monitoring operation performance.

    Tracks execution time and logs slow operations.
    """

    def __init__(self, operation_name: str, warn_threshold_ms: float = 1000.0):
        self.operation_name = operation_name
        self.warn_threshold_ms = warn_threshold_ms
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    async def __aenter__(self):
        self.start_time = asyncio.get_running_loop().time()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.end_time = asyncio.get_running_loop().time()
        duration_ms = self.duration_ms

        if duration_ms > self.warn_threshold_ms:
            logger.warning(
                f"Slow operation: {self.operation_name} took {duration_ms:.1f}ms "
                f"(threshold: {self.warn_threshold_ms:.1f}ms)"
            )
        else:
            logger.debug(
                f"Operation {self.operation_name} completed in {duration_ms:.1f}ms"
            )

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Use as a decorator."""
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async with PerformanceMonitor(
                operation_name=func.__name__,
                warn_threshold_ms=self.warn_threshold_ms
            ):
                return await func(*args, **kwargs)
        return wrapper
