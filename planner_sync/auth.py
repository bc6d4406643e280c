"""
Authentication handling for the Jira REST API
Supports API tokens (email + token, basic auth) and Personal Access Tokens
"""
import os
import sys
from typing import Optional

import httpx

from datetime import datetime
from collections import defaultdict, deque

from .constants import Pacing
from .log_sanitizer import safe_log_error


class JiraAuth:
    """
    Handles authentication to Jira using multiple methods:
    1. API token with account email (Jira Cloud)
    2. Personal Access Token (Jira Data Center / Server)
    """

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = Pacing.REQUEST_TIMEOUT_SECONDS
    ):
        """
        Initialize authentication handler

        Args:
            base_url: Jira site URL (e.g., https://yourorg.atlassian.net)
            transport: Optional httpx transport (used by tests)
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self._timeout = timeout
        self._auth_method = None

        # Auth failure tracking
        self._auth_failures = defaultdict(int)
        self._auth_failure_timestamps = deque(maxlen=100)
        self._last_auth_attempt = None
        self._last_auth_success = None

    async def initialize(self):
        """Build an authenticated HTTP client for the tracker"""
        auth_methods = [
            self._try_api_token,
            self._try_bearer_token
        ]

        self._last_auth_attempt = datetime.utcnow()

        for auth_method in auth_methods:
            try:
                self.client = await auth_method()
                if self.client:
                    self._last_auth_success = datetime.utcnow()
                    print(f"✓ Authenticated using: {self._auth_method}", file=sys.stderr)
                    return
            except Exception as e:
                method_name = auth_method.__name__
                self._auth_failures[method_name] += 1
                self._auth_failure_timestamps.append({
                    'method': method_name,
                    'timestamp': datetime.utcnow().isoformat(),
                    'error_type': type(e).__name__
                })

                safe_error = safe_log_error(e, method_name)
                print(f"✗ {safe_error}", file=sys.stderr)
                continue

        raise ValueError(
            "Failed to authenticate. Please configure one of:\n"
            "1. API token (JIRA_EMAIL, JIRA_API_TOKEN)\n"
            "2. Personal Access Token (JIRA_PAT)"
        )

    def _build_client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
            **kwargs
        )

    async def _try_api_token(self) -> Optional[httpx.AsyncClient]:
        """
        Attempt authentication using an account email and API token
        Requires environment variables:
        - JIRA_EMAIL
        - JIRA_API_TOKEN
        """
        email = os.getenv("JIRA_EMAIL")
        token = os.getenv("JIRA_API_TOKEN")

        if not all([email, token]):
            raise ValueError("Missing API token credentials")

        self._auth_method = "API Token"
        return self._build_client(auth=httpx.BasicAuth(email, token))

    async def _try_bearer_token(self) -> Optional[httpx.AsyncClient]:
        """
        Attempt authentication using a Personal Access Token
        Requires environment variable: JIRA_PAT
        """
        pat = os.getenv("JIRA_PAT")

        if not pat:
            raise ValueError("JIRA_PAT environment variable not set")

        self._auth_method = "Personal Access Token"
        client = self._build_client()
        client.headers["Authorization"] = f"Bearer {pat}"
        return client

    def get_client(self) -> httpx.AsyncClient:
        """
        Get the authenticated HTTP client

        Raises:
            RuntimeError: If initialize() has not succeeded
        """
        if not self.client:
            raise RuntimeError("Not authenticated. Call initialize() first.")
        return self.client

    async def close(self):
        """Clean up resources"""
        if self.client is not None:
            await self.client.aclose()
        self.client = None

    def get_auth_info(self) -> dict:
        """Get information about current authentication"""
        return {
            "method": self._auth_method,
            "base_url": self.base_url,
            "authenticated": self.client is not None
        }

    def get_auth_failure_stats(self) -> dict:
        """
        Get authentication failure statistics.

        Returns:
            Dictionary with failure counts, timestamps, and status
        """
        recent_failures = list(self._auth_failure_timestamps)[-10:]

        return {
            "total_failures_by_method": dict(self._auth_failures),
            "total_failures": sum(self._auth_failures.values()),
            "recent_failures": recent_failures,
            "last_auth_attempt": self._last_auth_attempt.isoformat() if self._last_auth_attempt else None,
            "last_auth_success": self._last_auth_success.isoformat() if self._last_auth_success else None,
            "currently_authenticated": self.client is not None
        }
