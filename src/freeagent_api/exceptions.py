"""
Exceptions raised by the FreeAgent client.

Transport failures from ``httpx`` are not wrapped; everything the API itself
rejects is reported through :class:`APIError` or one of its siblings.
"""

from __future__ import annotations

from typing import Any


class FreeAgentError(Exception):
    """Base exception for FreeAgent client errors."""


class ConfigurationError(FreeAgentError, ValueError):
    """Missing or invalid client configuration (e.g. app credentials)."""


class AuthorizationError(FreeAgentError):
    """The interactive OAuth2 approval did not produce an authorization code."""


class RateLimitError(FreeAgentError):
    """The API kept answering 429 after all retries were spent."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class APIError(FreeAgentError):
    """A non-success response from the FreeAgent API."""

    def __init__(
        self,
        status_code: int,
        method: str,
        url: str,
        body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.method = method
        self.url = url
        self.body = body
        super().__init__(f"{method} {url} failed with {status_code}: {self.detail}")

    @property
    def detail(self) -> str:
        """Human readable error detail from the response body."""
        if isinstance(self.body, dict):
            errors = self.body.get("errors")
            # FreeAgent sends either {"errors": [{...}]} or {"errors": {"error": {...}}}
            if isinstance(errors, dict):
                errors = [errors] if "message" in errors else list(errors.values())
            if isinstance(errors, list):
                messages = [
                    e.get("message", str(e)) if isinstance(e, dict) else str(e)
                    for e in errors
                ]
                return "; ".join(messages)
        if self.body:
            return str(self.body)
        return "no details"
