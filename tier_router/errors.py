"""
Error taxonomy for Tier Router.

Only :class:`ConfigurationError` escapes the router's public surface.
Budget blocks and fallback exhaustion are reported through
``RouteResult(success=False, error=...)``; single attempt failures are
absorbed by the fallback loop.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RouterError(Exception):
    """Base class for all router errors."""

    code: str = "ROUTER_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(RouterError):
    """Unknown (tier, provider) pair or malformed catalog/override data.

    There is no safe default for a malformed catalog lookup, so this is
    never retried.
    """

    code = "CONFIGURATION_ERROR"


class BudgetExhausted(RouterError):
    """The client's spend limit for the current window has been reached."""

    code = "BUDGET_EXHAUSTED"
    retryable = True

    def __init__(self, window: str, spent: float, limit: float):
        super().__init__(
            f"Budget exhausted: {window} cost ${spent:.4f} >= limit ${limit:.4f}",
            {"window": window, "spent": spent, "limit": limit},
        )
        self.window = window
        self.spent = spent
        self.limit = limit


class ExecutionFailure(RouterError):
    """One attempt in the fallback chain failed."""

    code = "EXECUTION_FAILURE"
    retryable = True


class ExecutionCancelled(ExecutionFailure):
    """The caller's cancellation signal fired during an attempt."""

    code = "EXECUTION_CANCELLED"


class FallbackExhausted(RouterError):
    """Every entry of the fallback chain failed."""

    code = "FALLBACK_EXHAUSTED"

    def __init__(self, attempts: int, last_error: Optional[str]):
        super().__init__(
            f"fallback chain exhausted after {attempts} attempt(s): "
            f"{last_error or 'unknown error'}",
            {"attempts": attempts, "last_error": last_error},
        )
        self.attempts = attempts
        self.last_error = last_error
