"""
Deskline error types.

No error here is fatal to the process; each one is scoped to the session or
conversation view that raised it.
"""

from typing import Any, Optional


class DesklineError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class SessionUnavailable(DesklineError):
    """No authenticated identity. Operations fail closed."""

    def __init__(self, message: str = "No active session"):
        super().__init__("session_unavailable", message)


class RoleResolutionFailed(DesklineError):
    """Recorded on the session store, never raised to callers."""

    def __init__(self, user_id: str, message: str):
        super().__init__("role_resolution_failed", message, {"user_id": user_id})


class HistoryFetchFailed(DesklineError):
    retryable = True

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("history_fetch_failed", message, details)


class SendFailed(DesklineError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("send_failed", message, details)


class SubscriptionDropped(DesklineError):
    def __init__(self, message: str = "Change feed subscription dropped"):
        super().__init__("subscription_dropped", message)


class RoutingError(DesklineError):
    def __init__(self, message: str):
        super().__init__("routing_error", message)


class AuthError(DesklineError):
    def __init__(self, message: str, code: str = "auth_error"):
        super().__init__(code, message)


class ConnectionError(DesklineError):
    def __init__(self, message: str):
        super().__init__("connection_error", message)
