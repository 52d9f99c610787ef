"""
Domain errors raised by the messaging core.

    DmChatError
    ├── ValidationError
    │   └── SelfConversationError
    ├── NotFoundError
    ├── ForbiddenError
    ├── ConflictError
    └── TransientError (retryable)

Routers turn these into HTTP responses through ``to_dict()`` and
``status_code``; the WebSocket session sends the same dict in an error frame.
"""

from typing import Any, Dict, Optional


class DmChatError(Exception):

    default_error_code: str = "DMCHAT_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(DmChatError):
    """Bad input: empty content, self-message, unknown filter kind."""

    default_error_code = "VALIDATION_ERROR"
    status_code = 400


class SelfConversationError(ValidationError):

    default_error_code = "SELF_CONVERSATION"


class NotFoundError(DmChatError):

    default_error_code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(DmChatError):
    """The caller may not act on this resource, e.g. reading someone else's message."""

    default_error_code = "FORBIDDEN"
    status_code = 403


class ConflictError(DmChatError):
    """
    A real constraint violation reported by the store.

    Ordinary upsert races on typing/presence rows are resolved last-write-wins
    and never surface; this is raised only when a retry also hits the
    unique index.
    """

    default_error_code = "CONFLICT"
    status_code = 409


class TransientError(DmChatError):
    """Backend unreachable or timed out. Safe to retry."""

    default_error_code = "TRANSIENT"
    status_code = 503
    retryable = True
