"""
Error taxonomy for the connection and sync layer.

Every error carries a machine-readable ``code``, the HTTP status the API
layer answers with, and whether an automated caller may retry it.
"""

from typing import Any, Optional


class SocialSyncError(Exception):
    """Base class for all errors raised by the sync layer."""

    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class UnsupportedPlatform(SocialSyncError):
    code = "unsupported_platform"
    status_code = 400


class InvalidState(SocialSyncError):
    """OAuth state is unknown, expired or already used (CSRF / replay)."""

    code = "invalid_state"
    status_code = 400


class TokenExchangeFailed(SocialSyncError):
    code = "token_exchange_failed"
    status_code = 502


class CredentialExpired(SocialSyncError):
    """
    The connection's token is no longer usable.

    Terminal for automated retry: the user has to re-authorize.
    """

    code = "reconnect_required"
    status_code = 409


class MalformedEvent(SocialSyncError):
    code = "malformed_event"
    status_code = 400


class RateLimited(SocialSyncError):
    code = "rate_limited"
    status_code = 429
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, {"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class SendFailed(SocialSyncError):
    code = "send_failed"
    status_code = 502


class ConversationReadOnly(SendFailed):
    code = "conversation_read_only"
    status_code = 409


class NotFound(SocialSyncError):
    code = "not_found"
    status_code = 404
