"""
Custom Exception Classes for the chat synchronization core.

This module defines the exception taxonomy used by every component of the sync
engine. Collaborator adapters (auth, store, push channel, presence channel,
object storage) raise these exceptions; the services catch them at their
operation boundary and convert them into user-visible notifications.

Key Components:
- `ChatSyncError`: The base exception class from which all other custom
  exceptions in this module inherit. It carries a message, an error code and
  an optional details dictionary.
- Auth errors: `InvalidCredentialsError`, `AlreadyRegisteredError` and
  `AuthorizationError` (expired or revoked session).
- Transient errors: `NetworkError`, `SubscriptionError`, `StorageUploadError`.
- Client-side errors: `ValidationError` (rejected before any network call) and
  `StaleSessionError` (a result resolved after the session that requested it
  has ended).
- `to_http_exception`: Maps a `ChatSyncError` to FastAPI's `HTTPException` for
  the UI bridge endpoints.

Architectural Design:
- Hierarchy of Exceptions: Callers can catch a specific error, or catch
  `ChatSyncError` at an operation boundary to turn any collaborator failure
  into a notification without crashing the event loop.
- Rich Error Information: Each exception carries a stable `error_code` and a
  `details` dictionary that is safe to expose to the UI.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class ChatSyncError(Exception):
    """Base exception class for the sync core"""

    def __init__(
        self,
        message: str,
        error_code: str = "CHAT_SYNC_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, "details": self.details}


class InvalidCredentialsError(ChatSyncError):
    """Raised when the auth collaborator rejects an email/password pair"""

    def __init__(self, email: str = ""):
        super().__init__(
            "Invalid login credentials",
            "INVALID_CREDENTIALS",
            {"email": email},
        )


class AlreadyRegisteredError(ChatSyncError):
    """Raised when signing up with an email that already has an account"""

    def __init__(self, email: str):
        super().__init__(
            f"User already registered: {email}",
            "ALREADY_REGISTERED",
            {"email": email},
        )


class NetworkError(ChatSyncError):
    """Raised when a collaborator call fails in transit"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Network error during '{operation}': {reason}",
            "NETWORK_ERROR",
            {"operation": operation, "reason": reason},
        )


class AuthorizationError(ChatSyncError):
    """Raised when the current session is expired, revoked or invalid"""

    def __init__(self, reason: str):
        super().__init__(
            f"Authorization failed: {reason}",
            "AUTHORIZATION_ERROR",
            {"reason": reason},
        )


class ValidationError(ChatSyncError):
    """Raised when input validation fails"""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )


class StaleSessionError(ChatSyncError):
    """Raised when a result belongs to a session that is no longer current"""

    def __init__(self, operation: str):
        super().__init__(
            f"Discarded result of '{operation}' from an ended session",
            "STALE_SESSION",
            {"operation": operation},
        )


class SubscriptionError(ChatSyncError):
    """Raised when a push or presence subscription fails"""

    def __init__(self, topic: str, reason: str):
        super().__init__(
            f"Subscription to '{topic}' failed: {reason}",
            "SUBSCRIPTION_ERROR",
            {"topic": topic, "reason": reason},
        )


class StorageUploadError(ChatSyncError):
    """Raised when an object storage upload fails"""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Upload of '{path}' failed: {reason}",
            "UPLOAD_ERROR",
            {"path": path, "reason": reason},
        )


class NotFoundError(ChatSyncError):
    """Raised when a requested record does not exist"""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            "NOT_FOUND",
            {"resource": resource, "id": identifier},
        )


STATUS_CODE_MAP = {
    "INVALID_CREDENTIALS": 401,
    "AUTHORIZATION_ERROR": 401,
    "ALREADY_REGISTERED": 409,
    "VALIDATION_ERROR": 400,
    "NOT_FOUND": 404,
    "STALE_SESSION": 409,
    "NETWORK_ERROR": 503,
    "SUBSCRIPTION_ERROR": 502,
    "UPLOAD_ERROR": 502,
}


def to_http_exception(exc: ChatSyncError) -> HTTPException:
    """Convert ChatSyncError to FastAPI HTTPException"""
    status_code = STATUS_CODE_MAP.get(exc.error_code, 500)

    return HTTPException(
        status_code=status_code,
        detail=exc.to_dict(),
    )
