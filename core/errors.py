"""Error taxonomy for the sync core.

Every failure that crosses a component boundary is expressed as one of the
classes below. The ``retryable`` flag drives the job-level state machine:
retryable errors reschedule a queue item with backoff, everything else moves
it straight to ``failed``.
"""

import asyncio
from typing import Optional

import aiohttp


class SyncError(Exception):
    """Base exception for sync core errors."""

    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class TransientNetworkError(SyncError):
    """Timeout, connection refused or a 5xx-equivalent remote error."""

    retryable = True

    def __init__(self, message: str, *, status_code: int = 0, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class AuthenticationExpiredError(SyncError):
    """The remote side no longer accepts the current session."""

    retryable = True


class AuthenticationError(SyncError):
    """Credentials were rejected during login."""

    retryable = False


class ValidationError(SyncError):
    """Malformed payload or a rejection by remote business rules."""

    retryable = False


class RemoteError(SyncError):
    """A remote fault that is neither transient nor a validation failure."""

    retryable = False


class UnknownModuleError(SyncError):
    """No handler is registered for a queue item's module."""

    retryable = False

    def __init__(self, module: str):
        super().__init__(f'Module "{module}" not found or not registered.')
        self.module = module


class DuplicateKeyError(SyncError):
    """An enqueue lost a storage race; the caller should enqueue again."""

    retryable = False


class MappingWriteError(SyncError):
    """The remote write succeeded but the entity mapping could not be saved.

    ``remote_id`` is kept on the queue item so the retry updates the record
    it already created instead of creating another one.
    """

    retryable = True

    def __init__(self, message: str, *, remote_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.remote_id = remote_id


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception as retryable (True) or fatal (False)."""
    if isinstance(exc, SyncError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError)):
        return True
    if isinstance(exc, (ConnectionError, OSError)):
        return True
    return False
