"""
Error taxonomy and classification for sync operations.

Every failure the sync core can observe is mapped onto a small closed set of
error kinds so the retry layer can decide what to do without knowing which
transport or store raised it.
"""

import asyncio
import enum
import socket
import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import aiohttp


class ErrorCategory:
    """Error categories for logging and diagnostics."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    DATA_VALIDATION = "data_validation"
    PROTOCOL = "protocol"
    CANCELLED = "cancelled"
    LOCAL_STORE = "local_store"
    UNKNOWN = "unknown"


class ErrorKind(str, enum.Enum):
    """What the retry layer should do with a failure."""
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


class SyncError(Exception):
    """Base exception for sync errors with diagnostic metadata."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.UNKNOWN,
        retryable: bool = False,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retryable = retryable
        self.code = code
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            'message': self.message,
            'category': self.category,
            'retryable': self.retryable,
            'code': self.code,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
            'traceback': (
                ''.join(traceback.format_exception(self.original_exception))
                if self.original_exception else None
            )
        }


class TransientNetworkError(SyncError):
    """Connection reset, premature stream close, DNS failure and the like."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.NETWORK)
        super().__init__(message, retryable=True, **kwargs)


class RequestTimeoutError(TransientNetworkError):
    """A single request exceeded its per-request timeout."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.TIMEOUT, **kwargs)


class TerminalRemoteError(SyncError):
    """The remote rejected the request; retrying will not help."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.DATA_VALIDATION)
        super().__init__(message, retryable=False, **kwargs)


class RemoteAuthError(TerminalRemoteError):
    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.AUTHENTICATION, **kwargs)


class RemoteValidationError(TerminalRemoteError):
    pass


class RemoteProtocolError(TerminalRemoteError):
    """The remote answered with something that cannot be interpreted."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.PROTOCOL, **kwargs)


class SyncCancelledError(SyncError):
    """Raised at a suspension point once the session token has fired."""

    def __init__(self, message: str = "Sync operation was cancelled", **kwargs):
        super().__init__(message, category=ErrorCategory.CANCELLED, retryable=False, **kwargs)


class LocalStoreError(SyncError):
    """Read or write failure on the persistent local store."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.LOCAL_STORE, retryable=False, **kwargs)


_TRANSIENT_MESSAGE_MARKERS = (
    "premature close",
    "unexpected end of stream",
    "unexpected end of file",
    "connection closed",
    "connection terminated",
    "connection reset",
    "socket closed",
    "server disconnected",
    "network request failed",
    "temporary failure in name resolution",
    "timed out",
)

_TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
)


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify a failure for the retry layer.

    Args:
        error: The exception raised by an operation

    Returns:
        The error kind deciding whether the operation is retried
    """
    if isinstance(error, (SyncCancelledError, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(error, SyncError):
        return ErrorKind.TRANSIENT if error.retryable else ErrorKind.TERMINAL
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return ErrorKind.TRANSIENT

    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS):
        return ErrorKind.TRANSIENT

    return ErrorKind.TERMINAL


def describe_error(error: BaseException) -> Dict[str, Any]:
    """Flatten an exception into loggable context."""
    if isinstance(error, SyncError):
        return {
            'error_type': type(error).__name__,
            'error_message': error.message,
            'error_code': error.code,
            'error_category': error.category,
            'error_details': error.details,
        }
    return {
        'error_type': type(error).__name__,
        'error_message': str(error),
        'error_code': getattr(error, 'code', None),
        'error_category': ErrorCategory.UNKNOWN,
        'error_details': {},
    }
