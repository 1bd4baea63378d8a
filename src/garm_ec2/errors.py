"""
Error taxonomy for the provider.

Every failure carries a ``kind`` the caller can branch on, the name of
the operation that raised it, and (where there is one) the underlying
exception. The CLI turns ``kind`` into an exit code; the provider uses
it to absorb not-found during delete.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Discriminant for ProviderError."""

    INVALID_SPEC = "invalid_spec"
    INVALID_ARGUMENT = "invalid_argument"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    UNSUPPORTED_OS_TYPE = "unsupported_os_type"
    NOT_FOUND = "not_found"
    PROVIDER_ERROR = "provider_error"
    EMPTY_USER_DATA = "empty_user_data"
    CONFIG_ERROR = "config_error"


class ProviderError(Exception):
    """Base class for all provider failures.

    Args:
        message: Human-readable description.
        operation: Name of the operation that failed (e.g. 'get_instance').
        cause: The exception that triggered this one, if any.
    """

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        text = self.message
        if self.operation:
            text = f"{self.operation}: {text}"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text

    def wrap(self, operation: str, message: str) -> "ProviderError":
        """Return a same-kind error that adds outer context to this one.

        Args:
            operation: Name of the outer operation.
            message: What the outer operation was trying to do.

        Returns:
            A copy of this error whose cause is this error.
        """
        wrapped = copy.copy(self)
        wrapped.message = message
        wrapped.operation = operation
        wrapped.cause = self
        return wrapped


class InvalidSpecError(ProviderError):
    """Bad or missing input detected before any network call."""

    kind = ErrorKind.INVALID_SPEC


class InvalidArgumentError(ProviderError):
    """A caller broke the calling contract (e.g. passed no spec)."""

    kind = ErrorKind.INVALID_ARGUMENT


class UnsupportedPlatformError(ProviderError):
    """No runner tool exists for the requested OS type / architecture."""

    kind = ErrorKind.UNSUPPORTED_PLATFORM


class UnsupportedOSTypeError(ProviderError):
    """No user-data generator exists for the requested OS type."""

    kind = ErrorKind.UNSUPPORTED_OS_TYPE


class NotFoundError(ProviderError):
    """A describe call or tag lookup matched nothing."""

    kind = ErrorKind.NOT_FOUND


class CloudAPIError(ProviderError):
    """The compute API rejected or failed a request.

    Args:
        code: AWS error code when the API returned one
            (e.g. 'UnauthorizedOperation').
    """

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, operation=operation, cause=cause)
        self.code = code


class EmptyUserDataError(ProviderError):
    """The user-data generator produced nothing usable."""

    kind = ErrorKind.EMPTY_USER_DATA


class ConfigError(ProviderError):
    """The provider configuration is missing, unreadable or invalid."""

    kind = ErrorKind.CONFIG_ERROR
