"""Exception taxonomy for the BankSync pipeline.

Every error raised by a connector, the parser, the vault or the reconciliation
engine derives from ``SyncError``. The ``classification`` of an error is the
short string stored on a connection's ``last_error`` and shown to the user.
"""

from enum import Enum


class SyncError(Exception):
    """Base class for classified sync pipeline failures."""

    category = "SyncError"
    retryable = False

    @property
    def classification(self) -> str:
        """Category label used when the error is surfaced on a connection."""
        return self.category

    def describe(self) -> str:
        """Render the error as ``<classification>: <message>``."""
        message = str(self)
        return f"{self.classification}: {message}" if message else self.classification


class AuthFailure(str, Enum):
    """Reasons an institution login can fail."""

    INVALID_CREDENTIALS = "InvalidCredentials"
    MFA_REQUIRED = "MfaRequired"
    UNKNOWN_UI_STATE = "UnknownUiState"
    TIMEOUT = "Timeout"


_RETRYABLE_AUTH_FAILURES = frozenset({AuthFailure.UNKNOWN_UI_STATE, AuthFailure.TIMEOUT})


class AuthError(SyncError):
    """Authentication against an institution portal failed."""

    category = "AuthError"

    def __init__(self, reason: AuthFailure, message: str = ""):
        super().__init__(message)
        self.reason = reason

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # Wrong credentials or an MFA prompt will not change on a retry
        return self.reason in _RETRYABLE_AUTH_FAILURES

    @property
    def classification(self) -> str:
        return f"{self.category}.{self.reason.value}"


class TransientError(SyncError):
    """Network or page-state flakiness; safe to retry after a reload."""

    category = "TransientError"
    retryable = True


class UnsupportedOperationError(SyncError):
    """The institution cannot perform the request for this account."""

    category = "UnsupportedOperation"


class IntegrityError(SyncError):
    """A vault token is malformed or failed authentication."""

    category = "IntegrityError"


class ParseError(SyncError):
    """A statement file could not be parsed."""

    category = "ParseError"


class ReconciliationError(SyncError):
    """A remote account could not be mapped onto a local account."""

    category = "ReconciliationError"


class SyncTimeoutError(SyncError):
    """A sync run exceeded its time budget and was terminated."""

    category = "Timeout"


class VaultConfigurationError(SyncError):
    """The vault has no usable master secret."""

    category = "VaultConfigurationError"


class InvalidMetadataError(SyncError):
    """Institution metadata failed validation."""

    category = "InvalidMetadata"


class UnknownInstitutionError(SyncError):
    """No connector is registered for an institution slug."""

    category = "UnknownInstitution"


class ConnectionNotFoundError(SyncError):
    """A connection id does not exist."""

    category = "ConnectionNotFound"


class ConnectionBusyError(SyncError):
    """A run is already in flight for the connection."""

    category = "ConnectionBusy"
