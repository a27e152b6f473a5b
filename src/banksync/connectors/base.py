"""Connector contract shared by every institution adapter.

A connector drives one institution portal through four capabilities:
authenticate, list accounts, export transactions and release. The retry
policies for authentication and export live here so every adapter gets the
same semantics; adapters only describe how a single attempt is made.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, ClassVar

from banksync.config import BankSyncSettings
from banksync.errors import AuthError, TransientError
from banksync.metadata import AmexMetadata, BomMetadata
from banksync.models import QifDateOrder
from banksync.parsers import StatementFormat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BankCredentials:
    """Decrypted secrets for a single run. Never persisted or logged."""

    username: str = field(repr=False)
    password: str = field(repr=False)
    metadata: BomMetadata | AmexMetadata | None = field(default=None, repr=False)


@dataclass(frozen=True)
class AccountDescriptor:
    """Remote account discovered on an institution portal."""

    remote_id: str
    display_name: str
    type: str = "checking"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive range of posting dates to export."""

    start: date
    end: date

    @classmethod
    def last_days(cls, days: int, today: date | None = None) -> "DateWindow":
        end = today or date.today()
        return cls(start=end - timedelta(days=days), end=end)


@dataclass(frozen=True)
class ExportArtifact:
    """Statement file produced by an export."""

    content: bytes | str = field(repr=False)
    format: StatementFormat
    filename: str | None = None
    date_order: QifDateOrder | None = None


class BankConnector(ABC):
    """Base class for institution connectors.

    Subclasses set ``slug`` and register themselves with
    ``banksync.connectors.registry.register_connector``.
    """

    slug: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    requires_security_number: ClassVar[bool] = False

    def __init__(self, settings: BankSyncSettings):
        self.settings = settings

    def validate_credentials(self, credentials: BankCredentials) -> None:
        """Reject credentials the institution cannot use, before a session opens.

        Raises:
            InvalidMetadataError: If required metadata is missing
        """

    @abstractmethod
    async def open_session(self) -> Any:
        """Start an automation session."""

    @abstractmethod
    async def login(self, session: Any, credentials: BankCredentials) -> None:
        """Make a single login attempt.

        Raises:
            AuthError: With the classified failure reason
        """

    @abstractmethod
    async def reload(self, session: Any) -> None:
        """Reload the current page before a retry."""

    @abstractmethod
    async def list_accounts(self, session: Any) -> list[AccountDescriptor]:
        """List the remote accounts visible after login."""

    @abstractmethod
    async def export_transactions(
        self, session: Any, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        """Make a single export attempt for one account.

        Raises:
            TransientError: If the attempt may succeed after a reload
            UnsupportedOperationError: If the account cannot be exported
        """

    @abstractmethod
    async def release(self, session: Any) -> None:
        """Tear down the automation session."""

    async def authenticate(self, credentials: BankCredentials) -> Any:
        """Open a session and log in, retrying recoverable failures.

        ``InvalidCredentials`` and ``MfaRequired`` fail immediately;
        ``UnknownUiState`` and ``Timeout`` are retried with a page reload
        between attempts. The session is released if authentication does not
        succeed.

        Returns:
            The authenticated session; the caller must ``release`` it

        Raises:
            AuthError: When the last attempt fails
        """
        self.validate_credentials(credentials)
        max_attempts = self.settings.sync.auth_max_attempts

        session = await self.open_session()
        try:
            for attempt in range(1, max_attempts + 1):
                try:
                    await self.login(session, credentials)
                    logger.info(f"Authenticated with {self.slug} on attempt {attempt}")
                    return session
                except AuthError as e:
                    if not e.retryable or attempt == max_attempts:
                        raise
                    logger.warning(
                        f"Login to {self.slug} failed ({e.classification}), "
                        f"attempt {attempt}/{max_attempts}; reloading"
                    )
                await asyncio.sleep(self.settings.sync.retry_delay_seconds)
                await self.reload(session)
        except BaseException:
            await self.release_session(session)
            raise

        raise AssertionError("unreachable")

    async def export_with_retry(
        self, session: Any, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        """Export one account, retrying transient failures after a reload.

        Raises:
            TransientError: When every attempt failed
            UnsupportedOperationError: Immediately, without retrying
        """
        max_attempts = self.settings.sync.export_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await self.export_transactions(session, account, window)
            except TransientError as e:
                if attempt == max_attempts:
                    raise
                logger.warning(
                    f"Export of {account.display_name} failed ({e}), "
                    f"attempt {attempt}/{max_attempts}; reloading"
                )
            await asyncio.sleep(self.settings.sync.retry_delay_seconds)
            await self.reload(session)

        raise AssertionError("unreachable")

    async def release_session(self, session: Any) -> None:
        """Release a session within the configured time budget.

        Failures are logged and not raised so that release never masks the
        error that ended the run.
        """
        try:
            await asyncio.wait_for(
                self.release(session),
                timeout=self.settings.sync.release_timeout_seconds,
            )
            logger.debug(f"Released {self.slug} session")
        except Exception:
            logger.exception(f"Failed to release {self.slug} session")
