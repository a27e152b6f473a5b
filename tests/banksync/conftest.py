"""Shared pytest fixtures for banksync tests.

Provides a temporary ledger, a vault with a test secret, fast sync settings and
a scriptable in-memory connector registered under the ``fake`` slug.
"""

import asyncio
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from banksync.config import (
    BankSyncSettings,
    DatabaseConfig,
    SchedulerConfig,
    SyncConfig,
    clear_settings_cache,
)
from banksync.connectors import (
    AccountDescriptor,
    BankConnector,
    BankCredentials,
    DateWindow,
    ExportArtifact,
    register_connector,
    unregister_connector,
)
from banksync.parsers import StatementFormat
from banksync.storage import LedgerStore
from banksync.vault import CredentialVault, get_vault

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures"

TEST_SECRET = "test-master-secret"
TEST_SALT = "banksync_test_salt"

DEFAULT_ACCOUNT = AccountDescriptor(remote_id="FAKE-1", display_name="Fake Everyday")
EMPTY_QIF = ExportArtifact(content="!Type:Bank\n", format=StatementFormat.QIF)


@pytest.fixture(autouse=True)
def clean_settings_state() -> Generator[None, None, None]:
    """Clear cached settings and vault before and after each test."""
    clear_settings_cache()
    get_vault.cache_clear()
    yield
    clear_settings_cache()
    get_vault.cache_clear()


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def store(tmp_path: Path) -> Generator[LedgerStore, None, None]:
    """Ledger store on a temporary DuckDB file."""
    ledger = LedgerStore(tmp_path / "ledger.duckdb")
    yield ledger
    ledger.close()


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    return CredentialVault(TEST_SECRET, TEST_SALT)


@pytest.fixture
def settings(tmp_path: Path) -> BankSyncSettings:
    """Settings with no retry delay and a short run timeout."""
    return BankSyncSettings(
        database=DatabaseConfig(path=tmp_path / "ledger.duckdb"),
        sync=SyncConfig(
            run_timeout_seconds=2.0,
            release_timeout_seconds=1.0,
            retry_delay_seconds=0.0,
        ),
        scheduler=SchedulerConfig(stagger_seconds=0.0, max_concurrent_sessions=2),
    )


class FakeSession:
    """Stand-in for a browser session."""

    def __init__(self) -> None:
        self.released = False


class FakeConnector(BankConnector):
    """Connector whose behaviour is scripted by the test.

    ``login_results`` and ``export_results[remote_id]`` are consumed one item
    per attempt; an exception instance is raised, anything else succeeds.
    By default it lists one account whose export holds no transactions.
    """

    slug = "fake"
    display_name = "Fake Bank"
    description = "Scripted connector used in tests"

    def __init__(self, settings: BankSyncSettings):
        super().__init__(settings)
        self.accounts: list[AccountDescriptor] = [DEFAULT_ACCOUNT]
        self.login_results: list[Any] = []
        self.export_results: dict[str, list[Any]] = {DEFAULT_ACCOUNT.remote_id: [EMPTY_QIF]}
        self.hang_on_login = False
        self.hang_on_export = False
        self.sessions: list[FakeSession] = []
        self.login_attempts = 0
        self.reloads = 0
        self.credentials: BankCredentials | None = None
        self.run_started = asyncio.Event()
        self.proceed: asyncio.Event | None = None

    async def open_session(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session

    async def login(self, session: FakeSession, credentials: BankCredentials) -> None:
        self.login_attempts += 1
        self.credentials = credentials
        self.run_started.set()
        if self.proceed is not None:
            await self.proceed.wait()
        if self.hang_on_login:
            await asyncio.sleep(3600)
        if self.login_results:
            result = self.login_results.pop(0)
            if isinstance(result, BaseException):
                raise result

    async def reload(self, session: FakeSession) -> None:
        self.reloads += 1

    async def list_accounts(self, session: FakeSession) -> list[AccountDescriptor]:
        return list(self.accounts)

    async def export_transactions(
        self, session: FakeSession, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        if self.hang_on_export:
            await asyncio.sleep(3600)
        results = self.export_results[account.remote_id]
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def release(self, session: FakeSession) -> None:
        session.released = True

    @property
    def all_released(self) -> bool:
        return all(session.released for session in self.sessions)


@pytest.fixture
def fake_connector_class() -> Generator[type[FakeConnector], None, None]:
    """Register the fake connector for the duration of a test."""
    register_connector(FakeConnector)
    yield FakeConnector
    unregister_connector(FakeConnector.slug)


@pytest.fixture
def fake_connector(
    settings: BankSyncSettings, fake_connector_class: type[FakeConnector]
) -> FakeConnector:
    return fake_connector_class(settings)
