# ruff: noqa: S101,S106
"""Tests for the sync orchestrator run state machine."""

import asyncio
import logging
from typing import Any

import pytest

from banksync.config import BankSyncSettings, SyncConfig
from banksync.connections import ConnectionManager
from banksync.connectors import AccountDescriptor, ExportArtifact
from banksync.errors import (
    AuthError,
    AuthFailure,
    ConnectionBusyError,
    ConnectionNotFoundError,
    TransientError,
    UnsupportedOperationError,
)
from banksync.models import (
    Connection,
    ConnectionStatus,
    Frequency,
    QifDateOrder,
    SyncRunStatus,
)
from banksync.orchestrator import SyncOrchestrator
from banksync.parsers import StatementFormat
from banksync.storage import LedgerStore
from banksync.vault import CredentialVault

EVERYDAY = AccountDescriptor(remote_id="R-1", display_name="Everyday")
SAVINGS = AccountDescriptor(remote_id="R-2", display_name="Savings")

EVERYDAY_QIF = ExportArtifact(
    content=(
        "!Type:Bank\n"
        "D01/05/2024\nT-45.50\nPWOOLWORTHS\n^\n"
        "D01/15/2024\nT2,500.00\nPACME PAYROLL\nN1042\n^\n"
    ),
    format=StatementFormat.QIF,
)


@pytest.fixture
def connection(
    store: LedgerStore, vault: CredentialVault, fake_connector_class: type
) -> Connection:
    return ConnectionManager(store, vault).create_connection(
        user_id="user-1",
        name="Everyday",
        institution_slug="fake",
        username="alice",
        password="s3cret",
    )


@pytest.fixture
def orchestrator(
    store: LedgerStore,
    vault: CredentialVault,
    settings: BankSyncSettings,
    fake_connector: Any,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store, vault, settings, connector_factory=lambda slug, _: fake_connector
    )


class TestSuccessfulRuns:
    """Runs that reach every account."""

    @pytest.mark.unit
    def test_run_inserts_and_returns_to_idle(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {"R-1": [EVERYDAY_QIF]}

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.SUCCESS
        assert (run.inserted_count, run.skipped_count) == (2, 0)
        assert run.accounts_synced == 1
        assert run.error_message is None
        assert run.finished_at is not None and run.finished_at >= run.started_at

        loaded = store.get_connection(connection.id)
        assert loaded.status == ConnectionStatus.IDLE
        assert loaded.last_error is None
        assert loaded.last_run_at is not None
        assert fake_connector.all_released

    @pytest.mark.unit
    def test_second_run_skips_everything(
        self, orchestrator: SyncOrchestrator, connection: Connection, fake_connector: Any
    ) -> None:
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {"R-1": [EVERYDAY_QIF]}

        asyncio.run(orchestrator.run(connection.id))
        run = asyncio.run(orchestrator.run(connection.id))

        assert (run.inserted_count, run.skipped_count) == (0, 2)

    @pytest.mark.unit
    def test_credentials_decrypted_for_connector(
        self, orchestrator: SyncOrchestrator, connection: Connection, fake_connector: Any
    ) -> None:
        asyncio.run(orchestrator.run(connection.id))

        assert fake_connector.credentials.username == "alice"
        assert fake_connector.credentials.password == "s3cret"

    @pytest.mark.unit
    def test_credentials_never_logged(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        fake_connector.login_results = [AuthError(AuthFailure.INVALID_CREDENTIALS)]

        with caplog.at_level(logging.DEBUG):
            run = asyncio.run(orchestrator.run(connection.id))

        for secret in ("alice", "s3cret"):
            assert secret not in caplog.text
            assert secret not in (run.error_message or "")
            assert secret not in (store.get_connection(connection.id).last_error or "")

    @pytest.mark.unit
    def test_artifact_date_order_overrides_connection(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {
            "R-1": [
                ExportArtifact(
                    content="!Type:CCard\nD31/01/2024\nT-5\nPCafe\n^\n",
                    format=StatementFormat.QIF,
                    date_order=QifDateOrder.DMY,
                )
            ]
        }

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.SUCCESS
        account = store.find_account_by_remote_id("user-1", "R-1")
        assert account is not None
        assert str(store.transactions_frame(account.id)["date"][0]) == "2024-01-31"

    @pytest.mark.unit
    def test_transient_export_failure_recovers(
        self, orchestrator: SyncOrchestrator, connection: Connection, fake_connector: Any
    ) -> None:
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {"R-1": [TransientError("flaky"), EVERYDAY_QIF]}

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.SUCCESS
        assert fake_connector.reloads == 1


class TestPartialRuns:
    """Account-level failures do not fail the run."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("failure", "classification"),
        [
            (UnsupportedOperationError("no export"), "UnsupportedOperation"),
            (
                ExportArtifact(content="!Type:Bank\nDbad\nT1\n^\n", format=StatementFormat.QIF),
                "ParseError",
            ),
        ],
    )
    def test_failed_account_skipped(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
        failure: Any,
        classification: str,
    ) -> None:
        fake_connector.accounts = [SAVINGS, EVERYDAY]
        fake_connector.export_results = {"R-1": [EVERYDAY_QIF], "R-2": [failure]}

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.PARTIAL
        assert run.accounts_synced == 1
        assert run.inserted_count == 2
        assert run.error_message is not None
        assert f"Savings: {classification}" in run.error_message

        loaded = store.get_connection(connection.id)
        assert loaded.status == ConnectionStatus.IDLE
        assert loaded.last_error == run.error_message
        assert loaded.consecutive_failures == 0

    @pytest.mark.unit
    def test_unmapped_account_is_reconciliation_error(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        store.update_mapping(connection.id, None, {"Everyday": "no-such-account"})
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {"R-1": [EVERYDAY_QIF]}

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.PARTIAL
        assert "ReconciliationError" in (run.error_message or "")


class TestFailedRuns:
    """Runs that end with the connection in error."""

    @pytest.mark.unit
    def test_invalid_credentials(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.login_results = [AuthError(AuthFailure.INVALID_CREDENTIALS, "rejected")]

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert run.error_message == "AuthError.InvalidCredentials: rejected"
        loaded = store.get_connection(connection.id)
        assert loaded.status == ConnectionStatus.ERROR
        assert loaded.last_error == run.error_message
        assert fake_connector.login_attempts == 1
        assert fake_connector.all_released

    @pytest.mark.unit
    def test_no_accounts_after_login(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.accounts = []
        store.mark_run_failed(connection.id, "AuthError.Timeout", 3)

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert (run.error_message or "").startswith("AuthError.UnknownUiState: No accounts")
        assert run.accounts_synced == 0
        loaded = store.get_connection(connection.id)
        assert loaded.status == ConnectionStatus.ERROR
        assert loaded.last_error == run.error_message
        assert loaded.consecutive_failures == 2
        assert fake_connector.all_released

    @pytest.mark.unit
    def test_exhausted_transient_export_fails_run(
        self, orchestrator: SyncOrchestrator, connection: Connection, fake_connector: Any
    ) -> None:
        fake_connector.accounts = [EVERYDAY]
        fake_connector.export_results = {"R-1": [TransientError("still flaky")]}

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert run.error_message == "TransientError: still flaky"
        assert fake_connector.all_released

    @pytest.mark.unit
    def test_timeout_releases_session(
        self,
        store: LedgerStore,
        vault: CredentialVault,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        settings = BankSyncSettings(
            sync=SyncConfig(
                run_timeout_seconds=0.2, release_timeout_seconds=1.0, retry_delay_seconds=0.0
            )
        )
        orchestrator = SyncOrchestrator(
            store, vault, settings, connector_factory=lambda slug, _: fake_connector
        )
        fake_connector.accounts = [EVERYDAY]
        fake_connector.hang_on_export = True

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert (run.error_message or "").startswith("Timeout:")
        assert fake_connector.sessions and fake_connector.all_released
        assert store.get_connection(connection.id).status == ConnectionStatus.ERROR

    @pytest.mark.unit
    def test_tampered_credentials(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        store.update_credentials(connection.id, "00.00.00", "00.00.00", None)

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert (run.error_message or "").startswith("IntegrityError")
        assert fake_connector.sessions == []

    @pytest.mark.unit
    def test_unexpected_error_classified(
        self, orchestrator: SyncOrchestrator, connection: Connection, fake_connector: Any
    ) -> None:
        fake_connector.login_results = [KeyError("surprise")]

        run = asyncio.run(orchestrator.run(connection.id))

        assert run.status == SyncRunStatus.FAILED
        assert (run.error_message or "").startswith("UnexpectedError: KeyError")
        assert fake_connector.all_released

    @pytest.mark.unit
    def test_every_run_appends_record(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.login_results = [AuthError(AuthFailure.MFA_REQUIRED), None]

        asyncio.run(orchestrator.run(connection.id))
        asyncio.run(orchestrator.run(connection.id))

        statuses = {r.status for r in store.list_sync_runs(connection.id)}
        assert statuses == {SyncRunStatus.FAILED, SyncRunStatus.SUCCESS}


class TestCircuitBreaker:
    """Consecutive failures suspend a connection."""

    @pytest.mark.unit
    def test_opens_after_threshold(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        vault: CredentialVault,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.login_results = [AuthError(AuthFailure.INVALID_CREDENTIALS)] * 3
        manager = ConnectionManager(store, vault)
        manager.set_schedule(connection.id, frequency=Frequency.DAILY)

        for _ in range(3):
            asyncio.run(orchestrator.run(connection.id))

        loaded = store.get_connection(connection.id)
        assert loaded.circuit_open is True
        assert loaded.consecutive_failures == 3
        assert store.find_due_connections(loaded.last_run_at) == []

        manager.update_credentials(connection.id, "alice", "new-password")

        reset = store.get_connection(connection.id)
        assert reset.circuit_open is False
        assert reset.status == ConnectionStatus.IDLE
        assert [c.id for c in store.find_due_connections(loaded.last_run_at)] == [connection.id]

    @pytest.mark.unit
    def test_success_resets_counter(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.login_results = [AuthError(AuthFailure.INVALID_CREDENTIALS)] * 2

        for _ in range(3):
            asyncio.run(orchestrator.run(connection.id))

        loaded = store.get_connection(connection.id)
        assert loaded.consecutive_failures == 0
        assert loaded.circuit_open is False


class TestExclusivity:
    """At most one run per connection."""

    @pytest.mark.unit
    def test_busy_connection_rejected(
        self,
        orchestrator: SyncOrchestrator,
        connection: Connection,
        fake_connector: Any,
    ) -> None:
        fake_connector.proceed = asyncio.Event()

        async def scenario() -> None:
            first = asyncio.create_task(orchestrator.run(connection.id))
            await fake_connector.run_started.wait()
            with pytest.raises(ConnectionBusyError):
                await orchestrator.run(connection.id)
            fake_connector.proceed.set()
            run = await first
            assert run.status == SyncRunStatus.SUCCESS

        asyncio.run(scenario())
        assert fake_connector.login_attempts == 1

    @pytest.mark.unit
    def test_unknown_connection(self, orchestrator: SyncOrchestrator) -> None:
        with pytest.raises(ConnectionNotFoundError):
            asyncio.run(orchestrator.run("missing"))
