# ruff: noqa: S101
"""Tests for the reconciliation engine."""

from datetime import date
from decimal import Decimal
from typing import Any

import duckdb
import pytest

from banksync.errors import ReconciliationError
from banksync.models import Account
from banksync.parsers import CanonicalTransaction
from banksync.reconciliation import (
    ReconciliationContext,
    ReconciliationEngine,
    normalize_account_name,
)
from banksync.storage import LedgerStore, new_id


def txn(external_id: str | None, day: int, amount: str, description: str = "Shop") -> CanonicalTransaction:
    return CanonicalTransaction(
        external_id=external_id,
        date=date(2024, 1, day),
        amount=Decimal(amount),
        description=description,
    )


@pytest.fixture
def engine(store: LedgerStore) -> ReconciliationEngine:
    return ReconciliationEngine(store)


@pytest.fixture
def account(store: LedgerStore) -> Account:
    return store.create_account(Account(id=new_id(), user_id="user-1", name="Everyday"))


@pytest.mark.unit
@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Everyday Account", "everyday_account"),
        ("Complete Freedom  (1234)", "complete_freedom_1234"),
        ("bom_Everyday_Account", "bom_everyday_account"),
    ],
)
def test_normalize_account_name(name: str, expected: str) -> None:
    assert normalize_account_name(name) == expected


class TestIdempotence:
    """Repeated imports only add what is missing."""

    @pytest.mark.unit
    def test_double_import(self, engine: ReconciliationEngine, store: LedgerStore) -> None:
        context = ReconciliationContext(user_id="user-1")
        records = [txn("A", 1, "-1"), txn("B", 2, "-2"), txn("C", 3, "-3")]

        first = engine.reconcile_account(context, "R-1", records)
        second = engine.reconcile_account(context, "R-1", records)

        assert (first.inserted, first.skipped) == (3, 0)
        assert (second.inserted, second.skipped) == (0, 3)
        assert first.account_id == second.account_id
        assert store.count_transactions(first.account_id) == 3

    @pytest.mark.unit
    def test_overlapping_import(self, engine: ReconciliationEngine) -> None:
        context = ReconciliationContext(user_id="user-1")
        engine.reconcile_account(context, "R-1", [txn("A", 1, "-1"), txn("B", 2, "-2")])

        result = engine.reconcile_account(context, "R-1", [txn("B", 2, "-2"), txn("C", 3, "-3")])
        assert (result.inserted, result.skipped) == (1, 1)

    @pytest.mark.unit
    def test_synthesized_ids_collide(
        self, engine: ReconciliationEngine, store: LedgerStore, account: Account
    ) -> None:
        """Identical records without an id are stored once."""
        context = ReconciliationContext(user_id="user-1", target_account_id=account.id)
        records = [txn(None, 5, "-4.50", "Coffee"), txn(None, 5, "-4.50", "Coffee")]

        result = engine.reconcile_account(context, "qif-default", records)

        assert (result.inserted, result.skipped) == (1, 1)
        assert store.count_transactions(account.id) == 1

    @pytest.mark.unit
    def test_synthesized_ids_stable_across_imports(
        self, engine: ReconciliationEngine, account: Account
    ) -> None:
        context = ReconciliationContext(user_id="user-1", target_account_id=account.id)
        records = [txn(None, 5, "-4.50", "Coffee"), txn(None, 6, "-4.50", "Coffee")]

        engine.reconcile_account(context, "qif-default", records)
        result = engine.reconcile_account(context, "qif-default", records)
        assert (result.inserted, result.skipped) == (0, 2)


class TestAccountResolution:
    """Mapping remote accounts to local ones."""

    @pytest.mark.unit
    def test_target_account(self, engine: ReconciliationEngine, account: Account) -> None:
        context = ReconciliationContext(user_id="user-1", target_account_id=account.id)
        assert engine.reconcile_account(context, "R-1", []).account_id == account.id

    @pytest.mark.unit
    def test_accounts_map_by_display_name(
        self, engine: ReconciliationEngine, store: LedgerStore, account: Account
    ) -> None:
        other = store.create_account(Account(id=new_id(), user_id="user-1", name="Other"))
        context = ReconciliationContext(
            user_id="user-1",
            target_account_id=other.id,
            accounts_map={"Everyday Account": account.id},
        )
        result = engine.reconcile_account(
            context, "R-1", [], display_name="Everyday Account"
        )
        assert result.account_id == account.id

    @pytest.mark.unit
    def test_accounts_map_by_normalized_name(
        self, engine: ReconciliationEngine, account: Account
    ) -> None:
        context = ReconciliationContext(
            user_id="user-1", accounts_map={"everyday_account": account.id}
        )
        result = engine.reconcile_account(context, "Everyday Account", [])
        assert result.account_id == account.id

    @pytest.mark.unit
    def test_linked_account_reused(
        self, engine: ReconciliationEngine, store: LedgerStore
    ) -> None:
        linked = store.create_account(
            Account(id=new_id(), user_id="user-1", name="Card", remote_account_id="R-9")
        )
        context = ReconciliationContext(user_id="user-1")
        assert engine.reconcile_account(context, "R-9", []).account_id == linked.id

    @pytest.mark.unit
    def test_placeholder_created(self, engine: ReconciliationEngine, store: LedgerStore) -> None:
        context = ReconciliationContext(user_id="user-1", connection_id="conn-1")
        result = engine.reconcile_account(context, "R-7", [], account_type="credit")

        created = store.get_account(result.account_id)
        assert created is not None
        assert created.name == "Imported Account R-7"
        assert created.type == "credit"
        assert created.connection_id == "conn-1"
        assert created.remote_account_id == "R-7"

    @pytest.mark.unit
    def test_mapped_account_missing(self, engine: ReconciliationEngine, store: LedgerStore) -> None:
        context = ReconciliationContext(user_id="user-1", target_account_id="missing")
        with pytest.raises(ReconciliationError):
            engine.reconcile_account(context, "R-1", [txn("A", 1, "-1")])
        assert store.list_accounts("user-1") == []

    @pytest.mark.unit
    def test_mapped_account_of_other_user(
        self, engine: ReconciliationEngine, account: Account
    ) -> None:
        context = ReconciliationContext(user_id="user-2", target_account_id=account.id)
        with pytest.raises(ReconciliationError):
            engine.reconcile_account(context, "R-1", [txn("A", 1, "-1")])

    @pytest.mark.unit
    def test_failed_batch_rolls_back(
        self, engine: ReconciliationEngine, store: LedgerStore, mocker: Any
    ) -> None:
        context = ReconciliationContext(user_id="user-1")
        real_insert = store.insert_transaction
        calls = {"n": 0}

        def flaky_insert(**kwargs: Any) -> bool:
            calls["n"] += 1
            if calls["n"] == 2:
                raise duckdb.IOException("disk full")
            return real_insert(**kwargs)

        mocker.patch.object(store, "insert_transaction", side_effect=flaky_insert)

        with pytest.raises(ReconciliationError):
            engine.reconcile_account(context, "R-1", [txn("A", 1, "-1"), txn("B", 2, "-2")])

        assert store.list_accounts("user-1") == []
