# ruff: noqa: S101
"""Tests for the canonical statement records."""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from banksync.parsers import CanonicalTransaction, ParsedStatement


@pytest.mark.unit
def test_build_transaction_by_date_key() -> None:
    txn = CanonicalTransaction(date=date(2024, 1, 5), amount="-12.50", description="Coffee")

    assert txn.transaction_date == date(2024, 1, 5)
    assert txn.amount == Decimal("-12.50")
    assert txn.status_hint == "cleared"
    assert txn.external_id is None


@pytest.mark.unit
def test_build_transaction_by_field_name() -> None:
    txn = CanonicalTransaction(
        external_id="FIT-1", transaction_date=date(2024, 2, 1), amount=Decimal("100")
    )

    assert txn.transaction_date == date(2024, 2, 1)
    assert txn.model_dump(by_alias=True)["date"] == date(2024, 2, 1)


@pytest.mark.unit
def test_transaction_requires_date() -> None:
    with pytest.raises(ValidationError):
        CanonicalTransaction(amount="1.00")


@pytest.mark.unit
def test_transaction_is_frozen() -> None:
    txn = CanonicalTransaction(date=date(2024, 1, 5), amount=1)

    with pytest.raises(ValidationError):
        txn.amount = Decimal("2")


@pytest.mark.unit
def test_statement_groups_transactions() -> None:
    statement = ParsedStatement(
        remote_account_id="Everyday",
        transactions=[CanonicalTransaction(date=date(2024, 1, 5), amount=1)],
    )

    assert statement.transactions[0].transaction_date == date(2024, 1, 5)
