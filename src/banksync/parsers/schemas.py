"""Canonical statement records shared by every parser."""

import hashlib
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StatementFormat(str, Enum):
    """Supported statement interchange formats."""

    OFX = "OFX"
    QIF = "QIF"


class CanonicalTransaction(BaseModel):
    """Format-independent transaction produced by the parsers."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    external_id: str | None = Field(
        None, description="Institution transaction id (FITID or QIF reference)"
    )
    transaction_date: date = Field(..., description="Posting date", alias="date")
    amount: Decimal = Field(..., description="Signed transaction amount")
    description: str = Field("", description="Payee and/or memo text")
    status_hint: str = Field("cleared", description="Ledger status to store")

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Decimal:
        """Convert amount to Decimal for precision."""
        if isinstance(v, Decimal):
            return v
        if isinstance(v, (int, float, str)):
            return Decimal(str(v))
        raise ValueError(f"Cannot convert {type(v)} to Decimal")


class ParsedStatement(BaseModel):
    """Transactions of one account found in a statement file."""

    model_config = ConfigDict(frozen=True)

    remote_account_id: str | None = None
    account_type: str | None = None
    transactions: list[CanonicalTransaction] = Field(default_factory=list)


def synthesize_external_id(
    account_id: str, txn_date: date, amount: Decimal, description: str
) -> str:
    """Build a deterministic dedup key for a record without an institution id.

    Two genuinely distinct transactions on the same account and day with the
    same amount and description produce the same key, so only one of them is
    kept. QIF exports carry no transaction ids, so this is accepted.

    Args:
        account_id: Local account the record is reconciled into
        txn_date: Posting date
        amount: Signed amount
        description: Transaction description

    Returns:
        str: Key of the form ``qif-<sha256 prefix>``
    """
    material = "|".join(
        [account_id, txn_date.isoformat(), f"{amount:.2f}", description.strip()]
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"qif-{digest[:40]}"
