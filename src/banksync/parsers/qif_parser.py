"""QIF (Quicken Interchange Format) statement parser.

QIF is line oriented: each line starts with a one-letter field code and ``^``
ends a record. Only the bank transaction fields are used:

    D  date            T/U  amount
    P  payee           M    memo
    N  reference/check number (used as the external id)
"""

import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation

from banksync.errors import ParseError
from banksync.models import QifDateOrder

from .schemas import CanonicalTransaction, ParsedStatement

logger = logging.getLogger(__name__)

_DATE_SEPARATORS = re.compile(r"[/'\-]")

# Two-digit years at or above the pivot belong to the 1900s
YEAR_PIVOT = 70


def parse_qif_date(value: str, order: QifDateOrder = QifDateOrder.MDY) -> date:
    """Parse a QIF date field.

    Dates are split on ``/``, ``'`` or ``-``. A four-digit leading part is read
    as ``YYYY-MM-DD``; otherwise ``order`` decides whether the month or the day
    comes first. Two-digit years pivot at 70: ``70`` is 1970, ``69`` is 2069.

    Args:
        value: Raw date text (e.g. ``09/15/23`` or ``1/ 5'24``)
        order: Day/month ordering of the exporting institution

    Returns:
        date: The parsed date

    Raises:
        ParseError: If the value is not a valid date
    """
    parts = [p.strip() for p in _DATE_SEPARATORS.split(value.strip())]
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ParseError(f"Malformed QIF date: {value!r}")

    if len(parts[0]) == 4:
        year_text, month_text, day_text = parts
    elif order == QifDateOrder.DMY:
        day_text, month_text, year_text = parts
    else:
        month_text, day_text, year_text = parts

    year = int(year_text)
    if len(year_text) <= 2:
        year += 1900 if year >= YEAR_PIVOT else 2000
    elif len(year_text) != 4:
        raise ParseError(f"Malformed QIF date year: {value!r}")

    try:
        return date(year, int(month_text), int(day_text))
    except ValueError as e:
        raise ParseError(f"Invalid QIF date {value!r}: {e}") from e


def parse_qif_amount(value: str) -> Decimal:
    """Parse a QIF amount, stripping thousands separators.

    Raises:
        ParseError: If the value is not numeric
    """
    cleaned = value.replace(",", "").replace("$", "").strip()
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as e:
        raise ParseError(f"Non-numeric QIF amount: {value!r}") from e
    if not amount.is_finite():
        raise ParseError(f"Non-numeric QIF amount: {value!r}")
    return amount


class _QifRecord:
    """Fields accumulated for the record currently being read."""

    def __init__(self, line_number: int):
        self.line_number = line_number
        self.date: date | None = None
        self.amount: Decimal | None = None
        self.fallback_amount: Decimal | None = None
        self.payee = ""
        self.memo = ""
        self.reference: str | None = None

    def to_transaction(self) -> CanonicalTransaction:
        amount = self.amount if self.amount is not None else self.fallback_amount
        if self.date is None:
            raise ParseError(f"QIF record at line {self.line_number} has no date")
        if amount is None:
            raise ParseError(f"QIF record at line {self.line_number} has no amount")

        description = f"{self.payee} - {self.memo}" if self.memo else self.payee
        return CanonicalTransaction(
            external_id=self.reference or None,
            date=self.date,
            amount=amount,
            description=description.strip(),
        )


def parse_qif(
    content: str, date_order: QifDateOrder = QifDateOrder.MDY
) -> ParsedStatement:
    """Parse a QIF document into a single canonical statement.

    Args:
        content: Decoded QIF file content
        date_order: Day/month ordering of the exporting institution

    Returns:
        ParsedStatement: Transactions in file order. ``remote_account_id`` is
        set when the file carries an ``!Account`` block with a name.

    Raises:
        ParseError: On the first malformed record; the whole file is rejected
    """
    transactions: list[CanonicalTransaction] = []
    account_name: str | None = None
    in_account_block = False
    current: _QifRecord | None = None

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.rstrip()
        if not line:
            continue

        if line.startswith("!"):
            in_account_block = line.lower().startswith("!account")
            continue

        if line.startswith("^"):
            if in_account_block:
                in_account_block = False
            elif current is not None:
                transactions.append(current.to_transaction())
            current = None
            continue

        code, value = line[0], line[1:].strip()

        if in_account_block:
            if code == "N" and value:
                account_name = value
            continue

        if current is None:
            current = _QifRecord(line_number)

        if code == "D":
            current.date = parse_qif_date(value, date_order)
        elif code == "T":
            current.amount = parse_qif_amount(value)
        elif code == "U":
            current.fallback_amount = parse_qif_amount(value)
        elif code == "P":
            current.payee = value
        elif code == "M":
            current.memo = value
        elif code == "N":
            current.reference = value

    # Some exporters omit the terminator after the last record
    if current is not None:
        transactions.append(current.to_transaction())

    logger.info(f"Parsed QIF: {len(transactions)} transaction(s)")
    return ParsedStatement(remote_account_id=account_name, transactions=transactions)
