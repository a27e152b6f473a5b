"""OFX/QFX statement parser using the ofxparse library.

Bank (``BANKMSGSRSV1``) and credit card (``CREDITCARDMSGSRSV1``) statement
blocks are turned into canonical transactions. Investment statements are
ignored.

Documentation: https://github.com/jseutter/ofxparse
"""

import logging
from datetime import datetime
from io import BytesIO

import ofxparse
from ofxparse import AccountType

from banksync.errors import ParseError

from .schemas import CanonicalTransaction, ParsedStatement

logger = logging.getLogger(__name__)

_SGML_HEADER_KEYS = (
    "DATA:",
    "VERSION:",
    "SECURITY:",
    "ENCODING:",
    "CHARSET:",
    "COMPRESSION:",
    "OLDFILEUID:",
    "NEWFILEUID:",
)


class _PostedDateOfxParser(ofxparse.OfxParser):
    """OfxParser that keeps the calendar date an institution posted.

    ofxparse shifts timestamps carrying a ``[+10:AEST]`` style offset to UTC,
    which moves early-morning postings to the previous day. Only the first
    eight digits (``YYYYMMDD``) are significant for the ledger.
    """

    @classmethod
    def parseOfxDateTime(cls, ofxDateTime):  # noqa: N802,N803 - ofxparse API
        return datetime.strptime(ofxDateTime.strip()[:8], "%Y%m%d")


def preprocess_ofx_content(content: str) -> str:
    """Normalize SGML OFX headers that arrive without newlines.

    Args:
        content: Raw OFX file content

    Returns:
        str: Content with one header per line
    """
    content = content.lstrip("\ufeff")
    if content.startswith("OFXHEADER:") and "\n" not in content[:100]:
        if "<OFX>" in content:
            header_part, xml_part = content.split("<OFX>", 1)
            for key in _SGML_HEADER_KEYS:
                header_part = header_part.replace(key, f"\n{key}")
            content = header_part.lstrip("\n") + "\n<OFX>" + xml_part

    return content


def parse_ofx(content: str) -> list[ParsedStatement]:
    """Parse an OFX document into canonical statements.

    Args:
        content: Decoded OFX file content

    Returns:
        list: One ParsedStatement per bank or credit card account

    Raises:
        ParseError: If the document is malformed; no partial result is returned
    """
    if "<OFX>" not in content.upper():
        raise ParseError("Not an OFX document: missing <OFX> root element")

    content = preprocess_ofx_content(content)

    try:
        ofx = _PostedDateOfxParser.parse(BytesIO(content.encode("utf-8")), fail_fast=True)
    except Exception as e:
        raise ParseError(f"Invalid OFX file format: {e}") from e

    statements: list[ParsedStatement] = []
    for account in ofx.accounts:
        if account.type not in (AccountType.Bank, AccountType.CreditCard):
            logger.debug(f"Skipping non-banking OFX account {account.account_id}")
            continue

        statement = account.statement
        transactions = [
            CanonicalTransaction(
                external_id=txn.id,
                date=txn.date.date(),
                amount=txn.amount,
                description=(txn.memo or txn.payee or "").strip(),
            )
            for txn in (statement.transactions if statement else [])
        ]

        if account.type == AccountType.CreditCard:
            account_type = "credit"
        else:
            account_type = (getattr(account, "account_type", "") or "checking").lower()

        statements.append(
            ParsedStatement(
                remote_account_id=account.account_id,
                account_type=account_type,
                transactions=transactions,
            )
        )

    logger.info(
        f"Parsed OFX: {len(statements)} account(s), "
        f"{sum(len(s.transactions) for s in statements)} transaction(s)"
    )
    return statements
