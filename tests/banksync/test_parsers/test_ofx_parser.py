# ruff: noqa: S101
"""Tests for the OFX statement parser."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from banksync.errors import ParseError
from banksync.parsers.ofx_parser import parse_ofx, preprocess_ofx_content

CREDIT_CARD_OFX = """OFXHEADER:100
DATA:OFXSGML
VERSION:102
SECURITY:NONE
ENCODING:USASCII
CHARSET:1252
COMPRESSION:NONE
OLDFILEUID:NONE
NEWFILEUID:NONE

<OFX>
<SIGNONMSGSRSV1>
<SONRS>
<STATUS>
<CODE>0
<SEVERITY>INFO
</STATUS>
<DTSERVER>20240301
<LANGUAGE>ENG
</SONRS>
</SIGNONMSGSRSV1>
<CREDITCARDMSGSRSV1>
<CCSTMTTRNRS>
<TRNUID>1
<STATUS>
<CODE>0
<SEVERITY>INFO
</STATUS>
<CCSTMTRS>
<CURDEF>AUD
<CCACCTFROM>
<ACCTID>3717-000000-00000
</CCACCTFROM>
<BANKTRANLIST>
<DTSTART>20240201
<DTEND>20240229
<STMTTRN>
<TRNTYPE>DEBIT
<DTPOSTED>20240210
<TRNAMT>-19.95
<FITID>CC-1
<NAME>STREAMING SERVICE
</STMTTRN>
</BANKTRANLIST>
<LEDGERBAL>
<BALAMT>-19.95
<DTASOF>20240229
</LEDGERBAL>
</CCSTMTRS>
</CCSTMTTRNRS>
</CREDITCARDMSGSRSV1>
</OFX>
"""


@pytest.fixture
def sample_ofx(fixtures_dir: Path) -> str:
    return (fixtures_dir / "sample_statement.ofx").read_text()


@pytest.mark.unit
def test_bank_statement(sample_ofx: str) -> None:
    statements = parse_ofx(sample_ofx)

    assert len(statements) == 1
    statement = statements[0]
    assert statement.remote_account_id == "123456789"
    assert statement.account_type == "checking"
    assert [t.external_id for t in statement.transactions] == [
        "FIT-0001",
        "FIT-0002",
        "FIT-0003",
    ]
    assert [t.amount for t in statement.transactions] == [
        Decimal("-45.50"),
        Decimal("2500.00"),
        Decimal("-1200.00"),
    ]


@pytest.mark.unit
def test_posted_date_not_shifted_by_offset(sample_ofx: str) -> None:
    """00:30 in UTC+10 is still the 5th, not the 4th."""
    first = parse_ofx(sample_ofx)[0].transactions[0]
    assert first.transaction_date == date(2024, 1, 5)


@pytest.mark.unit
def test_memo_preferred_over_name(sample_ofx: str) -> None:
    transactions = parse_ofx(sample_ofx)[0].transactions
    assert transactions[0].description == "WOOLWORTHS 3054 CARLTON"
    assert transactions[1].description == "ACME PAYROLL"


@pytest.mark.unit
def test_credit_card_statement() -> None:
    statements = parse_ofx(CREDIT_CARD_OFX)

    assert len(statements) == 1
    assert statements[0].account_type == "credit"
    assert statements[0].remote_account_id == "3717-000000-00000"
    assert statements[0].transactions[0].transaction_date == date(2024, 2, 10)


@pytest.mark.unit
def test_missing_ofx_root() -> None:
    with pytest.raises(ParseError):
        parse_ofx("OFXHEADER:100\nDATA:OFXSGML\n")


@pytest.mark.unit
def test_malformed_amount_rejects_file(sample_ofx: str) -> None:
    broken = sample_ofx.replace("<TRNAMT>2500.00", "<TRNAMT>lots")
    with pytest.raises(ParseError):
        parse_ofx(broken)


@pytest.mark.unit
def test_preprocess_splits_single_line_headers() -> None:
    content = "OFXHEADER:100DATA:OFXSGMLVERSION:102<OFX></OFX>"
    processed = preprocess_ofx_content(content)
    assert processed.splitlines()[:3] == ["OFXHEADER:100", "DATA:OFXSGML", "VERSION:102"]


@pytest.mark.unit
def test_preprocess_strips_byte_order_mark() -> None:
    assert preprocess_ofx_content("\ufeffOFXHEADER:100\n<OFX>").startswith("OFXHEADER")
