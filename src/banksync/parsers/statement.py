"""Format detection and dispatch for statement files."""

import logging
from pathlib import Path

from banksync.errors import ParseError
from banksync.models import QifDateOrder

from .ofx_parser import parse_ofx
from .qif_parser import parse_qif
from .schemas import (
    CanonicalTransaction,
    ParsedStatement,
    StatementFormat,
    synthesize_external_id,
)

logger = logging.getLogger(__name__)

_EXTENSION_FORMATS = {
    ".ofx": StatementFormat.OFX,
    ".qfx": StatementFormat.OFX,
    ".qif": StatementFormat.QIF,
}

__all__ = [
    "CanonicalTransaction",
    "ParsedStatement",
    "StatementFormat",
    "decode_statement",
    "detect_format",
    "parse_statement",
    "synthesize_external_id",
]


def decode_statement(content: bytes | str) -> str:
    """Decode statement bytes, tolerating legacy single-byte encodings."""
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        # OFX 1.x exports are frequently cp1252
        return content.decode("cp1252", errors="replace")


def detect_format(content: bytes | str, filename: str | Path | None = None) -> StatementFormat:
    """Work out whether a statement is OFX or QIF.

    The file extension wins when it is recognized; otherwise the content is
    inspected.

    Raises:
        ParseError: If the format cannot be determined
    """
    if filename is not None:
        suffix = Path(filename).suffix.lower()
        if suffix in _EXTENSION_FORMATS:
            return _EXTENSION_FORMATS[suffix]

    head = decode_statement(content)[:2048].lstrip()
    if head.startswith("OFXHEADER") or "<OFX>" in head.upper():
        return StatementFormat.OFX
    if head.startswith("!Type:") or head.startswith("!Account") or head.startswith("!Option"):
        return StatementFormat.QIF

    raise ParseError("Unrecognized statement format (expected OFX or QIF)")


def parse_statement(
    content: bytes | str,
    statement_format: StatementFormat,
    date_order: QifDateOrder = QifDateOrder.MDY,
) -> list[ParsedStatement]:
    """Parse a statement file into canonical statements.

    Args:
        content: Raw or decoded file content
        statement_format: Format of the content
        date_order: Day/month ordering for QIF dates

    Returns:
        list: Parsed statements (QIF always yields exactly one)

    Raises:
        ParseError: If the content is malformed
    """
    text = decode_statement(content)

    if statement_format == StatementFormat.OFX:
        return parse_ofx(text)
    if statement_format == StatementFormat.QIF:
        return [parse_qif(text, date_order)]

    raise ParseError(f"Unsupported statement format: {statement_format}")
