"""Statement file parsers.

Both supported interchange formats (OFX and QIF) are normalized into the same
``CanonicalTransaction`` records, grouped per statement account.
"""

from .statement import (
    CanonicalTransaction,
    ParsedStatement,
    StatementFormat,
    detect_format,
    parse_statement,
    synthesize_external_id,
)

__all__ = [
    "CanonicalTransaction",
    "ParsedStatement",
    "StatementFormat",
    "detect_format",
    "parse_statement",
    "synthesize_external_id",
]
