"""Manual statement import.

Uploaded OFX/QFX/QIF files go through the same parser and reconciliation
engine as automated syncs, so importing a file that overlaps an earlier sync
or import only adds the transactions not already in the ledger.
"""

import logging
from pathlib import Path

from banksync.models import QifDateOrder
from banksync.parsers import StatementFormat, detect_format, parse_statement
from banksync.reconciliation import (
    AccountReconciliation,
    ReconciliationContext,
    ReconciliationEngine,
)
from banksync.storage import LedgerStore

logger = logging.getLogger(__name__)

QIF_DEFAULT_ACCOUNT = "qif-default"
OFX_DEFAULT_ACCOUNT = "ofx-default"


class StatementImporter:
    """Import statement files into a user's ledger."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.engine = ReconciliationEngine(store)

    def import_file(
        self,
        path: Path | str,
        user_id: str,
        target_account_id: str | None = None,
        date_order: QifDateOrder = QifDateOrder.MDY,
    ) -> list[AccountReconciliation]:
        """Import a statement file.

        Args:
            path: File to import
            user_id: Owner of the ledger
            target_account_id: Put every transaction in this account
            date_order: Day/month order for QIF dates

        Returns:
            list: Inserted and skipped counts per account in the file

        Raises:
            FileNotFoundError: If the file does not exist
            ParseError: If the file is malformed; nothing is imported
            ReconciliationError: If an account cannot be resolved
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Statement file not found: {file_path}")

        content = file_path.read_bytes()
        return self.import_content(
            content, user_id, file_path.name, target_account_id, date_order
        )

    def import_content(
        self,
        content: bytes | str,
        user_id: str,
        filename: str | None = None,
        target_account_id: str | None = None,
        date_order: QifDateOrder = QifDateOrder.MDY,
    ) -> list[AccountReconciliation]:
        """Import statement content that is already in memory."""
        statement_format = detect_format(content, filename)
        statements = parse_statement(content, statement_format, date_order)
        context = ReconciliationContext(user_id=user_id, target_account_id=target_account_id)

        results = []
        for statement in statements:
            # QIF files name their account in an !Account block, OFX files carry its number
            is_qif = statement_format == StatementFormat.QIF
            default_id = QIF_DEFAULT_ACCOUNT if is_qif else OFX_DEFAULT_ACCOUNT
            results.append(
                self.engine.reconcile_account(
                    context,
                    statement.remote_account_id or default_id,
                    statement.transactions,
                    display_name=statement.remote_account_id if is_qif else None,
                    account_type=statement.account_type,
                )
            )

        logger.info(
            f"Imported {filename or 'statement'}: "
            f"{sum(r.inserted for r in results)} inserted, "
            f"{sum(r.skipped for r in results)} skipped"
        )
        return results
