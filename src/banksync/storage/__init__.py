"""Ledger persistence."""

from .ledger_store import INTERRUPTED_RUN_ERROR, LEDGER_SCHEMA, LedgerStore, new_id

__all__ = ["INTERRUPTED_RUN_ERROR", "LEDGER_SCHEMA", "LedgerStore", "new_id"]
