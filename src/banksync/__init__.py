"""BankSync: automated bank statement synchronization into a personal ledger.

This package provides:
- An encrypted credential vault for institution logins
- OFX and QIF statement parsing into canonical transactions
- Browser-driven institution connectors behind a common contract
- Idempotent reconciliation into a DuckDB ledger
- A sync orchestrator and polling scheduler for recurring runs
"""

__version__ = "0.1.0"
