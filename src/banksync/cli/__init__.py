"""BankSync CLI package.

This package provides the command-line interface for managing connections,
running syncs and the scheduler, and importing statement files.
"""

from .main import app, main

__all__ = ["app", "main"]
