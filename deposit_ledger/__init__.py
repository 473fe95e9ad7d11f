"""
Deposit Ledger for an investment-deposit tracking backend

This module provides:
- User accounts with a stored balance and deposit/withdrawal histories
- Request lifecycle: Pending → Approved / Rejected, decided by an administrator
- Idempotent approval (only Pending transactions are ever applied)
- Pluggable storage (in-memory documents or SQL) with versioned writes
- Pluggable administrator policy
"""

from .models import (
    TransactionType,
    TransactionStatus,
    Transaction,
    UserAccount,
    InvestmentPackage,
)
from .service import LedgerService
from .storage import InMemoryStorage, SqlUserStore

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "Transaction",
    "UserAccount",
    "InvestmentPackage",
    "LedgerService",
    "InMemoryStorage",
    "SqlUserStore",
]
