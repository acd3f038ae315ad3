"""
Matricula Rewards coin ledger

This module provides:
- Student credit accounts and university rewards accounts
- Journaled debits and credits (earned, spent, received, paid_out)
- Atomic units of work with per-account locking
- Reconciliation of stored balances against the journal
"""

from .errors import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    InvariantViolationError,
    LedgerServiceError,
    NotFoundError,
)
from .models import (
    AccountBalance,
    AccountKind,
    AccountRef,
    CoinTransaction,
    CoinTransactionType,
    UniversityRewardsAccount,
    UserCreditAccount,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "AccountBalance",
    "AccountKind",
    "AccountRef",
    "CoinTransaction",
    "CoinTransactionType",
    "UniversityRewardsAccount",
    "UserCreditAccount",
    "LedgerService",
    "InMemoryStorage",
    "LedgerServiceError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidStateTransitionError",
    "InvariantViolationError",
    "NotFoundError",
]
