from typing import Optional, Union
from uuid import UUID, uuid4

from loguru import logger

from .errors import InsufficientBalanceError, InvalidAmountError, LedgerServiceError
from .models import (
    CREDIT_KIND_FOR,
    DEBIT_KIND_FOR,
    AccountBalance,
    AccountKind,
    AccountRef,
    CoinTransaction,
    CoinTransactionType,
    LedgerHistoryResponse,
    ReconciliationReport,
    UniversityRewardsAccount,
    UserCreditAccount,
)
from .storage import InMemoryStorage, utc_now

Account = Union[UserCreditAccount, UniversityRewardsAccount]


def validate_coin_amount(amount, minimum: int = 1) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be a whole number of coins, got {amount!r}")
    if amount < minimum:
        if minimum == 1:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        raise InvalidAmountError(f"Amount must be at least {minimum} coins, got {amount}")
    return amount


def balance_of(account: Account) -> int:
    if isinstance(account, UserCreditAccount):
        return account.balance
    return account.balance_coins


class LedgerService:
    """Owns coin balances and the transaction journal that justifies them.

    Every mutation happens under the account's lock inside a storage unit of
    work, so callers composing several mutations (a redemption, a payout
    settlement) can wrap them in one outer ``storage.transaction()`` and get
    all-or-nothing behavior.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    # Reads take the account lock too: a row written by a unit of work that
    # has not committed yet must never be handed out.

    def get_or_create_user_account(self, user_id: UUID) -> UserCreditAccount:
        with self.storage.transaction(AccountRef.user(user_id).lock_key):
            existing = self.storage.accounts.get_user(user_id)
            if existing:
                return existing
            now = utc_now()
            account = UserCreditAccount(id=uuid4(), user_id=user_id, created_at=now, updated_at=now)
            self.storage.accounts.insert_user(account)
            logger.info("Created user credit account", user_id=str(user_id))
            return account

    def get_or_create_university_account(self, university_id: UUID) -> UniversityRewardsAccount:
        with self.storage.transaction(AccountRef.university(university_id).lock_key):
            existing = self.storage.accounts.get_university(university_id)
            if existing:
                return existing
            now = utc_now()
            account = UniversityRewardsAccount(
                id=uuid4(), university_id=university_id, created_at=now, updated_at=now
            )
            self.storage.accounts.insert_university(account)
            logger.info("Created university rewards account", university_id=str(university_id))
            return account

    def get_or_create_account(self, ref: AccountRef) -> Account:
        if ref.kind == AccountKind.USER:
            return self.get_or_create_user_account(ref.owner_id)
        return self.get_or_create_university_account(ref.owner_id)

    def debit(
        self,
        ref: AccountRef,
        amount: int,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[UUID] = None,
    ) -> CoinTransaction:
        amount = validate_coin_amount(amount)
        kind = DEBIT_KIND_FOR[ref.kind]

        with self.storage.transaction(ref.lock_key):
            account = self.get_or_create_account(ref)
            balance = balance_of(account)
            if amount > balance:
                logger.warning(
                    "Debit rejected for insufficient balance",
                    account=ref.lock_key, balance=balance, requested=amount,
                )
                raise InsufficientBalanceError(available=balance, requested=amount)

            new_balance = balance - amount
            if ref.kind == AccountKind.USER:
                self.storage.accounts.update_user(
                    ref.owner_id, balance=new_balance,
                    total_spent=account.total_spent + amount, updated_at=utc_now(),
                )
            else:
                self.storage.accounts.update_university(
                    ref.owner_id, balance_coins=new_balance,
                    total_paid_out_coins=account.total_paid_out_coins + amount, updated_at=utc_now(),
                )

            return self._append(ref, kind, amount, new_balance, description, reference_type, reference_id)

    def credit(
        self,
        ref: AccountRef,
        amount: int,
        kind: Optional[CoinTransactionType] = None,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[UUID] = None,
    ) -> CoinTransaction:
        amount = validate_coin_amount(amount)
        expected = CREDIT_KIND_FOR[ref.kind]
        kind = kind or expected
        if kind != expected:
            raise LedgerServiceError(f"'{kind.value}' credits do not apply to {ref.kind.value} accounts")

        with self.storage.transaction(ref.lock_key):
            account = self.get_or_create_account(ref)
            new_balance = balance_of(account) + amount
            if ref.kind == AccountKind.USER:
                self.storage.accounts.update_user(
                    ref.owner_id, balance=new_balance,
                    total_earned=account.total_earned + amount, updated_at=utc_now(),
                )
            else:
                self.storage.accounts.update_university(
                    ref.owner_id, balance_coins=new_balance,
                    total_received_coins=account.total_received_coins + amount, updated_at=utc_now(),
                )

            return self._append(ref, kind, amount, new_balance, description, reference_type, reference_id)

    def get_balance(self, ref: AccountRef) -> AccountBalance:
        with self.storage.transaction(ref.lock_key):
            if ref.kind == AccountKind.USER:
                account = self.storage.accounts.get_user(ref.owner_id)
                reserved = 0
            else:
                account = self.storage.accounts.get_university(ref.owner_id)
                reserved = self.storage.payouts.reserved_coins(ref.owner_id)
            entries = self.storage.transactions.list_for(ref.kind, ref.owner_id)

        balance = balance_of(account) if account else 0
        return AccountBalance(
            kind=ref.kind,
            owner_id=ref.owner_id,
            balance=balance,
            reserved=reserved,
            available=max(balance - reserved, 0),
            total_entries=len(entries),
            last_transaction_at=entries[-1].created_at if entries else None,
        )

    def list_transactions(self, ref: AccountRef, limit: int = 50, offset: int = 0) -> list[CoinTransaction]:
        """Newest first."""
        with self.storage.transaction(ref.lock_key):
            entries = self.storage.transactions.list_for(ref.kind, ref.owner_id)
        entries.reverse()
        return entries[offset:offset + limit]

    def get_ledger_history(self, ref: AccountRef, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.transaction(ref.lock_key):
            entries = self.storage.transactions.list_for(ref.kind, ref.owner_id)
            current_balance = self.get_balance(ref).balance
        entries.reverse()
        return LedgerHistoryResponse(
            kind=ref.kind,
            owner_id=ref.owner_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=current_balance,
        )

    def reconcile(self, ref: AccountRef) -> ReconciliationReport:
        """Rebuild the balance from the journal and compare it with the stored one."""
        with self.storage.transaction(ref.lock_key):
            if ref.kind == AccountKind.USER:
                account = self.storage.accounts.get_user(ref.owner_id)
                counters = account.total_earned - account.total_spent if account else 0
            else:
                account = self.storage.accounts.get_university(ref.owner_id)
                counters = account.total_received_coins - account.total_paid_out_coins if account else 0
            entries = self.storage.transactions.list_for(ref.kind, ref.owner_id)

        credits = sum(e.amount for e in entries if e.type.is_credit)
        debits = sum(e.amount for e in entries if not e.type.is_credit)
        report = ReconciliationReport(
            kind=ref.kind,
            owner_id=ref.owner_id,
            stored_balance=balance_of(account) if account else 0,
            journal_balance=credits - debits,
            total_credits=credits,
            total_debits=debits,
            counters_balance=counters,
            total_entries=len(entries),
        )
        if not report.is_consistent:
            logger.critical(
                "Ledger reconciliation mismatch",
                account=ref.lock_key,
                stored=report.stored_balance,
                journal=report.journal_balance,
                counters=report.counters_balance,
            )
        return report

    def reconcile_all(self) -> list[ReconciliationReport]:
        refs = [AccountRef.user(a.user_id) for a in self.storage.accounts.list_users()]
        refs += [AccountRef.university(a.university_id) for a in self.storage.accounts.list_universities()]
        return [self.reconcile(ref) for ref in refs]

    def _append(
        self,
        ref: AccountRef,
        kind: CoinTransactionType,
        amount: int,
        balance_after: int,
        description: Optional[str],
        reference_type: Optional[str],
        reference_id: Optional[UUID],
    ) -> CoinTransaction:
        transaction = CoinTransaction(
            id=uuid4(),
            account_kind=ref.kind,
            account_id=ref.owner_id,
            type=kind,
            amount=amount,
            balance_after=balance_after,
            description=description or f"{kind.value.replace('_', ' ').capitalize()}: {amount} coins",
            reference_type=reference_type,
            reference_id=reference_id,
            created_at=utc_now(),
        )
        self.storage.transactions.append(transaction)
        logger.debug(
            "Journal entry appended",
            account=ref.lock_key, type=kind.value, amount=amount, balance_after=balance_after,
        )
        return transaction
