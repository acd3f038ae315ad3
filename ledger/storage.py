"""
In-memory ledger store.

Tables are plain dicts keyed by id; repositories hand out pydantic snapshots
so callers never hold a reference into storage. Every write made inside
``InMemoryStorage.transaction()`` is recorded in an undo log and reverted if
the block raises, which gives the services one all-or-nothing unit of work per
operation. Locks are per account (or per payout request) and are always taken
in sorted key order.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional, TypeVar
from uuid import UUID, uuid4

from loguru import logger

from .errors import InvariantViolationError
from .models import (
    AccountKind,
    AuditEntry,
    CoinTransaction,
    University,
    UniversityRewardsAccount,
    UserCreditAccount,
)

T = TypeVar("T")

_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UnitOfWork:
    def __init__(self):
        self._undo: list[Callable[[], None]] = []
        self.lock_keys: set[str] = set()

    def record(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    def commit(self) -> None:
        self._undo.clear()

    def rollback(self) -> None:
        while self._undo:
            undo = self._undo.pop()
            try:
                undo()
            except Exception as exc:
                logger.critical(
                    "Rollback failed, ledger may hold partial state",
                    lock_keys=sorted(self.lock_keys),
                    error=repr(exc),
                )
                raise InvariantViolationError("Ledger rollback failed; partial state detected") from exc


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.user_accounts: dict[UUID, dict] = {}
        self.university_accounts: dict[UUID, dict] = {}
        self.coin_transactions: dict[UUID, dict] = {}
        self.universities: dict[UUID, dict] = {}
        self.tuition_discounts: dict[UUID, dict] = {}
        self.tuition_redemptions: dict[UUID, dict] = {}
        self.payout_requests: dict[UUID, dict] = {}
        self.payout_invoices: dict[UUID, dict] = {}
        self.suspicious_users: dict[UUID, dict] = {}
        self.blocked_affiliate_codes: dict[str, dict] = {}
        self.blocked_universities: dict[UUID, dict] = {}
        self.audit_log: dict[UUID, dict] = {}

        # lock table entries live only while some thread holds or waits on them
        self._locks: dict[str, threading.RLock] = {}
        self._lock_users: dict[str, int] = {}
        self._locks_guard = threading.Lock()
        self._local = threading.local()

        self.accounts = AccountRepository(self)
        self.transactions = TransactionRepository(self)
        self.catalog = CatalogRepository(self)
        self.redemptions = RedemptionRepository(self)
        self.payouts = PayoutRepository(self)
        self.moderation = ModerationRepository(self)
        self.audit = AuditRepository(self)

        if seed:
            self._seed_data()

    def _seed_data(self):
        approved_id = UUID("aaaaaaaa-0000-4000-8000-000000000001")
        pending_id = UUID("aaaaaaaa-0000-4000-8000-000000000002")
        staff_id = UUID("bbbbbbbb-0000-4000-8000-000000000001")

        self.catalog.add_university(University(
            id=approved_id, name="Florida Tech Institute", location="Melbourne, FL",
            is_approved=True, participates_in_matricula_rewards=True,
            staff_user_ids=[staff_id],
        ))
        self.catalog.add_university(University(
            id=pending_id, name="Lakeside Community College", location="Austin, TX",
            is_approved=False, participates_in_matricula_rewards=True,
        ))

        for discount_id, name, cost, active in (
            ("cccccccc-0000-4000-8000-000000000050", "$50 Tuition Discount", 50, True),
            ("cccccccc-0000-4000-8000-000000000100", "$100 Tuition Discount", 100, True),
            ("cccccccc-0000-4000-8000-000000000250", "$250 Tuition Discount", 250, True),
            ("cccccccc-0000-4000-8000-000000000500", "$500 Tuition Discount (retired)", 500, False),
        ):
            self.catalog.add_discount({
                "id": UUID(discount_id), "name": name,
                "description": f"{cost} coins off the next tuition invoice",
                "cost_coins": cost, "discount_amount": Decimal(cost), "is_active": active,
            })

    # -- locking & units of work -------------------------------------------

    def _checkout_lock(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
            return lock

    def _return_lock(self, key: str) -> None:
        with self._locks_guard:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def active_lock_keys(self) -> list[str]:
        with self._locks_guard:
            return sorted(self._locks)

    @property
    def current_unit(self) -> Optional[UnitOfWork]:
        return getattr(self._local, "unit", None)

    @contextmanager
    def transaction(self, *lock_keys: str) -> Iterator[UnitOfWork]:
        """Run a block as one atomic unit, holding the given locks.

        Nested calls on the same thread join the outer unit; only the outermost
        block commits or rolls back.
        """
        outer = self.current_unit
        unit = outer or UnitOfWork()
        keys = sorted(set(lock_keys) - unit.lock_keys)
        locks = [self._checkout_lock(key) for key in keys]
        for lock in locks:
            lock.acquire()
        unit.lock_keys.update(keys)
        if outer is None:
            self._local.unit = unit
        try:
            yield unit
        except BaseException:
            if outer is None:
                self._local.unit = None
                unit.rollback()
            raise
        else:
            if outer is None:
                self._local.unit = None
                unit.commit()
        finally:
            unit.lock_keys.difference_update(keys)
            for key, lock in reversed(list(zip(keys, locks))):
                lock.release()
                self._return_lock(key)

    def within_transaction(self, fn: Callable[[], T], *lock_keys: str) -> T:
        with self.transaction(*lock_keys):
            return fn()

    # -- undo-logged primitives --------------------------------------------

    def _put(self, table: dict, key: Any, value: dict) -> None:
        previous = table.get(key, _MISSING)
        table[key] = value
        unit = self.current_unit
        if unit is None:
            return
        if previous is _MISSING:
            unit.record(lambda: table.pop(key))
        else:
            unit.record(lambda: table.__setitem__(key, previous))

    def _delete(self, table: dict, key: Any) -> None:
        previous = table.pop(key, _MISSING)
        unit = self.current_unit
        if unit is not None and previous is not _MISSING:
            unit.record(lambda: table.__setitem__(key, previous))


class _Repository:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def _update(self, table: dict, key: Any, fields: dict) -> dict:
        row = dict(table[key])
        row.update(fields)
        self.storage._put(table, key, row)
        return row


class AccountRepository(_Repository):
    def get_user(self, user_id: UUID) -> Optional[UserCreditAccount]:
        row = self.storage.user_accounts.get(user_id)
        return UserCreditAccount(**row) if row else None

    def insert_user(self, account: UserCreditAccount) -> UserCreditAccount:
        self.storage._put(self.storage.user_accounts, account.user_id, account.model_dump())
        return account

    def update_user(self, user_id: UUID, **fields) -> UserCreditAccount:
        return UserCreditAccount(**self._update(self.storage.user_accounts, user_id, fields))

    def get_university(self, university_id: UUID) -> Optional[UniversityRewardsAccount]:
        row = self.storage.university_accounts.get(university_id)
        return UniversityRewardsAccount(**row) if row else None

    def insert_university(self, account: UniversityRewardsAccount) -> UniversityRewardsAccount:
        self.storage._put(self.storage.university_accounts, account.university_id, account.model_dump())
        return account

    def update_university(self, university_id: UUID, **fields) -> UniversityRewardsAccount:
        return UniversityRewardsAccount(**self._update(self.storage.university_accounts, university_id, fields))

    def list_users(self) -> list[UserCreditAccount]:
        return [UserCreditAccount(**row) for row in list(self.storage.user_accounts.values())]

    def list_universities(self) -> list[UniversityRewardsAccount]:
        return [UniversityRewardsAccount(**row) for row in list(self.storage.university_accounts.values())]


class TransactionRepository(_Repository):
    def append(self, transaction: CoinTransaction) -> CoinTransaction:
        self.storage._put(self.storage.coin_transactions, transaction.id, transaction.model_dump())
        return transaction

    def list_for(self, kind: AccountKind, account_id: UUID) -> list[CoinTransaction]:
        """Oldest first, in journal order."""
        return [
            CoinTransaction(**row) for row in list(self.storage.coin_transactions.values())
            if row["account_kind"] == kind and row["account_id"] == account_id
        ]


class CatalogRepository(_Repository):
    def add_university(self, university: University) -> University:
        self.storage._put(self.storage.universities, university.id, university.model_dump())
        return university

    def get_university(self, university_id: UUID) -> Optional[University]:
        row = self.storage.universities.get(university_id)
        return University(**row) if row else None

    def list_universities(self) -> list[University]:
        return [University(**row) for row in list(self.storage.universities.values())]

    def add_discount(self, discount: dict) -> dict:
        self.storage._put(self.storage.tuition_discounts, discount["id"], dict(discount))
        return discount

    def get_discount(self, discount_id: UUID) -> Optional[dict]:
        row = self.storage.tuition_discounts.get(discount_id)
        return dict(row) if row else None

    def list_discounts(self, active_only: bool = True) -> list[dict]:
        rows = [dict(row) for row in list(self.storage.tuition_discounts.values())]
        if active_only:
            rows = [row for row in rows if row["is_active"]]
        return sorted(rows, key=lambda row: row["cost_coins"])


class RedemptionRepository(_Repository):
    def insert(self, redemption: dict) -> dict:
        self.storage._put(self.storage.tuition_redemptions, redemption["id"], dict(redemption))
        return redemption

    def get(self, redemption_id: UUID) -> Optional[dict]:
        row = self.storage.tuition_redemptions.get(redemption_id)
        return dict(row) if row else None

    def update(self, redemption_id: UUID, **fields) -> dict:
        return self._update(self.storage.tuition_redemptions, redemption_id, fields)

    def list(self, user_id: Optional[UUID] = None, university_id: Optional[UUID] = None) -> list[dict]:
        rows = [dict(row) for row in list(self.storage.tuition_redemptions.values())]
        if user_id is not None:
            rows = [row for row in rows if row["user_id"] == user_id]
        if university_id is not None:
            rows = [row for row in rows if row["university_id"] == university_id]
        return rows


class PayoutRepository(_Repository):
    RESERVING_STATUSES = ("pending", "approved")

    def insert_request(self, request: dict) -> dict:
        self.storage._put(self.storage.payout_requests, request["id"], dict(request))
        return request

    def get_request(self, request_id: UUID) -> Optional[dict]:
        row = self.storage.payout_requests.get(request_id)
        return dict(row) if row else None

    def update_request(self, request_id: UUID, **fields) -> dict:
        return self._update(self.storage.payout_requests, request_id, fields)

    def list_requests(self, university_id: Optional[UUID] = None, status: Optional[str] = None) -> list[dict]:
        rows = [dict(row) for row in list(self.storage.payout_requests.values())]
        if university_id is not None:
            rows = [row for row in rows if row["university_id"] == university_id]
        if status is not None:
            rows = [row for row in rows if row["status"] == status]
        return rows

    def reserved_coins(self, university_id: UUID) -> int:
        return sum(
            row["amount_coins"] for row in list(self.storage.payout_requests.values())
            if row["university_id"] == university_id and row["status"] in self.RESERVING_STATUSES
        )

    def insert_invoice(self, invoice: dict) -> dict:
        self.storage._put(self.storage.payout_invoices, invoice["payout_request_id"], dict(invoice))
        return invoice

    def get_invoice(self, request_id: UUID) -> Optional[dict]:
        row = self.storage.payout_invoices.get(request_id)
        return dict(row) if row else None

    def update_invoice(self, request_id: UUID, **fields) -> dict:
        return self._update(self.storage.payout_invoices, request_id, fields)

    def invoice_number_exists(self, invoice_number: str) -> bool:
        return any(row["invoice_number"] == invoice_number for row in list(self.storage.payout_invoices.values()))


class ModerationRepository(_Repository):
    def get_user(self, user_id: UUID) -> Optional[dict]:
        row = self.storage.suspicious_users.get(user_id)
        return dict(row) if row else None

    def put_user(self, record: dict) -> dict:
        self.storage._put(self.storage.suspicious_users, record["user_id"], dict(record))
        return record

    def list_users(self, status: Optional[str] = None) -> list[dict]:
        rows = [dict(row) for row in list(self.storage.suspicious_users.values())]
        if status is not None:
            rows = [row for row in rows if row["status"] == status]
        return rows

    def get_code(self, code: str) -> Optional[dict]:
        row = self.storage.blocked_affiliate_codes.get(code)
        return dict(row) if row else None

    def put_code(self, record: dict) -> dict:
        self.storage._put(self.storage.blocked_affiliate_codes, record["code"], dict(record))
        return record

    def delete_code(self, code: str) -> None:
        self.storage._delete(self.storage.blocked_affiliate_codes, code)

    def codes_for_user(self, user_id: UUID) -> list[dict]:
        return [dict(row) for row in list(self.storage.blocked_affiliate_codes.values()) if row["user_id"] == user_id]

    def list_codes(self) -> list[dict]:
        return [dict(row) for row in list(self.storage.blocked_affiliate_codes.values())]

    def get_university_block(self, university_id: UUID) -> Optional[dict]:
        row = self.storage.blocked_universities.get(university_id)
        return dict(row) if row else None

    def put_university_block(self, record: dict) -> dict:
        self.storage._put(self.storage.blocked_universities, record["university_id"], dict(record))
        return record

    def delete_university_block(self, university_id: UUID) -> None:
        self.storage._delete(self.storage.blocked_universities, university_id)


class AuditRepository(_Repository):
    def append(self, entry: AuditEntry) -> AuditEntry:
        self.storage._put(self.storage.audit_log, entry.id, entry.model_dump())
        return entry

    def record(self, admin_action: str, target_type: str, target_id: UUID, actor: UUID, **details) -> AuditEntry:
        return self.append(AuditEntry(
            id=uuid4(),
            admin_action=admin_action,
            target_type=target_type,
            target_id=target_id,
            actor=actor,
            timestamp=utc_now(),
            details=details,
        ))

    def list(self, target_type: Optional[str] = None, target_id: Optional[UUID] = None) -> list[AuditEntry]:
        entries = [AuditEntry(**row) for row in list(self.storage.audit_log.values())]
        if target_type is not None:
            entries = [e for e in entries if e.target_type == target_type]
        if target_id is not None:
            entries = [e for e in entries if e.target_id == target_id]
        return entries
