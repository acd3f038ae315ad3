"""
Unit Tests for the Ledger Service

Tests cover:
1. Account creation (idempotent get-or-create)
2. Credit and debit flows for both account kinds
3. No negative balances
4. Balance and history reads
5. Reconciliation against the journal
6. All-or-nothing units of work
"""

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from uuid import UUID

import pytest

from ledger.errors import InsufficientBalanceError, InvalidAmountError, LedgerServiceError
from ledger.models import AccountRef, CoinTransactionType
from ledger.service import LedgerService, validate_coin_amount


# Test constants
STUDENT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_STUDENT_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
UNIVERSITY_ID = UUID("aaaaaaaa-0000-4000-8000-000000000001")

STUDENT = AccountRef.user(STUDENT_ID)
UNIVERSITY = AccountRef.university(UNIVERSITY_ID)


class TestAccountCreation:
    """Tests for lazily created accounts."""

    def test_get_or_create_user_account_is_idempotent(self):
        """Second call returns the same account, not a new one."""
        service = LedgerService()

        first = service.get_or_create_user_account(STUDENT_ID)
        second = service.get_or_create_user_account(STUDENT_ID)

        assert first.id == second.id
        assert first.balance == 0
        assert len(service.storage.user_accounts) == 1

    def test_get_or_create_university_account_is_idempotent(self):
        service = LedgerService()

        first = service.get_or_create_university_account(UNIVERSITY_ID)
        second = service.get_or_create_university_account(UNIVERSITY_ID)

        assert first.id == second.id
        assert first.balance_coins == 0
        assert first.total_discounts_sent == 0

    def test_concurrent_get_or_create_makes_one_account(self):
        service = LedgerService()

        with ThreadPoolExecutor(max_workers=8) as pool:
            accounts = list(pool.map(lambda _: service.get_or_create_user_account(STUDENT_ID), range(16)))

        assert len({account.id for account in accounts}) == 1


class TestReadIsolation:
    """Reads never hand out rows from a unit of work that has not committed."""

    def _hold_uncommitted(self, service, work):
        """Run ``work`` inside a unit on another thread, then roll it back on release."""
        inside = threading.Event()
        release = threading.Event()
        seen = {}

        def holder():
            with pytest.raises(RuntimeError):
                with service.storage.transaction(STUDENT.lock_key):
                    seen["value"] = work()
                    inside.set()
                    release.wait(timeout=5)
                    raise RuntimeError("unit aborted")

        thread = threading.Thread(target=holder)
        thread.start()
        assert inside.wait(timeout=5)
        return thread, release, seen

    def test_get_or_create_waits_for_aborted_creation(self):
        service = LedgerService()
        thread, release, seen = self._hold_uncommitted(
            service, lambda: service.get_or_create_user_account(STUDENT_ID)
        )

        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(service.get_or_create_user_account, STUDENT_ID)
            assert not wait([pending], timeout=0.2).done
            release.set()
            thread.join(timeout=5)
            account = pending.result(timeout=5)

        assert account.id != seen["value"].id
        assert service.get_or_create_user_account(STUDENT_ID).id == account.id

    def test_balance_never_shows_uncommitted_credit(self):
        service = LedgerService()
        service.credit(STUDENT, 40)
        thread, release, _ = self._hold_uncommitted(service, lambda: service.credit(STUDENT, 500))

        with ThreadPoolExecutor(max_workers=2) as pool:
            balance = pool.submit(service.get_balance, STUDENT)
            history = pool.submit(service.list_transactions, STUDENT)
            assert not wait([balance, history], timeout=0.2).done
            release.set()
            thread.join(timeout=5)

            assert balance.result(timeout=5).balance == 40
            assert len(history.result(timeout=5)) == 1

        assert service.reconcile(STUDENT).is_consistent


class TestCredit:
    """Tests for crediting coins."""

    def test_credit_user_account(self):
        service = LedgerService()

        entry = service.credit(STUDENT, 120, CoinTransactionType.EARNED, description="Referral reward")

        assert entry.type == CoinTransactionType.EARNED
        assert entry.amount == 120
        assert entry.balance_after == 120
        assert entry.description == "Referral reward"

        account = service.get_or_create_user_account(STUDENT_ID)
        assert account.balance == 120
        assert account.total_earned == 120
        assert account.total_spent == 0

    def test_credit_defaults_kind_for_account(self):
        service = LedgerService()

        entry = service.credit(UNIVERSITY, 50)

        assert entry.type == CoinTransactionType.RECEIVED
        assert service.get_or_create_university_account(UNIVERSITY_ID).total_received_coins == 50

    def test_credit_with_wrong_kind_fails(self):
        """Universities receive coins; they never earn them."""
        service = LedgerService()

        with pytest.raises(LedgerServiceError):
            service.credit(UNIVERSITY, 50, CoinTransactionType.EARNED)

        assert service.get_balance(UNIVERSITY).balance == 0

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
    def test_credit_rejects_non_positive_or_non_integer_amounts(self, amount):
        service = LedgerService()

        with pytest.raises(InvalidAmountError):
            service.credit(STUDENT, amount)

        assert service.storage.coin_transactions == {}

    def test_validate_coin_amount_minimum(self):
        assert validate_coin_amount(10, minimum=10) == 10
        with pytest.raises(InvalidAmountError, match="at least 10 coins"):
            validate_coin_amount(9, minimum=10)


class TestDebit:
    """Tests for debiting coins."""

    def test_debit_user_account(self):
        service = LedgerService()
        service.credit(STUDENT, 300)

        entry = service.debit(STUDENT, 100, reference_type="tuition_redemption")

        assert entry.type == CoinTransactionType.SPENT
        assert entry.balance_after == 200
        assert entry.reference_type == "tuition_redemption"

        account = service.get_or_create_user_account(STUDENT_ID)
        assert account.balance == 200
        assert account.total_spent == 100

    def test_debit_university_account_is_paid_out(self):
        service = LedgerService()
        service.credit(UNIVERSITY, 1000)

        entry = service.debit(UNIVERSITY, 400)

        assert entry.type == CoinTransactionType.PAID_OUT
        account = service.get_or_create_university_account(UNIVERSITY_ID)
        assert account.balance_coins == 600
        assert account.total_paid_out_coins == 400

    def test_insufficient_balance_leaves_account_untouched(self):
        service = LedgerService()
        service.credit(STUDENT, 420)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.debit(STUDENT, 500)

        assert str(exc_info.value) == "Insufficient balance: you have 420 coins available, but requested 500"
        assert exc_info.value.available == 420
        assert exc_info.value.requested == 500
        assert service.get_balance(STUDENT).balance == 420
        assert len(service.list_transactions(STUDENT)) == 1

    def test_debit_from_empty_account_fails(self):
        service = LedgerService()

        with pytest.raises(InsufficientBalanceError):
            service.debit(STUDENT, 1)

    def test_concurrent_debits_never_overdraw(self):
        """Ten of twenty concurrent 10-coin debits fit in a 100-coin balance."""
        service = LedgerService()
        service.credit(STUDENT, 100)

        def spend(_):
            try:
                service.debit(STUDENT, 10)
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(spend, range(20)))

        assert results.count(True) == 10
        assert service.get_balance(STUDENT).balance == 0
        assert service.reconcile(STUDENT).is_consistent


class TestBalanceAndHistory:
    """Tests for the read side."""

    def test_balance_of_unknown_account_is_zero(self):
        service = LedgerService()

        balance = service.get_balance(AccountRef.user(OTHER_STUDENT_ID))

        assert balance.balance == 0
        assert balance.available == 0
        assert balance.total_entries == 0
        assert balance.last_transaction_at is None

    def test_transactions_newest_first_with_pagination(self):
        service = LedgerService()
        for amount in (10, 20, 30, 40):
            service.credit(STUDENT, amount)

        newest = service.list_transactions(STUDENT, limit=2)
        older = service.list_transactions(STUDENT, limit=2, offset=2)

        assert [e.amount for e in newest] == [40, 30]
        assert [e.amount for e in older] == [20, 10]

    def test_ledger_history(self):
        service = LedgerService()
        service.credit(STUDENT, 100)
        service.debit(STUDENT, 30)

        history = service.get_ledger_history(STUDENT, limit=1)

        assert history.total_count == 2
        assert history.current_balance == 70
        assert len(history.entries) == 1
        assert history.entries[0].type == CoinTransactionType.SPENT

    def test_accounts_are_isolated(self):
        service = LedgerService()
        service.credit(STUDENT, 100)
        service.credit(AccountRef.user(OTHER_STUDENT_ID), 5)

        assert service.get_balance(STUDENT).balance == 100
        assert service.get_balance(AccountRef.user(OTHER_STUDENT_ID)).balance == 5


class TestReconciliation:
    """The stored balance always equals the journal's credits minus debits."""

    def test_reconcile_after_mixed_activity(self):
        service = LedgerService()
        service.credit(STUDENT, 500)
        service.debit(STUDENT, 120)
        service.credit(STUDENT, 20)
        service.debit(STUDENT, 400)

        report = service.reconcile(STUDENT)

        assert report.is_consistent
        assert report.stored_balance == 0
        assert report.total_credits == 520
        assert report.total_debits == 520
        assert report.total_entries == 4

    def test_reconcile_detects_tampering(self):
        service = LedgerService()
        service.credit(STUDENT, 100)
        service.storage.user_accounts[STUDENT_ID]["balance"] = 1000

        report = service.reconcile(STUDENT)

        assert not report.is_consistent
        assert report.journal_balance == 100

    def test_reconcile_all(self):
        service = LedgerService()
        service.credit(STUDENT, 100)
        service.credit(UNIVERSITY, 50)
        service.debit(UNIVERSITY, 25)

        reports = service.reconcile_all()

        assert len(reports) == 2
        assert all(report.is_consistent for report in reports)


class TestUnitOfWork:
    """Mutations composed in one transaction commit or roll back together."""

    def test_failed_unit_rolls_back_every_write(self):
        service = LedgerService()
        service.credit(STUDENT, 100)

        with pytest.raises(InsufficientBalanceError):
            with service.storage.transaction(STUDENT.lock_key, UNIVERSITY.lock_key):
                service.credit(UNIVERSITY, 100, CoinTransactionType.RECEIVED)
                service.debit(STUDENT, 500)

        assert service.get_balance(STUDENT).balance == 100
        assert service.get_balance(UNIVERSITY).balance == 0
        assert service.storage.accounts.get_university(UNIVERSITY_ID) is None
        assert len(service.storage.coin_transactions) == 1

    def test_successful_unit_commits(self):
        service = LedgerService()
        service.credit(STUDENT, 100)

        with service.storage.transaction(STUDENT.lock_key, UNIVERSITY.lock_key):
            service.debit(STUDENT, 60)
            service.credit(UNIVERSITY, 60)

        assert service.get_balance(STUDENT).balance == 40
        assert service.get_balance(UNIVERSITY).balance == 60
