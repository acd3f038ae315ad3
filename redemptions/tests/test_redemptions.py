"""
Tests for tuition discount redemptions

Tests cover:
1. Catalog and custom redemptions moving coins student -> university
2. Insufficient balance and other rejections leaving the ledger untouched
3. University eligibility and moderation checks
4. Expiry transitions
5. Discount and university listings
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import UUID

import pytest

from ledger.errors import (
    DiscountInactiveError,
    DiscountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    RedemptionNotFoundError,
    UniversityNotEligibleError,
    UserBlockedError,
)
from ledger.models import AccountRef, CoinTransactionType
from payouts.models import PayoutStatus
from redemptions.models import RedemptionStatus


# Test constants
STUDENT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
ADMIN_ID = UUID("99999999-0000-4000-8000-000000000001")
STAFF_ID = UUID("bbbbbbbb-0000-4000-8000-000000000001")
UNIVERSITY_ID = UUID("aaaaaaaa-0000-4000-8000-000000000001")
UNAPPROVED_UNIVERSITY_ID = UUID("aaaaaaaa-0000-4000-8000-000000000002")
UNKNOWN_UNIVERSITY_ID = UUID("aaaaaaaa-0000-4000-8000-0000000000ff")
DISCOUNT_50_ID = UUID("cccccccc-0000-4000-8000-000000000050")
RETIRED_DISCOUNT_ID = UUID("cccccccc-0000-4000-8000-000000000500")

STUDENT = AccountRef.user(STUDENT_ID)
UNIVERSITY = AccountRef.university(UNIVERSITY_ID)


def assert_ledger_untouched(ledger, student_balance):
    assert ledger.get_balance(STUDENT).balance == student_balance
    assert ledger.get_balance(UNIVERSITY).balance == 0
    assert ledger.list_transactions(UNIVERSITY) == []


class TestCatalogRedemption:
    """Tests for redeeming a catalog discount."""

    def test_redeem_with_zero_balance_fails(self, redemptions, ledger):
        """A student with no coins cannot redeem a 50-coin discount."""
        with pytest.raises(InsufficientBalanceError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert_ledger_untouched(ledger, 0)
        assert redemptions.list_redemptions(user_id=STUDENT_ID) == []

    def test_redeem_moves_coins_to_university(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 100)

        response = redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert response.redemption.status == RedemptionStatus.CONFIRMED
        assert response.redemption.cost_coins_paid == 50
        assert response.redemption.discount_amount == Decimal(50)
        assert response.redemption.discount_id == DISCOUNT_50_ID
        assert response.redemption.metadata["university_name"] == "Florida Tech Institute"
        assert response.redemption.metadata["discount_name"] == "$50 Tuition Discount"

        assert ledger.get_balance(STUDENT).balance == 50
        assert ledger.get_balance(UNIVERSITY).balance == 50

        assert response.student_entry.type == CoinTransactionType.SPENT
        assert response.university_entry.type == CoinTransactionType.RECEIVED
        assert response.student_entry.reference_id == response.redemption.id
        assert response.university_entry.reference_id == response.redemption.id

        student_entries = ledger.list_transactions(STUDENT)
        university_entries = ledger.list_transactions(UNIVERSITY)
        assert [e.type for e in student_entries] == [CoinTransactionType.SPENT, CoinTransactionType.EARNED]
        assert [e.type for e in university_entries] == [CoinTransactionType.RECEIVED]

    def test_redeem_updates_university_counters(self, redemptions, storage, fund_student):
        fund_student(STUDENT_ID, 200)

        redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)
        redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        account = storage.accounts.get_university(UNIVERSITY_ID)
        assert account.total_discounts_sent == 2
        assert account.total_discount_amount == Decimal(100)
        assert account.total_received_coins == 100

    def test_unknown_discount(self, redemptions, fund_student):
        fund_student(STUDENT_ID, 100)

        with pytest.raises(DiscountNotFoundError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, UUID(int=0))

    def test_inactive_discount(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 1000)

        with pytest.raises(DiscountInactiveError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, RETIRED_DISCOUNT_ID)

        assert_ledger_untouched(ledger, 1000)


class TestCustomRedemption:
    """Tests for redeeming an arbitrary number of coins."""

    def test_custom_redemption(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 100)

        response = redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, 25)

        assert response.redemption.discount_id is None
        assert response.redemption.is_custom
        assert response.redemption.discount_amount == Decimal(25)
        assert response.redemption.cost_coins_paid == 25
        assert ledger.get_balance(STUDENT).balance == 75
        assert ledger.get_balance(UNIVERSITY).balance == 25

    @pytest.mark.parametrize("coins", [9, 0, -10, 12.5])
    def test_custom_redemption_minimum(self, redemptions, ledger, fund_student, coins):
        fund_student(STUDENT_ID, 100)

        with pytest.raises(InvalidAmountError):
            redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, coins)

        assert_ledger_untouched(ledger, 100)

    def test_custom_redemption_for_whole_balance(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 10)

        redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, 10)

        assert ledger.get_balance(STUDENT).balance == 0

    def test_custom_redemption_over_balance(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 420)

        with pytest.raises(InsufficientBalanceError, match="you have 420 coins available, but requested 500"):
            redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, 500)

        assert_ledger_untouched(ledger, 420)


class TestEligibility:
    """Only approved, participating, unblocked universities accept redemptions."""

    def test_unapproved_university(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 100)

        with pytest.raises(UniversityNotEligibleError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNAPPROVED_UNIVERSITY_ID, DISCOUNT_50_ID)

        assert ledger.get_balance(STUDENT).balance == 100

    def test_unknown_university(self, redemptions, fund_student):
        fund_student(STUDENT_ID, 100)

        with pytest.raises(UniversityNotEligibleError):
            redemptions.redeem_custom_discount(STUDENT_ID, UNKNOWN_UNIVERSITY_ID, 20)

    def test_blocked_university(self, redemptions, moderation, ledger, fund_student):
        fund_student(STUDENT_ID, 100)
        moderation.block_university(UNIVERSITY_ID, ADMIN_ID, "Chargeback investigation")

        with pytest.raises(UniversityNotEligibleError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert_ledger_untouched(ledger, 100)

    def test_blocked_student(self, redemptions, moderation, ledger, fund_student):
        fund_student(STUDENT_ID, 100)
        moderation.block(STUDENT_ID, ADMIN_ID, "Self-referral ring")

        with pytest.raises(UserBlockedError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert_ledger_untouched(ledger, 100)

    def test_unblocked_student_can_redeem_again(self, redemptions, moderation, fund_student):
        fund_student(STUDENT_ID, 100)
        moderation.block(STUDENT_ID, ADMIN_ID, "Self-referral ring")
        moderation.unblock(STUDENT_ID, ADMIN_ID)

        response = redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert response.redemption.status == RedemptionStatus.CONFIRMED


class TestAtomicity:
    def test_failure_after_debit_rolls_back_everything(self, redemptions, ledger, storage, fund_student, monkeypatch):
        """A crash while inserting the redemption undoes both ledger legs."""
        fund_student(STUDENT_ID, 100)

        def broken_insert(row):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage.redemptions, "insert", broken_insert)

        with pytest.raises(RuntimeError):
            redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)

        assert_ledger_untouched(ledger, 100)
        assert storage.accounts.get_university(UNIVERSITY_ID) is None
        assert len(ledger.list_transactions(STUDENT)) == 1
        assert ledger.reconcile(STUDENT).is_consistent


class TestConcurrentRedemption:
    """Redemptions racing each other, and racing payouts on the same university."""

    def test_only_affordable_redemptions_succeed(self, redemptions, ledger, fund_student):
        """16 threads redeem 50 coins each against 100 coins: exactly two win."""
        fund_student(STUDENT_ID, 100)
        barrier = threading.Barrier(16)

        def attempt(_):
            barrier.wait(timeout=5)
            try:
                return redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID)
            except InsufficientBalanceError:
                return None

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(16)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 2
        assert ledger.get_balance(STUDENT).balance == 0
        assert ledger.get_balance(UNIVERSITY).balance == 100
        assert len(redemptions.list_redemptions(user_id=STUDENT_ID)) == 2
        assert ledger.reconcile(STUDENT).is_consistent
        assert ledger.reconcile(UNIVERSITY).is_consistent

    def test_mark_paid_races_incoming_redemptions(self, redemptions, payouts, ledger, fund_student, fund_university):
        fund_university(UNIVERSITY_ID, 300)
        payout = payouts.request_payout(
            UNIVERSITY_ID, STAFF_ID, 300, "zelle", {"email": "bursar@fti.edu", "account_name": "FTI Bursar"}
        )
        payouts.admin_approve(payout.id, ADMIN_ID)
        students = [UUID(int=1000 + n) for n in range(8)]
        for student_id in students:
            fund_student(student_id, 50)
        barrier = threading.Barrier(len(students) + 1)

        def redeem(student_id):
            barrier.wait(timeout=5)
            return redemptions.redeem_catalog_discount(student_id, UNIVERSITY_ID, DISCOUNT_50_ID)

        def mark_paid():
            barrier.wait(timeout=5)
            return payouts.admin_mark_paid(payout.id, ADMIN_ID, "REF123")

        with ThreadPoolExecutor(max_workers=len(students) + 1) as pool:
            paid = pool.submit(mark_paid)
            redeemed = [pool.submit(redeem, student_id) for student_id in students]
            assert paid.result(timeout=10).status == PayoutStatus.PAID
            assert all(future.result(timeout=10).redemption.cost_coins_paid == 50 for future in redeemed)

        account = ledger.get_or_create_university_account(UNIVERSITY_ID)
        assert account.balance_coins == 400
        assert account.total_received_coins == 700
        assert account.total_paid_out_coins == 300
        assert account.total_discounts_sent == 8
        assert ledger.get_balance(UNIVERSITY).reserved == 0
        assert ledger.reconcile(UNIVERSITY).is_consistent
        assert all(ledger.get_balance(AccountRef.user(s)).balance == 0 for s in students)


class TestExpiry:
    def test_expire_confirmed_redemption(self, redemptions, ledger, fund_student):
        fund_student(STUDENT_ID, 100)
        redemption = redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID).redemption

        expired = redemptions.expire_redemption(redemption.id)

        assert expired.status == RedemptionStatus.EXPIRED
        assert expired.expired_at is not None
        # expiry moves no coins
        assert ledger.get_balance(STUDENT).balance == 50
        assert ledger.get_balance(UNIVERSITY).balance == 50

    def test_expire_twice_fails(self, redemptions, fund_student):
        fund_student(STUDENT_ID, 100)
        redemption = redemptions.redeem_catalog_discount(STUDENT_ID, UNIVERSITY_ID, DISCOUNT_50_ID).redemption
        redemptions.expire_redemption(redemption.id)

        with pytest.raises(InvalidStateTransitionError):
            redemptions.expire_redemption(redemption.id)

    def test_expire_unknown_redemption(self, redemptions):
        with pytest.raises(RedemptionNotFoundError):
            redemptions.expire_redemption(UUID(int=42))

    def test_expire_unknown_redemption_takes_no_lock(self, redemptions, storage, monkeypatch):
        taken = []
        checkout = storage._checkout_lock

        def recording_checkout(key):
            taken.append(key)
            return checkout(key)

        monkeypatch.setattr(storage, "_checkout_lock", recording_checkout)

        with pytest.raises(RedemptionNotFoundError):
            redemptions.expire_redemption(UUID(int=42))

        assert taken == []
        assert storage.active_lock_keys == []


class TestListings:
    def test_list_active_discounts_ordered_by_cost(self, redemptions):
        discounts = redemptions.list_active_discounts()

        assert [d.cost_coins for d in discounts] == [50, 100, 250]
        assert all(d.is_active for d in discounts)

    def test_list_eligible_universities(self, redemptions):
        universities = redemptions.list_eligible_universities()

        assert [u.id for u in universities] == [UNIVERSITY_ID]

    def test_search_universities_by_location(self, redemptions):
        assert [u.name for u in redemptions.list_eligible_universities("melbourne")] == ["Florida Tech Institute"]
        assert redemptions.list_eligible_universities("lakeside") == []

    def test_list_redemptions_newest_first(self, redemptions, fund_student):
        fund_student(STUDENT_ID, 100)
        first = redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, 10).redemption
        second = redemptions.redeem_custom_discount(STUDENT_ID, UNIVERSITY_ID, 20).redemption

        by_student = redemptions.list_redemptions(user_id=STUDENT_ID)
        by_university = redemptions.list_redemptions(university_id=UNIVERSITY_ID)

        assert [r.id for r in by_student] == [second.id, first.id]
        assert {r.id for r in by_university} == {first.id, second.id}
