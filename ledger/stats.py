"""
Read-only rewards statistics for university dashboards and the admin console.

Every figure is computed under the locks of the accounts it covers, so a
redemption or payout that is still in flight is either fully counted or not
counted at all.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from loguru import logger

from payouts.models import PayoutStatus
from redemptions.models import RedemptionStatus

from .errors import InvalidStatsPeriodError, UniversityNotFoundError
from .models import AccountRef, RewardsAdminStats, StudentRanking, UniversityRewardsStats
from .storage import InMemoryStorage, utc_now

STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_STATS_PERIOD = "30d"
TOP_STUDENTS_LIMIT = 5


class RewardsStatsService:
    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def get_university_stats(self, university_id: UUID) -> UniversityRewardsStats:
        if self.storage.catalog.get_university(university_id) is None:
            raise UniversityNotFoundError(f"University {university_id} not found")

        with self.storage.transaction(AccountRef.university(university_id).lock_key):
            account = self.storage.accounts.get_university(university_id)
            reserved = self.storage.payouts.reserved_coins(university_id)
            confirmed = sum(
                1 for row in self.storage.redemptions.list(university_id=university_id)
                if row["status"] == RedemptionStatus.CONFIRMED
            )

        balance = account.balance_coins if account else 0
        return UniversityRewardsStats(
            university_id=university_id,
            balance_coins=balance,
            reserved_coins=reserved,
            available_coins=max(balance - reserved, 0),
            total_received_coins=account.total_received_coins if account else 0,
            total_paid_out_coins=account.total_paid_out_coins if account else 0,
            total_discounts_sent=account.total_discounts_sent if account else 0,
            total_discount_amount=account.total_discount_amount if account else Decimal("0.00"),
            confirmed_redemptions=confirmed,
        )

    def get_admin_stats(self, period: str = DEFAULT_STATS_PERIOD) -> RewardsAdminStats:
        """Platform-wide totals for the admin console.

        Redemptions and payout requests are limited to those created within
        ``period`` (one of ``7d``, ``30d``, ``90d``, ``1y``); balances and the
        student rankings are current.
        """
        days = STATS_PERIODS.get(period)
        if days is None:
            raise InvalidStatsPeriodError(
                f"Unknown stats period {period!r}; expected one of {', '.join(STATS_PERIODS)}"
            )
        since = utc_now() - timedelta(days=days)

        user_ids = [account.user_id for account in self.storage.accounts.list_users()]
        university_ids = [account.university_id for account in self.storage.accounts.list_universities()]
        lock_keys = [AccountRef.user(user_id).lock_key for user_id in user_ids]
        lock_keys += [AccountRef.university(university_id).lock_key for university_id in university_ids]
        with self.storage.transaction(*lock_keys):
            # re-read under the locks; rows from a unit of work that rolled back are gone
            students = [a for a in map(self.storage.accounts.get_user, user_ids) if a]
            universities = [a for a in map(self.storage.accounts.get_university, university_ids) if a]
            covered = {account.university_id for account in universities}
            redemptions = [
                row for row in self.storage.redemptions.list()
                if row["university_id"] in covered and row["redeemed_at"] >= since
            ]
            payouts = [
                row for row in self.storage.payouts.list_requests()
                if row["university_id"] in covered and row["created_at"] >= since
            ]

        stats = RewardsAdminStats(
            period=period,
            since=since,
            total_university_balance=sum(account.balance_coins for account in universities),
            redemptions_count=len(redemptions),
            redeemed_coins=sum(row["cost_coins_paid"] for row in redemptions),
            redeemed_discount_amount=sum((row["discount_amount"] for row in redemptions), Decimal("0.00")),
            payout_counts={
                status.value: sum(1 for row in payouts if row["status"] == status) for status in PayoutStatus
            },
            top_students_by_balance=self._rank(students, key=lambda account: account.balance),
            top_students_by_spent=self._rank(students, key=lambda account: account.total_spent),
        )
        logger.debug("Admin rewards stats computed", period=period, accounts=len(lock_keys))
        return stats

    @staticmethod
    def _rank(students, key) -> list[StudentRanking]:
        ranked = sorted((account for account in students if key(account) > 0), key=key, reverse=True)
        return [
            StudentRanking(
                user_id=account.user_id,
                balance=account.balance,
                total_earned=account.total_earned,
                total_spent=account.total_spent,
            )
            for account in ranked[:TOP_STUDENTS_LIMIT]
        ]
