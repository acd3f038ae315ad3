from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from ledger.config import Settings, get_settings
from ledger.errors import (
    DiscountInactiveError,
    DiscountNotFoundError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    RedemptionNotFoundError,
    UniversityNotEligibleError,
)
from ledger.models import AccountRef, CoinTransactionType, University
from ledger.service import LedgerService, validate_coin_amount
from ledger.storage import InMemoryStorage, utc_now
from moderation.service import ModerationService

from .models import RedemptionResponse, RedemptionStatus, TuitionDiscount, TuitionRedemption

SEARCH_RESULT_LIMIT = 20


class RedemptionService:
    """Converts a student's coins into a tuition discount at a university.

    The student debit, the university credit and the redemption row are
    written in one unit of work; any failure leaves all three untouched.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        ledger: Optional[LedgerService] = None,
        moderation: Optional[ModerationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.ledger = ledger or LedgerService(self.storage)
        self.moderation = moderation or ModerationService(self.storage)
        self.settings = settings or get_settings()

    def redeem_catalog_discount(self, user_id: UUID, university_id: UUID, discount_id: UUID) -> RedemptionResponse:
        row = self.storage.catalog.get_discount(discount_id)
        if not row:
            raise DiscountNotFoundError(f"Tuition discount {discount_id} not found")
        discount = TuitionDiscount(**row)
        if not discount.is_active:
            raise DiscountInactiveError(f"Tuition discount '{discount.name}' is no longer available")

        return self._redeem(
            user_id, university_id,
            cost_coins=discount.cost_coins,
            discount_amount=discount.discount_amount,
            discount=discount,
        )

    def redeem_custom_discount(self, user_id: UUID, university_id: UUID, coins_amount: int) -> RedemptionResponse:
        coins = validate_coin_amount(coins_amount, minimum=self.settings.min_custom_redemption_coins)
        return self._redeem(
            user_id, university_id,
            cost_coins=coins,
            discount_amount=Decimal(coins),
            discount=None,
        )

    def expire_redemption(self, redemption_id: UUID) -> TuitionRedemption:
        self.get_redemption(redemption_id)
        with self.storage.transaction(f"redemption:{redemption_id}"):
            redemption = self.get_redemption(redemption_id)
            if not redemption.can_expire():
                raise InvalidStateTransitionError(
                    f"Cannot expire redemption in {redemption.status.value} state"
                )
            row = self.storage.redemptions.update(
                redemption_id, status=RedemptionStatus.EXPIRED, expired_at=utc_now()
            )

        logger.info("Redemption expired", redemption_id=str(redemption_id))
        return TuitionRedemption(**row)

    def get_redemption(self, redemption_id: UUID) -> TuitionRedemption:
        row = self.storage.redemptions.get(redemption_id)
        if not row:
            raise RedemptionNotFoundError(f"Redemption {redemption_id} not found")
        return TuitionRedemption(**row)

    def list_redemptions(
        self,
        user_id: Optional[UUID] = None,
        university_id: Optional[UUID] = None,
    ) -> list[TuitionRedemption]:
        """Newest first."""
        rows = self.storage.redemptions.list(user_id=user_id, university_id=university_id)
        return [TuitionRedemption(**row) for row in reversed(rows)]

    def list_active_discounts(self) -> list[TuitionDiscount]:
        return [TuitionDiscount(**row) for row in self.storage.catalog.list_discounts(active_only=True)]

    def list_eligible_universities(self, search: Optional[str] = None) -> list[University]:
        universities = [u for u in self.storage.catalog.list_universities() if self._is_eligible(u)]
        universities.sort(key=lambda u: u.name)
        if search:
            term = search.strip().lower()
            universities = [
                u for u in universities
                if term in u.name.lower() or term in (u.location or "").lower()
            ][:SEARCH_RESULT_LIMIT]
        return universities

    def _is_eligible(self, university: University) -> bool:
        return (
            university.is_approved
            and university.participates_in_matricula_rewards
            and not self.moderation.is_university_blocked(university.id)
        )

    def _eligible_university(self, university_id: UUID) -> University:
        university = self.storage.catalog.get_university(university_id)
        if university is None:
            raise UniversityNotEligibleError(f"University {university_id} does not exist")
        if not university.is_approved or not university.participates_in_matricula_rewards:
            raise UniversityNotEligibleError(f"{university.name} does not accept Matricula Rewards discounts")
        if self.moderation.is_university_blocked(university_id):
            raise UniversityNotEligibleError(f"{university.name} is currently blocked from Matricula Rewards")
        return university

    def _redeem(
        self,
        user_id: UUID,
        university_id: UUID,
        cost_coins: int,
        discount_amount: Decimal,
        discount: Optional[TuitionDiscount],
    ) -> RedemptionResponse:
        self.moderation.ensure_not_blocked(user_id)
        university = self._eligible_university(university_id)

        student = AccountRef.user(user_id)
        school = AccountRef.university(university_id)
        redemption_id = uuid4()
        discount_name = discount.name if discount else f"Custom ${cost_coins} Tuition Discount"

        with self.storage.transaction(student.lock_key, school.lock_key):
            account = self.storage.accounts.get_user(user_id)
            available = account.balance if account else 0
            if cost_coins > available:
                logger.warning(
                    "Redemption rejected for insufficient balance",
                    user_id=str(user_id), balance=available, requested=cost_coins,
                )
                raise InsufficientBalanceError(available=available, requested=cost_coins)

            student_entry = self.ledger.debit(
                student, cost_coins,
                description=f"Redeemed {discount_name} at {university.name}",
                reference_type="tuition_redemption", reference_id=redemption_id,
            )
            university_entry = self.ledger.credit(
                school, cost_coins, CoinTransactionType.RECEIVED,
                description=f"Received {discount_name} redemption",
                reference_type="tuition_redemption", reference_id=redemption_id,
            )

            school_account = self.storage.accounts.get_university(university_id)
            self.storage.accounts.update_university(
                university_id,
                total_discounts_sent=school_account.total_discounts_sent + 1,
                total_discount_amount=school_account.total_discount_amount + discount_amount,
                updated_at=utc_now(),
            )

            now = utc_now()
            row = {
                "id": redemption_id,
                "user_id": user_id,
                "university_id": university_id,
                "discount_id": discount.id if discount else None,
                "cost_coins_paid": cost_coins,
                "discount_amount": discount_amount,
                "status": RedemptionStatus.CONFIRMED,
                "redeemed_at": now,
                "confirmed_at": now,
                "expired_at": None,
                "metadata": {
                    "university_name": university.name,
                    "university_location": university.location,
                    "discount_name": discount_name,
                },
            }
            self.storage.redemptions.insert(row)

        logger.info(
            "Tuition discount redeemed",
            redemption_id=str(redemption_id),
            user_id=str(user_id),
            university_id=str(university_id),
            cost_coins=cost_coins,
            custom=discount is None,
        )
        return RedemptionResponse(
            redemption=TuitionRedemption(**row),
            student_entry=student_entry,
            university_entry=university_entry,
            message="Tuition discount redeemed successfully",
        )
