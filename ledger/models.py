from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class AccountKind(str, Enum):
    USER = "user"
    UNIVERSITY = "university"


class CoinTransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    RECEIVED = "received"
    PAID_OUT = "paid_out"

    @property
    def is_credit(self) -> bool:
        return self in (CoinTransactionType.EARNED, CoinTransactionType.RECEIVED)


CREDIT_KIND_FOR = {
    AccountKind.USER: CoinTransactionType.EARNED,
    AccountKind.UNIVERSITY: CoinTransactionType.RECEIVED,
}

DEBIT_KIND_FOR = {
    AccountKind.USER: CoinTransactionType.SPENT,
    AccountKind.UNIVERSITY: CoinTransactionType.PAID_OUT,
}


class AccountRef(BaseModel):
    """Points at either a student's credit account or a university's rewards account."""

    kind: AccountKind
    owner_id: UUID

    model_config = ConfigDict(frozen=True)

    @classmethod
    def user(cls, user_id: UUID) -> "AccountRef":
        return cls(kind=AccountKind.USER, owner_id=user_id)

    @classmethod
    def university(cls, university_id: UUID) -> "AccountRef":
        return cls(kind=AccountKind.UNIVERSITY, owner_id=university_id)

    @property
    def lock_key(self) -> str:
        return f"{self.kind.value}:{self.owner_id}"


class UserCreditAccount(BaseModel):
    id: UUID
    user_id: UUID
    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UniversityRewardsAccount(BaseModel):
    id: UUID
    university_id: UUID
    balance_coins: int = 0
    total_received_coins: int = 0
    total_paid_out_coins: int = 0
    total_discounts_sent: int = 0
    total_discount_amount: Decimal = Decimal("0.00")
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CoinTransaction(BaseModel):
    id: UUID
    account_kind: AccountKind
    account_id: UUID
    type: CoinTransactionType
    amount: int
    balance_after: int
    description: str
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type.is_credit else -self.amount


class University(BaseModel):
    id: UUID
    name: str
    location: Optional[str] = None
    is_approved: bool = False
    participates_in_matricula_rewards: bool = False
    staff_user_ids: list[UUID] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    def is_staff(self, user_id: UUID) -> bool:
        return user_id in self.staff_user_ids


class AuditEntry(BaseModel):
    id: UUID
    admin_action: str
    target_type: str
    target_id: UUID
    actor: UUID
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class AccountBalance(BaseModel):
    kind: AccountKind
    owner_id: UUID
    balance: int
    reserved: int = 0
    available: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class ReconciliationReport(BaseModel):
    kind: AccountKind
    owner_id: UUID
    stored_balance: int
    journal_balance: int
    total_credits: int
    total_debits: int
    counters_balance: int
    total_entries: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.journal_balance == self.counters_balance


class CreditRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Coins earned, positive integer")
    description: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 120,
            "description": "Referral reward for application fee payment",
            "reference_type": "affiliate_referral",
        }
    })


class LedgerHistoryResponse(BaseModel):
    kind: AccountKind
    owner_id: UUID
    entries: list[CoinTransaction]
    total_count: int
    current_balance: int


class UniversityRewardsStats(BaseModel):
    university_id: UUID
    balance_coins: int
    reserved_coins: int
    available_coins: int
    total_received_coins: int
    total_paid_out_coins: int
    total_discounts_sent: int
    total_discount_amount: Decimal
    confirmed_redemptions: int


class StudentRanking(BaseModel):
    user_id: UUID
    balance: int
    total_earned: int
    total_spent: int


class RewardsAdminStats(BaseModel):
    period: str
    since: datetime
    total_university_balance: int
    redemptions_count: int
    redeemed_coins: int
    redeemed_discount_amount: Decimal
    payout_counts: dict[str, int]
    top_students_by_balance: list[StudentRanking]
    top_students_by_spent: list[StudentRanking]
