from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import CoinTransaction


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TuitionDiscount(BaseModel):
    id: UUID
    name: str
    description: str = ""
    cost_coins: int = Field(..., gt=0)
    discount_amount: Decimal
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class TuitionRedemption(BaseModel):
    id: UUID
    user_id: UUID
    university_id: UUID
    discount_id: Optional[UUID] = None
    cost_coins_paid: int
    discount_amount: Decimal
    status: RedemptionStatus
    redeemed_at: datetime
    confirmed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_custom(self) -> bool:
        return self.discount_id is None

    def can_expire(self) -> bool:
        return self.status in (RedemptionStatus.PENDING, RedemptionStatus.CONFIRMED)


class RedeemDiscountRequest(BaseModel):
    user_id: UUID
    university_id: UUID
    discount_id: UUID


class RedeemCustomRequest(BaseModel):
    user_id: UUID
    university_id: UUID
    coins_amount: int

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "university_id": "aaaaaaaa-0000-4000-8000-000000000001",
            "coins_amount": 25,
        }
    })


class RedemptionResponse(BaseModel):
    redemption: TuitionRedemption
    student_entry: Optional[CoinTransaction] = None
    university_entry: Optional[CoinTransaction] = None
    message: str
