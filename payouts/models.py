from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter, model_validator


class PayoutMethod(str, Enum):
    ZELLE = "zelle"
    BANK_TRANSFER = "bank_transfer"
    STRIPE = "stripe"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PayoutStatus.PAID, PayoutStatus.REJECTED, PayoutStatus.CANCELLED)

    @property
    def reserves_coins(self) -> bool:
        return self in (PayoutStatus.PENDING, PayoutStatus.APPROVED)


class InvoiceStatus(str, Enum):
    ISSUED = "issued"
    FINALIZED = "finalized"
    VOIDED = "voided"


def _mask(value: Optional[str], visible: int = 4) -> Optional[str]:
    if not value:
        return value
    return "*" * max(len(value) - visible, 0) + value[-visible:]


class ZelleDetails(BaseModel):
    method: Literal["zelle"] = "zelle"
    email: Optional[str] = None
    phone: Optional[str] = None
    account_name: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _needs_contact(self) -> "ZelleDetails":
        if not self.email and not self.phone:
            raise ValueError("Zelle payouts need an email or a phone number")
        return self

    def preview(self) -> dict:
        return {"method": self.method, "email": self.email, "phone": _mask(self.phone), "account_name": self.account_name}


class BankTransferDetails(BaseModel):
    method: Literal["bank_transfer"] = "bank_transfer"
    bank_name: str = Field(..., min_length=1)
    account_name: str = Field(..., min_length=1)
    routing_number: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    swift: Optional[str] = None
    iban: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def preview(self) -> dict:
        return {
            "method": self.method,
            "bank_name": self.bank_name,
            "account_name": self.account_name,
            "routing_number": _mask(self.routing_number),
            "account_number": _mask(self.account_number),
        }


class StripeDetails(BaseModel):
    method: Literal["stripe"] = "stripe"
    email: str = Field(..., min_length=3)
    account_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def preview(self) -> dict:
        return {"method": self.method, "email": self.email, "account_id": _mask(self.account_id, 6)}


PayoutDetails = Annotated[
    Union[ZelleDetails, BankTransferDetails, StripeDetails],
    Field(discriminator="method"),
]

payout_details_adapter = TypeAdapter(PayoutDetails)


class PayoutInvoice(BaseModel):
    id: UUID
    payout_request_id: UUID
    invoice_number: str
    issued_at: datetime
    total_usd: Decimal
    status: InvoiceStatus = InvoiceStatus.ISSUED
    finalized_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutRequest(BaseModel):
    id: UUID
    university_id: UUID
    requested_by: UUID
    amount_coins: int
    amount_usd: Decimal
    payout_method: PayoutMethod
    payout_details: PayoutDetails
    payout_details_preview: dict = Field(default_factory=dict)
    status: PayoutStatus
    created_at: datetime
    updated_at: datetime
    reviewed_by: Optional[UUID] = None
    review_reason: Optional[str] = None
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    paid_by: Optional[UUID] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    cancelled_by: Optional[UUID] = None
    cancelled_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    invoice: Optional[PayoutInvoice] = None

    model_config = ConfigDict(from_attributes=True)


class CreatePayoutRequest(BaseModel):
    university_id: UUID
    requested_by: UUID
    amount_coins: int
    payout_method: PayoutMethod
    # validated against payout_method by the service, not here
    payout_details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "university_id": "aaaaaaaa-0000-4000-8000-000000000001",
            "requested_by": "bbbbbbbb-0000-4000-8000-000000000001",
            "amount_coins": 500,
            "payout_method": "zelle",
            "payout_details": {"email": "bursar@fti.edu", "account_name": "FTI Bursar"},
        }
    })


class CancelPayoutRequest(BaseModel):
    requester: UUID


class AdminActionRequest(BaseModel):
    admin_id: UUID


class MarkPaidRequest(BaseModel):
    admin_id: UUID
    payment_reference: Optional[str] = None


class RejectPayoutRequest(BaseModel):
    admin_id: UUID
    reason: str


class AdminNotesRequest(BaseModel):
    admin_id: UUID
    notes: str
