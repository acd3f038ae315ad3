from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ModerationStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FLAGGED = "flagged"


class SuspiciousUser(BaseModel):
    user_id: UUID
    affiliate_code: Optional[str] = None
    status: ModerationStatus
    flags: list[str] = Field(default_factory=list)
    flagged_at: Optional[datetime] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BlockedAffiliateCode(BaseModel):
    id: UUID
    code: str
    user_id: UUID
    blocked_by: UUID
    blocked_at: datetime
    reason: str

    model_config = ConfigDict(from_attributes=True)


class UniversityBlock(BaseModel):
    university_id: UUID
    blocked_by: UUID
    blocked_at: datetime
    reason: str


class FlagUserRequest(BaseModel):
    flags: list[str] = Field(default_factory=list, description="Heuristic labels, e.g. high_referral_velocity")
    affiliate_code: Optional[str] = None


class BlockUserRequest(BaseModel):
    admin_id: UUID
    reason: str = Field(..., min_length=1)
    affiliate_code: Optional[str] = None


class UnblockUserRequest(BaseModel):
    admin_id: UUID
