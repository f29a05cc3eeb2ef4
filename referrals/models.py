from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from .settings import settings


class TrackingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TrackingDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class CreateCodeRequest(BaseModel):
    owner_id: UUID
    points_per_referral: int = Field(
        default=settings.default_points_per_referral, ge=1, le=settings.max_points_per_referral
    )
    max_uses: Optional[int] = Field(default=None, ge=1, le=settings.max_uses_limit)
    expires_at: Optional[datetime] = None
    custom_code: Optional[str] = Field(default=None, description="Owner-chosen code instead of a generated one")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "owner_id": "550e8400-e29b-41d4-a716-446655440000",
            "points_per_referral": 100,
            "max_uses": 10,
            "expires_at": "2027-01-01T00:00:00Z"
        }
    })


class UpdateCodeRequest(BaseModel):
    """Partial update; only fields explicitly sent are applied."""
    owner_id: UUID
    points_per_referral: Optional[int] = Field(default=None, ge=1, le=settings.max_points_per_referral)
    max_uses: Optional[int] = Field(default=None, ge=1, le=settings.max_uses_limit)
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"owner_id"})


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=settings.custom_code_max_length)
    referred_user_id: UUID


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the referred signup was voided")


class CustomCodeCheckRequest(BaseModel):
    custom_code: str


class ReferralCodeRecord(BaseModel):
    id: UUID
    owner_id: UUID
    code: str
    points_per_referral: int
    max_uses: Optional[int] = None
    current_uses: int
    is_active: bool
    is_custom: bool = False
    expires_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.current_uses, 0)


class TrackingRecord(BaseModel):
    id: UUID
    referral_code_id: UUID
    referrer_id: UUID
    referred_user_id: UUID
    status: TrackingStatus
    reward_points: int
    points_awarded: int = 0
    cancellation_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ActivityEntry(TrackingRecord):
    code: str


class CodeValidationResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    remaining_uses: Optional[int] = None  # None when unlimited or not valid
    referral_code: Optional[ReferralCodeRecord] = None


class CustomCodeCheckResponse(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    suggestions: Optional[list[str]] = None


class PointsBalance(BaseModel):
    user_id: UUID
    total_points: int
    completed_referrals: int
    last_awarded_at: Optional[datetime] = None


class PointsHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[TrackingRecord]
    total_count: int
    total_points: int


class ReferralSummary(BaseModel):
    owner_id: Optional[UUID] = None
    since: Optional[datetime] = None
    total_referrals: int = 0
    successful_referrals: int = 0
    pending_referrals: int = 0
    cancelled_referrals: int = 0
    total_points_earned: int = 0
    conversion_rate: float = 0.0


class CodeBreakdown(BaseModel):
    referral_code_id: UUID
    code: str
    current_uses: int
    max_uses: Optional[int] = None
    is_active: bool
    total_referrals: int
    successful_referrals: int
    pending_referrals: int
    points_earned: int
