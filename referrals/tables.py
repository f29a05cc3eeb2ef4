"""Referral engine database tables."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    Backends without native timezone support (SQLite) hand back naive
    values; those are re-tagged as UTC on load so comparisons against
    aware timestamps never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ReferralCode(Base):
    """A shareable code owned by one user.

    ``code`` keeps the display form; ``code_normalized`` is the upper-cased
    form that carries the case-insensitive uniqueness constraint.
    ``current_uses`` is only ever changed by guarded UPDATE statements.
    """
    __tablename__ = "referral_codes"
    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="ck_referral_codes_current_uses"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)
    code = Column(String(50), nullable=False)
    code_normalized = Column(String(50), nullable=False, unique=True, index=True)

    # Policy
    points_per_referral = Column(Integer, nullable=False)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    current_uses = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    is_custom = Column(Boolean, nullable=False, default=False)
    expires_at = Column(UTCDateTime, nullable=True)
    archived_at = Column(UTCDateTime, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    tracking = relationship("ReferralTracking", back_populates="referral_code")

    def __repr__(self):
        return f"<ReferralCode(code={self.code}, uses={self.current_uses}/{self.max_uses})>"


class ReferralTracking(Base):
    """One redemption of a code by a referred user.

    ``reward_points`` is the code's ``points_per_referral`` captured at
    redemption; ``points_awarded`` stays 0 until the row is completed.
    """
    __tablename__ = "referral_tracking"
    __table_args__ = (
        UniqueConstraint("referral_code_id", "referred_user_id", name="uq_referral_tracking_code_user"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    referral_code_id = Column(Uuid, ForeignKey("referral_codes.id"), nullable=False, index=True)
    referrer_id = Column(Uuid, nullable=False, index=True)
    referred_user_id = Column(Uuid, nullable=False, index=True)

    # Status
    status = Column(String(20), nullable=False, default="pending", index=True)
    reward_points = Column(Integer, nullable=False)
    points_awarded = Column(Integer, nullable=False, default=0)
    cancellation_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    # Relationships
    referral_code = relationship("ReferralCode", back_populates="tracking")

    def __repr__(self):
        return f"<ReferralTracking(id={self.id}, status={self.status})>"
