"""
Referral Engine

This package provides:
- Referral code issuing with case-insensitive unique codes and per-code policy
- Redemption tracking: pending → completed / cancelled
- Race-free usage limits through guarded conditional updates
- Points balances derived from completed referrals, never stored separately
- Conversion analytics and leaderboards
"""

from .errors import ReferralError
from .models import (
    TrackingStatus,
    ReferralCodeRecord,
    TrackingRecord,
    ReferralSummary,
    PointsBalance,
)
from .service import ReferralService

__all__ = [
    "ReferralError",
    "TrackingStatus",
    "ReferralCodeRecord",
    "TrackingRecord",
    "ReferralSummary",
    "PointsBalance",
    "ReferralService",
]
