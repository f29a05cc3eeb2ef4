"""Redeemability rules for referral codes.

The same rule exists in two forms: a pure predicate over a loaded code and
a SQL clause used as the guard of the conditional usage increment. They
must stay in step.
"""

from datetime import datetime
from typing import Optional, Type

from sqlalchemy import and_, or_

from .errors import CodeExpired, CodeInactive, RedemptionRejected, UsageLimitReached
from .tables import ReferralCode


class ExpiryPolicy:
    @staticmethod
    def rejection(code, now: datetime) -> Optional[Type[RedemptionRejected]]:
        """Return the rejection that applies to ``code`` at ``now``, or None."""
        if not code.is_active or code.archived_at is not None:
            return CodeInactive
        if code.expires_at is not None and now >= code.expires_at:
            return CodeExpired
        if code.max_uses is not None and code.current_uses >= code.max_uses:
            return UsageLimitReached
        return None

    @classmethod
    def is_redeemable(cls, code, now: datetime) -> bool:
        return cls.rejection(code, now) is None

    @staticmethod
    def redeemable_clause(now: datetime):
        return and_(
            ReferralCode.is_active.is_(True),
            ReferralCode.archived_at.is_(None),
            or_(ReferralCode.expires_at.is_(None), ReferralCode.expires_at > now),
            or_(ReferralCode.max_uses.is_(None), ReferralCode.current_uses < ReferralCode.max_uses),
        )
