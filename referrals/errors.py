"""Error taxonomy for the referral engine.

Every rejection carries a stable ``reason`` string so callers can tell
them apart for display without matching on messages.
"""


class ReferralError(Exception):
    reason = "referral_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": str(self)}


class NotFound(ReferralError):
    reason = "not_found"


class CodeNotFound(NotFound):
    reason = "code_not_found"


class TrackingNotFound(NotFound):
    reason = "tracking_not_found"


class Forbidden(ReferralError):
    reason = "forbidden"


class RedemptionRejected(ReferralError):
    reason = "redemption_rejected"


class CodeInactive(RedemptionRejected):
    reason = "code_inactive"


class CodeExpired(RedemptionRejected):
    reason = "code_expired"


class UsageLimitReached(RedemptionRejected):
    reason = "usage_limit_reached"


class AlreadyReferred(RedemptionRejected):
    reason = "already_referred"


class NotPending(ReferralError):
    reason = "not_pending"


class HasReferralHistory(ReferralError):
    reason = "has_referral_history"


class CodeUnavailable(ReferralError):
    reason = "code_unavailable"


class InvalidCodeFormat(ReferralError):
    reason = "invalid_code_format"


class InvalidCodePolicy(ReferralError):
    reason = "invalid_code_policy"


class CodeGenerationExhausted(ReferralError):
    reason = "code_generation_exhausted"


class RetryExhausted(ReferralError):
    """Storage conflicts persisted past the retry budget; safe to retry later."""

    reason = "retry_exhausted"
