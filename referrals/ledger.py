"""Redemption tracking state machine and the points derived from it.

Tracking rows move ``pending -> completed`` or ``pending -> cancelled`` and
nothing else. Every transition is a status-guarded UPDATE whose affected
row count decides the outcome, so concurrent callers cannot both win.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database
from .errors import (
    AlreadyReferred,
    CodeNotFound,
    Forbidden,
    NotPending,
    RedemptionRejected,
    RetryExhausted,
    TrackingNotFound,
)
from .logging_config import get_logger
from .models import (
    PointsBalance,
    PointsHistoryResponse,
    TrackingDirection,
    TrackingRecord,
    TrackingStatus,
)
from .policy import ExpiryPolicy
from .registry import CodeRegistry
from .settings import settings
from .tables import ReferralCode, ReferralTracking, utcnow

logger = get_logger(__name__)


class RedemptionLedger:
    def __init__(self, database: Database, registry: CodeRegistry):
        self.database = database
        self.registry = registry

    def redeem(self, code: str, referred_user_id: UUID, now: Optional[datetime] = None) -> TrackingRecord:
        """Open a pending tracking row for ``referred_user_id`` against ``code``.

        The usage increment and the tracking insert share one transaction.
        The increment is conditional on the code still being redeemable, so
        a code with ``max_uses = N`` can never be redeemed N + 1 times.

        Raises:
            CodeNotFound, CodeInactive, CodeExpired, UsageLimitReached,
            AlreadyReferred, RetryExhausted
        """
        now = now or utcnow()
        attempts = settings.transaction_retries + 1

        # Storage conflicts and guard conflicts share one retry budget
        for attempt in range(1, attempts + 1):
            try:
                record = self.database.run(
                    lambda session: self._redeem_once(session, code, referred_user_id, now),
                    retries=0,
                )
            except RetryExhausted:
                logger.warning("referral_redemption_storage_conflict", code=code, attempt=attempt)
                continue
            except IntegrityError as e:
                # Lost the race on the (code, user) unique pair
                logger.info("referral_redemption_rejected", code=code, reason=AlreadyReferred.reason)
                raise AlreadyReferred(
                    f"User {referred_user_id} has already redeemed code {code!r}"
                ) from e
            except RedemptionRejected as e:
                logger.info("referral_redemption_rejected", code=code, reason=e.reason)
                raise

            if record is not None:
                logger.info(
                    "referral_redeemed",
                    tracking_id=str(record.id),
                    code=code,
                    referrer_id=str(record.referrer_id),
                    referred_user_id=str(referred_user_id),
                )
                return record
            logger.warning("referral_redemption_guard_conflict", code=code, attempt=attempt)

        logger.error("referral_redemption_retries_exhausted", code=code, attempts=attempts)
        raise RetryExhausted(f"Redemption of {code!r} kept conflicting with concurrent updates")

    def _redeem_once(
        self, session: Session, code: str, referred_user_id: UUID, now: datetime
    ) -> Optional[TrackingRecord]:
        row = self.registry.lookup(session, code)

        rejection = ExpiryPolicy.rejection(row, now)
        if rejection is not None:
            raise rejection(f"Referral code {row.code} cannot be redeemed: {rejection.reason}")
        if self._already_tracked(session, row.id, referred_user_id):
            raise AlreadyReferred(f"User {referred_user_id} has already redeemed code {row.code}")

        updated = session.query(ReferralCode).filter(
            ReferralCode.id == row.id,
            ExpiryPolicy.redeemable_clause(now),
        ).update(
            {
                ReferralCode.current_uses: ReferralCode.current_uses + 1,
                ReferralCode.updated_at: now,
            },
            synchronize_session=False,
        )

        # Re-read under the write lock taken by the UPDATE
        row = session.get(ReferralCode, row.id, populate_existing=True)
        if row is None:
            raise CodeNotFound(f"Referral code {code!r} not found")
        if not updated:
            rejection = ExpiryPolicy.rejection(row, now)
            if rejection is not None:
                raise rejection(f"Referral code {row.code} cannot be redeemed: {rejection.reason}")
            # Redeemable again (a concurrent cancel freed a slot); caller retries
            return None

        tracking = ReferralTracking(
            referral_code_id=row.id,
            referrer_id=row.owner_id,
            referred_user_id=referred_user_id,
            status=TrackingStatus.PENDING.value,
            reward_points=row.points_per_referral,
            points_awarded=0,
            created_at=now,
        )
        session.add(tracking)
        session.flush()
        return TrackingRecord.model_validate(tracking)

    @staticmethod
    def _already_tracked(session: Session, code_id: UUID, referred_user_id: UUID) -> bool:
        return session.query(ReferralTracking.id).filter(
            ReferralTracking.referral_code_id == code_id,
            ReferralTracking.referred_user_id == referred_user_id,
        ).first() is not None

    def finalize(self, tracking_id: UUID, now: Optional[datetime] = None) -> TrackingRecord:
        """Complete a pending referral and award its captured points.

        A second call finds the row no longer pending and raises
        ``NotPending``; points are awarded exactly once.
        """
        now = now or utcnow()

        def work(session: Session) -> TrackingRecord:
            updated = self._transition(session, tracking_id, {
                ReferralTracking.status: TrackingStatus.COMPLETED.value,
                ReferralTracking.completed_at: now,
                ReferralTracking.points_awarded: ReferralTracking.reward_points,
            })
            row = self._get_row(session, tracking_id)
            if not updated:
                raise NotPending(f"Cannot finalize referral in {row.status} state")
            return TrackingRecord.model_validate(row)

        try:
            record = self.database.run(work)
        except NotPending as e:
            logger.info("referral_finalize_rejected", tracking_id=str(tracking_id), reason=e.reason)
            raise

        logger.info(
            "referral_finalized",
            tracking_id=str(tracking_id),
            referrer_id=str(record.referrer_id),
            points_awarded=record.points_awarded,
        )
        return record

    def cancel(self, tracking_id: UUID, reason: str, now: Optional[datetime] = None) -> TrackingRecord:
        """Void a pending referral and give its usage slot back to the code."""
        now = now or utcnow()

        def work(session: Session) -> TrackingRecord:
            updated = self._transition(session, tracking_id, {
                ReferralTracking.status: TrackingStatus.CANCELLED.value,
                ReferralTracking.cancelled_at: now,
                ReferralTracking.cancellation_reason: reason,
                ReferralTracking.points_awarded: 0,
            })
            row = self._get_row(session, tracking_id)
            if not updated:
                raise NotPending(f"Cannot cancel referral in {row.status} state")

            session.query(ReferralCode).filter(
                ReferralCode.id == row.referral_code_id,
                ReferralCode.current_uses > 0,
            ).update(
                {
                    ReferralCode.current_uses: ReferralCode.current_uses - 1,
                    ReferralCode.updated_at: now,
                },
                synchronize_session=False,
            )
            return TrackingRecord.model_validate(row)

        try:
            record = self.database.run(work)
        except NotPending as e:
            logger.info("referral_cancel_rejected", tracking_id=str(tracking_id), reason=e.reason)
            raise

        logger.info("referral_cancelled", tracking_id=str(tracking_id), reason=reason)
        return record

    @staticmethod
    def _transition(session: Session, tracking_id: UUID, values: dict) -> int:
        return session.query(ReferralTracking).filter(
            ReferralTracking.id == tracking_id,
            ReferralTracking.status == TrackingStatus.PENDING.value,
        ).update(values, synchronize_session=False)

    @staticmethod
    def _get_row(session: Session, tracking_id: UUID) -> ReferralTracking:
        row = session.get(ReferralTracking, tracking_id, populate_existing=True)
        if row is None:
            raise TrackingNotFound(f"Referral tracking {tracking_id} not found")
        return row

    def get_tracking(self, tracking_id: UUID, user_id: Optional[UUID] = None) -> TrackingRecord:
        """Fetch one tracking row; with ``user_id``, only its referrer or referred user may see it."""
        with self.database.session() as session:
            row = self._get_row(session, tracking_id)
            if user_id is not None and user_id not in (row.referrer_id, row.referred_user_id):
                raise Forbidden(f"User {user_id} is not a party to referral {tracking_id}")
            return TrackingRecord.model_validate(row)

    def list_tracking(
        self, user_id: UUID, direction: TrackingDirection = TrackingDirection.SENT
    ) -> list[TrackingRecord]:
        column = (
            ReferralTracking.referrer_id
            if direction == TrackingDirection.SENT
            else ReferralTracking.referred_user_id
        )
        with self.database.session() as session:
            rows = session.query(ReferralTracking).filter(column == user_id).order_by(
                ReferralTracking.created_at.desc()
            ).all()
            return [TrackingRecord.model_validate(r) for r in rows]


class PointsAccount:
    """Point balances derived from completed tracking rows.

    There is no stored balance to drift: the total is always the sum of
    ``points_awarded`` over the user's completed referrals.
    """

    def __init__(self, database: Database):
        self.database = database

    def balance(self, user_id: UUID) -> PointsBalance:
        with self.database.session() as session:
            total, count, last_awarded_at = session.query(
                func.coalesce(func.sum(ReferralTracking.points_awarded), 0),
                func.count(ReferralTracking.id),
                func.max(ReferralTracking.completed_at),
            ).filter(
                ReferralTracking.referrer_id == user_id,
                ReferralTracking.status == TrackingStatus.COMPLETED.value,
            ).one()

        return PointsBalance(
            user_id=user_id,
            total_points=int(total),
            completed_referrals=count,
            last_awarded_at=last_awarded_at,
        )

    def history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> PointsHistoryResponse:
        """One page of completed awards, newest first, plus totals over all of them."""
        with self.database.session() as session:
            completed = session.query(ReferralTracking).filter(
                ReferralTracking.referrer_id == user_id,
                ReferralTracking.status == TrackingStatus.COMPLETED.value,
            )
            total_count, total_points = completed.with_entities(
                func.count(ReferralTracking.id),
                func.coalesce(func.sum(ReferralTracking.points_awarded), 0),
            ).one()
            rows = completed.order_by(
                ReferralTracking.completed_at.desc(),
                ReferralTracking.id,
            ).offset(offset).limit(limit).all()
            entries = [TrackingRecord.model_validate(r) for r in rows]

        return PointsHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=total_count,
            total_points=int(total_points),
        )
