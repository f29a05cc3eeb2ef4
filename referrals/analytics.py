"""Read-only referral analytics.

Each figure is produced by a single aggregate statement, so the counts in
one summary always come from the same snapshot even while redemptions are
committing.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import case, func

from .db import Database
from .models import ActivityEntry, CodeBreakdown, ReferralSummary, TrackingRecord, TrackingStatus
from .tables import ReferralCode, ReferralTracking


def conversion_rate(successful: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(successful / total * 100, 2)


def _count_status(status: TrackingStatus):
    return func.coalesce(func.sum(case((ReferralTracking.status == status.value, 1), else_=0)), 0)


def _summary_columns():
    return (
        func.count(ReferralTracking.id),
        _count_status(TrackingStatus.COMPLETED),
        _count_status(TrackingStatus.PENDING),
        _count_status(TrackingStatus.CANCELLED),
        func.coalesce(func.sum(ReferralTracking.points_awarded), 0),
    )


def _to_summary(row, owner_id: Optional[UUID] = None, since: Optional[datetime] = None) -> ReferralSummary:
    total, successful, pending, cancelled, points = row
    return ReferralSummary(
        owner_id=owner_id,
        since=since,
        total_referrals=int(total),
        successful_referrals=int(successful),
        pending_referrals=int(pending),
        cancelled_referrals=int(cancelled),
        total_points_earned=int(points),
        conversion_rate=conversion_rate(int(successful), int(total)),
    )


class AnalyticsAggregator:
    def __init__(self, database: Database):
        self.database = database

    def owner_summary(self, owner_id: UUID) -> ReferralSummary:
        return self.windowed(None, owner_id=owner_id)

    def global_summary(self) -> ReferralSummary:
        return self.windowed(None)

    def windowed(self, since: Optional[datetime], owner_id: Optional[UUID] = None) -> ReferralSummary:
        """Summary over rows created at or after ``since`` (all rows when None)."""
        with self.database.session() as session:
            query = self._filtered(session.query(*_summary_columns()), since, owner_id)
            return _to_summary(query.one(), owner_id=owner_id, since=since)

    def global_top_performers(self, limit: int = 10, since: Optional[datetime] = None) -> list[ReferralSummary]:
        """Owners ranked by successful referrals, then points, then owner id."""
        columns = _summary_columns()
        successful, points = columns[1], columns[4]

        with self.database.session() as session:
            query = self._filtered(session.query(ReferralTracking.referrer_id, *columns), since, None)
            rows = query.group_by(ReferralTracking.referrer_id).order_by(
                successful.desc(),
                points.desc(),
                ReferralTracking.referrer_id.asc(),
            ).limit(limit).all()

        return [_to_summary(row[1:], owner_id=row[0], since=since) for row in rows]

    def code_breakdown(self, owner_id: UUID) -> list[CodeBreakdown]:
        """Per-code usage and outcomes for one owner, archived codes included."""
        with self.database.session() as session:
            rows = session.query(
                ReferralCode.id,
                ReferralCode.code,
                ReferralCode.current_uses,
                ReferralCode.max_uses,
                ReferralCode.is_active,
                *_summary_columns(),
            ).outerjoin(
                ReferralTracking, ReferralTracking.referral_code_id == ReferralCode.id
            ).filter(
                ReferralCode.owner_id == owner_id
            ).group_by(
                ReferralCode.id,
                ReferralCode.code,
                ReferralCode.current_uses,
                ReferralCode.max_uses,
                ReferralCode.is_active,
                ReferralCode.created_at,
            ).order_by(ReferralCode.created_at.desc()).all()

        return [
            CodeBreakdown(
                referral_code_id=code_id,
                code=code,
                current_uses=current_uses,
                max_uses=max_uses,
                is_active=is_active,
                total_referrals=int(total),
                successful_referrals=int(successful),
                pending_referrals=int(pending),
                points_earned=int(points),
            )
            for code_id, code, current_uses, max_uses, is_active, total, successful, pending, _, points in rows
        ]

    def recent_activity(self, owner_id: Optional[UUID] = None, limit: int = 10) -> list[ActivityEntry]:
        with self.database.session() as session:
            query = session.query(ReferralTracking, ReferralCode.code).join(
                ReferralCode, ReferralTracking.referral_code_id == ReferralCode.id
            )
            if owner_id is not None:
                query = query.filter(ReferralTracking.referrer_id == owner_id)
            rows = query.order_by(ReferralTracking.created_at.desc()).limit(limit).all()

            return [
                ActivityEntry(**TrackingRecord.model_validate(tracking).model_dump(), code=code)
                for tracking, code in rows
            ]

    @staticmethod
    def _filtered(query, since: Optional[datetime], owner_id: Optional[UUID]):
        if owner_id is not None:
            query = query.filter(ReferralTracking.referrer_id == owner_id)
        if since is not None:
            query = query.filter(ReferralTracking.created_at >= since)
        return query
