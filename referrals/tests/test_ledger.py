"""
Unit Tests for the Redemption Ledger and Points Account

Tests cover:
1. Redemption flow and rejection reasons
2. Finalize / cancel transitions and their idempotency
3. Points derived from completed referrals
4. Usage-limit and duplicate guarantees under concurrent redemptions
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import false
from sqlalchemy.exc import OperationalError

from referrals.errors import (
    AlreadyReferred,
    CodeExpired,
    CodeInactive,
    CodeNotFound,
    Forbidden,
    NotPending,
    RetryExhausted,
    TrackingNotFound,
    UsageLimitReached,
)
from referrals.ledger import RedemptionLedger
from referrals.models import TrackingDirection, TrackingStatus, UpdateCodeRequest
from referrals.policy import ExpiryPolicy
from referrals.settings import settings

from conftest import NOW, OWNER_ID, REFERRED_ID


class TestRedeem:

    def test_redeem_creates_pending_row(self, service, make_code):
        code = make_code(points_per_referral=100)

        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert tracking.status == TrackingStatus.PENDING
        assert tracking.referrer_id == OWNER_ID
        assert tracking.referred_user_id == REFERRED_ID
        assert tracking.reward_points == 100
        assert tracking.points_awarded == 0
        assert tracking.completed_at is None
        assert service.registry.get_code(code.id).current_uses == 1

    def test_redeem_is_case_insensitive(self, service, make_code):
        make_code(custom_code="Spring24")

        tracking = service.ledger.redeem("SPRING24", REFERRED_ID, now=NOW)

        assert tracking.status == TrackingStatus.PENDING

    def test_unknown_code(self, service):
        with pytest.raises(CodeNotFound):
            service.ledger.redeem("UNKNOWN1", REFERRED_ID, now=NOW)

    def test_inactive_code(self, service, make_code):
        code = make_code()
        service.registry.update_code(code.id, UpdateCodeRequest(owner_id=OWNER_ID, is_active=False))

        with pytest.raises(CodeInactive):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

    def test_expired_code(self, service, make_code):
        code = make_code(expires_at=NOW + timedelta(hours=1))

        with pytest.raises(CodeExpired):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW + timedelta(hours=1))

        assert service.registry.get_code(code.id).current_uses == 0

    def test_same_user_twice(self, service, make_code):
        code = make_code()
        service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        with pytest.raises(AlreadyReferred):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert service.registry.get_code(code.id).current_uses == 1

    def test_same_user_after_cancel_still_rejected(self, service, make_code):
        code = make_code()
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.cancel(tracking.id, "refund", now=NOW)

        with pytest.raises(AlreadyReferred):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

    def test_usage_limit_scenario(self, service, make_code):
        """maxUses=1: A redeems, B is rejected, finalizing A credits 100 points."""
        code = make_code(max_uses=1, points_per_referral=100)
        user_a, user_b = uuid4(), uuid4()

        tracking = service.ledger.redeem(code.code, user_a, now=NOW)
        assert tracking.status == TrackingStatus.PENDING
        assert service.registry.get_code(code.id).current_uses == 1

        with pytest.raises(UsageLimitReached):
            service.ledger.redeem(code.code, user_b, now=NOW)

        completed = service.ledger.finalize(tracking.id, now=NOW)
        assert completed.status == TrackingStatus.COMPLETED
        assert completed.points_awarded == 100
        assert service.analytics.owner_summary(OWNER_ID).total_points_earned == 100
        assert service.ledger.list_tracking(user_b, TrackingDirection.RECEIVED) == []


class TestRedeemRetries:
    """Conflicts on the guarded usage increment are retried within one budget."""

    @staticmethod
    def _guard_misses(monkeypatch, misses):
        """Make the conditional increment match no rows for the first ``misses`` attempts."""
        real_clause = ExpiryPolicy.redeemable_clause
        calls = []

        def clause(now):
            calls.append(now)
            return false() if len(calls) <= misses else real_clause(now)

        monkeypatch.setattr(ExpiryPolicy, "redeemable_clause", staticmethod(clause))
        return calls

    def test_retries_when_code_still_redeemable(self, service, make_code, monkeypatch):
        """A slot freed between the read and the increment leads to another attempt."""
        code = make_code(max_uses=1)
        calls = self._guard_misses(monkeypatch, misses=1)

        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert tracking.status == TrackingStatus.PENDING
        assert len(calls) == 2
        assert service.registry.get_code(code.id).current_uses == 1

    def test_retry_exhausted_leaves_no_partial_state(self, service, make_code, monkeypatch):
        code = make_code(max_uses=1)
        calls = self._guard_misses(monkeypatch, misses=100)

        with pytest.raises(RetryExhausted):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert len(calls) == settings.transaction_retries + 1
        assert service.registry.get_code(code.id).current_uses == 0
        assert service.ledger.list_tracking(OWNER_ID) == []

    def test_storage_conflicts_share_the_retry_budget(self, service, make_code, monkeypatch):
        code = make_code()
        calls = []

        def locked(session, code_id, referred_user_id):
            calls.append(code_id)
            raise OperationalError("SELECT referral_tracking", {}, Exception("database is locked"))

        monkeypatch.setattr(RedemptionLedger, "_already_tracked", staticmethod(locked))

        with pytest.raises(RetryExhausted):
            service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert len(calls) == settings.transaction_retries + 1
        assert service.registry.get_code(code.id).current_uses == 0


class TestFinalize:

    def test_finalize_sets_completion(self, service, make_code):
        code = make_code(points_per_referral=40)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        completed = service.ledger.finalize(tracking.id, now=NOW + timedelta(days=2))

        assert completed.status == TrackingStatus.COMPLETED
        assert completed.completed_at == NOW + timedelta(days=2)
        assert completed.points_awarded == 40

    def test_finalize_twice_credits_once(self, service, make_code):
        code = make_code(points_per_referral=100)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.finalize(tracking.id, now=NOW)

        with pytest.raises(NotPending):
            service.ledger.finalize(tracking.id, now=NOW)

        assert service.points.balance(OWNER_ID).total_points == 100

    def test_awards_points_captured_at_redemption(self, service, make_code):
        code = make_code(points_per_referral=100)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.registry.update_code(code.id, UpdateCodeRequest(owner_id=OWNER_ID, points_per_referral=500))

        completed = service.ledger.finalize(tracking.id, now=NOW)

        assert completed.points_awarded == 100

    def test_edit_after_completion_keeps_history(self, service, make_code):
        code = make_code(points_per_referral=100, max_uses=1)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.finalize(tracking.id, now=NOW)

        service.registry.update_code(
            code.id, UpdateCodeRequest(owner_id=OWNER_ID, points_per_referral=1, is_active=False)
        )

        assert service.ledger.get_tracking(tracking.id).points_awarded == 100
        assert service.points.balance(OWNER_ID).total_points == 100

    def test_finalize_cancelled_row(self, service, make_code):
        code = make_code()
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.cancel(tracking.id, "voided", now=NOW)

        with pytest.raises(NotPending):
            service.ledger.finalize(tracking.id, now=NOW)

        assert service.points.balance(OWNER_ID).total_points == 0

    def test_finalize_unknown_row(self, service):
        with pytest.raises(TrackingNotFound):
            service.ledger.finalize(uuid4(), now=NOW)


class TestCancel:

    def test_cancel_frees_slot(self, service, make_code):
        code = make_code(max_uses=1)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        cancelled = service.ledger.cancel(tracking.id, "signup voided", now=NOW)

        assert cancelled.status == TrackingStatus.CANCELLED
        assert cancelled.cancellation_reason == "signup voided"
        assert cancelled.cancelled_at == NOW
        assert cancelled.points_awarded == 0
        assert service.registry.get_code(code.id).current_uses == 0

        # The freed slot is usable by someone else
        service.ledger.redeem(code.code, uuid4(), now=NOW)
        assert service.registry.get_code(code.id).current_uses == 1

    def test_cancel_completed_row_changes_nothing(self, service, make_code):
        code = make_code(points_per_referral=100)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.finalize(tracking.id, now=NOW)

        with pytest.raises(NotPending):
            service.ledger.cancel(tracking.id, "too late", now=NOW)

        assert service.ledger.get_tracking(tracking.id).status == TrackingStatus.COMPLETED
        assert service.registry.get_code(code.id).current_uses == 1
        assert service.points.balance(OWNER_ID).total_points == 100

    def test_cancel_twice(self, service, make_code):
        code = make_code()
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        service.ledger.cancel(tracking.id, "first", now=NOW)

        with pytest.raises(NotPending):
            service.ledger.cancel(tracking.id, "second", now=NOW)

        assert service.registry.get_code(code.id).current_uses == 0


class TestTrackingReads:

    def test_get_tracking_restricted_to_parties(self, service, make_code):
        code = make_code()
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        assert service.ledger.get_tracking(tracking.id, user_id=OWNER_ID).id == tracking.id
        assert service.ledger.get_tracking(tracking.id, user_id=REFERRED_ID).id == tracking.id
        with pytest.raises(Forbidden):
            service.ledger.get_tracking(tracking.id, user_id=uuid4())

    def test_list_tracking_directions(self, service, make_code):
        code = make_code()
        first = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
        second = service.ledger.redeem(code.code, uuid4(), now=NOW + timedelta(minutes=5))

        sent = service.ledger.list_tracking(OWNER_ID, TrackingDirection.SENT)
        received = service.ledger.list_tracking(REFERRED_ID, TrackingDirection.RECEIVED)

        assert [t.id for t in sent] == [second.id, first.id]
        assert [t.id for t in received] == [first.id]


class TestPointsAccount:

    def test_balance_is_sum_of_completed(self, service, make_code):
        code = make_code(points_per_referral=100)
        other = make_code(points_per_referral=30)
        done = [service.ledger.redeem(code.code, uuid4(), now=NOW) for _ in range(2)]
        done.append(service.ledger.redeem(other.code, uuid4(), now=NOW))
        pending = service.ledger.redeem(code.code, uuid4(), now=NOW)
        cancelled = service.ledger.redeem(code.code, uuid4(), now=NOW)
        for i, tracking in enumerate(done):
            service.ledger.finalize(tracking.id, now=NOW + timedelta(hours=i))
        service.ledger.cancel(cancelled.id, "refund", now=NOW)

        balance = service.points.balance(OWNER_ID)

        assert balance.total_points == 230
        assert balance.completed_referrals == 3
        assert balance.last_awarded_at == NOW + timedelta(hours=2)
        assert pending.points_awarded == 0

    def test_empty_balance(self, service):
        balance = service.points.balance(uuid4())

        assert balance.total_points == 0
        assert balance.completed_referrals == 0
        assert balance.last_awarded_at is None

    def test_history_paginates_newest_first(self, service, make_code):
        code = make_code(points_per_referral=10)
        ids = []
        for i in range(3):
            tracking = service.ledger.redeem(code.code, uuid4(), now=NOW)
            service.ledger.finalize(tracking.id, now=NOW + timedelta(hours=i))
            ids.append(tracking.id)

        history = service.points.history(OWNER_ID, limit=2, offset=0)

        assert history.total_count == 3
        assert history.total_points == 30
        assert [e.id for e in history.entries] == [ids[2], ids[1]]

        last_page = service.points.history(OWNER_ID, limit=2, offset=2)

        assert last_page.total_count == 3
        assert last_page.total_points == 30
        assert [e.id for e in last_page.entries] == [ids[0]]

    def test_history_excludes_pending_and_cancelled(self, service, make_code):
        code = make_code(points_per_referral=10)
        service.ledger.redeem(code.code, uuid4(), now=NOW)
        cancelled = service.ledger.redeem(code.code, uuid4(), now=NOW)
        service.ledger.cancel(cancelled.id, "refund", now=NOW)

        history = service.points.history(OWNER_ID)

        assert history.entries == []
        assert history.total_count == 0
        assert history.total_points == 0


class TestConcurrency:

    def test_usage_limit_holds_under_concurrent_redemptions(self, service, make_code):
        max_uses, extra = 5, 7
        code = make_code(max_uses=max_uses)

        def attempt(_):
            try:
                service.ledger.redeem(code.code, uuid4(), now=NOW)
                return "ok"
            except UsageLimitReached:
                return "limit"

        with ThreadPoolExecutor(max_workers=12) as pool:
            outcomes = list(pool.map(attempt, range(max_uses + extra)))

        assert outcomes.count("ok") == max_uses
        assert outcomes.count("limit") == extra
        assert service.registry.get_code(code.id).current_uses == max_uses
        assert len(service.ledger.list_tracking(OWNER_ID)) == max_uses

    def test_unlimited_code_accepts_concurrent_signups(self, service, make_code):
        code = make_code()

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: service.ledger.redeem(code.code, uuid4(), now=NOW), range(50)))

        assert all(r.status == TrackingStatus.PENDING for r in results)
        assert service.registry.get_code(code.id).current_uses == 50

    def test_concurrent_duplicate_redemptions(self, service, make_code):
        code = make_code()

        def attempt(_):
            try:
                service.ledger.redeem(code.code, REFERRED_ID, now=NOW)
                return "ok"
            except AlreadyReferred:
                return "duplicate"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("duplicate") == 7
        assert service.registry.get_code(code.id).current_uses == 1

    def test_concurrent_finalize_credits_once(self, service, make_code):
        code = make_code(points_per_referral=100)
        tracking = service.ledger.redeem(code.code, REFERRED_ID, now=NOW)

        def attempt(_):
            try:
                service.ledger.finalize(tracking.id, now=NOW)
                return "ok"
            except NotPending:
                return "not_pending"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("ok") == 1
        assert service.points.balance(OWNER_ID).total_points == 100
