"""Referral code issuing, editing and lookup."""

import re
import secrets
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database
from .errors import (
    CodeGenerationExhausted,
    CodeNotFound,
    CodeUnavailable,
    HasReferralHistory,
    InvalidCodeFormat,
    InvalidCodePolicy,
)
from .logging_config import get_logger
from .models import (
    CodeValidationResponse,
    CreateCodeRequest,
    CustomCodeCheckResponse,
    ReferralCodeRecord,
    UpdateCodeRequest,
)
from .policy import ExpiryPolicy
from .settings import settings
from .tables import ReferralCode, ReferralTracking, utcnow

logger = get_logger(__name__)

# No 0/O, 1/I/L: generated codes get read aloud and typed by hand
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CUSTOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CodeRegistry:
    def __init__(self, database: Database):
        self.database = database

    def create_code(self, request: CreateCodeRequest, now: Optional[datetime] = None) -> ReferralCodeRecord:
        """Issue a new code for ``request.owner_id``.

        Generated codes are retried on collision up to
        ``settings.code_generation_attempts`` times; custom codes fail
        straight away with ``CodeUnavailable`` when taken.
        """
        now = now or utcnow()
        if request.custom_code is not None:
            return self._create_custom_code(request, now)

        attempts = settings.code_generation_attempts
        for attempt in range(1, attempts + 1):
            code = generate_code(settings.code_length)
            try:
                record = self.database.run(
                    lambda session: self._insert_code(session, request, code, False, now)
                )
            except IntegrityError:
                record = None
            if record is not None:
                logger.info("referral_code_created", code=record.code, owner_id=str(record.owner_id))
                return record
            logger.warning("referral_code_collision", attempt=attempt)

        logger.error("referral_code_generation_exhausted", attempts=attempts, owner_id=str(request.owner_id))
        raise CodeGenerationExhausted(f"Could not generate a unique code after {attempts} attempts")

    def _create_custom_code(self, request: CreateCodeRequest, now: datetime) -> ReferralCodeRecord:
        code = request.custom_code.strip()
        error = self.format_error(code)
        if error:
            raise InvalidCodeFormat(error)

        try:
            record = self.database.run(
                lambda session: self._insert_code(session, request, code, True, now)
            )
        except IntegrityError:
            record = None
        if record is None:
            raise CodeUnavailable(f"Referral code {code!r} is already taken")

        logger.info("referral_code_created", code=record.code, owner_id=str(record.owner_id), custom=True)
        return record

    def _insert_code(
        self,
        session: Session,
        request: CreateCodeRequest,
        code: str,
        is_custom: bool,
        now: datetime,
    ) -> Optional[ReferralCodeRecord]:
        normalized = normalize_code(code)
        if self._is_taken(session, normalized):
            return None

        row = ReferralCode(
            owner_id=request.owner_id,
            code=code,
            code_normalized=normalized,
            points_per_referral=request.points_per_referral,
            max_uses=request.max_uses,
            current_uses=0,
            is_active=True,
            is_custom=is_custom,
            expires_at=request.expires_at,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return ReferralCodeRecord.model_validate(row)

    @staticmethod
    def _is_taken(session: Session, normalized: str) -> bool:
        return session.query(ReferralCode.id).filter(
            ReferralCode.code_normalized == normalized
        ).first() is not None

    def update_code(
        self, code_id: UUID, request: UpdateCodeRequest, now: Optional[datetime] = None
    ) -> ReferralCodeRecord:
        """Apply a partial policy update to a code owned by ``request.owner_id``.

        Lowering ``max_uses`` is guarded in the UPDATE itself so a
        concurrent redemption can never leave ``current_uses > max_uses``.
        """
        now = now or utcnow()
        changes = request.changes()
        for field in ("points_per_referral", "is_active"):
            if field in changes and changes[field] is None:
                raise InvalidCodePolicy(f"{field} cannot be null")

        def work(session: Session) -> ReferralCodeRecord:
            query = session.query(ReferralCode).filter(
                ReferralCode.id == code_id,
                ReferralCode.owner_id == request.owner_id,
                ReferralCode.archived_at.is_(None),
            )
            new_max = changes.get("max_uses")
            if new_max is not None:
                query = query.filter(ReferralCode.current_uses <= new_max)

            values = {getattr(ReferralCode, field): value for field, value in changes.items()}
            values[ReferralCode.updated_at] = now
            updated = query.update(values, synchronize_session=False)

            row = self._get_owned(session, code_id, request.owner_id)
            if not updated:
                raise InvalidCodePolicy(
                    f"max_uses {new_max} is below current usage {row.current_uses}"
                )
            return ReferralCodeRecord.model_validate(row)

        record = self.database.run(work)
        logger.info("referral_code_updated", code_id=str(code_id), fields=sorted(changes))
        return record

    def delete_code(
        self, code_id: UUID, owner_id: UUID, archive: bool = False, now: Optional[datetime] = None
    ) -> None:
        """Delete a code, or archive it when it already has tracking history.

        A code with history is never hard-deleted: its rows feed analytics
        and points balances. ``archive=True`` deactivates it and hides it
        from listings while keeping the code string reserved.
        """
        now = now or utcnow()

        def work(session: Session) -> bool:
            row = self._get_owned(session, code_id, owner_id)
            has_history = session.query(ReferralTracking.id).filter(
                ReferralTracking.referral_code_id == row.id
            ).first() is not None

            if not has_history:
                session.query(ReferralCode).filter(ReferralCode.id == row.id).delete(
                    synchronize_session=False
                )
                return False
            if not archive:
                raise HasReferralHistory(
                    f"Referral code {row.code} has referral history; archive it instead"
                )
            row.archived_at = now
            row.is_active = False
            row.updated_at = now
            return True

        try:
            archived = self.database.run(work)
        except IntegrityError as e:
            # A redemption referenced the code between the history check and the delete
            raise HasReferralHistory(f"Referral code {code_id} has referral history") from e

        logger.info(
            "referral_code_archived" if archived else "referral_code_deleted",
            code_id=str(code_id),
            owner_id=str(owner_id),
        )

    @staticmethod
    def _get_owned(session: Session, code_id: UUID, owner_id: UUID) -> ReferralCode:
        row = session.query(ReferralCode).filter(
            ReferralCode.id == code_id,
            ReferralCode.owner_id == owner_id,
            ReferralCode.archived_at.is_(None),
        ).populate_existing().one_or_none()
        if row is None:
            raise CodeNotFound(f"Referral code {code_id} not found")
        return row

    def lookup(self, session: Session, code: str) -> ReferralCode:
        """Case-insensitive lookup of a live (non-archived) code."""
        row = session.query(ReferralCode).filter(
            ReferralCode.code_normalized == normalize_code(code),
            ReferralCode.archived_at.is_(None),
        ).one_or_none()
        if row is None:
            raise CodeNotFound(f"Referral code {code!r} not found")
        return row

    def resolve_for_redemption(self, code: str) -> ReferralCodeRecord:
        with self.database.session() as session:
            return ReferralCodeRecord.model_validate(self.lookup(session, code))

    def get_code(self, code_id: UUID) -> ReferralCodeRecord:
        with self.database.session() as session:
            row = session.get(ReferralCode, code_id)
            if row is None:
                raise CodeNotFound(f"Referral code {code_id} not found")
            return ReferralCodeRecord.model_validate(row)

    def list_codes(self, owner_id: UUID) -> list[ReferralCodeRecord]:
        with self.database.session() as session:
            rows = session.query(ReferralCode).filter(
                ReferralCode.owner_id == owner_id,
                ReferralCode.archived_at.is_(None),
            ).order_by(ReferralCode.created_at.desc()).all()
            return [ReferralCodeRecord.model_validate(r) for r in rows]

    def validate_code(self, code: str, now: Optional[datetime] = None) -> CodeValidationResponse:
        """Read-only pre-signup check; never mutates usage."""
        now = now or utcnow()
        try:
            record = self.resolve_for_redemption(code)
        except CodeNotFound as e:
            return CodeValidationResponse(valid=False, reason=e.reason)

        rejection = ExpiryPolicy.rejection(record, now)
        if rejection is not None:
            return CodeValidationResponse(valid=False, reason=rejection.reason)
        return CodeValidationResponse(valid=True, remaining_uses=record.remaining_uses, referral_code=record)

    @staticmethod
    def format_error(code: str) -> Optional[str]:
        if len(code) < settings.custom_code_min_length:
            return f"Code must be at least {settings.custom_code_min_length} characters long"
        if len(code) > settings.custom_code_max_length:
            return f"Code must be at most {settings.custom_code_max_length} characters long"
        if not CUSTOM_CODE_PATTERN.match(code):
            return "Code may only contain letters, digits, '-' and '_'"
        return None

    def check_custom_code(self, code: str) -> CustomCodeCheckResponse:
        code = code.strip()
        error = self.format_error(code)
        if error:
            return CustomCodeCheckResponse(is_valid=False, error=error)

        with self.database.session() as session:
            taken = self._is_taken(session, normalize_code(code))
        if not taken:
            return CustomCodeCheckResponse(is_valid=True)

        return CustomCodeCheckResponse(
            is_valid=False,
            error="This referral code is already taken. Please choose a different one.",
            suggestions=self.suggest_alternatives(code),
        )

    def suggest_alternatives(self, base: str, count: Optional[int] = None) -> list[str]:
        """Available codes close to ``base``: numbered first, then random suffixes."""
        count = count or settings.code_suggestion_count
        candidates = []
        for n in range(1, count * 2 + 1):
            suffix = str(n)
            candidates.append(base[: settings.custom_code_max_length - len(suffix)] + suffix)
        for _ in range(count):
            suffix = generate_code(3)
            candidates.append(base[: settings.custom_code_max_length - len(suffix)] + suffix)

        with self.database.session() as session:
            taken = {
                value for (value,) in session.query(ReferralCode.code_normalized).filter(
                    ReferralCode.code_normalized.in_([normalize_code(c) for c in candidates])
                )
            }

        suggestions = []
        seen = set()
        for candidate in candidates:
            normalized = normalize_code(candidate)
            if normalized in taken or normalized in seen:
                continue
            seen.add(normalized)
            suggestions.append(candidate)
            if len(suggestions) == count:
                break
        return suggestions
