from datetime import datetime, timezone
from uuid import UUID

import pytest

from referrals.db import Database
from referrals.models import CreateCodeRequest
from referrals.service import ReferralService


OWNER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_OWNER_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'referrals.db'}", echo=False)
    db.create_tables()
    yield db
    db.drop_tables()
    db.dispose()


@pytest.fixture
def service(database):
    return ReferralService(database)


@pytest.fixture
def make_code(service):
    def _make(owner_id=OWNER_ID, **kwargs):
        return service.registry.create_code(CreateCodeRequest(owner_id=owner_id, **kwargs), now=NOW)
    return _make
