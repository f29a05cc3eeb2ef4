from typing import Optional

from .analytics import AnalyticsAggregator
from .db import Database
from .ledger import PointsAccount, RedemptionLedger
from .registry import CodeRegistry


class ReferralService:
    """Wires the engine components over one database."""

    def __init__(self, database: Optional[Database] = None):
        self.database = database or Database()
        self.registry = CodeRegistry(self.database)
        self.ledger = RedemptionLedger(self.database, self.registry)
        self.points = PointsAccount(self.database)
        self.analytics = AnalyticsAggregator(self.database)

    def init_storage(self) -> None:
        self.database.create_tables()
