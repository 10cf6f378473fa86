from typing import Optional

from .agents import AgentService
from .bulk import BulkActionCoordinator
from .config import Settings, get_settings
from .database import Database
from .earnings import EarningEngine
from .payouts import PayoutService
from .reporting import LedgerReports
from .store import LedgerStore


class LedgerService:
    """Wires the store and the services built on it around one database."""

    def __init__(self, database: Optional[Database] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.database = database or Database.from_settings(self.settings)
        self.store = LedgerStore(self.database, self.settings)
        self.agents = AgentService(self.store)
        self.earnings = EarningEngine(self.store)
        self.payouts = PayoutService(self.store)
        self.bulk = BulkActionCoordinator(self.payouts, self.earnings)
        self.reports = LedgerReports(self.store)

    def create_tables(self) -> None:
        self.database.create_all()

    def close(self) -> None:
        self.database.dispose()
