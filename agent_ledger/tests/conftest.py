from decimal import Decimal

import pytest

from agent_ledger.config import Settings
from agent_ledger.database import Database
from agent_ledger.models import (
    AgentStatus,
    CreateAgentRequest,
    CreateEarningAdjustmentRequest,
    CreatePayoutRequest,
)
from agent_ledger.service import LedgerService

BANK_DETAILS = {
    "bankAccount": {
        "accountNumber": "000123456789",
        "routingNumber": "110000000",
        "accountName": "John Agent",
        "bankName": "First Bank",
    }
}


@pytest.fixture
def settings() -> Settings:
    """Settings for an isolated in-memory ledger."""
    return Settings(database_url="sqlite://", minimum_payout_amount=Decimal("3"))


@pytest.fixture
def ledger(settings):
    """Ledger service on a fresh in-memory database."""
    service = LedgerService(Database(settings.database_url), settings)
    service.create_tables()
    yield service
    service.close()


@pytest.fixture
def make_agent():
    """Create an active agent on the given ledger."""
    def _make(ledger, agent_code="AGT001", status=AgentStatus.ACTIVE):
        return ledger.agents.create_agent(
            CreateAgentRequest(agent_code=agent_code, first_name="John", last_name="Agent"),
            status=status,
        )
    return _make


@pytest.fixture
def fund():
    """Credit confirmed funds to an agent through an admin bonus."""
    def _fund(ledger, agent_id, amount, reference_id="funding-001"):
        return ledger.earnings.create_adjustment(
            agent_id,
            CreateEarningAdjustmentRequest(
                amount=Decimal(amount), type="bonus", reason="Test funding", reference_id=reference_id
            ),
        )
    return _fund


@pytest.fixture
def payout_request():
    """Build a bank transfer payout request."""
    def _request(amount, reference_id=None):
        return CreatePayoutRequest(
            amount=Decimal(amount),
            method="bank_transfer",
            payment_details=BANK_DETAILS,
            reference_id=reference_id,
        )
    return _request


@pytest.fixture
def active_agent(ledger, make_agent):
    """Active agent with zero balances."""
    return make_agent(ledger)


@pytest.fixture
def funded_agent(ledger, active_agent, fund):
    """Active agent with 100.00 available."""
    fund(ledger, active_agent.id, "100.00")
    return ledger.agents.get_agent(active_agent.id)
