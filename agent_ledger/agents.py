"""Agent registry: creation on approval, onboarding status, referral codes."""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from .exceptions import DuplicateReferenceError
from .models import (
    Agent,
    AgentStatus,
    CreateAgentRequest,
    CreateReferralCodeRequest,
    ReferralCode,
    ReferralCodeStatus,
)
from .state_machine import validate_agent_transition
from .store import ZERO, LedgerStore
from .tables import AgentRecord, ReferralCodeRecord

logger = logging.getLogger(__name__)


class AgentService:
    def __init__(self, store: LedgerStore):
        self.store = store
        self.settings = store.settings

    def create_agent(
        self,
        request: CreateAgentRequest,
        status: AgentStatus = AgentStatus.APPLICATION_APPROVED,
    ) -> Agent:
        """Create an agent once their application is approved. Balances start at zero."""
        def work(session):
            existing = session.scalars(
                select(AgentRecord.id).where(AgentRecord.agent_code == request.agent_code)
            ).first()
            if existing is not None:
                raise DuplicateReferenceError(
                    request.agent_code, existing,
                    message=f"Agent code '{request.agent_code}' is already taken",
                )

            now = datetime.now(timezone.utc)
            agent = AgentRecord(
                agent_code=request.agent_code,
                user_id=request.user_id,
                first_name=request.first_name,
                last_name=request.last_name,
                email=request.email,
                status=status.value,
                tier=request.tier.value,
                commission_rate=(
                    request.commission_rate
                    if request.commission_rate is not None
                    else Decimal(str(self.settings.default_commission_rate))
                ),
                available_balance=ZERO,
                pending_balance=ZERO,
                reserved_balance=ZERO,
                total_earnings=ZERO,
                total_paid_out=ZERO,
                total_referrals=0,
                activated_at=now if status == AgentStatus.ACTIVE else None,
            )
            session.add(agent)
            session.flush()
            return Agent.model_validate(agent)

        agent = self.store.atomic(work)
        logger.info(f"Created agent {agent.agent_code} ({agent.status.value})", extra={"agent_id": agent.id})
        return agent

    def get_agent(self, agent_id: UUID) -> Agent:
        return self.store.atomic(
            lambda session: Agent.model_validate(self.store.get_agent(session, agent_id))
        )

    def update_status(self, agent_id: UUID, status: AgentStatus, reason: Optional[str] = None) -> Agent:
        def work(session):
            agent = self.store.get_agent(session, agent_id, lock=True)
            current = AgentStatus(agent.status)
            validate_agent_transition(current, status)
            agent.status = status.value
            if status == AgentStatus.ACTIVE and agent.activated_at is None:
                agent.activated_at = datetime.now(timezone.utc)
            session.flush()
            return current, Agent.model_validate(agent)

        previous, agent = self.store.atomic(work)
        logger.info(
            f"Agent {agent.agent_code}: {previous.value} -> {status.value}"
            + (f" ({reason})" if reason else ""),
            extra={"agent_id": agent_id},
        )
        return agent

    def suspend(self, agent_id: UUID, reason: Optional[str] = None) -> Agent:
        return self.update_status(agent_id, AgentStatus.SUSPENDED, reason)

    def resume(self, agent_id: UUID, reason: Optional[str] = None) -> Agent:
        return self.update_status(agent_id, AgentStatus.ACTIVE, reason)

    def create_referral_code(self, agent_id: UUID, request: CreateReferralCodeRequest) -> ReferralCode:
        def work(session):
            self.store.get_agent(session, agent_id)
            existing = session.scalars(
                select(ReferralCodeRecord.id).where(ReferralCodeRecord.code == request.code)
            ).first()
            if existing is not None:
                raise DuplicateReferenceError(
                    request.code, existing,
                    message=f"Referral code '{request.code}' is already taken",
                )
            code = ReferralCodeRecord(
                code=request.code,
                agent_id=agent_id,
                type=request.type.value,
                description=request.description,
                bonus_commission_rate=request.bonus_commission_rate,
                max_uses=request.max_uses,
                current_uses=0,
                status=ReferralCodeStatus.ACTIVE.value,
                expires_at=request.expires_at,
            )
            session.add(code)
            session.flush()
            return ReferralCode.model_validate(code)

        code = self.store.atomic(work)
        logger.info(f"Issued referral code {code.code}", extra={"agent_id": agent_id})
        return code

    def list_referral_codes(self, agent_id: UUID) -> List[ReferralCode]:
        def work(session):
            self.store.get_agent(session, agent_id)
            codes = session.scalars(
                select(ReferralCodeRecord)
                .where(ReferralCodeRecord.agent_id == agent_id)
                .order_by(ReferralCodeRecord.created_at.desc())
            ).all()
            return [ReferralCode.model_validate(c) for c in codes]

        return self.store.atomic(work)
