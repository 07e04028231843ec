"""
Shareout Workflow Module

Each member decides per period whether to take out their savings. Once the
period is completed an administrator completes the shareout: the member's
unshared deposits and unsettled interest for the period are snapshotted onto
the decision and flagged as paid. A completed decision can no longer change.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
import logging
import uuid

from .currency import Money, Currency, sum_money
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .members import MemberDirectory
from .periods import PeriodManager, PeriodStatus
from .savings import SavingsLedger
from .interest import InterestDistributionEngine
from .errors import (
    NotFoundError, PreconditionFailed, PeriodNotCompleted, DecisionLocked, DuplicateDecision
)
from .config import SaccoConfig, get_config


logger = logging.getLogger(__name__)


@dataclass
class ShareoutDecision(StorageRecord):
    """A member's shareout choice for one period"""
    member_id: str
    period_id: str
    wants_shareout: bool
    savings_balance: Money
    interest_amount: Money
    shareout_completed: bool = False
    decision_made_at: Optional[datetime] = None
    shareout_completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    @property
    def total_payout(self) -> Money:
        return self.savings_balance + self.interest_amount


class ShareoutWorkflow(EventPublisherMixin):
    """
    Collects shareout decisions and completes them
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        members: MemberDirectory,
        periods: PeriodManager,
        savings: SavingsLedger,
        interest: InterestDistributionEngine,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[SaccoConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.members = members
        self.periods = periods
        self.savings = savings
        self.interest = interest
        self.event_dispatcher = event_dispatcher
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.table_name = "shareout_decisions"
        self.storage.register_unique(self.table_name, ("member_id", "period_id"))

    def _preview(self, member_id: str, period_id: str) -> tuple:
        balance = sum_money((d.amount for d in self.savings.unshared_deposits(member_id, period_id)), self.currency)
        return balance, self.interest.pending_interest(member_id, period_id)

    def decide(self, member_id: str, period_id: str, wants_shareout: bool) -> ShareoutDecision:
        """
        Record or revise a member's shareout choice

        Raises:
            DecisionLocked: the shareout was already completed
            DuplicateDecision: a concurrent first decision won the race
        """
        self.members.get_member(member_id)
        self.periods.get_period(period_id)

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            balance, interest = self._preview(member_id, period_id)
            decision = self.get_decision(member_id, period_id)

            if decision is None:
                decision = ShareoutDecision(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    member_id=member_id,
                    period_id=period_id,
                    wants_shareout=wants_shareout,
                    savings_balance=balance,
                    interest_amount=interest,
                    decision_made_at=now
                )
                try:
                    self.storage.save(self.table_name, decision.id, decision.to_dict())
                except DuplicateKeyError:
                    raise DuplicateDecision(f"Member {member_id} already decided for period {period_id}",
                                            member_id=member_id, period_id=period_id)
            else:
                if decision.shareout_completed:
                    raise DecisionLocked(f"Shareout for member {member_id} in period {period_id} is already completed",
                                         member_id=member_id, period_id=period_id)
                decision.wants_shareout = wants_shareout
                decision.savings_balance = balance
                decision.interest_amount = interest
                decision.decision_made_at = now
                decision.updated_at = now
                self.storage.save(self.table_name, decision.id, decision.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.SHAREOUT_DECIDED,
                entity_type="shareout_decision",
                entity_id=decision.id,
                metadata={"member_id": member_id, "period_id": period_id, "wants_shareout": wants_shareout},
                user_id=member_id
            )
            self.publish_event(DomainEvent.SHAREOUT_DECIDED, "shareout_decision", decision.id,
                               {"member_id": member_id, "period_id": period_id, "wants_shareout": wants_shareout})

        return decision

    def complete_shareout(self, member_id: str, period_id: str, completed_by: str) -> ShareoutDecision:
        """
        Pay out a member's savings and interest for a completed period

        Returns:
            The locked decision with the paid amounts snapshotted
        """
        with self.storage.atomic():
            decision = self.get_decision(member_id, period_id)
            if decision is None:
                raise NotFoundError("shareout_decision", f"{member_id}/{period_id}")
            if decision.shareout_completed:
                raise DecisionLocked(f"Shareout for member {member_id} in period {period_id} is already completed",
                                     member_id=member_id, period_id=period_id)
            if not decision.wants_shareout:
                raise PreconditionFailed(f"Member {member_id} did not opt in to the shareout",
                                         code="SHAREOUT_NOT_REQUESTED", member_id=member_id, period_id=period_id)
            period = self.periods.get_period(period_id)
            if period.status != PeriodStatus.COMPLETED:
                raise PeriodNotCompleted(f"{period.name} must be completed before its shareout",
                                         period_id=period_id)

            now = datetime.now(timezone.utc)
            deposits = self.savings.unshared_deposits(member_id, period_id)
            for deposit in deposits:
                self.savings.mark_shared_out(deposit, completed_by, now)
            distributions = self.interest.unsettled_distributions(member_id, period_id)
            for distribution in distributions:
                self.interest.settle(distribution, now)

            decision.savings_balance = sum_money((d.amount for d in deposits), self.currency)
            decision.interest_amount = sum_money((d.amount for d in distributions), self.currency)
            decision.shareout_completed = True
            decision.shareout_completed_at = now
            decision.completed_by = completed_by
            decision.updated_at = now
            self.storage.save(self.table_name, decision.id, decision.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.SHAREOUT_COMPLETED,
                entity_type="shareout_decision",
                entity_id=decision.id,
                metadata={
                    "member_id": member_id,
                    "period_id": period_id,
                    "savings_balance": decision.savings_balance,
                    "interest_amount": decision.interest_amount,
                    "deposits": len(deposits),
                    "distributions": len(distributions)
                },
                user_id=completed_by
            )
            self.publish_event(DomainEvent.SHAREOUT_COMPLETED, "shareout_decision", decision.id, {
                "member_id": member_id,
                "period_id": period_id,
                "total_payout": str(decision.total_payout.amount)
            })

        logger.info(f"Shareout completed for member {member_id}: {decision.total_payout.to_string()}")
        return decision

    def get_decision(self, member_id: str, period_id: str) -> Optional[ShareoutDecision]:
        found = self.storage.find(self.table_name, {"member_id": member_id, "period_id": period_id})
        return ShareoutDecision.from_dict(found[0]) if found else None

    def list_decisions(self, period_id: str) -> List[ShareoutDecision]:
        decisions = [ShareoutDecision.from_dict(d) for d in self.storage.find(self.table_name, {"period_id": period_id})]
        decisions.sort(key=lambda d: d.created_at)
        return decisions

    def pending_decisions(self, period_id: str) -> List[ShareoutDecision]:
        """Members who opted in but have not been paid yet"""
        return [d for d in self.list_decisions(period_id) if d.wants_shareout and not d.shareout_completed]
