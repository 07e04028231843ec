"""
Savings Ledger Module

Tracks per-period savings targets and the append-only list of member
deposits. A deposit is only ever modified once: when it is shared out after
its period has completed.

Targets are derived from the member's savings category; each monthly target
is split into main savings, social fund and welfare fund.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any
import logging
import uuid

from .currency import Money, Currency, to_money, sum_money
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .members import MemberDirectory, SavingsCategory
from .periods import PeriodManager, PeriodStatus
from .errors import (
    ValidationError, NotFoundError, DuplicateTarget, CategoryRequired,
    PeriodNotActive, PeriodNotCompleted, AlreadySharedOut
)
from .config import SaccoConfig, get_config


logger = logging.getLogger(__name__)


@dataclass
class SavingsTarget(StorageRecord):
    """Monthly savings target of a member for one period; immutable once set"""
    member_id: str
    period_id: str
    monthly_target: Money
    category: SavingsCategory


@dataclass
class SavingDeposit(StorageRecord):
    """A single recorded deposit"""
    member_id: str
    period_id: str
    amount: Money
    saved_on: date
    recorded_by: str
    notes: Optional[str] = None
    shared_out: bool = False
    shared_out_at: Optional[datetime] = None


@dataclass
class PeriodProgress:
    """Saved amount against the expected amount for a period"""
    member_id: str
    period_id: str
    monthly_target: Money
    months: int
    expected_total: Money
    saved_total: Money

    @property
    def remaining(self) -> Money:
        gap = self.expected_total - self.saved_total
        return gap if gap.is_positive() else Money.zero(gap.currency)

    @property
    def percent_complete(self) -> Decimal:
        if self.expected_total.is_zero():
            return Decimal('0')
        return (self.saved_total.amount / self.expected_total.amount * 100).quantize(Decimal('0.01'))


class SavingsLedger(EventPublisherMixin):
    """
    Records savings targets and deposits against periods
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        members: MemberDirectory,
        periods: PeriodManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[SaccoConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.members = members
        self.periods = periods
        self.event_dispatcher = event_dispatcher
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.targets_table = "savings_targets"
        self.deposits_table = "saving_deposits"
        self.storage.register_unique(self.targets_table, ("member_id", "period_id"))

    def _money(self, value: Any) -> Money:
        try:
            return to_money(value, self.currency)
        except (ValueError, TypeError) as e:
            raise ValidationError(str(e))

    # Targets

    def category_target(self, category: SavingsCategory) -> Money:
        """Monthly target for a savings category"""
        if category == SavingsCategory.NONE:
            raise CategoryRequired("A savings category is required to derive a target")
        return self._money(self.config.category_targets[category.value])

    def target_breakdown(self, category: SavingsCategory) -> Dict[str, Money]:
        """
        Split the category's monthly target by the configured percentages.

        The main savings bucket absorbs the rounding remainder so the parts
        always sum to the target exactly.
        """
        target = self.category_target(category)
        buckets = list(self.config.savings_breakdown.items())
        main_key = "main_savings" if "main_savings" in self.config.savings_breakdown else buckets[0][0]

        parts: Dict[str, Money] = {}
        for key, percentage in buckets:
            if key != main_key:
                parts[key] = target * (Decimal(percentage) / Decimal('100'))
        parts[main_key] = target - sum_money(parts.values(), self.currency)
        return {key: parts[key] for key, _ in buckets}

    def set_target(self, member_id: str, period_id: str, actor_id: Optional[str] = None) -> SavingsTarget:
        """
        Fix a member's monthly target for a period from their category

        Raises:
            CategoryRequired: member has no savings category
            DuplicateTarget: a target already exists for (member, period)
        """
        member = self.members.get_member(member_id)
        period = self.periods.get_period(period_id)
        if member.category == SavingsCategory.NONE:
            raise CategoryRequired(f"Member {member_id} has no savings category", member_id=member_id)

        now = datetime.now(timezone.utc)
        target = SavingsTarget(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            period_id=period.id,
            monthly_target=self.category_target(member.category),
            category=member.category
        )

        with self.storage.atomic():
            try:
                self.storage.save(self.targets_table, target.id, target.to_dict())
            except DuplicateKeyError:
                raise DuplicateTarget(f"Target already set for member {member_id} in period {period.name}",
                                      member_id=member_id, period_id=period_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_TARGET_SET,
                entity_type="savings_target",
                entity_id=target.id,
                metadata={
                    "member_id": member_id,
                    "period_id": period_id,
                    "monthly_target": target.monthly_target,
                    "category": member.category.value
                },
                user_id=actor_id
            )
            self.publish_event(DomainEvent.TARGET_SET, "savings_target", target.id,
                               {"member_id": member_id, "period_id": period_id,
                                "monthly_target": str(target.monthly_target.amount)})

        return target

    def get_target(self, member_id: str, period_id: str) -> Optional[SavingsTarget]:
        found = self.storage.find(self.targets_table, {"member_id": member_id, "period_id": period_id})
        return SavingsTarget.from_dict(found[0]) if found else None

    # Deposits

    def record_deposit(
        self,
        member_id: str,
        period_id: str,
        amount: Any,
        recorder_id: str,
        saved_on: Optional[date] = None,
        notes: Optional[str] = None
    ) -> SavingDeposit:
        """
        Append a deposit to the ledger

        Args:
            member_id: Depositing member
            period_id: Period the deposit counts towards; must be active
            amount: Positive amount (Money or Decimal-compatible value)
            recorder_id: Member who recorded the deposit
            saved_on: Date of the deposit, defaults to today
            notes: Free text

        Returns:
            Created SavingDeposit
        """
        money = self._money(amount)
        if not money.is_positive():
            raise ValidationError("Deposit amount must be positive", amount=money.amount)

        self.members.get_member(member_id)

        with self.storage.atomic():
            period = self.periods.get_period(period_id)
            if period.status != PeriodStatus.ACTIVE:
                raise PeriodNotActive(
                    f"Deposits can only be recorded in the active period; {period.name} is {period.status.value}",
                    period_id=period_id
                )

            now = datetime.now(timezone.utc)
            deposit = SavingDeposit(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_id=member_id,
                period_id=period_id,
                amount=money,
                saved_on=saved_on or now.date(),
                recorded_by=recorder_id,
                notes=notes
            )
            self.storage.save(self.deposits_table, deposit.id, deposit.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_RECORDED,
                entity_type="deposit",
                entity_id=deposit.id,
                metadata={"member_id": member_id, "period_id": period_id, "amount": money},
                user_id=recorder_id
            )
            self.publish_event(DomainEvent.DEPOSIT_RECORDED, "deposit", deposit.id,
                               {"member_id": member_id, "period_id": period_id, "amount": str(money.amount)})

        logger.info(f"Recorded deposit {deposit.id} of {money.to_string()} for member {member_id}")
        return deposit

    def get_deposit(self, deposit_id: str) -> SavingDeposit:
        data = self.storage.load(self.deposits_table, deposit_id)
        if data is None:
            raise NotFoundError("deposit", deposit_id)
        return SavingDeposit.from_dict(data)

    def list_deposits(self, member_id: str, period_id: Optional[str] = None) -> List[SavingDeposit]:
        filters = {"member_id": member_id}
        if period_id is not None:
            filters["period_id"] = period_id
        deposits = [SavingDeposit.from_dict(d) for d in self.storage.find(self.deposits_table, filters)]
        deposits.sort(key=lambda d: (d.saved_on, d.created_at))
        return deposits

    def unshared_deposits(self, member_id: str, period_id: str) -> List[SavingDeposit]:
        return [d for d in self.list_deposits(member_id, period_id) if not d.shared_out]

    def quarter_total(self, member_id: str, period_id: str) -> Money:
        """Everything the member saved in the period, shared-out deposits included"""
        return sum_money((d.amount for d in self.list_deposits(member_id, period_id)), self.currency)

    def available_balance(self, member_id: str) -> Money:
        """Deposits not yet shared out, across all periods"""
        return sum_money((d.amount for d in self.list_deposits(member_id) if not d.shared_out), self.currency)

    def mark_shared_out(self, deposit: SavingDeposit, actor_id: Optional[str], when: datetime) -> SavingDeposit:
        deposit.shared_out = True
        deposit.shared_out_at = when
        deposit.updated_at = when
        self.storage.save(self.deposits_table, deposit.id, deposit.to_dict())
        self.audit_trail.log_event(
            event_type=AuditEventType.DEPOSIT_SHARED_OUT,
            entity_type="deposit",
            entity_id=deposit.id,
            metadata={"member_id": deposit.member_id, "amount": deposit.amount},
            user_id=actor_id
        )
        return deposit

    def share_out_deposit(self, deposit_id: str, actor_id: Optional[str] = None) -> SavingDeposit:
        """
        Flag a deposit as paid back to the member

        Raises:
            AlreadySharedOut: the deposit was already shared out
            PeriodNotCompleted: the deposit's period is still open
        """
        with self.storage.atomic():
            deposit = self.get_deposit(deposit_id)
            if deposit.shared_out:
                raise AlreadySharedOut(f"Deposit {deposit_id} was already shared out", deposit_id=deposit_id)
            period = self.periods.get_period(deposit.period_id)
            if period.status != PeriodStatus.COMPLETED:
                raise PeriodNotCompleted(
                    f"Deposits can only be shared out after {period.name} is completed",
                    period_id=period.id
                )
            return self.mark_shared_out(deposit, actor_id, datetime.now(timezone.utc))

    # Reporting

    def period_progress(self, member_id: str, period_id: str) -> PeriodProgress:
        """Target for the whole period against what was saved"""
        period = self.periods.get_period(period_id)
        target = self.get_target(member_id, period_id)
        monthly = target.monthly_target if target else Money.zero(self.currency)
        return PeriodProgress(
            member_id=member_id,
            period_id=period_id,
            monthly_target=monthly,
            months=period.months,
            expected_total=monthly * period.months,
            saved_total=self.quarter_total(member_id, period_id)
        )

    def year_savings(self, member_id: str, year: int) -> Money:
        period_ids = {p.id for p in self.periods.periods_for_year(year)}
        return sum_money(
            (d.amount for d in self.list_deposits(member_id) if d.period_id in period_ids),
            self.currency
        )

    def total_savings(self, member_id: str) -> Money:
        return sum_money((d.amount for d in self.list_deposits(member_id)), self.currency)

    def period_summary(self, period_id: str) -> Dict[str, Any]:
        """Totals over all deposits of a period"""
        self.periods.get_period(period_id)
        deposits = [SavingDeposit.from_dict(d) for d in self.storage.find(self.deposits_table, {"period_id": period_id})]
        return {
            "period_id": period_id,
            "total": sum_money((d.amount for d in deposits), self.currency),
            "deposit_count": len(deposits),
            "member_count": len({d.member_id for d in deposits}),
            "shared_out_count": sum(1 for d in deposits if d.shared_out),
        }
