"""
Interest Distribution Module

Distributes the interest collected on completed loans:

1. When a loan completes, half of its interest (borrower_rebate_ratio) is
   returned to the borrower as a loan_bearer_return distribution. This runs
   as a critical loan.completed subscriber, inside the repayment transaction.
2. The other half stays in the pool. At year end the pool interest of every
   completed loan is split between the committee (flat per head) and the
   regular members (pro-rata by savings, or equally), and each member's
   total is recorded as an IndividualYearShare awaiting disbursement.
   Those shares are paid only through disburse_share; the quarterly
   shareout settles borrower rebates alone.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import uuid

from .currency import Money, Currency, allocate, sum_money
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from .members import MemberDirectory, Member
from .periods import PeriodManager
from .savings import SavingsLedger
from .loans import LoanEngine, Loan, LoanStatus, ACTIVE_STATUSES, DISTRIBUTIONS_TABLE
from .errors import (
    InvalidTransition, NotFoundError, PreconditionFailed, PeriodNotCompleted,
    DuplicateYearShareout
)
from .config import SaccoConfig, get_config


logger = logging.getLogger(__name__)


class ShareType(Enum):
    """Kind of interest distribution"""
    LOAN_BEARER_RETURN = "loan_bearer_return"
    COMMITTEE_SHARE = "committee_share"
    MEMBER_SHARE = "member_share"


class YearShareType(Enum):
    COMMITTEE_MEMBER = "committee_member"
    REGULAR_MEMBER = "regular_member"


# Distributions paid out with the member's quarterly shareout. Committee and
# member shares are paid through the IndividualYearShare instead.
SETTLEABLE_TYPES = (ShareType.LOAN_BEARER_RETURN,)


@dataclass
class InterestDistribution(StorageRecord):
    """Interest credited to one member from one loan"""
    period_id: str
    loan_id: str
    recipient_member_id: str
    amount: Money
    type: ShareType
    description: str
    distributed_date: date
    settled: bool = False
    settled_at: Optional[datetime] = None
    year_end_shareout_id: Optional[str] = None


@dataclass
class YearEndShareout(StorageRecord):
    """Year-end split of the interest pool"""
    year: int
    total_interest_pool: Money
    committee_total_share: Money
    members_total_share: Money
    is_completed: bool = False
    shareout_date: Optional[date] = None


@dataclass
class IndividualYearShare(StorageRecord):
    """One member's total from a year-end shareout"""
    year_end_shareout_id: str
    member_id: str
    amount: Money
    share_type: YearShareType
    is_disbursed: bool = False
    disbursed_date: Optional[date] = None


class InterestDistributionEngine(EventPublisherMixin):
    """
    Records borrower rebates and runs the year-end interest shareout
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        members: MemberDirectory,
        periods: PeriodManager,
        loans: LoanEngine,
        savings: SavingsLedger,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[SaccoConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.members = members
        self.periods = periods
        self.loans = loans
        self.savings = savings
        self.event_dispatcher = event_dispatcher
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.table_name = DISTRIBUTIONS_TABLE
        self.shareouts_table = "year_end_shareouts"
        self.shares_table = "individual_year_shares"

        self.storage.register_unique(self.table_name, ("loan_id", "type", "recipient_member_id"))
        self.storage.register_unique(self.shareouts_table, ("year",))
        self.storage.register_unique(self.shares_table, ("year_end_shareout_id", "member_id"))

        if event_dispatcher is not None:
            event_dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, self.handle_loan_completed, critical=True)

    # Borrower rebate

    def handle_loan_completed(self, event: EventPayload) -> None:
        """loan.completed subscriber"""
        self.record_borrower_rebate(self.loans.get_loan(event.entity_id))

    def borrower_rebate(self, loan: Loan) -> Money:
        return loan.interest_amount * Decimal(self.config.borrower_rebate_ratio)

    def pool_interest(self, loan: Loan) -> Money:
        """Interest of a loan that stays in the pool after the borrower rebate"""
        return loan.interest_amount - self.borrower_rebate(loan)

    def record_borrower_rebate(self, loan: Loan) -> InterestDistribution:
        """
        Return part of a completed loan's interest to its borrower.

        Idempotent: a second call for the same loan returns the existing
        distribution.
        """
        if loan.status != LoanStatus.COMPLETED:
            raise InvalidTransition("loan", loan.id, loan.status.value, LoanStatus.COMPLETED.value,
                                    "distribute interest of")

        with self.storage.atomic():
            existing = self.storage.find(self.table_name, {
                "loan_id": loan.id,
                "type": ShareType.LOAN_BEARER_RETURN.value
            })
            if existing:
                return InterestDistribution.from_dict(existing[0])

            rebate = self.borrower_rebate(loan)
            distribution = self._distribute(
                loan, loan.member_id, rebate, ShareType.LOAN_BEARER_RETURN,
                f"Interest returned to borrower of {loan.loan_number}",
                loan.actual_repayment_date or date.today()
            )

        logger.info(f"Returned {rebate.to_string()} interest to borrower of {loan.loan_number}")
        return distribution

    def _distribute(self, loan: Loan, member_id: str, amount: Money, share_type: ShareType,
                    description: str, on: date, shareout_id: Optional[str] = None) -> InterestDistribution:
        now = datetime.now(timezone.utc)
        distribution = InterestDistribution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            period_id=loan.period_id,
            loan_id=loan.id,
            recipient_member_id=member_id,
            amount=amount,
            type=share_type,
            description=description,
            distributed_date=on,
            year_end_shareout_id=shareout_id
        )
        self.storage.save(self.table_name, distribution.id, distribution.to_dict())
        self.audit_trail.log_event(
            event_type=AuditEventType.INTEREST_DISTRIBUTED,
            entity_type="interest_distribution",
            entity_id=distribution.id,
            metadata={
                "loan_id": loan.id,
                "recipient_member_id": member_id,
                "amount": amount,
                "type": share_type.value
            }
        )
        self.publish_event(DomainEvent.INTEREST_DISTRIBUTED, "interest_distribution", distribution.id, {
            "loan_id": loan.id,
            "recipient_member_id": member_id,
            "amount": str(amount.amount),
            "type": share_type.value
        })
        return distribution

    # Year end

    def completed_loans_for_year(self, year: int) -> List[Loan]:
        period_ids = {p.id for p in self.periods.periods_for_year(year)}
        return [loan for loan in self.loans.list_loans(status=LoanStatus.COMPLETED)
                if loan.period_id in period_ids]

    def outstanding_loans_for_year(self, year: int) -> List[Loan]:
        """Loans of the year that can still complete and add to its pool"""
        period_ids = {p.id for p in self.periods.periods_for_year(year)}
        return [loan for loan in self.loans.list_loans()
                if loan.period_id in period_ids and loan.status in ACTIVE_STATUSES]

    def year_interest_pool(self, year: int) -> Money:
        return sum_money((self.pool_interest(loan) for loan in self.completed_loans_for_year(year)), self.currency)

    def _member_weights(self, regular: List[Member], year: int) -> List[Decimal]:
        if self.config.member_share_basis == "savings":
            weights = [self.savings.year_savings(m.id, year).amount for m in regular]
            if any(w > 0 for w in weights):
                return weights
        return [Decimal('1')] * len(regular)

    def run_year_end_shareout(self, year: int, actor_id: Optional[str] = None) -> YearEndShareout:
        """
        Split the year's pooled interest among committee and members

        Raises:
            DuplicateYearShareout: the year was already shared out
            PeriodNotCompleted: some period of the year is still open
            PreconditionFailed: a loan of the year is still open, or there is
                nobody to distribute to
        """
        with self.storage.atomic():
            if self.storage.find(self.shareouts_table, {"year": year}):
                raise DuplicateYearShareout(f"Year {year} has already been shared out", year=year)
            if not self.periods.year_is_closed(year):
                raise PeriodNotCompleted(f"Every period of {year} must be completed before the year-end shareout",
                                         year=year)
            outstanding = self.outstanding_loans_for_year(year)
            if outstanding:
                raise PreconditionFailed(
                    f"{len(outstanding)} loan(s) of {year} are still open; complete, reject or default them first",
                    code="LOANS_OUTSTANDING", year=year,
                    loans=", ".join(sorted(loan.loan_number for loan in outstanding))
                )

            committee = self.members.committee_members()
            regular = self.members.regular_members()
            if not committee and not regular:
                raise PreconditionFailed("No active members to share interest with", code="NO_RECIPIENTS", year=year)

            ratio = Decimal(self.config.committee_share_ratio)
            weights = self._member_weights(regular, year) if regular else []
            today = date.today()
            now = datetime.now(timezone.utc)
            zero = Money.zero(self.currency)

            shareout = YearEndShareout(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                year=year,
                total_interest_pool=zero,
                committee_total_share=zero,
                members_total_share=zero
            )
            try:
                self.storage.save(self.shareouts_table, shareout.id, shareout.to_dict())
            except DuplicateKeyError:
                raise DuplicateYearShareout(f"Year {year} has already been shared out", year=year)

            totals: Dict[str, Money] = {}
            pool_total = committee_total = members_total = zero

            for loan in sorted(self.completed_loans_for_year(year), key=lambda l: l.loan_number):
                pool = self.pool_interest(loan)
                if not pool.is_positive():
                    continue
                if not regular:
                    committee_part = pool
                elif not committee:
                    committee_part = zero
                else:
                    committee_part = pool * ratio
                member_part = pool - committee_part

                if committee_part.is_positive():
                    for member, part in zip(committee, allocate(committee_part, [Decimal('1')] * len(committee))):
                        if part.is_positive():
                            self._distribute(loan, member.id, part, ShareType.COMMITTEE_SHARE,
                                             f"Committee share of {loan.loan_number} interest", today, shareout.id)
                            totals[member.id] = totals.get(member.id, zero) + part
                if member_part.is_positive():
                    for member, part in zip(regular, allocate(member_part, weights)):
                        if part.is_positive():
                            self._distribute(loan, member.id, part, ShareType.MEMBER_SHARE,
                                             f"Member share of {loan.loan_number} interest", today, shareout.id)
                            totals[member.id] = totals.get(member.id, zero) + part

                pool_total = pool_total + pool
                committee_total = committee_total + committee_part
                members_total = members_total + member_part

            committee_ids = {m.id for m in committee}
            for member_id, amount in totals.items():
                share = IndividualYearShare(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    year_end_shareout_id=shareout.id,
                    member_id=member_id,
                    amount=amount,
                    share_type=(YearShareType.COMMITTEE_MEMBER if member_id in committee_ids
                                else YearShareType.REGULAR_MEMBER)
                )
                self.storage.save(self.shares_table, share.id, share.to_dict())

            shareout.total_interest_pool = pool_total
            shareout.committee_total_share = committee_total
            shareout.members_total_share = members_total
            shareout.is_completed = True
            shareout.shareout_date = today
            shareout.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.shareouts_table, shareout.id, shareout.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.YEAR_SHAREOUT_COMPLETED,
                entity_type="year_end_shareout",
                entity_id=shareout.id,
                metadata={
                    "year": year,
                    "total_interest_pool": pool_total,
                    "committee_total_share": committee_total,
                    "members_total_share": members_total,
                    "recipients": len(totals)
                },
                user_id=actor_id
            )
            self.publish_event(DomainEvent.YEAR_SHAREOUT_COMPLETED, "year_end_shareout", shareout.id, {
                "year": year,
                "total_interest_pool": str(pool_total.amount)
            })

        logger.info(f"Year {year} shareout: pool {pool_total.to_string()} to {len(totals)} members")
        return shareout

    def disburse_share(self, share_id: str, actor_id: Optional[str] = None) -> IndividualYearShare:
        """
        Mark a member's year-end share as paid out

        The committee and member distributions the share aggregates are
        settled with it.
        """
        with self.storage.atomic():
            data = self.storage.load(self.shares_table, share_id)
            if data is None:
                raise NotFoundError("individual_year_share", share_id)
            share = IndividualYearShare.from_dict(data)
            if share.is_disbursed:
                raise PreconditionFailed(f"Year share {share_id} was already disbursed",
                                         code="ALREADY_DISBURSED", share_id=share_id)

            now = datetime.now(timezone.utc)
            share.is_disbursed = True
            share.disbursed_date = date.today()
            share.updated_at = now
            self.storage.save(self.shares_table, share.id, share.to_dict())

            settled = 0
            for found in self.storage.find(self.table_name, {
                "year_end_shareout_id": share.year_end_shareout_id,
                "recipient_member_id": share.member_id
            }):
                distribution = InterestDistribution.from_dict(found)
                if not distribution.settled:
                    self.settle(distribution, now)
                    settled += 1

            self.audit_trail.log_event(
                event_type=AuditEventType.YEAR_SHARE_DISBURSED,
                entity_type="individual_year_share",
                entity_id=share.id,
                metadata={"member_id": share.member_id, "amount": share.amount, "distributions": settled},
                user_id=actor_id
            )
        return share

    # Settlement, used by the quarterly shareout

    def unsettled_distributions(self, member_id: str, period_id: str) -> List[InterestDistribution]:
        return [d for d in self.get_distributions(member_id=member_id, period_id=period_id)
                if d.type in SETTLEABLE_TYPES and not d.settled]

    def settle(self, distribution: InterestDistribution, when: datetime) -> InterestDistribution:
        distribution.settled = True
        distribution.settled_at = when
        distribution.updated_at = when
        self.storage.save(self.table_name, distribution.id, distribution.to_dict())
        return distribution

    # Queries

    def get_distributions(self, loan_id: Optional[str] = None, member_id: Optional[str] = None,
                          period_id: Optional[str] = None) -> List[InterestDistribution]:
        filters: Dict[str, Any] = {}
        if loan_id is not None:
            filters["loan_id"] = loan_id
        if member_id is not None:
            filters["recipient_member_id"] = member_id
        if period_id is not None:
            filters["period_id"] = period_id
        distributions = [InterestDistribution.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        distributions.sort(key=lambda d: (d.distributed_date, d.created_at))
        return distributions

    def pending_interest(self, member_id: str, period_id: str) -> Money:
        """Interest owed to the member for a period that has not been paid out yet"""
        return sum_money((d.amount for d in self.unsettled_distributions(member_id, period_id)), self.currency)

    def member_earnings(self, member_id: str, year: int) -> Dict[str, Money]:
        """Interest earned by a member during a year, per distribution type and in total"""
        period_ids = {p.id for p in self.periods.periods_for_year(year)}
        earnings = {share_type.value: Money.zero(self.currency) for share_type in ShareType}
        for distribution in self.get_distributions(member_id=member_id):
            if distribution.period_id in period_ids:
                key = distribution.type.value
                earnings[key] = earnings[key] + distribution.amount
        earnings["total"] = sum_money(list(earnings.values()), self.currency)
        return earnings

    def get_year_shareout(self, year: int) -> YearEndShareout:
        found = self.storage.find(self.shareouts_table, {"year": year})
        if not found:
            raise NotFoundError("year_end_shareout", str(year))
        return YearEndShareout.from_dict(found[0])

    def get_individual_shares(self, year: int) -> List[IndividualYearShare]:
        shareout = self.get_year_shareout(year)
        shares = [IndividualYearShare.from_dict(d)
                  for d in self.storage.find(self.shares_table, {"year_end_shareout_id": shareout.id})]
        shares.sort(key=lambda s: s.amount.amount, reverse=True)
        return shares
