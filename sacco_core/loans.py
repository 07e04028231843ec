"""
Loan Engine Module

Takes a member loan from application to repayment:

    pending -> approved -> disbursed -> completed
       |                      |
       +-> rejected           +-> defaulted

Interest is a flat rate on the principal (5% by default). Every repayment is
split into principal and interest in proportion to the loan total; the
closing repayment takes whatever interest is still uncollected so the
interest portions add up exactly. When the balance reaches zero the loan
completes and loan.completed is published inside the same transaction.

Loan rows carry a version number and are written with compare-and-swap.
"""

import calendar
from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import uuid

from .currency import Money, Currency, to_money, sum_money
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin, create_loan_event
from .members import MemberDirectory, SavingsCategory
from .periods import PeriodManager, PeriodStatus
from .errors import (
    ValidationError, InvalidTransition, NotFoundError, PeriodNotActive,
    ActiveLoanExists, DuplicateLoanNumber, ConcurrencyError, PreconditionFailed
)
from .config import SaccoConfig, get_config


logger = logging.getLogger(__name__)

DISTRIBUTIONS_TABLE = "interest_distributions"


class LoanStatus(Enum):
    """Loan lifecycle status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


ACTIVE_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.DISBURSED)


@dataclass
class Loan(StorageRecord):
    """Member loan"""
    member_id: str
    period_id: str
    loan_number: str
    principal: Money
    interest_rate: Decimal
    total_amount: Money
    amount_paid: Money
    outstanding_balance: Money
    purpose: str
    applied_date: date
    repayment_period_months: int
    expected_repayment_date: date
    status: LoanStatus = LoanStatus.PENDING
    admin_notes: Optional[str] = None
    approved_date: Optional[date] = None
    approved_by: Optional[str] = None
    disbursed_date: Optional[date] = None
    actual_repayment_date: Optional[date] = None
    version: int = 1

    @property
    def interest_amount(self) -> Money:
        return self.total_amount - self.principal

    @property
    def is_active(self) -> bool:
        """Pending, approved or disbursed loans block a new application"""
        return self.status in ACTIVE_STATUSES

    @property
    def is_fully_repaid(self) -> bool:
        return self.outstanding_balance.is_zero()


@dataclass
class LoanRepayment(StorageRecord):
    """A repayment against a disbursed loan"""
    loan_id: str
    amount: Money
    principal_portion: Money
    interest_portion: Money
    payment_date: date
    payment_method: Optional[str] = None
    recorded_by: Optional[str] = None
    notes: Optional[str] = None


def end_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def calculate_repayment_date(applied_on: date, repayment_period_months: int, cutoff_day: int = 22) -> date:
    """
    Due date of a loan.

    A one-month loan applied for before the cutoff day is due at the end of
    the same month; otherwise the loan is due at the end of the month reached
    by adding the repayment period.
    """
    if repayment_period_months == 1 and applied_on.day < cutoff_day:
        return end_of_month(applied_on.year, applied_on.month)
    month = applied_on.month - 1 + repayment_period_months
    return end_of_month(applied_on.year + month // 12, month % 12 + 1)


class LoanEngine(EventPublisherMixin):
    """
    Manages loan applications, approvals, disbursement and repayments
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
        self.table_name = "loans"
        self.repayments_table = "loan_repayments"
        self.archive_table = "loan_archive"
        self.storage.register_unique(self.table_name, ("loan_number",))

    def _money(self, value: Any) -> Money:
        try:
            return to_money(value, self.currency)
        except (ValueError, TypeError) as e:
            raise ValidationError(str(e))

    # Application

    def check_eligibility(self, member_id: str) -> None:
        """Raise ActiveLoanExists if the member still has an unfinished loan"""
        for loan in self.get_member_loans(member_id):
            if loan.is_active:
                raise ActiveLoanExists(
                    f"Member {member_id} already has loan {loan.loan_number} in status {loan.status.value}",
                    member_id=member_id, loan_id=loan.id
                )

    def has_active_loan(self, member_id: str) -> bool:
        return any(loan.is_active for loan in self.get_member_loans(member_id))

    def calculate_repayment_date(self, applied_on: date, repayment_period_months: int) -> date:
        return calculate_repayment_date(applied_on, repayment_period_months, self.config.repayment_cutoff_day)

    def available_repayment_months(self, today: date) -> List[int]:
        """Repayment periods a loan applied for today may choose without running past December"""
        months_to_year_end = 12 - today.month
        if months_to_year_end <= 0:
            months_to_year_end = 1 if today.day < self.config.repayment_cutoff_day else 0
        return [
            months for months in range(1, months_to_year_end + 1)
            if self.calculate_repayment_date(today, months).year == today.year
        ]

    def loan_limits(self, category: SavingsCategory) -> Optional[Dict[str, Money]]:
        """Informational loan range for a savings category; never enforced"""
        limits = self.config.category_loan_limits.get(category.value)
        if not limits:
            return None
        return {"min": self._money(limits["min"]), "max": self._money(limits["max"])}

    def _next_loan_number(self, year: int) -> int:
        prefix = f"{self.config.loan_number_prefix}-{year}-"
        highest = 0
        for data in self.storage.load_all(self.table_name):
            number = data.get("loan_number", "")
            if number.startswith(prefix) and number[len(prefix):].isdigit():
                highest = max(highest, int(number[len(prefix):]))
        return highest + 1

    def apply(
        self,
        member_id: str,
        period_id: str,
        principal: Any,
        purpose: str,
        expected_repayment_date: Optional[date] = None,
        repayment_period_months: int = 1,
        applied_on: Optional[date] = None
    ) -> Loan:
        """
        Submit a loan application

        Args:
            member_id: Applicant
            period_id: Period the loan is taken in; must be active
            principal: Positive amount borrowed
            purpose: What the loan is for
            expected_repayment_date: Due date; derived with the 22nd day rule when omitted
            repayment_period_months: Months until repayment
            applied_on: Application date, defaults to today

        Returns:
            Loan in PENDING status
        """
        amount = self._money(principal)
        if not amount.is_positive():
            raise ValidationError("Loan principal must be positive", principal=amount.amount)
        if repayment_period_months < 1:
            raise ValidationError("Repayment period must be at least one month",
                                  repayment_period_months=repayment_period_months)

        self.members.get_member(member_id)
        applied_on = applied_on or date.today()

        with self.storage.atomic():
            period = self.periods.get_period(period_id)
            if period.status != PeriodStatus.ACTIVE:
                raise PeriodNotActive(
                    f"Loans can only be applied for in the active period; {period.name} is {period.status.value}",
                    period_id=period_id
                )
            self.check_eligibility(member_id)

            rate = Decimal(self.config.loan_interest_rate)
            total = amount + amount * rate
            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_id=member_id,
                period_id=period_id,
                loan_number="",
                principal=amount,
                interest_rate=rate,
                total_amount=total,
                amount_paid=Money.zero(self.currency),
                outstanding_balance=total,
                purpose=purpose,
                applied_date=applied_on,
                repayment_period_months=repayment_period_months,
                expected_repayment_date=expected_repayment_date or self.calculate_repayment_date(
                    applied_on, repayment_period_months)
            )

            sequence = self._next_loan_number(applied_on.year)
            for _ in range(self.config.loan_number_attempts):
                loan.loan_number = f"{self.config.loan_number_prefix}-{applied_on.year}-{sequence:04d}"
                try:
                    self.storage.save(self.table_name, loan.id, loan.to_dict())
                    break
                except DuplicateKeyError:
                    sequence += 1
            else:
                raise DuplicateLoanNumber(
                    f"Could not allocate a loan number after {self.config.loan_number_attempts} attempts"
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "member_id": member_id,
                    "principal": amount,
                    "total_amount": total,
                    "expected_repayment_date": loan.expected_repayment_date
                },
                user_id=member_id
            )
            self._publish(DomainEvent.LOAN_APPLIED, loan)

        logger.info(f"Loan {loan.loan_number} applied for by member {member_id}: {amount.to_string()}")
        return loan

    # Transitions

    def _require(self, loan: Loan, required: LoanStatus, action: str,
                 expected_version: Optional[int]) -> None:
        if expected_version is not None and loan.version != expected_version:
            raise ConcurrencyError(
                f"Loan {loan.loan_number} was modified (version {loan.version}, expected {expected_version})",
                loan_id=loan.id
            )
        if loan.status != required:
            raise InvalidTransition("loan", loan.id, loan.status.value, required.value, action)

    def _save_loan(self, loan: Loan) -> None:
        """Write the loan only if nobody else bumped its version meanwhile"""
        expected = loan.version
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_save(self.table_name, loan.id, loan.to_dict(), {"version": expected}):
            raise ConcurrencyError(f"Loan {loan.loan_number} was modified concurrently", loan_id=loan.id)

    def _publish(self, event_type: DomainEvent, loan: Loan) -> None:
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish(create_loan_event(event_type, loan))

    def _transition(self, loan_id: str, required: LoanStatus, target: LoanStatus, action: str,
                    audit_type: AuditEventType, event_type: DomainEvent, actor_id: Optional[str],
                    expected_version: Optional[int], apply_changes, metadata: Dict[str, Any]) -> Loan:
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._require(loan, required, action, expected_version)
            loan.status = target
            apply_changes(loan)
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=audit_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"loan_number": loan.loan_number, "status": target.value, **metadata},
                user_id=actor_id
            )
            self._publish(event_type, loan)

        logger.info(f"Loan {loan.loan_number} {action}: {required.value} -> {target.value}")
        return loan

    def approve(self, loan_id: str, approver_id: str, notes: Optional[str] = None,
                expected_version: Optional[int] = None) -> Loan:
        def changes(loan: Loan) -> None:
            loan.approved_by = approver_id
            loan.approved_date = date.today()
            if notes:
                loan.admin_notes = notes

        return self._transition(loan_id, LoanStatus.PENDING, LoanStatus.APPROVED, "approve",
                                AuditEventType.LOAN_APPROVED, DomainEvent.LOAN_APPROVED,
                                approver_id, expected_version, changes, {"notes": notes})

    def reject(self, loan_id: str, reason: str, actor_id: Optional[str] = None,
               expected_version: Optional[int] = None) -> Loan:
        """Reject a pending application; the reason is recorded in the admin notes"""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", loan_id=loan_id)

        def changes(loan: Loan) -> None:
            loan.admin_notes = reason.strip()

        return self._transition(loan_id, LoanStatus.PENDING, LoanStatus.REJECTED, "reject",
                                AuditEventType.LOAN_REJECTED, DomainEvent.LOAN_REJECTED,
                                actor_id, expected_version, changes, {"reason": reason.strip()})

    def disburse(self, loan_id: str, actor_id: Optional[str] = None, disbursed_on: Optional[date] = None,
                 expected_version: Optional[int] = None) -> Loan:
        def changes(loan: Loan) -> None:
            loan.disbursed_date = disbursed_on or date.today()

        return self._transition(loan_id, LoanStatus.APPROVED, LoanStatus.DISBURSED, "disburse",
                                AuditEventType.LOAN_DISBURSED, DomainEvent.LOAN_DISBURSED,
                                actor_id, expected_version, changes, {})

    def mark_defaulted(self, loan_id: str, notes: Optional[str] = None, actor_id: Optional[str] = None,
                       expected_version: Optional[int] = None) -> Loan:
        def changes(loan: Loan) -> None:
            if notes:
                loan.admin_notes = notes

        return self._transition(loan_id, LoanStatus.DISBURSED, LoanStatus.DEFAULTED, "mark defaulted",
                                AuditEventType.LOAN_DEFAULTED, DomainEvent.LOAN_DEFAULTED,
                                actor_id, expected_version, changes, {"notes": notes})

    # Repayments

    def record_repayment(
        self,
        loan_id: str,
        amount: Any,
        method: Optional[str] = None,
        notes: Optional[str] = None,
        recorded_by: Optional[str] = None,
        payment_date: Optional[date] = None,
        expected_version: Optional[int] = None
    ) -> LoanRepayment:
        """
        Record a repayment against a disbursed loan

        Args:
            loan_id: Loan being repaid
            amount: Positive amount not exceeding the outstanding balance
            method: Payment method (cash, bank transfer, ...)
            notes: Free text
            recorded_by: Member who recorded the repayment
            payment_date: Date paid, defaults to today
            expected_version: Optional optimistic lock on the loan version

        Returns:
            Created LoanRepayment
        """
        money = self._money(amount)
        if not money.is_positive():
            raise ValidationError("Repayment amount must be positive", amount=money.amount)
        payment_date = payment_date or date.today()

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._require(loan, LoanStatus.DISBURSED, "record a repayment on", expected_version)
            if money > loan.outstanding_balance:
                raise ValidationError(
                    f"Repayment {money.to_string()} exceeds outstanding balance {loan.outstanding_balance.to_string()}",
                    loan_id=loan_id, amount=money.amount, outstanding=loan.outstanding_balance.amount
                )

            collected = sum_money((r.interest_portion for r in self.get_repayments(loan_id)), self.currency)
            uncollected = loan.interest_amount - collected
            if money == loan.outstanding_balance:
                interest_portion = uncollected
            else:
                ratio = loan.interest_amount.amount / loan.total_amount.amount
                interest_portion = min(money * ratio, uncollected)
            interest_portion = min(interest_portion, money)

            now = datetime.now(timezone.utc)
            repayment = LoanRepayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=money,
                principal_portion=money - interest_portion,
                interest_portion=interest_portion,
                payment_date=payment_date,
                payment_method=method,
                recorded_by=recorded_by,
                notes=notes
            )
            self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

            loan.amount_paid = loan.amount_paid + money
            loan.outstanding_balance = loan.outstanding_balance - money
            if loan.outstanding_balance.is_zero():
                loan.status = LoanStatus.COMPLETED
                loan.actual_repayment_date = payment_date
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REPAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "repayment_id": repayment.id,
                    "amount": money,
                    "principal_portion": repayment.principal_portion,
                    "interest_portion": repayment.interest_portion,
                    "outstanding_balance": loan.outstanding_balance
                },
                user_id=recorded_by
            )
            self._publish(DomainEvent.LOAN_REPAYMENT, loan)

            if loan.status == LoanStatus.COMPLETED:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"loan_number": loan.loan_number, "total_interest": loan.interest_amount},
                    user_id=recorded_by
                )
                # Critical subscribers write their records in this transaction
                self._publish(DomainEvent.LOAN_COMPLETED, loan)

        if loan.status == LoanStatus.COMPLETED:
            logger.info(f"Loan {loan.loan_number} fully repaid")
        return repayment

    # Deletion

    def delete_loan(self, loan_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Archive a loan with its repayments and distributions, then delete them

        Loans whose interest already went into a year-end shareout cannot be
        deleted.
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            repayments = self.storage.find(self.repayments_table, {"loan_id": loan_id})
            distributions = self.storage.find(DISTRIBUTIONS_TABLE, {"loan_id": loan_id})

            if any(d.get("type") in ("committee_share", "member_share") for d in distributions):
                raise PreconditionFailed(
                    f"Loan {loan.loan_number} is part of a year-end shareout and cannot be deleted",
                    code="LOAN_SHARED_OUT", loan_id=loan_id
                )

            now = datetime.now(timezone.utc)
            archive = {
                "id": loan.id,
                "loan_number": loan.loan_number,
                "loan": loan.to_dict(),
                "repayments": repayments,
                "distributions": distributions,
                "deleted_at": now.isoformat(),
                "deleted_by": actor_id
            }
            self.storage.save(self.archive_table, loan.id, archive)

            for repayment in repayments:
                self.storage.delete(self.repayments_table, repayment["id"])
            for distribution in distributions:
                self.storage.delete(DISTRIBUTIONS_TABLE, distribution["id"])
            self.storage.delete(self.table_name, loan.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "repayments": len(repayments),
                    "distributions": len(distributions)
                },
                user_id=actor_id
            )
            self._publish(DomainEvent.LOAN_DELETED, loan)

        logger.info(f"Deleted loan {loan.loan_number} ({len(repayments)} repayments archived)")
        return archive

    def get_archived_loan(self, loan_id: str) -> Optional[Dict[str, Any]]:
        return self.storage.load(self.archive_table, loan_id)

    # Queries

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.find_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def get_loan_by_number(self, loan_number: str) -> Loan:
        found = self.storage.find(self.table_name, {"loan_number": loan_number})
        if not found:
            raise NotFoundError("loan", loan_number)
        return Loan.from_dict(found[0])

    def get_member_loans(self, member_id: str) -> List[Loan]:
        loans = [Loan.from_dict(d) for d in self.storage.find(self.table_name, {"member_id": member_id})]
        loans.sort(key=lambda l: (l.applied_date, l.created_at))
        return loans

    def list_loans(self, status: Optional[LoanStatus] = None, period_id: Optional[str] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = status.value
        if period_id is not None:
            filters["period_id"] = period_id
        loans = [Loan.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda l: l.loan_number)
        return loans

    def get_repayments(self, loan_id: str) -> List[LoanRepayment]:
        repayments = [LoanRepayment.from_dict(d) for d in self.storage.find(self.repayments_table, {"loan_id": loan_id})]
        repayments.sort(key=lambda r: (r.payment_date, r.created_at))
        return repayments

    def is_overdue(self, loan_id: str, today: Optional[date] = None) -> bool:
        loan = self.get_loan(loan_id)
        today = today or date.today()
        return (loan.status == LoanStatus.DISBURSED
                and loan.outstanding_balance.is_positive()
                and loan.expected_repayment_date < today)

    def suggested_repayment(self, loan_id: str, today: Optional[date] = None) -> Money:
        """
        Monthly amount that clears the loan by its due date.

        The whole balance is suggested when at most one month remains or the
        loan is overdue.
        """
        loan = self.get_loan(loan_id)
        today = today or date.today()
        if loan.status != LoanStatus.DISBURSED:
            return Money.zero(self.currency)

        due = loan.expected_repayment_date
        months_left = (due.year - today.year) * 12 + due.month - today.month + 1
        if due < today or months_left <= 1:
            return loan.outstanding_balance
        return loan.outstanding_balance / months_left
