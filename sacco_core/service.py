"""
Service Boundary Module

SaccoService wires the ledger components together over one storage backend
and exposes them to the collaborator layer (web handlers, CLI, jobs).

Every operation takes an explicit OperationContext describing the caller and
returns an OperationResult. Ledger errors become failed results; anything
else (storage unavailable, programming errors) propagates after the
surrounding transaction has rolled back.
"""

from dataclasses import dataclass, field
from datetime import date
from functools import wraps
from typing import Any, Dict, List, Optional
import logging
import uuid

from .config import SaccoConfig, get_config
from .logging_config import log_action, setup_logging
from .storage import StorageInterface, storage_from_url
from .audit import AuditTrail
from .events import EventDispatcher
from .members import MemberDirectory, MemberRole, SavingsCategory
from .periods import PeriodManager
from .savings import SavingsLedger
from .loans import LoanEngine, LoanStatus
from .interest import InterestDistributionEngine
from .shareout import ShareoutWorkflow
from .errors import SaccoError, Forbidden, OperationResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationContext:
    """Already-authenticated caller of an operation"""
    member_id: str
    role: MemberRole = MemberRole.MEMBER
    is_admin: bool = False
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))


def operation(admin_only: bool = False):
    """
    Turn a service method into a boundary operation.

    Checks the admin capability, converts SaccoError into a failed
    OperationResult and logs the outcome as a structured action record.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(self, ctx: OperationContext, *args, **kwargs) -> OperationResult:
            action = func.__name__
            try:
                if admin_only and not ctx.is_admin:
                    raise Forbidden(f"{action} requires administrator capability",
                                    action=action, member_id=ctx.member_id)
                value = func(self, ctx, *args, **kwargs)
            except SaccoError as e:
                log_action(logger, "warning", e.message, user_id=ctx.member_id, action=action,
                           correlation_id=ctx.correlation_id, extra=e.to_dict())
                return OperationResult.failure(e)

            log_action(logger, "info", f"{action} succeeded", user_id=ctx.member_id, action=action,
                       resource=getattr(value, "id", None), correlation_id=ctx.correlation_id)
            return OperationResult.success(value, correlation_id=ctx.correlation_id)
        return wrapper
    return decorator


def _require_self_or_admin(ctx: OperationContext, member_id: str, action: str) -> None:
    if not ctx.is_admin and ctx.member_id != member_id:
        raise Forbidden(f"Members may only {action} for themselves", action=action, member_id=ctx.member_id)


class SaccoService:
    """
    Operation boundary over the cooperative ledger
    """

    def __init__(self, storage: Optional[StorageInterface] = None, config: Optional[SaccoConfig] = None):
        self.config = config or get_config()
        setup_logging(self.config.log_level, log_format=self.config.log_format, log_file=self.config.log_file)
        self.storage = storage or storage_from_url(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.events = EventDispatcher()

        self.members = MemberDirectory(self.storage, self.audit_trail)
        self.periods = PeriodManager(self.storage, self.audit_trail, self.events, self.config)
        self.savings = SavingsLedger(self.storage, self.audit_trail, self.members, self.periods,
                                     self.events, self.config)
        self.loans = LoanEngine(self.storage, self.audit_trail, self.members, self.periods,
                                self.events, self.config)
        self.interest = InterestDistributionEngine(self.storage, self.audit_trail, self.members, self.periods,
                                                   self.loans, self.savings, self.events, self.config)
        self.shareouts = ShareoutWorkflow(self.storage, self.audit_trail, self.members, self.periods,
                                          self.savings, self.interest, self.events, self.config)

    def close(self) -> None:
        self.storage.close()

    # Members

    @operation(admin_only=True)
    def register_member(self, ctx: OperationContext, name: str, role: MemberRole = MemberRole.MEMBER,
                        category: SavingsCategory = SavingsCategory.NONE, email: Optional[str] = None,
                        member_id: Optional[str] = None):
        return self.members.register_member(name, role, category, email, member_id)

    @operation(admin_only=True)
    def assign_category(self, ctx: OperationContext, member_id: str, category: SavingsCategory):
        return self.members.assign_category(member_id, category)

    @operation()
    def get_member(self, ctx: OperationContext, member_id: str):
        return self.members.get_member(member_id)

    # Periods

    @operation(admin_only=True)
    def create_period(self, ctx: OperationContext, year: int, sequence: int, start_date: date,
                      end_date: date, name: Optional[str] = None):
        return self.periods.create_period(year, sequence, start_date, end_date, name)

    @operation(admin_only=True)
    def activate(self, ctx: OperationContext, period_id: str):
        return self.periods.activate(period_id, actor_id=ctx.member_id)

    @operation(admin_only=True)
    def complete_period(self, ctx: OperationContext, period_id: str):
        return self.periods.complete(period_id, actor_id=ctx.member_id)

    @operation(admin_only=True)
    def activate_shareout(self, ctx: OperationContext, period_id: str, shareout_date: Optional[date] = None):
        return self.periods.activate_shareout(period_id, shareout_date, actor_id=ctx.member_id)

    @operation(admin_only=True)
    def ensure_current_period(self, ctx: OperationContext, today: Optional[date] = None):
        return self.periods.ensure_current_period(today)

    @operation()
    def get_period(self, ctx: OperationContext, period_id: str):
        return self.periods.get_period(period_id)

    @operation()
    def get_active_period(self, ctx: OperationContext):
        return self.periods.get_active_period()

    @operation()
    def list_periods(self, ctx: OperationContext, year: Optional[int] = None):
        return self.periods.list_periods(year)

    # Savings

    @operation()
    def set_target(self, ctx: OperationContext, member_id: str, period_id: str):
        _require_self_or_admin(ctx, member_id, "set savings targets")
        return self.savings.set_target(member_id, period_id, actor_id=ctx.member_id)

    @operation(admin_only=True)
    def record_deposit(self, ctx: OperationContext, member_id: str, period_id: str, amount: Any,
                       saved_on: Optional[date] = None, notes: Optional[str] = None):
        return self.savings.record_deposit(member_id, period_id, amount, ctx.member_id, saved_on, notes)

    @operation(admin_only=True)
    def share_out_deposit(self, ctx: OperationContext, deposit_id: str):
        return self.savings.share_out_deposit(deposit_id, actor_id=ctx.member_id)

    @operation()
    def savings_overview(self, ctx: OperationContext, member_id: str, period_id: Optional[str] = None) -> Dict[str, Any]:
        """Balance figures shown on a member's savings page"""
        _require_self_or_admin(ctx, member_id, "view savings")
        overview: Dict[str, Any] = {
            "available_balance": self.savings.available_balance(member_id),
            "total_savings": self.savings.total_savings(member_id),
        }
        if period_id is not None:
            overview["quarter_total"] = self.savings.quarter_total(member_id, period_id)
            overview["progress"] = self.savings.period_progress(member_id, period_id)
        return overview

    # Loans

    @operation()
    def apply_for_loan(self, ctx: OperationContext, member_id: str, period_id: str, principal: Any,
                       purpose: str, expected_repayment_date: Optional[date] = None,
                       repayment_period_months: int = 1, applied_on: Optional[date] = None):
        _require_self_or_admin(ctx, member_id, "apply for loans")
        return self.loans.apply(member_id, period_id, principal, purpose, expected_repayment_date,
                                repayment_period_months, applied_on)

    @operation(admin_only=True)
    def approve(self, ctx: OperationContext, loan_id: str, notes: Optional[str] = None,
                expected_version: Optional[int] = None):
        return self.loans.approve(loan_id, ctx.member_id, notes, expected_version)

    @operation(admin_only=True)
    def reject(self, ctx: OperationContext, loan_id: str, reason: str, expected_version: Optional[int] = None):
        return self.loans.reject(loan_id, reason, ctx.member_id, expected_version)

    @operation(admin_only=True)
    def disburse(self, ctx: OperationContext, loan_id: str, disbursed_on: Optional[date] = None,
                 expected_version: Optional[int] = None):
        return self.loans.disburse(loan_id, ctx.member_id, disbursed_on, expected_version)

    @operation(admin_only=True)
    def record_repayment(self, ctx: OperationContext, loan_id: str, amount: Any, method: Optional[str] = None,
                         notes: Optional[str] = None, payment_date: Optional[date] = None,
                         expected_version: Optional[int] = None):
        return self.loans.record_repayment(loan_id, amount, method, notes, ctx.member_id,
                                           payment_date, expected_version)

    @operation(admin_only=True)
    def mark_defaulted(self, ctx: OperationContext, loan_id: str, notes: Optional[str] = None):
        return self.loans.mark_defaulted(loan_id, notes, ctx.member_id)

    @operation(admin_only=True)
    def delete_loan(self, ctx: OperationContext, loan_id: str):
        return self.loans.delete_loan(loan_id, ctx.member_id)

    @operation()
    def get_loan(self, ctx: OperationContext, loan_id: str):
        loan = self.loans.get_loan(loan_id)
        _require_self_or_admin(ctx, loan.member_id, "view loans")
        return loan

    @operation()
    def member_loans(self, ctx: OperationContext, member_id: str):
        _require_self_or_admin(ctx, member_id, "view loans")
        return self.loans.get_member_loans(member_id)

    @operation(admin_only=True)
    def list_loans(self, ctx: OperationContext, status: Optional[LoanStatus] = None,
                   period_id: Optional[str] = None):
        return self.loans.list_loans(status, period_id)

    @operation()
    def check_eligibility(self, ctx: OperationContext, member_id: str) -> bool:
        _require_self_or_admin(ctx, member_id, "check loan eligibility")
        self.loans.check_eligibility(member_id)
        return True

    # Interest

    @operation(admin_only=True)
    def run_year_end_shareout(self, ctx: OperationContext, year: int):
        return self.interest.run_year_end_shareout(year, actor_id=ctx.member_id)

    @operation(admin_only=True)
    def disburse_share(self, ctx: OperationContext, share_id: str):
        return self.interest.disburse_share(share_id, actor_id=ctx.member_id)

    @operation()
    def member_earnings(self, ctx: OperationContext, member_id: str, year: int):
        _require_self_or_admin(ctx, member_id, "view interest earnings")
        return self.interest.member_earnings(member_id, year)

    @operation()
    def get_year_shareout(self, ctx: OperationContext, year: int):
        return self.interest.get_year_shareout(year)

    # Shareout decisions

    @operation()
    def decide_shareout(self, ctx: OperationContext, member_id: str, period_id: str, wants_shareout: bool):
        _require_self_or_admin(ctx, member_id, "decide on a shareout")
        return self.shareouts.decide(member_id, period_id, wants_shareout)

    @operation(admin_only=True)
    def complete_shareout(self, ctx: OperationContext, member_id: str, period_id: str):
        return self.shareouts.complete_shareout(member_id, period_id, ctx.member_id)

    @operation(admin_only=True)
    def pending_decisions(self, ctx: OperationContext, period_id: str) -> List:
        return self.shareouts.pending_decisions(period_id)

    # Audit

    @operation(admin_only=True)
    def verify_audit_trail(self, ctx: OperationContext) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()
