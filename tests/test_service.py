"""
Test suite for the service boundary

Tests capability checks, result values and error propagation through
SaccoService operations.
"""

import pytest
from decimal import Decimal
from datetime import date

from sacco_core.currency import Money, Currency
from sacco_core.storage import InMemoryStorage
from sacco_core.config import SaccoConfig
from sacco_core.members import MemberRole, SavingsCategory
from sacco_core.periods import PeriodStatus, period_bounds
from sacco_core.loans import LoanStatus
from sacco_core.errors import ErrorKind, Forbidden
from sacco_core.service import SaccoService, OperationContext


def eur(amount):
    return Money(Decimal(amount), Currency.EUR)


class BrokenStorage(InMemoryStorage):
    """Storage that fails every write to the deposits table"""

    def save(self, table, record_id, data):
        if table == "saving_deposits":
            raise ConnectionError("database unavailable")
        super().save(table, record_id, data)


class TestSaccoService:
    """Test operations through the boundary"""

    def setup_method(self):
        self.service = SaccoService(storage=InMemoryStorage(), config=SaccoConfig())
        self.admin = OperationContext(member_id="admin", role=MemberRole.CHAIRPERSON, is_admin=True)

        self.member = self.service.register_member(self.admin, "Ruth", category=SavingsCategory.B).unwrap()
        self.other = self.service.register_member(self.admin, "Samuel", category=SavingsCategory.C).unwrap()
        self.member_ctx = OperationContext(member_id=self.member.id)

        start, end = period_bounds(2025, 1)
        self.q1 = self.service.create_period(self.admin, 2025, 1, start, end).unwrap()
        self.service.activate(self.admin, self.q1.id).unwrap()

    def test_success_result_carries_correlation_id(self):
        """Test the result of a successful operation"""
        result = self.service.get_period(self.member_ctx, self.q1.id)

        assert result.ok
        assert result.value.status == PeriodStatus.ACTIVE
        assert result.metadata["correlation_id"] == self.member_ctx.correlation_id
        assert result.error is None

    def test_admin_operations_are_forbidden_to_members(self):
        """Test that member callers cannot run administrative operations"""
        result = self.service.record_deposit(self.member_ctx, self.member.id, self.q1.id, "100")

        assert not result.ok
        assert result.kind == ErrorKind.FORBIDDEN
        assert result.code == "FORBIDDEN"
        with pytest.raises(Forbidden):
            result.unwrap()
        assert self.service.savings.list_deposits(self.member.id) == []

    def test_members_act_only_for_themselves(self):
        """Test that member-scoped operations reject other members' ids"""
        assert self.service.set_target(self.member_ctx, self.member.id, self.q1.id).ok

        result = self.service.set_target(self.member_ctx, self.other.id, self.q1.id)
        assert result.kind == ErrorKind.FORBIDDEN
        assert self.service.set_target(self.admin, self.other.id, self.q1.id).ok

    def test_ledger_errors_become_failed_results(self):
        """Test that typed errors surface as kinds and codes"""
        self.service.set_target(self.member_ctx, self.member.id, self.q1.id).unwrap()

        duplicate = self.service.set_target(self.member_ctx, self.member.id, self.q1.id)
        assert duplicate.kind == ErrorKind.DUPLICATE
        assert duplicate.code == "DUPLICATE_TARGET"

        missing = self.service.get_period(self.member_ctx, "missing")
        assert missing.kind == ErrorKind.NOT_FOUND

        missing_period = self.service.complete_period(self.admin, "missing")
        assert missing_period.kind == ErrorKind.NOT_FOUND

    def test_upcoming_period_deposit_is_precondition_failure(self):
        """Test a deposit against an upcoming period"""
        start, end = period_bounds(2025, 2)
        q2 = self.service.create_period(self.admin, 2025, 2, start, end).unwrap()

        result = self.service.record_deposit(self.admin, self.member.id, q2.id, "100")

        assert result.kind == ErrorKind.PRECONDITION_FAILED
        assert result.code == "PERIOD_NOT_ACTIVE"

    def test_loan_flow(self):
        """Test a loan taken, repaid and rewarded through the boundary"""
        loan = self.service.apply_for_loan(self.member_ctx, self.member.id, self.q1.id, "1000", "Fees",
                                           applied_on=date(2025, 2, 1)).unwrap()
        assert self.service.check_eligibility(self.member_ctx, self.member.id).kind == ErrorKind.PRECONDITION_FAILED

        self.service.approve(self.admin, loan.id, expected_version=1).unwrap()
        self.service.disburse(self.admin, loan.id).unwrap()
        self.service.record_repayment(self.admin, loan.id, "525").unwrap()
        repayment = self.service.record_repayment(self.admin, loan.id, "525").unwrap()

        assert repayment.interest_portion == eur('25.00')
        assert self.service.get_loan(self.member_ctx, loan.id).value.status == LoanStatus.COMPLETED
        assert self.service.get_loan(OperationContext(member_id=self.other.id), loan.id).kind == ErrorKind.FORBIDDEN
        assert self.service.check_eligibility(self.member_ctx, self.member.id).value is True

        earnings = self.service.member_earnings(self.member_ctx, self.member.id, 2025).unwrap()
        assert earnings["loan_bearer_return"] == eur('25.00')
        assert len(self.service.member_loans(self.member_ctx, self.member.id).unwrap()) == 1
        assert len(self.service.list_loans(self.admin, status=LoanStatus.COMPLETED).unwrap()) == 1

    def test_stale_version_is_conflict(self):
        """Test that optimistic lock failures report a conflict"""
        loan = self.service.apply_for_loan(self.member_ctx, self.member.id, self.q1.id, "100", "Fees").unwrap()
        self.service.approve(self.admin, loan.id).unwrap()

        result = self.service.reject(self.admin, loan.id, "Too late", expected_version=1)
        assert result.kind == ErrorKind.CONFLICT

    def test_savings_overview(self):
        """Test the member savings summary"""
        self.service.set_target(self.member_ctx, self.member.id, self.q1.id).unwrap()
        self.service.record_deposit(self.admin, self.member.id, self.q1.id, "150").unwrap()

        overview = self.service.savings_overview(self.member_ctx, self.member.id, self.q1.id).unwrap()

        assert overview["available_balance"] == eur('150')
        assert overview["quarter_total"] == eur('150')
        assert overview["progress"].expected_total == eur('1200')

    def test_period_and_shareout_operations(self):
        """Test closing a period and completing a member's shareout"""
        self.service.record_deposit(self.admin, self.member.id, self.q1.id, "300").unwrap()
        self.service.decide_shareout(self.member_ctx, self.member.id, self.q1.id, True).unwrap()
        assert len(self.service.pending_decisions(self.admin, self.q1.id).unwrap()) == 1

        self.service.complete_period(self.admin, self.q1.id).unwrap()
        period = self.service.activate_shareout(self.admin, self.q1.id, date(2025, 5, 2)).unwrap()
        assert period.shareout_activated
        assert self.service.get_active_period(self.member_ctx).value is None

        decision = self.service.complete_shareout(self.admin, self.member.id, self.q1.id).unwrap()
        assert decision.total_payout == eur('300')
        assert self.service.verify_audit_trail(self.admin).unwrap()["valid"]

    def test_year_end_through_service(self):
        """Test the year-end shareout operations"""
        loan = self.service.apply_for_loan(self.member_ctx, self.member.id, self.q1.id, "1000", "Fees").unwrap()
        self.service.approve(self.admin, loan.id).unwrap()
        self.service.disburse(self.admin, loan.id).unwrap()
        self.service.record_repayment(self.admin, loan.id, "1050").unwrap()
        self.service.complete_period(self.admin, self.q1.id).unwrap()
        later = []
        for sequence in (2, 3):
            start, end = period_bounds(2025, sequence)
            later.append(self.service.create_period(self.admin, 2025, sequence, start, end).unwrap())

        early = self.service.run_year_end_shareout(self.admin, 2025)
        assert early.code == "PERIOD_NOT_COMPLETED"

        for period in later:
            self.service.activate(self.admin, period.id).unwrap()
            self.service.complete_period(self.admin, period.id).unwrap()

        assert self.service.run_year_end_shareout(self.member_ctx, 2025).kind == ErrorKind.FORBIDDEN
        shareout = self.service.run_year_end_shareout(self.admin, 2025).unwrap()
        assert shareout.total_interest_pool == eur('25.00')
        assert self.service.get_year_shareout(self.member_ctx, 2025).value.id == shareout.id

        share = self.service.interest.get_individual_shares(2025)[0]
        assert self.service.disburse_share(self.admin, share.id).ok
        assert self.service.disburse_share(self.admin, share.id).code == "ALREADY_DISBURSED"

    def test_delete_loan(self):
        """Test deleting a loan through the boundary"""
        loan = self.service.apply_for_loan(self.member_ctx, self.member.id, self.q1.id, "100", "Fees").unwrap()
        assert self.service.delete_loan(self.member_ctx, loan.id).kind == ErrorKind.FORBIDDEN

        archive = self.service.delete_loan(self.admin, loan.id).unwrap()
        assert archive["id"] == loan.id
        assert self.service.get_loan(self.admin, loan.id).kind == ErrorKind.NOT_FOUND

    def test_ensure_current_period_returns_active(self):
        """Test that bootstrapping an existing ledger returns the active period"""
        period = self.service.ensure_current_period(self.admin, date(2025, 2, 1)).unwrap()
        assert period.id == self.q1.id
        assert [p.id for p in self.service.list_periods(self.member_ctx, 2025).unwrap()] == [self.q1.id]


class TestStorageFailures:
    """Test that infrastructure failures are not turned into results"""

    def test_storage_error_propagates_and_rolls_back(self):
        """Test that a storage failure raises and leaves no audit record"""
        storage = BrokenStorage()
        service = SaccoService(storage=storage, config=SaccoConfig())
        admin = OperationContext(member_id="admin", is_admin=True)
        member = service.register_member(admin, "Tom", category=SavingsCategory.A).unwrap()
        start, end = period_bounds(2025, 1)
        period = service.create_period(admin, 2025, 1, start, end).unwrap()
        service.activate(admin, period.id).unwrap()
        events_before = service.audit_trail.count_events()

        with pytest.raises(ConnectionError):
            service.record_deposit(admin, member.id, period.id, "100")

        assert service.audit_trail.count_events() == events_before
        assert service.verify_audit_trail(admin).unwrap()["valid"]
