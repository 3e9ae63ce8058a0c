"""
Test suite for the loan engine

Tests rate tiers, amortization rounding, the review lifecycle and repayment
down to paid off. All financial math must be exact.
"""

import threading
from decimal import Decimal

import pytest

from town_economy.errors import (
    AuthorizationError, ConflictError, InsufficientFundsError, ValidationError
)
from town_economy.ledger import TransactionType
from town_economy.loans import calculate_terms, interest_rate_for_term
from town_economy.states import LoanStatus

from support import balance_of, build_economy, student_context, teacher_context


class TestLoanTerms:

    def test_rate_tiers(self):
        assert interest_rate_for_term(1) == Decimal("0.05")
        assert interest_rate_for_term(6) == Decimal("0.05")
        assert interest_rate_for_term(7) == Decimal("0.10")
        assert interest_rate_for_term(12) == Decimal("0.10")
        assert interest_rate_for_term(13) == Decimal("0.12")
        assert interest_rate_for_term(24) == Decimal("0.12")
        assert interest_rate_for_term(25) == Decimal("0.15")
        assert interest_rate_for_term(60) == Decimal("0.15")

    def test_six_month_loan(self):
        terms = calculate_terms(Decimal("1000.00"), 6)
        assert terms["interest_rate"] == Decimal("0.05")
        assert terms["total_amount"] == Decimal("1050.00")
        assert terms["monthly_payment"] == Decimal("175.00")

    def test_payments_always_cover_principal_and_interest(self):
        for principal in ("1.00", "99.99", "100.00", "1234.56", "5000.00"):
            for term in (1, 5, 6, 7, 11, 12, 13, 24, 25, 36, 60):
                terms = calculate_terms(Decimal(principal), term)
                assert terms["monthly_payment"] * term >= terms["total_amount"]
                assert terms["total_amount"] >= Decimal(principal)
                # Rounding up never overshoots by a full cent per installment
                assert terms["monthly_payment"] * term - terms["total_amount"] < Decimal("0.01") * term


class TestLoanLifecycle:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.alice = student_context(self.system, "alice")

    def test_apply_creates_pending_loan(self):
        loan = self.system.loans.apply(self.alice, "1000.00", 6, "Bike")
        assert loan.status == LoanStatus.PENDING
        assert loan.outstanding_balance == Decimal("1050.00")
        assert balance_of(self.system, self.alice) == Decimal("0.00")

    def test_application_validation(self):
        with pytest.raises(ValidationError):
            self.system.loans.apply(self.alice, "0.50", 6)
        with pytest.raises(ValidationError):
            self.system.loans.apply(self.alice, "100.00", 0)
        with pytest.raises(ValidationError):
            self.system.loans.apply(self.alice, "100.00", 61)
        with pytest.raises(AuthorizationError):
            self.system.loans.apply(self.teacher, "100.00", 6)

    def test_one_open_loan_per_student(self):
        self.system.loans.apply(self.alice, "100.00", 6)
        with pytest.raises(ConflictError):
            self.system.loans.apply(self.alice, "200.00", 6)

    def test_denied_loan_allows_new_application(self):
        loan = self.system.loans.apply(self.alice, "100.00", 6)
        denied = self.system.loans.review(self.teacher, loan.id, approved=False)
        assert denied.status == LoanStatus.DENIED
        assert balance_of(self.system, self.alice) == Decimal("0.00")
        assert self.system.loans.apply(self.alice, "50.00", 3).status == LoanStatus.PENDING

    def test_approval_disburses_and_activates(self):
        loan = self.system.loans.apply(self.alice, "1000.00", 6)
        active = self.system.loans.review(self.teacher, loan.id, approved=True)

        assert active.status == LoanStatus.ACTIVE
        assert active.due_date is not None
        assert balance_of(self.system, self.alice) == Decimal("1000.00")
        history = self.system.accounts.get_history(self.alice)
        assert history[0].transaction_type == TransactionType.LOAN_DISBURSEMENT

    def test_review_is_final(self):
        loan = self.system.loans.apply(self.alice, "100.00", 6)
        self.system.loans.review(self.teacher, loan.id, approved=True)
        with pytest.raises(ConflictError):
            self.system.loans.review(self.teacher, loan.id, approved=True)
        with pytest.raises(ConflictError):
            self.system.loans.review(self.teacher, loan.id, approved=False)
        assert balance_of(self.system, self.alice) == Decimal("100.00")

    def test_concurrent_applications_leave_one_open_loan(self):
        outcomes = []
        barrier = threading.Barrier(4)

        def apply():
            barrier.wait()
            try:
                self.system.loans.apply(self.alice, "100.00", 6)
                outcomes.append("applied")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=apply) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert outcomes.count("applied") == 1
        assert len(self.system.loans.list_loans(self.alice)) == 1


class TestLoanRepayment:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.alice = student_context(self.system, "alice")
        self.bob = student_context(self.system, "bob")

    def _active_loan(self, amount, term):
        loan = self.system.loans.apply(self.alice, amount, term)
        return self.system.loans.review(self.teacher, loan.id, approved=True)

    def test_full_repayment_pays_off(self):
        loan = self._active_loan("1000.00", 6)
        self.system.accounts.deposit(self.teacher, "alice", "50.00")

        for _ in range(6):
            self.system.loans.pay(self.alice, loan.id, "175.00")

        paid = self.system.loans.get_loan(loan.id)
        assert paid.status == LoanStatus.PAID_OFF
        assert paid.outstanding_balance == Decimal("0.00")
        assert paid.paid_off_at is not None
        assert self.system.loans.total_paid(loan.id) == Decimal("1050.00")
        assert balance_of(self.system, self.alice) == Decimal("0.00")

    def test_final_payment_clamped_to_remaining(self):
        loan = self._active_loan("100.00", 7)
        assert loan.total_amount == Decimal("110.00")
        assert loan.monthly_payment == Decimal("15.72")
        self.system.accounts.deposit(self.teacher, "alice", "10.00")

        for _ in range(6):
            self.system.loans.pay(self.alice, loan.id, loan.monthly_payment)
        last = self.system.loans.pay(self.alice, loan.id, loan.monthly_payment)

        assert last.amount == Decimal("15.68")
        assert self.system.loans.get_loan(loan.id).status == LoanStatus.PAID_OFF
        assert self.system.loans.total_paid(loan.id) == Decimal("110.00")

    def test_overpayment_rejected(self):
        loan = self._active_loan("100.00", 3)
        self.system.accounts.deposit(self.teacher, "alice", "500.00")
        with pytest.raises(ValidationError):
            self.system.loans.pay(self.alice, loan.id, "200.00")
        assert self.system.loans.get_loan(loan.id).outstanding_balance == Decimal("105.00")

    def test_payment_requires_funds(self):
        loan = self._active_loan("100.00", 3)
        self.system.accounts.withdraw(self.teacher, "alice", "90.00")
        with pytest.raises(InsufficientFundsError):
            self.system.loans.pay(self.alice, loan.id, "35.00")
        assert self.system.loans.get_payments(loan.id) == []

    def test_only_borrower_can_pay(self):
        loan = self._active_loan("100.00", 3)
        with pytest.raises(AuthorizationError):
            self.system.loans.pay(self.bob, loan.id, "35.00")

    def test_cannot_pay_pending_or_paid_off_loan(self):
        pending = self.system.loans.apply(self.alice, "100.00", 3)
        with pytest.raises(ConflictError):
            self.system.loans.pay(self.alice, pending.id, "35.00")

    def test_payment_records_repayment_transaction(self):
        loan = self._active_loan("100.00", 3)
        payment = self.system.loans.pay(self.alice, loan.id, "35.00")
        record = self.system.transaction_log.get(payment.transaction_id)
        assert record.transaction_type == TransactionType.LOAN_REPAYMENT
        assert record.amount == Decimal("35.00")
        assert self.system.loans.get_loan(loan.id).outstanding_balance == Decimal("70.00")
