"""
Test suite for the account store

Teacher adjustments, eligibility checks and history access.
"""

from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from town_economy.context import RequestContext, Role
from town_economy.errors import (
    AuthorizationError, ConflictError, InsufficientFundsError, NotFoundError, ValidationError
)
from town_economy.ledger import TransactionType

from support import (
    OTHER_SCHOOL, SCHOOL, TOWN, balance_of, build_economy, student_context, teacher_context
)


class TestAccountStore:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.alice = student_context(self.system, "alice", balance="100.00", teacher=self.teacher)

    def test_enrollment_opens_zero_balance_account(self):
        bob = student_context(self.system, "bob")
        account = self.system.accounts.get_account_for_user(bob.user_id)
        assert account.balance == Decimal("0.00")
        assert account.account_number.startswith("ACC")

    def test_open_account_is_idempotent(self):
        user = self.system.directory.get_user(self.alice.user_id)
        first = self.system.accounts.get_account_for_user(user.id)
        with self.system.storage.atomic():
            again = self.system.accounts.open_account(user)
        assert again.id == first.id

    def test_duplicate_username_rejected(self):
        with pytest.raises(ConflictError):
            self.system.enroll_student(SCHOOL, "alice", TOWN)

    def test_deposit_and_withdraw(self):
        record = self.system.accounts.deposit(self.teacher, "alice", "25.50", "Prize")
        assert record.transaction_type == TransactionType.DEPOSIT
        self.system.accounts.withdraw(self.teacher, "alice", "5.50")
        assert balance_of(self.system, self.alice) == Decimal("120.00")

    def test_withdraw_cannot_overdraw(self):
        with pytest.raises(InsufficientFundsError):
            self.system.accounts.withdraw(self.teacher, "alice", "100.01")
        assert balance_of(self.system, self.alice) == Decimal("100.00")

    def test_fine_may_go_negative_and_blocks_transactions(self):
        self.system.accounts.fine(self.teacher, "alice", "150.00", "Late homework")
        assert balance_of(self.system, self.alice) == Decimal("-50.00")

        can_transact, reason = self.system.accounts.check_can_transact(self.alice.user_id)
        assert not can_transact
        assert "negative balance" in reason

    def test_students_cannot_use_teacher_operations(self):
        with pytest.raises(AuthorizationError):
            self.system.accounts.deposit(self.alice, "alice", "10.00")

    def test_invalid_amounts_rejected(self):
        for amount in ("0", "-5", "abc", "NaN"):
            with pytest.raises(ValidationError):
                self.system.accounts.deposit(self.teacher, "alice", amount)

    def test_unknown_student(self):
        with pytest.raises(NotFoundError):
            self.system.accounts.deposit(self.teacher, "nobody", "10.00")

    def test_bulk_removal_skips_students_who_cannot_pay(self):
        student_context(self.system, "bob", balance="10.00", teacher=self.teacher)
        charged = self.system.accounts.bulk_removal(self.teacher, TOWN, "20.00", "Field trip")
        assert charged == 1
        assert balance_of(self.system, self.alice) == Decimal("80.00")

    def test_bulk_removal_with_nobody_able_to_pay(self):
        with pytest.raises(NotFoundError):
            self.system.accounts.bulk_removal(self.teacher, TOWN, "1000.00")

    def test_overdue_loan_blocks_transactions(self):
        now = datetime.now(timezone.utc)
        self.system.storage.save("loans", "loan-1", {
            "id": "loan-1",
            "borrower_id": self.alice.user_id,
            "status": "active",
            "due_date": (now - timedelta(days=1)).isoformat(),
        })
        can_transact, reason = self.system.accounts.check_can_transact(self.alice.user_id, now=now)
        assert not can_transact
        assert "overdue" in reason


class TestHistoryAccess:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.alice = student_context(self.system, "alice", balance="10.00", teacher=self.teacher)
        self.bob = student_context(self.system, "bob", balance="20.00", teacher=self.teacher)

    def test_student_sees_own_history(self):
        history = self.system.accounts.get_history(self.alice)
        assert len(history) == 1
        assert history[0].amount == Decimal("10.00")

    def test_student_cannot_see_classmate_history(self):
        with pytest.raises(AuthorizationError):
            self.system.accounts.get_history(self.alice, self.bob.user_id)

    def test_teacher_sees_school_history(self):
        assert len(self.system.accounts.get_history(self.teacher)) == 2

    def test_teacher_from_other_school_rejected(self):
        outsider = RequestContext(user_id="t2", role=Role.TEACHER, school_id=OTHER_SCHOOL)
        with pytest.raises(AuthorizationError):
            self.system.accounts.get_history(outsider, self.alice.user_id)
