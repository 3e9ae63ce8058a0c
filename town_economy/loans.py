"""
Loan Module

Loan application, teacher review, disbursement and repayment. Interest is a
flat rate chosen by term at application time and frozen for the life of the
loan: total owed = principal x (1 + rate), repaid in equal monthly payments.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import uuid

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .context import RequestContext
from .errors import (
    AuthorizationError, ConflictError, InsufficientFundsError, NotFoundError,
    ValidationError
)
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, quantize, quantize_up
from .states import LoanStatus, OPEN_LOAN_STATUSES, loan_transition
from .storage import StorageInterface, StorageRecord


logger = get_logger("town_economy.loans")


# (max term in months, rate); terms above the last bound use LONG_TERM_RATE
RATE_TABLE: Tuple[Tuple[int, Decimal], ...] = (
    (6, Decimal("0.05")),
    (12, Decimal("0.10")),
    (24, Decimal("0.12")),
)
LONG_TERM_RATE = Decimal("0.15")

MIN_TERM_MONTHS = 1
MAX_TERM_MONTHS = 60
PAID_OFF_TOLERANCE = Decimal("0.01")


def interest_rate_for_term(term_months: int) -> Decimal:
    """Flat interest rate for a term, as a fraction"""
    for max_term, rate in RATE_TABLE:
        if term_months <= max_term:
            return rate
    return LONG_TERM_RATE


def calculate_terms(principal: Decimal, term_months: int) -> Dict[str, Decimal]:
    """
    Total owed and monthly payment for a loan.

    The monthly payment is rounded up to the cent so that
    payment x term always covers the total.
    """
    rate = interest_rate_for_term(term_months)
    total = quantize(principal * (Decimal("1") + rate))
    monthly = quantize_up(total / Decimal(term_months))
    return {"interest_rate": rate, "total_amount": total, "monthly_payment": monthly}


@dataclass
class Loan(StorageRecord):
    """Loan with frozen terms and current status"""
    school_id: str
    borrower_id: str
    amount: Decimal                 # Principal
    term_months: int
    interest_rate: Decimal          # Fraction, e.g. 0.05
    total_amount: Decimal
    monthly_payment: Decimal
    outstanding_balance: Decimal
    purpose: str = ""
    status: LoanStatus = LoanStatus.PENDING
    reviewed_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_off_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES


@dataclass
class LoanPayment(StorageRecord):
    """Immutable repayment record"""
    loan_id: str
    amount: Decimal
    payment_date: datetime
    transaction_id: str


class LoanEngine:
    """
    Loan lifecycle against the ledger
    """

    def __init__(self, storage: StorageInterface, accounts: AccountStore,
                 audit_trail: AuditTrail, due_days: int = 30,
                 min_amount: Decimal = Decimal("1.00"),
                 max_term_months: int = MAX_TERM_MONTHS):
        self.storage = storage
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.due_days = due_days
        self.min_amount = min_amount
        self.max_term_months = max_term_months
        self.loans_table = "loans"
        self.payments_table = "loan_payments"

    def apply(self, ctx: RequestContext, amount, term_months: int, purpose: str = "") -> Loan:
        """
        Apply for a loan

        Args:
            ctx: Acting student
            amount: Principal, at least the configured minimum
            term_months: Repayment term, 1 to the configured maximum
            purpose: Free-text purpose shown to the reviewer

        Returns:
            Pending Loan
        """
        ctx.require_student()
        principal = quantize(amount)
        if principal < self.min_amount:
            raise ValidationError(f"Loan amount must be at least {self.min_amount}")
        if isinstance(term_months, bool) or not isinstance(term_months, int):
            raise ValidationError("term_months must be a whole number")
        if not MIN_TERM_MONTHS <= term_months <= self.max_term_months:
            raise ValidationError(f"term_months must be between {MIN_TERM_MONTHS} and {self.max_term_months}")

        account = self.accounts.get_account_for_user(ctx.user_id)
        terms = calculate_terms(principal, term_months)

        # The borrower's account lock serializes concurrent applications
        with self.storage.atomic():
            self.accounts.lock_accounts([account.id])
            if self.open_loan_for(ctx.user_id):
                raise ConflictError("You already have an active or pending loan")

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                school_id=ctx.school_id,
                borrower_id=ctx.user_id,
                amount=principal,
                term_months=term_months,
                interest_rate=terms["interest_rate"],
                total_amount=terms["total_amount"],
                monthly_payment=terms["monthly_payment"],
                outstanding_balance=terms["total_amount"],
                purpose=purpose
            )
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPLIED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"amount": principal, "term_months": term_months,
                      "interest_rate": loan.interest_rate},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return loan

    def review(self, ctx: RequestContext, loan_id: str, approved: bool) -> Loan:
        """
        Teacher decision. Approval disburses the principal and activates the
        loan in the same atomic unit; denial has no ledger effect.
        """
        ctx.require_teacher()
        self._load_scoped(ctx, loan_id)

        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            if approved:
                loan.status = loan_transition(loan.id, loan.status, LoanStatus.APPROVED)
                loan.reviewed_by = ctx.user_id
                loan.approved_at = datetime.now(timezone.utc)
                self._disburse(ctx, loan)
            else:
                loan.status = loan_transition(loan.id, loan.status, LoanStatus.DENIED)
                loan.reviewed_by = ctx.user_id
                loan.touch()
                self._save_loan(loan)

        event_type = AuditEventType.LOAN_DISBURSED if approved else AuditEventType.LOAN_DENIED
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"amount": loan.amount, "status": loan.status},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", f"Loan {loan.status.value}", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="loan.review", resource=loan.id)
        return loan

    def activate(self, ctx: RequestContext, loan_id: str) -> Loan:
        """Disburse a loan left in the approved state"""
        ctx.require_teacher()
        self._load_scoped(ctx, loan_id)

        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            self._disburse(ctx, loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"amount": loan.amount, "manual_activation": True},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return loan

    def pay(self, ctx: RequestContext, loan_id: str, amount) -> LoanPayment:
        """
        Repay part of an active loan

        When the remaining balance is no more than one monthly payment the
        payment is clamped to the remaining balance. Debit, payment record,
        balance decrement and the paid-off transition commit together.
        """
        requested = quantize(amount)
        if requested <= ZERO:
            raise ValidationError("Payment amount must be greater than 0")

        loan = self.get_loan(loan_id)
        if loan.borrower_id != ctx.user_id:
            raise AuthorizationError("You can only pay your own loans")

        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(f"Loan {loan.id} is not active")

            remaining = loan.outstanding_balance
            payment_amount = remaining if remaining <= loan.monthly_payment else requested
            if payment_amount > remaining:
                raise ValidationError(f"Payment exceeds outstanding balance of {remaining}")

            account = self.accounts.get_account_for_user(loan.borrower_id)
            balance = self.accounts.lock_accounts([account.id])[account.id].balance
            if balance < payment_amount:
                raise InsufficientFundsError(
                    f"Insufficient funds: balance {balance}, required {payment_amount}"
                )

            record = self.accounts.debit(
                account.id, payment_amount, TransactionType.LOAN_REPAYMENT,
                f"Loan payment - {loan.id[:8]}", created_by=ctx.user_id
            )
            now = datetime.now(timezone.utc)
            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=payment_amount,
                payment_date=now,
                transaction_id=record.id
            )
            self.storage.save(self.payments_table, payment.id, payment.to_dict())

            loan.outstanding_balance = quantize(remaining - payment_amount)
            if loan.outstanding_balance <= PAID_OFF_TOLERANCE:
                loan.outstanding_balance = ZERO
                loan.status = loan_transition(loan.id, loan.status, LoanStatus.PAID_OFF)
                loan.paid_off_at = now
            loan.touch()
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_MADE,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"amount": payment_amount, "outstanding_balance": loan.outstanding_balance},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        if loan.status == LoanStatus.PAID_OFF:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAID_OFF,
                entity_type="loan",
                entity_id=loan.id,
                user_id=ctx.user_id,
                school_id=ctx.school_id
            )
            log_action(logger, "info", "Loan paid off", user_id=ctx.user_id,
                       school_id=ctx.school_id, action="loan.paid_off", resource=loan.id)
        return payment

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def open_loan_for(self, borrower_id: str) -> Optional[Loan]:
        for data in self.storage.find(self.loans_table, {"borrower_id": borrower_id}):
            loan = Loan.from_dict(data)
            if loan.is_open:
                return loan
        return None

    def list_loans(self, ctx: RequestContext, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Teachers see their school's loans; students see their own"""
        filters = {"school_id": ctx.school_id} if ctx.is_teacher else {"borrower_id": ctx.user_id}
        if status is not None:
            filters["status"] = status
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def get_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = [
            LoanPayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda p: p.payment_date)
        return payments

    def total_paid(self, loan_id: str) -> Decimal:
        return sum((p.amount for p in self.get_payments(loan_id)), ZERO)

    def _disburse(self, ctx: RequestContext, loan: Loan) -> None:
        """approved -> active: credit principal and set the due date"""
        loan.status = loan_transition(loan.id, loan.status, LoanStatus.ACTIVE)
        account = self.accounts.get_account_for_user(loan.borrower_id)
        self.accounts.credit(
            account.id, loan.amount, TransactionType.LOAN_DISBURSEMENT,
            f"Loan disbursement - {loan.purpose or loan.id[:8]}", created_by=ctx.user_id
        )
        loan.due_date = datetime.now(timezone.utc) + timedelta(days=self.due_days)
        loan.touch()
        self._save_loan(loan)

    def _load_scoped(self, ctx: RequestContext, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        ctx.require_school(loan.school_id, "Loan")
        return loan

    def _lock_loan(self, loan_id: str) -> Loan:
        rows = self.storage.lock_rows(self.loans_table, [loan_id])
        if loan_id not in rows:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(rows[loan_id])

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
