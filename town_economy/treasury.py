"""
Treasury and Tax Module

Per town-class treasuries, progressive income tax and salary batches.

Salaries are paid out of the treasury. Tax withheld from a salary never
leaves the treasury, so a batch lowers the treasury by exactly the total net
paid. The ``tax_collection`` entry written for a batch is informational.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import uuid

from .accounts import Account, AccountStore
from .audit import AuditTrail, AuditEventType
from .context import RequestContext
from .directory import User, UserDirectory
from .errors import (
    ConflictError, InsufficientTreasuryFundsError, InternalError, NotFoundError,
    ValidationError
)
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, positive_amount, quantize
from .storage import StorageInterface, StorageRecord


logger = get_logger("town_economy.treasury")

HUNDRED = Decimal("100")


class TreasuryTransactionType(Enum):
    TAX_COLLECTION = "tax_collection"
    SALARY_PAYMENT = "salary_payment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INITIAL_BALANCE = "initial_balance"


@dataclass(frozen=True)
class TaxBracket:
    """Half-open salary range [min_salary, max_salary) taxed at tax_rate percent"""
    min_salary: Decimal
    max_salary: Optional[Decimal]
    tax_rate: Decimal

    def contains(self, gross: Decimal) -> bool:
        return self.min_salary <= gross and (self.max_salary is None or gross < self.max_salary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_salary": str(self.min_salary),
            "max_salary": str(self.max_salary) if self.max_salary is not None else None,
            "tax_rate": str(self.tax_rate),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaxBracket':
        max_salary = data.get("max_salary")
        return cls(
            min_salary=quantize(data["min_salary"]),
            max_salary=quantize(max_salary) if max_salary is not None else None,
            tax_rate=quantize(data["tax_rate"]),
        )


DEFAULT_TAX_BRACKETS: Sequence[TaxBracket] = (
    TaxBracket(Decimal("0.00"), Decimal("500.00"), Decimal("0.00")),
    TaxBracket(Decimal("500.00"), Decimal("1500.00"), Decimal("5.00")),
    TaxBracket(Decimal("1500.00"), Decimal("3000.00"), Decimal("10.00")),
    TaxBracket(Decimal("3000.00"), Decimal("5000.00"), Decimal("15.00")),
    TaxBracket(Decimal("5000.00"), Decimal("10000.00"), Decimal("20.00")),
    TaxBracket(Decimal("10000.00"), None, Decimal("25.00")),
)


@dataclass(frozen=True)
class TaxCalculation:
    gross: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    net: Decimal


def validate_brackets(brackets: Sequence[TaxBracket]) -> List[TaxBracket]:
    """
    Brackets must start at zero, be contiguous, end unbounded and never
    lower the rate as salary grows.
    """
    ordered = sorted(brackets, key=lambda b: b.min_salary)
    if not ordered:
        raise ValidationError("At least one tax bracket is required")
    if ordered[0].min_salary != ZERO:
        raise ValidationError("The first tax bracket must start at 0")

    for current, following in zip(ordered, ordered[1:]):
        if current.max_salary is None or current.max_salary != following.min_salary:
            raise ValidationError(
                f"Tax brackets must be contiguous: gap or overlap at {following.min_salary}"
            )
        if following.tax_rate < current.tax_rate:
            raise ValidationError("Tax rates must not decrease as salary increases")

    for bracket in ordered:
        if bracket.max_salary is not None and bracket.max_salary <= bracket.min_salary:
            raise ValidationError("Tax bracket upper bound must exceed its lower bound")
        if not ZERO <= bracket.tax_rate <= HUNDRED:
            raise ValidationError("Tax rate must be between 0 and 100")
    if ordered[-1].max_salary is not None:
        raise ValidationError("The last tax bracket must be unbounded")
    return ordered


def calculate_progressive_tax(gross, brackets: Sequence[TaxBracket] = DEFAULT_TAX_BRACKETS) -> TaxCalculation:
    """
    Pick the bracket with the highest lower bound not above the salary and
    apply its rate to the whole salary.
    """
    gross = quantize(gross)
    if gross < ZERO:
        raise ValidationError("Salary cannot be negative")

    rate = ZERO
    for bracket in sorted(brackets, key=lambda b: b.min_salary, reverse=True):
        if bracket.contains(gross):
            rate = bracket.tax_rate
            break

    tax_amount = quantize(gross * rate / HUNDRED)
    return TaxCalculation(gross=gross, tax_rate=rate, tax_amount=tax_amount, net=gross - tax_amount)


@dataclass
class TownTreasury(StorageRecord):
    school_id: str
    town_class: str
    town_name: str
    treasury_balance: Decimal
    tax_enabled: bool = True
    tax_rate: Decimal = Decimal("5.00")  # Headline rate for display only


@dataclass
class TreasuryTransaction(StorageRecord):
    school_id: str
    town_class: str
    amount: Decimal  # Signed
    transaction_type: TreasuryTransactionType
    description: str
    created_by: Optional[str] = None


@dataclass
class TaxTransaction(StorageRecord):
    school_id: str
    user_id: str
    town_class: str
    gross_amount: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    tax_rate_applied: Decimal
    description: str
    transaction_type: str = "salary"


@dataclass
class BankSettings(StorageRecord):
    """Per-school bank settings; id is the school id"""
    basic_salary_amount: Decimal
    last_basic_salary_run: Optional[datetime] = None
    updated_by: Optional[str] = None


@dataclass
class SalaryPayment:
    user_id: str
    username: str
    gross: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    net: Decimal


@dataclass
class SalaryRunResult:
    town_class: str
    paid_count: int
    total_gross: Decimal
    total_tax: Decimal
    total_net: Decimal
    treasury_balance: Decimal
    payments: List[SalaryPayment] = field(default_factory=list)


class TreasuryTaxEngine:
    """
    Treasury balances, tax brackets and salary disbursement
    """

    def __init__(self, storage: StorageInterface, accounts: AccountStore,
                 directory: UserDirectory, audit_trail: AuditTrail,
                 initial_balance: Decimal = Decimal("10000000.00"),
                 default_basic_salary: Decimal = Decimal("1500.00")):
        self.storage = storage
        self.accounts = accounts
        self.directory = directory
        self.audit_trail = audit_trail
        self.initial_balance = quantize(initial_balance)
        self.default_basic_salary = quantize(default_basic_salary)
        self.treasury_table = "town_treasuries"
        self.treasury_transactions_table = "treasury_transactions"
        self.tax_transactions_table = "tax_transactions"
        self.brackets_table = "tax_brackets"
        self.settings_table = "bank_settings"

    # Towns

    def create_town(self, school_id: str, town_class: str,
                    town_name: Optional[str] = None) -> TownTreasury:
        """Create a town treasury seeded with the initial balance"""
        if self.find_treasury(school_id, town_class):
            raise ConflictError(f"Town {town_class} already exists")

        now = datetime.now(timezone.utc)
        treasury = TownTreasury(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            school_id=school_id,
            town_class=town_class,
            town_name=town_name or f"{town_class} Town",
            treasury_balance=self.initial_balance
        )
        with self.storage.atomic():
            self._save_treasury(treasury)
            self._record_treasury_transaction(
                treasury, self.initial_balance, TreasuryTransactionType.INITIAL_BALANCE,
                "Initial treasury balance"
            )
        return treasury

    def find_treasury(self, school_id: str, town_class: str) -> Optional[TownTreasury]:
        data = self.storage.find_one(self.treasury_table, {"school_id": school_id, "town_class": town_class})
        return TownTreasury.from_dict(data) if data else None

    def get_treasury(self, school_id: str, town_class: str) -> TownTreasury:
        treasury = self.find_treasury(school_id, town_class)
        if not treasury:
            raise NotFoundError(f"Town {town_class} not found")
        return treasury

    def list_treasuries(self, ctx: RequestContext) -> List[TownTreasury]:
        towns = [TownTreasury.from_dict(d) for d in self.storage.find(self.treasury_table, {"school_id": ctx.school_id})]
        towns.sort(key=lambda t: t.town_class)
        return towns

    def lock_treasury(self, school_id: str, town_class: str) -> TownTreasury:
        """Lock and reload a treasury row. Must run inside an atomic block."""
        if not self.storage.in_transaction:
            raise InternalError("Treasury changes must run inside an atomic block")
        treasury = self.get_treasury(school_id, town_class)
        rows = self.storage.lock_rows(self.treasury_table, [treasury.id])
        return TownTreasury.from_dict(rows[treasury.id])

    def credit_treasury(self, school_id: str, town_class: str, amount: Decimal,
                        transaction_type: TreasuryTransactionType, description: str,
                        created_by: Optional[str] = None) -> TownTreasury:
        """Add funds under lock and record the movement"""
        amount = positive_amount(amount)
        treasury = self.lock_treasury(school_id, town_class)
        treasury.treasury_balance += amount
        treasury.touch()
        self._save_treasury(treasury)
        self._record_treasury_transaction(treasury, amount, transaction_type, description, created_by)
        return treasury

    def debit_treasury(self, school_id: str, town_class: str, amount: Decimal,
                       transaction_type: TreasuryTransactionType, description: str,
                       created_by: Optional[str] = None) -> TownTreasury:
        """Remove funds under lock; the treasury may never go negative"""
        amount = positive_amount(amount)
        treasury = self.lock_treasury(school_id, town_class)
        self._require_treasury_funds(treasury, amount)
        treasury.treasury_balance -= amount
        treasury.touch()
        self._save_treasury(treasury)
        self._record_treasury_transaction(treasury, -amount, transaction_type, description, created_by)
        return treasury

    # Tax brackets

    def get_brackets(self, school_id: str) -> List[TaxBracket]:
        data = self.storage.load(self.brackets_table, school_id)
        if not data:
            return list(DEFAULT_TAX_BRACKETS)
        return [TaxBracket.from_dict(b) for b in data["brackets"]]

    def set_brackets(self, ctx: RequestContext, brackets: Sequence[TaxBracket]) -> List[TaxBracket]:
        ctx.require_teacher()
        ordered = validate_brackets(brackets)
        self.storage.save(self.brackets_table, ctx.school_id, {
            "id": ctx.school_id,
            "brackets": [b.to_dict() for b in ordered],
            "updated_by": ctx.user_id,
        })
        self.audit_trail.log_event(
            event_type=AuditEventType.TAX_BRACKETS_UPDATED,
            entity_type="tax_brackets",
            entity_id=ctx.school_id,
            metadata={"brackets": [b.to_dict() for b in ordered]},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return ordered

    def resolve_tax(self, school_id: str, gross) -> TaxCalculation:
        return calculate_progressive_tax(gross, self.get_brackets(school_id))

    # Salary batches

    def pay_salaries(self, ctx: RequestContext, town_class: str) -> SalaryRunResult:
        """
        Pay every employed student in the class their job salary, less tax
        when tax is enabled. The treasury row stays locked for the whole
        batch; if it cannot cover the total net nothing is written.
        """
        ctx.require_teacher()
        self.get_treasury(ctx.school_id, town_class)
        brackets = self.get_brackets(ctx.school_id)
        # Job changes committed during a run apply to the next run
        employees = self._with_accounts(self.directory.list_employed(ctx.school_id, town_class))

        with self.storage.atomic():
            self.accounts.lock_accounts([account.id for _, account in employees])
            treasury = self.lock_treasury(ctx.school_id, town_class)

            payments = []
            for user, account in employees:
                if treasury.tax_enabled:
                    calc = calculate_progressive_tax(user.job_salary, brackets)
                else:
                    calc = TaxCalculation(gross=user.job_salary, tax_rate=ZERO, tax_amount=ZERO, net=user.job_salary)
                payments.append((user, account, calc))

            total_gross = sum((calc.gross for _, _, calc in payments), ZERO)
            total_tax = sum((calc.tax_amount for _, _, calc in payments), ZERO)
            total_net = sum((calc.net for _, _, calc in payments), ZERO)
            self._require_treasury_funds(treasury, total_net)

            for user, account, calc in payments:
                if calc.net > ZERO:
                    self.accounts.credit(
                        account.id, calc.net, TransactionType.SALARY,
                        self._salary_description(user, calc, treasury.tax_enabled),
                        created_by=ctx.user_id
                    )
                if calc.tax_amount > ZERO:
                    self._record_tax(ctx, user, calc)

            if total_net > ZERO:
                treasury.treasury_balance -= total_net
                treasury.touch()
                self._save_treasury(treasury)
                self._record_treasury_transaction(
                    treasury, -total_net, TreasuryTransactionType.SALARY_PAYMENT,
                    f"Salary payments to {len(payments)} employees", ctx.user_id
                )
            if total_tax > ZERO:
                self._record_treasury_transaction(
                    treasury, total_tax, TreasuryTransactionType.TAX_COLLECTION,
                    f"Income tax collected from {len(payments)} employees", ctx.user_id
                )

        result = SalaryRunResult(
            town_class=town_class,
            paid_count=len(payments),
            total_gross=total_gross,
            total_tax=total_tax,
            total_net=total_net,
            treasury_balance=treasury.treasury_balance,
            payments=[
                SalaryPayment(user.id, user.username, calc.gross, calc.tax_rate, calc.tax_amount, calc.net)
                for user, _, calc in payments
            ]
        )
        self._audit_batch(ctx, AuditEventType.SALARIES_PAID, town_class, result)
        return result

    def pay_basic_salary(self, ctx: RequestContext, town_class: str, amount=None) -> SalaryRunResult:
        """Flat, tax-exempt payment to every unemployed student in the class"""
        ctx.require_teacher()
        settings = self.get_bank_settings(ctx)
        basic = positive_amount(amount) if amount is not None else settings.basic_salary_amount
        self.get_treasury(ctx.school_id, town_class)
        recipients = self._with_accounts(self.directory.list_unemployed(ctx.school_id, town_class))

        with self.storage.atomic():
            self.accounts.lock_accounts([account.id for _, account in recipients])
            treasury = self.lock_treasury(ctx.school_id, town_class)
            total = basic * len(recipients)
            self._require_treasury_funds(treasury, total)

            for user, account in recipients:
                self.accounts.credit(
                    account.id, basic, TransactionType.SALARY,
                    "Basic salary (unemployed)", created_by=ctx.user_id
                )

            if total > ZERO:
                treasury.treasury_balance -= total
                treasury.touch()
                self._save_treasury(treasury)
                self._record_treasury_transaction(
                    treasury, -total, TreasuryTransactionType.SALARY_PAYMENT,
                    f"Basic salary to {len(recipients)} unemployed students", ctx.user_id
                )

            settings.last_basic_salary_run = datetime.now(timezone.utc)
            settings.updated_by = ctx.user_id
            settings.touch()
            self._save_settings(settings)

        result = SalaryRunResult(
            town_class=town_class,
            paid_count=len(recipients),
            total_gross=total,
            total_tax=ZERO,
            total_net=total,
            treasury_balance=treasury.treasury_balance,
            payments=[SalaryPayment(u.id, u.username, basic, ZERO, ZERO, basic) for u, _ in recipients]
        )
        self._audit_batch(ctx, AuditEventType.BASIC_SALARY_PAID, town_class, result)
        return result

    def bulk_payment(self, ctx: RequestContext, town_class: str, amount,
                     description: Optional[str] = None) -> SalaryRunResult:
        """Treasury-funded flat deposit to every student in the class"""
        ctx.require_teacher()
        amount = positive_amount(amount)
        self.get_treasury(ctx.school_id, town_class)
        students = self.directory.list_students(ctx.school_id, town_class)
        if not students:
            raise NotFoundError(f"No students found in class {town_class}")
        recipients = self._with_accounts(students)

        with self.storage.atomic():
            self.accounts.lock_accounts([account.id for _, account in recipients])
            treasury = self.lock_treasury(ctx.school_id, town_class)
            total = amount * len(recipients)
            self._require_treasury_funds(treasury, total)

            for user, account in recipients:
                self.accounts.credit(
                    account.id, amount, TransactionType.DEPOSIT,
                    description or f"Bulk payment to {town_class}", created_by=ctx.user_id
                )
            if total > ZERO:
                treasury.treasury_balance -= total
                treasury.touch()
                self._save_treasury(treasury)
                self._record_treasury_transaction(
                    treasury, -total, TreasuryTransactionType.WITHDRAWAL,
                    description or f"Bulk payment to {len(recipients)} students", ctx.user_id
                )

        result = SalaryRunResult(
            town_class=town_class,
            paid_count=len(recipients),
            total_gross=total,
            total_tax=ZERO,
            total_net=total,
            treasury_balance=treasury.treasury_balance,
            payments=[SalaryPayment(u.id, u.username, amount, ZERO, ZERO, amount) for u, _ in recipients]
        )
        self._audit_batch(ctx, AuditEventType.BULK_PAYMENT, town_class, result)
        return result

    # Treasury administration

    def set_tax_enabled(self, ctx: RequestContext, town_class: str, enabled: bool) -> TownTreasury:
        ctx.require_teacher()
        with self.storage.atomic():
            treasury = self.lock_treasury(ctx.school_id, town_class)
            treasury.tax_enabled = bool(enabled)
            treasury.touch()
            self._save_treasury(treasury)

        self.audit_trail.log_event(
            event_type=AuditEventType.TAX_TOGGLED,
            entity_type="town_treasury",
            entity_id=treasury.id,
            metadata={"town_class": town_class, "tax_enabled": treasury.tax_enabled},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return treasury

    def update_town_settings(self, ctx: RequestContext, town_class: str,
                             town_name: Optional[str] = None, tax_rate=None) -> TownTreasury:
        """Rename the town or change the headline (display) tax rate"""
        ctx.require_teacher()
        if tax_rate is not None:
            tax_rate = quantize(tax_rate)
            if not ZERO <= tax_rate <= HUNDRED:
                raise ValidationError("Tax rate must be between 0 and 100")

        with self.storage.atomic():
            treasury = self.lock_treasury(ctx.school_id, town_class)
            if town_name:
                treasury.town_name = town_name
            if tax_rate is not None:
                treasury.tax_rate = tax_rate
            treasury.touch()
            self._save_treasury(treasury)

        self.audit_trail.log_event(
            event_type=AuditEventType.TOWN_SETTINGS_UPDATED,
            entity_type="town_treasury",
            entity_id=treasury.id,
            metadata={"town_name": treasury.town_name, "tax_rate": treasury.tax_rate},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return treasury

    def deposit(self, ctx: RequestContext, town_class: str, amount,
                description: Optional[str] = None) -> TownTreasury:
        ctx.require_teacher()
        amount = positive_amount(amount)
        with self.storage.atomic():
            treasury = self.credit_treasury(
                ctx.school_id, town_class, amount, TreasuryTransactionType.DEPOSIT,
                description or "Treasury deposit", ctx.user_id
            )
        self._audit_treasury(ctx, AuditEventType.TREASURY_DEPOSIT, treasury, amount)
        return treasury

    def withdraw(self, ctx: RequestContext, town_class: str, amount,
                 description: Optional[str] = None) -> TownTreasury:
        ctx.require_teacher()
        amount = positive_amount(amount)
        with self.storage.atomic():
            treasury = self.debit_treasury(
                ctx.school_id, town_class, amount, TreasuryTransactionType.WITHDRAWAL,
                description or "Treasury withdrawal", ctx.user_id
            )
        self._audit_treasury(ctx, AuditEventType.TREASURY_WITHDRAWAL, treasury, amount)
        return treasury

    # Bank settings

    def get_bank_settings(self, ctx: RequestContext) -> BankSettings:
        data = self.storage.load(self.settings_table, ctx.school_id)
        if data:
            return BankSettings.from_dict(data)
        now = datetime.now(timezone.utc)
        return BankSettings(
            id=ctx.school_id,
            created_at=now,
            updated_at=now,
            basic_salary_amount=self.default_basic_salary
        )

    def update_bank_settings(self, ctx: RequestContext, basic_salary_amount) -> BankSettings:
        ctx.require_teacher()
        settings = self.get_bank_settings(ctx)
        settings.basic_salary_amount = positive_amount(basic_salary_amount, "basic_salary_amount")
        settings.updated_by = ctx.user_id
        settings.touch()
        self._save_settings(settings)

        self.audit_trail.log_event(
            event_type=AuditEventType.BANK_SETTING_UPDATED,
            entity_type="bank_settings",
            entity_id=ctx.school_id,
            metadata={"basic_salary_amount": settings.basic_salary_amount},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return settings

    def reset_treasuries(self, ctx: RequestContext) -> int:
        """Reseed every treasury of the school with the initial balance. Needs an atomic block."""
        treasuries = self.list_treasuries(ctx)
        for treasury in treasuries:
            current = self.lock_treasury(treasury.school_id, treasury.town_class)
            current.treasury_balance = self.initial_balance
            current.tax_enabled = True
            current.touch()
            self._save_treasury(current)
            self._record_treasury_transaction(
                current, self.initial_balance, TreasuryTransactionType.INITIAL_BALANCE,
                "Treasury reset to initial balance", ctx.user_id
            )
        self.reset_bank_settings(ctx.school_id)
        return len(treasuries)

    def reset_bank_settings(self, school_id: str) -> None:
        self.storage.delete(self.settings_table, school_id)

    # Reports

    def get_transactions(self, school_id: str, town_class: str,
                         limit: Optional[int] = None) -> List[TreasuryTransaction]:
        records = [
            TreasuryTransaction.from_dict(d)
            for d in self.storage.find(self.treasury_transactions_table,
                                       {"school_id": school_id, "town_class": town_class})
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit else records

    def get_treasury_report(self, ctx: RequestContext, town_class: str) -> Dict[str, Any]:
        ctx.require_teacher()
        treasury = self.get_treasury(ctx.school_id, town_class)
        transactions = self.get_transactions(ctx.school_id, town_class)

        def total(kind: TreasuryTransactionType) -> Decimal:
            return sum((abs(t.amount) for t in transactions if t.transaction_type == kind), ZERO)

        return {
            "town_class": town_class,
            "town_name": treasury.town_name,
            "treasury_balance": treasury.treasury_balance,
            "tax_enabled": treasury.tax_enabled,
            "tax_rate": treasury.tax_rate,
            "total_tax_collected": total(TreasuryTransactionType.TAX_COLLECTION),
            "total_salaries_paid": total(TreasuryTransactionType.SALARY_PAYMENT),
            "total_deposits": total(TreasuryTransactionType.DEPOSIT),
            "total_withdrawals": total(TreasuryTransactionType.WITHDRAWAL),
            "recent_transactions": transactions[:20],
        }

    def get_tax_report(self, ctx: RequestContext, town_class: str) -> List[Dict[str, Any]]:
        """Tax paid per student in the class, highest first"""
        ctx.require_teacher()
        taxes = [
            TaxTransaction.from_dict(d)
            for d in self.storage.find(self.tax_transactions_table,
                                       {"school_id": ctx.school_id, "town_class": town_class})
        ]
        report = []
        for student in self.directory.list_students(ctx.school_id, town_class):
            paid = [t for t in taxes if t.user_id == student.id]
            report.append({
                "user_id": student.id,
                "username": student.username,
                "job_title": student.job_title,
                "salary": student.job_salary,
                "total_tax_paid": sum((t.tax_amount for t in paid), ZERO),
                "tax_payments": len(paid),
            })
        report.sort(key=lambda r: r["total_tax_paid"], reverse=True)
        return report

    # Helpers

    def _with_accounts(self, users: List[User]) -> List[Tuple[User, Account]]:
        """Pair users with their accounts; users without an account are skipped"""
        pairs = []
        for user in users:
            account = self.accounts.find_account_for_user(user.id)
            if account:
                pairs.append((user, account))
        return pairs

    def _require_treasury_funds(self, treasury: TownTreasury, amount: Decimal) -> None:
        if treasury.treasury_balance < amount:
            raise InsufficientTreasuryFundsError(
                f"Insufficient treasury funds. Need {amount} but only have {treasury.treasury_balance}",
                details={"required": str(amount), "available": str(treasury.treasury_balance)}
            )

    @staticmethod
    def _salary_description(user: User, calc: TaxCalculation, tax_enabled: bool) -> str:
        job = user.job_title or "job"
        if tax_enabled:
            return f"Salary for {job} ({calc.gross} - {calc.tax_rate}% tax = {calc.net})"
        return f"Salary for {job}"

    def _record_tax(self, ctx: RequestContext, user: User, calc: TaxCalculation) -> None:
        now = datetime.now(timezone.utc)
        tax = TaxTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            school_id=ctx.school_id,
            user_id=user.id,
            town_class=user.town_class,
            gross_amount=calc.gross,
            tax_amount=calc.tax_amount,
            net_amount=calc.net,
            tax_rate_applied=calc.tax_rate,
            description=f"Tax on salary for {user.job_title or 'job'}"
        )
        self.storage.save(self.tax_transactions_table, tax.id, tax.to_dict())

    def _record_treasury_transaction(self, treasury: TownTreasury, amount: Decimal,
                                     transaction_type: TreasuryTransactionType,
                                     description: str, created_by: Optional[str] = None) -> TreasuryTransaction:
        now = datetime.now(timezone.utc)
        record = TreasuryTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            school_id=treasury.school_id,
            town_class=treasury.town_class,
            amount=quantize(amount),
            transaction_type=transaction_type,
            description=description,
            created_by=created_by
        )
        self.storage.save(self.treasury_transactions_table, record.id, record.to_dict())
        return record

    def _audit_batch(self, ctx: RequestContext, event_type: AuditEventType,
                     town_class: str, result: SalaryRunResult) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="town_class",
            entity_id=town_class,
            metadata={
                "paid_count": result.paid_count,
                "total_gross": result.total_gross,
                "total_tax": result.total_tax,
                "total_net": result.total_net,
            },
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", f"{event_type.value} for {result.paid_count} students",
                   user_id=ctx.user_id, school_id=ctx.school_id, action=event_type.value,
                   resource=town_class, extra={"total_net": str(result.total_net)})

    def _audit_treasury(self, ctx: RequestContext, event_type: AuditEventType,
                        treasury: TownTreasury, amount: Decimal) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="town_treasury",
            entity_id=treasury.id,
            metadata={"amount": amount, "balance": treasury.treasury_balance},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )

    def _save_treasury(self, treasury: TownTreasury) -> None:
        self.storage.save(self.treasury_table, treasury.id, treasury.to_dict())

    def _save_settings(self, settings: BankSettings) -> None:
        self.storage.save(self.settings_table, settings.id, settings.to_dict())
