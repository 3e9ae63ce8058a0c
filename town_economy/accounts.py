"""
Account Store

Owns student account balances. Balances change only through ``credit``,
``debit`` and ``transfer``, which run inside an atomic block, lock the rows
they touch and append the matching transaction record in the same unit.
"""

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .context import RequestContext, Role
from .directory import User, UserDirectory
from .errors import (
    AuthorizationError, InsufficientFundsError, InternalError, NotFoundError,
    ValidationError
)
from .ledger import TransactionLog, TransactionRecord, TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, positive_amount
from .states import LoanStatus
from .storage import StorageInterface, StorageRecord


logger = get_logger("town_economy.accounts")


@dataclass
class Account(StorageRecord):
    """Single flat balance owned by one user"""
    user_id: str
    school_id: str
    account_number: str
    balance: Decimal = ZERO


class AccountStore:
    """
    Balance primitives plus the teacher-facing account operations
    (deposit, withdraw, fine, bulk removal).
    """

    def __init__(self, storage: StorageInterface, transaction_log: TransactionLog,
                 directory: UserDirectory, audit_trail: AuditTrail):
        self.storage = storage
        self.transaction_log = transaction_log
        self.directory = directory
        self.audit_trail = audit_trail
        self.table_name = "accounts"

    # Lookups

    def open_account(self, user: User) -> Account:
        """Create the user's account, or return the existing one"""
        existing = self.find_account_for_user(user.id)
        if existing:
            return existing

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user.id,
            school_id=user.school_id,
            account_number=self._generate_account_number()
        )
        self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.id,
            metadata={"user_id": user.id, "account_number": account.account_number},
            school_id=user.school_id
        )
        return account

    def get_account(self, account_id: str) -> Account:
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise NotFoundError(f"Account {account_id} not found")
        return Account.from_dict(data)

    def find_account_for_user(self, user_id: str) -> Optional[Account]:
        data = self.storage.find_one(self.table_name, {"user_id": user_id})
        return Account.from_dict(data) if data else None

    def get_account_for_user(self, user_id: str) -> Account:
        account = self.find_account_for_user(user_id)
        if not account:
            raise NotFoundError(f"Account for user {user_id} not found")
        return account

    def get_balance(self, account_id: str) -> Decimal:
        return self.get_account(account_id).balance

    def list_accounts(self, school_id: str) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.find(self.table_name, {"school_id": school_id})]

    # Primitives

    def lock_accounts(self, account_ids: Iterable[str]) -> Dict[str, Account]:
        """Lock accounts in ascending id order and return their current state"""
        self._require_transaction()
        ids = list(account_ids)
        rows = self.storage.lock_rows(self.table_name, ids)
        missing = [account_id for account_id in ids if account_id not in rows]
        if missing:
            raise NotFoundError(f"Account {missing[0]} not found")
        return {account_id: Account.from_dict(data) for account_id, data in rows.items()}

    def credit(self, account_id: str, amount: Decimal, transaction_type: TransactionType,
               description: str, created_by: Optional[str] = None) -> TransactionRecord:
        amount = positive_amount(amount)
        account = self.lock_accounts([account_id])[account_id]
        account.balance += amount
        account.touch()
        self._save_account(account)
        return self.transaction_log.append(
            school_id=account.school_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            to_account_id=account.id,
            created_by=created_by
        )

    def debit(self, account_id: str, amount: Decimal, transaction_type: TransactionType,
              description: str, created_by: Optional[str] = None,
              floor: Optional[Decimal] = ZERO) -> TransactionRecord:
        """
        Remove funds. ``floor`` is the lowest balance the caller's policy
        allows; ``None`` permits any overdraft (fines).
        """
        amount = positive_amount(amount)
        account = self.lock_accounts([account_id])[account_id]
        self._check_floor(account, amount, floor)
        account.balance -= amount
        account.touch()
        self._save_account(account)
        return self.transaction_log.append(
            school_id=account.school_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            from_account_id=account.id,
            created_by=created_by
        )

    def transfer(self, from_account_id: str, to_account_id: str, amount: Decimal,
                 description: str, created_by: Optional[str] = None,
                 floor: Optional[Decimal] = ZERO) -> TransactionRecord:
        """Move funds between two accounts as a single ``transfer`` record"""
        amount = positive_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")

        accounts = self.lock_accounts([from_account_id, to_account_id])
        source = accounts[from_account_id]
        destination = accounts[to_account_id]
        self._check_floor(source, amount, floor)

        source.balance -= amount
        destination.balance += amount
        source.touch()
        destination.touch()
        self._save_account(source)
        self._save_account(destination)
        return self.transaction_log.append(
            school_id=source.school_id,
            amount=amount,
            transaction_type=TransactionType.TRANSFER,
            description=description,
            from_account_id=source.id,
            to_account_id=destination.id,
            created_by=created_by
        )

    # Eligibility

    def check_can_transact(self, user_id: str, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
        """
        A student with a negative balance or an overdue active loan may not
        start new transactions.
        """
        account = self.find_account_for_user(user_id)
        if account and account.balance < ZERO:
            return False, "Your account has a negative balance. Please clear your debt before making any transactions."

        now = now or datetime.now(timezone.utc)
        for loan in self.storage.find("loans", {"borrower_id": user_id, "status": LoanStatus.ACTIVE}):
            due_date = loan.get("due_date")
            if due_date and datetime.fromisoformat(due_date) < now:
                return False, "You have an overdue loan payment. Please make your loan payment before making any other transactions."

        return True, None

    # Teacher operations

    def deposit(self, ctx: RequestContext, username: str, amount,
                description: Optional[str] = None) -> TransactionRecord:
        """Teacher credits a student's account"""
        ctx.require_teacher()
        amount = positive_amount(amount)
        account = self._student_account(ctx, username)
        with self.storage.atomic():
            record = self.credit(
                account.id, amount, TransactionType.DEPOSIT,
                description or "Deposit by teacher", created_by=ctx.user_id
            )
        self._audit_teacher_action(ctx, AuditEventType.TEACHER_DEPOSIT, account, amount)
        return record

    def withdraw(self, ctx: RequestContext, username: str, amount,
                 description: Optional[str] = None) -> TransactionRecord:
        """Teacher removes funds; rejected if the student cannot cover it"""
        ctx.require_teacher()
        amount = positive_amount(amount)
        account = self._student_account(ctx, username)
        with self.storage.atomic():
            record = self.debit(
                account.id, amount, TransactionType.WITHDRAWAL,
                description or "Withdrawal by teacher", created_by=ctx.user_id
            )
        self._audit_teacher_action(ctx, AuditEventType.TEACHER_WITHDRAWAL, account, amount)
        return record

    def fine(self, ctx: RequestContext, username: str, amount,
             description: Optional[str] = None) -> TransactionRecord:
        """Teacher fines a student; fines may push the balance negative"""
        ctx.require_teacher()
        amount = positive_amount(amount)
        account = self._student_account(ctx, username)
        with self.storage.atomic():
            record = self.debit(
                account.id, amount, TransactionType.FINE,
                description or "Fine issued by teacher", created_by=ctx.user_id, floor=None
            )
        self._audit_teacher_action(ctx, AuditEventType.FINE_CHARGED, account, amount)
        return record

    def bulk_removal(self, ctx: RequestContext, town_class: str, amount,
                     description: Optional[str] = None) -> int:
        """
        Remove a flat amount from every student in the class who can cover
        it. Students below the amount are skipped.

        Returns:
            Number of students charged
        """
        ctx.require_teacher()
        amount = positive_amount(amount)
        students = self.directory.list_students(ctx.school_id, town_class)
        account_ids = [a.id for a in (self.find_account_for_user(s.id) for s in students) if a]
        if not account_ids:
            raise NotFoundError(f"No students found in class {town_class}")

        charged = 0
        with self.storage.atomic():
            for account in self.lock_accounts(account_ids).values():
                if account.balance < amount:
                    continue
                self.debit(
                    account.id, amount, TransactionType.WITHDRAWAL,
                    description or f"Bulk removal from {town_class}", created_by=ctx.user_id
                )
                charged += 1

        if charged == 0:
            raise NotFoundError(f"No students found in class {town_class} with sufficient balance")

        self.audit_trail.log_event(
            event_type=AuditEventType.BULK_REMOVAL,
            entity_type="town_class",
            entity_id=town_class,
            metadata={"amount": amount, "students_charged": charged},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", "Bulk removal completed", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="accounts.bulk_removal",
                   resource=town_class, extra={"students_charged": charged})
        return charged

    def get_history(self, ctx: RequestContext, user_id: Optional[str] = None) -> List[TransactionRecord]:
        """
        Students see their own history; teachers may view any student in
        their school, or the whole school when no user is given.
        """
        if ctx.role == Role.STUDENT:
            if user_id not in (None, ctx.user_id):
                raise AuthorizationError("Students can only view their own history")
            account = self.get_account_for_user(ctx.user_id)
            return list(reversed(self.transaction_log.entries_for_account(account.id)))

        ctx.require_teacher()
        if user_id is None:
            return self.transaction_log.entries_for_school(ctx.school_id)
        account = self.get_account_for_user(user_id)
        ctx.require_school(account.school_id, "Account")
        return list(reversed(self.transaction_log.entries_for_account(account.id)))

    def reconcile(self, account_id: str) -> Dict[str, Decimal]:
        """Compare the stored balance with the balance rebuilt from the log"""
        stored = self.get_balance(account_id)
        rebuilt = self.transaction_log.reconstruct_balance(account_id)
        return {"stored": stored, "reconstructed": rebuilt, "difference": stored - rebuilt}

    def reset_school(self, school_id: str) -> int:
        """
        Zero every balance in the school and drop its transaction history,
        together, so reconciliation still holds. Needs an atomic block.
        """
        accounts = self.lock_accounts(a.id for a in self.list_accounts(school_id))
        for account in accounts.values():
            if account.balance != ZERO:
                account.balance = ZERO
                account.touch()
                self._save_account(account)
        return self.transaction_log.purge_school(school_id)

    # Helpers

    def _student_account(self, ctx: RequestContext, username: str) -> Account:
        user = self.directory.find_by_username(ctx.school_id, username)
        if not user or user.role != Role.STUDENT:
            raise NotFoundError("Student not found")
        account = self.find_account_for_user(user.id)
        if not account:
            raise NotFoundError("Student account not found")
        return account

    def _check_floor(self, account: Account, amount: Decimal, floor: Optional[Decimal]) -> None:
        if floor is not None and account.balance - amount < floor:
            raise InsufficientFundsError(
                f"Insufficient funds: balance {account.balance}, required {amount}",
                details={"account_id": account.id, "balance": str(account.balance), "required": str(amount)}
            )

    def _require_transaction(self) -> None:
        if not self.storage.in_transaction:
            raise InternalError("Balance changes must run inside an atomic block")

    def _audit_teacher_action(self, ctx: RequestContext, event_type: AuditEventType,
                              account: Account, amount: Decimal) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="account",
            entity_id=account.id,
            metadata={"amount": amount},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", f"{event_type.value} of {amount}", user_id=ctx.user_id,
                   school_id=ctx.school_id, action=event_type.value, resource=account.id)

    def _generate_account_number(self) -> str:
        while True:
            candidate = f"ACC{random.randint(10000000, 99999999)}"
            if not self.storage.find_one(self.table_name, {"account_number": candidate}):
                return candidate

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
