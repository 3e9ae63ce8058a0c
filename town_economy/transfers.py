"""
Transfer Approval Workflow

Students ask to send money to a classmate; a teacher approves or denies.
The balance check at request time is advisory. The check made under the
account locks at approval time is the one that decides.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .context import RequestContext, Role
from .directory import UserDirectory
from .errors import (
    AuthorizationError, InsufficientFundsError, NotFoundError, ValidationError
)
from .ledger import TransactionRecord
from .logging_config import get_logger, log_action
from .money import positive_amount
from .states import ReviewStatus, transfer_transition
from .storage import StorageInterface, StorageRecord


logger = get_logger("town_economy.transfers")


@dataclass
class PendingTransfer(StorageRecord):
    school_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    description: str = ""
    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    denial_reason: Optional[str] = None
    transaction_id: Optional[str] = None


class TransferWorkflow:
    """Pending transfers and their teacher review"""

    def __init__(self, storage: StorageInterface, accounts: AccountStore,
                 directory: UserDirectory, audit_trail: AuditTrail):
        self.storage = storage
        self.accounts = accounts
        self.directory = directory
        self.audit_trail = audit_trail
        self.table_name = "pending_transfers"

    def request_transfer(self, ctx: RequestContext, to_user_id: str, amount,
                         description: str = "") -> PendingTransfer:
        """
        Record a student's transfer intent for teacher review

        Args:
            ctx: Acting student
            to_user_id: Recipient user id
            amount: Amount to send, must be positive
            description: Free-text note shown to the reviewer

        Returns:
            The pending transfer
        """
        ctx.require_student()
        amount = positive_amount(amount)
        if to_user_id == ctx.user_id:
            raise ValidationError("Cannot transfer to yourself")

        recipient = self.directory.get_user(to_user_id)
        if recipient.school_id != ctx.school_id:
            raise AuthorizationError("Recipient belongs to another school")
        if recipient.role != Role.STUDENT:
            raise ValidationError("Transfers can only be sent to students")

        can_transact, reason = self.accounts.check_can_transact(ctx.user_id)
        if not can_transact:
            raise ValidationError(reason)

        sender_account = self.accounts.get_account_for_user(ctx.user_id)
        self.accounts.get_account_for_user(to_user_id)
        if sender_account.balance < amount:
            raise InsufficientFundsError(
                f"Insufficient funds: balance {sender_account.balance}, required {amount}"
            )

        now = datetime.now(timezone.utc)
        transfer = PendingTransfer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            school_id=ctx.school_id,
            from_user_id=ctx.user_id,
            to_user_id=to_user_id,
            amount=amount,
            description=description or f"Transfer to {recipient.display_name}"
        )
        self._save_transfer(transfer)

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSFER_REQUESTED,
            entity_type="transfer",
            entity_id=transfer.id,
            metadata={"to_user_id": to_user_id, "amount": amount},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return transfer

    def get_transfer(self, transfer_id: str) -> PendingTransfer:
        data = self.storage.load(self.table_name, transfer_id)
        if not data:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return PendingTransfer.from_dict(data)

    def list_pending(self, ctx: RequestContext) -> List[PendingTransfer]:
        """Pending transfers in the teacher's school, oldest first"""
        ctx.require_teacher()
        return self._list(ctx.school_id, ReviewStatus.PENDING)

    def list_for_user(self, ctx: RequestContext) -> List[PendingTransfer]:
        """Transfers the acting student sent, newest first"""
        transfers = [
            PendingTransfer.from_dict(data)
            for data in self.storage.find(self.table_name, {"from_user_id": ctx.user_id})
        ]
        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers

    def approve(self, ctx: RequestContext, transfer_id: str) -> TransactionRecord:
        """
        Move the funds. Both accounts are locked in ascending id order and
        the sender's balance is re-checked before anything is written.
        """
        ctx.require_teacher()
        self._load_scoped(ctx, transfer_id)

        with self.storage.atomic():
            transfer = self._lock_transfer(transfer_id)
            transfer.status = transfer_transition(transfer.id, transfer.status, ReviewStatus.APPROVED)

            sender = self.accounts.get_account_for_user(transfer.from_user_id)
            recipient = self.accounts.get_account_for_user(transfer.to_user_id)
            self.accounts.lock_accounts([sender.id, recipient.id])
            record = self.accounts.transfer(
                sender.id, recipient.id, transfer.amount,
                transfer.description, created_by=ctx.user_id
            )

            transfer.reviewed_by = ctx.user_id
            transfer.reviewed_at = datetime.now(timezone.utc)
            transfer.transaction_id = record.id
            transfer.touch()
            self._save_transfer(transfer)

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSFER_APPROVED,
            entity_type="transfer",
            entity_id=transfer.id,
            metadata={"amount": transfer.amount, "transaction_id": record.id},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", "Transfer approved", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="transfer.approve", resource=transfer.id,
                   extra={"amount": str(transfer.amount)})
        return record

    def deny(self, ctx: RequestContext, transfer_id: str,
             reason: Optional[str] = None) -> PendingTransfer:
        """Mark the transfer denied; no balance effect"""
        ctx.require_teacher()
        self._load_scoped(ctx, transfer_id)

        with self.storage.atomic():
            transfer = self._lock_transfer(transfer_id)
            transfer.status = transfer_transition(transfer.id, transfer.status, ReviewStatus.DENIED)
            transfer.reviewed_by = ctx.user_id
            transfer.reviewed_at = datetime.now(timezone.utc)
            transfer.denial_reason = reason
            transfer.touch()
            self._save_transfer(transfer)

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSFER_DENIED,
            entity_type="transfer",
            entity_id=transfer.id,
            metadata={"reason": reason},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "info", "Transfer denied", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="transfer.deny", resource=transfer.id)
        return transfer

    def _list(self, school_id: str, status: ReviewStatus) -> List[PendingTransfer]:
        transfers = [
            PendingTransfer.from_dict(data)
            for data in self.storage.find(self.table_name, {"school_id": school_id, "status": status})
        ]
        transfers.sort(key=lambda t: t.created_at)
        return transfers

    def _load_scoped(self, ctx: RequestContext, transfer_id: str) -> PendingTransfer:
        transfer = self.get_transfer(transfer_id)
        ctx.require_school(transfer.school_id, "Transfer")
        return transfer

    def _lock_transfer(self, transfer_id: str) -> PendingTransfer:
        rows = self.storage.lock_rows(self.table_name, [transfer_id])
        if transfer_id not in rows:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return PendingTransfer.from_dict(rows[transfer_id])

    def _save_transfer(self, transfer: PendingTransfer) -> None:
        self.storage.save(self.table_name, transfer.id, transfer.to_dict())
