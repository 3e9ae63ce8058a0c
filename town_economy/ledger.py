"""
Transaction Log

Append-only record of every balance-affecting event. An account's balance is
always the signed sum of the records that reference it: incoming amounts
(``to_account_id``) count positive, outgoing (``from_account_id``) negative.
"""

import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InternalError, ValidationError
from .money import ZERO, quantize
from .storage import StorageInterface, to_storable


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    SALARY = "salary"
    FINE = "fine"


@dataclass(frozen=True)
class TransactionRecord:
    """Immutable ledger entry"""
    id: str
    created_at: datetime
    school_id: str
    amount: Decimal
    transaction_type: TransactionType
    description: str
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    created_by: Optional[str] = None

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError("Transaction amount must be positive")
        if not self.from_account_id and not self.to_account_id:
            raise ValidationError("Transaction must reference at least one account")

    def signed_amount(self, account_id: str) -> Decimal:
        """Effect of this entry on one account's balance"""
        effect = ZERO
        if self.to_account_id == account_id:
            effect += self.amount
        if self.from_account_id == account_id:
            effect -= self.amount
        return effect

    def to_dict(self) -> Dict[str, Any]:
        return {key: to_storable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            school_id=data['school_id'],
            amount=Decimal(data['amount']),
            transaction_type=TransactionType(data['transaction_type']),
            description=data['description'],
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            created_by=data.get('created_by')
        )


class TransactionLog:
    """Append-only transaction store"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def append(
        self,
        school_id: str,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> TransactionRecord:
        """
        Record one balance movement. Must run inside the same transaction as
        the balance change it describes.
        """
        if not self.storage.in_transaction:
            raise InternalError("Transaction records can only be appended inside an atomic block")

        record = TransactionRecord(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            school_id=school_id,
            amount=quantize(amount),
            transaction_type=transaction_type,
            description=description,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            created_by=created_by
        )
        self.storage.save(self.table_name, record.id, record.to_dict())
        return record

    def get(self, record_id: str) -> Optional[TransactionRecord]:
        data = self.storage.load(self.table_name, record_id)
        return TransactionRecord.from_dict(data) if data else None

    def entries_for_account(self, account_id: str) -> List[TransactionRecord]:
        """Every record touching the account, oldest first"""
        incoming = self.storage.find(self.table_name, {'to_account_id': account_id})
        outgoing = self.storage.find(self.table_name, {'from_account_id': account_id})
        unique = {data['id']: data for data in incoming + outgoing}
        records = [TransactionRecord.from_dict(data) for data in unique.values()]
        records.sort(key=lambda r: r.created_at)
        return records

    def entries_for_school(self, school_id: str,
                           transaction_type: Optional[TransactionType] = None) -> List[TransactionRecord]:
        filters: Dict[str, Any] = {'school_id': school_id}
        if transaction_type is not None:
            filters['transaction_type'] = transaction_type
        records = [TransactionRecord.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def reconstruct_balance(self, account_id: str) -> Decimal:
        """Signed sum of all entries referencing the account"""
        total = ZERO
        for record in self.entries_for_account(account_id):
            total += record.signed_amount(account_id)
        return total

    def purge_school(self, school_id: str) -> int:
        """Delete a school's history. Used only by factory reset."""
        if not self.storage.in_transaction:
            raise InternalError("Purging history requires an atomic block")
        removed = 0
        for data in self.storage.find(self.table_name, {'school_id': school_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed
