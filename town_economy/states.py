"""
Status state machines

Every reviewable entity moves through an explicit transition table. The
transition functions are the only place a status may change.
"""

from enum import Enum
from typing import Dict, FrozenSet, TypeVar

from .errors import ConflictError


class ReviewStatus(Enum):
    """Shared lifecycle of pending transfers and land purchase requests"""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Awaiting teacher review
    APPROVED = "approved"    # Approved, disbursement in progress
    DENIED = "denied"
    ACTIVE = "active"        # Disbursed, accepting payments
    PAID_OFF = "paid_off"


REVIEW_TRANSITIONS: Dict[ReviewStatus, FrozenSet[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset({ReviewStatus.APPROVED, ReviewStatus.DENIED}),
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.DENIED: frozenset(),
}

LOAN_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.DENIED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.DENIED: frozenset(),
    LoanStatus.ACTIVE: frozenset({LoanStatus.PAID_OFF}),
    LoanStatus.PAID_OFF: frozenset(),
}

# Loans that block a new application by the same borrower
OPEN_LOAN_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE})

S = TypeVar("S", bound=Enum)


def _transition(table: Dict[S, FrozenSet[S]], entity: str, entity_id: str,
                current: S, target: S) -> S:
    if target not in table[current]:
        raise ConflictError(
            f"Cannot move {entity} {entity_id} from {current.value} to {target.value}",
            details={"current_status": current.value, "requested_status": target.value}
        )
    return target


def transfer_transition(transfer_id: str, current: ReviewStatus, target: ReviewStatus) -> ReviewStatus:
    return _transition(REVIEW_TRANSITIONS, "transfer", transfer_id, current, target)


def land_request_transition(request_id: str, current: ReviewStatus, target: ReviewStatus) -> ReviewStatus:
    return _transition(REVIEW_TRANSITIONS, "land purchase request", request_id, current, target)


def loan_transition(loan_id: str, current: LoanStatus, target: LoanStatus) -> LoanStatus:
    return _transition(LOAN_TRANSITIONS, "loan", loan_id, current, target)
