"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_context, get_system
from .schemas import LoanApplication, LoanPaymentRequest, LoanReview, serialize
from ..context import RequestContext
from ..states import LoanStatus
from ..system import TownEconomySystem


router = APIRouter()


@router.post("/apply", status_code=status.HTTP_201_CREATED)
def apply_for_loan(
    request: LoanApplication,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Submit a loan application for teacher review"""
    loan = system.loans.apply(ctx, request.amount, request.term_months, request.purpose)
    return {
        "loan": serialize(loan),
        "message": "Loan application submitted"
    }


@router.post("/approve")
def review_loan(
    request: LoanReview,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Approve (and disburse) or deny a pending loan"""
    loan = system.loans.review(ctx, request.loan_id, request.approved)
    return {
        "loan": serialize(loan),
        "message": "Loan approved and disbursed" if request.approved else "Loan denied"
    }


@router.post("/{loan_id}/activate")
def activate_loan(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    loan = system.loans.activate(ctx, loan_id)
    return {"loan": serialize(loan)}


@router.post("/pay")
def pay_loan(
    request: LoanPaymentRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Repay part of an active loan"""
    payment = system.loans.pay(ctx, request.loan_id, request.amount)
    loan = system.loans.get_loan(request.loan_id)
    return {
        "payment": serialize(payment),
        "outstanding_balance": serialize(loan.outstanding_balance),
        "status": loan.status.value
    }


@router.get("")
def list_loans(
    status_filter: Optional[LoanStatus] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"loans": serialize(system.loans.list_loans(ctx, status_filter))}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    loan = system.loans.get_loan(loan_id)
    ctx.require_school(loan.school_id, "Loan")
    if not ctx.is_teacher and loan.borrower_id != ctx.user_id:
        ctx.require_teacher()
    return {
        "loan": serialize(loan),
        "payments": serialize(system.loans.get_payments(loan_id)),
        "total_paid": serialize(system.loans.total_paid(loan_id))
    }
