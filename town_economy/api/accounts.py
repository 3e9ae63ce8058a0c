"""
Account endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_context, get_system
from .schemas import (
    AssignJobRequest, BulkRemovalRequest, EnrollStudentRequest, TeacherAdjustment, serialize
)
from ..context import RequestContext
from ..system import TownEconomySystem


router = APIRouter()


@router.get("/me")
def get_my_account(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Caller's account and whether they may transact"""
    account = system.accounts.get_account_for_user(ctx.user_id)
    can_transact, reason = system.accounts.check_can_transact(ctx.user_id)
    return {
        "account": serialize(account),
        "can_transact": can_transact,
        "reason": reason
    }


@router.get("/history")
def get_history(
    user_id: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"transactions": serialize(system.accounts.get_history(ctx, user_id))}


@router.get("/students")
def list_students(
    town_class: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    ctx.require_teacher()
    students = []
    for user in system.directory.list_students(ctx.school_id, town_class):
        account = system.accounts.find_account_for_user(user.id)
        students.append({
            "user": serialize(user),
            "balance": serialize(account.balance) if account else None
        })
    return {"students": students}


@router.post("/students", status_code=status.HTTP_201_CREATED)
def enroll_student(
    request: EnrollStudentRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Register a student in the caller's school and open their account"""
    ctx.require_teacher()
    user = system.enroll_student(
        ctx.school_id, request.username, request.town_class,
        first_name=request.first_name, last_name=request.last_name
    )
    return {
        "user": serialize(user),
        "account": serialize(system.accounts.get_account_for_user(user.id))
    }


@router.put("/students/{user_id}/job")
def assign_job(
    user_id: str,
    request: AssignJobRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    ctx.require_teacher()
    ctx.require_school(system.directory.get_user(user_id).school_id, "User")
    user = system.directory.assign_job(user_id, request.job_title, request.salary)
    return {"user": serialize(user)}


@router.delete("/students/{user_id}/job")
def clear_job(
    user_id: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    ctx.require_teacher()
    ctx.require_school(system.directory.get_user(user_id).school_id, "User")
    return {"user": serialize(system.directory.clear_job(user_id))}


@router.post("/deposit")
def deposit(
    request: TeacherAdjustment,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    record = system.accounts.deposit(ctx, request.username, request.amount, request.description)
    return {"transaction": serialize(record)}


@router.post("/withdraw")
def withdraw(
    request: TeacherAdjustment,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    record = system.accounts.withdraw(ctx, request.username, request.amount, request.description)
    return {"transaction": serialize(record)}


@router.post("/fine")
def fine(
    request: TeacherAdjustment,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    record = system.accounts.fine(ctx, request.username, request.amount, request.description)
    return {"transaction": serialize(record)}


@router.post("/bulk-removal")
def bulk_removal(
    request: BulkRemovalRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    charged = system.accounts.bulk_removal(ctx, request.town_class, request.amount, request.description)
    return {
        "students_charged": charged,
        "message": f"Removed {request.amount} from {charged} students"
    }


@router.get("/{account_id}/reconcile")
def reconcile(
    account_id: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Compare the stored balance with the one rebuilt from history"""
    ctx.require_teacher()
    ctx.require_school(system.accounts.get_account(account_id).school_id, "Account")
    return serialize(system.accounts.reconcile(account_id))
