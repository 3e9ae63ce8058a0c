"""
Transfer endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_context, get_system
from .schemas import DenyRequest, TransferRequest, serialize
from ..context import RequestContext
from ..system import TownEconomySystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def request_transfer(
    request: TransferRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Submit a transfer for teacher approval"""
    transfer = system.transfers.request_transfer(ctx, request.to_user_id, request.amount, request.description)
    return {
        "transfer": serialize(transfer),
        "message": "Transfer request submitted for teacher approval"
    }


@router.get("/pending")
def list_pending_transfers(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Pending transfers in the teacher's school"""
    return {"transfers": serialize(system.transfers.list_pending(ctx))}


@router.get("/mine")
def list_my_transfers(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"transfers": serialize(system.transfers.list_for_user(ctx))}


@router.post("/{transfer_id}/approve")
def approve_transfer(
    transfer_id: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Approve a pending transfer and move the funds"""
    record = system.transfers.approve(ctx, transfer_id)
    return {
        "transaction": serialize(record),
        "message": "Transfer approved"
    }


@router.post("/{transfer_id}/deny")
def deny_transfer(
    transfer_id: str,
    request: Optional[DenyRequest] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    transfer = system.transfers.deny(ctx, transfer_id, request.reason if request else None)
    return {
        "transfer": serialize(transfer),
        "message": "Transfer denied"
    }
