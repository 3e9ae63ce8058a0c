"""
Land endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_context, get_system
from .schemas import CreateParcelRequest, PurchaseRequestModel, PurchaseReview, SwapRequest, serialize
from ..context import RequestContext
from ..states import ReviewStatus
from ..system import TownEconomySystem


router = APIRouter()


@router.get("/parcels")
def list_parcels(
    town_class: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    parcels = system.land.list_parcels(ctx, town_class)
    return {
        "parcels": [
            dict(serialize(parcel), current_value=serialize(system.land.current_value(parcel)))
            for parcel in parcels
        ]
    }


@router.post("/parcels", status_code=status.HTTP_201_CREATED)
def create_parcel(
    request: CreateParcelRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    ctx.require_teacher()
    parcel = system.land.add_parcel(
        ctx.school_id, request.town_class, request.row_index, request.col_index,
        request.biome_type, request.value
    )
    return {"parcel": serialize(parcel)}


@router.get("/parcels/{town_class}/{code}")
def get_parcel(
    town_class: str,
    code: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    parcel = system.land.get_parcel_by_code(ctx, town_class, code)
    return {
        "parcel": serialize(parcel),
        "current_value": serialize(system.land.current_value(parcel))
    }


@router.get("/my-properties")
def my_properties(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Parcels owned by the caller with their appreciated values"""
    return {"properties": serialize(system.land.my_properties(ctx))}


@router.post("/purchase-requests", status_code=status.HTTP_201_CREATED)
def submit_purchase_request(
    request: PurchaseRequestModel,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    purchase = system.land.submit_request(ctx, request.parcel_id, request.offered_price)
    return {
        "request": serialize(purchase),
        "message": "Purchase request submitted for teacher approval"
    }


@router.get("/purchase-requests")
def list_purchase_requests(
    status_filter: Optional[ReviewStatus] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"requests": serialize(system.land.list_requests(ctx, status_filter))}


@router.put("/purchase-requests/{request_id}")
def review_purchase_request(
    request_id: str,
    request: PurchaseReview,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Approve (sell the parcel) or deny a purchase request"""
    purchase = system.land.review(ctx, request_id, request.approve, request.reason)
    return {
        "request": serialize(purchase),
        "message": "Purchase approved" if request.approve else "Purchase denied"
    }


@router.post("/swap")
def swap_parcels(
    request: SwapRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    parcels = system.land.swap_positions(ctx, request.parcel_id_a, request.parcel_id_b)
    return {"parcels": serialize(parcels)}


@router.get("/stats")
def land_stats(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return serialize(system.land.get_stats(ctx))
