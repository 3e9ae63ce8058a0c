"""
Admin endpoints (factory reset, audit verification)
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .auth import get_context, get_system
from .schemas import FactoryResetRequest
from ..context import RequestContext
from ..system import TownEconomySystem


router = APIRouter()


@router.post("/factory-reset")
def factory_reset(
    request: FactoryResetRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
) -> Dict[str, Any]:
    """Reset the caller's school to its starting state"""
    summary = system.admin.factory_reset(ctx, request.confirm)
    return {
        "summary": summary,
        "message": "Factory reset completed"
    }


@router.get("/audit/verify")
def verify_audit_chain(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
) -> Dict[str, Any]:
    """Check the audit hash chain for tampering"""
    ctx.require_teacher()
    return system.audit_trail.verify_integrity()
