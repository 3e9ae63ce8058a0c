"""
Treasury, tax and salary endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import get_context, get_system
from .schemas import (
    AmountRequest, BankSettingsRequest, BasicSalaryRequest, CreateTownRequest,
    TaxBracketsRequest, TaxToggleRequest, TownSettingsRequest, serialize
)
from ..context import RequestContext
from ..system import TownEconomySystem


router = APIRouter()


@router.get("")
def list_towns(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"towns": serialize(system.treasury.list_treasuries(ctx))}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_town(
    request: CreateTownRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Create a town treasury seeded with the initial balance"""
    ctx.require_teacher()
    treasury = system.treasury.create_town(ctx.school_id, request.town_class, request.town_name)
    return {"town": serialize(treasury)}


@router.get("/tax-brackets")
def get_tax_brackets(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"brackets": serialize(system.treasury.get_brackets(ctx.school_id))}


@router.put("/tax-brackets")
def set_tax_brackets(
    request: TaxBracketsRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    brackets = system.treasury.set_brackets(ctx, [b.to_bracket() for b in request.brackets])
    return {"brackets": serialize(brackets)}


@router.get("/bank-settings")
def get_bank_settings(
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"settings": serialize(system.treasury.get_bank_settings(ctx))}


@router.put("/bank-settings")
def update_bank_settings(
    request: BankSettingsRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    settings = system.treasury.update_bank_settings(ctx, request.basic_salary_amount)
    return {"settings": serialize(settings)}


@router.get("/{town_class}")
def get_treasury_report(
    town_class: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Balance plus totals per movement type"""
    return serialize(system.treasury.get_treasury_report(ctx, town_class))


@router.get("/{town_class}/tax-report")
def get_tax_report(
    town_class: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return {"students": serialize(system.treasury.get_tax_report(ctx, town_class))}


@router.post("/{town_class}/pay-salaries")
def pay_salaries(
    town_class: str,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Pay every employed student their job salary less tax"""
    result = system.treasury.pay_salaries(ctx, town_class)
    return serialize(result)


@router.post("/{town_class}/pay-basic-salary")
def pay_basic_salary(
    town_class: str,
    request: Optional[BasicSalaryRequest] = None,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    """Pay the tax-exempt basic salary to every unemployed student"""
    amount = request.amount if request else None
    return serialize(system.treasury.pay_basic_salary(ctx, town_class, amount))


@router.post("/{town_class}/bulk-payment")
def bulk_payment(
    town_class: str,
    request: AmountRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    return serialize(system.treasury.bulk_payment(ctx, town_class, request.amount, request.description))


@router.put("/{town_class}/tax")
def toggle_tax(
    town_class: str,
    request: TaxToggleRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    treasury = system.treasury.set_tax_enabled(ctx, town_class, request.enabled)
    return {
        "town": serialize(treasury),
        "message": f"Tax {'enabled' if treasury.tax_enabled else 'disabled'}"
    }


@router.put("/{town_class}/settings")
def update_town_settings(
    town_class: str,
    request: TownSettingsRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    treasury = system.treasury.update_town_settings(ctx, town_class, request.town_name, request.tax_rate)
    return {"town": serialize(treasury)}


@router.post("/{town_class}/deposit")
def deposit(
    town_class: str,
    request: AmountRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    treasury = system.treasury.deposit(ctx, town_class, request.amount, request.description)
    return {"town": serialize(treasury)}


@router.post("/{town_class}/withdraw")
def withdraw(
    town_class: str,
    request: AmountRequest,
    ctx: RequestContext = Depends(get_context),
    system: TownEconomySystem = Depends(get_system)
):
    treasury = system.treasury.withdraw(ctx, town_class, request.amount, request.description)
    return {"town": serialize(treasury)}
