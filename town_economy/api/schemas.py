"""
Pydantic schemas for API requests
"""

import dataclasses
from typing import Any, List, Optional
from pydantic import BaseModel, Field

from ..money import to_decimal
from ..storage import to_storable
from ..treasury import TaxBracket


# Transfer schemas
class TransferRequest(BaseModel):
    to_user_id: str
    amount: str = Field(..., description="Decimal amount as string")
    description: str = ""


class DenyRequest(BaseModel):
    reason: Optional[str] = None


# Loan schemas
class LoanApplication(BaseModel):
    amount: str = Field(..., description="Principal as decimal string")
    term_months: int = Field(..., ge=1)
    purpose: str = ""


class LoanReview(BaseModel):
    loan_id: str
    approved: bool


class LoanPaymentRequest(BaseModel):
    loan_id: str
    amount: str = Field(..., description="Payment as decimal string")


# Treasury schemas
class TaxToggleRequest(BaseModel):
    enabled: bool


class AmountRequest(BaseModel):
    amount: str
    description: str = ""


class BasicSalaryRequest(BaseModel):
    amount: Optional[str] = None


class TownSettingsRequest(BaseModel):
    town_name: Optional[str] = None
    tax_rate: Optional[str] = None


class CreateTownRequest(BaseModel):
    town_class: str
    town_name: Optional[str] = None


class BankSettingsRequest(BaseModel):
    basic_salary_amount: str


class TaxBracketModel(BaseModel):
    min_salary: str
    max_salary: Optional[str] = None
    tax_rate: str

    def to_bracket(self) -> TaxBracket:
        return TaxBracket(
            min_salary=to_decimal(self.min_salary),
            max_salary=to_decimal(self.max_salary) if self.max_salary is not None else None,
            tax_rate=to_decimal(self.tax_rate)
        )


class TaxBracketsRequest(BaseModel):
    brackets: List[TaxBracketModel]


# Land schemas
class PurchaseRequestModel(BaseModel):
    parcel_id: str
    offered_price: str


class PurchaseReview(BaseModel):
    approve: bool
    reason: Optional[str] = None


class SwapRequest(BaseModel):
    parcel_id_a: str
    parcel_id_b: str


class CreateParcelRequest(BaseModel):
    town_class: str
    row_index: int = Field(..., ge=0)
    col_index: int = Field(..., ge=0)
    biome_type: str
    value: Optional[str] = None


# Account schemas
class TeacherAdjustment(BaseModel):
    username: str
    amount: str
    description: str = ""


class BulkRemovalRequest(BaseModel):
    town_class: str
    amount: str
    description: str = ""


class EnrollStudentRequest(BaseModel):
    username: str
    town_class: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AssignJobRequest(BaseModel):
    job_title: str
    salary: str


# Admin schemas
class FactoryResetRequest(BaseModel):
    confirm: str


def serialize(value: Any) -> Any:
    """Turn engine records and results into JSON-safe structures"""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_storable(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return to_storable(value)
