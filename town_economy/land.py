"""
Land Module

Parcels, purchase requests and their teacher review, and time-based
valuation. A parcel is sold at most once: approval locks the parcel before
any request row, so concurrent approvals for the same parcel serialize and
the loser finds it owned.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .context import RequestContext
from .directory import UserDirectory
from .errors import (
    AuthorizationError, ConflictError, InsufficientFundsError, NotFoundError,
    ValidationError
)
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, positive_amount, quantize
from .states import ReviewStatus, land_request_transition
from .storage import StorageInterface, StorageRecord
from .treasury import TreasuryTaxEngine, TreasuryTransactionType


logger = get_logger("town_economy.land")

PARCEL_SOLD_REASON = "Parcel was purchased by another user"
DEFAULT_DENIAL_REASON = "Request denied by teacher"

BIOME_BASE_VALUES: Dict[str, Decimal] = {
    "Savanna": Decimal("40000"),
    "Grassland": Decimal("30000"),
    "Forest": Decimal("70000"),
    "Fynbos": Decimal("90000"),
    "Nama Karoo": Decimal("20000"),
    "Succulent Karoo": Decimal("9000"),
    "Desert": Decimal("16000"),
    "Thicket": Decimal("50000"),
    "Indian Ocean Coastal Belt": Decimal("120000"),
}


def row_to_letters(row: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA, 51 -> AZ, 52 -> BA"""
    if row < 0:
        raise ValidationError("Row index cannot be negative")
    if row < 26:
        return chr(65 + row)
    return chr(65 + row // 26 - 1) + chr(65 + row % 26)


def grid_code(row: int, col: int) -> str:
    return f"{row_to_letters(row)}{col + 1}"


@dataclass
class LandParcel(StorageRecord):
    school_id: str
    town_class: str
    grid_code: str
    row_index: int
    col_index: int
    biome_type: str
    value: Decimal
    owner_id: Optional[str] = None
    purchased_at: Optional[datetime] = None


@dataclass
class LandPurchaseRequest(StorageRecord):
    school_id: str
    user_id: str
    parcel_id: str
    offered_price: Decimal
    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    denial_reason: Optional[str] = None


def current_value(parcel: LandParcel, now: Optional[datetime] = None,
                  weekly_rate: Decimal = Decimal("0.02")) -> Decimal:
    """
    Compound appreciation per complete week owned, rounded to whole units.
    Unowned parcels keep their static value.
    """
    if not parcel.owner_id or not parcel.purchased_at:
        return parcel.value
    now = now or datetime.now(timezone.utc)
    weeks = max(0, (now - parcel.purchased_at) // timedelta(weeks=1))
    grown = parcel.value * (Decimal("1") + weekly_rate) ** weeks
    return grown.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


class LandPurchaseWorkflow:
    """Parcel registry, purchase requests and valuation"""

    def __init__(self, storage: StorageInterface, accounts: AccountStore,
                 treasury: TreasuryTaxEngine, directory: UserDirectory,
                 audit_trail: AuditTrail, weekly_rate: Decimal = Decimal("0.02"),
                 min_offer_ratio: Decimal = Decimal("0.9")):
        self.storage = storage
        self.accounts = accounts
        self.treasury = treasury
        self.directory = directory
        self.audit_trail = audit_trail
        self.weekly_rate = Decimal(weekly_rate)
        self.min_offer_ratio = Decimal(min_offer_ratio)
        self.parcels_table = "land_parcels"
        self.requests_table = "land_purchase_requests"

    # Parcels

    def add_parcel(self, school_id: str, town_class: str, row_index: int, col_index: int,
                   biome_type: str, value=None) -> LandParcel:
        """Register a parcel; value defaults to the biome's base value"""
        if biome_type not in BIOME_BASE_VALUES and value is None:
            raise ValidationError(f"Unknown biome {biome_type}")
        code = grid_code(row_index, col_index)
        if self.storage.find_one(self.parcels_table, {"school_id": school_id, "town_class": town_class, "grid_code": code}):
            raise ConflictError(f"Parcel {code} already exists")

        now = datetime.now(timezone.utc)
        parcel = LandParcel(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            school_id=school_id,
            town_class=town_class,
            grid_code=code,
            row_index=row_index,
            col_index=col_index,
            biome_type=biome_type,
            value=positive_amount(value if value is not None else BIOME_BASE_VALUES[biome_type], "value")
        )
        self._save_parcel(parcel)
        return parcel

    def get_parcel(self, parcel_id: str) -> LandParcel:
        data = self.storage.load(self.parcels_table, parcel_id)
        if not data:
            raise NotFoundError(f"Parcel {parcel_id} not found")
        return LandParcel.from_dict(data)

    def get_parcel_by_code(self, ctx: RequestContext, town_class: str, code: str) -> LandParcel:
        data = self.storage.find_one(self.parcels_table, {
            "school_id": ctx.school_id, "town_class": town_class, "grid_code": code.upper()
        })
        if not data:
            raise NotFoundError(f"Parcel {code} not found")
        return LandParcel.from_dict(data)

    def list_parcels(self, ctx: RequestContext, town_class: Optional[str] = None) -> List[LandParcel]:
        filters: Dict[str, Any] = {"school_id": ctx.school_id}
        if town_class:
            filters["town_class"] = town_class
        parcels = [LandParcel.from_dict(d) for d in self.storage.find(self.parcels_table, filters)]
        parcels.sort(key=lambda p: (p.row_index, p.col_index))
        return parcels

    def current_value(self, parcel: LandParcel, now: Optional[datetime] = None) -> Decimal:
        return current_value(parcel, now, self.weekly_rate)

    def my_properties(self, ctx: RequestContext, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Parcels owned by the acting user with their current values"""
        owned = [LandParcel.from_dict(d) for d in self.storage.find(self.parcels_table, {"owner_id": ctx.user_id})]
        owned.sort(key=lambda p: p.purchased_at or p.created_at)
        return [
            {"parcel": parcel, "purchase_value": parcel.value, "current_value": self.current_value(parcel, now)}
            for parcel in owned
        ]

    def swap_positions(self, ctx: RequestContext, parcel_id_a: str, parcel_id_b: str) -> List[LandParcel]:
        """Exchange the grid positions of two parcels in one atomic write"""
        ctx.require_teacher()
        if parcel_id_a == parcel_id_b:
            raise ValidationError("Cannot swap a parcel with itself")

        with self.storage.atomic():
            rows = self.storage.lock_rows(self.parcels_table, [parcel_id_a, parcel_id_b])
            if parcel_id_a not in rows or parcel_id_b not in rows:
                raise NotFoundError("One or both parcels not found")
            a = LandParcel.from_dict(rows[parcel_id_a])
            b = LandParcel.from_dict(rows[parcel_id_b])
            ctx.require_school(a.school_id, "Parcel")
            ctx.require_school(b.school_id, "Parcel")
            # Grid codes are unique per town only
            if (a.school_id, a.town_class) != (b.school_id, b.town_class):
                raise ValidationError("Can only swap parcels in the same town")

            a_position = (a.row_index, a.col_index, a.grid_code)
            a.row_index, a.col_index, a.grid_code = b.row_index, b.col_index, b.grid_code
            b.row_index, b.col_index, b.grid_code = a_position
            for parcel in (a, b):
                parcel.touch()
                self._save_parcel(parcel)

        self.audit_trail.log_event(
            event_type=AuditEventType.LAND_POSITIONS_SWAPPED,
            entity_type="land_parcel",
            entity_id=a.id,
            metadata={"swapped_with": b.id, "grid_codes": [a.grid_code, b.grid_code]},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return [a, b]

    def release_parcels(self, school_id: str) -> int:
        """Clear ownership of every parcel in the school and drop its requests"""
        owned = [d["id"] for d in self.storage.find(self.parcels_table, {"school_id": school_id}) if d.get("owner_id")]
        for parcel_id in sorted(owned):
            parcel = self._lock_parcel(parcel_id)
            parcel.owner_id = None
            parcel.purchased_at = None
            parcel.touch()
            self._save_parcel(parcel)
        for data in self.storage.find(self.requests_table, {"school_id": school_id}):
            self.storage.delete(self.requests_table, data["id"])
        return len(owned)

    # Purchase requests

    def submit_request(self, ctx: RequestContext, parcel_id: str, offered_price) -> LandPurchaseRequest:
        """
        Ask to buy a parcel. The balance check here is advisory; approval
        re-checks under lock.
        """
        ctx.require_student()
        offered = positive_amount(offered_price, "offered_price")
        parcel = self.get_parcel(parcel_id)
        ctx.require_school(parcel.school_id, "Parcel")

        minimum = quantize(parcel.value * self.min_offer_ratio)
        if offered < minimum:
            raise ValidationError(f"Offer must be at least {minimum} (90% of value)")

        account = self.accounts.get_account_for_user(ctx.user_id)
        if account.balance < offered:
            raise InsufficientFundsError(f"Insufficient funds: balance {account.balance}, offer {offered}")

        # Holding the parcel lock keeps the sibling set stable for a concurrent approval
        with self.storage.atomic():
            parcel = self._lock_parcel(parcel_id)
            if parcel.owner_id:
                raise ConflictError("This parcel is already owned")
            duplicate = self.storage.find(self.requests_table, {
                "user_id": ctx.user_id, "parcel_id": parcel_id, "status": ReviewStatus.PENDING
            })
            if duplicate:
                raise ConflictError("You already have a pending request for this parcel")

            now = datetime.now(timezone.utc)
            request = LandPurchaseRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                school_id=parcel.school_id,
                user_id=ctx.user_id,
                parcel_id=parcel_id,
                offered_price=offered
            )
            self._save_request(request)

        self.audit_trail.log_event(
            event_type=AuditEventType.LAND_REQUEST_SUBMITTED,
            entity_type="land_purchase_request",
            entity_id=request.id,
            metadata={"parcel_id": parcel_id, "grid_code": parcel.grid_code, "offered_price": offered},
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        return request

    def get_request(self, request_id: str) -> LandPurchaseRequest:
        data = self.storage.load(self.requests_table, request_id)
        if not data:
            raise NotFoundError(f"Purchase request {request_id} not found")
        return LandPurchaseRequest.from_dict(data)

    def list_requests(self, ctx: RequestContext, status: Optional[ReviewStatus] = None) -> List[LandPurchaseRequest]:
        """Teachers see the school's requests; students see their own"""
        filters: Dict[str, Any] = {"school_id": ctx.school_id} if ctx.is_teacher else {"user_id": ctx.user_id}
        if status is not None:
            filters["status"] = status
        requests = [LandPurchaseRequest.from_dict(d) for d in self.storage.find(self.requests_table, filters)]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def review(self, ctx: RequestContext, request_id: str, approve: bool,
               reason: Optional[str] = None) -> LandPurchaseRequest:
        ctx.require_teacher()
        if approve:
            return self.approve(ctx, request_id)
        return self.deny(ctx, request_id, reason)

    def approve(self, ctx: RequestContext, request_id: str) -> LandPurchaseRequest:
        """
        Sell the parcel to the requester. If someone else already owns it the
        request is denied with a system reason, that denial is committed, and
        ConflictError is raised.
        """
        ctx.require_teacher()
        request = self.get_request(request_id)
        ctx.require_school(request.school_id, "Purchase request")
        sold_elsewhere = False

        with self.storage.atomic():
            parcel = self._lock_parcel(request.parcel_id)
            siblings = self._lock_pending_requests(parcel.id, also=[request_id])
            request = siblings.pop(request_id)
            land_request_transition(request.id, request.status, ReviewStatus.APPROVED)
            now = datetime.now(timezone.utc)

            if parcel.owner_id:
                self._resolve_denied(request, ctx.user_id, PARCEL_SOLD_REASON, now)
                sold_elsewhere = True
            else:
                buyer = self.directory.get_user(request.user_id)
                account = self.accounts.get_account_for_user(buyer.id)
                balance = self.accounts.lock_accounts([account.id])[account.id].balance
                if balance < request.offered_price:
                    raise InsufficientFundsError(
                        f"Insufficient funds: balance {balance}, required {request.offered_price}"
                    )

                self.accounts.debit(
                    account.id, request.offered_price, TransactionType.WITHDRAWAL,
                    f"Land purchase: Plot {parcel.grid_code}", created_by=ctx.user_id
                )
                # Classes without a town have no treasury to credit
                if self.treasury.find_treasury(buyer.school_id, buyer.town_class):
                    self.treasury.credit_treasury(
                        buyer.school_id, buyer.town_class, request.offered_price,
                        TreasuryTransactionType.DEPOSIT,
                        f"Land sale: Plot {parcel.grid_code} to {buyer.username}", ctx.user_id
                    )
                else:
                    logger.warning(f"No treasury for class {buyer.town_class}; sale of {parcel.grid_code} not deposited")

                parcel.owner_id = buyer.id
                parcel.purchased_at = now
                parcel.touch()
                self._save_parcel(parcel)

                request.status = ReviewStatus.APPROVED
                request.reviewed_by = ctx.user_id
                request.reviewed_at = now
                request.touch()
                self._save_request(request)

                for sibling in siblings.values():
                    if sibling.status == ReviewStatus.PENDING:
                        self._resolve_denied(sibling, ctx.user_id, PARCEL_SOLD_REASON, now)

        if sold_elsewhere:
            self._audit_review(ctx, AuditEventType.LAND_REQUEST_DENIED, request, {"reason": PARCEL_SOLD_REASON})
            raise ConflictError(PARCEL_SOLD_REASON, details={"request_id": request.id, "parcel_id": parcel.id})

        self._audit_review(ctx, AuditEventType.LAND_REQUEST_APPROVED, request, {
            "parcel_id": parcel.id,
            "grid_code": parcel.grid_code,
            "price": request.offered_price,
            "siblings_denied": len(siblings),
        })
        log_action(logger, "info", f"Parcel {parcel.grid_code} sold", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="land.approve", resource=request.id,
                   extra={"buyer_id": request.user_id, "price": str(request.offered_price)})
        return request

    def deny(self, ctx: RequestContext, request_id: str, reason: Optional[str] = None) -> LandPurchaseRequest:
        ctx.require_teacher()
        request = self.get_request(request_id)
        ctx.require_school(request.school_id, "Purchase request")
        reason = reason or DEFAULT_DENIAL_REASON

        with self.storage.atomic():
            rows = self.storage.lock_rows(self.requests_table, [request_id])
            request = LandPurchaseRequest.from_dict(rows[request_id])
            land_request_transition(request.id, request.status, ReviewStatus.DENIED)
            self._resolve_denied(request, ctx.user_id, reason, datetime.now(timezone.utc))

        self._audit_review(ctx, AuditEventType.LAND_REQUEST_DENIED, request, {"reason": reason})
        return request

    # Statistics

    def get_stats(self, ctx: RequestContext) -> Dict[str, Any]:
        ctx.require_teacher()
        parcels = self.list_parcels(ctx)
        pending = self.storage.find(self.requests_table, {"school_id": ctx.school_id, "status": ReviewStatus.PENDING})

        biomes: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"count": 0, "owned_count": 0, "total_value": ZERO})
        owners: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"parcel_count": 0, "total_value": ZERO})
        for parcel in parcels:
            stats = biomes[parcel.biome_type]
            stats["count"] += 1
            stats["total_value"] += parcel.value
            if parcel.owner_id:
                stats["owned_count"] += 1
                owners[parcel.owner_id]["parcel_count"] += 1
                owners[parcel.owner_id]["total_value"] += parcel.value

        biome_stats = [
            {
                "biome_type": biome,
                "count": s["count"],
                "owned_count": s["owned_count"],
                "avg_value": quantize(s["total_value"] / s["count"]),
            }
            for biome, s in sorted(biomes.items())
        ]
        top_owners = []
        for owner_id, s in sorted(owners.items(), key=lambda item: item[1]["parcel_count"], reverse=True)[:10]:
            user = self.directory.get_user(owner_id)
            top_owners.append({"user_id": owner_id, "username": user.username, **s})

        owned = sum(1 for p in parcels if p.owner_id)
        return {
            "total_parcels": len(parcels),
            "owned_parcels": owned,
            "available_parcels": len(parcels) - owned,
            "pending_requests": len(pending),
            "biome_stats": biome_stats,
            "top_owners": top_owners,
        }

    # Helpers

    def _lock_parcel(self, parcel_id: str) -> LandParcel:
        rows = self.storage.lock_rows(self.parcels_table, [parcel_id])
        if parcel_id not in rows:
            raise NotFoundError(f"Parcel {parcel_id} not found")
        return LandParcel.from_dict(rows[parcel_id])

    def _lock_pending_requests(self, parcel_id: str, also: List[str]) -> Dict[str, LandPurchaseRequest]:
        """Lock every pending request on the parcel plus the given ids"""
        pending = self.storage.find(self.requests_table, {"parcel_id": parcel_id, "status": ReviewStatus.PENDING})
        ids = {d["id"] for d in pending} | set(also)
        rows = self.storage.lock_rows(self.requests_table, ids)
        for request_id in also:
            if request_id not in rows:
                raise NotFoundError(f"Purchase request {request_id} not found")
        return {request_id: LandPurchaseRequest.from_dict(data) for request_id, data in rows.items()}

    def _resolve_denied(self, request: LandPurchaseRequest, reviewer: str,
                        reason: str, now: datetime) -> None:
        request.status = land_request_transition(request.id, request.status, ReviewStatus.DENIED)
        request.reviewed_by = reviewer
        request.reviewed_at = now
        request.denial_reason = reason
        request.touch()
        self._save_request(request)

    def _audit_review(self, ctx: RequestContext, event_type: AuditEventType,
                      request: LandPurchaseRequest, metadata: Dict[str, Any]) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="land_purchase_request",
            entity_id=request.id,
            metadata=metadata,
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )

    def _save_parcel(self, parcel: LandParcel) -> None:
        self.storage.save(self.parcels_table, parcel.id, parcel.to_dict())

    def _save_request(self, request: LandPurchaseRequest) -> None:
        self.storage.save(self.requests_table, request.id, request.to_dict())
