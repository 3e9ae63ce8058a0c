"""
Test suite for land parcels, purchase requests and valuation
"""

import threading
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from town_economy.errors import (
    AuthorizationError, ConflictError, InsufficientFundsError, NotFoundError, ValidationError
)
from town_economy.land import (
    DEFAULT_DENIAL_REASON, PARCEL_SOLD_REASON, current_value, grid_code, row_to_letters
)
from town_economy.ledger import TransactionType
from town_economy.states import ReviewStatus
from town_economy.treasury import TreasuryTransactionType

from support import SCHOOL, TOWN, balance_of, build_economy, student_context, teacher_context


class TestGridCodes:

    def test_row_letters(self):
        assert row_to_letters(0) == "A"
        assert row_to_letters(25) == "Z"
        assert row_to_letters(26) == "AA"
        assert row_to_letters(51) == "AZ"
        assert row_to_letters(52) == "BA"

    def test_grid_code(self):
        assert grid_code(0, 0) == "A1"
        assert grid_code(27, 9) == "AB10"

    def test_negative_row(self):
        with pytest.raises(ValidationError):
            row_to_letters(-1)


class TestValuation:

    def setup_method(self):
        self.system = build_economy()
        self.parcel = self.system.land.add_parcel(SCHOOL, TOWN, 0, 0, "Savanna", "10000")

    def test_unowned_parcel_keeps_value(self):
        assert current_value(self.parcel) == Decimal("10000.00")

    def test_two_complete_weeks(self):
        now = datetime.now(timezone.utc)
        self.parcel.owner_id = "someone"
        self.parcel.purchased_at = now - timedelta(days=14)
        assert current_value(self.parcel, now) == Decimal("10404")

    def test_partial_weeks_do_not_count(self):
        now = datetime.now(timezone.utc)
        self.parcel.owner_id = "someone"
        self.parcel.purchased_at = now - timedelta(days=13, hours=23)
        assert current_value(self.parcel, now) == Decimal("10200")

    def test_future_purchase_date_clamped(self):
        now = datetime.now(timezone.utc)
        self.parcel.owner_id = "someone"
        self.parcel.purchased_at = now + timedelta(days=30)
        assert current_value(self.parcel, now) == Decimal("10000")

    def test_default_value_from_biome(self):
        parcel = self.system.land.add_parcel(SCHOOL, TOWN, 0, 1, "Forest")
        assert parcel.value == Decimal("70000.00")
        assert parcel.grid_code == "A2"

    def test_duplicate_position_rejected(self):
        with pytest.raises(ConflictError):
            self.system.land.add_parcel(SCHOOL, TOWN, 0, 0, "Desert")


class TestPurchaseRequests:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.alice = student_context(self.system, "alice", balance="20000.00", teacher=self.teacher)
        self.bob = student_context(self.system, "bob", balance="20000.00", teacher=self.teacher)
        self.parcel = self.system.land.add_parcel(SCHOOL, TOWN, 2, 3, "Savanna", "10000")

    def treasury_balance(self):
        return self.system.treasury.get_treasury(SCHOOL, TOWN).treasury_balance

    def test_offer_below_ninety_percent_rejected(self):
        with pytest.raises(ValidationError):
            self.system.land.submit_request(self.alice, self.parcel.id, "8999.99")
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9000.00")
        assert request.status == ReviewStatus.PENDING

    def test_duplicate_pending_request_rejected(self):
        self.system.land.submit_request(self.alice, self.parcel.id, "10000")
        with pytest.raises(ConflictError):
            self.system.land.submit_request(self.alice, self.parcel.id, "10000")

    def test_offer_above_balance_rejected(self):
        with pytest.raises(InsufficientFundsError):
            self.system.land.submit_request(self.alice, self.parcel.id, "20000.01")

    def test_unknown_parcel(self):
        with pytest.raises(NotFoundError):
            self.system.land.submit_request(self.alice, "missing", "10000")

    def test_approval_sells_parcel(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        approved = self.system.land.review(self.teacher, request.id, approve=True)

        assert approved.status == ReviewStatus.APPROVED
        parcel = self.system.land.get_parcel(self.parcel.id)
        assert parcel.owner_id == self.alice.user_id
        assert parcel.purchased_at is not None
        assert balance_of(self.system, self.alice) == Decimal("10500.00")
        assert self.treasury_balance() == Decimal("10009500.00")

        record = self.system.accounts.get_history(self.alice)[0]
        assert record.transaction_type == TransactionType.WITHDRAWAL
        assert record.description == "Land purchase: Plot C4"
        latest = self.system.treasury.get_transactions(SCHOOL, TOWN, limit=1)[0]
        assert latest.transaction_type == TreasuryTransactionType.DEPOSIT

    def test_sale_completes_when_class_has_no_treasury(self):
        dave = student_context(self.system, "dave", balance="20000.00", teacher=self.teacher, town_class="7B")
        request = self.system.land.submit_request(dave, self.parcel.id, "10000.00")
        approved = self.system.land.review(self.teacher, request.id, approve=True)

        assert approved.status == ReviewStatus.APPROVED
        assert self.system.land.get_parcel(self.parcel.id).owner_id == dave.user_id
        assert balance_of(self.system, dave) == Decimal("10000.00")
        assert self.treasury_balance() == Decimal("10000000.00")
        assert self.system.treasury.find_treasury(SCHOOL, "7B") is None

    def test_approval_denies_competing_requests(self):
        mine = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        theirs = self.system.land.submit_request(self.bob, self.parcel.id, "9800.00")
        self.system.land.review(self.teacher, mine.id, approve=True)

        competing = self.system.land.get_request(theirs.id)
        assert competing.status == ReviewStatus.DENIED
        assert competing.denial_reason == PARCEL_SOLD_REASON
        assert balance_of(self.system, self.bob) == Decimal("20000.00")

    def test_owned_parcel_cannot_be_requested(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        self.system.land.review(self.teacher, request.id, approve=True)
        with pytest.raises(ConflictError):
            self.system.land.submit_request(self.bob, self.parcel.id, "9500.00")

    def test_approval_of_request_on_sold_parcel_auto_denies(self):
        theirs = self.system.land.submit_request(self.bob, self.parcel.id, "9800.00")
        # Another buyer got the parcel without the sibling sweep seeing this request
        with self.system.storage.atomic():
            parcel = self.system.land.get_parcel(self.parcel.id)
            parcel.owner_id = self.alice.user_id
            parcel.purchased_at = datetime.now(timezone.utc)
            self.system.storage.save("land_parcels", parcel.id, parcel.to_dict())

        with pytest.raises(ConflictError):
            self.system.land.review(self.teacher, theirs.id, approve=True)

        denied = self.system.land.get_request(theirs.id)
        assert denied.status == ReviewStatus.DENIED
        assert denied.denial_reason == PARCEL_SOLD_REASON
        assert balance_of(self.system, self.bob) == Decimal("20000.00")

    def test_approval_rechecks_balance(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        self.system.accounts.withdraw(self.teacher, "alice", "15000.00")

        with pytest.raises(InsufficientFundsError):
            self.system.land.review(self.teacher, request.id, approve=True)
        assert self.system.land.get_request(request.id).status == ReviewStatus.PENDING
        assert self.system.land.get_parcel(self.parcel.id).owner_id is None
        assert self.treasury_balance() == Decimal("10000000.00")

    def test_deny_with_default_reason(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        denied = self.system.land.review(self.teacher, request.id, approve=False)
        assert denied.status == ReviewStatus.DENIED
        assert denied.denial_reason == DEFAULT_DENIAL_REASON
        with pytest.raises(ConflictError):
            self.system.land.review(self.teacher, request.id, approve=True)

    def test_students_cannot_review(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        with pytest.raises(AuthorizationError):
            self.system.land.review(self.bob, request.id, approve=True)

    def test_concurrent_approvals_sell_once(self):
        requests = [
            self.system.land.submit_request(ctx, self.parcel.id, "9500.00")
            for ctx in (self.alice, self.bob)
        ]
        outcomes = []
        barrier = threading.Barrier(2)

        def approve(request_id):
            barrier.wait()
            try:
                self.system.land.review(self.teacher, request_id, approve=True)
                outcomes.append("sold")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=approve, args=(r.id,)) for r in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(outcomes) == ["conflict", "sold"]
        assert self.treasury_balance() == Decimal("10009500.00")
        total = balance_of(self.system, self.alice) + balance_of(self.system, self.bob)
        assert total == Decimal("30500.00")

    def test_my_properties_and_stats(self):
        request = self.system.land.submit_request(self.alice, self.parcel.id, "9500.00")
        self.system.land.review(self.teacher, request.id, approve=True)

        properties = self.system.land.my_properties(self.alice)
        assert len(properties) == 1
        assert properties[0]["current_value"] == Decimal("10000")

        stats = self.system.land.get_stats(self.teacher)
        assert stats["total_parcels"] == 1
        assert stats["owned_parcels"] == 1
        assert stats["top_owners"][0]["username"] == "alice"


class TestSwapPositions:

    def setup_method(self):
        self.system = build_economy()
        self.teacher = teacher_context(self.system)
        self.first = self.system.land.add_parcel(SCHOOL, TOWN, 0, 0, "Savanna")
        self.second = self.system.land.add_parcel(SCHOOL, TOWN, 1, 4, "Desert")

    def test_swap_exchanges_positions_and_codes(self):
        self.system.land.swap_positions(self.teacher, self.first.id, self.second.id)
        first = self.system.land.get_parcel(self.first.id)
        second = self.system.land.get_parcel(self.second.id)

        assert (first.row_index, first.col_index, first.grid_code) == (1, 4, "B5")
        assert (second.row_index, second.col_index, second.grid_code) == (0, 0, "A1")
        assert first.biome_type == "Savanna"

    def test_swap_with_itself_rejected(self):
        with pytest.raises(ValidationError):
            self.system.land.swap_positions(self.teacher, self.first.id, self.first.id)

    def test_swap_with_missing_parcel(self):
        with pytest.raises(NotFoundError):
            self.system.land.swap_positions(self.teacher, self.first.id, "missing")
        assert self.system.land.get_parcel(self.first.id).grid_code == "A1"

    def test_swap_across_towns_rejected(self):
        other = self.system.land.add_parcel(SCHOOL, "7B", 1, 1, "Forest")
        with pytest.raises(ValidationError):
            self.system.land.swap_positions(self.teacher, self.first.id, other.id)

        assert self.system.land.get_parcel(self.first.id).grid_code == "A1"
        assert self.system.land.get_parcel(other.id).grid_code == "B2"
        codes = [p.grid_code for p in self.system.land.list_parcels(self.teacher, TOWN)]
        assert codes == ["A1", "B5"]
