"""
Administrative operations

School-wide factory reset. Everything happens in one atomic block: either
the whole school is back at its starting state or nothing changed.
"""

from typing import Dict

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .context import RequestContext
from .errors import ValidationError
from .land import LandPurchaseWorkflow
from .loans import LoanEngine
from .logging_config import get_logger, log_action
from .transfers import TransferWorkflow
from .treasury import TreasuryTaxEngine


logger = get_logger("town_economy.admin")

RESET_CONFIRMATION = "RESET"


class AdminService:
    """Destructive maintenance for a single school"""

    def __init__(self, accounts: AccountStore, transfers: TransferWorkflow, loans: LoanEngine,
                 treasury: TreasuryTaxEngine, land: LandPurchaseWorkflow, audit_trail: AuditTrail):
        self.storage = accounts.storage
        self.accounts = accounts
        self.transfers = transfers
        self.loans = loans
        self.treasury = treasury
        self.land = land
        self.audit_trail = audit_trail

    def factory_reset(self, ctx: RequestContext, confirm: str) -> Dict[str, int]:
        """
        Wipe the acting teacher's school back to its starting state

        Pending transfers, loans, purchase requests, ledger history and
        treasury history are deleted. Student balances return to zero,
        parcels become unowned, every treasury is reseeded with the initial
        balance and bank settings go back to their defaults.

        Returns:
            Number of rows removed or reset per area
        """
        ctx.require_teacher()
        if confirm != RESET_CONFIRMATION:
            raise ValidationError(f'Type "{RESET_CONFIRMATION}" to confirm factory reset')

        school = {"school_id": ctx.school_id}
        summary: Dict[str, int] = {}

        with self.storage.atomic():
            # Parcels are locked before accounts, accounts before treasuries
            summary["parcels_released"] = self.land.release_parcels(ctx.school_id)

            payments = 0
            for loan in self.storage.find(self.loans.loans_table, school):
                payments += self._delete_where(self.loans.payments_table, {"loan_id": loan["id"]})
            summary["loan_payments"] = payments
            summary["loans"] = self._delete_where(self.loans.loans_table, school)
            summary["transfers"] = self._delete_where(self.transfers.table_name, school)

            summary["transactions"] = self.accounts.reset_school(ctx.school_id)

            summary["tax_transactions"] = self._delete_where(self.treasury.tax_transactions_table, school)
            summary["treasury_transactions"] = self._delete_where(self.treasury.treasury_transactions_table, school)
            summary["treasuries_reset"] = self.treasury.reset_treasuries(ctx)

        self.audit_trail.log_event(
            event_type=AuditEventType.FACTORY_RESET,
            entity_type="school",
            entity_id=ctx.school_id,
            metadata=summary,
            user_id=ctx.user_id,
            school_id=ctx.school_id
        )
        log_action(logger, "warning", "Factory reset completed", user_id=ctx.user_id,
                   school_id=ctx.school_id, action="admin.factory_reset", resource=ctx.school_id,
                   extra=summary)
        return summary

    def _delete_where(self, table: str, filters: Dict[str, str]) -> int:
        removed = 0
        for data in self.storage.find(table, filters):
            if self.storage.delete(table, data["id"]):
                removed += 1
        return removed
