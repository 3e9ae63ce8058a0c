"""
Town economy system

Builds every component over one storage handle. The API and the tests both
go through this class, so the wiring lives in one place.
"""

from decimal import Decimal
from typing import Optional

from .accounts import AccountStore
from .admin import AdminService
from .audit import AuditTrail
from .config import EconomyConfig, get_config
from .context import Role
from .directory import User, UserDirectory
from .land import LandPurchaseWorkflow
from .ledger import TransactionLog
from .loans import LoanEngine
from .logging_config import get_logger
from .storage import StorageInterface, create_storage
from .transfers import TransferWorkflow
from .treasury import TreasuryTaxEngine


logger = get_logger("town_economy.system")


class TownEconomySystem:
    """All economy components initialized over one storage handle"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[EconomyConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url,
            pool_min=self.config.database_pool_min,
            pool_size=self.config.database_pool_size
        )

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.directory = UserDirectory(self.storage)
        self.transaction_log = TransactionLog(self.storage)
        self.accounts = AccountStore(self.storage, self.transaction_log, self.directory, self.audit_trail)
        self.transfers = TransferWorkflow(self.storage, self.accounts, self.directory, self.audit_trail)
        self.loans = LoanEngine(
            self.storage, self.accounts, self.audit_trail,
            due_days=self.config.loan_due_days,
            min_amount=Decimal(self.config.loan_min_amount),
            max_term_months=self.config.loan_max_term_months
        )
        self.treasury = TreasuryTaxEngine(
            self.storage, self.accounts, self.directory, self.audit_trail,
            initial_balance=Decimal(self.config.initial_treasury_balance),
            default_basic_salary=Decimal(self.config.basic_salary_amount)
        )
        self.land = LandPurchaseWorkflow(
            self.storage, self.accounts, self.treasury, self.directory, self.audit_trail,
            weekly_rate=Decimal(self.config.land_appreciation_rate),
            min_offer_ratio=Decimal(self.config.land_min_offer_ratio)
        )
        self.admin = AdminService(
            self.accounts, self.transfers, self.loans, self.treasury, self.land, self.audit_trail
        )

    def enroll_student(self, school_id: str, username: str, town_class: str,
                       first_name: Optional[str] = None, last_name: Optional[str] = None) -> User:
        """Register a student and open their account in one atomic block"""
        with self.storage.atomic():
            user = self.directory.register_user(
                username, Role.STUDENT, school_id, town_class=town_class,
                first_name=first_name, last_name=last_name
            )
            self.accounts.open_account(user)
        return user

    def register_teacher(self, school_id: str, username: str) -> User:
        return self.directory.register_user(username, Role.TEACHER, school_id)

    def close(self) -> None:
        logger.info("Closing storage")
        self.storage.close()
