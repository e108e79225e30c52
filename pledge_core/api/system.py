"""
Pledge system wiring shared by the API routers
"""

from typing import Optional

from ..config import PledgeConfig, get_config
from ..storage import create_storage
from ..audit import AuditTrail
from ..interest import AccrualCalculator
from ..ledger import LedgerEngine
from ..loans import LoanManager
from ..logging_config import setup_logging


class PledgeSystem:
    """Pledge loan engine with all components initialized"""

    def __init__(self, config: Optional[PledgeConfig] = None, use_sqlite: Optional[bool] = None):
        self.config = config or get_config()

        backend = self.config.storage_backend
        if use_sqlite is not None:
            backend = "sqlite" if use_sqlite else "memory"
        self.storage = create_storage(backend, self.config.sqlite_path)

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.calculator = AccrualCalculator(
            days_in_year=self.config.days_in_year,
            precision=self.config.interest_calculation_precision
        )
        self.engine = LedgerEngine(
            self.calculator,
            apply_min_days_to_first_period=self.config.apply_min_days_to_first_period
        )
        self.loan_manager = LoanManager(
            self.storage,
            self.audit_trail,
            self.engine,
            loan_number_prefix=self.config.loan_number_prefix,
            receipt_number_prefix=self.config.receipt_number_prefix
        )

    def close(self) -> None:
        self.storage.close()


# Global pledge system instance, created on first use
pledge_system: Optional[PledgeSystem] = None


def get_pledge_system() -> PledgeSystem:
    global pledge_system
    if pledge_system is None:
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        pledge_system = PledgeSystem(config)
    return pledge_system
