"""
Ledger system wiring

Builds every ledger component over one storage backend, one audit trail and
one clock, so they all take part in the same atomic batches.
"""

from typing import Optional

from .audit import AuditTrail
from .charges import ChargeLedger
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .late_fees import LateFeeAssessor, LateFeePolicyStore
from .leases import LeaseManager
from .mortgages import MortgageServicer
from .payments import PaymentAllocationEngine
from .reporting import LedgerReports
from .storage import StorageInterface, create_storage


class PropertyLedgerSystem:
    """Property ledger core with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.lease_manager = LeaseManager(self.storage, self.audit_trail, self.clock)
        self.charge_ledger = ChargeLedger(self.storage, self.audit_trail, self.lease_manager, self.clock)
        self.payment_engine = PaymentAllocationEngine(
            self.storage, self.audit_trail, self.charge_ledger, self.lease_manager, self.clock
        )
        self.late_fee_policies = LateFeePolicyStore(self.storage, self.audit_trail, self.config, self.clock)
        self.late_fee_assessor = LateFeeAssessor(
            self.storage, self.audit_trail, self.charge_ledger, self.late_fee_policies, self.clock
        )
        self.mortgage_servicer = MortgageServicer(self.storage, self.audit_trail, self.clock, self.config)
        self.reports = LedgerReports(self.charge_ledger, self.mortgage_servicer, self.clock, self.config)

    def close(self) -> None:
        self.storage.close()
