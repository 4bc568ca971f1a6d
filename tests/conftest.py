"""
Shared fixtures for the ledger test suite
"""

import pytest
from datetime import date

from ledger_core.clock import FixedClock
from ledger_core.config import LedgerConfig
from ledger_core.storage import InMemoryStorage
from ledger_core.system import PropertyLedgerSystem


ENTITY_ID = "llc_001"
TODAY = date(2024, 3, 20)


@pytest.fixture
def clock():
    return FixedClock(TODAY)


@pytest.fixture
def config():
    return LedgerConfig(database_url="memory://", log_level="WARNING")


@pytest.fixture
def system(clock, config):
    ledger = PropertyLedgerSystem(storage=InMemoryStorage(), clock=clock, config=config)
    yield ledger
    ledger.close()


@pytest.fixture
def lease(system):
    return system.lease_manager.create_lease(
        entity_id=ENTITY_ID,
        property_id="prop_001",
        unit_id="unit_1A",
        rent_amount=150000,
        start_date="2024-01-01",
        tenant_ids=["tenant_001"],
        actor_id="manager_001"
    )
