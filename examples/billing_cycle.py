#!/usr/bin/env python3
"""
Example: One month of rent billing for a single unit

Walks through posting charges, assessing a late fee, taking a payment that
spreads across several charges and summarizing a building mortgage, all on
a SQLite ledger.
"""

import os
import sys
from datetime import date

# Add the ledger package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ledger_core.clock import FixedClock
from ledger_core.config import LedgerConfig
from ledger_core.errors import LedgerError
from ledger_core.money import format_cents
from ledger_core.storage import SQLiteStorage
from ledger_core.system import PropertyLedgerSystem

ENTITY_ID = "llc_demo"


def main():
    print("🏠 Property Ledger - Monthly Billing Example")
    print("=" * 60)

    # 1. Setup
    print("\n1. 🔧 Ledger Setup")
    config = LedgerConfig(database_url="sqlite://")
    clock = FixedClock(date(2024, 3, 1))
    ledger = PropertyLedgerSystem(storage=SQLiteStorage(":memory:"), clock=clock, config=config)
    ledger.late_fee_policies.update_settings(ENTITY_ID, enabled=True, fee_type="flat",
                                             amount=7500, grace_days=5)
    print("   ✅ Flat $75.00 late fee after 5 grace days")

    lease = ledger.lease_manager.create_lease(
        ENTITY_ID, "prop_maple", "unit_2B", 185000, "2024-01-01", tenant_ids=["tenant_ana"]
    )
    print(f"   ✅ Lease created: {lease.id}")

    # 2. Charges
    print("\n2. 🧾 Posting Charges")
    rent = ledger.charge_ledger.create_charge(ENTITY_ID, lease.id, "rent", 185000,
                                              "2024-03-01", "2024-03")
    water = ledger.charge_ledger.create_charge(ENTITY_ID, lease.id, "utility", 4250,
                                               "2024-03-05", "2024-03", description="Water")
    for charge in (rent, water):
        print(f"   {charge.charge_type.value:<8} {format_cents(charge.amount):>12} due {charge.due_date}")

    # 3. Late fees
    print("\n3. ⏰ Late Fee Run")
    clock.set(date(2024, 3, 8))
    for overdue in ledger.late_fee_assessor.get_overdue_charges(ENTITY_ID):
        try:
            result = ledger.late_fee_assessor.apply_late_fee(ENTITY_ID, overdue.charge_id)
            print(f"   ✅ {format_cents(result.late_fee_amount)} fee on {overdue.charge_type.value} "
                  f"({overdue.days_overdue} days overdue)")
        except LedgerError as e:
            print(f"   ❌ {e.code}: {e}")

    # 4. Payment
    print("\n4. 💳 Tenant Payment")
    payment = ledger.payment_engine.record_payment(
        ENTITY_ID, lease.id, "tenant_ana", 200000,
        {"type": "check", "check_number": "1042"}, memo="March rent"
    )
    for allocation in payment.applied_to:
        print(f"   applied {format_cents(allocation.amount):>12} to {allocation.charge_id}")
    print(f"   unapplied: {format_cents(payment.unapplied_amount)}")

    balance = ledger.reports.lease_balance(ENTITY_ID, lease.id)
    print(f"   💰 Lease balance: {format_cents(balance.balance)} "
          f"across {balance.open_charges} open charge(s)")

    # 5. Mortgage
    print("\n5. 🏦 Building Mortgage")
    mortgage = ledger.mortgage_servicer.create_mortgage(
        ENTITY_ID, "prop_maple", "First Community Bank", 30000000, "6.0", 360,
        "2024-01-15", "2024-03-01"
    )
    summary = ledger.reports.mortgage_summary(mortgage.id)
    print(f"   Monthly payment:  {format_cents(summary.monthly_payment)}")
    print(f"   Total interest:   {format_cents(summary.total_interest)}")
    print(f"   Payoff date:      {summary.payoff_date}")

    savings = ledger.reports.extra_payment_savings(mortgage.id, 20000)
    print(f"   +$200/month saves {format_cents(savings.interest_saved)} "
          f"and {savings.months_saved} months")

    # 6. Audit
    print("\n6. 🔒 Audit Trail")
    integrity = ledger.audit_trail.verify_integrity()
    print(f"   Events: {ledger.audit_trail.count_events()}, chain valid: {integrity['valid']}")

    ledger.close()
    print("\n🎉 Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    main()
