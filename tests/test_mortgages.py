"""
Test suite for mortgage amortization and servicing

Amortization math must be exact to the cent: level payment and interest are
rounded half-up and the final entry absorbs drift.
"""

import pytest
from datetime import date
from decimal import Decimal

from ledger_core.audit import AuditEventType
from ledger_core.errors import (
    ConcurrentModification, InvalidAmount, InvalidDate, InvalidInput, InvalidStatus,
    InvalidStatusTransition, InvalidType, MortgageNotFound, NonAmortizingPayment
)
from ledger_core.mortgages import (
    MortgagePaymentStatus, MortgageStatus, MortgageType, PaymentFrequency,
    calculate_monthly_payment, compute_schedule, next_payment_date
)

ENTITY_ID = "llc_001"


def create_mortgage(system, **overrides):
    params = dict(
        entity_id=ENTITY_ID,
        property_id="prop_001",
        lender="First Federal",
        original_amount=30000000,
        interest_rate="6.00",
        term_months=360,
        origination_date="2024-01-15",
        first_payment_date="2024-03-01",
        actor_id="manager_001"
    )
    params.update(overrides)
    return system.mortgage_servicer.create_mortgage(**params)


class TestLevelPayment:
    """Test the level payment formula"""

    def test_thirty_year_six_percent(self):
        """300,000.00 at 6% over 360 months"""
        assert calculate_monthly_payment(30000000, Decimal("6.00"), 360) == 179865

    def test_fifteen_year_retires_in_term(self):
        payment = calculate_monthly_payment(20000000, "4.5", 180)
        schedule = compute_schedule(20000000, "4.5", 180, date(2024, 1, 1))
        assert 152900 < payment < 153100
        assert len(schedule) == 180
        assert schedule[-1].balance == 0

    def test_zero_rate(self):
        assert calculate_monthly_payment(100000, 0, 360) == 278
        assert calculate_monthly_payment(120000, "0", 12) == 10000

    def test_invalid_inputs(self):
        with pytest.raises(InvalidAmount):
            calculate_monthly_payment(0, "6", 360)
        with pytest.raises(InvalidAmount):
            calculate_monthly_payment(100000, "6", 0)
        with pytest.raises(InvalidAmount):
            calculate_monthly_payment(100000, "-1", 12)


class TestComputeSchedule:
    """Test full-term schedule generation"""

    def setup_method(self):
        self.schedule = compute_schedule(30000000, Decimal("6.00"), 360, date(2024, 3, 1))

    def test_first_entry(self):
        first = self.schedule[0]
        assert first.payment_number == 1
        assert first.payment_date == date(2024, 3, 1)
        assert first.interest == 150000
        assert first.principal == 29865
        assert first.payment == 179865
        assert first.balance == 30000000 - 29865

    def test_term_and_final_balance(self):
        assert len(self.schedule) == 360
        assert self.schedule[-1].balance == 0
        assert self.schedule[-1].payment_date == date(2054, 2, 1)

    def test_principal_sums_to_loan(self):
        assert sum(e.principal for e in self.schedule) == 30000000

    def test_level_payment_until_final_entry(self):
        assert all(e.payment == 179865 for e in self.schedule[:-1])
        # Final entry absorbs the rounding drift
        assert abs(self.schedule[-1].payment - 179865) < 1000

    def test_cumulative_interest(self):
        total = sum(e.interest for e in self.schedule)
        assert self.schedule[-1].cumulative_interest == total
        assert total == sum(e.payment for e in self.schedule) - 30000000

    def test_balance_strictly_decreasing(self):
        balances = [e.balance for e in self.schedule]
        assert all(later < earlier for earlier, later in zip(balances, balances[1:]))

    def test_zero_rate_schedule(self):
        schedule = compute_schedule(100000, 0, 360, date(2024, 1, 31))
        assert len(schedule) == 360
        assert all(e.interest == 0 for e in schedule)
        assert schedule[-1].principal == 100000 - 359 * 278
        assert schedule[1].payment_date == date(2024, 2, 29)

    def test_payment_must_cover_interest(self):
        with pytest.raises(NonAmortizingPayment, match="does not cover interest") as exc_info:
            compute_schedule(30000000, "6", 360, date(2024, 3, 1), payment=150000)
        assert exc_info.value.code == "NON_AMORTIZING_PAYMENT"
        assert isinstance(exc_info.value, InvalidAmount)


class TestRemainingSchedule:
    """Test schedules run from a current balance"""

    def test_from_original_balance_matches_term(self):
        schedule = compute_schedule(30000000, "6", 360, date(2024, 3, 1), from_balance=30000000)
        assert len(schedule) == 360
        assert schedule[-1].balance == 0

    def test_from_mid_life_balance(self):
        full = compute_schedule(30000000, "6", 360, date(2024, 3, 1))
        balance_after_120 = full[119].balance

        remaining = compute_schedule(30000000, "6", 360, date(2034, 3, 1), from_balance=balance_after_120)
        assert len(remaining) == 240
        assert remaining[0].payment_date == date(2034, 3, 1)
        assert remaining[0].interest == full[120].interest
        assert sum(e.principal for e in remaining) == balance_after_120
        assert remaining[-1].balance == 0

    def test_zero_balance_has_no_schedule(self):
        assert compute_schedule(30000000, "6", 360, date(2024, 3, 1), from_balance=0) == []

    def test_final_payment_never_exceeds_level(self):
        """The last row is what is left over, not an extra partial payment folded in"""
        for balance in range(1000000, 29000001, 250000):
            schedule = compute_schedule(30000000, "6", 360, date(2024, 3, 1), from_balance=balance)
            assert schedule[-1].balance == 0
            assert schedule[-1].payment <= 179865 + 1
            assert all(e.payment == 179865 for e in schedule[:-1])

    def test_short_balance_runs_every_period(self):
        schedule = compute_schedule(30000000, "6", 360, date(2024, 3, 1), from_balance=3253898)
        assert len(schedule) == 20
        assert schedule[-1].payment <= 179865
        assert schedule[-1].payment_date == date(2025, 10, 1)

    def test_limit_enforced(self):
        with pytest.raises(NonAmortizingPayment, match="within"):
            compute_schedule(30000000, "6", 360, date(2024, 3, 1), from_balance=30000000,
                             payment=150100, max_periods=600)


class TestNextPaymentDate:
    """Test date advancement by frequency"""

    def test_monthly_keeps_due_day(self):
        assert next_payment_date(date(2024, 1, 28), PaymentFrequency.MONTHLY, 28) == date(2024, 2, 28)
        assert next_payment_date(date(2024, 12, 1), PaymentFrequency.MONTHLY, 1) == date(2025, 1, 1)

    def test_weekly_and_bi_weekly(self):
        assert next_payment_date(date(2024, 3, 1), PaymentFrequency.WEEKLY) == date(2024, 3, 8)
        assert next_payment_date(date(2024, 3, 1), PaymentFrequency.BI_WEEKLY) == date(2024, 3, 15)


class TestMortgageRecords:
    """Test creating, reading and updating mortgages"""

    def test_create_defaults(self, system):
        mortgage = create_mortgage(system, escrow_amount=45000)

        assert mortgage.monthly_payment == 179865
        assert mortgage.current_balance == 30000000
        assert mortgage.total_payment == 179865 + 45000
        assert mortgage.next_payment_date == date(2024, 3, 1)
        assert mortgage.maturity_date == date(2054, 2, 1)
        assert mortgage.payment_due_day == 1
        assert mortgage.status == MortgageStatus.ACTIVE
        assert mortgage.mortgage_type == MortgageType.FIXED

        stored = system.mortgage_servicer.get_mortgage(mortgage.id)
        assert stored.interest_rate == Decimal("6.00")
        assert stored.escrow_amount == 45000

        events = system.audit_trail.get_events_for_entity("mortgage", mortgage.id)
        assert events[0].event_type == AuditEventType.MORTGAGE_CREATED

    def test_create_validation(self, system):
        with pytest.raises(InvalidAmount):
            create_mortgage(system, original_amount=0)
        with pytest.raises(InvalidAmount):
            create_mortgage(system, interest_rate="-2")
        with pytest.raises(InvalidInput, match="payment_due_day") as exc_info:
            create_mortgage(system, payment_due_day=31)
        assert exc_info.value.code == "INVALID_INPUT"
        with pytest.raises(InvalidInput, match="Lender"):
            create_mortgage(system, lender=" ")
        with pytest.raises(InvalidType, match="mortgage_type") as exc_info:
            create_mortgage(system, mortgage_type="reverse")
        assert exc_info.value.code == "INVALID_TYPE"
        with pytest.raises(InvalidDate, match="first_payment_date") as exc_info:
            create_mortgage(system, first_payment_date="2024-01-01")
        assert exc_info.value.code == "INVALID_DATE"

    def test_not_found(self, system):
        assert system.mortgage_servicer.get_mortgage("missing") is None
        with pytest.raises(MortgageNotFound):
            system.mortgage_servicer.require_mortgage("missing")

    def test_update_fields(self, system):
        mortgage = create_mortgage(system)
        updated = system.mortgage_servicer.update_mortgage(
            mortgage.id, actor_id="manager_001",
            escrow_amount=50000, notes="Escrow analysis 2024", payment_frequency="bi_weekly"
        )
        assert updated.total_payment == 179865 + 50000
        assert updated.payment_frequency == PaymentFrequency.BI_WEEKLY
        assert updated.version == 2

        events = system.audit_trail.get_events_by_type(AuditEventType.MORTGAGE_UPDATED)
        assert events[0].before["escrow_amount"] is None
        assert events[0].after["escrow_amount"] == 50000

    def test_unknown_field_rejected(self, system):
        mortgage = create_mortgage(system)
        with pytest.raises(InvalidInput, match="original_amount") as exc_info:
            system.mortgage_servicer.update_mortgage(mortgage.id, original_amount=1)
        assert exc_info.value.details == {"fields": ["original_amount"]}

    def test_active_balance_cannot_increase(self, system):
        mortgage = create_mortgage(system)
        with pytest.raises(InvalidAmount):
            system.mortgage_servicer.update_mortgage(mortgage.id, current_balance=30000001)
        lowered = system.mortgage_servicer.update_mortgage(mortgage.id, current_balance=29000000)
        assert lowered.current_balance == 29000000

    def test_status_transitions(self, system):
        servicer = system.mortgage_servicer
        mortgage = create_mortgage(system)

        servicer.update_mortgage(mortgage.id, status="defaulted")
        servicer.update_mortgage(mortgage.id, status="active")
        servicer.update_mortgage(mortgage.id, status="refinanced")
        with pytest.raises(InvalidStatusTransition):
            servicer.update_mortgage(mortgage.id, status="active")

    def test_list_and_lenders(self, system, clock):
        servicer = system.mortgage_servicer
        first = create_mortgage(system, first_payment_date="2024-03-25")
        create_mortgage(system, property_id="prop_002", lender="Coastal Bank",
                        first_payment_date="2024-05-01")
        create_mortgage(system, entity_id="llc_other", lender="Zephyr Credit Union")

        assert len(servicer.list_mortgages(entity_id=ENTITY_ID)) == 2
        assert [m.id for m in servicer.list_mortgages(property_id="prop_001", entity_id=ENTITY_ID)] == [first.id]
        assert [m.lender for m in servicer.list_mortgages(lender="Coastal Bank")] == ["Coastal Bank"]
        assert [m.id for m in servicer.list_mortgages(entity_id=ENTITY_ID, upcoming_days=10)] == [first.id]
        assert servicer.get_lenders() == ["Coastal Bank", "First Federal", "Zephyr Credit Union"]
        assert servicer.get_lenders(ENTITY_ID) == ["Coastal Bank", "First Federal"]


class TestMortgageServicing:
    """Test recording servicing payments"""

    def test_balance_reduced_by_principal(self, system):
        """currentBalance drops by exactly the principal component"""
        mortgage = create_mortgage(system, escrow_amount=45000)
        payment = system.mortgage_servicer.record_mortgage_payment(
            mortgage.id, payment_date="2024-03-01", due_date="2024-03-01",
            amount=224865, principal_amount=30000, interest_amount=149865, escrow_amount=45000,
            actor_id="manager_001"
        )

        updated = system.mortgage_servicer.get_mortgage(mortgage.id)
        assert updated.current_balance == 30000000 - 30000
        assert payment.remaining_balance == updated.current_balance
        assert payment.status == MortgagePaymentStatus.COMPLETED
        assert updated.next_payment_date == date(2024, 4, 1)
        assert updated.version == 2

    def test_components_not_reconciled(self, system):
        """The caller-supplied split is stored as given"""
        mortgage = create_mortgage(system)
        payment = system.mortgage_servicer.record_mortgage_payment(
            mortgage.id, "2024-03-03", "2024-03-01", amount=200000,
            principal_amount=50000, interest_amount=150000, status="late", notes="Paid late"
        )
        assert payment.principal_amount + payment.interest_amount == 200000
        assert payment.status == MortgagePaymentStatus.LATE

    def test_overpayment_clamps_to_zero(self, system):
        mortgage = create_mortgage(system, original_amount=100000, current_balance=20000,
                                   monthly_payment=10000)
        system.mortgage_servicer.record_mortgage_payment(
            mortgage.id, "2024-03-01", "2024-03-01", amount=25000,
            principal_amount=25000, interest_amount=0
        )

        updated = system.mortgage_servicer.get_mortgage(mortgage.id)
        assert updated.current_balance == 0
        assert updated.status == MortgageStatus.PAID_OFF
        assert system.audit_trail.get_events_by_type(AuditEventType.MORTGAGE_PAID_OFF)

        with pytest.raises(InvalidStatus):
            system.mortgage_servicer.record_mortgage_payment(
                mortgage.id, "2024-04-01", "2024-04-01", amount=100, principal_amount=100, interest_amount=0
            )

    def test_weekly_frequency_advance(self, system):
        mortgage = create_mortgage(system, payment_frequency=PaymentFrequency.WEEKLY)
        system.mortgage_servicer.record_mortgage_payment(
            mortgage.id, "2024-03-01", "2024-03-01", amount=50000, principal_amount=10000, interest_amount=40000
        )
        assert system.mortgage_servicer.get_mortgage(mortgage.id).next_payment_date == date(2024, 3, 8)

    def test_invalid_amounts(self, system):
        mortgage = create_mortgage(system)
        servicer = system.mortgage_servicer
        with pytest.raises(InvalidAmount):
            servicer.record_mortgage_payment(mortgage.id, "2024-03-01", "2024-03-01", 0, 0, 0)
        with pytest.raises(InvalidAmount):
            servicer.record_mortgage_payment(mortgage.id, "2024-03-01", "2024-03-01", 1000, -1, 1001)
        with pytest.raises(MortgageNotFound):
            servicer.record_mortgage_payment("missing", "2024-03-01", "2024-03-01", 1000, 500, 500)
        assert servicer.get_mortgage(mortgage.id).current_balance == 30000000

    def test_payment_history_newest_first(self, system):
        mortgage = create_mortgage(system)
        servicer = system.mortgage_servicer
        for day in ("2024-03-01", "2024-04-01", "2024-05-01"):
            servicer.record_mortgage_payment(mortgage.id, day, day, 179865, 29865, 150000)

        history = servicer.get_payment_history(mortgage.id)
        assert [p.payment_date for p in history] == [date(2024, 5, 1), date(2024, 4, 1), date(2024, 3, 1)]
        assert history[0].remaining_balance == 30000000 - 3 * 29865

    def test_stale_mortgage_write_rejected(self, system, monkeypatch):
        mortgage = create_mortgage(system)
        servicer = system.mortgage_servicer
        stale = servicer.get_mortgage(mortgage.id)

        # Another writer bumps the version between our read and write
        monkeypatch.setattr(servicer, "require_mortgage", lambda mortgage_id: stale)
        monkeypatch.setattr(stale, "version", 0)

        with pytest.raises(ConcurrentModification):
            servicer.record_mortgage_payment(mortgage.id, "2024-03-01", "2024-03-01", 1000, 500, 500)

        monkeypatch.undo()
        assert servicer.get_mortgage(mortgage.id).current_balance == 30000000
        assert servicer.get_payment_history(mortgage.id) == []
