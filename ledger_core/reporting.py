"""
Balance and Summary Reporting

Read-only figures derived from charges and mortgages. The module-level
functions are pure: they take records and a day and never touch storage.
LedgerReports loads the records from the managers and delegates to them.
Reads are not transactional with writes and may be slightly stale.
"""

from datetime import date
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from .charges import Charge, ChargeLedger
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .errors import NonAmortizingPayment
from .mortgages import (
    AmortizationEntry, Mortgage, MortgagePayment, MortgageServicer, compute_schedule, monthly_rate
)
from .money import days_between, round_half_up, validate_cents


@dataclass(frozen=True)
class ChargeBalance:
    """Totals over a set of charges; voided charges are excluded"""
    total_charges: int
    total_paid: int
    balance: int
    open_balance: int
    overdue_balance: int
    open_charges: int
    overdue_charges: int


@dataclass(frozen=True)
class MortgageSummary:
    current_balance: int
    monthly_payment: int
    next_payment_date: date
    days_until_payment: int
    principal_paid: int
    interest_paid: int
    percent_paid_off: Decimal
    remaining_payments: int
    remaining_interest: int
    total_interest: int
    total_cost: int
    payoff_date: Optional[date]
    amortizing: bool = True


@dataclass(frozen=True)
class ExtraPaymentSavings:
    extra_monthly: int
    interest_saved: int
    months_saved: int
    new_payoff_date: Optional[date]


@dataclass(frozen=True)
class Projection:
    """
    Remaining payments of a mortgage

    ``amortizing`` is False when the payment never retires the balance
    (interest-only or under-water payments). Such a projection holds no
    schedule: it assumes interest on the current balance every period through
    the maturity date, with the balance due at maturity.
    """
    schedule: List[AmortizationEntry]
    amortizing: bool
    payments: int
    interest: int
    payoff_date: Optional[date]


def is_overdue(charge: Charge, today: date) -> bool:
    return charge.is_outstanding and charge.due_date < today


def charge_balance(charges: Iterable[Charge], today: date) -> ChargeBalance:
    """Aggregate charge totals as of ``today``"""
    live = [c for c in charges if not c.is_voided]
    outstanding = [c for c in live if c.is_outstanding]
    overdue = [c for c in outstanding if is_overdue(c, today)]

    total_charges = sum(c.amount for c in live)
    total_paid = sum(c.paid_amount for c in live)

    return ChargeBalance(
        total_charges=total_charges,
        total_paid=total_paid,
        balance=sum(c.balance for c in live),
        open_balance=sum(c.balance for c in outstanding),
        overdue_balance=sum(c.balance for c in overdue),
        open_charges=len(outstanding),
        overdue_charges=len(overdue)
    )


def remaining_schedule(mortgage: Mortgage, payment: Optional[int] = None,
                       max_periods: Optional[int] = None) -> List[AmortizationEntry]:
    """
    Schedule from the current balance, starting at the next payment date

    Raises:
        NonAmortizingPayment: The payment never retires the balance
    """
    return compute_schedule(
        mortgage.original_amount,
        mortgage.interest_rate,
        mortgage.term_months,
        mortgage.next_payment_date,
        from_balance=mortgage.current_balance,
        payment=payment if payment is not None else mortgage.monthly_payment,
        max_periods=max_periods
    )


def full_schedule(mortgage: Mortgage) -> List[AmortizationEntry]:
    """Schedule for the original amount over the full term"""
    return compute_schedule(
        mortgage.original_amount,
        mortgage.interest_rate,
        mortgage.term_months,
        mortgage.first_payment_date,
        payment=mortgage.monthly_payment
    )


def payments_until(start: date, end: Optional[date]) -> int:
    """Monthly payment dates from ``start`` through ``end``, inclusive"""
    if end is None or end < start:
        return 0
    return (end.year - start.year) * 12 + end.month - start.month + (1 if end.day >= start.day else 0)


def project_remaining(mortgage: Mortgage, payment: Optional[int] = None,
                      max_periods: Optional[int] = None) -> Projection:
    """Remaining schedule, or the interest-to-maturity view when it never retires"""
    try:
        schedule = remaining_schedule(mortgage, payment, max_periods)
    except NonAmortizingPayment:
        periods = payments_until(mortgage.next_payment_date, mortgage.maturity_date)
        interest = round_half_up(Decimal(mortgage.current_balance) * monthly_rate(mortgage.interest_rate))
        return Projection(schedule=[], amortizing=False, payments=periods,
                          interest=interest * periods, payoff_date=mortgage.maturity_date)

    return Projection(
        schedule=schedule,
        amortizing=True,
        payments=len(schedule),
        interest=sum(e.interest for e in schedule),
        payoff_date=schedule[-1].payment_date if schedule else mortgage.maturity_date
    )


def percent_paid_off(mortgage: Mortgage) -> Decimal:
    paid = Decimal(mortgage.original_amount - mortgage.current_balance)
    percent = paid * Decimal("100") / Decimal(mortgage.original_amount)
    return percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def mortgage_summary(mortgage: Mortgage, payments: Iterable[MortgagePayment], today: date,
                     max_periods: Optional[int] = None) -> MortgageSummary:
    """
    Servicing summary for a mortgage as of ``today``

    Remaining figures come from running the schedule from the current
    balance to zero; paid figures come from the recorded payment history.
    A payment that never retires the balance is projected to maturity
    instead, with ``amortizing`` False.
    """
    payments = list(payments)
    principal_paid = sum(p.principal_amount for p in payments)
    interest_paid = sum(p.interest_amount for p in payments)

    projection = project_remaining(mortgage, max_periods=max_periods)
    total_interest = interest_paid + projection.interest

    return MortgageSummary(
        current_balance=mortgage.current_balance,
        monthly_payment=mortgage.monthly_payment,
        next_payment_date=mortgage.next_payment_date,
        days_until_payment=days_between(today, mortgage.next_payment_date),
        principal_paid=principal_paid,
        interest_paid=interest_paid,
        percent_paid_off=percent_paid_off(mortgage),
        remaining_payments=projection.payments,
        remaining_interest=projection.interest,
        total_interest=total_interest,
        total_cost=mortgage.original_amount + total_interest,
        payoff_date=projection.payoff_date,
        amortizing=projection.amortizing
    )


def extra_payment_savings(mortgage: Mortgage, extra_monthly: int,
                          max_periods: Optional[int] = None) -> ExtraPaymentSavings:
    """
    Interest and months saved by adding ``extra_monthly`` to every payment

    Both sides are projections; when the accelerated payment still never
    retires the balance nothing is saved and there is no new payoff date.
    """
    validate_cents(extra_monthly, "extra_monthly", allow_zero=True)
    baseline = project_remaining(mortgage, max_periods=max_periods)
    accelerated = project_remaining(mortgage, payment=mortgage.monthly_payment + extra_monthly,
                                    max_periods=max_periods)

    if not accelerated.amortizing:
        return ExtraPaymentSavings(extra_monthly=extra_monthly, interest_saved=0,
                                   months_saved=0, new_payoff_date=None)

    return ExtraPaymentSavings(
        extra_monthly=extra_monthly,
        interest_saved=baseline.interest - accelerated.interest,
        months_saved=baseline.payments - accelerated.payments,
        new_payoff_date=accelerated.schedule[-1].payment_date if accelerated.schedule else None
    )


class LedgerReports:
    """Loads ledger state and builds reporting figures"""

    def __init__(self, charge_ledger: ChargeLedger, mortgage_servicer: MortgageServicer,
                 clock: Optional[Clock] = None, config: Optional[LedgerConfig] = None):
        self.charge_ledger = charge_ledger
        self.mortgage_servicer = mortgage_servicer
        self.clock = clock or SystemClock()
        self.config = config or get_config()

    @property
    def max_periods(self) -> int:
        return self.config.max_schedule_periods

    def lease_balance(self, entity_id: str, lease_id: str) -> ChargeBalance:
        charges = self.charge_ledger.list_charges_for_lease(entity_id, lease_id)
        return charge_balance(charges, self.clock.today())

    def entity_balance(self, entity_id: str) -> ChargeBalance:
        return charge_balance(self.charge_ledger.list_charges(entity_id), self.clock.today())

    def mortgage_summary(self, mortgage_id: str) -> MortgageSummary:
        mortgage = self.mortgage_servicer.require_mortgage(mortgage_id)
        payments = self.mortgage_servicer.get_payment_history(mortgage_id)
        return mortgage_summary(mortgage, payments, self.clock.today(), self.max_periods)

    def remaining_schedule(self, mortgage_id: str) -> List[AmortizationEntry]:
        return remaining_schedule(self.mortgage_servicer.require_mortgage(mortgage_id),
                                  max_periods=self.max_periods)

    def amortization_schedule(self, mortgage_id: str) -> List[AmortizationEntry]:
        return full_schedule(self.mortgage_servicer.require_mortgage(mortgage_id))

    def extra_payment_savings(self, mortgage_id: str, extra_monthly: int) -> ExtraPaymentSavings:
        return extra_payment_savings(self.mortgage_servicer.require_mortgage(mortgage_id),
                                     extra_monthly, self.max_periods)
