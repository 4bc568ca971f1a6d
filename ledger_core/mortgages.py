"""
Mortgage Module

Fixed-payment amortization schedules and mortgage servicing. Schedules are
derived on demand and never stored; the mortgage record keeps the running
balance, reduced by the principal component of each recorded payment.
"""

from datetime import date, datetime, timedelta
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .errors import (
    ConcurrentModification, InvalidAmount, InvalidDate, InvalidInput, InvalidStatus,
    InvalidStatusTransition, InvalidType, MortgageNotFound, NonAmortizingPayment
)
from .logging_config import log_action
from .money import (
    DateLike, RateLike, add_months, parse_date, parse_optional_date, round_half_up,
    to_decimal, validate_cents
)
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.mortgages")


class MortgageStatus(Enum):
    """Mortgage servicing states"""
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"
    REFINANCED = "refinanced"


class MortgageType(Enum):
    FIXED = "fixed"
    ADJUSTABLE = "adjustable"
    INTEREST_ONLY = "interest_only"
    BALLOON = "balloon"


class PaymentFrequency(Enum):
    MONTHLY = "monthly"
    BI_WEEKLY = "bi_weekly"
    WEEKLY = "weekly"


class MortgagePaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    LATE = "late"
    MISSED = "missed"


# Allowed status transitions; paid_off and refinanced are terminal
STATUS_TRANSITIONS = {
    MortgageStatus.ACTIVE: {MortgageStatus.PAID_OFF, MortgageStatus.DEFAULTED, MortgageStatus.REFINANCED},
    MortgageStatus.DEFAULTED: {MortgageStatus.ACTIVE, MortgageStatus.PAID_OFF, MortgageStatus.REFINANCED},
    MortgageStatus.PAID_OFF: set(),
    MortgageStatus.REFINANCED: set(),
}

SERVICEABLE_STATUSES = (MortgageStatus.ACTIVE, MortgageStatus.DEFAULTED)

UPDATABLE_FIELDS = {
    "lender", "loan_number", "mortgage_type", "current_balance", "interest_rate",
    "monthly_payment", "escrow_amount", "payment_frequency", "payment_due_day",
    "next_payment_date", "maturity_date", "status", "notes",
}


@dataclass(frozen=True)
class AmortizationEntry:
    """Single row of an amortization schedule"""
    payment_number: int
    payment_date: date
    payment: int
    principal: int
    interest: int
    balance: int
    cumulative_interest: int


def monthly_rate(annual_rate_percent: RateLike) -> Decimal:
    return to_decimal(annual_rate_percent) / Decimal("100") / Decimal("12")


def calculate_monthly_payment(principal: int, annual_rate_percent: RateLike, term_months: int) -> int:
    """
    Level principal-and-interest payment that retires ``principal`` in
    ``term_months`` payments, rounded half-up to cents
    """
    validate_cents(principal, "principal")
    if term_months <= 0:
        raise InvalidAmount("term_months must be positive", {"term_months": term_months})

    rate = monthly_rate(annual_rate_percent)
    if rate < 0:
        raise InvalidAmount("interest_rate must not be negative")
    if rate == 0:
        return round_half_up(Decimal(principal) / Decimal(term_months))

    payment = Decimal(principal) * rate / (Decimal(1) - (Decimal(1) + rate) ** -term_months)
    return round_half_up(payment)


def compute_schedule(
    principal: int,
    annual_rate_percent: RateLike,
    term_months: int,
    start_date: DateLike,
    from_balance: Optional[int] = None,
    payment: Optional[int] = None,
    max_periods: Optional[int] = None
) -> List[AmortizationEntry]:
    """
    Generate a level-payment amortization schedule

    Without ``from_balance`` the schedule covers the full term and the final
    entry absorbs rounding drift so the balance ends at exactly zero. With
    ``from_balance`` it starts from that balance on ``start_date`` and steps
    one period at a time until the balance is retired; the last entry is
    whatever is left, never more than the level payment.

    Args:
        principal: Original loan amount in cents
        annual_rate_percent: Annual rate in percent, e.g. Decimal("6.25")
        term_months: Original term
        start_date: Date of the first scheduled payment
        from_balance: Current outstanding balance, for remaining-schedule views
        payment: Level payment to use instead of the computed one
        max_periods: Upper bound on rows for remaining-schedule views

    Raises:
        InvalidAmount: Bad inputs
        NonAmortizingPayment: The payment does not cover interest, or does not
            retire the balance within ``max_periods``
    """
    start = parse_date(start_date, "start_date")
    rate = monthly_rate(annual_rate_percent)
    level = payment if payment is not None else calculate_monthly_payment(principal, annual_rate_percent, term_months)
    validate_cents(level, "payment")

    if from_balance is None:
        balance = validate_cents(principal, "principal")
        limit = term_months
    else:
        balance = validate_cents(from_balance, "from_balance", allow_zero=True)
        limit = max_periods or get_config().max_schedule_periods

    schedule = []
    cumulative_interest = 0
    number = 0

    while balance > 0:
        number += 1
        if number > limit:
            raise NonAmortizingPayment(
                f"Payment {level} does not retire the balance within {limit} periods",
                {"payment": level, "balance": balance, "max_periods": limit}
            )

        interest = round_half_up(Decimal(balance) * rate)
        principal_part = level - interest

        if principal_part >= balance or (from_balance is None and number == limit):
            principal_part = balance
        elif principal_part <= 0:
            raise NonAmortizingPayment(
                f"Payment {level} does not cover interest {interest}",
                {"payment": level, "interest": interest}
            )

        balance -= principal_part
        cumulative_interest += interest

        schedule.append(AmortizationEntry(
            payment_number=number,
            payment_date=add_months(start, number - 1),
            payment=principal_part + interest,
            principal=principal_part,
            interest=interest,
            balance=balance,
            cumulative_interest=cumulative_interest
        ))

    return schedule


def next_payment_date(current: date, frequency: PaymentFrequency, due_day: Optional[int] = None) -> date:
    """Advance a payment date by one period of the given frequency"""
    if frequency == PaymentFrequency.WEEKLY:
        return current + timedelta(days=7)
    if frequency == PaymentFrequency.BI_WEEKLY:
        return current + timedelta(days=14)
    return add_months(current, 1, day=due_day)


@dataclass
class Mortgage(StorageRecord):
    """Servicing record for a loan against a property"""
    entity_id: str
    property_id: str
    lender: str
    original_amount: int
    current_balance: int
    interest_rate: Decimal          # annual percent
    term_months: int
    monthly_payment: int            # principal and interest
    payment_due_day: int
    origination_date: date
    first_payment_date: date
    next_payment_date: date
    maturity_date: Optional[date] = None
    loan_number: Optional[str] = None
    mortgage_type: MortgageType = MortgageType.FIXED
    escrow_amount: Optional[int] = None
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    status: MortgageStatus = MortgageStatus.ACTIVE
    notes: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 1

    @property
    def total_payment(self) -> int:
        return self.monthly_payment + (self.escrow_amount or 0)

    @property
    def is_serviceable(self) -> bool:
        return self.status in SERVICEABLE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['interest_rate'] = str(self.interest_rate)
        result['mortgage_type'] = self.mortgage_type.value
        result['payment_frequency'] = self.payment_frequency.value
        result['status'] = self.status.value
        result['total_payment'] = self.total_payment
        for name in ('origination_date', 'first_payment_date', 'next_payment_date', 'maturity_date'):
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Mortgage':
        def get_date(name: str) -> Optional[date]:
            return date.fromisoformat(data[name]) if data.get(name) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entity_id=data['entity_id'],
            property_id=data['property_id'],
            lender=data['lender'],
            original_amount=data['original_amount'],
            current_balance=data['current_balance'],
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            monthly_payment=data['monthly_payment'],
            payment_due_day=data['payment_due_day'],
            origination_date=get_date('origination_date'),
            first_payment_date=get_date('first_payment_date'),
            next_payment_date=get_date('next_payment_date'),
            maturity_date=get_date('maturity_date'),
            loan_number=data.get('loan_number'),
            mortgage_type=MortgageType(data['mortgage_type']),
            escrow_amount=data.get('escrow_amount'),
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            status=MortgageStatus(data['status']),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            version=data.get('version', 1)
        )


@dataclass
class MortgagePayment(StorageRecord):
    """A recorded servicing payment; components are caller-supplied"""
    mortgage_id: str
    payment_date: date
    due_date: date
    amount: int
    principal_amount: int
    interest_amount: int
    remaining_balance: int
    escrow_amount: Optional[int] = None
    status: MortgagePaymentStatus = MortgagePaymentStatus.COMPLETED
    notes: Optional[str] = None
    recorded_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['payment_date'] = self.payment_date.isoformat()
        result['due_date'] = self.due_date.isoformat()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MortgagePayment':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['due_date'] = date.fromisoformat(data['due_date'])
        data['status'] = MortgagePaymentStatus(data['status'])
        return cls(**data)


def _coerce(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidType(f"Invalid {field_name}: {value!r}", {"field": field_name, "value": repr(value)})


def _validate_due_day(day: int) -> int:
    if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 28:
        raise InvalidInput("payment_due_day must be between 1 and 28", {"payment_due_day": repr(day)})
    return day


def _validate_rate(rate: RateLike) -> Decimal:
    value = to_decimal(rate)
    if value < 0:
        raise InvalidAmount("interest_rate must not be negative", {"interest_rate": str(value)})
    return value


class MortgageServicer:
    """
    Mortgage record keeping and payment servicing

    Every write loads the mortgage inside an atomic batch and saves it with a
    version compare, so a balance update is never lost to a concurrent write.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.mortgages_table = "mortgages"
        self.payments_table = "mortgage_payments"

    def create_mortgage(
        self,
        entity_id: str,
        property_id: str,
        lender: str,
        original_amount: int,
        interest_rate: RateLike,
        term_months: int,
        origination_date: DateLike,
        first_payment_date: DateLike,
        monthly_payment: Optional[int] = None,
        current_balance: Optional[int] = None,
        payment_due_day: Optional[int] = None,
        next_payment_date: Optional[DateLike] = None,
        maturity_date: Optional[DateLike] = None,
        loan_number: Optional[str] = None,
        mortgage_type: Union[MortgageType, str] = MortgageType.FIXED,
        escrow_amount: Optional[int] = None,
        payment_frequency: Union[PaymentFrequency, str] = PaymentFrequency.MONTHLY,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Mortgage:
        """
        Register a mortgage for servicing

        ``monthly_payment`` defaults to the level payment for the original
        amount, ``current_balance`` to the original amount, ``next_payment_date``
        to the first payment date and ``maturity_date`` to the last scheduled
        payment.
        """
        if not lender or not lender.strip():
            raise InvalidInput("Lender is required", {"field": "lender"})
        validate_cents(original_amount, "original_amount")
        rate = _validate_rate(interest_rate)
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
            raise InvalidAmount("term_months must be a positive integer", {"term_months": term_months})

        originated = parse_date(origination_date, "origination_date")
        first_payment = parse_date(first_payment_date, "first_payment_date")
        if first_payment < originated:
            raise InvalidDate("first_payment_date must not precede origination_date",
                              {"origination_date": originated.isoformat(),
                               "first_payment_date": first_payment.isoformat()})

        if monthly_payment is None:
            monthly_payment = calculate_monthly_payment(original_amount, rate, term_months)
        validate_cents(monthly_payment, "monthly_payment")
        if current_balance is None:
            current_balance = original_amount
        validate_cents(current_balance, "current_balance", allow_zero=True)
        if escrow_amount is not None:
            validate_cents(escrow_amount, "escrow_amount", allow_zero=True)
        due_day = _validate_due_day(payment_due_day if payment_due_day is not None
                                    else min(first_payment.day, 28))

        now = self.clock.now()
        mortgage = Mortgage(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entity_id=entity_id,
            property_id=property_id,
            lender=lender.strip(),
            original_amount=original_amount,
            current_balance=current_balance,
            interest_rate=rate,
            term_months=term_months,
            monthly_payment=monthly_payment,
            payment_due_day=due_day,
            origination_date=originated,
            first_payment_date=first_payment,
            next_payment_date=parse_optional_date(next_payment_date, "next_payment_date") or first_payment,
            maturity_date=(parse_optional_date(maturity_date, "maturity_date")
                           or add_months(first_payment, term_months - 1)),
            loan_number=loan_number,
            mortgage_type=_coerce(MortgageType, mortgage_type, "mortgage_type"),
            escrow_amount=escrow_amount,
            payment_frequency=_coerce(PaymentFrequency, payment_frequency, "payment_frequency"),
            status=MortgageStatus.ACTIVE if current_balance > 0 else MortgageStatus.PAID_OFF,
            notes=notes,
            created_by=actor_id
        )

        with self.storage.atomic():
            self.storage.save(self.mortgages_table, mortgage.id, mortgage.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.MORTGAGE_CREATED,
                entity_type="mortgage",
                entity_id=mortgage.id,
                changes={"after": {
                    "property_id": property_id,
                    "lender": mortgage.lender,
                    "original_amount": original_amount,
                    "current_balance": current_balance,
                    "interest_rate": str(rate),
                    "term_months": term_months,
                    "monthly_payment": monthly_payment
                }},
                actor_id=actor_id,
                scope_id=entity_id
            )

        log_action(logger, "info", "Mortgage created", actor_id=actor_id,
                   action="create_mortgage", resource=f"mortgage:{mortgage.id}",
                   extra={"property_id": property_id, "original_amount": original_amount})
        return mortgage

    def get_mortgage(self, mortgage_id: str) -> Optional[Mortgage]:
        data = self.storage.load(self.mortgages_table, mortgage_id)
        return Mortgage.from_dict(data) if data else None

    def require_mortgage(self, mortgage_id: str) -> Mortgage:
        mortgage = self.get_mortgage(mortgage_id)
        if mortgage is None:
            raise MortgageNotFound(f"Mortgage {mortgage_id} not found", {"mortgage_id": mortgage_id})
        return mortgage

    def update_mortgage(self, mortgage_id: str, actor_id: Optional[str] = None,
                        **changes: Any) -> Mortgage:
        """
        Update servicing fields of a mortgage

        Status changes follow STATUS_TRANSITIONS. While a mortgage is active
        its balance may only go down.

        Raises:
            MortgageNotFound, InvalidStatusTransition, InvalidAmount, InvalidInput, InvalidType
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Cannot update mortgage field(s): {', '.join(sorted(unknown))}",
                               {"fields": sorted(unknown)})

        with self.storage.atomic():
            mortgage = self.require_mortgage(mortgage_id)
            expected_version = mortgage.version
            before = {name: getattr(mortgage, name) for name in changes}

            if "status" in changes:
                new_status = _coerce(MortgageStatus, changes["status"], "status")
                if new_status != mortgage.status and new_status not in STATUS_TRANSITIONS[mortgage.status]:
                    raise InvalidStatusTransition(
                        f"Cannot change mortgage status from {mortgage.status.value} to {new_status.value}",
                        {"mortgage_id": mortgage_id}
                    )
                mortgage.status = new_status

            if "current_balance" in changes:
                balance = validate_cents(changes["current_balance"], "current_balance", allow_zero=True)
                if (balance > mortgage.current_balance and mortgage.status == MortgageStatus.ACTIVE):
                    raise InvalidAmount(
                        "Balance of an active mortgage cannot increase",
                        {"current_balance": mortgage.current_balance, "requested": balance}
                    )
                mortgage.current_balance = balance

            for name in ("lender", "loan_number", "notes"):
                if name in changes:
                    setattr(mortgage, name, changes[name])
            if "mortgage_type" in changes:
                mortgage.mortgage_type = _coerce(MortgageType, changes["mortgage_type"], "mortgage_type")
            if "payment_frequency" in changes:
                mortgage.payment_frequency = _coerce(PaymentFrequency, changes["payment_frequency"],
                                                     "payment_frequency")
            if "interest_rate" in changes:
                mortgage.interest_rate = _validate_rate(changes["interest_rate"])
            if "monthly_payment" in changes:
                mortgage.monthly_payment = validate_cents(changes["monthly_payment"], "monthly_payment")
            if "escrow_amount" in changes:
                escrow = changes["escrow_amount"]
                mortgage.escrow_amount = (validate_cents(escrow, "escrow_amount", allow_zero=True)
                                          if escrow is not None else None)
            if "payment_due_day" in changes:
                mortgage.payment_due_day = _validate_due_day(changes["payment_due_day"])
            if "next_payment_date" in changes:
                mortgage.next_payment_date = parse_date(changes["next_payment_date"], "next_payment_date")
            if "maturity_date" in changes:
                mortgage.maturity_date = parse_optional_date(changes["maturity_date"], "maturity_date")

            self._save_mortgage(mortgage, expected_version)
            self.audit_trail.log_event(
                event_type=AuditEventType.MORTGAGE_UPDATED,
                entity_type="mortgage",
                entity_id=mortgage.id,
                changes={"before": before,
                         "after": {name: getattr(mortgage, name) for name in changes}},
                actor_id=actor_id,
                scope_id=mortgage.entity_id
            )

        log_action(logger, "info", "Mortgage updated", actor_id=actor_id,
                   action="update_mortgage", resource=f"mortgage:{mortgage.id}",
                   extra={"fields": sorted(changes)})
        return mortgage

    def record_mortgage_payment(
        self,
        mortgage_id: str,
        payment_date: DateLike,
        due_date: DateLike,
        amount: int,
        principal_amount: int,
        interest_amount: int,
        escrow_amount: Optional[int] = None,
        status: Union[MortgagePaymentStatus, str] = MortgagePaymentStatus.COMPLETED,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> MortgagePayment:
        """
        Record a servicing payment and reduce the mortgage balance

        The principal/interest/escrow split is taken as given and is not
        reconciled against ``amount``. The balance drops by
        ``principal_amount``, clamped at zero; reaching zero marks the
        mortgage paid off. ``next_payment_date`` advances one period.

        Raises:
            MortgageNotFound: No such mortgage
            InvalidAmount: Non-positive amount or negative component
            InvalidStatus: Mortgage is paid off or refinanced
        """
        validate_cents(amount)
        validate_cents(principal_amount, "principal_amount", allow_zero=True)
        validate_cents(interest_amount, "interest_amount", allow_zero=True)
        if escrow_amount is not None:
            validate_cents(escrow_amount, "escrow_amount", allow_zero=True)
        paid_on = parse_date(payment_date, "payment_date")
        due_on = parse_date(due_date, "due_date")
        status = _coerce(MortgagePaymentStatus, status, "status")

        with self.storage.atomic():
            mortgage = self.require_mortgage(mortgage_id)
            if not mortgage.is_serviceable:
                raise InvalidStatus(
                    f"Cannot record a payment on a {mortgage.status.value} mortgage",
                    {"mortgage_id": mortgage_id, "status": mortgage.status.value}
                )
            expected_version = mortgage.version
            balance_before = mortgage.current_balance

            mortgage.current_balance = max(0, balance_before - principal_amount)
            mortgage.next_payment_date = next_payment_date(
                mortgage.next_payment_date, mortgage.payment_frequency, mortgage.payment_due_day
            )
            paid_off = mortgage.current_balance == 0
            if paid_off:
                mortgage.status = MortgageStatus.PAID_OFF

            now = self.clock.now()
            payment = MortgagePayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                mortgage_id=mortgage.id,
                payment_date=paid_on,
                due_date=due_on,
                amount=amount,
                principal_amount=principal_amount,
                interest_amount=interest_amount,
                remaining_balance=mortgage.current_balance,
                escrow_amount=escrow_amount,
                status=status,
                notes=notes,
                recorded_by=actor_id
            )

            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            self._save_mortgage(mortgage, expected_version)

            self.audit_trail.log_event(
                event_type=AuditEventType.MORTGAGE_PAYMENT_RECORDED,
                entity_type="mortgage",
                entity_id=mortgage.id,
                changes={
                    "before": {"current_balance": balance_before},
                    "after": {"current_balance": mortgage.current_balance,
                              "next_payment_date": mortgage.next_payment_date},
                    "payment_id": payment.id,
                    "amount": amount
                },
                actor_id=actor_id,
                scope_id=mortgage.entity_id
            )
            if paid_off:
                self.audit_trail.log_event(
                    event_type=AuditEventType.MORTGAGE_PAID_OFF,
                    entity_type="mortgage",
                    entity_id=mortgage.id,
                    changes={"after": {"status": MortgageStatus.PAID_OFF.value}},
                    actor_id=actor_id,
                    scope_id=mortgage.entity_id
                )

        if principal_amount > balance_before:
            log_action(logger, "warning", "Principal exceeds balance; clamped to zero",
                       actor_id=actor_id, action="record_mortgage_payment",
                       resource=f"mortgage:{mortgage.id}",
                       extra={"principal_amount": principal_amount, "balance": balance_before})
        log_action(logger, "info", "Mortgage payment recorded", actor_id=actor_id,
                   action="record_mortgage_payment", resource=f"mortgage:{mortgage.id}",
                   extra={"amount": amount, "remaining_balance": mortgage.current_balance})
        return payment

    def list_mortgages(
        self,
        entity_id: Optional[str] = None,
        property_id: Optional[str] = None,
        status: Optional[Union[MortgageStatus, str]] = None,
        lender: Optional[str] = None,
        upcoming_days: Optional[int] = None
    ) -> List[Mortgage]:
        """
        List mortgages matching all given filters

        ``upcoming_days`` keeps mortgages whose next payment falls within
        that many days from today (overdue ones included).
        """
        filters = {}
        if entity_id:
            filters["entity_id"] = entity_id
        if property_id:
            filters["property_id"] = property_id
        if status:
            filters["status"] = _coerce(MortgageStatus, status, "status").value
        if lender:
            filters["lender"] = lender

        mortgages = [Mortgage.from_dict(data) for data in self.storage.find(self.mortgages_table, filters)]

        if upcoming_days is not None:
            horizon = self.clock.today() + timedelta(days=upcoming_days)
            mortgages = [m for m in mortgages if m.next_payment_date <= horizon]

        mortgages.sort(key=lambda m: m.next_payment_date)
        return mortgages

    def get_payment_history(self, mortgage_id: str) -> List[MortgagePayment]:
        """Payments recorded against a mortgage, most recent payment date first"""
        self.require_mortgage(mortgage_id)
        payments = [
            MortgagePayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"mortgage_id": mortgage_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at), reverse=True)
        return payments

    def get_lenders(self, entity_id: Optional[str] = None) -> List[str]:
        """Distinct lender names, sorted"""
        filters = {"entity_id": entity_id} if entity_id else {}
        return sorted({
            data['lender'] for data in self.storage.find(self.mortgages_table, filters)
            if data.get('lender')
        })

    def _save_mortgage(self, mortgage: Mortgage, expected_version: int) -> None:
        current = self.storage.load(self.mortgages_table, mortgage.id)
        if current is None or current.get('version') != expected_version:
            raise ConcurrentModification(
                f"Mortgage {mortgage.id} was modified concurrently",
                {"mortgage_id": mortgage.id, "expected_version": expected_version}
            )
        mortgage.version = expected_version + 1
        mortgage.updated_at = self.clock.now()
        self.storage.save(self.mortgages_table, mortgage.id, mortgage.to_dict())
