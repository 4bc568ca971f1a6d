"""
Payment Allocation Module

Records tenders against a lease and distributes them across the lease's
outstanding charges, earliest due date first. The payment, every touched
charge and their audit events are written in one atomic batch.

Any amount left after every outstanding charge is settled stays on the
payment as ``unapplied_amount``; no credit balance is created.
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Tuple, Union
from enum import Enum
import logging
import uuid

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .audit import AuditTrail, AuditEventType
from .charges import Charge, ChargeLedger, charge_sort_key
from .clock import Clock, SystemClock
from .errors import InvalidAllocation, InvalidPaymentMethod, PaymentNotFound
from .leases import LeaseManager
from .logging_config import log_action
from .money import DateLike, parse_date, parse_optional_date, validate_cents
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.payments")


class PaymentMethodType(Enum):
    """Tender types accepted by the ledger"""
    CASH = "cash"
    CHECK = "check"
    MONEY_ORDER = "money_order"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    OTHER = "other"


class _MethodModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class CashPayment(_MethodModel):
    type: Literal["cash"] = "cash"


class CheckPayment(_MethodModel):
    type: Literal["check"] = "check"
    check_number: Optional[str] = Field(None, max_length=50)


class MoneyOrderPayment(_MethodModel):
    type: Literal["money_order"] = "money_order"
    serial_number: Optional[str] = Field(None, max_length=50)


class BankTransferPayment(_MethodModel):
    type: Literal["bank_transfer"] = "bank_transfer"
    bank_name: Optional[str] = Field(None, max_length=100)
    reference: Optional[str] = Field(None, max_length=100)


class CardPayment(_MethodModel):
    type: Literal["card"] = "card"
    last4: str = Field(..., pattern=r"^\d{4}$")
    brand: str = Field(..., min_length=1, max_length=30)


class OtherPayment(_MethodModel):
    type: Literal["other"] = "other"
    description: Optional[str] = Field(None, max_length=200)


PaymentMethod = Annotated[
    Union[CashPayment, CheckPayment, MoneyOrderPayment, BankTransferPayment, CardPayment, OtherPayment],
    Field(discriminator="type")
]

_payment_method_adapter = TypeAdapter(PaymentMethod)


def parse_payment_method(method: Union[BaseModel, PaymentMethodType, str, Dict[str, Any]]) -> BaseModel:
    """
    Resolve a payment method into its tagged variant

    Accepts a variant instance, a bare type (``"cash"`` or PaymentMethodType)
    for methods without required fields, or a dict with a ``type`` key.

    Raises:
        InvalidPaymentMethod: Unknown type or missing/malformed payload
    """
    if isinstance(method, _MethodModel):
        return method
    if isinstance(method, PaymentMethodType):
        method = method.value
    if isinstance(method, str):
        method = {"type": method}
    try:
        return _payment_method_adapter.validate_python(method)
    except ValidationError as e:
        raise InvalidPaymentMethod(
            f"Invalid payment method: {e.error_count()} error(s)",
            {"errors": [err["msg"] for err in e.errors()]}
        )


@dataclass(frozen=True)
class Allocation:
    """Part of a payment applied to one charge"""
    charge_id: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {"charge_id": self.charge_id, "amount": self.amount}


@dataclass
class Payment(StorageRecord):
    """A single tender recorded against a lease; immutable once stored"""
    entity_id: str
    lease_id: str
    tenant_id: str
    amount: int
    method: Any                       # one of the PaymentMethod variants
    payment_date: date
    applied_to: List[Allocation] = field(default_factory=list)
    memo: Optional[str] = None
    recorded_by: Optional[str] = None

    @property
    def applied_amount(self) -> int:
        return sum(a.amount for a in self.applied_to)

    @property
    def unapplied_amount(self) -> int:
        return self.amount - self.applied_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'entity_id': self.entity_id,
            'lease_id': self.lease_id,
            'tenant_id': self.tenant_id,
            'amount': self.amount,
            'method': self.method.model_dump(),
            'payment_date': self.payment_date.isoformat(),
            'applied_to': [a.to_dict() for a in self.applied_to],
            'unapplied_amount': self.unapplied_amount,
            'memo': self.memo,
            'recorded_by': self.recorded_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entity_id=data['entity_id'],
            lease_id=data['lease_id'],
            tenant_id=data['tenant_id'],
            amount=data['amount'],
            method=parse_payment_method(data['method']),
            payment_date=date.fromisoformat(data['payment_date']),
            applied_to=[Allocation(a['charge_id'], a['amount']) for a in data.get('applied_to', [])],
            memo=data.get('memo'),
            recorded_by=data.get('recorded_by')
        )


def allocate_payment(amount: int, charges: Sequence[Charge]) -> List[Tuple[Charge, int]]:
    """
    Plan how a payment amount spreads over charges

    Outstanding charges are taken earliest due date first (ties by creation
    order); each receives min(remaining, balance) until either side runs out.
    Charges are not modified.
    """
    plan = []
    remaining = amount
    for charge in sorted((c for c in charges if c.is_outstanding), key=charge_sort_key):
        if remaining <= 0:
            break
        applied = min(remaining, charge.balance)
        if applied > 0:
            plan.append((charge, applied))
            remaining -= applied
    return plan


class PaymentAllocationEngine:
    """Records payments and applies them to a lease's charges"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        charge_ledger: ChargeLedger,
        lease_manager: LeaseManager,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.charge_ledger = charge_ledger
        self.lease_manager = lease_manager
        self.clock = clock or SystemClock()
        self.payments_table = "payments"

    def record_payment(
        self,
        entity_id: str,
        lease_id: str,
        tenant_id: str,
        amount: int,
        method: Union[BaseModel, PaymentMethodType, str, Dict[str, Any]],
        memo: Optional[str] = None,
        payment_date: Optional[DateLike] = None,
        allocations: Optional[Sequence[Union[Allocation, Dict[str, Any]]]] = None,
        actor_id: Optional[str] = None
    ) -> Payment:
        """
        Record a payment and allocate it across outstanding charges

        Args:
            entity_id: Landlord entity owning the lease
            lease_id: Lease the payment is for
            tenant_id: Tenant tendering the payment
            amount: Amount in cents, must be positive
            method: Payment method variant (see parse_payment_method)
            memo: Optional note
            payment_date: Day the payment was received, defaults to today
            allocations: Explicit split as Allocation objects or
                ``{"charge_id", "amount"}`` dicts; when
                omitted the payment is auto-allocated by due date
            actor_id: User recording the payment

        Returns:
            The stored Payment with its applied_to list

        Raises:
            InvalidAmount, InvalidPaymentMethod, InvalidAllocation, LeaseNotFound
        """
        validate_cents(amount)
        method = parse_payment_method(method)
        paid_on = parse_date(payment_date, "payment_date") if payment_date else self.clock.today()
        self.lease_manager.require_lease(entity_id, lease_id)

        with self.storage.atomic():
            open_charges = self.charge_ledger.get_open_charges_for_lease(entity_id, lease_id)
            if allocations:
                plan = self._plan_explicit_allocations(amount, open_charges, allocations)
            else:
                plan = allocate_payment(amount, open_charges)

            now = self.clock.now()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entity_id=entity_id,
                lease_id=lease_id,
                tenant_id=tenant_id,
                amount=amount,
                method=method,
                payment_date=paid_on,
                memo=memo,
                recorded_by=actor_id
            )

            for charge, applied in plan:
                expected_version = charge.version
                before = charge.snapshot()
                charge.apply_payment(applied)
                self.charge_ledger.save_charge(charge, expected_version)
                payment.applied_to.append(Allocation(charge.id, applied))

                self.audit_trail.log_event(
                    event_type=AuditEventType.CHARGE_PAYMENT_APPLIED,
                    entity_type="charge",
                    entity_id=charge.id,
                    changes={"before": before, "after": charge.snapshot(),
                             "payment_id": payment.id, "applied": applied},
                    actor_id=actor_id,
                    scope_id=entity_id
                )

            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="payment",
                entity_id=payment.id,
                changes={"after": {
                    "lease_id": lease_id,
                    "tenant_id": tenant_id,
                    "amount": amount,
                    "method": method.type,
                    "applied_to": [a.to_dict() for a in payment.applied_to],
                    "unapplied_amount": payment.unapplied_amount
                }},
                actor_id=actor_id,
                scope_id=entity_id
            )

        if payment.unapplied_amount:
            log_action(logger, "warning", "Payment exceeds outstanding balance; residual left unapplied",
                       actor_id=actor_id, action="record_payment", resource=f"payment:{payment.id}",
                       extra={"unapplied_amount": payment.unapplied_amount})
        log_action(logger, "info", "Payment recorded", actor_id=actor_id,
                   action="record_payment", resource=f"payment:{payment.id}",
                   extra={"lease_id": lease_id, "amount": amount,
                          "charges_touched": len(payment.applied_to)})
        return payment

    def _plan_explicit_allocations(
        self,
        amount: int,
        open_charges: List[Charge],
        allocations: Sequence[Union[Allocation, Dict[str, Any]]]
    ) -> List[Tuple[Charge, int]]:
        """Validate a caller-supplied split against the lease's outstanding charges"""
        by_id = {c.id: c for c in open_charges}
        plan = []
        seen = set()
        total = 0

        for item in allocations:
            if isinstance(item, Allocation):
                charge_id, applied = item.charge_id, item.amount
            elif isinstance(item, dict):
                charge_id, applied = item.get("charge_id"), item.get("amount")
            else:
                raise InvalidAllocation("Each allocation must give a charge_id and an amount",
                                        {"allocation": repr(item)})
            if not isinstance(charge_id, str):
                raise InvalidAllocation("Each allocation must give a charge_id and an amount",
                                        {"allocation": repr(item)})
            if charge_id in seen:
                raise InvalidAllocation(f"Charge {charge_id} allocated more than once",
                                        {"charge_id": charge_id})
            seen.add(charge_id)

            charge = by_id.get(charge_id)
            if charge is None:
                raise InvalidAllocation(f"Charge {charge_id} is not an outstanding charge of this lease",
                                        {"charge_id": charge_id})
            if isinstance(applied, bool) or not isinstance(applied, int) or applied <= 0:
                raise InvalidAllocation("Allocation amounts must be positive integer cents",
                                        {"charge_id": charge_id, "amount": applied})
            if applied > charge.balance:
                raise InvalidAllocation(
                    f"Allocation {applied} exceeds charge balance {charge.balance}",
                    {"charge_id": charge_id, "amount": applied, "balance": charge.balance}
                )
            total += applied
            plan.append((charge, applied))

        if total > amount:
            raise InvalidAllocation("Total allocated exceeds payment amount",
                                    {"allocated": total, "amount": amount})
        return plan

    def get_payment(self, entity_id: str, payment_id: str) -> Optional[Payment]:
        """Get payment by ID, only if it belongs to the entity"""
        data = self.storage.load(self.payments_table, payment_id)
        if not data or data.get('entity_id') != entity_id:
            return None
        return Payment.from_dict(data)

    def require_payment(self, entity_id: str, payment_id: str) -> Payment:
        payment = self.get_payment(entity_id, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", {"payment_id": payment_id})
        return payment

    def list_payments(
        self,
        entity_id: str,
        lease_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None
    ) -> List[Payment]:
        """List an entity's payments, newest first"""
        filters = {"entity_id": entity_id}
        if lease_id:
            filters["lease_id"] = lease_id
        if tenant_id:
            filters["tenant_id"] = tenant_id

        payments = [Payment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]

        start = parse_optional_date(from_date, "from_date")
        end = parse_optional_date(to_date, "to_date")
        if start:
            payments = [p for p in payments if p.payment_date >= start]
        if end:
            payments = [p for p in payments if p.payment_date <= end]

        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def list_payments_for_lease(self, entity_id: str, lease_id: str) -> List[Payment]:
        return self.list_payments(entity_id, lease_id=lease_id)
