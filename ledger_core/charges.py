"""
Charge Ledger Module

Owns charge records and their status state machine. A charge's status is
never stored independently: it is derived from (amount, paid_amount, voided)
every time it is read, so no code path can set it directly.

Charges are only mutated by payment allocation (paid_amount), late-fee
assessment (late fee linkage) or an explicit void. They are never deleted.
"""

from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .errors import (
    ChargeNotFound, ConcurrentModification, InvalidAllocation, InvalidInput, InvalidStatus,
    InvalidStatusTransition, InvalidType
)
from .leases import LeaseManager
from .logging_config import log_action
from .money import DateLike, parse_date, parse_optional_date, validate_cents, validate_period
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.charges")


class ChargeType(Enum):
    """Kinds of amounts billed to a lease"""
    RENT = "rent"
    LATE_FEE = "late_fee"
    UTILITY = "utility"
    DEPOSIT = "deposit"
    PET_DEPOSIT = "pet_deposit"
    PET_RENT = "pet_rent"
    PARKING = "parking"
    DAMAGE = "damage"
    OTHER = "other"


class ChargeStatus(Enum):
    """Charge states; VOID is terminal"""
    OPEN = "open"
    PARTIAL = "partial"
    PAID = "paid"
    VOID = "void"


OUTSTANDING_STATUSES = (ChargeStatus.OPEN, ChargeStatus.PARTIAL)


def derive_status(amount: int, paid_amount: int, voided: bool) -> ChargeStatus:
    """The charge status as a pure function of its amounts and void flag"""
    if voided:
        return ChargeStatus.VOID
    if paid_amount <= 0:
        return ChargeStatus.OPEN
    if paid_amount < amount:
        return ChargeStatus.PARTIAL
    return ChargeStatus.PAID


def _coerce_charge_type(charge_type: Union[ChargeType, str]) -> ChargeType:
    if isinstance(charge_type, ChargeType):
        return charge_type
    try:
        return ChargeType(charge_type)
    except ValueError:
        raise InvalidType(f"Unknown charge type: {charge_type!r}", {"type": charge_type})


@dataclass
class Charge(StorageRecord):
    """An amount owed by a lease for a billing period"""
    entity_id: str
    lease_id: str
    period: str                          # YYYY-MM
    charge_type: ChargeType
    amount: int                          # cents
    due_date: date
    sequence: int                        # creation order, breaks due-date ties
    paid_amount: int = 0
    description: Optional[str] = None
    linked_charge_id: Optional[str] = None        # on a late fee: the charge it came from
    late_fee_applied_at: Optional[datetime] = None
    late_fee_charge_id: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None
    version: int = 1

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None

    @property
    def status(self) -> ChargeStatus:
        return derive_status(self.amount, self.paid_amount, self.is_voided)

    @property
    def balance(self) -> int:
        """Remaining amount owed (zero for voided charges)"""
        if self.is_voided:
            return 0
        return max(0, self.amount - self.paid_amount)

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES

    def apply_payment(self, amount: int) -> None:
        """Increase paid_amount by an allocation, never past the charge amount"""
        validate_cents(amount, "allocation amount")
        if not self.is_outstanding:
            raise InvalidStatus(
                f"Cannot allocate to a {self.status.value} charge",
                {"charge_id": self.id, "status": self.status.value}
            )
        if amount > self.balance:
            raise InvalidAllocation(
                f"Allocation {amount} exceeds charge balance {self.balance}",
                {"charge_id": self.id, "amount": amount, "balance": self.balance}
            )
        self.paid_amount += amount

    def void(self, reason: str, voided_at: datetime, voided_by: Optional[str] = None) -> None:
        if not self.is_outstanding:
            raise InvalidStatusTransition(
                f"Cannot void a {self.status.value} charge",
                {"charge_id": self.id, "status": self.status.value}
            )
        self.voided_at = voided_at
        self.voided_by = voided_by
        self.void_reason = reason

    def snapshot(self) -> Dict[str, Any]:
        """Fields recorded in audit before/after snapshots"""
        return {
            "amount": self.amount,
            "paid_amount": self.paid_amount,
            "status": self.status.value,
            "late_fee_charge_id": self.late_fee_charge_id,
            "void_reason": self.void_reason
        }

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['charge_type'] = self.charge_type.value
        result['due_date'] = self.due_date.isoformat()
        # Stored for querying only; always re-derived on load
        result['status'] = self.status.value
        for name in ('late_fee_applied_at', 'voided_at'):
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Charge':
        def get_datetime(name: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[name]) if data.get(name) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entity_id=data['entity_id'],
            lease_id=data['lease_id'],
            period=data['period'],
            charge_type=ChargeType(data['charge_type']),
            amount=data['amount'],
            due_date=date.fromisoformat(data['due_date']),
            sequence=data['sequence'],
            paid_amount=data.get('paid_amount', 0),
            description=data.get('description'),
            linked_charge_id=data.get('linked_charge_id'),
            late_fee_applied_at=get_datetime('late_fee_applied_at'),
            late_fee_charge_id=data.get('late_fee_charge_id'),
            voided_at=get_datetime('voided_at'),
            voided_by=data.get('voided_by'),
            void_reason=data.get('void_reason'),
            version=data.get('version', 1)
        )


def charge_sort_key(charge: Charge):
    """Allocation order: earliest due date first, then oldest charge"""
    return (charge.due_date, charge.sequence)


class ChargeLedger:
    """
    Creates, voids and persists charges

    ``build_charge`` and ``save_charge`` are the building blocks other
    components use to write charges inside their own atomic batches;
    ``save_charge`` enforces the optimistic version check.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 lease_manager: LeaseManager, clock: Optional[Clock] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.lease_manager = lease_manager
        self.clock = clock or SystemClock()
        self.charges_table = "charges"

    def create_charge(
        self,
        entity_id: str,
        lease_id: str,
        charge_type: Union[ChargeType, str],
        amount: int,
        due_date: DateLike,
        period: str,
        description: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Charge:
        """
        Create an open charge against a lease

        Args:
            entity_id: Landlord entity owning the lease
            lease_id: Lease being billed
            charge_type: ChargeType or its string value
            amount: Amount in cents, must be positive
            due_date: Calendar day the charge is due
            period: Billing period bucket, YYYY-MM
            description: Optional free text
            actor_id: User creating the charge

        Returns:
            Created Charge with status OPEN

        Raises:
            InvalidAmount, InvalidDate, InvalidType, LeaseNotFound
        """
        charge_type = _coerce_charge_type(charge_type)
        validate_cents(amount)
        due = parse_date(due_date, "due_date")
        validate_period(period)
        self.lease_manager.require_lease(entity_id, lease_id)

        with self.storage.atomic():
            charge = self.build_charge(entity_id, lease_id, charge_type, amount, due, period,
                                       description=description)
            self.save_charge(charge)
            self.audit_trail.log_event(
                event_type=AuditEventType.CHARGE_CREATED,
                entity_type="charge",
                entity_id=charge.id,
                changes={"after": {
                    "lease_id": lease_id,
                    "type": charge_type.value,
                    "amount": amount,
                    "period": period,
                    "due_date": due
                }},
                actor_id=actor_id,
                scope_id=entity_id
            )

        log_action(logger, "info", "Charge created", actor_id=actor_id,
                   action="create_charge", resource=f"charge:{charge.id}",
                   extra={"lease_id": lease_id, "amount": amount, "type": charge_type.value})
        return charge

    def void_charge(self, entity_id: str, charge_id: str, reason: str,
                    actor_id: Optional[str] = None) -> Charge:
        """
        Void an open or partially paid charge

        Recorded payments are not reversed; the charge simply stops
        accepting allocations and drops out of balances.

        Raises:
            ChargeNotFound, InvalidStatusTransition
        """
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required to void a charge", {"charge_id": charge_id})

        with self.storage.atomic():
            charge = self.require_charge(entity_id, charge_id)
            expected_version = charge.version
            before = charge.snapshot()

            charge.void(reason.strip(), self.clock.now(), actor_id)
            self.save_charge(charge, expected_version)

            self.audit_trail.log_event(
                event_type=AuditEventType.CHARGE_VOIDED,
                entity_type="charge",
                entity_id=charge.id,
                changes={"before": before, "after": charge.snapshot()},
                actor_id=actor_id,
                scope_id=entity_id
            )

        log_action(logger, "info", "Charge voided", actor_id=actor_id,
                   action="void_charge", resource=f"charge:{charge.id}",
                   extra={"reason": charge.void_reason})
        return charge

    def build_charge(
        self,
        entity_id: str,
        lease_id: str,
        charge_type: ChargeType,
        amount: int,
        due_date: date,
        period: str,
        description: Optional[str] = None,
        linked_charge_id: Optional[str] = None
    ) -> Charge:
        """Build an unsaved charge; call inside the batch that will save it"""
        now = self.clock.now()
        return Charge(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entity_id=entity_id,
            lease_id=lease_id,
            period=period,
            charge_type=charge_type,
            amount=amount,
            due_date=due_date,
            sequence=self.storage.count(self.charges_table) + 1,
            description=description,
            linked_charge_id=linked_charge_id
        )

    def save_charge(self, charge: Charge, expected_version: Optional[int] = None) -> None:
        """
        Persist a charge

        With ``expected_version`` the stored version must still match, then
        the version is bumped. Without it the charge must be new.

        Raises:
            ConcurrentModification: If the stored record changed meanwhile
        """
        current = self.storage.load(self.charges_table, charge.id)
        if expected_version is None:
            if current is not None:
                raise ConcurrentModification(f"Charge {charge.id} already exists")
        else:
            if current is None or current.get('version') != expected_version:
                raise ConcurrentModification(
                    f"Charge {charge.id} was modified concurrently",
                    {"charge_id": charge.id, "expected_version": expected_version,
                     "actual_version": current.get('version') if current else None}
                )
            charge.version = expected_version + 1
            charge.updated_at = self.clock.now()
        self.storage.save(self.charges_table, charge.id, charge.to_dict())

    def get_charge(self, entity_id: str, charge_id: str) -> Optional[Charge]:
        """Get charge by ID, only if it belongs to the entity"""
        data = self.storage.load(self.charges_table, charge_id)
        if not data or data.get('entity_id') != entity_id:
            return None
        return Charge.from_dict(data)

    def require_charge(self, entity_id: str, charge_id: str) -> Charge:
        charge = self.get_charge(entity_id, charge_id)
        if charge is None:
            raise ChargeNotFound(f"Charge {charge_id} not found", {"charge_id": charge_id})
        return charge

    def list_charges(
        self,
        entity_id: str,
        status: Optional[ChargeStatus] = None,
        charge_type: Optional[ChargeType] = None,
        lease_id: Optional[str] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None
    ) -> List[Charge]:
        """List an entity's charges, most recent due date first"""
        filters = {"entity_id": entity_id}
        if lease_id:
            filters["lease_id"] = lease_id
        if charge_type:
            filters["charge_type"] = _coerce_charge_type(charge_type).value

        charges = [Charge.from_dict(data) for data in self.storage.find(self.charges_table, filters)]

        if status:
            charges = [c for c in charges if c.status == ChargeStatus(status)]
        start = parse_optional_date(from_date, "from_date")
        end = parse_optional_date(to_date, "to_date")
        if start:
            charges = [c for c in charges if c.due_date >= start]
        if end:
            charges = [c for c in charges if c.due_date <= end]

        charges.sort(key=charge_sort_key, reverse=True)
        return charges

    def list_charges_for_lease(self, entity_id: str, lease_id: str,
                               status: Optional[ChargeStatus] = None) -> List[Charge]:
        return self.list_charges(entity_id, status=status, lease_id=lease_id)

    def get_open_charges_for_lease(self, entity_id: str, lease_id: str) -> List[Charge]:
        """Open and partial charges in allocation order"""
        charges = [
            Charge.from_dict(data)
            for data in self.storage.find(self.charges_table, {"entity_id": entity_id, "lease_id": lease_id})
        ]
        outstanding = [c for c in charges if c.is_outstanding]
        outstanding.sort(key=charge_sort_key)
        return outstanding
