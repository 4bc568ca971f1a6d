"""
Lease Registry Module

Minimal lease records owned by a landlord entity. The ledger only needs
leases to scope charges and payments and to report LeaseNotFound; lease
forms, renewals and documents live outside the ledger core.
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .errors import InvalidDate, LeaseNotFound
from .money import DateLike, parse_date, parse_optional_date, validate_cents
from .storage import StorageInterface, StorageRecord


class LeaseStatus(Enum):
    """Lease lifecycle states"""
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    TERMINATED = "terminated"


@dataclass
class Lease(StorageRecord):
    """Lease of a unit to one or more tenants"""
    entity_id: str
    property_id: str
    unit_id: str
    rent_amount: int
    start_date: date
    tenant_ids: List[str] = field(default_factory=list)
    end_date: Optional[date] = None
    status: LeaseStatus = LeaseStatus.ACTIVE

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['status'] = self.status.value
        result['start_date'] = self.start_date.isoformat()
        result['end_date'] = self.end_date.isoformat() if self.end_date else None
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Lease':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entity_id=data['entity_id'],
            property_id=data['property_id'],
            unit_id=data['unit_id'],
            rent_amount=data['rent_amount'],
            start_date=date.fromisoformat(data['start_date']),
            tenant_ids=list(data.get('tenant_ids') or []),
            end_date=date.fromisoformat(data['end_date']) if data.get('end_date') else None,
            status=LeaseStatus(data['status'])
        )


class LeaseManager:
    """Stores leases and resolves them within a landlord entity"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.leases_table = "leases"

    def create_lease(
        self,
        entity_id: str,
        property_id: str,
        unit_id: str,
        rent_amount: int,
        start_date: DateLike,
        tenant_ids: Optional[List[str]] = None,
        end_date: Optional[DateLike] = None,
        actor_id: Optional[str] = None
    ) -> Lease:
        """Register a lease for a unit"""
        validate_cents(rent_amount, "rent_amount")
        start = parse_date(start_date, "start_date")
        end = parse_optional_date(end_date, "end_date")
        if end and end < start:
            raise InvalidDate("Lease end_date must not precede start_date",
                              {"start_date": start.isoformat(), "end_date": end.isoformat()})

        now = self.clock.now()
        lease = Lease(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entity_id=entity_id,
            property_id=property_id,
            unit_id=unit_id,
            rent_amount=rent_amount,
            start_date=start,
            tenant_ids=list(tenant_ids or []),
            end_date=end
        )

        with self.storage.atomic():
            self.storage.save(self.leases_table, lease.id, lease.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.LEASE_CREATED,
                entity_type="lease",
                entity_id=lease.id,
                changes={"after": {
                    "property_id": property_id,
                    "unit_id": unit_id,
                    "rent_amount": rent_amount,
                    "tenant_ids": lease.tenant_ids
                }},
                actor_id=actor_id,
                scope_id=entity_id
            )

        return lease

    def get_lease(self, entity_id: str, lease_id: str) -> Optional[Lease]:
        """Get lease by ID, only if it belongs to the entity"""
        data = self.storage.load(self.leases_table, lease_id)
        if not data or data.get('entity_id') != entity_id:
            return None
        return Lease.from_dict(data)

    def require_lease(self, entity_id: str, lease_id: str) -> Lease:
        lease = self.get_lease(entity_id, lease_id)
        if lease is None:
            raise LeaseNotFound(f"Lease {lease_id} not found", {"lease_id": lease_id})
        return lease

    def list_leases(self, entity_id: str, property_id: Optional[str] = None) -> List[Lease]:
        filters = {"entity_id": entity_id}
        if property_id:
            filters["property_id"] = property_id
        return [Lease.from_dict(data) for data in self.storage.find(self.leases_table, filters)]
