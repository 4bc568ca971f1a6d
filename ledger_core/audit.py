"""
Ledger Audit Log

Append-only record of every ledger mutation. Events are chained by SHA-256:
each stores the hash of its predecessor, so editing or dropping a stored
event shows up in verify_integrity().
Every ledger mutation writes its audit event inside the same atomic batch,
so an event exists exactly when the change it describes was committed.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """What happened to a ledger record"""
    # Lease events
    LEASE_CREATED = "lease_created"

    # Charge events
    CHARGE_CREATED = "charge_created"
    CHARGE_VOIDED = "charge_voided"
    CHARGE_PAYMENT_APPLIED = "charge_payment_applied"

    # Payment events
    PAYMENT_RECORDED = "payment_recorded"

    # Late fee events
    LATE_FEE_APPLIED = "late_fee_applied"
    LATE_FEE_SETTINGS_UPDATED = "late_fee_settings_updated"

    # Mortgage events
    MORTGAGE_CREATED = "mortgage_created"
    MORTGAGE_UPDATED = "mortgage_updated"
    MORTGAGE_PAYMENT_RECORDED = "mortgage_payment_recorded"
    MORTGAGE_PAID_OFF = "mortgage_paid_off"


def _convert_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One ledger mutation, with a before/after snapshot"""
    sequence: int
    event_type: AuditEventType
    entity_type: str  # charge, payment, mortgage, late_fee_settings, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    changes: Dict[str, Any] = field(default_factory=dict)  # {"before": ..., "after": ...}
    actor_id: Optional[str] = None
    scope_id: Optional[str] = None  # Landlord entity the event belongs to

    def __post_init__(self):
        self.changes = _convert_value(self.changes or {})

    @property
    def before(self) -> Optional[Dict[str, Any]]:
        return self.changes.get("before")

    @property
    def after(self) -> Optional[Dict[str, Any]]:
        return self.changes.get("after")

    def calculate_hash(self) -> str:
        """SHA-256 over the stored form, minus the hash itself and updated_at"""
        payload = self.to_dict()
        del payload["current_hash"], payload["updated_at"]
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def verify_hash(self) -> bool:
        """Stored hash still matches the event contents"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Writes and checks the ledger audit chain

    The chain head (last sequence and hash) is a record of its own, written
    in the same batch as the event. An event rolled back with its batch takes
    the head update with it and never becomes the parent of a later event.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def _chain_head(self) -> Tuple[int, str]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if not head:
            return 0, ""
        return head["sequence"], head["current_hash"]

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        changes: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        scope_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain, inside the caller's batch if any

        Args:
            event_type: What happened
            entity_type: Kind of record changed (charge, payment, mortgage, ...)
            entity_id: Id of the changed record
            changes: Before/after snapshot, ``{"before": {...}, "after": {...}}``
            actor_id: ID of user who initiated the action
            scope_id: Landlord entity the change belongs to

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            last_sequence, last_hash = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=last_sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last_hash,
                current_hash="",
                changes=changes or {},
                actor_id=actor_id,
                scope_id=scope_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                "id": self.HEAD_ID,
                "sequence": event.sequence,
                "current_hash": event.current_hash
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_scope(self, scope_id: str) -> List[AuditEvent]:
        """Everything recorded for one landlord entity, oldest first"""
        events = [AuditEvent.from_dict(data)
                  for data in self.storage.find(self.table_name, {"scope_id": scope_id})]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in sequence order

        Reports events whose hash no longer matches their contents, events
        whose previous_hash does not point at their predecessor, and gaps in
        the sequence numbers. ``valid`` is False if any list is non-empty.
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'sequence_gaps': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            if event.sequence != position + 1:
                result['valid'] = False
                result['sequence_gaps'].append({
                    'event_id': event.id,
                    'expected_sequence': position + 1,
                    'actual_sequence': event.sequence
                })
            previous_hash = event.current_hash

        return result
