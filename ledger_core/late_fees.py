"""
Late Fee Module

Evaluates overdue charges against the landlord entity's late-fee policy and
emits derivative ``late_fee`` charges. A charge receives at most one late
fee: the eligibility check, the new fee charge and the stamp on the original
charge all happen in one atomic batch, and the stamp is written with a
version compare on the original charge.
"""

from datetime import date
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional
from enum import Enum
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .audit import AuditTrail, AuditEventType
from .charges import Charge, ChargeLedger, ChargeStatus, ChargeType, charge_sort_key
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .errors import (
    AlreadyApplied, FeatureDisabled, GracePeriodNotElapsed, InvalidSettings,
    InvalidStatus, InvalidType, ZeroFee
)
from .logging_config import log_action
from .money import days_between, percent_of, round_half_up
from .storage import StorageInterface

logger = logging.getLogger("ledger.late_fees")


class LateFeeType(Enum):
    """How the fee amount is interpreted"""
    FLAT = "flat"              # amount is cents
    PERCENTAGE = "percentage"  # amount is a percent of the outstanding balance


class LateFeeSettings(BaseModel):
    """Late-fee policy of one landlord entity"""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    fee_type: LateFeeType = LateFeeType.FLAT
    amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[int] = Field(None, ge=0)
    grace_days: int = Field(5, ge=0)


def calculate_late_fee(amount: int, paid_amount: int, settings: LateFeeSettings) -> int:
    """
    Fee in cents for a charge with the given amount and paid amount

    Returns 0 when the policy is disabled, has no amount, or the charge has
    no outstanding balance.
    """
    if not settings.enabled or not settings.amount:
        return 0

    balance = amount - paid_amount
    if balance <= 0:
        return 0

    if settings.fee_type == LateFeeType.PERCENTAGE:
        fee = percent_of(balance, settings.amount)
        if settings.max_amount is not None and fee > settings.max_amount:
            fee = settings.max_amount
        return fee

    return round_half_up(settings.amount)


def grace_period_elapsed(due_date: date, grace_days: int, today: date) -> bool:
    """A charge becomes late-fee eligible on due_date + grace_days"""
    return days_between(due_date, today) >= grace_days


@dataclass(frozen=True)
class LateFeeResult:
    late_fee_charge_id: str
    late_fee_amount: int


@dataclass(frozen=True)
class OverdueCharge:
    """An outstanding charge past its grace period with no late fee yet"""
    charge_id: str
    lease_id: str
    period: str
    charge_type: ChargeType
    amount: int
    paid_amount: int
    balance: int
    due_date: date
    days_overdue: int


class LateFeePolicyStore:
    """Per-entity LateFeeSettings, persisted in the ledger store"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 config: Optional[LedgerConfig] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.settings_table = "late_fee_settings"

    def _defaults(self) -> LateFeeSettings:
        return LateFeeSettings(grace_days=self.config.default_grace_days)

    def get_settings(self, entity_id: str) -> LateFeeSettings:
        """Settings for an entity; entities that never saved any get the defaults"""
        data = self.storage.load(self.settings_table, entity_id)
        if not data:
            return self._defaults()
        return LateFeeSettings.model_validate(data['settings'])

    def update_settings(self, entity_id: str, actor_id: Optional[str] = None,
                        **changes: Any) -> LateFeeSettings:
        """
        Merge changes into an entity's settings

        Keys left out or passed as None keep their current value.

        Raises:
            InvalidSettings: Unknown field or value out of range
        """
        with self.storage.atomic():
            current = self.get_settings(entity_id)
            merged = current.model_dump()
            merged.update({key: value for key, value in changes.items() if value is not None})
            try:
                updated = LateFeeSettings.model_validate(merged)
            except ValidationError as e:
                raise InvalidSettings(
                    "Invalid late fee settings",
                    {"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]}
                )

            self.storage.save(self.settings_table, entity_id, {
                'id': entity_id,
                'entity_id': entity_id,
                'settings': updated.model_dump(mode="json"),
                'updated_at': self.clock.now().isoformat()
            })
            self.audit_trail.log_event(
                event_type=AuditEventType.LATE_FEE_SETTINGS_UPDATED,
                entity_type="late_fee_settings",
                entity_id=entity_id,
                changes={"before": current.model_dump(mode="json"),
                         "after": updated.model_dump(mode="json")},
                actor_id=actor_id,
                scope_id=entity_id
            )

        log_action(logger, "info", "Late fee settings updated", actor_id=actor_id,
                   action="update_late_fee_settings", resource=f"entity:{entity_id}",
                   extra={"enabled": updated.enabled, "fee_type": updated.fee_type.value})
        return updated


class LateFeeAssessor:
    """Applies late fees to overdue charges"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        charge_ledger: ChargeLedger,
        policy_store: LateFeePolicyStore,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.charge_ledger = charge_ledger
        self.policy_store = policy_store
        self.clock = clock or SystemClock()

    def apply_late_fee(self, entity_id: str, charge_id: str,
                       actor_id: Optional[str] = None) -> LateFeeResult:
        """
        Assess the entity's late fee against one charge

        Creates an open ``late_fee`` charge due today, linked to the original,
        and stamps the original with the fee charge id.

        Raises:
            FeatureDisabled: Late fees are off for the entity
            ChargeNotFound: No such charge in the entity
            InvalidStatus: Charge is paid or void
            InvalidType: Charge is itself a late fee
            AlreadyApplied: Charge already carries a late fee
            GracePeriodNotElapsed: today < due_date + grace_days
            ZeroFee: Policy yields no fee for this charge
        """
        settings = self.policy_store.get_settings(entity_id)
        if not settings.enabled:
            raise FeatureDisabled("Late fees are not enabled for this entity",
                                  {"entity_id": entity_id})

        with self.storage.atomic():
            charge = self.charge_ledger.require_charge(entity_id, charge_id)
            self._check_eligible(charge, settings)

            fee = calculate_late_fee(charge.amount, charge.paid_amount, settings)
            if fee <= 0:
                raise ZeroFee("Calculated late fee is zero", {"charge_id": charge.id})

            today = self.clock.today()
            expected_version = charge.version
            before = charge.snapshot()

            fee_charge = self.charge_ledger.build_charge(
                entity_id, charge.lease_id, ChargeType.LATE_FEE, fee, today, charge.period,
                description=f"Late fee for {charge.charge_type.value} charge ({charge.period})",
                linked_charge_id=charge.id
            )
            self.charge_ledger.save_charge(fee_charge)

            charge.late_fee_applied_at = self.clock.now()
            charge.late_fee_charge_id = fee_charge.id
            self.charge_ledger.save_charge(charge, expected_version)

            self.audit_trail.log_event(
                event_type=AuditEventType.CHARGE_CREATED,
                entity_type="charge",
                entity_id=fee_charge.id,
                changes={"after": {
                    "type": ChargeType.LATE_FEE.value,
                    "amount": fee,
                    "linked_charge_id": charge.id,
                    "original_charge_type": charge.charge_type.value,
                    "original_charge_period": charge.period
                }},
                actor_id=actor_id,
                scope_id=entity_id
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.LATE_FEE_APPLIED,
                entity_type="charge",
                entity_id=charge.id,
                changes={"before": before, "after": charge.snapshot()},
                actor_id=actor_id,
                scope_id=entity_id
            )

        log_action(logger, "info", "Late fee applied", actor_id=actor_id,
                   action="apply_late_fee", resource=f"charge:{charge.id}",
                   extra={"late_fee_charge_id": fee_charge.id, "late_fee_amount": fee})
        return LateFeeResult(late_fee_charge_id=fee_charge.id, late_fee_amount=fee)

    def _check_eligible(self, charge: Charge, settings: LateFeeSettings) -> None:
        if charge.status in (ChargeStatus.PAID, ChargeStatus.VOID):
            raise InvalidStatus(f"Cannot apply late fee to a {charge.status.value} charge",
                                {"charge_id": charge.id, "status": charge.status.value})
        if charge.charge_type == ChargeType.LATE_FEE:
            raise InvalidType("Cannot apply late fee to a late fee charge",
                              {"charge_id": charge.id})
        if charge.late_fee_applied_at is not None:
            raise AlreadyApplied("Late fee has already been applied to this charge",
                                 {"charge_id": charge.id,
                                  "late_fee_charge_id": charge.late_fee_charge_id})
        if not grace_period_elapsed(charge.due_date, settings.grace_days, self.clock.today()):
            raise GracePeriodNotElapsed("Charge is still within grace period",
                                        {"charge_id": charge.id, "grace_days": settings.grace_days})

    def get_overdue_charges(self, entity_id: str) -> List[OverdueCharge]:
        """
        Outstanding charges that are late-fee eligible today

        Late-fee charges and charges that already carry a fee are skipped.
        Ordered by due date, oldest first.
        """
        settings = self.policy_store.get_settings(entity_id)
        today = self.clock.today()

        eligible = [
            c for c in self.charge_ledger.list_charges(entity_id)
            if c.is_outstanding
            and c.charge_type != ChargeType.LATE_FEE
            and c.late_fee_applied_at is None
            and grace_period_elapsed(c.due_date, settings.grace_days, today)
        ]
        eligible.sort(key=charge_sort_key)

        return [
            OverdueCharge(
                charge_id=c.id,
                lease_id=c.lease_id,
                period=c.period,
                charge_type=c.charge_type,
                amount=c.amount,
                paid_amount=c.paid_amount,
                balance=c.balance,
                due_date=c.due_date,
                days_overdue=days_between(c.due_date, today)
            )
            for c in eligible
        ]
