"""
Ledger Error Taxonomy

Domain-level errors raised by the ledger core. Each error carries a stable
``code`` so callers (request handlers, jobs) can branch on the cause without
parsing messages. All errors derive from ValueError so existing callers that
catch ValueError keep working.
"""

from typing import Any, Dict, Optional


class LedgerError(ValueError):
    """Base class for all ledger errors"""
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for error responses"""
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidAmount(LedgerError):
    """Amount is not a positive integer number of cents"""
    code = "INVALID_AMOUNT"


class NonAmortizingPayment(InvalidAmount):
    """Level payment never brings the balance to zero"""
    code = "NON_AMORTIZING_PAYMENT"


class InvalidDate(LedgerError):
    """Date or period is not a valid calendar value"""
    code = "INVALID_DATE"


class InvalidInput(LedgerError):
    """A required field is missing or outside its allowed range"""
    code = "INVALID_INPUT"


class InvalidStatus(LedgerError):
    """Record is in a status that does not permit the operation"""
    code = "INVALID_STATUS"


class InvalidStatusTransition(InvalidStatus):
    """Requested status change is not allowed by the state machine"""
    code = "INVALID_STATUS_TRANSITION"


class InvalidType(LedgerError):
    """Record type does not permit the operation"""
    code = "INVALID_TYPE"


class InvalidAllocation(LedgerError):
    """Explicit payment allocation is inconsistent with the charges"""
    code = "INVALID_ALLOCATION"


class InvalidPaymentMethod(LedgerError):
    """Payment method payload is missing or malformed"""
    code = "INVALID_PAYMENT_METHOD"


class AlreadyApplied(LedgerError):
    """Late fee has already been assessed against the charge"""
    code = "ALREADY_APPLIED"


class GracePeriodNotElapsed(LedgerError):
    """Charge is still inside its late-fee grace period"""
    code = "GRACE_PERIOD"


class FeatureDisabled(LedgerError):
    """Feature is turned off for the landlord entity"""
    code = "FEATURE_DISABLED"


class ZeroFee(LedgerError):
    """Computed late fee is zero or negative"""
    code = "ZERO_FEE"


class ConcurrentModification(LedgerError):
    """Record changed between read and write inside a batch"""
    code = "CONCURRENT_MODIFICATION"


class NotFound(LedgerError):
    """Referenced record does not exist"""
    code = "NOT_FOUND"


class ChargeNotFound(NotFound):
    code = "CHARGE_NOT_FOUND"


class LeaseNotFound(NotFound):
    code = "LEASE_NOT_FOUND"


class MortgageNotFound(NotFound):
    code = "MORTGAGE_NOT_FOUND"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"


class InvalidSettings(LedgerError):
    """Policy settings failed validation"""
    code = "INVALID_SETTINGS"
