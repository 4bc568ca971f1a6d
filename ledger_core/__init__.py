"""
Property Ledger Core

Billing and debt-servicing ledger for a multi-tenant property-management
platform: charges, payment allocation, late fees, and mortgage servicing,
with integer-cent math and hash-chained audit trails.
"""

__version__ = "1.0.0"
