"""
Pledge Loan Core

Interest accrual and repayment allocation engine for pledge (gold) loans,
with fixed-point Decimal money, an append-only interest ledger, and a
hash-chained audit trail.
"""

__version__ = "1.0.0"
