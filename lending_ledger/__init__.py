"""
Lending Ledger

A lending backend that tracks customers, loans and payments, accruing simple
interest over elapsed time and allocating payments interest-first, with
Decimal money math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
