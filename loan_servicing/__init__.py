"""
Loan Servicing Core

Loan lifecycle state machine and EMI schedule / payment tracking for
merchant-originated gold and product loans. Money is always Decimal and
every state change lands in a hash-chained audit trail.
"""

__version__ = "1.0.0"
