"""
Loan Servicing Core

Multi-tenant loan accounting: amortization schedules, an append-only loan
ledger and a fees -> interest -> principal payment waterfall. All money math
uses Decimal.
"""

__version__ = "1.0.0"
