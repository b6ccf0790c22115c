"""
Mini Core Banking

Account ledger and loan lifecycle engine: balance mutation with an immutable
transaction history, simple monthly amortization and a loan state machine.
All monetary math uses Decimal.
"""

__version__ = "1.0.0"
