"""
Lending Ledger Core

Ledger and accounting propagation for a weekly-collection microfinance
back office: loan disbursement, payment allocation, cash-fund balances
and shortfall (falco) compensation. All money math uses Decimal.
"""

__version__ = "1.0.0"
