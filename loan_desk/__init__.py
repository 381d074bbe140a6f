"""
Loan Desk

Account and slot allocation engine for a loan office: sequential account
numbers, an 84-slot physical filing index, manual ordering of loan files,
and a payment ledger.
"""

__version__ = "1.0.0"
