"""
Business logic services.
"""
from emailkit.services.credit_calculator import CreditCalculator
from emailkit.services.usage_ledger import UsageLedger
from emailkit.services.credit_gate import CreditGate

__all__ = [
    "CreditCalculator",
    "UsageLedger",
    "CreditGate",
]
