"""
Business logic services.
"""

from enrollbot.services.entitlement_service import EntitlementService
from enrollbot.services.credit_ledger import CreditLedger
from enrollbot.services.session_registry import SessionRegistry
from enrollbot.services.purchase_ledger import PurchaseLedger

__all__ = ["EntitlementService", "CreditLedger", "SessionRegistry", "PurchaseLedger"]
