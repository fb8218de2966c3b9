from app.models.audit_log import AuditLog
from app.models.order import Order
from app.models.reconciliation_issue import ReconciliationIssue
from app.models.transaction import Transaction

__all__ = [
    "AuditLog",
    "Order",
    "ReconciliationIssue",
    "Transaction",
]
