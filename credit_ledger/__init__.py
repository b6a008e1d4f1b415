"""
Customer Debt and Credit Ledger

This module provides:
- Integer kobo money arithmetic
- Payment allocation: debt first, excess to credit
- Mixed cash + credit payments and credit applied to sales
- Soft-delete cancellation with compensating audit entries
- Append-only, structured audit trail
- Reconciliation: replay, drift detection and repair
"""

from .audit import AuditLog
from .errors import (
    CorruptStateError,
    CustomerNotFoundError,
    IdempotencyConflictError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PersistenceError,
    TransactionNotFoundError,
    ValidationError,
)
from .models import (
    AuditEntry,
    AuditEventType,
    Customer,
    PaymentMethod,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from .reconciliation import ReconciliationEngine
from .repository import InMemoryRepository, LedgerRepository
from .service import PaymentAllocationService

__all__ = [
    "AuditEntry",
    "AuditEventType",
    "AuditLog",
    "CorruptStateError",
    "Customer",
    "CustomerNotFoundError",
    "IdempotencyConflictError",
    "InMemoryRepository",
    "InvalidAmountError",
    "InvalidStateTransitionError",
    "LedgerRepository",
    "LedgerServiceError",
    "NotFoundError",
    "PaymentAllocationService",
    "PaymentMethod",
    "PersistenceError",
    "ReconciliationEngine",
    "Transaction",
    "TransactionKind",
    "TransactionNotFoundError",
    "TransactionStatus",
    "ValidationError",
]
