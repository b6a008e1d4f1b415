from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, model_validator


class TransactionKind(str, Enum):
    SALE = "sale"
    PAYMENT = "payment"
    CREDIT = "credit"
    REFUND = "refund"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    POS_CARD = "pos_card"
    CREDIT = "credit"
    MIXED = "mixed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AuditEventType(str, Enum):
    DEBT_CREATED = "debt_created"
    PAYMENT = "payment"
    OVERPAYMENT = "overpayment"
    CREDIT_USED = "credit_used"
    CREDIT_APPLIED_TO_SALE = "credit_applied_to_sale"
    REFUND = "refund"
    STATUS_CHANGE = "status_change"
    BALANCE_CORRECTION = "balance_correction"


DEBT_KINDS = (TransactionKind.SALE, TransactionKind.CREDIT)
IMMEDIATE_METHODS = (PaymentMethod.CASH, PaymentMethod.BANK_TRANSFER, PaymentMethod.POS_CARD)


class Customer(BaseModel):
    id: UUID
    name: str
    phone: Optional[str] = None
    outstanding_balance: int = 0
    credit_balance: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    customer_id: UUID
    kind: TransactionKind
    payment_method: PaymentMethod
    amount: int
    paid_amount: int
    remaining_amount: int
    applied_to_debt: bool = False
    status: TransactionStatus
    linked_transaction_id: Optional[UUID] = None
    date: datetime
    is_deleted: bool = False
    description: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_debt(self) -> bool:
        return self.kind in DEBT_KINDS

    def can_cancel(self) -> bool:
        return not self.is_deleted and self.status != TransactionStatus.CANCELLED


# Audit payloads: one structured shape per audit type, discriminated by `kind`.

class DebtAllocation(BaseModel):
    debt_id: UUID
    amount: int
    old_status: TransactionStatus
    new_status: TransactionStatus


class DebtCreatedPayload(BaseModel):
    kind: Literal["debt_created"] = "debt_created"
    operation: str
    debt_id: UUID
    initial_paid: int
    initial_remaining: int


class PaymentPayload(BaseModel):
    kind: Literal["payment"] = "payment"
    operation: str
    allocations: list[DebtAllocation] = Field(default_factory=list)
    legacy_allocation: bool = False
    target_version: Optional[int] = None


class OverpaymentPayload(BaseModel):
    kind: Literal["overpayment"] = "overpayment"
    operation: str
    reason: Literal["excess_payment", "prepayment"]


class CreditUsedPayload(BaseModel):
    kind: Literal["credit_used"] = "credit_used"
    operation: str
    requested: int
    description: Optional[str] = None
    debt_reduced: int = 0
    allocations: list[DebtAllocation] = Field(default_factory=list)


class CreditAppliedPayload(BaseModel):
    kind: Literal["credit_applied_to_sale"] = "credit_applied_to_sale"
    operation: str
    debt_id: UUID
    original_sale_amount: int
    previous_remaining: int


class RefundPayload(BaseModel):
    kind: Literal["refund"] = "refund"
    operation: str
    debt_reduced: int
    credit_created: int
    debt_id: Optional[UUID] = None
    allocations: list[DebtAllocation] = Field(default_factory=list)


class StatusChangePayload(BaseModel):
    kind: Literal["status_change"] = "status_change"
    operation: str
    debt_id: UUID
    old_status: TransactionStatus
    new_status: TransactionStatus
    reason: Optional[str] = None
    debt_change: int = 0
    credit_change: int = 0


class BalanceCorrectionPayload(BaseModel):
    kind: Literal["balance_correction"] = "balance_correction"
    operation: str
    previous_outstanding: Optional[int] = None
    previous_credit: Optional[int] = None
    new_outstanding: int
    new_credit: int
    target_version: Optional[int] = None


AuditEventPayload = Annotated[
    Union[
        DebtCreatedPayload,
        PaymentPayload,
        OverpaymentPayload,
        CreditUsedPayload,
        CreditAppliedPayload,
        RefundPayload,
        StatusChangePayload,
        BalanceCorrectionPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(AuditEventPayload)


def encode_payload(payload: BaseModel) -> dict:
    return payload.model_dump(mode="json")


def decode_payload(data: Any):
    return _payload_adapter.validate_python(data)


class AuditEntry(BaseModel):
    id: UUID
    customer_id: UUID
    source_transaction_id: Optional[UUID] = None
    type: AuditEventType
    amount: int
    metadata: AuditEventPayload
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "AuditEntry":
        if self.metadata.kind != self.type.value:
            raise ValueError(
                f"Audit payload '{self.metadata.kind}' does not match entry type '{self.type.value}'"
            )
        return self


# Requests

class CreateCustomerRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    outstanding_balance: int = Field(default=0, ge=0)
    credit_balance: int = Field(default=0, ge=0)


class RecordTransactionRequest(BaseModel):
    kind: TransactionKind
    amount: int = Field(..., description="Total amount in kobo")
    payment_method: Optional[PaymentMethod] = None
    paid_amount: Optional[int] = Field(default=None, description="Upfront part of a mixed sale")
    applied_to_debt: bool = True
    linked_transaction_id: Optional[UUID] = None
    date: Optional[datetime] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "kind": "sale",
            "amount": 1256700,
            "payment_method": "mixed",
            "paid_amount": 753400,
            "description": "Rice and beans",
        }
    })


class PaymentRequest(BaseModel):
    amount: int
    use_for_debt: bool = True
    payment_method: PaymentMethod = PaymentMethod.CASH
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Repeat submissions with this key are not re-applied")


class MixedPaymentRequest(BaseModel):
    total_amount: int
    cash_amount: int
    credit_amount: int
    description: Optional[str] = None


class UseCreditRequest(BaseModel):
    amount: int
    description: Optional[str] = None


class ApplyCreditRequest(BaseModel):
    sale_amount: int
    sale_transaction_id: UUID


class CancelTransactionRequest(BaseModel):
    reason: str = "Cancelled by user"


class ReconcileRequest(BaseModel):
    target_version: Optional[int] = None


# Results

class BalanceSnapshot(BaseModel):
    outstanding_balance: int
    credit_balance: int


class CustomerBalance(BaseModel):
    customer_id: UUID
    outstanding_balance: int
    credit_balance: int
    total_transactions: int
    last_transaction_at: Optional[datetime] = None


class PaymentAllocationResult(BaseModel):
    success: bool = True
    customer_id: UUID
    transaction_id: Optional[UUID] = None
    amount: int
    debt_reduced: int
    credit_created: int
    allocations: list[DebtAllocation] = Field(default_factory=list)
    duplicate: bool = False
    message: str


class MixedPaymentResult(BaseModel):
    success: bool = True
    customer_id: UUID
    total_amount: int
    cash_processed: int
    credit_used: int
    credit_shortfall: int
    debt_reduced: int
    credit_created: int
    transaction_id: Optional[UUID] = None
    message: str


class CreditUsageResult(BaseModel):
    success: bool = True
    customer_id: UUID
    requested: int
    used: int
    remaining: int
    shortfall: int
    message: str


class CreditApplicationResult(BaseModel):
    success: bool = True
    customer_id: UUID
    transaction_id: UUID
    credit_used: int
    remaining_amount: int
    transaction_status: TransactionStatus
    message: str


class CancellationResult(BaseModel):
    success: bool = True
    transaction_id: UUID
    previous_status: TransactionStatus
    debt_change: int
    credit_change: int
    message: str


class TransactionResult(BaseModel):
    transaction: Transaction
    balance: BalanceSnapshot
    payment: Optional[PaymentAllocationResult] = None
    message: str


class TransactionProgress(BaseModel):
    transaction_id: UUID
    total_amount: int
    paid_amount: int
    remaining_amount: int
    status: TransactionStatus
    payment_method: PaymentMethod
    percentage_paid: Decimal
    last_payment_at: Optional[datetime] = None
    payment_history: list[AuditEntry] = Field(default_factory=list)


class AuditTypeTotal(BaseModel):
    count: int = 0
    amount: int = 0


class AuditSummary(BaseModel):
    customer_id: UUID
    total_entries: int
    total_amount: int
    by_type: dict[str, AuditTypeTotal] = Field(default_factory=dict)
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class CreditSummary(BaseModel):
    customer_id: UUID
    current_balance: int
    total_earned: int
    total_used: int
    last_activity: Optional[datetime] = None


class Discrepancy(BaseModel):
    customer_id: UUID
    stored: Optional[BalanceSnapshot] = None
    computed: Optional[BalanceSnapshot] = None
    difference: Optional[BalanceSnapshot] = None
    corrupt: bool = False
    error: Optional[str] = None


class CustomerReconciliation(BaseModel):
    customer_id: UUID
    previous: Optional[BalanceSnapshot] = None
    corrected: BalanceSnapshot
    balance_updated: bool
    backfilled_entries: int = 0


class ReconciliationFailure(BaseModel):
    customer_id: UUID
    error: str


class ReconciliationReport(BaseModel):
    target_version: Optional[int] = None
    customers_checked: int
    corrections: list[CustomerReconciliation] = Field(default_factory=list)
    backfilled_entries: int = 0
    failures: list[ReconciliationFailure] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        return not self.failures


class OrphanedLink(BaseModel):
    transaction_id: UUID
    linked_transaction_id: UUID


class LinkRepairReport(BaseModel):
    checked: int
    cleared: list[OrphanedLink] = Field(default_factory=list)


class LinkAnalysis(BaseModel):
    total_transactions: int
    linked_transactions: int
    orphaned_links: int
    unlinked_payments: int
    recommendations: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    transaction_id: UUID
    is_consistent: bool
    issues: list[str] = Field(default_factory=list)
    audit_settled: int
    stored_settled: int


class TransactionRepair(BaseModel):
    transaction_id: UUID
    updated: bool
    old_paid_amount: int
    new_paid_amount: int
    old_remaining_amount: int
    new_remaining_amount: int
    old_status: TransactionStatus
    new_status: TransactionStatus
