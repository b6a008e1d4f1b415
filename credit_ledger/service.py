import logging
from datetime import datetime
from typing import Optional, Union
from uuid import UUID, uuid4

from .audit import AuditLog
from .calculator import (
    OverpaymentSplit,
    allocate_overpayment,
    calculate_debt_impact,
    calculate_initial_amounts,
    calculate_payment_progress,
    calculate_status,
    validate_mixed_payment,
)
from .errors import (
    CustomerNotFoundError,
    IdempotencyConflictError,
    InvalidStateTransitionError,
    TransactionNotFoundError,
    ValidationError,
)
from .models import (
    AuditEntry,
    AuditEventType,
    BalanceSnapshot,
    CancellationResult,
    CreditAppliedPayload,
    CreditApplicationResult,
    CreditSummary,
    CreditUsageResult,
    CreditUsedPayload,
    Customer,
    CustomerBalance,
    DebtAllocation,
    DebtCreatedPayload,
    MixedPaymentResult,
    OverpaymentPayload,
    PaymentAllocationResult,
    PaymentMethod,
    PaymentPayload,
    RefundPayload,
    StatusChangePayload,
    Transaction,
    TransactionKind,
    TransactionProgress,
    TransactionResult,
    TransactionStatus,
)
from .money import require_amount, require_non_negative
from .repository import InMemoryRepository, LedgerRepository, as_utc

logger = logging.getLogger(__name__)

PAYMENT_HISTORY_TYPES = (
    AuditEventType.PAYMENT,
    AuditEventType.OVERPAYMENT,
    AuditEventType.CREDIT_USED,
    AuditEventType.CREDIT_APPLIED_TO_SALE,
    AuditEventType.REFUND,
)


class PaymentAllocationService:
    def __init__(self, repository: Optional[LedgerRepository] = None):
        self.repository = repository or InMemoryRepository()
        self.audit = AuditLog(self.repository)

    # Customers

    def create_customer(
        self,
        name: str,
        phone: Optional[str] = None,
        outstanding_balance: int = 0,
        credit_balance: int = 0,
    ) -> Customer:
        require_non_negative(outstanding_balance, "outstanding_balance")
        require_non_negative(credit_balance, "credit_balance")
        customer = Customer(
            id=uuid4(),
            name=name,
            phone=phone,
            created_at=self.repository.next_timestamp(),
        )

        # Opening balances go through the normal flows so replay reproduces them.
        with self.repository.transaction():
            self.repository.create_customer(customer)
            if outstanding_balance:
                self.record_transaction(
                    customer.id, TransactionKind.CREDIT, outstanding_balance,
                    description="Opening balance",
                )
            if credit_balance:
                self.handle_payment_allocation(
                    customer.id, credit_balance, use_for_debt=False,
                    description="Opening credit",
                )
            return self._load_customer(customer.id)

    def get_customer(self, customer_id: UUID) -> Customer:
        return self._load_customer(customer_id)

    def get_balance(self, customer_id: UUID) -> CustomerBalance:
        customer = self._load_customer(customer_id)
        transactions = self.repository.find_transactions_by_customer(customer_id)
        return CustomerBalance(
            customer_id=customer_id,
            outstanding_balance=customer.outstanding_balance,
            credit_balance=customer.credit_balance,
            total_transactions=len(transactions),
            last_transaction_at=transactions[-1].date if transactions else None,
        )

    def get_credit_summary(self, customer_id: UUID) -> CreditSummary:
        customer = self._load_customer(customer_id)
        return self.audit.credit_summary(customer_id, customer.credit_balance)

    def get_payment_history(self, customer_id: UUID, limit: int = 50) -> list[AuditEntry]:
        self._load_customer(customer_id)
        return self.audit.history(customer_id, types=PAYMENT_HISTORY_TYPES, limit=limit)

    def get_audit_trail(self, customer_id: UUID, limit: int = 50, offset: int = 0) -> list[AuditEntry]:
        self._load_customer(customer_id)
        return self.audit.history(customer_id, limit=limit, offset=offset)

    # Transactions

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return self._load_transaction(transaction_id)

    def get_transaction_progress(self, transaction_id: UUID) -> TransactionProgress:
        transaction = self._load_transaction(transaction_id)
        progress = calculate_payment_progress(
            transaction.kind, transaction.amount, transaction.paid_amount, transaction.remaining_amount
        )
        history = [
            e for e in self.audit.history(transaction.customer_id)
            if (e.type == AuditEventType.CREDIT_APPLIED_TO_SALE and e.source_transaction_id == transaction.id)
            or (e.type in (AuditEventType.PAYMENT, AuditEventType.CREDIT_USED, AuditEventType.REFUND)
                and any(a.debt_id == transaction.id for a in e.metadata.allocations))
        ]
        return TransactionProgress(
            transaction_id=transaction.id,
            total_amount=transaction.amount,
            paid_amount=progress.paid_amount,
            remaining_amount=progress.remaining_amount,
            status=transaction.status,
            payment_method=transaction.payment_method,
            percentage_paid=progress.percentage_paid,
            last_payment_at=history[0].created_at if history else None,
            payment_history=history,
        )

    def record_transaction(
        self,
        customer_id: UUID,
        kind: Union[TransactionKind, str],
        amount: int,
        *,
        payment_method: Optional[Union[PaymentMethod, str]] = None,
        paid_amount: Optional[int] = None,
        applied_to_debt: bool = True,
        linked_transaction_id: Optional[UUID] = None,
        date: Optional[datetime] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransactionResult:
        kind = TransactionKind(kind)
        payment_method = PaymentMethod(payment_method) if payment_method is not None else None
        require_amount(amount)

        if kind == TransactionKind.PAYMENT:
            payment = self.handle_payment_allocation(
                customer_id, amount, applied_to_debt,
                payment_method=payment_method or PaymentMethod.CASH,
                description=description,
                date=date,
                idempotency_key=idempotency_key,
                linked_transaction_id=linked_transaction_id,
            )
            return TransactionResult(
                transaction=self._load_transaction(payment.transaction_id),
                balance=self._balance_snapshot(customer_id),
                payment=payment,
                message=payment.message,
            )

        with self.repository.transaction():
            if idempotency_key:
                existing = self._find_duplicate(idempotency_key, customer_id, amount, kind)
                if existing:
                    return TransactionResult(
                        transaction=existing,
                        balance=self._balance_snapshot(customer_id),
                        message="Transaction already recorded (idempotent return)",
                    )

            customer = self._load_customer(customer_id)
            if linked_transaction_id is not None:
                self._load_transaction(linked_transaction_id)
            if kind == TransactionKind.REFUND:
                self._check_refund_limit(customer.id, amount)

            initial = calculate_initial_amounts(kind, payment_method, amount, paid_amount)
            now = self.repository.next_timestamp()
            date = self._transaction_date(customer.id, date, now)
            transaction = Transaction(
                id=uuid4(),
                customer_id=customer.id,
                kind=kind,
                payment_method=initial.payment_method,
                amount=amount,
                paid_amount=initial.paid_amount,
                remaining_amount=initial.remaining_amount,
                status=calculate_status(kind, amount, initial.paid_amount, initial.remaining_amount),
                linked_transaction_id=linked_transaction_id,
                date=date,
                description=description,
                idempotency_key=idempotency_key,
                created_at=now,
            )
            self.repository.create_transaction(transaction)

            if kind == TransactionKind.REFUND:
                message = self._apply_refund(customer, transaction)
            else:
                message = self._apply_new_debt(customer, transaction)

            balance = self._balance_snapshot(customer.id)

        logger.info(
            "Recorded %s %s of %d for customer %s",
            kind.value, transaction.id, amount, customer_id,
        )
        return TransactionResult(transaction=transaction, balance=balance, message=message)

    def _apply_new_debt(self, customer: Customer, transaction: Transaction) -> str:
        impact = calculate_debt_impact(
            transaction.kind, transaction.payment_method, transaction.remaining_amount
        )
        if not impact.is_increase:
            return "Sale settled in full"

        self.repository.update_customer_balances(
            customer.id,
            customer.outstanding_balance + impact.change,
            customer.credit_balance,
        )
        self.audit.record(
            customer.id,
            AuditEventType.DEBT_CREATED,
            impact.change,
            DebtCreatedPayload(
                operation="record_transaction",
                debt_id=transaction.id,
                initial_paid=transaction.paid_amount,
                initial_remaining=transaction.remaining_amount,
            ),
            source_transaction_id=transaction.id,
        )
        return f"Debt of {impact.change} recorded"

    def _apply_refund(self, customer: Customer, transaction: Transaction) -> str:
        split = allocate_overpayment(transaction.amount, customer.outstanding_balance)
        allocations = self._settle_open_debts(
            customer.id, split.debt_cleared, first=transaction.linked_transaction_id
        )
        self.repository.update_customer_balances(
            customer.id,
            customer.outstanding_balance - split.debt_cleared,
            customer.credit_balance + split.credit_created,
        )
        self.audit.record(
            customer.id,
            AuditEventType.REFUND,
            transaction.amount,
            RefundPayload(
                operation="record_transaction",
                debt_reduced=split.debt_cleared,
                credit_created=split.credit_created,
                debt_id=transaction.linked_transaction_id,
                allocations=allocations,
            ),
            source_transaction_id=transaction.id,
        )
        return "Refund recorded"

    # Payments and credit

    def handle_payment_allocation(
        self,
        customer_id: UUID,
        amount: int,
        use_for_debt: bool = True,
        *,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        description: Optional[str] = None,
        date: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        linked_transaction_id: Optional[UUID] = None,
    ) -> PaymentAllocationResult:
        require_amount(amount)
        payment_method = PaymentMethod(payment_method)

        with self.repository.transaction():
            if idempotency_key:
                existing = self._find_duplicate(idempotency_key, customer_id, amount, TransactionKind.PAYMENT)
                if existing:
                    return self._replayed_payment(existing)

            customer = self._load_customer(customer_id)
            if linked_transaction_id is not None:
                self._load_transaction(linked_transaction_id)

            result = self._allocate_payment(
                customer,
                amount,
                use_for_debt,
                payment_method=payment_method,
                description=description,
                date=date,
                idempotency_key=idempotency_key,
                linked_transaction_id=linked_transaction_id,
                operation="handle_payment_allocation",
            )

        logger.info(
            "Payment %s for customer %s: debt_reduced=%d credit_created=%d",
            result.transaction_id, customer_id, result.debt_reduced, result.credit_created,
        )
        return result

    def process_mixed_payment(
        self,
        customer_id: UUID,
        total_amount: int,
        cash_amount: int,
        credit_amount: int,
        description: Optional[str] = None,
        *,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
    ) -> MixedPaymentResult:
        require_amount(total_amount, "total_amount")
        validation = validate_mixed_payment(total_amount, cash_amount, credit_amount)
        if not validation.is_valid:
            raise ValidationError(validation.error)
        require_non_negative(cash_amount, "cash_amount")
        require_non_negative(credit_amount, "credit_amount")
        payment_method = PaymentMethod(payment_method)

        with self.repository.transaction():
            customer = self._load_customer(customer_id)
            credit_used = min(credit_amount, customer.credit_balance)
            debt_from_credit = 0
            if credit_used:
                # The credit share settles open debt first, like the cash share.
                debt_from_credit = min(credit_used, customer.outstanding_balance)
                allocations = self._settle_open_debts(customer.id, debt_from_credit)
                self.repository.update_customer_balances(
                    customer.id,
                    customer.outstanding_balance - debt_from_credit,
                    customer.credit_balance - credit_used,
                )
                self.audit.record(
                    customer.id,
                    AuditEventType.CREDIT_USED,
                    credit_used,
                    CreditUsedPayload(
                        operation="process_mixed_payment",
                        requested=credit_amount,
                        description=description,
                        debt_reduced=debt_from_credit,
                        allocations=allocations,
                    ),
                )

            payment = None
            if cash_amount > 0:
                payment = self._allocate_payment(
                    self._load_customer(customer_id),
                    cash_amount,
                    True,
                    payment_method=payment_method,
                    description=description,
                    operation="process_mixed_payment",
                )

        shortfall = credit_amount - credit_used
        if shortfall:
            message = f"Mixed payment processed; credit short by {shortfall}"
        else:
            message = "Mixed payment processed"
        logger.info(
            "Mixed payment for customer %s: cash=%d credit_used=%d shortfall=%d",
            customer_id, cash_amount, credit_used, shortfall,
        )
        return MixedPaymentResult(
            customer_id=customer_id,
            total_amount=total_amount,
            cash_processed=cash_amount,
            credit_used=credit_used,
            credit_shortfall=shortfall,
            debt_reduced=debt_from_credit + (payment.debt_reduced if payment else 0),
            credit_created=payment.credit_created if payment else 0,
            transaction_id=payment.transaction_id if payment else None,
            message=message,
        )

    def use_credit(
        self, customer_id: UUID, amount: int, *, description: Optional[str] = None
    ) -> CreditUsageResult:
        require_amount(amount)

        with self.repository.transaction():
            customer = self._load_customer(customer_id)
            used = min(amount, customer.credit_balance)
            if used:
                self.repository.update_customer_balances(
                    customer.id,
                    customer.outstanding_balance,
                    customer.credit_balance - used,
                )
                self.audit.record(
                    customer.id,
                    AuditEventType.CREDIT_USED,
                    used,
                    CreditUsedPayload(operation="use_credit", requested=amount, description=description),
                )

        shortfall = amount - used
        logger.info("Customer %s used %d credit (requested %d)", customer_id, used, amount)
        return CreditUsageResult(
            customer_id=customer_id,
            requested=amount,
            used=used,
            remaining=customer.credit_balance - used,
            shortfall=shortfall,
            message="Credit used" if not shortfall else f"Credit insufficient; {shortfall} must be paid another way",
        )

    def apply_credit_to_sale(
        self, customer_id: UUID, sale_amount: int, sale_transaction_id: UUID
    ) -> CreditApplicationResult:
        require_amount(sale_amount, "sale_amount")

        with self.repository.transaction():
            customer = self._load_customer(customer_id)
            sale = self._load_transaction(sale_transaction_id)
            if sale.customer_id != customer.id:
                raise ValidationError(
                    f"Transaction {sale.id} does not belong to customer {customer.id}"
                )
            if not sale.is_debt:
                raise ValidationError(f"Credit can only be applied to a sale or credit, not a {sale.kind.value}")
            if not sale.can_cancel():
                raise InvalidStateTransitionError(f"Transaction {sale.id} is cancelled")

            to_use = min(customer.credit_balance, sale_amount, sale.remaining_amount)
            status = sale.status
            if to_use:
                paid = sale.paid_amount + to_use
                remaining = sale.remaining_amount - to_use
                status = calculate_status(sale.kind, sale.amount, paid, remaining)
                self.repository.update_transaction(
                    sale.id, {"paid_amount": paid, "remaining_amount": remaining, "status": status}
                )
                self.repository.update_customer_balances(
                    customer.id,
                    customer.outstanding_balance - min(to_use, customer.outstanding_balance),
                    customer.credit_balance - to_use,
                )
                self.audit.record(
                    customer.id,
                    AuditEventType.CREDIT_APPLIED_TO_SALE,
                    to_use,
                    CreditAppliedPayload(
                        operation="apply_credit_to_sale",
                        debt_id=sale.id,
                        original_sale_amount=sale_amount,
                        previous_remaining=sale.remaining_amount,
                    ),
                    source_transaction_id=sale.id,
                )

        logger.info("Applied %d credit to sale %s for customer %s", to_use, sale.id, customer_id)
        return CreditApplicationResult(
            customer_id=customer_id,
            transaction_id=sale.id,
            credit_used=to_use,
            remaining_amount=sale_amount - to_use,
            transaction_status=status,
            message="Credit applied to sale" if to_use else "No credit available to apply",
        )

    # Cancellation

    def cancel_transaction(self, transaction_id: UUID, reason: str = "Cancelled by user") -> CancellationResult:
        with self.repository.transaction():
            transaction = self._load_transaction(transaction_id)
            if not transaction.can_cancel():
                raise InvalidStateTransitionError(f"Transaction {transaction_id} is already cancelled")

            customer = self._load_customer(transaction.customer_id)
            if transaction.is_debt:
                debt_change, credit_change = self._reverse_debt(customer, transaction)
            elif transaction.kind == TransactionKind.PAYMENT:
                debt_change, credit_change = self._reverse_payment(customer, transaction)
            else:
                debt_change, credit_change = self._reverse_refund(customer, transaction)

            self.repository.update_customer_balances(
                customer.id,
                customer.outstanding_balance + debt_change,
                customer.credit_balance + credit_change,
            )
            self.repository.update_transaction(
                transaction.id, {"is_deleted": True, "status": TransactionStatus.CANCELLED}
            )
            self.audit.record(
                customer.id,
                AuditEventType.STATUS_CHANGE,
                abs(debt_change),
                StatusChangePayload(
                    operation="cancel_transaction",
                    debt_id=transaction.id,
                    old_status=transaction.status,
                    new_status=TransactionStatus.CANCELLED,
                    reason=reason,
                    debt_change=debt_change,
                    credit_change=credit_change,
                ),
                source_transaction_id=transaction.id,
            )

        logger.info(
            "Cancelled %s %s: debt_change=%d credit_change=%d (%s)",
            transaction.kind.value, transaction_id, debt_change, credit_change, reason,
        )
        return CancellationResult(
            transaction_id=transaction_id,
            previous_status=transaction.status,
            debt_change=debt_change,
            credit_change=credit_change,
            message="Transaction cancelled",
        )

    def _reverse_debt(self, customer: Customer, transaction: Transaction) -> tuple[int, int]:
        # Only the part still owed leaves the debt; whatever was settled
        # against it after it was recorded goes back to the customer as credit.
        debt_removed = min(transaction.remaining_amount, customer.outstanding_balance)
        settled = max(0, self.audit.initial_debt(transaction) - transaction.remaining_amount)
        return -debt_removed, settled

    def _reverse_payment(self, customer: Customer, transaction: Transaction) -> tuple[int, int]:
        debt_reduced, credit_created, allocations = self.audit.payment_split(transaction.id)
        if not debt_reduced and not credit_created:
            if transaction.applied_to_debt:
                debt_reduced = transaction.amount
            else:
                credit_created = transaction.amount

        returned = self._restore_allocations(allocations)
        withdrawn = self._withdraw_credit(customer, transaction, credit_created + returned)
        return debt_reduced - returned, -withdrawn

    def _reverse_refund(self, customer: Customer, transaction: Transaction) -> tuple[int, int]:
        debt_reduced, credit_created, allocations = transaction.amount, 0, []
        for entry in self.audit.for_transaction(transaction.id):
            if entry.type == AuditEventType.REFUND:
                debt_reduced = entry.metadata.debt_reduced
                credit_created = entry.metadata.credit_created
                allocations = entry.metadata.allocations

        returned = self._restore_allocations(allocations)
        withdrawn = self._withdraw_credit(customer, transaction, credit_created + returned)
        return debt_reduced - returned, -withdrawn

    def _restore_allocations(self, allocations: list[DebtAllocation]) -> int:
        # Allocations to a cancelled debt were handed back as credit when it was
        # cancelled; they are returned here so the caller withdraws that credit.
        returned = 0
        for allocation in allocations:
            debt = self.repository.find_transaction_by_id(allocation.debt_id)
            if debt is None or debt.is_deleted:
                returned += allocation.amount
                continue
            restored = min(allocation.amount, debt.paid_amount)
            paid = debt.paid_amount - restored
            remaining = debt.remaining_amount + restored
            self.repository.update_transaction(debt.id, {
                "paid_amount": paid,
                "remaining_amount": remaining,
                "status": calculate_status(debt.kind, debt.amount, paid, remaining),
            })
        return returned

    def _withdraw_credit(self, customer: Customer, transaction: Transaction, amount: int) -> int:
        withdrawn = min(amount, customer.credit_balance)
        if withdrawn < amount:
            logger.warning(
                "%s %s: %d of its credit was already spent and cannot be withdrawn",
                transaction.kind.value.capitalize(), transaction.id, amount - withdrawn,
            )
        return withdrawn

    # Helpers

    def _allocate_payment(
        self,
        customer: Customer,
        amount: int,
        use_for_debt: bool,
        *,
        payment_method: PaymentMethod,
        operation: str,
        description: Optional[str] = None,
        date: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        linked_transaction_id: Optional[UUID] = None,
    ) -> PaymentAllocationResult:
        initial = calculate_initial_amounts(TransactionKind.PAYMENT, payment_method, amount)
        now = self.repository.next_timestamp()
        date = self._transaction_date(customer.id, date, now)
        payment = Transaction(
            id=uuid4(),
            customer_id=customer.id,
            kind=TransactionKind.PAYMENT,
            payment_method=initial.payment_method,
            amount=amount,
            paid_amount=initial.paid_amount,
            remaining_amount=initial.remaining_amount,
            applied_to_debt=use_for_debt,
            status=TransactionStatus.COMPLETED,
            linked_transaction_id=linked_transaction_id,
            date=date,
            description=description,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        self.repository.create_transaction(payment)

        if use_for_debt:
            split = allocate_overpayment(amount, customer.outstanding_balance)
        else:
            split = OverpaymentSplit(debt_cleared=0, credit_created=amount)

        allocations = self._settle_open_debts(customer.id, split.debt_cleared, first=linked_transaction_id)
        if allocations and linked_transaction_id is None:
            self.repository.update_transaction(payment.id, {"linked_transaction_id": allocations[0].debt_id})

        self.repository.update_customer_balances(
            customer.id,
            customer.outstanding_balance - split.debt_cleared,
            customer.credit_balance + split.credit_created,
        )

        if split.debt_cleared:
            self.audit.record(
                customer.id,
                AuditEventType.PAYMENT,
                split.debt_cleared,
                PaymentPayload(operation=operation, allocations=allocations),
                source_transaction_id=payment.id,
            )
        if split.credit_created:
            self.audit.record(
                customer.id,
                AuditEventType.OVERPAYMENT,
                split.credit_created,
                OverpaymentPayload(
                    operation=operation,
                    reason="excess_payment" if use_for_debt else "prepayment",
                ),
                source_transaction_id=payment.id,
            )

        if not use_for_debt:
            message = "Payment saved as credit"
        elif not split.debt_cleared:
            message = "Payment converted to credit (no existing debt)"
        elif split.credit_created:
            message = "Debt fully paid; excess converted to credit"
        elif split.debt_cleared == customer.outstanding_balance:
            message = "Debt fully paid"
        else:
            message = "Partial debt payment"

        return PaymentAllocationResult(
            customer_id=customer.id,
            transaction_id=payment.id,
            amount=amount,
            debt_reduced=split.debt_cleared,
            credit_created=split.credit_created,
            allocations=allocations,
            message=message,
        )

    def _settle_open_debts(
        self, customer_id: UUID, amount: int, first: Optional[UUID] = None
    ) -> list[DebtAllocation]:
        if amount <= 0:
            return []

        debts = [
            t for t in self.repository.find_transactions_by_customer(customer_id)
            if t.is_debt and t.remaining_amount > 0
        ]
        if first is not None:
            debts.sort(key=lambda t: t.id != first)

        allocations = []
        left = amount
        for debt in debts:
            if left <= 0:
                break
            take = min(left, debt.remaining_amount)
            paid = debt.paid_amount + take
            remaining = debt.remaining_amount - take
            status = calculate_status(debt.kind, debt.amount, paid, remaining)
            self.repository.update_transaction(
                debt.id, {"paid_amount": paid, "remaining_amount": remaining, "status": status}
            )
            allocations.append(DebtAllocation(
                debt_id=debt.id, amount=take, old_status=debt.status, new_status=status,
            ))
            left -= take

        if left:
            logger.warning(
                "Customer %s: %d of a debt reduction matched no open transaction",
                customer_id, left,
            )
        return allocations

    def _transaction_date(self, customer_id: UUID, date: Optional[datetime], now: datetime) -> datetime:
        if date is None:
            return now
        date = as_utc(date)
        if date > now:
            raise ValidationError("Transaction date cannot be in the future")

        # Replay applies history in date order; a new row may not land before recorded activity.
        seen = [t.date for t in self.repository.find_transactions_by_customer(customer_id)]
        seen += [
            e.created_at for e in self.repository.find_audit_entries(customer_id=customer_id)
            if e.type in (AuditEventType.CREDIT_USED, AuditEventType.CREDIT_APPLIED_TO_SALE)
        ]
        if seen and date < max(seen):
            raise ValidationError(
                f"Transaction date {date.isoformat()} is earlier than the customer's latest activity"
            )
        return date

    def _check_refund_limit(self, customer_id: UUID, amount: int) -> None:
        purchases = sum(
            t.amount for t in self.repository.find_transactions_by_customer(customer_id)
            if t.kind == TransactionKind.SALE
        )
        if amount > purchases:
            raise ValidationError(
                f"Refund amount {amount} cannot exceed customer's total purchases {purchases}"
            )

    def _find_duplicate(
        self, idempotency_key: str, customer_id: UUID, amount: int, kind: TransactionKind
    ) -> Optional[Transaction]:
        existing = self.repository.find_transaction_by_idempotency_key(idempotency_key)
        if existing is None:
            return None
        if existing.customer_id != customer_id or existing.amount != amount or existing.kind != kind:
            raise IdempotencyConflictError(
                f"Idempotency key '{idempotency_key}' was already used for a different transaction"
            )
        return existing

    def _replayed_payment(self, payment: Transaction) -> PaymentAllocationResult:
        debt_reduced, credit_created, allocations = self.audit.payment_split(payment.id)
        return PaymentAllocationResult(
            customer_id=payment.customer_id,
            transaction_id=payment.id,
            amount=payment.amount,
            debt_reduced=debt_reduced,
            credit_created=credit_created,
            allocations=allocations,
            duplicate=True,
            message="Payment already recorded (idempotent return)",
        )

    def _load_customer(self, customer_id: UUID) -> Customer:
        customer = self.repository.find_customer_by_id(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {customer_id} not found")
        return customer

    def _load_transaction(self, transaction_id: UUID) -> Transaction:
        transaction = self.repository.find_transaction_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _balance_snapshot(self, customer_id: UUID) -> BalanceSnapshot:
        customer = self._load_customer(customer_id)
        return BalanceSnapshot(
            outstanding_balance=customer.outstanding_balance,
            credit_balance=customer.credit_balance,
        )
