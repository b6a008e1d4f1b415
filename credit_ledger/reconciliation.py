import logging
from typing import Optional
from uuid import UUID

from .audit import AuditLog
from .calculator import allocate_overpayment, calculate_debt_impact, calculate_status
from .errors import (
    CorruptStateError,
    InvalidStateTransitionError,
    LedgerServiceError,
    TransactionNotFoundError,
    ValidationError,
)
from .models import (
    AuditEntry,
    AuditEventType,
    BalanceCorrectionPayload,
    BalanceSnapshot,
    CustomerReconciliation,
    Discrepancy,
    IntegrityReport,
    LinkAnalysis,
    LinkRepairReport,
    OrphanedLink,
    PaymentPayload,
    ReconciliationFailure,
    ReconciliationReport,
    StatusChangePayload,
    Transaction,
    TransactionKind,
    TransactionRepair,
    TransactionStatus,
)
from .repository import LedgerRepository, ledger_order

logger = logging.getLogger(__name__)

_REPLAYED_AUDIT_TYPES = (AuditEventType.CREDIT_USED, AuditEventType.CREDIT_APPLIED_TO_SALE)
_PAYMENT_AUDIT_TYPES = (AuditEventType.PAYMENT, AuditEventType.OVERPAYMENT)


class ReconciliationEngine:
    def __init__(self, repository: LedgerRepository):
        self.repository = repository
        self.audit = AuditLog(repository)

    def recompute_customer_balance(self, customer_id: UUID) -> BalanceSnapshot:
        """Replay a customer's history from zero.

        Live transactions are applied in ``(date, created_at)`` order,
        interleaved with the credit consumption recorded in the audit log
        (``credit_used`` and ``credit_applied_to_sale`` against a live sale).
        Running debt never goes below zero; whatever a payment or refund
        carries past it becomes credit, as does any share it settled on a
        debt that has since been cancelled.
        """
        transactions = self.repository.find_transactions_by_customer(customer_id)
        entries = self.repository.find_audit_entries(customer_id=customer_id)
        live_ids = {t.id for t in transactions}

        by_source: dict[UUID, list[AuditEntry]] = {}
        for entry in entries:
            if entry.source_transaction_id is not None:
                by_source.setdefault(entry.source_transaction_id, []).append(entry)

        events = [(ledger_order(t), i, t) for i, t in enumerate(transactions)]
        offset = len(events)
        for i, entry in enumerate(entries):
            if entry.type not in _REPLAYED_AUDIT_TYPES:
                continue
            if entry.type == AuditEventType.CREDIT_APPLIED_TO_SALE and entry.metadata.debt_id not in live_ids:
                continue
            events.append(((entry.created_at, entry.created_at), offset + i, entry))
        events.sort(key=lambda e: (e[0], e[1]))

        debt = credit = 0
        for _, _, event in events:
            if isinstance(event, Transaction):
                debt, credit = self._apply_transaction(
                    event, debt, credit, by_source.get(event.id, []), live_ids
                )
            elif event.type == AuditEventType.CREDIT_USED:
                # Credit that settled a since-cancelled sale was handed back on cancel.
                returned = sum(a.amount for a in event.metadata.allocations if a.debt_id not in live_ids)
                credit = max(0, credit - (event.amount - returned))
                debt -= min(event.metadata.debt_reduced - returned, debt)
            else:
                credit = max(0, credit - event.amount)
                debt -= min(event.amount, debt)

        return BalanceSnapshot(outstanding_balance=debt, credit_balance=credit)

    def _apply_transaction(
        self, transaction: Transaction, debt: int, credit: int, entries: list[AuditEntry], live_ids: set
    ) -> tuple[int, int]:
        if transaction.is_debt:
            impact = calculate_debt_impact(
                transaction.kind,
                transaction.payment_method,
                self.audit.initial_debt(transaction, entries),
            )
            return debt + impact.change, credit

        if transaction.kind == TransactionKind.PAYMENT and not transaction.applied_to_debt:
            return debt, credit + transaction.amount

        impact = calculate_debt_impact(
            transaction.kind, transaction.payment_method, transaction.amount, transaction.applied_to_debt
        )
        # Cancelling a debt handed its settled part back as credit.
        returned = self.audit.returned_to_credit(entries, live_ids)
        split = allocate_overpayment(impact.change - returned, debt)
        return debt - split.debt_cleared, credit + split.credit_created + returned

    def detect_discrepancies(self) -> list[Discrepancy]:
        discrepancies = []
        for customer_id in self.repository.list_customer_ids():
            try:
                computed = self.recompute_customer_balance(customer_id)
            except LedgerServiceError as e:
                logger.exception("Could not replay history for customer %s", customer_id)
                discrepancies.append(Discrepancy(customer_id=customer_id, corrupt=True, error=str(e)))
                continue

            try:
                customer = self.repository.find_customer_by_id(customer_id)
            except CorruptStateError as e:
                logger.warning("Customer %s: %s", customer_id, e)
                discrepancies.append(Discrepancy(
                    customer_id=customer_id, computed=computed, corrupt=True, error=str(e)
                ))
                continue

            stored = BalanceSnapshot(
                outstanding_balance=customer.outstanding_balance,
                credit_balance=customer.credit_balance,
            )
            if stored != computed:
                discrepancies.append(Discrepancy(
                    customer_id=customer_id,
                    stored=stored,
                    computed=computed,
                    difference=BalanceSnapshot(
                        outstanding_balance=computed.outstanding_balance - stored.outstanding_balance,
                        credit_balance=computed.credit_balance - stored.credit_balance,
                    ),
                ))
        return discrepancies

    def reconcile(self, target_version: Optional[int] = None) -> ReconciliationReport:
        customer_ids = self.repository.list_customer_ids()
        report = ReconciliationReport(target_version=target_version, customers_checked=len(customer_ids))

        for customer_id in customer_ids:
            try:
                result = self._reconcile_customer(customer_id, target_version)
            except LedgerServiceError as e:
                logger.exception("Reconciliation failed for customer %s", customer_id)
                report.failures.append(ReconciliationFailure(customer_id=customer_id, error=str(e)))
                continue
            if result.balance_updated or result.backfilled_entries:
                report.corrections.append(result)
                report.backfilled_entries += result.backfilled_entries

        logger.info(
            "Reconciliation checked %d customers: %d corrected, %d backfilled entries, %d failures",
            report.customers_checked, len(report.corrections), report.backfilled_entries, len(report.failures),
        )
        return report

    def _reconcile_customer(self, customer_id: UUID, target_version: Optional[int]) -> CustomerReconciliation:
        with self.repository.transaction():
            backfilled = self._backfill_legacy_payments(customer_id, target_version)
            computed = self.recompute_customer_balance(customer_id)
            try:
                customer = self.repository.find_customer_by_id(customer_id)
                previous = BalanceSnapshot(
                    outstanding_balance=customer.outstanding_balance,
                    credit_balance=customer.credit_balance,
                )
            except CorruptStateError as e:
                logger.warning("Repairing corrupt balances for customer %s: %s", customer_id, e)
                previous = None

            updated = previous != computed
            if updated:
                self.repository.update_customer_balances(
                    customer_id, computed.outstanding_balance, computed.credit_balance
                )
                if previous is None:
                    amount = computed.outstanding_balance + computed.credit_balance
                else:
                    amount = (abs(computed.outstanding_balance - previous.outstanding_balance)
                              + abs(computed.credit_balance - previous.credit_balance))
                self.audit.record(
                    customer_id,
                    AuditEventType.BALANCE_CORRECTION,
                    amount,
                    BalanceCorrectionPayload(
                        operation="reconcile",
                        previous_outstanding=previous.outstanding_balance if previous else None,
                        previous_credit=previous.credit_balance if previous else None,
                        new_outstanding=computed.outstanding_balance,
                        new_credit=computed.credit_balance,
                        target_version=target_version,
                    ),
                )
                logger.warning(
                    "Customer %s balances corrected: %s -> %s", customer_id, previous, computed
                )

        return CustomerReconciliation(
            customer_id=customer_id,
            previous=previous,
            corrected=computed,
            balance_updated=updated,
            backfilled_entries=backfilled,
        )

    def _backfill_legacy_payments(self, customer_id: UUID, target_version: Optional[int]) -> int:
        backfilled = 0
        for transaction in self.repository.find_transactions_by_customer(customer_id):
            if transaction.kind != TransactionKind.PAYMENT or not transaction.applied_to_debt:
                continue
            if any(e.type in _PAYMENT_AUDIT_TYPES for e in self.audit.for_transaction(transaction.id)):
                continue
            self.audit.record(
                customer_id,
                AuditEventType.PAYMENT,
                transaction.amount,
                PaymentPayload(operation="reconcile", legacy_allocation=True, target_version=target_version),
                source_transaction_id=transaction.id,
            )
            backfilled += 1
        if backfilled:
            logger.info("Backfilled %d legacy payment audit entries for customer %s", backfilled, customer_id)
        return backfilled

    # Links

    def _orphaned_links(self, transactions: list[Transaction]) -> list[OrphanedLink]:
        orphans = []
        for transaction in transactions:
            if transaction.linked_transaction_id is None:
                continue
            target = self.repository.find_transaction_by_id(transaction.linked_transaction_id)
            if target is None or target.is_deleted:
                orphans.append(OrphanedLink(
                    transaction_id=transaction.id,
                    linked_transaction_id=transaction.linked_transaction_id,
                ))
        return orphans

    def repair_orphaned_links(self) -> LinkRepairReport:
        transactions = self.repository.find_all_transactions()
        orphans = self._orphaned_links(transactions)
        for orphan in orphans:
            with self.repository.transaction():
                self.repository.update_transaction(orphan.transaction_id, {"linked_transaction_id": None})
            logger.warning(
                "Cleared orphaned link %s -> %s", orphan.transaction_id, orphan.linked_transaction_id
            )
        return LinkRepairReport(checked=len(transactions), cleared=orphans)

    def analyze_links(self) -> LinkAnalysis:
        transactions = self.repository.find_all_transactions()
        linked = [t for t in transactions if t.linked_transaction_id is not None]
        orphans = self._orphaned_links(linked)
        unlinked_payments = [
            t for t in transactions
            if t.kind == TransactionKind.PAYMENT and t.applied_to_debt and t.linked_transaction_id is None
        ]

        recommendations = []
        if not linked:
            recommendations.append("No transactions are linked; payments are not being matched to sales")
        else:
            recommendations.append(f"{len(linked)} transactions use linked_transaction_id")
        if orphans:
            recommendations.append(f"{len(orphans)} transactions have orphaned links; run repair_orphaned_links")
        if unlinked_payments:
            recommendations.append(f"{len(unlinked_payments)} debt payments are not linked to any sale")

        return LinkAnalysis(
            total_transactions=len(transactions),
            linked_transactions=len(linked),
            orphaned_links=len(orphans),
            unlinked_payments=len(unlinked_payments),
            recommendations=recommendations,
        )

    # Per-transaction integrity

    def _settlement(self, transaction: Transaction) -> tuple[int, int]:
        entries = self.repository.find_audit_entries(customer_id=transaction.customer_id)
        cancelled = {
            t.id for t in self.repository.find_transactions_by_customer(transaction.customer_id, include_deleted=True)
            if t.is_deleted
        }
        upfront = transaction.amount - self.audit.initial_debt(transaction, entries)
        return upfront, self.audit.settled_against(transaction.id, entries, cancelled)

    def verify_transaction_integrity(self, transaction_id: UUID) -> IntegrityReport:
        transaction = self._load_transaction(transaction_id)
        issues = []

        if transaction.is_deleted:
            if transaction.status != TransactionStatus.CANCELLED:
                issues.append(f"Deleted transaction has status '{transaction.status.value}'")
            return IntegrityReport(
                transaction_id=transaction.id,
                is_consistent=not issues,
                issues=issues,
                audit_settled=0,
                stored_settled=0,
            )

        if transaction.paid_amount + transaction.remaining_amount != transaction.amount:
            issues.append(
                f"paid_amount {transaction.paid_amount} + remaining_amount "
                f"{transaction.remaining_amount} != amount {transaction.amount}"
            )
        expected_status = calculate_status(
            transaction.kind, transaction.amount, transaction.paid_amount, transaction.remaining_amount
        )
        if transaction.status != expected_status:
            issues.append(f"Status is '{transaction.status.value}', expected '{expected_status.value}'")

        if transaction.is_debt:
            upfront, audit_settled = self._settlement(transaction)
            stored_settled = transaction.paid_amount - upfront
        else:
            debt_reduced, credit_created, _ = self.audit.payment_split(transaction.id)
            audit_settled = debt_reduced + credit_created
            stored_settled = transaction.amount if audit_settled else 0
        if audit_settled != stored_settled:
            issues.append(f"Audit trail settles {audit_settled}, transaction shows {stored_settled}")

        return IntegrityReport(
            transaction_id=transaction.id,
            is_consistent=not issues,
            issues=issues,
            audit_settled=audit_settled,
            stored_settled=stored_settled,
        )

    def repair_transaction_from_audit(self, transaction_id: UUID) -> TransactionRepair:
        with self.repository.transaction():
            transaction = self._load_transaction(transaction_id)
            if not transaction.can_cancel():
                raise InvalidStateTransitionError(f"Transaction {transaction_id} is cancelled")
            if not transaction.is_debt:
                raise ValidationError(f"Only sales and credits can be repaired, not a {transaction.kind.value}")

            upfront, settled = self._settlement(transaction)
            paid = min(transaction.amount, max(0, upfront + settled))
            remaining = transaction.amount - paid
            status = calculate_status(transaction.kind, transaction.amount, paid, remaining)
            updated = (paid, remaining, status) != (
                transaction.paid_amount, transaction.remaining_amount, transaction.status
            )
            if updated:
                self.repository.update_transaction(
                    transaction.id, {"paid_amount": paid, "remaining_amount": remaining, "status": status}
                )
                self.audit.record(
                    transaction.customer_id,
                    AuditEventType.STATUS_CHANGE,
                    abs(paid - transaction.paid_amount),
                    StatusChangePayload(
                        operation="repair_transaction_from_audit",
                        debt_id=transaction.id,
                        old_status=transaction.status,
                        new_status=status,
                        reason="Rebuilt from audit trail",
                    ),
                    source_transaction_id=transaction.id,
                )
                logger.warning(
                    "Repaired transaction %s from audit: paid %d -> %d",
                    transaction.id, transaction.paid_amount, paid,
                )

        return TransactionRepair(
            transaction_id=transaction.id,
            updated=updated,
            old_paid_amount=transaction.paid_amount,
            new_paid_amount=paid,
            old_remaining_amount=transaction.remaining_amount,
            new_remaining_amount=remaining,
            old_status=transaction.status,
            new_status=status,
        )

    def _load_transaction(self, transaction_id: UUID) -> Transaction:
        transaction = self.repository.find_transaction_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction
