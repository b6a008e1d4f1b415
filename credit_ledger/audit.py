import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID, uuid4

from .calculator import calculate_initial_amounts
from .models import (
    AuditEntry,
    AuditEventType,
    AuditSummary,
    AuditTypeTotal,
    CreditSummary,
    PaymentMethod,
    Transaction,
)
from .repository import LedgerRepository

logger = logging.getLogger(__name__)

CREDIT_EARNED_TYPES = (AuditEventType.OVERPAYMENT,)
CREDIT_SPENT_TYPES = (AuditEventType.CREDIT_USED, AuditEventType.CREDIT_APPLIED_TO_SALE)


class AuditLog:
    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def record(
        self,
        customer_id: UUID,
        event_type: AuditEventType,
        amount: int,
        payload,
        source_transaction_id: Optional[UUID] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=uuid4(),
            customer_id=customer_id,
            source_transaction_id=source_transaction_id,
            type=event_type,
            amount=amount,
            metadata=payload,
            created_at=self.repository.next_timestamp(),
        )
        return self.repository.append_audit_entry(entry)

    def history(
        self,
        customer_id: UUID,
        types: Optional[Iterable[AuditEventType]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[AuditEntry]:
        wanted = set(types) if types else None
        entries = [
            e for e in self.repository.find_audit_entries(customer_id=customer_id)
            if (wanted is None or e.type in wanted)
            and (date_from is None or e.created_at >= date_from)
            and (date_to is None or e.created_at <= date_to)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        end = offset + limit if limit is not None else None
        return entries[offset:end]

    def for_transaction(self, transaction_id: UUID) -> list[AuditEntry]:
        return self.repository.find_audit_entries(source_transaction_id=transaction_id)

    def summary(self, customer_id: UUID) -> AuditSummary:
        entries = self.repository.find_audit_entries(customer_id=customer_id)
        by_type: dict[str, AuditTypeTotal] = {}
        for entry in entries:
            totals = by_type.setdefault(entry.type.value, AuditTypeTotal())
            totals.count += 1
            totals.amount += entry.amount

        return AuditSummary(
            customer_id=customer_id,
            total_entries=len(entries),
            total_amount=sum(e.amount for e in entries),
            by_type=by_type,
            earliest=entries[0].created_at if entries else None,
            latest=entries[-1].created_at if entries else None,
        )

    def credit_summary(self, customer_id: UUID, current_balance: int) -> CreditSummary:
        entries = self.repository.find_audit_entries(customer_id=customer_id)
        return CreditSummary(
            customer_id=customer_id,
            current_balance=current_balance,
            total_earned=sum(e.amount for e in entries if e.type in CREDIT_EARNED_TYPES),
            total_used=sum(e.amount for e in entries if e.type in CREDIT_SPENT_TYPES),
            last_activity=entries[-1].created_at if entries else None,
        )

    def initial_debt(self, transaction: Transaction, entries: Optional[list[AuditEntry]] = None) -> int:
        """Debt the sale or credit created at the moment it was recorded.

        Later payments change ``remaining_amount`` on the row, so the value is
        read from the transaction's ``debt_created`` entry. Rows written
        before that entry existed fall back to the calculator's rules.
        """
        if entries is None:
            entries = self.for_transaction(transaction.id)
        for entry in entries:
            if entry.type == AuditEventType.DEBT_CREATED and entry.source_transaction_id == transaction.id:
                return entry.metadata.initial_remaining

        provided = transaction.paid_amount if transaction.payment_method == PaymentMethod.MIXED else None
        return calculate_initial_amounts(
            transaction.kind, transaction.payment_method, transaction.amount, provided
        ).remaining_amount

    def settled_against(
        self,
        transaction_id: UUID,
        entries: list[AuditEntry],
        cancelled_ids: Iterable[UUID] = (),
    ) -> int:
        cancelled = set(cancelled_ids)
        settled = 0
        for entry in entries:
            if entry.source_transaction_id in cancelled:
                continue
            if entry.type in (AuditEventType.PAYMENT, AuditEventType.CREDIT_USED, AuditEventType.REFUND):
                settled += sum(a.amount for a in entry.metadata.allocations if a.debt_id == transaction_id)
            elif entry.type == AuditEventType.CREDIT_APPLIED_TO_SALE and entry.metadata.debt_id == transaction_id:
                settled += entry.amount
        return settled

    def returned_to_credit(self, entries: list[AuditEntry], live_ids: Iterable[UUID]) -> int:
        # Payment and refund shares that settled a since-cancelled debt.
        live = set(live_ids)
        return sum(
            a.amount
            for entry in entries if entry.type in (AuditEventType.PAYMENT, AuditEventType.REFUND)
            for a in entry.metadata.allocations if a.debt_id not in live
        )

    def payment_split(self, payment_transaction_id: UUID) -> tuple[int, int, list]:
        debt_reduced = credit_created = 0
        allocations = []
        for entry in self.for_transaction(payment_transaction_id):
            if entry.type == AuditEventType.PAYMENT and not entry.metadata.legacy_allocation:
                debt_reduced += entry.amount
                allocations.extend(entry.metadata.allocations)
            elif entry.type == AuditEventType.OVERPAYMENT:
                credit_created += entry.amount
        return debt_reduced, credit_created, allocations

    def remove_legacy_backfill(self, target_version: Optional[int] = None) -> int:
        with self.repository.transaction():
            doomed = [
                e.id for e in self.repository.find_audit_entries()
                if e.type == AuditEventType.PAYMENT
                and e.metadata.legacy_allocation
                and (target_version is None or e.metadata.target_version == target_version)
            ]
            removed = self.repository.delete_audit_entries(doomed)
        logger.info("Removed %d legacy payment audit entries (version=%s)", removed, target_version)
        return removed
