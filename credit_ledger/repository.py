import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from .errors import CorruptStateError, CustomerNotFoundError, TransactionNotFoundError, ValidationError
from .models import AuditEntry, Customer, Transaction, encode_payload
from .money import require_balance, require_non_negative

PATCHABLE_FIELDS = frozenset({
    "paid_amount",
    "remaining_amount",
    "status",
    "linked_transaction_id",
    "is_deleted",
})


def customer_from_record(record: dict) -> Customer:
    require_balance(record.get("outstanding_balance"), "outstanding_balance", record.get("id"))
    require_balance(record.get("credit_balance"), "credit_balance", record.get("id"))
    return Customer(**record)


def audit_entry_from_record(record: dict) -> AuditEntry:
    try:
        return AuditEntry(**record)
    except PydanticValidationError as e:
        raise CorruptStateError(f"Audit entry {record.get('id')} cannot be decoded: {e}") from e


def apply_transaction_patch(transaction: Transaction, patch: dict) -> Transaction:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot patch transaction fields: {sorted(unknown)}")
    updated = Transaction(**{**transaction.model_dump(), **patch})
    if not updated.is_deleted and updated.paid_amount + updated.remaining_amount != updated.amount:
        raise ValidationError(
            f"Transaction {updated.id}: paid {updated.paid_amount} + remaining "
            f"{updated.remaining_amount} != amount {updated.amount}"
        )
    if updated.paid_amount < 0 or updated.remaining_amount < 0:
        raise ValidationError(f"Transaction {updated.id}: amounts cannot be negative")
    return updated


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC so every ledger timestamp compares.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ledger_order(transaction: Transaction) -> tuple:
    return (transaction.date, transaction.created_at)


class LedgerRepository(ABC):
    def __init__(self):
        self._clock_lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None

    def next_timestamp(self) -> datetime:
        # Strictly increasing so replay order matches write order.
        with self._clock_lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    @abstractmethod
    def transaction(self):
        ...

    @abstractmethod
    def create_customer(self, customer: Customer) -> Customer:
        ...

    @abstractmethod
    def find_customer_by_id(self, customer_id: UUID) -> Optional[Customer]:
        ...

    @abstractmethod
    def list_customer_ids(self) -> list[UUID]:
        ...

    @abstractmethod
    def update_customer_balances(self, customer_id: UUID, outstanding: int, credit: int) -> None:
        ...

    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> Transaction:
        ...

    @abstractmethod
    def find_transaction_by_id(self, transaction_id: UUID) -> Optional[Transaction]:
        ...

    @abstractmethod
    def find_transaction_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    def update_transaction(self, transaction_id: UUID, patch: dict) -> Transaction:
        ...

    @abstractmethod
    def find_transactions_by_customer(
        self, customer_id: UUID, include_deleted: bool = False
    ) -> list[Transaction]:
        ...

    @abstractmethod
    def find_all_transactions(self, include_deleted: bool = False) -> list[Transaction]:
        ...

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        ...

    @abstractmethod
    def find_audit_entries(
        self,
        customer_id: Optional[UUID] = None,
        source_transaction_id: Optional[UUID] = None,
    ) -> list[AuditEntry]:
        ...

    @abstractmethod
    def delete_audit_entries(self, entry_ids: Iterable[UUID]) -> int:
        ...


class InMemoryRepository(LedgerRepository):
    def __init__(self):
        super().__init__()
        self.customers: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.audit_entries: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRepository"]:
        with self._lock:
            snapshot = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def _snapshot(self) -> tuple:
        return copy.deepcopy((self.customers, self.transactions, self.audit_entries, self.idempotency_index))

    def _restore(self, snapshot: tuple) -> None:
        self.customers, self.transactions, self.audit_entries, self.idempotency_index = snapshot

    def create_customer(self, customer: Customer) -> Customer:
        with self._lock:
            self.customers[customer.id] = customer.model_dump()
        return customer

    def find_customer_by_id(self, customer_id: UUID) -> Optional[Customer]:
        with self._lock:
            record = self.customers.get(customer_id)
            return customer_from_record(record) if record else None

    def list_customer_ids(self) -> list[UUID]:
        with self._lock:
            return list(self.customers)

    def update_customer_balances(self, customer_id: UUID, outstanding: int, credit: int) -> None:
        require_non_negative(outstanding, "outstanding_balance")
        require_non_negative(credit, "credit_balance")
        with self._lock:
            record = self.customers.get(customer_id)
            if record is None:
                raise CustomerNotFoundError(f"Customer {customer_id} not found")
            record["outstanding_balance"] = outstanding
            record["credit_balance"] = credit

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self.transactions[transaction.id] = transaction.model_dump()
            if transaction.idempotency_key:
                self.idempotency_index[transaction.idempotency_key] = transaction.id
        return transaction

    def find_transaction_by_id(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._lock:
            record = self.transactions.get(transaction_id)
            return Transaction(**record) if record else None

    def find_transaction_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        with self._lock:
            transaction_id = self.idempotency_index.get(idempotency_key)
            return self.find_transaction_by_id(transaction_id) if transaction_id else None

    def update_transaction(self, transaction_id: UUID, patch: dict) -> Transaction:
        with self._lock:
            current = self.find_transaction_by_id(transaction_id)
            if current is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            updated = apply_transaction_patch(current, patch)
            self.transactions[transaction_id] = updated.model_dump()
            return updated

    def find_transactions_by_customer(
        self, customer_id: UUID, include_deleted: bool = False
    ) -> list[Transaction]:
        with self._lock:
            found = [
                Transaction(**t) for t in self.transactions.values()
                if t["customer_id"] == customer_id and (include_deleted or not t["is_deleted"])
            ]
        return sorted(found, key=ledger_order)

    def find_all_transactions(self, include_deleted: bool = False) -> list[Transaction]:
        with self._lock:
            found = [
                Transaction(**t) for t in self.transactions.values()
                if include_deleted or not t["is_deleted"]
            ]
        return sorted(found, key=ledger_order)

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        record = entry.model_dump(exclude={"metadata"})
        record["metadata"] = encode_payload(entry.metadata)
        with self._lock:
            self.audit_entries[entry.id] = record
        return entry

    def find_audit_entries(
        self,
        customer_id: Optional[UUID] = None,
        source_transaction_id: Optional[UUID] = None,
    ) -> list[AuditEntry]:
        with self._lock:
            found = [
                audit_entry_from_record(e) for e in self.audit_entries.values()
                if (customer_id is None or e["customer_id"] == customer_id)
                and (source_transaction_id is None or e["source_transaction_id"] == source_transaction_id)
            ]
        return sorted(found, key=lambda e: e.created_at)

    def delete_audit_entries(self, entry_ids: Iterable[UUID]) -> int:
        removed = 0
        with self._lock:
            for entry_id in entry_ids:
                if self.audit_entries.pop(entry_id, None) is not None:
                    removed += 1
        return removed
