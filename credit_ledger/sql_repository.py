import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import NullPool

from .errors import CustomerNotFoundError, PersistenceError, TransactionNotFoundError
from .models import (
    AuditEntry,
    AuditEventType,
    Customer,
    PaymentMethod,
    Transaction,
    TransactionKind,
    TransactionStatus,
    encode_payload,
)
from .money import require_non_negative
from .repository import (
    LedgerRepository,
    apply_transaction_patch,
    as_utc,
    audit_entry_from_record,
    customer_from_record,
)


class UTCDateTime(TypeDecorator):
    # Stored naive in UTC, returned timezone-aware.
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class CustomerRecord(Base):
    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    outstanding_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class TransactionRecord(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    kind: Mapped[TransactionKind] = mapped_column(Enum(TransactionKind, native_enum=False), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod, native_enum=False), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_to_debt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False), nullable=False
    )
    linked_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AuditEntryRecord(Base):
    __tablename__ = "audit_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    source_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    type: Mapped[AuditEventType] = mapped_column(Enum(AuditEventType, native_enum=False), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    # "metadata" is reserved on declarative classes
    payload: Mapped[dict] = mapped_column("metadata", JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


def create_ledger_engine(database_url: str, timeout_seconds: float = 30.0) -> Engine:
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred one.
        dbapi_connection.isolation_level = None

    # Writer lock up front; the busy timeout is the wait on a locked file.
    @event.listens_for(engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class SqlLedgerRepository(LedgerRepository):
    def __init__(
        self,
        database_url: str = "sqlite:///./ledger.db",
        timeout_seconds: float = 30.0,
        engine: Optional[Engine] = None,
    ):
        super().__init__()
        self.engine = engine or create_ledger_engine(database_url, timeout_seconds)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=True, expire_on_commit=False)
        self._local = threading.local()
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not initialise ledger database: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator["SqlLedgerRepository"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        session = self.session_factory()
        self._local.session = session
        try:
            yield self
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Ledger storage failure: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
            self._local.session = None

    @property
    def _session(self) -> Session:
        return self._local.session

    def dispose(self) -> None:
        self.engine.dispose()

    # Customers

    def create_customer(self, customer: Customer) -> Customer:
        with self.transaction():
            self._session.add(CustomerRecord(**customer.model_dump()))
            self._session.flush()
        return customer

    def find_customer_by_id(self, customer_id: UUID) -> Optional[Customer]:
        with self.transaction():
            record = self._session.get(CustomerRecord, customer_id)
            if record is None:
                return None
            return customer_from_record({
                "id": record.id,
                "name": record.name,
                "phone": record.phone,
                "outstanding_balance": record.outstanding_balance,
                "credit_balance": record.credit_balance,
                "created_at": record.created_at,
            })

    def list_customer_ids(self) -> list[UUID]:
        with self.transaction():
            return list(self._session.scalars(select(CustomerRecord.id).order_by(CustomerRecord.created_at)))

    def update_customer_balances(self, customer_id: UUID, outstanding: int, credit: int) -> None:
        require_non_negative(outstanding, "outstanding_balance")
        require_non_negative(credit, "credit_balance")
        with self.transaction():
            record = self._session.get(CustomerRecord, customer_id)
            if record is None:
                raise CustomerNotFoundError(f"Customer {customer_id} not found")
            record.outstanding_balance = outstanding
            record.credit_balance = credit
            self._session.flush()

    # Transactions

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self.transaction():
            self._session.add(TransactionRecord(**transaction.model_dump()))
            self._session.flush()
        return transaction

    def find_transaction_by_id(self, transaction_id: UUID) -> Optional[Transaction]:
        with self.transaction():
            record = self._session.get(TransactionRecord, transaction_id)
            return Transaction.model_validate(record) if record else None

    def find_transaction_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        with self.transaction():
            record = self._session.scalars(
                select(TransactionRecord).where(TransactionRecord.idempotency_key == idempotency_key)
            ).first()
            return Transaction.model_validate(record) if record else None

    def update_transaction(self, transaction_id: UUID, patch: dict) -> Transaction:
        with self.transaction():
            record = self._session.get(TransactionRecord, transaction_id)
            if record is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            updated = apply_transaction_patch(Transaction.model_validate(record), patch)
            for field in patch:
                setattr(record, field, getattr(updated, field))
            self._session.flush()
            return updated

    def find_transactions_by_customer(
        self, customer_id: UUID, include_deleted: bool = False
    ) -> list[Transaction]:
        query = select(TransactionRecord).where(TransactionRecord.customer_id == customer_id)
        return self._find_transactions(query, include_deleted)

    def find_all_transactions(self, include_deleted: bool = False) -> list[Transaction]:
        return self._find_transactions(select(TransactionRecord), include_deleted)

    def _find_transactions(self, query, include_deleted: bool) -> list[Transaction]:
        if not include_deleted:
            query = query.where(TransactionRecord.is_deleted.is_(False))
        query = query.order_by(TransactionRecord.date, TransactionRecord.created_at)
        with self.transaction():
            return [Transaction.model_validate(r) for r in self._session.scalars(query)]

    # Audit

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self.transaction():
            self._session.add(AuditEntryRecord(
                id=entry.id,
                customer_id=entry.customer_id,
                source_transaction_id=entry.source_transaction_id,
                type=entry.type,
                amount=entry.amount,
                payload=encode_payload(entry.metadata),
                created_at=entry.created_at,
            ))
            self._session.flush()
        return entry

    def find_audit_entries(
        self,
        customer_id: Optional[UUID] = None,
        source_transaction_id: Optional[UUID] = None,
    ) -> list[AuditEntry]:
        query = select(AuditEntryRecord)
        if customer_id is not None:
            query = query.where(AuditEntryRecord.customer_id == customer_id)
        if source_transaction_id is not None:
            query = query.where(AuditEntryRecord.source_transaction_id == source_transaction_id)
        query = query.order_by(AuditEntryRecord.created_at)

        with self.transaction():
            return [
                audit_entry_from_record({
                    "id": r.id,
                    "customer_id": r.customer_id,
                    "source_transaction_id": r.source_transaction_id,
                    "type": r.type,
                    "amount": r.amount,
                    "metadata": r.payload,
                    "created_at": r.created_at,
                })
                for r in self._session.scalars(query)
            ]

    def delete_audit_entries(self, entry_ids: Iterable[UUID]) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        with self.transaction():
            result = self._session.execute(delete(AuditEntryRecord).where(AuditEntryRecord.id.in_(ids)))
            return result.rowcount
