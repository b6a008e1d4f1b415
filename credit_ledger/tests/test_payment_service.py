"""
Unit Tests for the Payment Allocation Service

Tests cover:
1. Payment allocation (debt first, excess to credit)
2. Mixed payments, credit usage and credit applied to sales
3. Cancellation and compensating entries
4. Idempotency keys
5. Atomicity and concurrent payments
6. Failure taxonomy
7. Caller dates and refund limits
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from credit_ledger.errors import (
    CorruptStateError,
    CustomerNotFoundError,
    IdempotencyConflictError,
    InvalidAmountError,
    InvalidStateTransitionError,
    PersistenceError,
    TransactionNotFoundError,
    ValidationError,
)
from credit_ledger.models import (
    AuditEventType,
    PaymentMethod,
    TransactionKind,
    TransactionStatus,
)
from credit_ledger.repository import InMemoryRepository
from credit_ledger.service import PaymentAllocationService


def new_customer(service, debt=0, credit=0):
    return service.create_customer("Ada Okafor", "08030000000", outstanding_balance=debt, credit_balance=credit)


def credit_sale(service, customer_id, amount, **kwargs):
    return service.record_transaction(
        customer_id, TransactionKind.SALE, amount, payment_method=PaymentMethod.CREDIT, **kwargs
    ).transaction


class FailingAuditRepository(InMemoryRepository):
    def __init__(self):
        super().__init__()
        self.fail_audit = False

    def append_audit_entry(self, entry):
        if self.fail_audit:
            raise PersistenceError("disk I/O error")
        return super().append_audit_entry(entry)


class TestPaymentAllocation:
    """Tests for handle_payment_allocation."""

    def test_overpayment_becomes_credit(self):
        """Debt 25000, payment 35000: 25000 clears debt, 10000 becomes credit."""
        service = PaymentAllocationService()
        customer = new_customer(service, debt=25000)

        result = service.handle_payment_allocation(customer.id, 35000, True)

        assert result.success
        assert result.debt_reduced == 25000
        assert result.credit_created == 10000
        assert "excess converted to credit" in result.message
        balance = service.get_balance(customer.id)
        assert balance.outstanding_balance == 0
        assert balance.credit_balance == 10000

    def test_payment_with_no_debt_is_all_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        result = service.handle_payment_allocation(customer.id, 50000, True)

        assert result.debt_reduced == 0
        assert result.credit_created == 50000
        assert "no existing debt" in result.message
        assert service.get_customer(customer.id).credit_balance == 50000

    def test_payment_not_for_debt_goes_to_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        result = service.handle_payment_allocation(customer.id, 400, use_for_debt=False)

        assert (result.debt_reduced, result.credit_created) == (0, 400)
        refreshed = service.get_customer(customer.id)
        assert refreshed.outstanding_balance == 1000
        assert refreshed.credit_balance == 400

    def test_partial_payment(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 10000)

        result = service.handle_payment_allocation(customer.id, 4000)

        assert (result.debt_reduced, result.credit_created) == (4000, 0)
        assert result.message == "Partial debt payment"
        updated = service.get_transaction(sale.id)
        assert (updated.paid_amount, updated.remaining_amount) == (4000, 6000)
        assert updated.status == TransactionStatus.PARTIAL

    @pytest.mark.parametrize("debt,amount", [(0, 1), (100, 100), (250, 100), (100, 250), (12567, 7534)])
    def test_split_sums_to_amount(self, debt, amount):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=debt)

        result = service.handle_payment_allocation(customer.id, amount, True)

        assert result.debt_reduced + result.credit_created == amount
        assert result.debt_reduced == min(amount, debt)

    def test_settles_oldest_debt_first(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        now = datetime.now(timezone.utc)
        older = credit_sale(service, customer.id, 1000, date=now - timedelta(days=3))
        newer = credit_sale(service, customer.id, 2000, date=now)

        result = service.handle_payment_allocation(customer.id, 1500)

        assert [a.debt_id for a in result.allocations] == [older.id, newer.id]
        assert [a.amount for a in result.allocations] == [1000, 500]
        assert service.get_transaction(older.id).status == TransactionStatus.COMPLETED
        assert service.get_transaction(newer.id).remaining_amount == 1500
        payment = service.get_transaction(result.transaction_id)
        assert payment.linked_transaction_id == older.id

    def test_linked_sale_is_settled_first(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        first = credit_sale(service, customer.id, 1000)
        second = credit_sale(service, customer.id, 1000)

        result = service.handle_payment_allocation(customer.id, 600, linked_transaction_id=second.id)

        assert result.allocations[0].debt_id == second.id
        assert service.get_transaction(second.id).remaining_amount == 400
        assert service.get_transaction(first.id).remaining_amount == 1000

    def test_writes_payment_and_overpayment_entries(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=25000)

        result = service.handle_payment_allocation(customer.id, 35000)

        entries = service.audit.for_transaction(result.transaction_id)
        assert [e.type for e in entries] == [AuditEventType.PAYMENT, AuditEventType.OVERPAYMENT]
        assert [e.amount for e in entries] == [25000, 10000]
        assert entries[0].metadata.operation == "handle_payment_allocation"
        assert entries[0].metadata.allocations[0].amount == 25000
        assert entries[1].metadata.reason == "excess_payment"

    @pytest.mark.parametrize("amount", [0, -100])
    def test_rejects_non_positive_amount(self, amount):
        service = PaymentAllocationService()
        customer = new_customer(service)

        with pytest.raises(InvalidAmountError):
            service.handle_payment_allocation(customer.id, amount)

    def test_rejects_fractional_amount(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        with pytest.raises(ValidationError):
            service.handle_payment_allocation(customer.id, 10.5)

    def test_unknown_customer(self):
        service = PaymentAllocationService()

        with pytest.raises(CustomerNotFoundError):
            service.handle_payment_allocation(uuid4(), 100)

    @pytest.mark.parametrize("bad_value", [None, -5, float("nan"), 12.5])
    def test_corrupt_stored_balance_is_surfaced(self, bad_value):
        repository = InMemoryRepository()
        service = PaymentAllocationService(repository)
        customer = new_customer(service, debt=1000)
        repository.customers[customer.id]["outstanding_balance"] = bad_value

        with pytest.raises(CorruptStateError):
            service.handle_payment_allocation(customer.id, 100)


class TestRecordTransaction:
    """Tests for the sale-creation flow."""

    def test_cash_sale_creates_no_debt(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        result = service.record_transaction(customer.id, TransactionKind.SALE, 5000, payment_method=PaymentMethod.CASH)

        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.balance.outstanding_balance == 0

    def test_mixed_sale_owes_the_unpaid_part(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        result = service.record_transaction(
            customer.id, TransactionKind.SALE, 12567, payment_method=PaymentMethod.MIXED, paid_amount=7534
        )

        tx = result.transaction
        assert (tx.paid_amount, tx.remaining_amount) == (7534, 5033)
        assert tx.status == TransactionStatus.PARTIAL
        assert result.balance.outstanding_balance == 5033
        entries = service.audit.for_transaction(tx.id)
        assert entries[0].type == AuditEventType.DEBT_CREATED
        assert entries[0].metadata.initial_remaining == 5033

    def test_refund_reduces_debt_then_credits(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        credit_sale(service, customer.id, 500)
        service.handle_payment_allocation(customer.id, 200)

        result = service.record_transaction(customer.id, TransactionKind.REFUND, 500)

        assert result.balance.outstanding_balance == 0
        assert result.balance.credit_balance == 200

    def test_payment_kind_delegates_to_allocation(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        result = service.record_transaction(customer.id, TransactionKind.PAYMENT, 1500)

        assert result.payment is not None
        assert result.payment.credit_created == 500
        assert result.transaction.applied_to_debt
        assert result.balance.credit_balance == 500

    def test_opening_balances_are_real_entries(self):
        service = PaymentAllocationService()

        customer = new_customer(service, debt=2000, credit=300)

        assert (customer.outstanding_balance, customer.credit_balance) == (2000, 300)
        kinds = [t.kind for t in service.repository.find_transactions_by_customer(customer.id)]
        assert kinds == [TransactionKind.CREDIT, TransactionKind.PAYMENT]

    def test_progress(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        service.handle_payment_allocation(customer.id, 250)

        progress = service.get_transaction_progress(sale.id)

        assert str(progress.percentage_paid) == "25.00"
        assert progress.status == TransactionStatus.PARTIAL
        assert len(progress.payment_history) == 1
        assert progress.last_payment_at == progress.payment_history[0].created_at


class TestMixedPaymentAndCredit:
    """Mixed payments, use_credit and apply_credit_to_sale."""

    def test_mixed_payment_scenario(self):
        """Sale 12567 settled with 7534 cash and 5033 credit."""
        service = PaymentAllocationService()
        customer = new_customer(service, credit=5033)
        sale = credit_sale(service, customer.id, 12567)

        result = service.process_mixed_payment(customer.id, 12567, 7534, 5033, "Rice and beans")

        assert result.success
        assert result.cash_processed == 7534
        assert result.credit_used == 5033
        assert result.credit_shortfall == 0
        assert result.debt_reduced == 12567
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (0, 0)
        assert service.get_transaction(sale.id).status == TransactionStatus.COMPLETED

    def test_mixed_payment_short_on_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        result = service.process_mixed_payment(customer.id, 1000, 600, 400)

        assert result.credit_used == 0
        assert result.credit_shortfall == 400
        assert "short by 400" in result.message
        assert service.get_customer(customer.id).outstanding_balance == 400

    def test_mixed_payment_must_equal_total(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        with pytest.raises(ValidationError, match="must equal total amount"):
            service.process_mixed_payment(customer.id, 100, 60, 30)

    def test_mixed_payment_rejects_negative_component(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        with pytest.raises(ValidationError, match="cannot be negative"):
            service.process_mixed_payment(customer.id, 100, 150, -50)
        assert service.audit.history(customer.id) == []

    def test_use_credit_caps_at_balance(self):
        """Credit 15000 against a 30000 purchase: 15000 used, 0 left."""
        service = PaymentAllocationService()
        customer = new_customer(service, credit=15000)

        result = service.use_credit(customer.id, 30000)

        assert result.used == 15000
        assert result.remaining == 0
        assert result.shortfall == 15000
        refreshed = service.get_customer(customer.id)
        assert refreshed.credit_balance == 0
        assert refreshed.outstanding_balance == 0

    def test_use_credit_with_no_credit_writes_nothing(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        result = service.use_credit(customer.id, 500)

        assert result.used == 0
        assert service.audit.history(customer.id) == []

    def test_apply_credit_to_sale(self):
        service = PaymentAllocationService()
        customer = new_customer(service, credit=3000)
        sale = credit_sale(service, customer.id, 5000)

        result = service.apply_credit_to_sale(customer.id, 5000, sale.id)

        assert result.credit_used == 3000
        assert result.remaining_amount == 2000
        assert result.transaction_status == TransactionStatus.PARTIAL
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (2000, 0)
        entry = service.audit.for_transaction(sale.id)[-1]
        assert entry.type == AuditEventType.CREDIT_APPLIED_TO_SALE
        assert entry.source_transaction_id == sale.id
        assert entry.metadata.debt_id == sale.id

    def test_apply_credit_to_someone_elses_sale(self):
        service = PaymentAllocationService()
        owner = new_customer(service)
        other = new_customer(service, credit=500)
        sale = credit_sale(service, owner.id, 1000)

        with pytest.raises(ValidationError):
            service.apply_credit_to_sale(other.id, 1000, sale.id)

    def test_credit_summary(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=100)
        service.handle_payment_allocation(customer.id, 600)
        service.use_credit(customer.id, 200)

        summary = service.get_credit_summary(customer.id)

        assert summary.current_balance == 300
        assert summary.total_earned == 500
        assert summary.total_used == 200


class TestCancellation:
    """Tests for cancel_transaction."""

    def test_cancel_sale_after_partial_payment(self):
        """Sale 10000 with 4000 paid: cancelling removes 6000 of debt, not 10000."""
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 10000)
        service.handle_payment_allocation(customer.id, 4000)
        before = service.get_customer(customer.id).outstanding_balance

        result = service.cancel_transaction(sale.id, "Goods returned")

        assert result.success
        assert result.debt_change == -6000
        assert result.credit_change == 4000
        after = service.get_customer(customer.id)
        assert before - after.outstanding_balance == 6000
        assert after.credit_balance == 4000

        cancelled = service.get_transaction(sale.id)
        assert cancelled.is_deleted
        assert cancelled.status == TransactionStatus.CANCELLED
        entry = service.audit.for_transaction(sale.id)[-1]
        assert entry.type == AuditEventType.STATUS_CHANGE
        assert entry.metadata.reason == "Goods returned"
        assert entry.metadata.old_status == TransactionStatus.PARTIAL

    def test_cancel_twice_is_rejected(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        service.cancel_transaction(sale.id)

        with pytest.raises(InvalidStateTransitionError):
            service.cancel_transaction(sale.id)

    def test_cancel_payment_restores_debt_and_withdraws_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        payment = service.handle_payment_allocation(customer.id, 1500)

        result = service.cancel_transaction(payment.transaction_id)

        assert (result.debt_change, result.credit_change) == (1000, -500)
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (1000, 0)
        restored = service.get_transaction(sale.id)
        assert restored.remaining_amount == 1000
        assert restored.status == TransactionStatus.PENDING

    def test_cancel_payment_whose_credit_was_spent(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)
        payment = service.handle_payment_allocation(customer.id, 1500)
        service.use_credit(customer.id, 500)

        result = service.cancel_transaction(payment.transaction_id)

        assert result.credit_change == 0
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (1000, 0)

    def test_cancel_refund_restores_debt(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        refund = service.record_transaction(customer.id, TransactionKind.REFUND, 300).transaction

        service.cancel_transaction(refund.id)

        assert service.get_customer(customer.id).outstanding_balance == 1000
        restored = service.get_transaction(sale.id)
        assert (restored.remaining_amount, restored.status) == (1000, TransactionStatus.PENDING)

    def test_cancel_completed_cash_sale(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = service.record_transaction(customer.id, TransactionKind.SALE, 800).transaction

        result = service.cancel_transaction(sale.id)

        assert result.previous_status == TransactionStatus.COMPLETED
        assert (result.debt_change, result.credit_change) == (0, 0)

    def test_cancel_unknown_transaction(self):
        service = PaymentAllocationService()

        with pytest.raises(TransactionNotFoundError):
            service.cancel_transaction(uuid4())


class TestTransactionDates:
    """Caller-supplied dates on sales and payments."""

    def test_future_date_is_rejected(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        with pytest.raises(ValidationError, match="future"):
            credit_sale(service, customer.id, 1000, date=datetime.now(timezone.utc) + timedelta(days=30))
        assert service.repository.find_transactions_by_customer(customer.id) == []

    def test_backdated_sale_is_rejected(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        service.handle_payment_allocation(customer.id, 5000)

        with pytest.raises(ValidationError, match="latest activity"):
            credit_sale(service, customer.id, 5000, date=datetime.now(timezone.utc) - timedelta(days=1))

        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (0, 5000)
        assert len(service.repository.find_transactions_by_customer(customer.id)) == 1

    def test_backdated_payment_is_rejected(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        credit_sale(service, customer.id, 1000)

        with pytest.raises(ValidationError):
            service.handle_payment_allocation(
                customer.id, 400, date=datetime.now(timezone.utc) - timedelta(hours=2)
            )
        assert service.get_customer(customer.id).outstanding_balance == 1000

    def test_cannot_backdate_before_credit_was_used(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        before = datetime.now(timezone.utc)
        service.handle_payment_allocation(customer.id, 500, use_for_debt=False, date=before - timedelta(days=2))
        service.use_credit(customer.id, 200)

        with pytest.raises(ValidationError):
            service.handle_payment_allocation(customer.id, 100, date=before - timedelta(days=1))

    def test_dates_in_order_are_kept(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        start = datetime.now(timezone.utc) - timedelta(days=10)

        sale = credit_sale(service, customer.id, 1000, date=start)
        payment = service.handle_payment_allocation(customer.id, 400, date=start + timedelta(days=1))

        assert service.get_transaction(sale.id).date == start
        assert service.get_transaction(payment.transaction_id).date == start + timedelta(days=1)
        assert service.get_customer(customer.id).outstanding_balance == 600

    def test_naive_date_is_read_as_utc(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        naive = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)

        sale = credit_sale(service, customer.id, 1000, date=naive)

        assert service.get_transaction(sale.id).date == naive.replace(tzinfo=timezone.utc)


class TestRefunds:
    """Refund limits and settlement of open debts."""

    def test_refund_without_sales_is_rejected(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=5000)

        with pytest.raises(ValidationError, match="total purchases 0"):
            service.record_transaction(customer.id, TransactionKind.REFUND, 5000)
        assert service.get_customer(customer.id).outstanding_balance == 5000

    def test_refund_cannot_exceed_total_sales(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        credit_sale(service, customer.id, 1000)
        service.record_transaction(customer.id, TransactionKind.SALE, 500)

        with pytest.raises(ValidationError, match="cannot exceed"):
            service.record_transaction(customer.id, TransactionKind.REFUND, 1501)

        service.record_transaction(customer.id, TransactionKind.REFUND, 1500)

    def test_cancelled_sales_do_not_count_towards_the_limit(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        service.cancel_transaction(sale.id)

        with pytest.raises(ValidationError):
            service.record_transaction(customer.id, TransactionKind.REFUND, 100)

    def test_refund_settles_the_sale(self):
        """Sale 10000, refund 3000, payment 7000: the sale ends completed."""
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 10000)

        refund = service.record_transaction(customer.id, TransactionKind.REFUND, 3000).transaction

        partial = service.get_transaction(sale.id)
        assert (partial.paid_amount, partial.remaining_amount) == (3000, 7000)
        assert partial.status == TransactionStatus.PARTIAL
        entry = service.audit.for_transaction(refund.id)[0]
        assert [(a.debt_id, a.amount) for a in entry.metadata.allocations] == [(sale.id, 3000)]

        service.handle_payment_allocation(customer.id, 7000)

        settled = service.get_transaction(sale.id)
        assert (settled.remaining_amount, settled.status) == (0, TransactionStatus.COMPLETED)
        assert service.get_customer(customer.id).outstanding_balance == 0

    def test_linked_sale_is_refunded_first(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        first = credit_sale(service, customer.id, 1000)
        second = credit_sale(service, customer.id, 1000)

        service.record_transaction(customer.id, TransactionKind.REFUND, 400, linked_transaction_id=second.id)

        assert service.get_transaction(second.id).remaining_amount == 600
        assert service.get_transaction(first.id).remaining_amount == 1000

    def test_refund_counts_in_sale_progress(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        service.record_transaction(customer.id, TransactionKind.REFUND, 250)

        progress = service.get_transaction_progress(sale.id)

        assert str(progress.percentage_paid) == "25.00"
        assert [e.type for e in progress.payment_history] == [AuditEventType.REFUND]

    def test_cancel_sale_after_refund_returns_refund_as_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 10000)
        service.record_transaction(customer.id, TransactionKind.REFUND, 3000)

        result = service.cancel_transaction(sale.id)

        assert (result.debt_change, result.credit_change) == (-7000, 3000)
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (0, 3000)

    def test_cancel_refund_after_its_sale_withdraws_the_credit(self):
        service = PaymentAllocationService()
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 10000)
        refund = service.record_transaction(customer.id, TransactionKind.REFUND, 3000).transaction
        service.cancel_transaction(sale.id)

        result = service.cancel_transaction(refund.id)

        assert (result.debt_change, result.credit_change) == (0, -3000)
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (0, 0)


class TestIdempotency:
    """Tests for caller-supplied idempotency keys."""

    def test_repeat_returns_original(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        first = service.handle_payment_allocation(customer.id, 600, idempotency_key="pos-17-0001")
        second = service.handle_payment_allocation(customer.id, 600, idempotency_key="pos-17-0001")

        assert second.duplicate
        assert second.transaction_id == first.transaction_id
        assert second.debt_reduced == 600
        assert "idempotent return" in second.message
        assert service.get_customer(customer.id).outstanding_balance == 400

    def test_key_reused_for_different_payment(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)
        service.handle_payment_allocation(customer.id, 600, idempotency_key="pos-17-0002")

        with pytest.raises(IdempotencyConflictError):
            service.handle_payment_allocation(customer.id, 700, idempotency_key="pos-17-0002")

    def test_without_key_resubmission_applies_twice(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        service.handle_payment_allocation(customer.id, 300)
        service.handle_payment_allocation(customer.id, 300)

        assert service.get_customer(customer.id).outstanding_balance == 400

    def test_record_transaction_key(self):
        service = PaymentAllocationService()
        customer = new_customer(service)

        first = credit_sale(service, customer.id, 1000, idempotency_key="sale-1")
        second = service.record_transaction(
            customer.id, TransactionKind.SALE, 1000, payment_method=PaymentMethod.CREDIT, idempotency_key="sale-1"
        )

        assert second.transaction.id == first.id
        assert second.balance.outstanding_balance == 1000


class TestAtomicity:
    """Rollback and concurrent access."""

    def test_failed_audit_write_rolls_back_everything(self):
        repository = FailingAuditRepository()
        service = PaymentAllocationService(repository)
        customer = new_customer(service)
        sale = credit_sale(service, customer.id, 1000)
        repository.fail_audit = True

        with pytest.raises(PersistenceError):
            service.handle_payment_allocation(customer.id, 400)

        assert service.get_customer(customer.id).outstanding_balance == 1000
        assert service.get_transaction(sale.id).remaining_amount == 1000
        assert len(repository.find_transactions_by_customer(customer.id)) == 1

    def test_concurrent_payments_do_not_interleave(self):
        service = PaymentAllocationService()
        customer = new_customer(service, debt=1000)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: service.handle_payment_allocation(customer.id, 100), range(20)))

        assert sum(r.debt_reduced for r in results) == 1000
        assert sum(r.credit_created for r in results) == 1000
        refreshed = service.get_customer(customer.id)
        assert (refreshed.outstanding_balance, refreshed.credit_balance) == (0, 1000)
