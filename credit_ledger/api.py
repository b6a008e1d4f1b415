from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, build_repository, configure_logging, get_settings
from .errors import (
    CorruptStateError,
    IdempotencyConflictError,
    LedgerServiceError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .models import (
    ApplyCreditRequest,
    AuditEntry,
    CancelTransactionRequest,
    CancellationResult,
    CreateCustomerRequest,
    CreditApplicationResult,
    CreditSummary,
    CreditUsageResult,
    Customer,
    CustomerBalance,
    Discrepancy,
    IntegrityReport,
    LinkAnalysis,
    LinkRepairReport,
    MixedPaymentRequest,
    MixedPaymentResult,
    PaymentAllocationResult,
    PaymentRequest,
    ReconcileRequest,
    ReconciliationReport,
    RecordTransactionRequest,
    Transaction,
    TransactionProgress,
    TransactionResult,
    UseCreditRequest,
)
from .reconciliation import ReconciliationEngine
from .repository import LedgerRepository
from .service import PaymentAllocationService

router = APIRouter()


def get_service(request: Request) -> PaymentAllocationService:
    return request.app.state.service


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (IdempotencyConflictError, CorruptStateError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, PersistenceError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(e))


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credit-ledger"}


# Customers

@router.post("/customers", response_model=Customer, status_code=status.HTTP_201_CREATED, tags=["Customers"])
def create_customer(
    request: CreateCustomerRequest, service: PaymentAllocationService = Depends(get_service)
) -> Customer:
    try:
        return service.create_customer(
            request.name, request.phone, request.outstanding_balance, request.credit_balance
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}", response_model=Customer, tags=["Customers"])
def get_customer(customer_id: UUID, service: PaymentAllocationService = Depends(get_service)) -> Customer:
    try:
        return service.get_customer(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/balance", response_model=CustomerBalance, tags=["Customers"])
def get_balance(customer_id: UUID, service: PaymentAllocationService = Depends(get_service)) -> CustomerBalance:
    try:
        return service.get_balance(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/credit-summary", response_model=CreditSummary, tags=["Customers"])
def get_credit_summary(
    customer_id: UUID, service: PaymentAllocationService = Depends(get_service)
) -> CreditSummary:
    try:
        return service.get_credit_summary(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/audit", response_model=list[AuditEntry], tags=["Customers"])
def get_audit_trail(
    customer_id: UUID,
    limit: int = 50,
    offset: int = 0,
    service: PaymentAllocationService = Depends(get_service),
) -> list[AuditEntry]:
    try:
        return service.get_audit_trail(customer_id, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/payments", response_model=list[AuditEntry], tags=["Customers"])
def get_payment_history(
    customer_id: UUID, limit: int = 50, service: PaymentAllocationService = Depends(get_service)
) -> list[AuditEntry]:
    try:
        return service.get_payment_history(customer_id, limit)
    except LedgerServiceError as e:
        raise _http_error(e)


# Money movements

@router.post(
    "/customers/{customer_id}/transactions",
    response_model=TransactionResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def record_transaction(
    customer_id: UUID,
    request: RecordTransactionRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> TransactionResult:
    try:
        return service.record_transaction(customer_id, **request.model_dump())
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post(
    "/customers/{customer_id}/payments",
    response_model=PaymentAllocationResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
)
def handle_payment(
    customer_id: UUID,
    request: PaymentRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> PaymentAllocationResult:
    try:
        return service.handle_payment_allocation(
            customer_id,
            request.amount,
            request.use_for_debt,
            payment_method=request.payment_method,
            description=request.description,
            idempotency_key=request.idempotency_key,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/customers/{customer_id}/mixed-payments", response_model=MixedPaymentResult, tags=["Payments"])
def process_mixed_payment(
    customer_id: UUID,
    request: MixedPaymentRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> MixedPaymentResult:
    try:
        return service.process_mixed_payment(
            customer_id, request.total_amount, request.cash_amount, request.credit_amount, request.description
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/customers/{customer_id}/credit/use", response_model=CreditUsageResult, tags=["Credit"])
def use_credit(
    customer_id: UUID,
    request: UseCreditRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> CreditUsageResult:
    try:
        return service.use_credit(customer_id, request.amount, description=request.description)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/customers/{customer_id}/credit/apply", response_model=CreditApplicationResult, tags=["Credit"])
def apply_credit_to_sale(
    customer_id: UUID,
    request: ApplyCreditRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> CreditApplicationResult:
    try:
        return service.apply_credit_to_sale(customer_id, request.sale_amount, request.sale_transaction_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Transactions

@router.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(
    transaction_id: UUID, service: PaymentAllocationService = Depends(get_service)
) -> Transaction:
    try:
        return service.get_transaction(transaction_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/transactions/{transaction_id}/progress", response_model=TransactionProgress, tags=["Transactions"])
def get_transaction_progress(
    transaction_id: UUID, service: PaymentAllocationService = Depends(get_service)
) -> TransactionProgress:
    try:
        return service.get_transaction_progress(transaction_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/transactions/{transaction_id}/cancel", response_model=CancellationResult, tags=["Transactions"])
def cancel_transaction(
    transaction_id: UUID,
    request: CancelTransactionRequest,
    service: PaymentAllocationService = Depends(get_service),
) -> CancellationResult:
    try:
        return service.cancel_transaction(transaction_id, request.reason)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/transactions/{transaction_id}/integrity", response_model=IntegrityReport, tags=["Reconciliation"])
def verify_transaction(
    transaction_id: UUID, engine: ReconciliationEngine = Depends(get_engine)
) -> IntegrityReport:
    try:
        return engine.verify_transaction_integrity(transaction_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Reconciliation

@router.get("/reconciliation/discrepancies", response_model=list[Discrepancy], tags=["Reconciliation"])
def detect_discrepancies(engine: ReconciliationEngine = Depends(get_engine)) -> list[Discrepancy]:
    try:
        return engine.detect_discrepancies()
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/reconciliation/run", response_model=ReconciliationReport, tags=["Reconciliation"])
def run_reconciliation(
    request: ReconcileRequest,
    http_request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> ReconciliationReport:
    target_version = request.target_version
    if target_version is None:
        target_version = http_request.app.state.settings.reconciliation_version
    try:
        return engine.reconcile(target_version)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/reconciliation/repair-links", response_model=LinkRepairReport, tags=["Reconciliation"])
def repair_orphaned_links(engine: ReconciliationEngine = Depends(get_engine)) -> LinkRepairReport:
    try:
        return engine.repair_orphaned_links()
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/reconciliation/links", response_model=LinkAnalysis, tags=["Reconciliation"])
def analyze_links(engine: ReconciliationEngine = Depends(get_engine)) -> LinkAnalysis:
    try:
        return engine.analyze_links()
    except LedgerServiceError as e:
        raise _http_error(e)


def create_app(
    repository: Optional[LedgerRepository] = None,
    settings: Optional[Settings] = None,
    root_path: Optional[str] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    repository = repository or build_repository(settings)

    app = FastAPI(
        title="Customer Credit Ledger API",
        description="Customer debt and credit ledger with payment allocation, audit trail and reconciliation",
        version="1.0.0",
        root_path=settings.root_path if root_path is None else root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.service = PaymentAllocationService(repository)
    app.state.engine = ReconciliationEngine(repository)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("credit_ledger.api:create_app", factory=True, host="0.0.0.0", port=8000)
