class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidAmountError(ValidationError):
    pass


class InvalidStateTransitionError(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class CustomerNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class IdempotencyConflictError(LedgerServiceError):
    pass


class PersistenceError(LedgerServiceError):
    pass


class CorruptStateError(LedgerServiceError):
    pass
