"""Settlement error taxonomy.

Each error knows the HTTP status the API renders it with and whether the
caller may retry the same request unchanged.
"""


class SettlementError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def code(self) -> str:
        return self.__class__.__name__


class ValidationFailed(SettlementError):
    status_code = 422


class Unauthenticated(SettlementError):
    status_code = 401


class Unauthorized(SettlementError):
    status_code = 403


class InvalidTransition(SettlementError):
    status_code = 409


class CannotCancel(SettlementError):
    status_code = 409


class AlreadyPaid(SettlementError):
    status_code = 409


class NotRefundable(SettlementError):
    status_code = 409


class ExceedsBalance(SettlementError):
    status_code = 422


class ProcessorRejected(SettlementError):
    """The processor answered and refused the request."""
    status_code = 502


class RefundFailed(ProcessorRejected):
    pass


class ProcessorUnavailable(SettlementError):
    """Timeout or 5xx from the payment processor; nothing was changed locally."""
    status_code = 503
    retryable = True


class InvalidSignature(SettlementError):
    status_code = 400


class AlreadySettled(SettlementError):
    status_code = 409


class PayoutNotEarned(SettlementError):
    status_code = 409


class ConcurrencyConflict(SettlementError):
    """Another writer changed the order first."""
    status_code = 409
    retryable = True


class NotFound(SettlementError):
    status_code = 404


class OrderNotFound(NotFound):
    pass


class PaymentNotFound(NotFound):
    pass


class PayoutNotFound(NotFound):
    pass


class UnknownService(ValidationFailed):
    pass


class InvariantViolation(SettlementError):
    status_code = 500
