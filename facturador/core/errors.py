"""
FACTURADOR — Error kinds
Every engine failure derives from FacturadorError so the API layer can
render it with a single exception handler.
"""


class FacturadorError(Exception):
    """Base class for engine errors."""

    status_code = 400
    default_code = "FACTURADOR_ERROR"
    # Set when the error aborted a settlement.
    failed_step = None

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(FacturadorError):
    """Missing client/items/payment or malformed input. Caller can fix it."""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class StateError(FacturadorError):
    """Operation not allowed in the current lifecycle state."""

    status_code = 409
    default_code = "INVALID_STATE"


class InsufficientStock(FacturadorError):
    status_code = 409
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_code: str, available: int, requested: int):
        self.product_code = product_code
        self.available = available
        self.requested = requested
        super().__init__(
            f"Stock insuficiente para {product_code}. Disponible: {available}, solicitado: {requested}"
        )


class ExternalAuthorityError(FacturadorError):
    """Network error, timeout or rejection from the fiscal authority."""

    status_code = 502
    default_code = "AUTHORITY_ERROR"

    def __init__(self, message: str, code: str = None, status_code: int = None,
                 error_code: str = None, connection_error: bool = False,
                 response: dict = None):
        self.error_code = error_code
        self.connection_error = connection_error
        self.response = response or {}
        # Filled in by the orchestrator when it surfaces the failure.
        self.retry_available = True
        self.offline_fallback_available = False
        super().__init__(message, code=code, status_code=status_code)


class PaymentGatewayError(FacturadorError):
    """QR or transfer verification failure. Recoverable by switching method."""

    status_code = 502
    default_code = "PAYMENT_GATEWAY_ERROR"


class NumberingConflict(FacturadorError):
    status_code = 409
    default_code = "NUMBERING_CONFLICT"


class CommitError(FacturadorError):
    """A committed side effect failed; applied effects were compensated."""

    status_code = 500
    default_code = "COMMIT_FAILED"


class NotFoundError(FacturadorError):
    status_code = 404
    default_code = "NOT_FOUND"
