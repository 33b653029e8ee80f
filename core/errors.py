from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for order/payment service failures.

    ``status_code`` is the HTTP status the API layer answers with; ``context``
    carries the entity ids and amounts involved so handlers and logs can
    report them.
    """

    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": type(self).__name__}


class ValidationError(ServiceError):
    status_code = 422


class InvalidStateError(ServiceError):
    status_code = 409


class NotFoundError(ServiceError):
    status_code = 404


class RefundError(ServiceError):
    status_code = 422


class RefundExceedsQuantityError(RefundError):
    pass


class RefundExceedsAmountError(RefundError):
    pass


class GatewayError(ServiceError):
    """Failure reported by (or while reaching) the payment gateway."""

    status_code = 502

    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None, **context: Any):
        super().__init__(message, **context)
        self.response = response
