"""Error taxonomy raised by services and rendered by the API layer.

Every error is an ``HTTPException`` so services can raise it directly; the
handlers in ``visaflow.main`` turn it into the ``{success, error}`` envelope.
"""

from fastapi import HTTPException


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found") -> None:
        super().__init__(status_code=404, detail=detail)


class Unauthorized(HTTPException):
    def __init__(self, detail: str = "Not authorized to access this route") -> None:
        super().__init__(status_code=401, detail=detail)


class Forbidden(HTTPException):
    """Wrong role, or the actor is not a party to the resource."""

    def __init__(self, detail: str = "Access denied") -> None:
        super().__init__(status_code=403, detail=detail)


class Conflict(HTTPException):
    """Duplicate resource or an action that was already applied."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class InvalidState(HTTPException):
    """Operation not valid for the resource's current status."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class ValidationFailed(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=400, detail=detail)


class PaymentGatewayError(HTTPException):
    def __init__(self, detail: str = "Payment gateway request failed") -> None:
        super().__init__(status_code=502, detail=detail)
