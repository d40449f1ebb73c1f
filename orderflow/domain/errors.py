"""Error taxonomy of the order flow.

Every error carries the title/description pair shown to the user and the
HTTP status the API answers with.
"""

from typing import Optional


class OrderFlowError(Exception):
    status_code = 400
    title = "Error"

    def __init__(self, description: str, title: Optional[str] = None):
        super().__init__(description)
        self.description = description
        if title:
            self.title = title

    def to_dict(self) -> dict:
        return {"title": self.title, "description": self.description}


class ValidationError(OrderFlowError):
    status_code = 400
    title = "Validation Error"


class MissingFieldError(ValidationError):
    title = "Missing Field"


class InvalidStageError(ValidationError):
    title = "Invalid Stage"


class InvalidTransitionError(ValidationError):
    status_code = 409
    title = "Invalid Transition"


class PermissionDeniedError(OrderFlowError):
    status_code = 403
    title = "Access Denied"


class NotFoundError(OrderFlowError):
    status_code = 404
    title = "Not Found"


class DuplicateOrderError(OrderFlowError):
    status_code = 409
    title = "Duplicate Order"


class OrderNumberMismatchError(OrderFlowError):
    status_code = 422
    title = "Order Number Mismatch"


class PersistenceError(OrderFlowError):
    status_code = 500
    title = "Database Error"


class ExternalServiceError(OrderFlowError):
    status_code = 502
    title = "External Service Error"
