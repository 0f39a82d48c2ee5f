"""
Storefront errors

Services raise these; main.py turns them into JSON responses of the form
{"error": <code>, "detail": <message>}.
"""


class StoreError(Exception):
    status_code = 400
    code = "store_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StoreError):
    status_code = 404
    code = "not_found"


class ValidationFailed(StoreError):
    status_code = 422
    code = "validation_failed"


class ConstraintViolation(ValidationFailed):
    """A uniqueness or foreign-key rule of the store rejected the write."""

    status_code = 409
    code = "constraint_violation"


class InvalidTransition(StoreError):
    status_code = 409
    code = "invalid_transition"


class OutOfStock(StoreError):
    status_code = 409
    code = "out_of_stock"


class ConcurrentUpdate(StoreError):
    status_code = 409
    code = "concurrent_update"
