"""
Error taxonomy for the ops services.

Services raise these and never retry; the HTTP layer turns them into
`{"error": code, "detail": message}` responses.
"""


class ServiceError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    code = "validation_error"
    status_code = 400


class NotFoundError(ServiceError):
    code = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    code = "conflict"
    status_code = 409
