from __future__ import annotations


class RentalError(RuntimeError):
    """Base class for outcomes the HTTP layer reports to the caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(RentalError):
    status_code = 404


class ValidationFailed(RentalError):
    status_code = 400


class ConflictError(RentalError):
    status_code = 400


class DuplicateError(ConflictError):
    pass


class ForbiddenError(RentalError):
    status_code = 403


class UnexpectedError(RentalError):
    status_code = 500
