from __future__ import annotations


class ProgressPathError(RuntimeError):
    status_code = 400

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class InvalidInputError(ProgressPathError):
    """Rejected input; the caller may correct it and retry."""

    status_code = 400


class NotFoundError(ProgressPathError):
    status_code = 404


class ConflictError(ProgressPathError):
    """The request is well-formed but the current state forbids it."""

    status_code = 409
