from __future__ import annotations

from typing import Any


class AccessControlError(Exception):
    pass


class NotFoundError(AccessControlError):
    pass


class ConflictError(AccessControlError):
    pass


class ForbiddenOperationError(AccessControlError):
    pass


class AuthenticationError(AccessControlError):
    pass


class AuthorizationDeniedError(AccessControlError):
    pass


class InputValidationError(AccessControlError):
    def __init__(self, message: str, fields: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or {}


class StorageError(AccessControlError):
    pass


class TransactionAbortedError(StorageError):
    pass
