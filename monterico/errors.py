"""
Ledger Error Taxonomy

Every business failure raised by the accounting engines and the
authorization gate is a LedgerError. Each carries a machine-readable
code and the HTTP status a route adapter should answer with.

DESIGN DECISION: Business failures are never retried inside the core.
The caller decides what to do (fix input, run the step-up ceremony,
retry the same operation).

Unexpected store failures are NOT LedgerErrors. They surface as
StorageError (see monterico.storage) so adapters can tell them apart.
"""

from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)


class LedgerError(Exception):
    """Base exception for business failures."""

    code: str = "LEDGER_ERROR"
    http_status: int = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_response(self) -> dict:
        """Structured body for an HTTP adapter."""
        return {"error": self.message, "code": self.code}


class ValidationError(LedgerError):
    """Missing or malformed input."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]

    def to_response(self) -> dict:
        return {"error": self.message, "code": self.code, "errors": self.errors}


class NotFoundError(LedgerError):
    """Referenced entity does not exist (or is not visible to the caller)."""

    code = "NOT_FOUND"
    http_status = 404


class SplitMismatchError(LedgerError):
    """Split amounts do not add up to the expense total."""

    code = "SPLIT_MISMATCH"
    http_status = 400


class AuthorizationError(LedgerError):
    """
    Caller is not allowed to perform the operation right now.

    The code tells the caller which ceremony to run before retrying:
    BANK_MFA_REQUIRED / BANK_MFA_EXPIRED mean "do a passkey step-up".
    """

    UNAUTHORIZED = "UNAUTHORIZED"
    MFA_REQUIRED = "MFA_REQUIRED"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    BANK_MFA_REQUIRED = "BANK_MFA_REQUIRED"
    BANK_MFA_EXPIRED = "BANK_MFA_EXPIRED"

    code = UNAUTHORIZED
    http_status = 401

    def __init__(self, message: str, code: str = UNAUTHORIZED):
        super().__init__(message, code)
        if code in (self.BANK_MFA_REQUIRED, self.BANK_MFA_EXPIRED):
            self.http_status = 403

    @property
    def is_step_up_required(self) -> bool:
        return self.code in (self.BANK_MFA_REQUIRED, self.BANK_MFA_EXPIRED)


class ConsistencyError(LedgerError):
    """A multi-row operation failed part-way and was rolled back."""

    code = "CONSISTENCY_ERROR"
    http_status = 409


def parse_input(model: type[ModelT], data: Any) -> ModelT:
    """
    Parse raw input into a pydantic model.

    pydantic's own ValidationError is turned into a ledger ValidationError
    listing every failing field.
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        messages = [
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid input", errors=messages) from e
