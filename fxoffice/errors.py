"""
Typed errors raised by the fxoffice business rules.

Every error carries a machine-readable ``code`` and the HTTP status the API
answers with, so handlers catch by type and clients branch on ``code``:

    FxOfficeError
    +-- AuthenticationError          AUTHENTICATION_REQUIRED   401
    +-- PermissionDeniedError        PERMISSION_DENIED         403
    +-- InputValidationError         VALIDATION_ERROR          422
    |   +-- DuplicateKeyError        DUPLICATE_KEY             409
    +-- RecordNotFoundError          NOT_FOUND                 404
    +-- BusinessRuleError            BUSINESS_RULE_VIOLATION   409
    |   +-- InsufficientBalanceError INSUFFICIENT_BALANCE
    |   +-- NoActiveTillSessionError NO_ACTIVE_TILL_SESSION
    |   +-- InvalidTransitionError   INVALID_STATUS_TRANSITION
    |   +-- TransactionLockedError   TRANSACTION_LOCKED
    +-- ComplianceBlockError                                   403
    |   +-- SanctionBlockedError     SANCTION_BLOCKED
    |   +-- SuspiciousBlockedError   SUSPICIOUS_BLOCKED
    +-- RateSourceError              RATE_SOURCE_UNAVAILABLE   502
"""

from decimal import Decimal
from typing import Any, Optional


class FxOfficeError(Exception):
    code = "FXOFFICE_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.code,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


class AuthenticationError(FxOfficeError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class PermissionDeniedError(FxOfficeError):
    code = "PERMISSION_DENIED"
    status_code = 403


class InputValidationError(FxOfficeError):
    code = "VALIDATION_ERROR"
    status_code = 422


class DuplicateKeyError(InputValidationError):
    code = "DUPLICATE_KEY"
    status_code = 409


class RecordNotFoundError(FxOfficeError):
    code = "NOT_FOUND"
    status_code = 404


class BusinessRuleError(FxOfficeError):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 409


class InsufficientBalanceError(BusinessRuleError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, till_id: str, currency_code: str, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient {currency_code} balance in till {till_id}. "
            f"Current: {balance}, Requested: {requested}",
            till_id=till_id,
            currency_code=currency_code,
            balance=balance,
            requested=requested,
        )
        self.till_id = till_id
        self.currency_code = currency_code


class NoActiveTillSessionError(BusinessRuleError):
    code = "NO_ACTIVE_TILL_SESSION"


class InvalidTransitionError(BusinessRuleError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            f"Cannot move {entity} from {current} to {requested}",
            current_status=current,
            requested_status=requested,
        )


class TransactionLockedError(BusinessRuleError):
    code = "TRANSACTION_LOCKED"


COMPLIANCE_DIRECTIVE = "Please contact the compliance department before retrying this customer."


class ComplianceBlockError(FxOfficeError):
    status_code = 403
    reason = "Customer is blocked by compliance"

    def __init__(self, customer_id: Optional[str]):
        super().__init__(
            f"{self.code}: Transaction blocked. {self.reason}.",
            customer_id=customer_id,
        )
        self.customer_id = customer_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["directive"] = COMPLIANCE_DIRECTIVE
        return body


class SanctionBlockedError(ComplianceBlockError):
    code = "SANCTION_BLOCKED"
    reason = "Customer is on a sanction list"


class SuspiciousBlockedError(ComplianceBlockError):
    code = "SUSPICIOUS_BLOCKED"
    reason = "Customer is flagged as suspicious"


class RateSourceError(FxOfficeError):
    code = "RATE_SOURCE_UNAVAILABLE"
    status_code = 502
