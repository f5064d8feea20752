"""Coordinator error taxonomy.

Every domain error is an ``HTTPException`` so services can raise them directly
and routers surface them without translation. The four families are:

- ``ValidationError`` (422): malformed, unsigned or expired input. Raised before
  any state mutation.
- ``AuthorizationError`` (403): unknown node, signature mismatch, wrong caller.
- ``StateConflictError`` (409): duplicate report, request already fulfilled.
  Prior state is left untouched.
- ``AccountingError`` (422): insufficient payment or balance, failed transfer,
  payment split anomaly. No partial transfer is ever committed.

``NotFoundError`` (404) covers lookups of unknown agreements and requests.
"""

from fastapi import HTTPException


class CoordinatorError(HTTPException):
    status_code: int = 400
    category: str = "coordinator"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)

    def __str__(self) -> str:
        return self.detail


class ValidationError(CoordinatorError):
    status_code = 422
    category = "validation"


class AuthorizationError(CoordinatorError):
    status_code = 403
    category = "authorization"


class StateConflictError(CoordinatorError):
    status_code = 409
    category = "state_conflict"


class AccountingError(CoordinatorError):
    status_code = 422
    category = "accounting"


class NotFoundError(CoordinatorError):
    status_code = 404
    category = "not_found"


# --- Agreements ---

class MalformedAgreement(ValidationError):
    pass


class ExpiredAgreement(ValidationError):
    pass


class InvalidSignature(AuthorizationError):
    pass


class AlreadyExists(StateConflictError):
    pass


class AgreementNotFound(NotFoundError):
    pass


# --- Requests ---

class UnknownAgreement(NotFoundError):
    pass


class UnknownRequest(NotFoundError):
    pass


class ForbiddenCallback(ValidationError):
    pass


class MalformedInstruction(ValidationError):
    pass


class UnauthorizedCaller(AuthorizationError):
    pass


class UnauthorizedNode(AuthorizationError):
    pass


class RequestClosed(StateConflictError):
    pass


class DuplicateReport(StateConflictError):
    pass


class ReportRejected(StateConflictError):
    pass


# --- Ledger ---

class InsufficientPayment(AccountingError):
    pass


class InsufficientBalance(AccountingError):
    pass


class TransferFailed(AccountingError):
    pass


class PaymentSplitError(AccountingError):
    pass


class InvalidValue(ValidationError):
    pass


# --- Token ledger ---

class TransactionNotFound(NotFoundError):
    pass


class TransactionReverted(ValidationError):
    pass


class NoInboundTransfer(ValidationError):
    pass


class SequenceExhausted(StateConflictError):
    pass
