# batchtrace/errors.py
"""
Ledger / transport error taxonomy.

Gateway calls raise LedgerError subclasses; the orchestrator turns them
into HopError values via classify_error() so nothing escapes a hop.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout as RequestsTimeout
from web3.exceptions import ContractLogicError, TimeExhausted

from batchtrace.models.batch_models import ErrorKind, HopError


class LedgerError(Exception):
    kind: ErrorKind = ErrorKind.TRANSACTION_FAILED

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})
        if kind is not None:
            self.kind = kind

    def to_hop_error(self) -> HopError:
        return HopError(kind=self.kind.value, message=self.message, detail=self.detail)


class BatchNotFoundError(LedgerError):
    kind = ErrorKind.BATCH_NOT_FOUND


class AuthorizationRejectedError(LedgerError):
    kind = ErrorKind.AUTHORIZATION_REJECTED


class EstimationFailedError(LedgerError):
    kind = ErrorKind.ESTIMATION_FAILED


class TransactionRevertedError(LedgerError):
    kind = ErrorKind.TRANSACTION_FAILED


class QuantityStoreUnavailable(LedgerError):
    kind = ErrorKind.STORAGE_UNAVAILABLE


class ProgressStoreUnavailable(LedgerError):
    kind = ErrorKind.STORAGE_UNAVAILABLE


class OutOfOrderRoleError(ValueError):
    """Raised by the role gate when a role tries to complete before its predecessors."""

    def __init__(self, batch_id: str, role: str, expected: Optional[str]):
        super().__init__(f"{role} cannot complete batch {batch_id} yet; next eligible role is {expected or 'none'}")
        self.batch_id = batch_id
        self.role = role
        self.expected = expected


# -------------------------------------------------------------------
# Substring classification (ledger revert reasons + transport errors)
# Order matters: first match wins.
# -------------------------------------------------------------------
_SUBSTRING_RULES = [
    (ErrorKind.BATCH_NOT_FOUND, ("batch does not exist",)),
    (ErrorKind.BATCH_ALREADY_EXISTS, ("batch already exists",)),
    (ErrorKind.AUTHORIZATION_REJECTED, (
        "not authorized",
        "only farmer can",
        "only distributor can",
        "only retailer can",
    )),
    (ErrorKind.INSUFFICIENT_FUNDS, ("insufficient funds",)),
    (ErrorKind.TRANSACTION_CANCELLED, ("user rejected", "user denied", "cancelled", "canceled")),
    (ErrorKind.NETWORK_UNAVAILABLE, (
        "network",
        "connection refused",
        "connection error",
        "failed to establish",
        "max retries exceeded",
        "timed out",
    )),
]

_FRIENDLY = {
    ErrorKind.BATCH_NOT_FOUND: "Batch does not exist",
    ErrorKind.BATCH_ALREADY_EXISTS: "Batch already exists",
    ErrorKind.AUTHORIZATION_REJECTED: "Ledger rejected the signer for this call",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds for transaction",
    ErrorKind.TRANSACTION_CANCELLED: "Transaction was cancelled",
    ErrorKind.NETWORK_UNAVAILABLE: "Network connection error",
}


def _kind_from_message(msg: str) -> ErrorKind:
    low = (msg or "").lower()
    for kind, needles in _SUBSTRING_RULES:
        if any(n in low for n in needles):
            return kind
    return ErrorKind.TRANSACTION_FAILED


def _revert_reason(exc: ContractLogicError) -> str:
    return getattr(exc, "message", None) or str(exc)


def _kind_from_type(exc: BaseException) -> Optional[ErrorKind]:
    if isinstance(exc, ContractLogicError):
        # the contract's require() text is the only signal
        return _kind_from_message(_revert_reason(exc))
    if isinstance(exc, TimeExhausted):
        return ErrorKind.NETWORK_UNAVAILABLE
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK_UNAVAILABLE
    if isinstance(exc, (RequestsConnectionError, RequestsTimeout)):
        return ErrorKind.NETWORK_UNAVAILABLE
    return None


def classify_error(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> HopError:
    """
    Map any exception raised while talking to the ledger onto a HopError.

    LedgerError keeps its own kind. Everything else is matched by type,
    then by substring of the message; unknown messages become
    TransactionFailed with the raw text preserved in detail["raw"].
    """
    ctx = dict(context or {})

    if isinstance(exc, LedgerError):
        err = exc.to_hop_error()
        err.detail = {**ctx, **err.detail}
        return err

    raw = str(exc) or exc.__class__.__name__
    kind = _kind_from_type(exc) or _kind_from_message(raw)
    message = _FRIENDLY.get(kind, raw)
    return HopError(kind=kind.value, message=message, detail={**ctx, "raw": raw})


def error_from_exception(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> LedgerError:
    """Same classification, but as a raisable LedgerError."""
    if isinstance(exc, LedgerError):
        if context:
            exc.detail = {**context, **exc.detail}
        return exc
    he = classify_error(exc, context)
    return LedgerError(he.message, detail=he.detail, kind=ErrorKind(he.kind))
