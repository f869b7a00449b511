# tests/test_errors.py
import pytest
from requests.exceptions import ConnectTimeout
from web3.exceptions import ContractLogicError, TimeExhausted

from batchtrace.errors import (
    AuthorizationRejectedError,
    BatchNotFoundError,
    LedgerError,
    TransactionRevertedError,
    classify_error,
    error_from_exception,
)
from batchtrace.models.batch_models import ErrorKind


@pytest.mark.parametrize("message,kind", [
    ("execution reverted: Batch does not exist", ErrorKind.BATCH_NOT_FOUND),
    ("execution reverted: Batch already exists", ErrorKind.BATCH_ALREADY_EXISTS),
    ("execution reverted: Only farmer can transfer to distributor", ErrorKind.AUTHORIZATION_REJECTED),
    ("execution reverted: Not authorized to update this batch", ErrorKind.AUTHORIZATION_REJECTED),
    ("insufficient funds for gas * price + value", ErrorKind.INSUFFICIENT_FUNDS),
    ("MetaMask Tx Signature: User denied transaction signature.", ErrorKind.TRANSACTION_CANCELLED),
    ("Max retries exceeded with url: /", ErrorKind.NETWORK_UNAVAILABLE),
    ("something odd happened", ErrorKind.TRANSACTION_FAILED),
])
def test_substring_classification(message, kind):
    err = classify_error(ValueError(message), {"role": "Retailer", "action": "updateBatchStatus"})
    assert err.kind == kind.value
    assert err.detail["raw"] == message
    assert err.detail["role"] == "Retailer"


def test_unknown_message_is_preserved():
    err = classify_error(RuntimeError("weird node reply"))
    assert err.message == "weird node reply"


def test_transport_exceptions_by_type():
    assert classify_error(ConnectionRefusedError()).kind == ErrorKind.NETWORK_UNAVAILABLE.value
    assert classify_error(ConnectTimeout("slow")).kind == ErrorKind.NETWORK_UNAVAILABLE.value
    assert classify_error(TimeoutError()).kind == ErrorKind.NETWORK_UNAVAILABLE.value


def test_ledger_errors_keep_their_kind():
    err = classify_error(BatchNotFoundError("Batch X does not exist", detail={"batchId": "X"}), {"action": "get"})
    assert err.kind == ErrorKind.BATCH_NOT_FOUND.value
    assert err.detail == {"action": "get", "batchId": "X"}

    assert classify_error(AuthorizationRejectedError("no")).kind == ErrorKind.AUTHORIZATION_REJECTED.value
    assert classify_error(TransactionRevertedError("reverted")).kind == ErrorKind.TRANSACTION_FAILED.value


def test_error_from_exception_wraps_foreign_errors():
    exc = error_from_exception(ValueError("execution reverted: Only retailer can transfer to consumer"), {"action": "x"})
    assert isinstance(exc, LedgerError)
    assert exc.kind == ErrorKind.AUTHORIZATION_REJECTED
    assert exc.detail["action"] == "x"


@pytest.mark.parametrize("reason,kind", [
    ("execution reverted: Only farmer can transfer to distributor", ErrorKind.AUTHORIZATION_REJECTED),
    ("execution reverted: Batch does not exist", ErrorKind.BATCH_NOT_FOUND),
    ("execution reverted: Quantity must be greater than 0", ErrorKind.TRANSACTION_FAILED),
])
def test_contract_revert_classified_by_reason(reason, kind):
    err = classify_error(ContractLogicError(reason), {"action": "transferToDistributor"})
    assert err.kind == kind.value
    assert err.detail["raw"] == reason


def test_receipt_timeout_is_network():
    exc = TimeExhausted("Transaction 0xab is not in the chain after 120 seconds")
    assert classify_error(exc).kind == ErrorKind.NETWORK_UNAVAILABLE.value
