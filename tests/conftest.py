# tests/conftest.py
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from eth_account import Account

from batchtrace.blockchain import LedgerCall, LedgerGateway, snapshot_from_tuple
from batchtrace.blockchain_setup import SignerRegistry
from batchtrace.errors import BatchNotFoundError, TransactionRevertedError
from batchtrace.models.batch_models import ZERO_ADDRESS, EventKind, Role
from batchtrace.services.orchestrator import TransactionOrchestrator
from batchtrace.services.quantity_ledger import QuantityLedger

# fixed keys so addresses are stable across runs (test-only, never funded)
KEYS = {
    Role.FARMER: "0x" + "11" * 32,
    Role.DISTRIBUTOR: "0x" + "22" * 32,
    Role.RETAILER: "0x" + "33" * 32,
    Role.CONSUMER: "0x" + "44" * 32,
}

GENESIS_TS = 1_700_000_000


class Reverted(Exception):
    """What a node returns for a failing eth_call / eth_estimateGas."""


class FakeLedgerGateway(LedgerGateway):
    """
    In-memory SupplyChain contract. Applies the same require() rules as the
    Solidity contract, mines one block per transaction and keeps per-sender
    nonces so tests can assert on ordering.
    """

    def __init__(self):
        self.batches: Dict[str, Dict[str, Any]] = {}
        self.logs: List[Dict[str, Any]] = []
        self.block = 0
        self.nonces: Dict[str, int] = {}
        self.sent: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.estimate_units = 100_000

        # fault injection
        self.fail_estimate = False
        self.fail_submit: Dict[str, Exception] = {}
        self.fail_events: Dict[EventKind, Exception] = {}
        self.fail_timestamps: set = set()
        self.timestamp_calls: List[int] = []

    # ---------- contract rules ----------
    def _check(self, call: LedgerCall, sender: str) -> None:
        fn, args = call.function, call.args
        batch_id = args[0]
        b = self.batches.get(batch_id)

        if fn == "createBatch":
            if b is not None:
                raise Reverted("execution reverted: Batch already exists")
            if int(args[2]) <= 0:
                raise Reverted("execution reverted: Quantity must be greater than 0")
            return

        if b is None:
            raise Reverted("execution reverted: Batch does not exist")

        s = sender.lower()
        if fn == "updateBatchStatus":
            holders = [b[k] for k in ("farmer", "distributor", "retailer", "consumer")]
            if s not in [h.lower() for h in holders if h != ZERO_ADDRESS]:
                raise Reverted("execution reverted: Not authorized to update this batch")
            return

        rules = {
            "transferToDistributor": ("farmer", "Only farmer can transfer to distributor"),
            "transferToRetailer": ("distributor", "Only distributor can transfer to retailer"),
            "transferToConsumer": ("retailer", "Only retailer can transfer to consumer"),
        }
        holder, msg = rules[fn]
        if s != b[holder].lower():
            raise Reverted(f"execution reverted: {msg}")

    def _apply(self, call: LedgerCall, sender: str, ts: int) -> Dict[str, Any]:
        fn, args = call.function, call.args
        batch_id = args[0]

        if fn == "createBatch":
            self.batches[batch_id] = {
                "product": args[1], "quantity": int(args[2]),
                "farmer": sender, "distributor": ZERO_ADDRESS,
                "retailer": ZERO_ADDRESS, "consumer": ZERO_ADDRESS,
                "createdAt": ts, "updatedAt": ts, "status": "Created",
            }
            return {"kind": EventKind.CREATED, "args": {"product": args[1], "quantity": int(args[2]), "farmer": sender}}

        b = self.batches[batch_id]
        b["updatedAt"] = ts
        if fn == "updateBatchStatus":
            b["status"] = args[1]
            return {"kind": EventKind.UPDATED, "args": {"status": args[1], "updatedBy": sender}}

        slot, role = {
            "transferToDistributor": ("distributor", "Distributor"),
            "transferToRetailer": ("retailer", "Retailer"),
            "transferToConsumer": ("consumer", "Consumer"),
        }[fn]
        b[slot] = args[1]
        b["status"] = f"Transferred to {role}"
        return {"kind": EventKind.TRANSFERRED, "args": {"from": sender, "to": args[1], "role": role}}

    # ---------- reads ----------
    def batch_exists(self, batch_id):
        return batch_id in self.batches

    def get_batch_info(self, batch_id):
        b = self.batches.get(batch_id)
        if b is None:
            raise BatchNotFoundError(f"Batch {batch_id} does not exist", detail={"batchId": batch_id})
        return snapshot_from_tuple(batch_id, (
            b["product"], b["quantity"], b["farmer"], b["distributor"], b["retailer"],
            b["consumer"], b["createdAt"], b["updatedAt"], b["status"],
        ))

    def list_batch_ids(self):
        return list(self.batches)

    def network_status(self):
        return {"connected": True, "chainId": 1337, "blockNumber": self.block}

    def balance_of(self, address):
        return "100"

    def get_block_timestamp(self, block_number):
        self.timestamp_calls.append(block_number)
        if block_number in self.fail_timestamps:
            raise ConnectionError("block lookup timed out")
        return GENESIS_TS + 12 * block_number

    def query_events(self, kind, batch_id, from_block=0):
        if kind in self.fail_events:
            raise self.fail_events[kind]
        return [
            {
                "blockNumber": lg["blockNumber"],
                "logIndex": lg["logIndex"],
                "transactionHash": bytes.fromhex(lg["transactionRef"][2:]),
                "args": dict(lg["args"]),
            }
            for lg in self.logs
            if lg["kind"] == kind and lg["batchId"] == batch_id and lg["blockNumber"] >= from_block
        ]

    # ---------- writes ----------
    def estimate_gas(self, call, sender):
        if self.fail_estimate:
            raise ValueError("estimate unavailable: node does not support eth_estimateGas")
        self._check(call, sender)
        return self.estimate_units

    def current_nonce(self, address):
        return self.nonces.get(address.lower(), 0)

    def submit(self, call, signer, gas=None, nonce=None):
        if call.function in self.fail_submit:
            raise self.fail_submit[call.function]

        sender = signer.address
        if gas is None:
            # node-side auto estimate, same as web3's build_transaction
            self._check(call, sender)

        expected = self.current_nonce(sender)
        if nonce is None:
            nonce = expected
        if nonce != expected:
            raise ValueError(f"nonce too {'low' if nonce < expected else 'high'}: expected {expected}, got {nonce}")

        self.nonces[sender.lower()] = nonce + 1
        self.block += 1
        ref = "0x" + f"{len(self.sent) + 1:064x}"
        self.sent.append({
            "function": call.function, "args": call.args, "sender": sender,
            "nonce": nonce, "gas": gas, "ref": ref, "block": self.block,
        })

        ts = GENESIS_TS + 12 * self.block
        try:
            self._check(call, sender)
        except Reverted:
            self.receipts[ref] = {"status": 0, "blockNumber": self.block}
            return ref

        ev = self._apply(call, sender, ts)
        self.logs.append({
            "kind": ev["kind"], "batchId": call.args[0], "blockNumber": self.block,
            "logIndex": 0, "transactionRef": ref, "args": ev["args"],
        })
        self.receipts[ref] = {"status": 1, "blockNumber": self.block}
        return ref

    def wait_for_confirmation(self, tx_ref):
        receipt = self.receipts[tx_ref]
        if receipt["status"] != 1:
            raise TransactionRevertedError(
                "Blockchain transaction failed (receipt.status != 1)", detail={"transactionRef": tx_ref}
            )
        return receipt

    # ---------- helpers for assertions ----------
    def calls(self) -> List[str]:
        return [s["function"] for s in self.sent]

    def add_log(self, kind, batch_id, block, log_index, args, ref=None):
        self.logs.append({
            "kind": kind, "batchId": batch_id, "blockNumber": block, "logIndex": log_index,
            "transactionRef": ref or "0x" + f"{block:032x}{log_index:032x}", "args": args,
        })


class StepClock:
    """Deterministic clock: each call is one second later."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def accounts():
    return {role: Account.from_key(pk) for role, pk in KEYS.items()}


@pytest.fixture
def signers():
    return SignerRegistry.from_keys(KEYS)


@pytest.fixture
def ledger():
    return FakeLedgerGateway()


@pytest.fixture
def quantities():
    return QuantityLedger()


@pytest.fixture
def orchestrator(ledger, quantities, signers):
    return TransactionOrchestrator(ledger, quantities, signers, clock=StepClock())
