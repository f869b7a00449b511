# batchtrace/blockchain.py
"""
Ledger gateway: the only place that talks to the SupplyChain contract.

Everything above this module (orchestrator, history, routes) sees the
LedgerGateway surface and never touches Web3 directly.

Also exposes init_blockchain(app) used by app.py to attach web3, the
gateway and the signing identities to the Flask app config.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_account.signers.local import LocalAccount
from web3 import Web3

from batchtrace.blockchain_setup import (
    SignerRegistry,
    build_contract,
    build_web3,
    chain_id_for,
    describe_connection,
    suggest_fees,
)
from batchtrace.errors import BatchNotFoundError, TransactionRevertedError
from batchtrace.models.batch_models import (
    ZERO_ADDRESS,
    BatchSnapshot,
    EventKind,
    Role,
)

logger = logging.getLogger(__name__)

# custody slot -> contract write that fills it
CUSTODY_FUNCTIONS = {
    Role.DISTRIBUTOR: "transferToDistributor",
    Role.RETAILER: "transferToRetailer",
    Role.CONSUMER: "transferToConsumer",
}

# event kind -> ABI event names, first one present in the ABI wins
EVENT_NAMES = {
    EventKind.CREATED: ("BatchCreated",),
    EventKind.TRANSFERRED: ("BatchTransferred",),
    EventKind.UPDATED: ("BatchUpdated", "BatchStatusUpdated"),
    EventKind.COMPLETED: ("BatchCompleted",),
}


# -------------------------------------------------------------------
# Calls
# -------------------------------------------------------------------
@dataclass(frozen=True)
class LedgerCall:
    """A contract write, described before it is estimated/signed/sent."""
    function: str
    args: Tuple[Any, ...]
    action: str = ""

    def describe(self) -> str:
        return self.action or self.function


def create_batch_call(batch_id: str, product: str, quantity: int) -> LedgerCall:
    return LedgerCall("createBatch", (batch_id, product, int(quantity)), action="createBatch")


def assign_custody_call(batch_id: str, role: Role, address: str) -> LedgerCall:
    fn = CUSTODY_FUNCTIONS.get(role)
    if fn is None:
        raise ValueError(f"{role.value} custody is assigned by createBatch, not a transfer")
    return LedgerCall(fn, (batch_id, address), action=fn)


def update_status_call(batch_id: str, status: str) -> LedgerCall:
    return LedgerCall("updateBatchStatus", (batch_id, status), action="updateBatchStatus")


def _slot(addr: Any) -> Optional[str]:
    if not addr:
        return None
    s = str(addr)
    return None if s.lower() == ZERO_ADDRESS else s


def snapshot_from_tuple(batch_id: str, t: Sequence[Any]) -> BatchSnapshot:
    """
    getBatchInfo() returns:
      (product, quantity, farmer, distributor, retailer, consumer,
       createdAt, updatedAt, status)
    """
    return BatchSnapshot(
        batchId=batch_id,
        product=str(t[0]),
        quantity=int(t[1]),
        farmer=_slot(t[2]),
        distributor=_slot(t[3]),
        retailer=_slot(t[4]),
        consumer=_slot(t[5]),
        createdAt=int(t[6]),
        updatedAt=int(t[7]),
        status=str(t[8]),
        exists=True,
    )


# -------------------------------------------------------------------
# Gateway surface
# -------------------------------------------------------------------
class LedgerGateway(abc.ABC):
    """
    Read/write capability surface over the append-only ledger.

    Writes return a transaction reference as soon as they are submitted;
    they are durable only once wait_for_confirmation() returns.
    """

    @abc.abstractmethod
    def batch_exists(self, batch_id: str) -> bool: ...

    @abc.abstractmethod
    def get_batch_info(self, batch_id: str) -> BatchSnapshot: ...

    @abc.abstractmethod
    def estimate_gas(self, call: LedgerCall, sender: str) -> int: ...

    @abc.abstractmethod
    def current_nonce(self, address: str) -> int: ...

    @abc.abstractmethod
    def submit(self, call: LedgerCall, signer: LocalAccount,
               gas: Optional[int] = None, nonce: Optional[int] = None) -> str: ...

    @abc.abstractmethod
    def wait_for_confirmation(self, tx_ref: str) -> Dict[str, Any]: ...

    @abc.abstractmethod
    def query_events(self, kind: EventKind, batch_id: str, from_block: int = 0) -> List[Any]: ...

    @abc.abstractmethod
    def get_block_timestamp(self, block_number: int) -> int: ...

    # convenience writes (same path as submit)
    def create_batch(self, batch_id: str, product: str, quantity: int, signer: LocalAccount, **tx) -> str:
        return self.submit(create_batch_call(batch_id, product, quantity), signer, **tx)

    def assign_custody(self, batch_id: str, role: Role, address: str, signer: LocalAccount, **tx) -> str:
        return self.submit(assign_custody_call(batch_id, role, address), signer, **tx)

    def update_status(self, batch_id: str, status: str, signer: LocalAccount, **tx) -> str:
        return self.submit(update_status_call(batch_id, status), signer, **tx)

    # optional reads used by health / listing endpoints
    def list_batch_ids(self) -> List[str]:
        return []

    def network_status(self) -> Dict[str, Any]:
        return {"connected": True}

    def balance_of(self, address: str) -> str:
        return "0"


# -------------------------------------------------------------------
# Internal helper: get raw tx bytes (supports eth-account variants)
# -------------------------------------------------------------------
def _raw_tx_bytes(signed) -> bytes:
    """
    Handle both eth-account styles:
      - signed.raw_transaction
      - signed.rawTransaction
    """
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = getattr(signed, "rawTransaction", None)
    if raw is None:
        raise TypeError("SignedTransaction has no raw tx bytes")
    return raw


class Web3LedgerGateway(LedgerGateway):
    def __init__(self, web3: Web3, contract, chain_id: Optional[int] = None, receipt_timeout: int = 120):
        self.web3 = web3
        self.contract = contract
        self._chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._event_abis = {
            e["name"]: e for e in (contract.abi or []) if e.get("type") == "event"
        }

    @property
    def chain_id(self) -> int:
        if not self._chain_id:
            self._chain_id = chain_id_for(self.web3, None)
        return self._chain_id

    # ---------- reads ----------
    def batch_exists(self, batch_id: str) -> bool:
        return bool(self.contract.functions.batchExists(batch_id).call())

    def get_batch_info(self, batch_id: str) -> BatchSnapshot:
        if not self.batch_exists(batch_id):
            raise BatchNotFoundError(f"Batch {batch_id} does not exist", detail={"batchId": batch_id})
        t = self.contract.functions.getBatchInfo(batch_id).call()
        return snapshot_from_tuple(batch_id, t)

    def list_batch_ids(self) -> List[str]:
        return list(self.contract.functions.getAllBatchIds().call() or [])

    def get_block_timestamp(self, block_number: int) -> int:
        return int(self.web3.eth.get_block(block_number)["timestamp"])

    def network_status(self) -> Dict[str, Any]:
        try:
            return {
                "connected": bool(self.web3.is_connected()),
                "chainId": int(self.web3.eth.chain_id),
                "blockNumber": int(self.web3.eth.block_number),
            }
        except Exception as e:
            logger.warning("network status check failed: %s", e)
            return {"connected": False, "error": str(e)}

    def balance_of(self, address: str) -> str:
        wei = self.web3.eth.get_balance(Web3.to_checksum_address(address))
        return str(self.web3.from_wei(wei, "ether"))

    # ---------- events ----------
    def _event_abi(self, kind: EventKind) -> Optional[Dict[str, Any]]:
        for name in EVENT_NAMES[kind]:
            if name in self._event_abis:
                return self._event_abis[name]
        return None

    def query_events(self, kind: EventKind, batch_id: str, from_block: int = 0) -> List[Any]:
        """
        All logs of one kind for a batch, oldest first.
        batchId is an indexed string, so the topic is keccak(batchId).
        Kinds the deployed ABI does not declare yield [].
        """
        abi = self._event_abi(kind)
        if abi is None:
            return []

        name = abi["name"]
        signature = f"{name}({','.join(i['type'] for i in abi['inputs'])})"
        topics = [
            Web3.to_hex(Web3.keccak(text=signature)),
            Web3.to_hex(Web3.keccak(text=batch_id)),
        ]
        raw = self.web3.eth.get_logs({
            "address": self.contract.address,
            "fromBlock": from_block,
            "toBlock": "latest",
            "topics": topics,
        })
        event = getattr(self.contract.events, name)()
        logs = [event.process_log(r) for r in raw]
        return sorted(logs, key=lambda lg: (lg["blockNumber"], lg["logIndex"]))

    # ---------- writes ----------
    def _fn(self, call: LedgerCall):
        return getattr(self.contract.functions, call.function)(*call.args)

    def estimate_gas(self, call: LedgerCall, sender: str) -> int:
        return int(self._fn(call).estimate_gas({"from": sender}))

    def current_nonce(self, address: str) -> int:
        return int(self.web3.eth.get_transaction_count(address, "pending"))

    def submit(self, call: LedgerCall, signer: LocalAccount,
               gas: Optional[int] = None, nonce: Optional[int] = None) -> str:
        params: Dict[str, Any] = {
            "from": signer.address,
            "nonce": nonce if nonce is not None else self.current_nonce(signer.address),
            "chainId": self.chain_id,
        }
        if gas:
            params["gas"] = int(gas)
        params.update(suggest_fees(self.web3))

        tx = self._fn(call).build_transaction(params)
        signed = signer.sign_transaction(tx)
        tx_hash = self.web3.eth.send_raw_transaction(_raw_tx_bytes(signed))
        ref = self.web3.to_hex(tx_hash)
        logger.info("⏳ %s submitted by %s nonce=%s: %s", call.describe(), signer.address, params["nonce"], ref)
        return ref

    def wait_for_confirmation(self, tx_ref: str) -> Dict[str, Any]:
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_ref, timeout=self.receipt_timeout)
        if not receipt or receipt.get("status") != 1:
            raise TransactionRevertedError(
                "Blockchain transaction failed (receipt.status != 1)",
                detail={"transactionRef": tx_ref},
            )
        logger.info("✅ confirmed %s in block %s", tx_ref, receipt.get("blockNumber"))
        return dict(receipt)


# -------------------------------------------------------------------
# App wiring (used by app.create_app)
# -------------------------------------------------------------------
def build_gateway(config: Mapping[str, Any]) -> Web3LedgerGateway:
    web3 = build_web3(config["RPC_URL"])
    contract = build_contract(web3, config.get("SUPPLY_CHAIN_ADDRESS"))
    return Web3LedgerGateway(
        web3,
        contract,
        chain_id=config.get("CHAIN_ID"),
        receipt_timeout=int(config.get("TX_RECEIPT_TIMEOUT") or 120),
    )


def init_blockchain(app: Any) -> None:
    """
    Wire web3 + gateway + signers into Flask app.config.
    Skipped when a gateway was injected (tests) or no contract is configured.
    """
    if app.config.get("LEDGER_GATEWAY") is None:
        if not app.config.get("SUPPLY_CHAIN_ADDRESS"):
            logger.warning("⚠️ SUPPLY_CHAIN_ADDRESS not set. Ledger gateway not initialized.")
            return
        gateway = build_gateway(app.config)
        app.config["WEB3"] = gateway.web3
        app.config["LEDGER_GATEWAY"] = gateway
        describe_connection(gateway.web3, app.config.get("SUPPLY_CHAIN_ADDRESS"))

    if app.config.get("SIGNERS") is None:
        app.config["SIGNERS"] = SignerRegistry.from_keys(app.config.get("ROLE_PRIVATE_KEYS") or {})

    logger.info("✓ Blockchain wired")
    logger.info("  • Contract: %s", app.config.get("SUPPLY_CHAIN_ADDRESS"))
    logger.info("  • Identities: %s", app.config["SIGNERS"].addresses())


__all__ = [
    "CUSTODY_FUNCTIONS",
    "EVENT_NAMES",
    "LedgerCall",
    "LedgerGateway",
    "Web3LedgerGateway",
    "assign_custody_call",
    "build_gateway",
    "create_batch_call",
    "init_blockchain",
    "snapshot_from_tuple",
    "update_status_call",
]
