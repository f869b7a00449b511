# batchtrace/blockchain_setup.py - Web3, signer and contract factories for the SupplyChain ledger

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from batchtrace.models.batch_models import Role

logger = logging.getLogger(__name__)

ABI_FILE = os.path.join(os.path.dirname(__file__), "SupplyChainABI.json")

# env var per custody role
ROLE_KEY_ENV = {
    Role.FARMER: "FARMER_PRIVATE_KEY",
    Role.DISTRIBUTOR: "DISTRIBUTOR_PRIVATE_KEY",
    Role.RETAILER: "RETAILER_PRIVATE_KEY",
    Role.CONSUMER: "CONSUMER_PRIVATE_KEY",
}


# ---------- Helpers ----------
def _normalize_pk(pk: str) -> str:
    pk = pk.strip().replace(" ", "").replace("\n", "").replace("\r", "")
    hexpart = pk[2:] if pk.lower().startswith("0x") else pk
    if not pk.lower().startswith("0x"):
        pk = "0x" + pk
    if len(hexpart) != 64:
        raise ValueError(f"Private key must be 64 hex chars; got {len(hexpart)}")
    if not re.fullmatch(r"[0-9a-fA-F]{64}", hexpart):
        raise ValueError("Private key contains non-hex characters")
    return pk


def suggest_fees(web3: Web3, multiplier: float = 1.25, min_prio_gwei: int = 1) -> Dict[str, int]:
    """
    EIP-1559 fee fields from fee_history:
      {"maxPriorityFeePerGas": ..., "maxFeePerGas": ...}
    Nodes without fee_history (old Ganache, legacy chains) get {"gasPrice": ...}.
    """
    try:
        hist = web3.eth.fee_history(5, "latest", [10, 50, 90])
    except Exception as e:
        logger.warning("fee_history unavailable (%s); using legacy gasPrice", e)
        return {"gasPrice": int(web3.eth.gas_price)}

    base = (hist.get("baseFeePerGas") or [0])[-1] or web3.to_wei(30, "gwei")
    tips = [r[-1] for r in hist.get("reward", []) if r]
    prio = max(tips) if tips and max(tips) > 0 else web3.to_wei(min_prio_gwei, "gwei")
    max_fee = int(base * multiplier + prio)
    return {"maxPriorityFeePerGas": int(prio), "maxFeePerGas": max_fee}


def load_abi(path: str = ABI_FILE):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ---------- Web3 Setup ----------
def build_web3(rpc_url: str, timeout: int = 30) -> Web3:
    web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


def build_contract(web3: Web3, address: str, abi=None):
    if not address:
        raise ValueError("SUPPLY_CHAIN_ADDRESS is not configured")
    return web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi or load_abi())


# ---------- Signing identities ----------
class SignerRegistry:
    """
    The identities the orchestrator is allowed to drive, one per custody role.
    Lookups by role (whose turn is it) and by address (who is the current
    upstream custodian on the ledger).
    """

    def __init__(self, accounts: Optional[Mapping[Role, LocalAccount]] = None):
        self._by_role: Dict[Role, LocalAccount] = dict(accounts or {})

    @classmethod
    def from_keys(cls, keys: Mapping[Any, Optional[str]]) -> "SignerRegistry":
        accounts: Dict[Role, LocalAccount] = {}
        for role_key, pk in keys.items():
            if not pk:
                continue
            role = Role.parse(role_key)
            accounts[role] = Account.from_key(_normalize_pk(pk))
        return cls(accounts)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SignerRegistry":
        env = environ if environ is not None else os.environ
        return cls.from_keys({role: env.get(var) for role, var in ROLE_KEY_ENV.items()})

    def for_role(self, role: Role) -> Optional[LocalAccount]:
        return self._by_role.get(role)

    def address_of(self, role: Role) -> Optional[str]:
        acct = self._by_role.get(role)
        return acct.address if acct else None

    def for_address(self, address: Optional[str]) -> Optional[LocalAccount]:
        if not address:
            return None
        a = address.lower()
        for acct in self._by_role.values():
            if acct.address.lower() == a:
                return acct
        return None

    def roles(self) -> Iterable[Role]:
        return list(self._by_role.keys())

    def addresses(self) -> Dict[str, str]:
        return {role.value: acct.address for role, acct in self._by_role.items()}


def chain_id_for(web3: Web3, configured: Optional[int]) -> int:
    if configured:
        return int(configured)
    return int(web3.eth.chain_id)


def describe_connection(web3: Web3, contract_address: Optional[str]) -> Tuple[bool, Optional[int]]:
    """(Optional) sanity checks at boot; never raises."""
    try:
        if not web3.is_connected():
            logger.warning("[WARN] RPC endpoint not reachable")
            return False, None
        cid = int(web3.eth.chain_id)
        if contract_address and len(web3.eth.get_code(Web3.to_checksum_address(contract_address))) <= 2:
            logger.warning("[WARN] No bytecode at %s on chain %s", contract_address, cid)
        return True, cid
    except Exception as e:
        logger.warning("[WARN] connection check failed: %s", e)
        return False, None


__all__ = [
    "ABI_FILE",
    "ROLE_KEY_ENV",
    "SignerRegistry",
    "build_contract",
    "build_web3",
    "chain_id_for",
    "describe_connection",
    "load_abi",
    "suggest_fees",
]
