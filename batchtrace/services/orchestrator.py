# batchtrace/services/orchestrator.py
"""
Hop orchestration: turn one user action ("Retailer received batch X") into
the ordered chain of ledger writes it needs.

  1. batch must exist
  2. missing custody slots up to the acting role are filled first, each
     signed by the identity currently holding the upstream slot
  3. every write gets ceil(estimate * multiplier) gas, or no explicit limit
     when estimation fails
  4. every write gets an explicit nonce from a per-hop sequencer
  5. primary status write, confirmation, then the declared quantity is
     recorded off-ledger
  6. optional auto-advance to the next custodian (best effort)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_CEILING, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from eth_account.signers.local import LocalAccount
from pydantic import ValidationError

from batchtrace.blockchain import (
    CUSTODY_FUNCTIONS,
    LedgerCall,
    LedgerGateway,
    assign_custody_call,
    create_batch_call,
    update_status_call,
)
from batchtrace.blockchain_setup import SignerRegistry
from batchtrace.errors import (
    QuantityStoreUnavailable,
    classify_error,
    error_from_exception,
)
from batchtrace.models.batch_models import (
    CUSTODY_ORDER,
    AdvanceResult,
    ErrorKind,
    HopError,
    HopResult,
    Role,
    upstream_of,
)
from batchtrace.models.hop_models import HopPayload
from batchtrace.services.quantity_ledger import QuantityLedger

logger = logging.getLogger(__name__)

DEFAULT_GAS_MULTIPLIER = Decimal("1.2")


def gas_with_margin(estimate: int, multiplier: Union[str, float, Decimal] = DEFAULT_GAS_MULTIPLIER) -> int:
    """ceil(estimate * multiplier), computed exactly (no float drift)."""
    m = multiplier if isinstance(multiplier, Decimal) else Decimal(str(multiplier))
    return int((Decimal(int(estimate)) * m).to_integral_value(rounding=ROUND_CEILING))


class NonceSequencer:
    """
    Explicit nonces for one hop. Each signer's nonce is read from the ledger
    once; later writes by the same signer get strictly increasing values.
    """

    def __init__(self, gateway: LedgerGateway):
        self.gateway = gateway
        self._next: Dict[str, int] = {}

    def next_for(self, address: str) -> int:
        key = address.lower()
        if key not in self._next:
            self._next[key] = int(self.gateway.current_nonce(address))
        n = self._next[key]
        self._next[key] = n + 1
        return n

    def release(self, address: str, nonce: int) -> None:
        """Give back a nonce whose transaction never reached the ledger."""
        key = address.lower()
        if self._next.get(key) == nonce + 1:
            self._next[key] = nonce


def _fail(error: HopError, prerequisite_refs: Optional[List[str]] = None,
          warnings: Optional[List[HopError]] = None) -> HopResult:
    return HopResult(
        success=False,
        error=error,
        prerequisiteRefs=list(prerequisite_refs or []),
        warnings=list(warnings or []),
    )


class TransactionOrchestrator:
    def __init__(
        self,
        gateway: LedgerGateway,
        quantities: QuantityLedger,
        signers: SignerRegistry,
        gas_multiplier: Union[str, float, Decimal] = DEFAULT_GAS_MULTIPLIER,
        auto_advance_roles: Iterable[Role] = (Role.RETAILER,),
        auto_advance_target: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.gateway = gateway
        self.quantities = quantities
        self.signers = signers
        self.gas_multiplier = Decimal(str(gas_multiplier))
        self.auto_advance_roles = {Role.parse(r) for r in auto_advance_roles}
        self.auto_advance_target = auto_advance_target
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    # ------------------------------------------------------------
    # Farmer: createBatch
    # ------------------------------------------------------------
    def create_batch(self, batch_id: str, product: str, quantity: int) -> HopResult:
        ctx = {"batchId": batch_id, "role": Role.FARMER.value, "action": "createBatch"}
        warnings: List[HopError] = []

        if int(quantity) <= 0:
            return _fail(HopError(ErrorKind.INVALID_REQUEST.value, "Quantity must be greater than 0", ctx))

        farmer = self.signers.for_role(Role.FARMER)
        if farmer is None:
            return _fail(self._no_identity(Role.FARMER, ctx))

        seq = NonceSequencer(self.gateway)
        try:
            tx_ref = self._write(create_batch_call(batch_id, product, quantity), farmer, seq, ctx, warnings)
        except Exception as e:
            return self._failed(e, ctx, [], warnings)

        self._record_quantity(batch_id, Role.FARMER, quantity, tx_ref, warnings)
        return HopResult(success=True, transactionRef=tx_ref, warnings=warnings)

    # ------------------------------------------------------------
    # Distributor / Retailer / Consumer (and Farmer status updates)
    # ------------------------------------------------------------
    def perform_hop(self, batch_id: str, acting_role: Any, payload: Union[HopPayload, Dict[str, Any]]) -> HopResult:
        ctx: Dict[str, Any] = {"batchId": batch_id}
        try:
            role = Role.parse(acting_role)
            if not isinstance(payload, HopPayload):
                payload = HopPayload(**(payload or {}))
        except (ValueError, ValidationError) as e:
            return _fail(HopError(ErrorKind.INVALID_REQUEST.value, str(e), ctx))
        ctx["role"] = role.value

        # 1) existence + current custody
        try:
            if not self.gateway.batch_exists(batch_id):
                return _fail(HopError(ErrorKind.BATCH_NOT_FOUND.value, f"Batch {batch_id} does not exist", ctx))
            snapshot = self.gateway.get_batch_info(batch_id)
        except Exception as e:
            return self._failed(e, {**ctx, "action": "getBatchInfo"}, [], [])

        actor = self.signers.for_role(role)
        if actor is None:
            return _fail(self._no_identity(role, {**ctx, "action": "updateBatchStatus"}))

        warnings: List[HopError] = []
        seq = NonceSequencer(self.gateway)
        custodians: Dict[Role, Optional[str]] = {r: snapshot.slot(r) for r in CUSTODY_ORDER}

        # 2) prerequisite custody assignments, in custody order
        prerequisite_refs: List[str] = []
        for slot in CUSTODY_ORDER[1:CUSTODY_ORDER.index(role) + 1]:
            if custodians[slot]:
                continue

            upstream = upstream_of(slot)
            step_ctx = {"batchId": batch_id, "role": upstream.value, "action": CUSTODY_FUNCTIONS[slot]}
            signer = self.signers.for_address(custodians[upstream])
            if signer is None:
                return _fail(HopError(
                    ErrorKind.AUTHORIZATION_REJECTED.value,
                    f"No signing identity held for the current {upstream.value} custodian",
                    {**step_ctx, "custodian": custodians[upstream]},
                ), prerequisite_refs, warnings)

            target = self._target_address(slot, acting=role)
            if not target:
                return _fail(HopError(
                    ErrorKind.INVALID_REQUEST.value,
                    f"No {slot.value} address configured",
                    step_ctx,
                ), prerequisite_refs, warnings)

            try:
                ref = self._write(assign_custody_call(batch_id, slot, target), signer, seq, step_ctx, warnings)
            except Exception as e:
                return self._failed(e, step_ctx, prerequisite_refs, warnings)

            prerequisite_refs.append(ref)
            custodians[slot] = target

        # 3-5) primary status write + quantity record
        primary_ctx = {**ctx, "action": "updateBatchStatus"}
        try:
            tx_ref = self._write(
                update_status_call(batch_id, payload.status_for(role)), actor, seq, primary_ctx, warnings
            )
        except Exception as e:
            return self._failed(e, primary_ctx, prerequisite_refs, warnings)

        self._record_quantity(batch_id, role, payload.quantity, tx_ref, warnings)

        # 6) best-effort auto-advance, never undoes the confirmed primary write
        advance = None
        if role in self.auto_advance_roles:
            advance = self._auto_advance(batch_id, role, actor, custodians, seq, warnings)

        return HopResult(
            success=True,
            transactionRef=tx_ref,
            prerequisiteRefs=prerequisite_refs,
            autoAdvance=advance,
            warnings=warnings,
        )

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------
    def _target_address(self, slot: Role, acting: Optional[Role] = None) -> Optional[str]:
        if slot == Role.CONSUMER and acting != Role.CONSUMER and self.auto_advance_target:
            return self.auto_advance_target
        return self.signers.address_of(slot)

    def _auto_advance(self, batch_id: str, role: Role, actor: LocalAccount,
                      custodians: Dict[Role, Optional[str]], seq: NonceSequencer,
                      warnings: List[HopError]) -> Optional[AdvanceResult]:
        idx = CUSTODY_ORDER.index(role)
        if idx + 1 >= len(CUSTODY_ORDER):
            return None
        downstream = CUSTODY_ORDER[idx + 1]
        if custodians.get(downstream):
            return None

        ctx = {"batchId": batch_id, "role": role.value, "action": CUSTODY_FUNCTIONS[downstream]}
        target = self._target_address(downstream, acting=role)
        if not target:
            return AdvanceResult(
                success=False,
                error=HopError(ErrorKind.INVALID_REQUEST.value, f"No {downstream.value} address configured", ctx),
            )

        try:
            ref = self._write(assign_custody_call(batch_id, downstream, target), actor, seq, ctx, warnings)
        except Exception as e:
            err = classify_error(e, ctx)
            logger.error("auto-advance %s -> %s failed for %s: %s", role.value, downstream.value, batch_id, err.message)
            return AdvanceResult(success=False, error=err)

        custodians[downstream] = target
        return AdvanceResult(success=True, transactionRef=ref)

    def _gas_limit(self, call: LedgerCall, sender: str, ctx: Dict[str, Any],
                   warnings: List[HopError]) -> Optional[int]:
        try:
            estimate = self.gateway.estimate_gas(call, sender)
        except Exception as e:
            logger.warning("gas estimation failed for %s (%s); sending without explicit limit", call.describe(), e)
            warnings.append(HopError(
                ErrorKind.ESTIMATION_FAILED.value,
                "Gas estimation failed; sent without an explicit gas limit",
                {**ctx, "raw": str(e)},
            ))
            return None
        return gas_with_margin(estimate, self.gas_multiplier)

    def _write(self, call: LedgerCall, signer: LocalAccount, seq: NonceSequencer,
               ctx: Dict[str, Any], warnings: List[HopError]) -> str:
        gas = self._gas_limit(call, signer.address, ctx, warnings)
        nonce = seq.next_for(signer.address)
        try:
            tx_ref = self.gateway.submit(call, signer, gas=gas, nonce=nonce)
        except Exception:
            seq.release(signer.address, nonce)
            raise

        try:
            self.gateway.wait_for_confirmation(tx_ref)
        except Exception as e:
            raise error_from_exception(e, {**ctx, "transactionRef": tx_ref}) from e
        return tx_ref

    def _record_quantity(self, batch_id: str, role: Role, quantity: int, tx_ref: str,
                         warnings: List[HopError]) -> None:
        try:
            self.quantities.record(batch_id, role, quantity, tx_ref, at=self._clock())
        except QuantityStoreUnavailable as e:
            logger.error("quantity record for %s/%s not stored: %s", batch_id, role.value, e)
            warnings.append(e.to_hop_error())

    def _no_identity(self, role: Role, ctx: Dict[str, Any]) -> HopError:
        return HopError(
            ErrorKind.AUTHORIZATION_REJECTED.value,
            f"No signing identity configured for {role.value}",
            ctx,
        )

    def _failed(self, exc: Exception, ctx: Dict[str, Any], prerequisite_refs: List[str],
                warnings: List[HopError]) -> HopResult:
        err = classify_error(exc, ctx)
        logger.error("❌ %s failed for %s: [%s] %s", ctx.get("action"), ctx.get("batchId"), err.kind, err.message)
        return _fail(err, prerequisite_refs, warnings)
