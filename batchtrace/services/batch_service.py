# batchtrace/services/batch_service.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from batchtrace.blockchain import LedgerGateway
from batchtrace.blockchain_setup import SignerRegistry
from batchtrace.errors import (
    BatchNotFoundError,
    OutOfOrderRoleError,
    ProgressStoreUnavailable,
    classify_error,
)
from batchtrace.models.batch_models import (
    CUSTODY_ORDER,
    BatchViewModel,
    ErrorKind,
    HistoryEvent,
    HopError,
    HopResult,
    Role,
)
from batchtrace.models.hop_models import CreateBatchPayload, HopPayload
from batchtrace.services.history_service import HistoryReconstructor
from batchtrace.services.orchestrator import TransactionOrchestrator
from batchtrace.services.quantity_ledger import QuantityLedger
from batchtrace.services.role_gate import RoleProgressionGate

logger = logging.getLogger(__name__)


class BatchService:
    """
    Facade used by the Flask blueprint and the FastAPI router.

    Writes go through the orchestrator, then the gate is updated. Reads go
    through the history reconstructor and the snapshot.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        signers: SignerRegistry,
        quantities: Optional[QuantityLedger] = None,
        gate: Optional[RoleProgressionGate] = None,
        orchestrator: Optional[TransactionOrchestrator] = None,
    ):
        self.gateway = gateway
        self.signers = signers
        self.quantities = quantities or QuantityLedger()
        self.gate = gate or RoleProgressionGate()
        self.orchestrator = orchestrator or TransactionOrchestrator(gateway, self.quantities, signers)
        self.history_builder = HistoryReconstructor(gateway, self.quantities)

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------
    def create_batch(self, payload: CreateBatchPayload) -> Tuple[str, HopResult]:
        batch_id = payload.resolved_batch_id()
        result = self.orchestrator.create_batch(batch_id, payload.product, payload.quantity)
        if result.success:
            self._advance_gate(batch_id, Role.FARMER, result)
            logger.info("✅ batch %s created (%s x%s)", batch_id, payload.product, payload.quantity)
        return batch_id, result

    def perform_hop(self, batch_id: str, role: Any, payload: HopPayload) -> HopResult:
        """
        Raises OutOfOrderRoleError when the role is not the next eligible
        one. Every other failure comes back inside the HopResult.
        """
        role = Role.parse(role)
        self._seed_gate(batch_id)

        # unseeded means the ledger has no such batch; the orchestrator reports it
        if self.gate.is_started(batch_id) and not self.gate.can_act(batch_id, role):
            nxt = self.gate.next_eligible_role(batch_id)
            raise OutOfOrderRoleError(batch_id, role.value, nxt.value if nxt else None)

        result = self.orchestrator.perform_hop(batch_id, role, payload)
        if result.success:
            self._advance_gate(batch_id, role, result)
        return result

    def _advance_gate(self, batch_id: str, role: Role, result: HopResult) -> None:
        # the ledger writes are confirmed at this point; gate trouble is only a warning
        try:
            self.gate.mark_completed(batch_id, role)
        except ProgressStoreUnavailable as e:
            result.warnings.append(e.to_hop_error())
        except OutOfOrderRoleError as e:
            logger.warning("⚠️ role progress for %s not advanced: %s", batch_id, e)
            result.warnings.append(HopError(
                kind=ErrorKind.STORAGE_UNAVAILABLE.value,
                message=str(e),
                detail={"batchId": batch_id, "role": role.value},
            ))

    def _seed_gate(self, batch_id: str) -> None:
        """
        Rebuild gate progress for a batch this process has not seen, from the
        custody slots already filled on the ledger (Farmer, then each
        downstream slot up to the first empty one).

        The consumer slot is filled by the retailer's auto-advance before the
        consumer has hopped, so it never marks Consumer completed.
        """
        if self.gate.is_started(batch_id):
            return
        try:
            if not self.gateway.batch_exists(batch_id):
                return
            snapshot = self.gateway.get_batch_info(batch_id)
        except Exception as e:
            logger.warning("could not seed role progress for %s: %s", batch_id, e)
            return

        try:
            for role in CUSTODY_ORDER[:-1]:
                if role != Role.FARMER and not snapshot.slot(role):
                    break
                self.gate.mark_completed(batch_id, role)
        except (ProgressStoreUnavailable, OutOfOrderRoleError) as e:
            logger.warning("could not seed role progress for %s: %s", batch_id, e)

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------
    def batch_view(self, batch_id: str) -> BatchViewModel:
        if not self.gateway.batch_exists(batch_id):
            raise BatchNotFoundError(f"Batch {batch_id} does not exist", detail={"batchId": batch_id})

        snapshot = self.gateway.get_batch_info(batch_id)
        view = self.history_builder.batch_view(snapshot)
        self._seed_gate(batch_id)
        nxt = self.gate.next_eligible_role(batch_id)
        view.nextRole = nxt.value if nxt else None
        return view

    def history(self, batch_id: str) -> List[HistoryEvent]:
        return self.history_builder.get_history(batch_id)

    def next_role(self, batch_id: str) -> Optional[Role]:
        self._seed_gate(batch_id)
        return self.gate.next_eligible_role(batch_id)

    def completed_roles(self, batch_id: str) -> List[str]:
        done = self.gate.completed_roles(batch_id)
        return [r.value for r in Role if r in done]

    def network_status(self) -> Dict[str, Any]:
        try:
            status = dict(self.gateway.network_status())
        except Exception as e:
            err = classify_error(e, {"action": "networkStatus"})
            return {"connected": False, "error": err.to_dict()}
        status["identities"] = self.signers.addresses()
        balances = {}
        for role, addr in status["identities"].items():
            try:
                balances[role] = self.gateway.balance_of(addr)
            except Exception as e:
                logger.warning("balance lookup for %s failed: %s", role, e)
                balances[role] = None
        status["balances"] = balances
        return status

    def list_batches(self) -> List[str]:
        return self.gateway.list_batch_ids()


# -------------------------------------------------------------------
# Wiring
# -------------------------------------------------------------------
def parse_roles(raw: Any) -> List[Role]:
    """'Retailer,Distributor' -> [Role.RETAILER, Role.DISTRIBUTOR]; unknown names are dropped."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    out: List[Role] = []
    for item in items:
        if not str(item).strip():
            continue
        try:
            out.append(Role.parse(item))
        except ValueError:
            logger.warning("ignoring unknown auto-advance role %r", item)
    return out


def build_batch_service(
    config: Mapping[str, Any],
    gateway: LedgerGateway,
    signers: SignerRegistry,
    quantities_col=None,
    progress_col=None,
) -> BatchService:
    quantities = QuantityLedger(quantities_col)
    orchestrator = TransactionOrchestrator(
        gateway,
        quantities,
        signers,
        gas_multiplier=Decimal(str(config.get("GAS_LIMIT_MULTIPLIER") or "1.2")),
        auto_advance_roles=parse_roles(config.get("AUTO_ADVANCE_ROLES", "Retailer")),
        auto_advance_target=config.get("AUTO_ADVANCE_CONSUMER_ADDRESS") or None,
    )
    return BatchService(
        gateway,
        signers,
        quantities=quantities,
        gate=RoleProgressionGate(progress_col),
        orchestrator=orchestrator,
    )


def hop_error_status(error: Optional[HopError]) -> int:
    """HTTP status for a failed hop."""
    if error is None:
        return 500
    return {
        ErrorKind.BATCH_NOT_FOUND.value: 404,
        ErrorKind.AUTHORIZATION_REJECTED.value: 403,
        ErrorKind.INVALID_REQUEST.value: 400,
        ErrorKind.BATCH_ALREADY_EXISTS.value: 409,
    }.get(error.kind, 502)
