# batchtrace/services/history_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from batchtrace.blockchain import LedgerGateway
from batchtrace.errors import QuantityStoreUnavailable
from batchtrace.models.batch_models import (
    CUSTODY_ORDER,
    BatchSnapshot,
    BatchViewModel,
    EventKind,
    HistoryEvent,
    JourneyStep,
    QuantityRecord,
    Role,
)
from batchtrace.services.quantity_ledger import QuantityLedger, latest_for_role

logger = logging.getLogger(__name__)

JOURNEY_STEPS = {
    Role.FARMER: ("Farm", "Created by Farmer"),
    Role.DISTRIBUTOR: ("Distribution", "Transferred to Distributor"),
    Role.RETAILER: ("Retail", "Transferred to Retailer"),
    Role.CONSUMER: ("Consumer", "Sold to Consumer"),
}


# -------------------------------------------------------------------
# Raw log helpers (web3 AttributeDict or plain dict)
# -------------------------------------------------------------------
def _field(log: Any, name: str, default=None):
    try:
        return log[name]
    except (KeyError, TypeError, IndexError):
        return getattr(log, name, default)


def _hex(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (bytes, bytearray)):
        return "0x" + bytes(v).hex()
    return str(v)


def _plain(v: Any) -> Any:
    if isinstance(v, (bytes, bytearray)):
        return _hex(v)
    return v


def _args(log: Any) -> Dict[str, Any]:
    raw = _field(log, "args") or {}
    try:
        return {str(k): _plain(v) for k, v in dict(raw).items()}
    except (TypeError, ValueError):
        return {}


def _to_int(x: Any) -> Optional[int]:
    try:
        return int(x)
    except (TypeError, ValueError):
        return None


class HistoryReconstructor:
    """
    Provenance trail for one batch, rebuilt from the ledger's event log on
    every call. Order is (blockNumber, logIndex): the chain's own total
    order, independent of any wall clock.
    """

    def __init__(self, gateway: LedgerGateway, quantities: QuantityLedger):
        self.gateway = gateway
        self.quantities = quantities

    def get_history(self, batch_id: str) -> List[HistoryEvent]:
        ts_cache: Dict[int, Optional[int]] = {}
        events: List[HistoryEvent] = []

        for kind in EventKind:
            try:
                logs = self.gateway.query_events(kind, batch_id, from_block=0) or []
            except Exception as e:
                logger.warning("event query %s failed for %s: %s", kind.value, batch_id, e)
                logs = []

            for log in logs:
                block = _to_int(_field(log, "blockNumber"))
                if block is None:
                    logger.warning("skipping %s log without blockNumber for %s", kind.value, batch_id)
                    continue
                events.append(HistoryEvent(
                    kind=kind.value,
                    blockNumber=block,
                    logIndex=_to_int(_field(log, "logIndex")) or 0,
                    transactionRef=_hex(_field(log, "transactionHash")),
                    args=_args(log),
                    timestamp=self._timestamp(block, ts_cache),
                ))

        events.sort(key=lambda ev: ev.order_key)
        self._overlay(batch_id, events)
        return events

    # ------------------------------------------------------------
    # Timestamps (memoized per call)
    # ------------------------------------------------------------
    def _timestamp(self, block: int, cache: Dict[int, Optional[int]]) -> Optional[int]:
        if block in cache:
            return cache[block]
        try:
            ts = int(self.gateway.get_block_timestamp(block))
        except Exception as e:
            logger.warning("timestamp lookup for block %s failed: %s", block, e)
            ts = None
        cache[block] = ts
        return ts

    # ------------------------------------------------------------
    # Display overlay
    # ------------------------------------------------------------
    def _overlay(self, batch_id: str, events: List[HistoryEvent]) -> None:
        try:
            records = self.quantities.query(batch_id)
        except QuantityStoreUnavailable as e:
            logger.warning("quantity overlay unavailable for %s: %s", batch_id, e)
            records = []

        snapshot = None
        if any(ev.kind == EventKind.UPDATED.value for ev in events):
            snapshot = self._snapshot(batch_id)

        for ev in events:
            self._describe(ev, snapshot)
            rec = latest_for_role(records, ev.role)
            if rec is not None:
                ev.declaredQuantity = rec.quantity

    def _snapshot(self, batch_id: str) -> Optional[BatchSnapshot]:
        try:
            return self.gateway.get_batch_info(batch_id)
        except Exception as e:
            logger.warning("snapshot for role overlay unavailable (%s): %s", batch_id, e)
            return None

    @staticmethod
    def _describe(ev: HistoryEvent, snapshot: Optional[BatchSnapshot]) -> None:
        a = ev.args
        if ev.kind == EventKind.CREATED.value:
            ev.role = Role.FARMER.value
            ev.actor = str(a.get("farmer") or "")
            ev.action = f"Created ({a.get('product') or ''})"
        elif ev.kind == EventKind.TRANSFERRED.value:
            r = str(a.get("role") or "")
            ev.role = r or None
            ev.actor = str(a.get("to") or "")
            ev.action = f"Transferred to {r}"
        elif ev.kind == EventKind.UPDATED.value:
            who = a.get("updatedBy")
            role = snapshot.role_of(who) if snapshot else None
            ev.role = role.value if role else None
            ev.actor = str(who or "")
            ev.action = str(a.get("status") or "")
        elif ev.kind == EventKind.COMPLETED.value:
            ev.role = Role.CONSUMER.value
            ev.actor = str(a.get("consumer") or "")
            ev.action = "Completed"

    # ------------------------------------------------------------
    # Journey view (snapshot based)
    # ------------------------------------------------------------
    @staticmethod
    def journey(snapshot: BatchSnapshot) -> List[JourneyStep]:
        steps: List[JourneyStep] = []
        for role in CUSTODY_ORDER:
            label, done_status = JOURNEY_STEPS[role]
            addr = snapshot.slot(role)
            done = bool(addr)
            if role == Role.FARMER:
                ts = snapshot.createdAt
            else:
                ts = snapshot.updatedAt if done else None
            steps.append(JourneyStep(
                step=label,
                role=role.value,
                status=done_status if done else "Pending",
                completed=done,
                address=addr,
                timestamp=ts,
            ))
        return steps

    @staticmethod
    def display_quantity(snapshot: Optional[BatchSnapshot], records: List[QuantityRecord]) -> Optional[int]:
        """Consumer's declared quantity, else the latest declared, else the ledger's."""
        consumer = latest_for_role(records, Role.CONSUMER.value)
        if consumer is not None:
            return consumer.quantity
        if records:
            return records[-1].quantity
        return snapshot.quantity if snapshot else None

    def batch_view(self, snapshot: BatchSnapshot) -> BatchViewModel:
        try:
            records = self.quantities.query(snapshot.batchId)
        except QuantityStoreUnavailable as e:
            logger.warning("quantity records unavailable for %s: %s", snapshot.batchId, e)
            records = []

        return BatchViewModel(
            batchId=snapshot.batchId,
            snapshot=snapshot,
            journey=self.journey(snapshot),
            displayQuantity=self.display_quantity(snapshot, records),
            quantities=[r.to_dict() for r in records],
        )
