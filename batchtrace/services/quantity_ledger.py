# batchtrace/services/quantity_ledger.py
"""
Off-ledger declared quantities per (batchId, role).

The SupplyChain contract only stores the quantity given at createBatch, so
"how much changed hands at this hop" lives here. Append-only: no updates,
no deletes, no dedup. Retries produce several records for the same role
and readers pick the latest by recordedAt.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from batchtrace.errors import QuantityStoreUnavailable
from batchtrace.models.batch_models import QuantityRecord, Role

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # Mongo hands datetimes back naive (UTC)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def latest_for_role(records: List[QuantityRecord], role: Optional[str]) -> Optional[QuantityRecord]:
    """Most recent record whose role matches (case-insensitive)."""
    if not role:
        return None
    r = role.strip().lower()
    best = None
    for rec in records:
        if (rec.role or "").strip().lower() != r:
            continue
        if best is None or _as_utc(rec.recordedAt) >= _as_utc(best.recordedAt):
            best = rec
    return best


class QuantityLedger:
    COL = "quantity_records"

    def __init__(self, collection=None):
        """
        collection: a pymongo Collection, or None for process memory
        (used when DISABLE_MONGO=1 and in tests).
        """
        self._col = collection
        self._mem: List[QuantityRecord] = []
        self._lock = threading.Lock()
        if self._col is not None:
            self._ensure_indexes()

    @property
    def durable(self) -> bool:
        return self._col is not None

    def _ensure_indexes(self):
        try:
            self._col.create_index([("batchId", ASCENDING), ("recordedAt", ASCENDING)], name="idx_batch_at")
        except PyMongoError as e:
            logger.warning("quantity_records index error: %s", e)

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------
    def record(self, batch_id: str, role: Any, quantity: int,
               tx_ref: Optional[str], at: Optional[datetime] = None) -> QuantityRecord:
        role_name = Role.parse(role).value if isinstance(role, Role) else str(role)
        rec = QuantityRecord(
            batchId=batch_id,
            role=role_name,
            quantity=int(quantity),
            transactionRef=tx_ref,
            recordedAt=_as_utc(at) if at else _now_utc(),
        )

        if self._col is None:
            with self._lock:
                self._mem.append(rec)
            return rec

        try:
            self._col.insert_one({
                "batchId": rec.batchId,
                "role": rec.role,
                "quantity": rec.quantity,
                "transactionRef": rec.transactionRef,
                "recordedAt": rec.recordedAt,
            })
        except PyMongoError as e:
            raise QuantityStoreUnavailable(
                f"Could not store quantity record: {e}",
                detail={"batchId": batch_id, "role": role_name},
            ) from e
        return rec

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------
    def query(self, batch_id: str) -> List[QuantityRecord]:
        """All records for a batch, oldest first (insertion order on ties)."""
        if self._col is None:
            with self._lock:
                rows = [r for r in self._mem if r.batchId == batch_id]
            return sorted(rows, key=lambda r: _as_utc(r.recordedAt))

        try:
            cur = self._col.find({"batchId": batch_id}, {"_id": 0}).sort([("recordedAt", ASCENDING), ("_id", ASCENDING)])
            docs = list(cur)
        except PyMongoError as e:
            raise QuantityStoreUnavailable(
                f"Could not read quantity records: {e}", detail={"batchId": batch_id}
            ) from e

        return [self._from_doc(d) for d in docs]

    @staticmethod
    def _from_doc(d: Dict[str, Any]) -> QuantityRecord:
        at = d.get("recordedAt")
        if not isinstance(at, datetime):
            at = datetime.fromtimestamp(0, tz=timezone.utc)
        return QuantityRecord(
            batchId=str(d.get("batchId") or ""),
            role=str(d.get("role") or ""),
            quantity=int(d.get("quantity") or 0),
            transactionRef=d.get("transactionRef"),
            recordedAt=_as_utc(at),
        )
