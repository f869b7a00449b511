# batchtrace/services/role_gate.py

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Set

from pymongo.errors import PyMongoError

from batchtrace.errors import OutOfOrderRoleError, ProgressStoreUnavailable
from batchtrace.models.batch_models import CUSTODY_ORDER, Role

logger = logging.getLogger(__name__)


class RoleProgressionGate:
    """
    Per-batch record of which custody roles finished their hop.

    Advisory only: the ledger's own authorization is what actually binds.
    The gate keeps a client from attempting a step out of order.
    """

    COL = "role_progress"

    def __init__(self, collection=None):
        self._col = collection
        self._mem: Dict[str, Set[Role]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------
    # State
    # ------------------------------------------------------------
    def completed_roles(self, batch_id: str) -> Set[Role]:
        if self._col is None:
            with self._lock:
                return set(self._mem.get(batch_id, set()))

        try:
            doc = self._col.find_one({"_id": batch_id}) or {}
        except PyMongoError as e:
            logger.warning("role_progress read failed for %s: %s", batch_id, e)
            return set()

        out: Set[Role] = set()
        for name in doc.get("completed") or []:
            try:
                out.add(Role.parse(name))
            except ValueError:
                continue
        return out

    def mark_completed(self, batch_id: str, role) -> None:
        role = Role.parse(role)
        required = CUSTODY_ORDER[:CUSTODY_ORDER.index(role)]

        if self._col is None:
            with self._lock:
                done = self._mem.setdefault(batch_id, set())
                if role in done:
                    return
                if any(r not in done for r in required):
                    raise self._out_of_order(batch_id, role, done)
                done.add(role)
            return

        # predecessors are part of the filter so check and update are one operation
        query: Dict[str, Any] = {"_id": batch_id}
        if required:
            query["completed"] = {"$all": [r.value for r in required]}
        try:
            res = self._col.update_one(
                query,
                {"$addToSet": {"completed": role.value}},
                upsert=not required,
            )
        except PyMongoError as e:
            logger.error("❌ role_progress write failed for %s/%s: %s", batch_id, role.value, e)
            raise ProgressStoreUnavailable(
                "Role progress store unavailable",
                detail={"batchId": batch_id, "role": role.value, "raw": str(e)},
            ) from e

        if not res.matched_count and res.upserted_id is None:
            raise self._out_of_order(batch_id, role, self.completed_roles(batch_id))

    @staticmethod
    def _out_of_order(batch_id: str, role: Role, done: Set[Role]) -> OutOfOrderRoleError:
        nxt = next((r for r in CUSTODY_ORDER if r not in done), None)
        return OutOfOrderRoleError(batch_id, role.value, nxt.value if nxt else None)

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------
    def next_eligible_role(self, batch_id: str) -> Optional[Role]:
        done = self.completed_roles(batch_id)
        for role in CUSTODY_ORDER:
            if role not in done:
                return role
        return None

    def can_act(self, batch_id: str, role) -> bool:
        return self.next_eligible_role(batch_id) == Role.parse(role)

    def is_started(self, batch_id: str) -> bool:
        return bool(self.completed_roles(batch_id))
