# batchtrace/services/__init__.py

from batchtrace.services.batch_service import BatchService, build_batch_service  # noqa: F401
from batchtrace.services.history_service import HistoryReconstructor  # noqa: F401
from batchtrace.services.orchestrator import (  # noqa: F401
    NonceSequencer,
    TransactionOrchestrator,
    gas_with_margin,
)
from batchtrace.services.quantity_ledger import QuantityLedger, latest_for_role  # noqa: F401
from batchtrace.services.role_gate import RoleProgressionGate  # noqa: F401
