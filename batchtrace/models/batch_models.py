# batchtrace/models/batch_models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Role(str, Enum):
    FARMER = "Farmer"
    DISTRIBUTOR = "Distributor"
    RETAILER = "Retailer"
    CONSUMER = "Consumer"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """
        Accepts "Distributor", "distributor", " RETAILER " or a Role.
        Raises ValueError for anything else.
        """
        if isinstance(value, Role):
            return value
        s = str(value or "").strip().lower()
        for role in cls:
            if role.value.lower() == s:
                return role
        raise ValueError(f"unknown role: {value!r}")


# Canonical custody order (Farmer -> Distributor -> Retailer -> Consumer)
CUSTODY_ORDER: List[Role] = [Role.FARMER, Role.DISTRIBUTOR, Role.RETAILER, Role.CONSUMER]


def upstream_of(role: Role) -> Optional[Role]:
    idx = CUSTODY_ORDER.index(role)
    return CUSTODY_ORDER[idx - 1] if idx > 0 else None


class EventKind(str, Enum):
    CREATED = "created"
    TRANSFERRED = "transferred"
    UPDATED = "updated"
    COMPLETED = "completed"


class ErrorKind(str, Enum):
    BATCH_NOT_FOUND = "BatchNotFound"
    AUTHORIZATION_REJECTED = "AuthorizationRejected"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    NETWORK_UNAVAILABLE = "NetworkUnavailable"
    TRANSACTION_CANCELLED = "TransactionCancelled"
    TRANSACTION_FAILED = "TransactionFailed"
    ESTIMATION_FAILED = "EstimationFailed"
    BATCH_ALREADY_EXISTS = "BatchAlreadyExists"
    INVALID_REQUEST = "InvalidRequest"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


@dataclass
class BatchSnapshot:
    """Decoded getBatchInfo() tuple. Unset custody slots are None."""
    batchId: str = ""
    product: str = ""
    quantity: int = 0
    farmer: Optional[str] = None
    distributor: Optional[str] = None
    retailer: Optional[str] = None
    consumer: Optional[str] = None
    createdAt: int = 0
    updatedAt: int = 0
    status: str = ""
    exists: bool = True

    def slot(self, role: Role) -> Optional[str]:
        return getattr(self, role.value.lower())

    def role_of(self, address: Optional[str]) -> Optional[Role]:
        """Which custody slot holds this address (first match in custody order)."""
        if not address:
            return None
        a = str(address).lower()
        for role in CUSTODY_ORDER:
            held = self.slot(role)
            if held and held.lower() == a:
                return role
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QuantityRecord:
    batchId: str
    role: str
    quantity: int
    transactionRef: Optional[str]
    recordedAt: datetime

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["recordedAt"] = self.recordedAt.isoformat()
        return d


@dataclass
class HistoryEvent:
    kind: str
    blockNumber: int
    logIndex: int
    transactionRef: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[int] = None     # unix seconds, None if the block lookup failed

    # display overlay
    role: Optional[str] = None
    actor: str = ""
    action: str = ""
    declaredQuantity: Optional[int] = None

    @property
    def order_key(self):
        return (self.blockNumber, self.logIndex)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HopError:
    kind: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AdvanceResult:
    success: bool
    transactionRef: Optional[str] = None
    error: Optional[HopError] = None


@dataclass
class HopResult:
    success: bool
    transactionRef: Optional[str] = None
    error: Optional[HopError] = None
    prerequisiteRefs: List[str] = field(default_factory=list)
    autoAdvance: Optional[AdvanceResult] = None
    warnings: List[HopError] = field(default_factory=list)

    @property
    def transactionRefs(self) -> List[str]:
        refs = list(self.prerequisiteRefs)
        if self.transactionRef:
            refs.append(self.transactionRef)
        if self.autoAdvance and self.autoAdvance.transactionRef:
            refs.append(self.autoAdvance.transactionRef)
        return refs

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["transactionRefs"] = self.transactionRefs
        return out


@dataclass
class JourneyStep:
    step: str
    role: str
    status: str
    completed: bool
    address: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass
class BatchViewModel:
    batchId: str = ""
    snapshot: Optional[BatchSnapshot] = None
    journey: List[JourneyStep] = field(default_factory=list)
    displayQuantity: Optional[int] = None
    quantities: List[Dict[str, Any]] = field(default_factory=list)
    nextRole: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
