# batchtrace/models/__init__.py

from batchtrace.models.batch_models import (  # noqa: F401
    CUSTODY_ORDER,
    ZERO_ADDRESS,
    AdvanceResult,
    BatchSnapshot,
    BatchViewModel,
    ErrorKind,
    EventKind,
    HistoryEvent,
    HopError,
    HopResult,
    JourneyStep,
    QuantityRecord,
    Role,
    upstream_of,
)
from batchtrace.models.hop_models import (  # noqa: F401
    DEFAULT_STATUS,
    CreateBatchPayload,
    HopPayload,
    HopRequest,
)
