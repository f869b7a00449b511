# batchtrace/models/hop_models.py

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from batchtrace.models.batch_models import Role


class CreateBatchPayload(BaseModel):
    # caller may bring its own id (e.g. already printed on a QR), else uuid4
    batchId: Optional[str] = None
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)

    @field_validator("product")
    @classmethod
    def _strip_product(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("product required")
        return v

    @field_validator("batchId")
    @classmethod
    def _strip_batch_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def resolved_batch_id(self) -> str:
        return self.batchId or str(uuid.uuid4())


class HopPayload(BaseModel):
    quantity: int = Field(..., gt=0)
    status: Optional[str] = None

    def status_for(self, role: Role) -> str:
        if self.status and self.status.strip():
            return self.status.strip()
        return DEFAULT_STATUS[role]


class HopRequest(HopPayload):
    """Flask body: the acting role travels with the payload."""
    role: str

    @field_validator("role")
    @classmethod
    def _known_role(cls, v: str) -> str:
        return Role.parse(v).value


DEFAULT_STATUS = {
    Role.FARMER: "Updated by Farmer",
    Role.DISTRIBUTOR: "Received by Distributor",
    Role.RETAILER: "Received by Retailer",
    Role.CONSUMER: "Received by Consumer",
}
