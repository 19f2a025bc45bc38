from datetime import datetime
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, computed_field


class ApprovalState(BaseModel):
    draft_id: UUID
    version: int
    shipper_approved: bool
    shipper_approved_at: Optional[datetime] = None
    carrier_approved: bool
    carrier_approved_at: Optional[datetime] = None

    @computed_field
    @property
    def quorum(self) -> bool:
        return self.shipper_approved and self.carrier_approved

    @classmethod
    def from_draft(cls, draft) -> "ApprovalState":
        return cls(
            draft_id=draft.id,
            version=draft.version,
            shipper_approved=draft.shipper_approved,
            shipper_approved_at=draft.shipper_approved_at,
            carrier_approved=draft.carrier_approved,
            carrier_approved_at=draft.carrier_approved_at,
        )
