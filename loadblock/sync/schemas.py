from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loadblock.approvals.schemas import ApprovalState
from loadblock.lifecycle.states import BoLStatus


class ImmutableRecordResponse(BaseModel):
    id: UUID
    draft_id: UUID
    bol_number: str
    genesis_tx_id: str
    current_status: BoLStatus
    current_sequence: int
    current_hash: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ApprovalOutcome(BaseModel):
    """Result of ``submit_approval``: the flags, plus the record when quorum activated it."""
    state: ApprovalState
    record: Optional[ImmutableRecordResponse] = None


class ReconcileResult(BaseModel):
    record_id: UUID
    ledger_status: Optional[BoLStatus] = None
    ledger_sequence: Optional[int] = None
    mirror_status: Optional[BoLStatus] = None  # before reconciliation
    changed: bool = False
    materialized: bool = False  # ImmutableRecord row created from the ledger
    unfrozen: bool = False      # stuck activation released, nothing on the ledger
