from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loadblock.lifecycle.states import BoLStatus


class LedgerPayload(BaseModel):
    """What a single ledger transaction commits for (record, sequence)."""
    model_config = ConfigDict(frozen=True)

    bol_number: str
    content_hash: str
    previous_hash: Optional[str] = None
    status: BoLStatus
    actor_id: Optional[str] = None
    notes: str = ""
    document_hash: Optional[str] = None
    created_at: datetime

    def fingerprint(self) -> Tuple:
        """Identity of the write for idempotency checks; timestamps excluded."""
        return (self.content_hash, self.previous_hash, self.status.value, self.actor_id)


class VersionEntry(BaseModel):
    """One committed node of a record's hash-linked version chain."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    record_id: UUID
    sequence: int
    bol_number: str
    content_hash: str
    previous_hash: Optional[str] = None
    status: BoLStatus
    actor_id: Optional[str] = None
    notes: str = ""
    document_hash: Optional[str] = None
    created_at: datetime
    tx_id: str

    def fingerprint(self) -> Tuple:
        return (self.content_hash, self.previous_hash, self.status.value, self.actor_id)

    @classmethod
    def from_payload(cls, record_id: UUID, sequence: int, payload: LedgerPayload, tx_id: str) -> "VersionEntry":
        return cls(record_id=record_id, sequence=sequence, tx_id=tx_id, **payload.model_dump())


class ChainVerification(BaseModel):
    record_id: UUID
    length: int
    valid: bool
    latest_status: Optional[BoLStatus] = None
    latest_hash: Optional[str] = None
    problems: List[str] = []
