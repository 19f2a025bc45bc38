from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loadblock.audit.models import AuditEventType


class TransitionEvent(BaseModel):
    """Payload handed to the notification/audit sink after a committed change."""
    model_config = ConfigDict(frozen=True)

    event: AuditEventType
    record_id: Optional[UUID] = None
    draft_id: Optional[UUID] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor_id: Optional[str] = None
    timestamp: datetime
    detail: Optional[Dict[str, Any]] = None


class AuditEventResponse(BaseModel):
    id: UUID
    event_type: AuditEventType
    record_id: Optional[UUID] = None
    draft_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
