from enum import Enum
from sqlalchemy import Column, String, Uuid
from loadblock.database import Base
from loadblock.shared.models import AuditMixin, JSONType, enum_column


class AuditEventType(str, Enum):
    BOL_ACTIVATED = "BOL_ACTIVATED"
    BOL_STATUS_CHANGED = "BOL_STATUS_CHANGED"
    BOL_REJECTED = "BOL_REJECTED"
    BOL_RECONCILED = "BOL_RECONCILED"


class AuditEvent(Base, AuditMixin):
    __tablename__ = "audit_events"

    event_type = Column(enum_column(AuditEventType, name="audit_event_type_enum"), nullable=False)
    record_id = Column(Uuid(as_uuid=True), nullable=True, index=True)  # ImmutableRecord id, once activated
    draft_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    actor_id = Column(String(255), nullable=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    detail = Column(JSONType, nullable=True)
