import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, JSON, Uuid, Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column(enum_cls, **kwargs):
    """Enum column persisted by member value ('picked_up'), not by name."""
    return SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], **kwargs)


class UUIDMixin:
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

class AuditMixin(UUIDMixin, TimestampMixin):
    """Combines UUID and Timestamps for standard entities."""
    pass
