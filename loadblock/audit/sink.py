import logging
from typing import List, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select

from loadblock.audit.models import AuditEvent
from loadblock.audit.schemas import AuditEventResponse, TransitionEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class AuditSink(Protocol):
    """Fire-and-forget receiver of committed lifecycle events."""

    async def emit(self, event: TransitionEvent) -> None:
        ...


class LoggingAuditSink:
    async def emit(self, event: TransitionEvent) -> None:
        logger.info(
            f"{event.event.value} record={event.record_id} draft={event.draft_id} "
            f"{event.from_status} -> {event.to_status} by {event.actor_id}"
        )


class DatabaseAuditSink:
    """Persists events to ``audit_events`` in a session of its own, outside
    the caller's transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def emit(self, event: TransitionEvent) -> None:
        async with self.session_factory() as session:
            session.add(AuditEvent(
                event_type=event.event,
                record_id=event.record_id,
                draft_id=event.draft_id,
                actor_id=event.actor_id,
                from_status=event.from_status,
                to_status=event.to_status,
                detail=event.detail,
                created_at=event.timestamp,
            ))
            await session.commit()

    async def list_events(self, record_id: UUID) -> List[AuditEventResponse]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditEvent)
                .where(AuditEvent.record_id == record_id)
                .order_by(AuditEvent.created_at)
            )
            return [AuditEventResponse.model_validate(row) for row in result.scalars().all()]
