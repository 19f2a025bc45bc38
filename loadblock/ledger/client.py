"""
Ledger clients.

The ledger is an append-only log of ``VersionEntry`` nodes keyed by
``(record_id, sequence)``. ``submit`` is idempotent on that key: resending
the same write returns the original transaction id, while a different
write for an occupied key raises ``LedgerConflictError``. Sequences must be
contiguous and each entry must link to its predecessor's hash.
"""
import hashlib
import logging
from typing import Dict, List, Optional, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, Uuid, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from loadblock.errors import LedgerConflictError, NotFoundError, StorageFailure
from loadblock.ledger.schemas import LedgerPayload, VersionEntry

logger = logging.getLogger(__name__)


def transaction_id(record_id, sequence: int, payload: LedgerPayload) -> str:
    """Deterministic tx id: the same write always maps to the same id."""
    material = "|".join([str(record_id), str(sequence), *(str(p) for p in payload.fingerprint())])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def check_append(record_id, sequence: int, payload: LedgerPayload, latest: Optional[VersionEntry]) -> None:
    """Enforce a strictly linear chain: contiguous sequence, linked hash."""
    expected_sequence = (latest.sequence + 1) if latest else 1
    if sequence != expected_sequence:
        raise LedgerConflictError(
            record_id, sequence,
            f"Ledger for {record_id} expects sequence {expected_sequence}, got {sequence}",
        )
    expected_previous = latest.content_hash if latest else None
    if payload.previous_hash != expected_previous:
        raise LedgerConflictError(
            record_id, sequence,
            f"Entry {record_id}#{sequence} does not link to the previous hash {expected_previous}",
        )


def check_replay(existing: VersionEntry, payload: LedgerPayload) -> str:
    if existing.fingerprint() != payload.fingerprint():
        raise LedgerConflictError(existing.record_id, existing.sequence)
    logger.info(f"Ledger replay of {existing.record_id}#{existing.sequence} returns tx {existing.tx_id}")
    return existing.tx_id


@runtime_checkable
class LedgerClient(Protocol):
    async def submit(self, record_id: UUID, sequence: int, payload: LedgerPayload) -> str:
        ...

    async def get_latest(self, record_id: UUID) -> VersionEntry:
        ...

    async def get_entry(self, record_id: UUID, sequence: int) -> VersionEntry:
        ...

    async def history(self, record_id: UUID) -> List[VersionEntry]:
        ...


class InMemoryLedger:
    """Arena of version entries per record, indexed by ``sequence - 1``."""

    def __init__(self):
        self._chains: Dict[UUID, List[VersionEntry]] = {}
        self.submit_count = 0  # accepted appends, excluding replays

    async def submit(self, record_id: UUID, sequence: int, payload: LedgerPayload) -> str:
        chain = self._chains.setdefault(record_id, [])
        if 1 <= sequence <= len(chain):
            return check_replay(chain[sequence - 1], payload)
        check_append(record_id, sequence, payload, chain[-1] if chain else None)

        tx_id = transaction_id(record_id, sequence, payload)
        chain.append(VersionEntry.from_payload(record_id, sequence, payload, tx_id))
        self.submit_count += 1
        return tx_id

    async def get_latest(self, record_id: UUID) -> VersionEntry:
        chain = self._chains.get(record_id)
        if not chain:
            raise NotFoundError("Ledger record", record_id)
        return chain[-1]

    async def get_entry(self, record_id: UUID, sequence: int) -> VersionEntry:
        chain = self._chains.get(record_id, [])
        if not 1 <= sequence <= len(chain):
            raise NotFoundError("Ledger entry", f"{record_id}#{sequence}")
        return chain[sequence - 1]

    async def history(self, record_id: UUID) -> List[VersionEntry]:
        chain = self._chains.get(record_id)
        if not chain:
            raise NotFoundError("Ledger record", record_id)
        return list(chain)


LedgerBase = declarative_base()


class LedgerEntryRow(LedgerBase):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("record_id", "sequence", name="uq_ledger_record_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    bol_number = Column(String(50), nullable=False)
    content_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False)
    actor_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=False, default="")
    document_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)
    tx_id = Column(String(64), nullable=False, unique=True)


class SqlLedger:
    """Append-only ledger table in its own database.

    Rows are only ever inserted. The unique (record_id, sequence) constraint
    is the atomic-commit guarantee: of two concurrent writers for the same
    key, one insert fails and is resolved as a replay or a conflict.
    """

    def __init__(self, session_factory, engine=None):
        self.session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "SqlLedger":
        engine = create_async_engine(url, echo=False, **engine_kwargs)
        factory = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        return cls(factory, engine=engine)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(LedgerBase.metadata.create_all)

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    @staticmethod
    def _to_entry(row: LedgerEntryRow) -> VersionEntry:
        return VersionEntry.model_validate(row)

    async def _entry(self, session, record_id: UUID, sequence: int) -> Optional[VersionEntry]:
        result = await session.execute(
            select(LedgerEntryRow).where(
                LedgerEntryRow.record_id == record_id,
                LedgerEntryRow.sequence == sequence,
            )
        )
        row = result.scalar_one_or_none()
        return self._to_entry(row) if row else None

    async def _latest(self, session, record_id: UUID) -> Optional[VersionEntry]:
        result = await session.execute(
            select(LedgerEntryRow)
            .where(LedgerEntryRow.record_id == record_id)
            .order_by(LedgerEntryRow.sequence.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._to_entry(row) if row else None

    async def submit(self, record_id: UUID, sequence: int, payload: LedgerPayload) -> str:
        try:
            async with self.session_factory() as session:
                existing = await self._entry(session, record_id, sequence)
                if existing:
                    return check_replay(existing, payload)
                check_append(record_id, sequence, payload, await self._latest(session, record_id))

                tx_id = transaction_id(record_id, sequence, payload)
                session.add(LedgerEntryRow(
                    record_id=record_id,
                    sequence=sequence,
                    tx_id=tx_id,
                    bol_number=payload.bol_number,
                    content_hash=payload.content_hash,
                    previous_hash=payload.previous_hash,
                    status=payload.status.value,
                    actor_id=payload.actor_id,
                    notes=payload.notes,
                    document_hash=payload.document_hash,
                    created_at=payload.created_at,
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost the race for this key; the winner's row decides
                    await session.rollback()
                    existing = await self._entry(session, record_id, sequence)
                    if existing is None:
                        raise
                    return check_replay(existing, payload)
                return tx_id
        except SQLAlchemyError as e:
            raise StorageFailure("ledger", "submit", str(e))

    async def get_latest(self, record_id: UUID) -> VersionEntry:
        try:
            async with self.session_factory() as session:
                entry = await self._latest(session, record_id)
        except SQLAlchemyError as e:
            raise StorageFailure("ledger", "get_latest", str(e))
        if entry is None:
            raise NotFoundError("Ledger record", record_id)
        return entry

    async def get_entry(self, record_id: UUID, sequence: int) -> VersionEntry:
        try:
            async with self.session_factory() as session:
                entry = await self._entry(session, record_id, sequence)
        except SQLAlchemyError as e:
            raise StorageFailure("ledger", "get_entry", str(e))
        if entry is None:
            raise NotFoundError("Ledger entry", f"{record_id}#{sequence}")
        return entry

    async def history(self, record_id: UUID) -> List[VersionEntry]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LedgerEntryRow)
                    .where(LedgerEntryRow.record_id == record_id)
                    .order_by(LedgerEntryRow.sequence)
                )
                entries = [self._to_entry(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageFailure("ledger", "history", str(e))
        if not entries:
            raise NotFoundError("Ledger record", record_id)
        return entries
