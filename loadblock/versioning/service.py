import logging
from typing import List, Optional
from uuid import UUID

from loadblock.documents.renderer import DocumentRenderer
from loadblock.documents.store import DocumentStore, content_hash
from loadblock.errors import NotFoundError, StorageFailure
from loadblock.ledger.client import LedgerClient
from loadblock.ledger.schemas import ChainVerification, LedgerPayload, VersionEntry
from loadblock.lifecycle.machine import next_status, parse_status
from loadblock.lifecycle.states import BoLStatus
from loadblock.shared.models import utcnow
from loadblock.sync.retry import RetryPolicy
from loadblock.versioning.snapshot import BoLSnapshot, canonical_bytes, load_snapshot

logger = logging.getLogger(__name__)


class VersionChainBuilder:
    """Appends hash-linked versions of a record to the ledger.

    Each commit stores the canonical snapshot (and the rendered document,
    when a renderer is configured) in the document store before the ledger
    write, so by the time a version is visible its blobs are durable.
    Every step is keyed by content hash or by (record, sequence), which
    makes a retried commit land on the same entry.
    """

    def __init__(
        self,
        documents: DocumentStore,
        ledger: LedgerClient,
        renderer: Optional[DocumentRenderer] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.documents = documents
        self.ledger = ledger
        self.renderer = renderer
        self.retry = retry or RetryPolicy()

    async def latest(self, record_id: UUID) -> Optional[VersionEntry]:
        try:
            return await self.retry.call("ledger", "get_latest", lambda: self.ledger.get_latest(record_id))
        except NotFoundError:
            return None

    async def entry(self, record_id: UUID, sequence: int) -> Optional[VersionEntry]:
        try:
            return await self.retry.call(
                "ledger", "get_entry", lambda: self.ledger.get_entry(record_id, sequence)
            )
        except NotFoundError:
            return None

    async def _previous(self, record_id: UUID, sequence: Optional[int]) -> Optional[VersionEntry]:
        if sequence is None:
            return await self.latest(record_id)
        if sequence == 1:
            return None
        return await self.retry.call(
            "ledger", "get_entry", lambda: self.ledger.get_entry(record_id, sequence - 1)
        )

    async def _put(self, data: bytes) -> str:
        digest = content_hash(data)
        stored = await self.retry.call("document store", "put", lambda: self.documents.put(data))
        if stored != digest:
            raise StorageFailure(
                "document store", "put", f"returned hash {stored}, expected {digest}", retriable=False
            )
        return digest

    async def commit_version(
        self,
        record_id: UUID,
        new_status,
        actor_id,
        notes: str,
        snapshot: BoLSnapshot,
        sequence: Optional[int] = None,
    ) -> VersionEntry:
        """Commit ``snapshot`` as the next version of ``record_id``.

        ``sequence`` pins the idempotency key; when omitted the next free
        sequence is used. Content identical to the previous version is not
        stored again.
        """
        new_status = parse_status(new_status)
        previous = await self._previous(record_id, sequence)
        sequence = previous.sequence + 1 if previous else 1

        data = canonical_bytes(snapshot)
        digest = content_hash(data)
        deduplicated = previous is not None and previous.content_hash == digest
        if deduplicated:
            document_hash = previous.document_hash
        else:
            await self._put(data)
            document_hash = None
            if self.renderer is not None:
                document_hash = await self._put(self.renderer.render(snapshot))

        payload = LedgerPayload(
            bol_number=snapshot.bol_number,
            content_hash=digest,
            previous_hash=previous.content_hash if previous else None,
            status=new_status,
            actor_id=str(actor_id) if actor_id is not None else None,
            notes=notes or "",
            document_hash=document_hash,
            created_at=utcnow(),
        )
        tx_id = await self.retry.call(
            "ledger", "submit", lambda: self.ledger.submit(record_id, sequence, payload)
        )
        entry = await self.retry.call("ledger", "get_entry", lambda: self.ledger.get_entry(record_id, sequence))

        logger.info(
            f"Committed {snapshot.bol_number} v{sequence} ({new_status.value}) tx={tx_id} "
            f"hash={digest[:12]}{' (content unchanged)' if deduplicated else ''}"
        )
        return entry

    async def history(self, record_id: UUID) -> List[VersionEntry]:
        return await self.retry.call("ledger", "history", lambda: self.ledger.history(record_id))

    async def load_snapshot(self, entry: VersionEntry) -> BoLSnapshot:
        data = await self.retry.call(
            "document store", "get", lambda: self.documents.get(entry.content_hash)
        )
        return load_snapshot(data)

    async def verify(self, record_id: UUID) -> ChainVerification:
        """Re-check contiguity, hash linkage, status order and stored blobs."""
        entries = await self.history(record_id)
        problems = []
        previous = None
        for index, entry in enumerate(entries, start=1):
            if entry.sequence != index:
                problems.append(f"sequence {entry.sequence} at position {index}")
            expected_previous = previous.content_hash if previous else None
            if entry.previous_hash != expected_previous:
                problems.append(f"v{entry.sequence} previous_hash does not link to v{index - 1}")
            expected_status = next_status(previous.status) if previous else BoLStatus.APPROVED
            if entry.status != expected_status:
                problems.append(
                    f"v{entry.sequence} status {entry.status.value}, expected "
                    f"{expected_status.value if expected_status else 'none'}"
                )
            try:
                data = await self.retry.call(
                    "document store", "get", lambda: self.documents.get(entry.content_hash)
                )
                if content_hash(data) != entry.content_hash:
                    problems.append(f"v{entry.sequence} snapshot blob does not match its hash")
            except NotFoundError:
                problems.append(f"v{entry.sequence} snapshot blob {entry.content_hash} missing")
            except StorageFailure as e:
                if e.retriable:
                    raise
                problems.append(f"v{entry.sequence} snapshot blob unreadable: {e}")
            if entry.document_hash and not await self.documents.exists(entry.document_hash):
                problems.append(f"v{entry.sequence} rendered document {entry.document_hash} missing")
            previous = entry

        latest = entries[-1]
        if problems:
            logger.warning(f"Chain verification of {record_id} found {len(problems)} problem(s)")
        return ChainVerification(
            record_id=record_id,
            length=len(entries),
            valid=not problems,
            latest_status=latest.status,
            latest_hash=latest.content_hash,
            problems=problems,
        )
