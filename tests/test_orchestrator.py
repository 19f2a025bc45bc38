import asyncio
import logging
import pytest
from datetime import date
from unittest.mock import AsyncMock, patch
from uuid import uuid4

from sqlalchemy import select

from loadblock.audit.models import AuditEventType
from loadblock.audit.sink import DatabaseAuditSink, LoggingAuditSink
from loadblock.drafts.models import DraftRecord, DraftSyncState, HistoryAction, NoteType
from loadblock.drafts.schemas import CargoLineUpdate
from loadblock.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageFailure,
    ValidationError,
)
from loadblock.lifecycle.states import BoLStatus
from loadblock.sync.models import ImmutableRecord
from loadblock.sync.orchestrator import SynchronizationOrchestrator
from factories import FailingAuditSink, activated_record, approved_draft, cargo, draft_create, fast_retry


@pytest.mark.asyncio
async def test_create_approve_activate_end_to_end(orchestrator, parties, ledger, audit_sink):
    draft = await orchestrator.drafts.create_draft(
        draft_create(parties, lines=[cargo(quantity=10, weight="500", value="10000")]),
        created_by=parties["shipper_id"],
    )
    await orchestrator.approvals.record_approval(draft.id, "shipper")
    await orchestrator.approvals.record_approval(draft.id, "carrier")

    record = await orchestrator.activate(draft.id, actor_id=parties["shipper_id"])

    assert record.bol_number == f"BOL-{date.today().year}-000001"
    history = await orchestrator.history(record.id)
    assert len(history) == 1
    assert history[0].sequence == 1
    assert history[0].status == BoLStatus.APPROVED
    assert history[0].previous_hash is None
    assert record.genesis_tx_id == history[0].tx_id

    mirror = await orchestrator.drafts.get(draft.id)
    assert mirror.status == BoLStatus.APPROVED
    assert mirror.sync_state == DraftSyncState.ACTIVATED
    assert mirror.immutable_record_id == record.id
    assert mirror.bol_number == record.bol_number
    assert [e.event for e in audit_sink.events] == [AuditEventType.BOL_ACTIVATED]


@pytest.mark.asyncio
async def test_activation_requires_quorum_and_names_what_is_missing(orchestrator, parties, ledger):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    await orchestrator.approvals.record_approval(draft.id, "shipper")

    with pytest.raises(InvalidStateError, match="carrier approval missing"):
        await orchestrator.activate(draft.id)

    draft = await orchestrator.drafts.get(draft.id)
    assert draft.status == BoLStatus.PENDING
    assert draft.sync_state == DraftSyncState.OPEN
    assert ledger.submit_count == 0


@pytest.mark.asyncio
async def test_bol_numbers_are_sequential_per_year(orchestrator, parties):
    first = await activated_record(orchestrator, parties)
    second = await activated_record(orchestrator, parties)
    year = date.today().year
    assert (first.bol_number, second.bol_number) == (f"BOL-{year}-000001", f"BOL-{year}-000002")


@pytest.mark.asyncio
async def test_activate_is_at_most_once(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)

    winner, loser = await asyncio.gather(orchestrator.activate(draft.id), orchestrator.activate(draft.id))

    assert winner.id == loser.id
    assert ledger.submit_count == 1
    rows = (await orchestrator.db.execute(select(ImmutableRecord))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_submit_approval_activates_on_quorum(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))

    first = await orchestrator.submit_approval(draft.id, "shipper", actor_id=parties["shipper_id"])
    assert first.record is None

    second = await orchestrator.submit_approval(draft.id, "carrier", actor_id=parties["carrier_id"])
    assert second.state.quorum
    assert second.record is not None
    assert second.record.current_status == BoLStatus.APPROVED


@pytest.mark.asyncio
async def test_submit_approval_checks_the_actor_holds_the_party_slot(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    with pytest.raises(PermissionDeniedError):
        await orchestrator.submit_approval(draft.id, "carrier", actor_id=parties["shipper_id"])


@pytest.mark.asyncio
async def test_activation_failure_unfreezes_and_keeps_approvals(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)

    with patch.object(ledger, "submit", AsyncMock(side_effect=StorageFailure("ledger", "submit", "down"))):
        with pytest.raises(StorageFailure) as exc:
            await orchestrator.activate(draft.id)
    assert exc.value.retriable

    draft = await orchestrator.drafts.get(draft.id)
    assert draft.status == BoLStatus.PENDING
    assert draft.sync_state == DraftSyncState.OPEN
    assert draft.quorum
    reserved_number = draft.bol_number
    reserved_id = draft.immutable_record_id
    assert (await orchestrator.db.execute(select(ImmutableRecord))).scalars().all() == []

    record = await orchestrator.activate(draft.id)
    assert record.bol_number == reserved_number
    assert record.id == reserved_id


@pytest.mark.asyncio
async def test_activation_retries_transient_ledger_failures(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)
    real_submit = ledger.submit
    calls = []

    async def flaky_submit(*args):
        calls.append(args)
        if len(calls) == 1:
            raise StorageFailure("ledger", "submit", "connection reset")
        return await real_submit(*args)

    with patch.object(ledger, "submit", flaky_submit):
        record = await orchestrator.activate(draft.id)

    assert len(calls) == 2
    assert record.current_sequence == 1


@pytest.mark.asyncio
async def test_timed_out_commit_that_landed_is_adopted(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)
    real_submit = ledger.submit

    async def commit_then_time_out(*args):
        await real_submit(*args)
        raise StorageFailure("ledger", "submit", "timed out")

    orchestrator.chain.retry = fast_retry(max_attempts=1)
    with patch.object(ledger, "submit", commit_then_time_out):
        record = await orchestrator.activate(draft.id)

    history = await orchestrator.history(record.id)
    assert len(history) == 1
    assert record.genesis_tx_id == history[0].tx_id
    assert (await orchestrator.activate(draft.id)).id == record.id


@pytest.mark.asyncio
async def test_timed_out_commit_never_reopens_the_draft_for_edits(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)
    draft_id = draft.id
    line_id = draft.cargo_lines[0].id
    real_submit = ledger.submit

    async def commit_then_time_out(*args):
        await real_submit(*args)
        raise StorageFailure("ledger", "submit", "timed out")

    orchestrator.chain.retry = fast_retry(max_attempts=1)
    with patch.object(ledger, "submit", commit_then_time_out):
        record = await orchestrator.activate(draft_id)

    draft = await orchestrator.drafts.get(draft_id)
    with pytest.raises(InvalidStateError):
        await orchestrator.drafts.update_cargo_line(draft_id, draft.version, line_id, CargoLineUpdate(quantity=99))

    genesis = (await orchestrator.history(record.id))[0]
    snapshot = await orchestrator.chain.load_snapshot(genesis)
    assert [line.quantity for line in snapshot.cargo_lines] == [line.quantity for line in draft.cargo_lines]


@pytest.mark.asyncio
async def test_unreadable_ledger_keeps_a_failed_activation_frozen(orchestrator, parties, ledger):
    draft = await approved_draft(orchestrator, parties)
    draft_id = draft.id
    line_id = draft.cargo_lines[0].id
    down = AsyncMock(side_effect=StorageFailure("ledger", "submit", "timed out"))

    orchestrator.chain.retry = fast_retry(max_attempts=1)
    with patch.object(ledger, "submit", down), patch.object(ledger, "get_entry", down):
        with pytest.raises(StorageFailure):
            await orchestrator.activate(draft_id)

    draft = await orchestrator.drafts.get(draft_id)
    assert draft.sync_state == DraftSyncState.ACTIVATING
    assert draft.quorum
    with pytest.raises(InvalidStateError):
        await orchestrator.drafts.update_cargo_line(draft_id, draft.version, line_id, CargoLineUpdate(quantity=99))

    record = await orchestrator.activate(draft_id)
    assert record.current_status == BoLStatus.APPROVED
    assert ledger.submit_count == 1


@pytest.mark.asyncio
async def test_advance_to_assigned_and_client_retry(orchestrator, parties, ledger):
    record = await activated_record(orchestrator, parties)
    carrier = parties["carrier_id"]

    entry = await orchestrator.advance(record.id, "assigned", carrier, "")
    assert entry.sequence == 2
    genesis = (await orchestrator.history(record.id))[0]
    assert entry.previous_hash == genesis.content_hash

    again = await orchestrator.advance(record.id, "assigned", carrier, "")
    assert again.tx_id == entry.tx_id
    assert len(await orchestrator.history(record.id)) == 2
    assert ledger.submit_count == 2

    record = await orchestrator.get_record(record.id)
    assert record.current_status == BoLStatus.ASSIGNED
    assert record.current_sequence == 2


@pytest.mark.asyncio
async def test_full_lifecycle_to_paid(orchestrator, parties, documents):
    record = await activated_record(orchestrator, parties)
    carrier, shipper = parties["carrier_id"], parties["shipper_id"]
    steps = [("assigned", carrier), ("accepted", carrier), ("picked_up", carrier), ("en_route", carrier),
             ("delivered", parties["consignee_id"]), ("unpaid", carrier), ("paid", shipper)]
    for target, actor in steps:
        await orchestrator.advance(record.id, target, actor, f"moving to {target}")

    history = await orchestrator.history(record.id)
    assert [e.sequence for e in history] == list(range(1, 9))
    assert history[-1].status == BoLStatus.PAID
    # only delivery changes content (delivery date stamped)
    assert len({e.content_hash for e in history}) == 2
    assert documents.put_count == 2
    assert (await orchestrator.verify(record.id)).valid

    mirror = await orchestrator.drafts.get(record.draft_id)
    assert mirror.status == BoLStatus.PAID
    assert mirror.delivery_date is not None

    with pytest.raises(InvalidTransitionError):
        await orchestrator.advance(record.id, "pending", shipper, "")


@pytest.mark.asyncio
async def test_skipping_or_going_back_fails_without_new_version(orchestrator, parties):
    record = await activated_record(orchestrator, parties)
    carrier = parties["carrier_id"]

    with pytest.raises(InvalidTransitionError) as exc:
        await orchestrator.advance(record.id, "delivered", carrier, "")
    assert exc.value.allowed == ["assigned"]

    await orchestrator.advance(record.id, "assigned", carrier, "")
    with pytest.raises(InvalidTransitionError):
        await orchestrator.advance(record.id, "approved", carrier, "")
    assert len(await orchestrator.history(record.id)) == 2


@pytest.mark.asyncio
async def test_advance_on_pending_draft_is_an_invalid_transition(orchestrator, parties, ledger):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))

    with pytest.raises(InvalidTransitionError):
        await orchestrator.advance(draft.id, "delivered", parties["carrier_id"], "")
    assert ledger.submit_count == 0


@pytest.mark.asyncio
async def test_advance_unknown_record(orchestrator, parties):
    with pytest.raises(NotFoundError):
        await orchestrator.advance(uuid4(), "assigned", parties["carrier_id"], "")


@pytest.mark.asyncio
async def test_advance_requires_an_entitled_role(orchestrator, parties):
    record = await activated_record(orchestrator, parties)
    with pytest.raises(PermissionDeniedError):
        await orchestrator.advance(record.id, "assigned", parties["consignee_id"], "")
    with pytest.raises(PermissionDeniedError):
        await orchestrator.advance(record.id, "assigned", uuid4(), "")
    assert len(await orchestrator.history(record.id)) == 1


@pytest.mark.asyncio
async def test_admin_may_trigger_any_edge(db_session, documents, ledger, parties):
    admin = uuid4()
    orch = SynchronizationOrchestrator(db_session, documents, ledger, retry=fast_retry(), admin_ids=[str(admin)])
    record = await activated_record(orch, parties)

    assert await orch.next_actions(record.id, admin) == [BoLStatus.ASSIGNED]
    entry = await orch.advance(record.id, "assigned", admin, "dispatched by ops")
    assert entry.actor_id == str(admin)


@pytest.mark.asyncio
async def test_concurrent_advances_from_the_same_status(orchestrator, parties):
    record = await activated_record(orchestrator, parties)
    carrier = parties["carrier_id"]

    results = await asyncio.gather(
        orchestrator.advance(record.id, "assigned", carrier, ""),
        orchestrator.advance(record.id, "assigned", parties["broker_id"], ""),
        return_exceptions=True,
    )

    assert results[0].sequence == 2
    assert isinstance(results[1], InvalidTransitionError)
    assert [e.sequence for e in await orchestrator.history(record.id)] == [1, 2]


@pytest.mark.asyncio
async def test_ledger_failure_during_advance_is_safely_retried(orchestrator, parties, ledger, documents):
    record = await activated_record(orchestrator, parties)
    orchestrator.chain.retry = fast_retry(max_attempts=1)

    with patch.object(ledger, "submit", AsyncMock(side_effect=StorageFailure("ledger", "submit", "down"))):
        with pytest.raises(StorageFailure):
            await orchestrator.advance(record.id, "assigned", parties["carrier_id"], "")

    assert len(await orchestrator.history(record.id)) == 1
    assert (await orchestrator.get_record(record.id)).current_status == BoLStatus.APPROVED

    entry = await orchestrator.advance(record.id, "assigned", parties["carrier_id"], "")
    assert entry.sequence == 2


@pytest.mark.asyncio
async def test_reject_pending_draft(orchestrator, parties, audit_sink):
    draft = await approved_draft(orchestrator, parties)

    with pytest.raises(ValidationError):
        await orchestrator.reject(draft.id, parties["carrier_id"], "missing_information", "too short")

    entry = await orchestrator.reject(
        draft.id, parties["carrier_id"], "missing_information", "Consignee dock hours are missing"
    )
    assert entry.action == HistoryAction.REJECTED
    assert entry.detail["reason"] == "[Missing Information] Consignee dock hours are missing"

    after = await orchestrator.drafts.get(draft.id)
    assert after.status == BoLStatus.PENDING
    assert after.quorum
    assert after.version == draft.version
    notes = await orchestrator.drafts.list_notes(draft.id)
    assert [n.note_type for n in notes] == [NoteType.ISSUE]

    event = audit_sink.events[-1]
    assert event.event == AuditEventType.BOL_REJECTED
    assert event.detail["notify"] == str(parties["shipper_id"])


@pytest.mark.asyncio
async def test_reject_requires_pending_and_a_party(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    with pytest.raises(PermissionDeniedError):
        await orchestrator.reject(draft.id, uuid4(), "other", "Not my shipment at all")

    record = await activated_record(orchestrator, parties)
    with pytest.raises(InvalidStateError):
        await orchestrator.reject(record.draft_id, parties["carrier_id"], "other", "Too late to reject this")


@pytest.mark.asyncio
async def test_reconcile_ledger_wins(orchestrator, parties, db_session):
    record = await activated_record(orchestrator, parties)
    await orchestrator.advance(record.id, "assigned", parties["carrier_id"], "")

    # simulate a mirror that fell behind
    draft = await db_session.get(DraftRecord, record.draft_id)
    draft.status = BoLStatus.APPROVED
    record.current_status = BoLStatus.APPROVED
    record.current_sequence = 1
    await db_session.commit()

    result = await orchestrator.reconcile(record.id)
    assert result.changed
    assert result.mirror_status == BoLStatus.APPROVED
    assert result.ledger_status == BoLStatus.ASSIGNED

    record = await orchestrator.get_record(record.id)
    assert record.current_status == BoLStatus.ASSIGNED
    assert record.current_sequence == 2
    assert (await orchestrator.drafts.get(record.draft_id)).status == BoLStatus.ASSIGNED

    again = await orchestrator.reconcile(record.id)
    assert not again.changed


@pytest.mark.asyncio
async def test_reconcile_materializes_record_missing_after_activation(orchestrator, parties, db_session):
    draft = await approved_draft(orchestrator, parties)
    draft_id = draft.id
    real_commit = db_session.commit
    failures = []

    async def commit_fails_after_ledger():
        if orchestrator.chain.ledger.submit_count == 1 and not failures:
            failures.append(True)
            await db_session.rollback()
            raise ConnectionError("database went away")
        await real_commit()

    with patch.object(db_session, "commit", commit_fails_after_ledger):
        with pytest.raises(ConnectionError):
            await orchestrator.activate(draft_id)

    draft = await orchestrator.drafts.get(draft_id)
    assert draft.sync_state == DraftSyncState.ACTIVATING
    record_id = draft.immutable_record_id

    result = await orchestrator.reconcile(record_id)
    assert result.materialized
    assert result.ledger_status == BoLStatus.APPROVED

    record = await orchestrator.get_record(record_id)
    assert record.draft_id == draft_id
    draft = await orchestrator.drafts.get(draft_id)
    assert draft.status == BoLStatus.APPROVED
    assert draft.sync_state == DraftSyncState.ACTIVATED


@pytest.mark.asyncio
async def test_reconcile_releases_a_stuck_activation(orchestrator, parties, db_session):
    draft = await approved_draft(orchestrator, parties)
    draft, _ = await orchestrator._freeze(draft.id)

    result = await orchestrator.reconcile(draft.immutable_record_id)
    assert result.unfrozen
    assert (await orchestrator.drafts.get(draft.id)).sync_state == DraftSyncState.OPEN


@pytest.mark.asyncio
async def test_sink_failure_never_blocks_a_transition(db_session, documents, ledger, parties):
    orch = SynchronizationOrchestrator(db_session, documents, ledger, retry=fast_retry(),
                                       audit_sink=FailingAuditSink(), admin_ids=[])
    record = await activated_record(orch, parties)
    entry = await orch.advance(record.id, "assigned", parties["carrier_id"], "")
    assert entry.sequence == 2


@pytest.mark.asyncio
async def test_slow_sink_is_cut_off(db_session, documents, ledger, parties):
    class HangingSink:
        async def emit(self, event):
            await asyncio.sleep(60)

    orch = SynchronizationOrchestrator(db_session, documents, ledger, retry=fast_retry(),
                                       audit_sink=HangingSink(), admin_ids=[])
    with patch("loadblock.sync.orchestrator.settings.AUDIT_SINK_TIMEOUT_SECONDS", 0.05):
        record = await activated_record(orch, parties)
    assert record.current_status == BoLStatus.APPROVED


@pytest.mark.asyncio
async def test_database_sink_persists_events(session_factory, db_session, documents, ledger, parties):
    sink = DatabaseAuditSink(session_factory)
    orch = SynchronizationOrchestrator(db_session, documents, ledger, retry=fast_retry(),
                                       audit_sink=sink, admin_ids=[])
    record = await activated_record(orch, parties)
    await orch.advance(record.id, "assigned", parties["carrier_id"], "")

    events = await sink.list_events(record.id)
    assert [e.event_type for e in events] == [AuditEventType.BOL_ACTIVATED, AuditEventType.BOL_STATUS_CHANGED]
    assert events[1].from_status == "approved"
    assert events[1].to_status == "assigned"


@pytest.mark.asyncio
async def test_logging_sink_writes_transitions(db_session, documents, ledger, parties, caplog):
    orch = SynchronizationOrchestrator(db_session, documents, ledger, retry=fast_retry(),
                                       audit_sink=LoggingAuditSink(), admin_ids=[])
    with caplog.at_level(logging.INFO, logger="loadblock.audit.sink"):
        record = await activated_record(orch, parties)

    assert any("BOL_ACTIVATED" in message and str(record.id) in message for message in caplog.messages)
