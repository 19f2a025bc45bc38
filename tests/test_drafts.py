import pytest
from datetime import date
from decimal import Decimal
from itertools import permutations

from loadblock.drafts.models import HistoryAction, NoteType
from loadblock.drafts.schemas import (
    CargoLineResponse,
    CargoLineUpdate,
    DraftResponse,
    FreightChargeIn,
    FreightChargeResponse,
    HistoryEntryResponse,
    NoteCreate,
    NoteResponse,
)
from loadblock.drafts.service import compute_totals
from loadblock.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from loadblock.lifecycle.states import BoLStatus
from factories import approved_draft, cargo, draft_create


def assert_totals_match_lines(draft):
    lines = draft.cargo_lines
    assert draft.total_weight == sum((line.weight for line in lines), Decimal("0"))
    assert draft.total_value == sum((line.value for line in lines), Decimal("0"))
    assert draft.total_pieces == sum(line.quantity for line in lines)


def test_compute_totals_quantizes_to_cents():
    class Line:
        def __init__(self, quantity, weight, value):
            self.quantity, self.weight, self.value = quantity, weight, value

    totals = compute_totals([Line(2, "1.005", "10"), Line(3, "2", "0.5")])
    assert totals == {"total_weight": Decimal("3.00"), "total_value": Decimal("10.50"), "total_pieces": 5}
    assert compute_totals([]) == {"total_weight": Decimal("0.00"), "total_value": Decimal("0.00"), "total_pieces": 0}


@pytest.mark.asyncio
async def test_create_draft_derives_totals(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(
        draft_create(parties, lines=[cargo(), cargo(quantity=2, weight="40.5", value="99.99")]),
        created_by=parties["shipper_id"],
    )

    response = DraftResponse.model_validate(draft)
    assert response.status == BoLStatus.PENDING
    assert response.version == 1
    assert response.total_pieces == 12
    assert response.total_weight == Decimal("540.50")
    assert response.total_value == Decimal("10099.99")
    assert [line.line_order for line in draft.cargo_lines] == [1, 2]
    lines = [CargoLineResponse.model_validate(line) for line in await orchestrator.drafts.list_cargo_lines(draft.id)]
    assert [line.quantity for line in lines] == [10, 2]

    history = await orchestrator.drafts.list_history(draft.id)
    assert [HistoryEntryResponse.model_validate(h).action for h in history] == [HistoryAction.CREATED]


@pytest.mark.asyncio
@pytest.mark.parametrize("order", list(permutations(["insert", "update", "delete"])))
async def test_totals_follow_every_cargo_mutation(orchestrator, parties, order):
    store = orchestrator.drafts
    draft = await store.create_draft(
        draft_create(parties, lines=[cargo(quantity=1, weight="10", value="100"),
                                     cargo(quantity=2, weight="20", value="200")])
    )
    version = draft.version
    first_id = draft.cargo_lines[0].id
    second_id = draft.cargo_lines[1].id

    for step in order:
        if step == "insert":
            await store.add_cargo_line(draft.id, version, cargo(quantity=5, weight="12.25", value="7.75"))
        elif step == "update":
            await store.update_cargo_line(draft.id, version, first_id,
                                          CargoLineUpdate(quantity=4, weight=Decimal("33.3")))
        else:
            await store.remove_cargo_line(draft.id, version, second_id)
        draft = await store.get(draft.id)
        version = draft.version
        assert_totals_match_lines(draft)

    assert draft.total_pieces == 9
    assert draft.total_weight == Decimal("45.55")
    assert draft.total_value == Decimal("107.75")


@pytest.mark.asyncio
async def test_stale_version_is_rejected(orchestrator, parties):
    store = orchestrator.drafts
    draft = await store.create_draft(draft_create(parties))
    await store.update(draft.id, 1, {"special_instructions": "Dock 4"})

    with pytest.raises(ConflictError) as exc:
        await store.update(draft.id, 1, {"special_instructions": "Dock 7"})
    assert exc.value.current_version == 2
    assert exc.value.retriable

    draft = await store.get(draft.id)
    assert draft.special_instructions == "Dock 4"


@pytest.mark.asyncio
async def test_noop_patch_keeps_version(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties, special_instructions="Dock 4"))
    same = await orchestrator.drafts.update(draft.id, 1, {"special_instructions": "Dock 4"})
    assert same.version == 1


@pytest.mark.asyncio
async def test_edit_after_quorum_clears_both_approvals(orchestrator, parties):
    draft = await approved_draft(orchestrator, parties)
    assert draft.quorum

    edited = await orchestrator.drafts.update(draft.id, draft.version, {"pickup_date": date(2026, 11, 2)})

    assert edited.shipper_approved is False
    assert edited.carrier_approved is False
    assert edited.shipper_approved_at is None
    assert edited.status == BoLStatus.PENDING
    actions = [h.action for h in await orchestrator.drafts.list_history(draft.id)]
    assert HistoryAction.APPROVALS_INVALIDATED in actions


@pytest.mark.asyncio
@pytest.mark.parametrize("mutation", ["add_line", "update_line", "remove_line", "charges", "party"])
async def test_every_content_mutation_invalidates_approvals(orchestrator, parties, mutation):
    store = orchestrator.drafts
    draft = await approved_draft(orchestrator, parties, lines=[cargo(), cargo(quantity=1)])
    line_id = draft.cargo_lines[0].id

    if mutation == "add_line":
        await store.add_cargo_line(draft.id, draft.version, cargo(quantity=3))
    elif mutation == "update_line":
        await store.update_cargo_line(draft.id, draft.version, line_id, CargoLineUpdate(value=Decimal("1")))
    elif mutation == "remove_line":
        await store.remove_cargo_line(draft.id, draft.version, line_id)
    elif mutation == "charges":
        await store.set_freight_charges(draft.id, draft.version, FreightChargeIn(base_rate=Decimal("1200")))
    else:
        await store.update(draft.id, draft.version, {"broker_id": None})

    state = await orchestrator.approvals.get_approval_state(draft.id)
    assert not state.shipper_approved
    assert not state.carrier_approved
    assert not state.quorum


@pytest.mark.asyncio
async def test_freight_total_is_recomputed_from_parts(orchestrator, parties):
    store = orchestrator.drafts
    draft = await store.create_draft(draft_create(parties))
    charge = await store.set_freight_charges(
        draft.id, 1,
        FreightChargeIn(base_rate=Decimal("1200"), fuel_surcharge=Decimal("180.50"),
                        accessorial_charges=Decimal("75.25")),
    )
    assert charge.total_charges == Decimal("1455.75")
    assert FreightChargeResponse.model_validate(charge).payment_terms == "prepaid"

    charge = await store.set_freight_charges(draft.id, 2, FreightChargeIn(base_rate=Decimal("1000")))
    assert charge.total_charges == Decimal("1000.00")


@pytest.mark.asyncio
async def test_notes_do_not_touch_content_or_approvals(orchestrator, parties):
    draft = await approved_draft(orchestrator, parties)
    await orchestrator.drafts.add_note(draft.id, NoteCreate(content="Call before arrival",
                                                            note_type=NoteType.DELIVERY),
                                       created_by=parties["consignee_id"])

    after = await orchestrator.drafts.get(draft.id)
    assert after.version == draft.version
    assert after.quorum
    notes = await orchestrator.drafts.list_notes(draft.id)
    assert [NoteResponse.model_validate(n).content for n in notes] == ["Call before arrival"]


@pytest.mark.asyncio
async def test_missing_cargo_line_is_not_found(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    with pytest.raises(NotFoundError):
        await orchestrator.drafts.remove_cargo_line(draft.id, 1, parties["broker_id"])


@pytest.mark.asyncio
async def test_soft_deleted_draft_disappears(orchestrator, parties):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    await orchestrator.drafts.soft_delete(draft.id, 1)

    with pytest.raises(NotFoundError):
        await orchestrator.drafts.get(draft.id)
    deleted = await orchestrator.drafts.get(draft.id, include_deleted=True)
    assert deleted.is_active is False


@pytest.mark.asyncio
async def test_activated_draft_is_read_only(orchestrator, parties):
    draft = await approved_draft(orchestrator, parties)
    await orchestrator.activate(draft.id)

    with pytest.raises(InvalidStateError):
        await orchestrator.drafts.update(draft.id, None, {"special_instructions": "late edit"})


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["description", "quantity", "weight", "value"])
async def test_required_cargo_fields_cannot_be_cleared(orchestrator, parties, field):
    draft = await orchestrator.drafts.create_draft(draft_create(parties))
    line_id = draft.cargo_lines[0].id

    with pytest.raises(ValidationError) as exc:
        await orchestrator.drafts.update_cargo_line(draft.id, 1, line_id, CargoLineUpdate(**{field: None}))
    assert exc.value.field == field

    draft = await orchestrator.drafts.get(draft.id)
    assert draft.version == 1
    assert_totals_match_lines(draft)


@pytest.mark.asyncio
async def test_cargo_update_without_changes_is_a_noop(orchestrator, parties):
    store = orchestrator.drafts
    draft = await approved_draft(orchestrator, parties)
    version = draft.version
    line_id = draft.cargo_lines[0].id
    quantity = draft.cargo_lines[0].quantity

    await store.update_cargo_line(draft.id, version, line_id, CargoLineUpdate())
    await store.update_cargo_line(draft.id, version, line_id, CargoLineUpdate(quantity=quantity))

    after = await store.get(draft.id)
    assert after.version == version
    assert after.quorum
    actions = [h.action for h in await store.list_history(draft.id)]
    assert HistoryAction.CARGO_UPDATED not in actions
