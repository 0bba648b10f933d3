import pytest

from labslots.core.timeslots import SlotNotFoundError, group_by_day
from tests.factories import create, delete


def test_active_view_is_chronological_and_grouped_by_day(engines):
    late, other_day, early = engines.propose(
        create("14:00", "15:00"),
        create("09:00", "10:00", day="2026-03-03"),
        create("08:00", "09:00"),
    )

    listing = engines.queries.list_slots(entity_id="evt_1")

    assert listing.view == "active"
    assert [slot.slot_id for slot in listing.timeslots] == [
        early.slot_id,
        late.slot_id,
        other_day.slot_id,
    ]
    assert listing.by_day == {
        "2026-03-02": [early.slot_id, late.slot_id],
        "2026-03-03": [other_day.slot_id],
    }


def test_views_filter_by_lifecycle_state(engines):
    first, second, third = engines.propose(
        create("08:00", "09:00"), create("09:00", "10:00"), create("10:00", "11:00")
    )
    engines.validation.approve_one(slot_id=first.slot_id, actor_id="owner_1")
    engines.propose(delete(third.slot_id))

    active = engines.queries.list_slots(entity_id="evt_1", view="active")
    pending = engines.queries.list_slots(entity_id="evt_1", view="pending")
    every = engines.queries.list_slots(entity_id="evt_1", view="all")

    assert [slot.slot_id for slot in active.timeslots] == [first.slot_id, second.slot_id]
    assert [slot.slot_id for slot in pending.timeslots] == [second.slot_id]
    assert len(every.timeslots) == 3


def test_summary_view_counts_states_without_listing(engines):
    first, second = engines.propose(create("08:00", "09:00"), create("09:00", "10:00"))
    engines.validation.reject_one(slot_id=second.slot_id, actor_id="owner_1")
    engines.propose(delete(first.slot_id))
    engines.proposals.restore(slot_id=first.slot_id, actor_id="owner_1")

    listing = engines.queries.list_slots(entity_id="evt_1", view="summary")

    assert listing.timeslots == []
    assert listing.summary.model_dump() == {
        "total": 2,
        "active": 1,
        "pending": 0,
        "approved": 0,
        "rejected": 1,
        "deleted": 0,
        "restored": 1,
    }
    assert engines.queries.summarize(entity_id="evt_1") == listing.summary


def test_unknown_entity_has_an_empty_listing(engines):
    listing = engines.queries.list_slots(entity_id="evt_unknown")

    assert listing.timeslots == []
    assert listing.by_day == {}
    assert listing.summary.total == 0


def test_history_is_ordered_and_requires_a_known_slot(engines):
    (slot,) = engines.propose(create("09:00", "10:00"))
    engines.validation.approve_one(slot_id=slot.slot_id, actor_id="owner_1")

    history = engines.queries.history(slot_id=slot.slot_id)

    assert [entry.action for entry in history] == ["create", "approve"]
    with pytest.raises(SlotNotFoundError):
        engines.queries.history(slot_id="ts_ghost")


def test_group_by_day_sorts_within_each_day(engines):
    slots = engines.propose(
        create("11:00", "12:00", day="2026-03-04"),
        create("10:00", "11:00"),
        create("08:00", "09:00", day="2026-03-04"),
    )

    grouped = group_by_day(slots)

    assert list(grouped) == ["2026-03-02", "2026-03-04"]
    assert [slot.start_at.hour for slot in grouped["2026-03-04"]] == [8, 11]
