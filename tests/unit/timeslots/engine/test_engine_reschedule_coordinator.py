import pytest

from labslots.core.timeslots import (
    SlotNotFoundError,
    SlotOwnershipError,
    SlotValidationError,
)
from tests.factories import candidate, create


def _reschedule(engines, *candidates, actor_id="owner_1", **kwargs):
    return engines.reschedule.reschedule(
        entity_id="evt_1",
        entity_owner_id="owner_1",
        actor_id=actor_id,
        candidates=list(candidates),
        **kwargs,
    )


def _created(result) -> list:
    return [slot for slot in result.slots if slot.state == "created"]


def test_owner_reschedule_is_applied_immediately(engines, repository):
    first = _reschedule(engines, candidate("09:00", "10:00"))
    (old_slot,) = _created(first)

    result = _reschedule(
        engines,
        candidate("13:00", "14:00"),
        candidate("15:00", "16:00", day="2026-03-03"),
        reason="Room maintenance",
    )

    assert result.is_owner is True
    assert result.message == "Reschedule applied immediately"
    assert repository.get(slot_id=old_slot.slot_id).state == "deleted"
    new_slots = _created(result)
    assert [slot.day_key for slot in new_slots] == ["2026-03-02", "2026-03-03"]
    assert all(slot.audit_stamps[0].action == "created" for slot in new_slots)
    assert [view.slot_id for view in result.event.current_slots] == [
        slot.slot_id for slot in new_slots
    ]
    change = result.event.last_state_change
    assert change.from_status == change.to_status == "PENDING"
    assert change.reason == "Room maintenance"
    assert result.event.pending_count == 2


def test_non_owner_reschedule_leaves_current_view_untouched(engines, repository):
    accepted = _created(_reschedule(engines, candidate("09:00", "10:00")))[0]

    result = _reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1")

    assert result.is_owner is False
    assert result.message == "Reschedule pending owner validation"
    assert [view.slot_id for view in result.event.current_slots] == [accepted.slot_id]
    assert repository.get(slot_id=accepted.slot_id).state == "deleted"
    assert [slot.start_at.hour for slot in _created(result)] == [11]


def test_owner_rejection_restores_previous_current_slots(engines, repository):
    accepted = _created(_reschedule(engines, candidate("09:00", "10:00")))[0]
    proposed = _created(_reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1"))[0]

    result = engines.reschedule.reject_pending(entity_id="evt_1", actor_id="owner_1")

    assert repository.get(slot_id=proposed.slot_id).state == "rejected"
    restored = [slot for slot in result.slots if slot.state == "restored"]
    assert len(restored) == 1
    assert restored[0].parent_slot_id == accepted.slot_id
    assert (restored[0].start_at, restored[0].end_at) == (accepted.start_at, accepted.end_at)
    assert restored[0].audit_stamps[-1].action == "restored"
    assert result.event.status == "VALIDATED"
    assert [view.slot_id for view in result.event.current_slots] == [restored[0].slot_id]
    active = engines.queries.list_slots(entity_id="evt_1", view="active").timeslots
    assert [slot.slot_id for slot in active] == [restored[0].slot_id]
    assert [entry.action for entry in repository.find_history(slot_id=restored[0].slot_id)] == [
        "restore"
    ]


def test_owner_approval_accepts_pending_slots(engines, repository):
    _reschedule(engines, candidate("09:00", "10:00"))
    proposed = _created(_reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1"))[0]

    result = engines.reschedule.approve_pending(entity_id="evt_1", actor_id="owner_1")

    approved = repository.get(slot_id=proposed.slot_id)
    assert approved.state == "approved"
    assert approved.audit_stamps[-1].action == "approved"
    assert result.event.status == "VALIDATED"
    assert [view.slot_id for view in result.event.current_slots] == [proposed.slot_id]
    assert result.event.pending_count == 0


def test_owner_matching_falls_back_to_email(engines):
    result = engines.reschedule.reschedule(
        entity_id="evt_mail",
        entity_owner_id="owner@school.test",
        actor_id="user_9",
        actor_email="owner@school.test",
        candidates=[candidate("09:00", "10:00")],
    )

    assert result.is_owner is True


def test_pending_decisions_are_owner_only(engines):
    _reschedule(engines, candidate("09:00", "10:00"))

    with pytest.raises(SlotOwnershipError):
        engines.reschedule.approve_pending(entity_id="evt_1", actor_id="tech_1")
    with pytest.raises(SlotOwnershipError):
        engines.reschedule.reject_pending(entity_id="evt_1", actor_id="tech_1")
    with pytest.raises(SlotNotFoundError):
        engines.reschedule.approve_pending(entity_id="evt_unknown", actor_id="owner_1")


def test_candidates_are_validated_before_anything_is_written(engines, repository):
    with pytest.raises(SlotValidationError) as empty:
        _reschedule(engines)
    assert [(i.code, i.field) for i in empty.value.errors] == [("MISSING_FIELD", "candidates")]

    with pytest.raises(SlotValidationError) as malformed:
        _reschedule(
            engines,
            {"date": "2026-03-04", "end_time": "10:00"},
            candidate("09:00", "10:00", day="2026-02-30"),
        )
    assert [(i.code, i.field) for i in malformed.value.errors] == [
        ("MISSING_FIELD", "candidates[0].start_time"),
        ("INVALID_DATE", "candidates[1]"),
    ]
    assert repository.list_slots() == []


def test_overlapping_candidates_keep_the_existing_schedule(engines, repository):
    (kept,) = _created(_reschedule(engines, candidate("09:00", "10:00")))

    with pytest.raises(SlotValidationError) as caught:
        _reschedule(engines, candidate("13:00", "14:00"), candidate("13:30", "14:30"))

    issue = caught.value.errors[0]
    assert issue.code == "OVERLAP"
    assert issue.field == "candidates[1]"
    assert issue.message.startswith("candidates[1] overlaps candidates[0]")
    assert repository.get(slot_id=kept.slot_id).state == "created"


def test_reschedule_to_an_earlier_day_is_allowed(engines):
    result = _reschedule(engines, candidate("09:00", "10:00", day="2026-02-01"))

    assert [slot.day_key for slot in _created(result)] == ["2026-02-01"]


def test_first_non_owner_reschedule_keeps_slots_approved_one_by_one(engines, repository):
    (approved,) = engines.propose(create("09:00", "10:00"))
    engines.validation.approve_one(slot_id=approved.slot_id, actor_id="owner_1")

    pending = _reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1")
    assert [view.slot_id for view in pending.event.current_slots] == [approved.slot_id]

    result = engines.reschedule.reject_pending(entity_id="evt_1", actor_id="owner_1")

    assert repository.get(slot_id=approved.slot_id).state == "deleted"
    active = engines.queries.list_slots(entity_id="evt_1", view="active").timeslots
    assert [(slot.state, slot.start_at.hour) for slot in active] == [("restored", 9)]
    assert active[0].parent_slot_id == approved.slot_id
    assert [view.slot_id for view in result.event.current_slots] == [active[0].slot_id]


def test_first_reschedule_ignores_slots_still_awaiting_validation(engines):
    engines.propose(create("09:00", "10:00"))

    result = _reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1")

    assert result.event.current_slots == []


def test_owner_rejection_keeps_slots_already_approved_individually(engines, repository):
    accepted = _created(_reschedule(engines, candidate("09:00", "10:00")))[0]
    proposed = _created(_reschedule(engines, candidate("11:00", "12:00"), actor_id="tech_1"))[0]
    engines.validation.approve_one(slot_id=proposed.slot_id, actor_id="owner_1")

    result = engines.reschedule.reject_pending(entity_id="evt_1", actor_id="owner_1")

    assert repository.get(slot_id=proposed.slot_id).state == "approved"
    assert [entry.action for entry in repository.find_history(slot_id=proposed.slot_id)] == [
        "create",
        "approve",
    ]
    restored = [slot for slot in result.slots if slot.state == "restored"]
    assert [slot.parent_slot_id for slot in restored] == [accepted.slot_id]
    assert {view.slot_id for view in result.event.current_slots} == {
        restored[0].slot_id,
        proposed.slot_id,
    }
