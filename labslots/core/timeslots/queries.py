from collections import Counter
from typing import Iterable

from labslots.core.timeslots.errors import SlotNotFoundError
from labslots.core.timeslots.history import ordered_history
from labslots.core.timeslots.models import (
    ACTIVE_STATES,
    PENDING_STATES,
    ScheduleListing,
    ScheduleSummary,
    ScheduleView,
    SlotHistoryEntry,
    TimeSlotRecord,
)
from labslots.core.timeslots.repository import SlotRepository


class ScheduleQueries:
    def __init__(self, *, repository: SlotRepository) -> None:
        self._repository = repository

    def list_slots(self, *, entity_id: str, view: ScheduleView = "active") -> ScheduleListing:
        every_slot = self._repository.find_all_by(entity_id=entity_id)
        summary = self._summary_of(every_slot)
        if view == "summary":
            return ScheduleListing(entity_id=entity_id, view=view, summary=summary)

        if view == "active":
            selected = [slot for slot in every_slot if slot.state in ACTIVE_STATES]
        elif view == "pending":
            selected = [slot for slot in every_slot if slot.state in PENDING_STATES]
        else:
            selected = every_slot
        ordered = _chronological(selected)
        return ScheduleListing(
            entity_id=entity_id,
            view=view,
            timeslots=ordered,
            by_day={
                day: [slot.slot_id for slot in group]
                for day, group in group_by_day(ordered).items()
            },
            summary=summary,
        )

    def summarize(self, *, entity_id: str) -> ScheduleSummary:
        return self._summary_of(self._repository.find_all_by(entity_id=entity_id))

    def history(self, *, slot_id: str) -> list[SlotHistoryEntry]:
        if self._repository.get(slot_id=slot_id) is None:
            raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")
        return ordered_history(self._repository.find_history(slot_id=slot_id))

    def _summary_of(self, slots: Iterable[TimeSlotRecord]) -> ScheduleSummary:
        slots = list(slots)
        states = Counter(slot.state for slot in slots)
        return ScheduleSummary(
            total=len(slots),
            active=sum(states[state] for state in ACTIVE_STATES),
            pending=sum(states[state] for state in PENDING_STATES),
            approved=states["approved"],
            rejected=states["rejected"],
            deleted=states["deleted"],
            restored=states["restored"],
        )


def group_by_day(slots: Iterable[TimeSlotRecord]) -> dict[str, list[TimeSlotRecord]]:
    grouped: dict[str, list[TimeSlotRecord]] = {}
    for slot in _chronological(slots):
        grouped.setdefault(slot.day_key, []).append(slot)
    return grouped


def _chronological(slots: Iterable[TimeSlotRecord]) -> list[TimeSlotRecord]:
    return sorted(slots, key=lambda slot: (slot.start_at, slot.slot_id))
