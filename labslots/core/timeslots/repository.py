from typing import Any, ContextManager, Iterable, Mapping, Optional, Protocol

from labslots.core.timeslots.models import (
    EntityScheduleRecord,
    SlotHistoryEntry,
    TimeSlotRecord,
)


class SlotStore(Protocol):
    def insert(self, slot: TimeSlotRecord) -> TimeSlotRecord: ...

    def update(self, slot_id: str, patch: Mapping[str, Any]) -> TimeSlotRecord: ...

    def get(self, *, slot_id: str) -> Optional[TimeSlotRecord]: ...

    def find_active_by(self, *, entity_id: str) -> list[TimeSlotRecord]: ...

    def find_all_by(
        self, *, entity_id: str, states: Optional[Iterable[str]] = None
    ) -> list[TimeSlotRecord]: ...

    def append_history(self, entry: SlotHistoryEntry) -> None: ...

    def find_history(self, *, slot_id: str) -> list[SlotHistoryEntry]: ...

    def get_schedule(self, *, entity_id: str) -> Optional[EntityScheduleRecord]: ...

    def save_schedule(self, schedule: EntityScheduleRecord) -> None: ...


class SlotRepository(SlotStore, Protocol):
    def atomic(self, *, entity_id: str) -> ContextManager[SlotStore]: ...

    def list_slots(self) -> list[TimeSlotRecord]: ...

    def list_history(self) -> list[SlotHistoryEntry]: ...
