from collections.abc import Iterator
from contextlib import contextmanager
from copy import deepcopy
from threading import Lock
from typing import Any, Iterable, Mapping, Optional

from labslots.core.timeslots.errors import SlotNotFoundError, SlotRepositoryError
from labslots.core.timeslots.models import (
    ACTIVE_STATES,
    EntityScheduleRecord,
    SlotHistoryEntry,
    TimeSlotRecord,
)
from labslots.core.timeslots.repository import SlotRepository, SlotStore


class InMemorySlotRepository(SlotRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._entity_locks: dict[str, Lock] = {}
        self._entity_lock_users: dict[str, int] = {}
        self._slots: dict[str, TimeSlotRecord] = {}
        self._history: list[SlotHistoryEntry] = []
        self._schedules: dict[str, EntityScheduleRecord] = {}

    @contextmanager
    def atomic(self, *, entity_id: str) -> Iterator[SlotStore]:
        lock = self._acquire_entity_lock(entity_id)
        try:
            with lock:
                scope = _InMemoryScope(self)
                yield scope
                scope.commit()
        finally:
            self._release_entity_lock(entity_id)

    def insert(self, slot: TimeSlotRecord) -> TimeSlotRecord:
        with self._lock:
            if slot.slot_id in self._slots:
                raise SlotRepositoryError(f"DUPLICATE_SLOT_ID: {slot.slot_id}")
            self._slots[slot.slot_id] = deepcopy(slot)
        return deepcopy(slot)

    def update(self, slot_id: str, patch: Mapping[str, Any]) -> TimeSlotRecord:
        with self._lock:
            current = self._slots.get(slot_id)
            if current is None:
                raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")
            updated = current.model_copy(update=deepcopy(dict(patch)))
            self._slots[slot_id] = updated
            return deepcopy(updated)

    def get(self, *, slot_id: str) -> Optional[TimeSlotRecord]:
        with self._lock:
            slot = self._slots.get(slot_id)
            return deepcopy(slot) if slot is not None else None

    def find_active_by(self, *, entity_id: str) -> list[TimeSlotRecord]:
        return self.find_all_by(entity_id=entity_id, states=ACTIVE_STATES)

    def find_all_by(
        self, *, entity_id: str, states: Optional[Iterable[str]] = None
    ) -> list[TimeSlotRecord]:
        with self._lock:
            rows = [slot for slot in self._slots.values() if slot.entity_id == entity_id]
        return _select(rows, states)

    def append_history(self, entry: SlotHistoryEntry) -> None:
        with self._lock:
            self._history.append(deepcopy(entry))

    def find_history(self, *, slot_id: str) -> list[SlotHistoryEntry]:
        with self._lock:
            return [deepcopy(entry) for entry in self._history if entry.slot_id == slot_id]

    def get_schedule(self, *, entity_id: str) -> Optional[EntityScheduleRecord]:
        with self._lock:
            schedule = self._schedules.get(entity_id)
            return deepcopy(schedule) if schedule is not None else None

    def save_schedule(self, schedule: EntityScheduleRecord) -> None:
        with self._lock:
            self._schedules[schedule.entity_id] = deepcopy(schedule)

    def list_slots(self) -> list[TimeSlotRecord]:
        with self._lock:
            rows = list(self._slots.values())
        rows = sorted(rows, key=lambda x: (x.entity_id, x.start_at, x.slot_id))
        return [deepcopy(row) for row in rows]

    def list_history(self) -> list[SlotHistoryEntry]:
        with self._lock:
            return [deepcopy(entry) for entry in self._history]

    def _acquire_entity_lock(self, entity_id: str) -> Lock:
        with self._lock:
            self._entity_lock_users[entity_id] = self._entity_lock_users.get(entity_id, 0) + 1
            return self._entity_locks.setdefault(entity_id, Lock())

    def _release_entity_lock(self, entity_id: str) -> None:
        # Locks are dropped once no scope holds or waits on them.
        with self._lock:
            users = self._entity_lock_users[entity_id] - 1
            if users:
                self._entity_lock_users[entity_id] = users
                return
            del self._entity_lock_users[entity_id]
            del self._entity_locks[entity_id]

    def _commit(
        self,
        *,
        slots: dict[str, TimeSlotRecord],
        history: list[SlotHistoryEntry],
        schedules: dict[str, EntityScheduleRecord],
    ) -> None:
        with self._lock:
            self._slots.update(deepcopy(slots))
            self._history.extend(deepcopy(history))
            self._schedules.update(deepcopy(schedules))


class _InMemoryScope(SlotStore):
    """Stages writes over the repository and publishes them together on commit."""

    def __init__(self, repository: InMemorySlotRepository) -> None:
        self._repository = repository
        self._slots: dict[str, TimeSlotRecord] = {}
        self._history: list[SlotHistoryEntry] = []
        self._schedules: dict[str, EntityScheduleRecord] = {}

    def insert(self, slot: TimeSlotRecord) -> TimeSlotRecord:
        if slot.slot_id in self._slots or self._repository.get(slot_id=slot.slot_id) is not None:
            raise SlotRepositoryError(f"DUPLICATE_SLOT_ID: {slot.slot_id}")
        self._slots[slot.slot_id] = deepcopy(slot)
        return deepcopy(slot)

    def update(self, slot_id: str, patch: Mapping[str, Any]) -> TimeSlotRecord:
        current = self.get(slot_id=slot_id)
        if current is None:
            raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")
        updated = current.model_copy(update=deepcopy(dict(patch)))
        self._slots[slot_id] = updated
        return deepcopy(updated)

    def get(self, *, slot_id: str) -> Optional[TimeSlotRecord]:
        staged = self._slots.get(slot_id)
        if staged is not None:
            return deepcopy(staged)
        return self._repository.get(slot_id=slot_id)

    def find_active_by(self, *, entity_id: str) -> list[TimeSlotRecord]:
        return self.find_all_by(entity_id=entity_id, states=ACTIVE_STATES)

    def find_all_by(
        self, *, entity_id: str, states: Optional[Iterable[str]] = None
    ) -> list[TimeSlotRecord]:
        merged = {slot.slot_id: slot for slot in self._repository.find_all_by(entity_id=entity_id)}
        for slot_id, slot in self._slots.items():
            if slot.entity_id == entity_id:
                merged[slot_id] = slot
        return _select(merged.values(), states)

    def append_history(self, entry: SlotHistoryEntry) -> None:
        self._history.append(deepcopy(entry))

    def find_history(self, *, slot_id: str) -> list[SlotHistoryEntry]:
        staged = [deepcopy(entry) for entry in self._history if entry.slot_id == slot_id]
        return [*self._repository.find_history(slot_id=slot_id), *staged]

    def get_schedule(self, *, entity_id: str) -> Optional[EntityScheduleRecord]:
        staged = self._schedules.get(entity_id)
        if staged is not None:
            return deepcopy(staged)
        return self._repository.get_schedule(entity_id=entity_id)

    def save_schedule(self, schedule: EntityScheduleRecord) -> None:
        self._schedules[schedule.entity_id] = deepcopy(schedule)

    def commit(self) -> None:
        self._repository._commit(
            slots=self._slots, history=self._history, schedules=self._schedules
        )


def _select(
    rows: Iterable[TimeSlotRecord], states: Optional[Iterable[str]]
) -> list[TimeSlotRecord]:
    wanted = set(states) if states is not None else None
    selected = [row for row in rows if wanted is None or row.state in wanted]
    return [deepcopy(row) for row in sorted(selected, key=lambda x: (x.start_at, x.slot_id))]
