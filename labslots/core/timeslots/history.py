import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from labslots.core.timeslots.models import (
    STATE_FOR_ACTION,
    SlotHistoryEntry,
    TimeslotAction,
    TimeslotState,
)
from labslots.core.timeslots.repository import SlotStore


class HistoryRecorder:
    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utc_now

    def record(
        self,
        store: SlotStore,
        *,
        slot_id: str,
        action: TimeslotAction,
        actor_id: str,
        previous_state: Optional[TimeslotState] = None,
        reason: Optional[str] = None,
        data_changes: Optional[dict[str, Any]] = None,
        recorded_at: Optional[datetime] = None,
    ) -> SlotHistoryEntry:
        entry = SlotHistoryEntry(
            history_id=f"tsh_{uuid.uuid4().hex[:12]}",
            slot_id=slot_id,
            action=action,
            previous_state=previous_state,
            new_state=STATE_FOR_ACTION[action],
            actor_id=actor_id,
            reason=reason,
            data_changes=data_changes or None,
            created_at=recorded_at or self._clock(),
        )
        store.append_history(entry)
        return entry

    def history(self, store: SlotStore, *, slot_id: str) -> list[SlotHistoryEntry]:
        return ordered_history(store.find_history(slot_id=slot_id))


def ordered_history(entries: Iterable[SlotHistoryEntry]) -> list[SlotHistoryEntry]:
    # sorted() is stable, so entries sharing a timestamp keep their append order
    return sorted(entries, key=lambda entry: entry.created_at)


def replay_state(entries: Iterable[SlotHistoryEntry]) -> Optional[TimeslotState]:
    state: Optional[TimeslotState] = None
    for entry in ordered_history(entries):
        state = STATE_FOR_ACTION[entry.action]
    return state


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
