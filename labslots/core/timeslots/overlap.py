from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from labslots.core.timeslots.models import TimeSlotRecord


@dataclass(frozen=True)
class SlotInterval:
    day_key: str
    start_at: datetime
    end_at: datetime
    slot_id: Optional[str] = None
    index: Optional[int] = None

    @property
    def label(self) -> str:
        if self.index is not None:
            return f"proposals[{self.index}]"
        return f"slot {self.slot_id}"

    @classmethod
    def from_slot(cls, slot: TimeSlotRecord) -> "SlotInterval":
        return cls(
            day_key=slot.day_key,
            start_at=slot.start_at,
            end_at=slot.end_at,
            slot_id=slot.slot_id,
        )


@dataclass(frozen=True)
class OverlapConflict:
    candidate: SlotInterval
    existing: SlotInterval

    @property
    def field(self) -> str:
        return self.candidate.label

    @property
    def message(self) -> str:
        return (
            f"{self.candidate.label} overlaps {self.existing.label} on {self.candidate.day_key} "
            f"({_hhmm(self.existing.start_at)}-{_hhmm(self.existing.end_at)})"
        )


def intervals_overlap(
    start_1: datetime, end_1: datetime, start_2: datetime, end_2: datetime
) -> bool:
    # half-open: touching endpoints do not overlap
    return start_1 < end_2 and start_2 < end_1


class OverlapDetector:
    def find_conflicts(
        self,
        candidate: SlotInterval,
        *,
        existing: Iterable[SlotInterval],
        siblings: Iterable[SlotInterval] = (),
    ) -> list[OverlapConflict]:
        conflicts: list[OverlapConflict] = []
        for other in [*existing, *siblings]:
            if other.day_key != candidate.day_key:
                continue
            if other is candidate or (
                other.index is not None and other.index == candidate.index
            ):
                continue
            if intervals_overlap(
                candidate.start_at, candidate.end_at, other.start_at, other.end_at
            ):
                conflicts.append(OverlapConflict(candidate=candidate, existing=other))
        return conflicts

    def find_batch_conflicts(
        self,
        candidates: Sequence[SlotInterval],
        *,
        existing: Sequence[SlotInterval],
    ) -> list[OverlapConflict]:
        conflicts: list[OverlapConflict] = []
        for position, candidate in enumerate(candidates):
            conflicts.extend(
                self.find_conflicts(
                    candidate,
                    existing=existing,
                    siblings=candidates[:position],
                )
            )
        return conflicts


def find_overlapping_pairs(
    slots: Iterable[TimeSlotRecord],
) -> list[tuple[TimeSlotRecord, TimeSlotRecord]]:
    groups: dict[tuple[str, str], list[TimeSlotRecord]] = defaultdict(list)
    for slot in slots:
        groups[(slot.entity_id, slot.day_key)].append(slot)

    pairs: list[tuple[TimeSlotRecord, TimeSlotRecord]] = []
    for key in sorted(groups):
        ordered = sorted(groups[key], key=lambda s: (s.start_at, s.slot_id))
        for position, slot in enumerate(ordered):
            for other in ordered[position + 1 :]:
                if other.start_at >= slot.end_at:
                    break
                pairs.append((slot, other))
    return pairs


def _hhmm(value: datetime) -> str:
    return value.strftime("%H:%M")
