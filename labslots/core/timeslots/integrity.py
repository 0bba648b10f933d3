import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from labslots.core.timeslots.dates import DateNormalizer
from labslots.core.timeslots.history import replay_state
from labslots.core.timeslots.models import (
    ACTIVE_STATES,
    ALL_STATES,
    IntegrityCheck,
    IntegrityReport,
    IntegrityStatus,
    SlotHistoryEntry,
    TimeSlotRecord,
)
from labslots.core.timeslots.overlap import find_overlapping_pairs
from labslots.core.timeslots.repository import SlotRepository

logger = logging.getLogger(__name__)

STALE_PENDING_AFTER = timedelta(days=730)
MIN_SLOT_DURATION = timedelta(minutes=30)
MAX_SLOT_DURATION = timedelta(hours=8)


def check_integrity(
    repository: SlotRepository,
    normalizer: DateNormalizer,
    *,
    now: Optional[datetime] = None,
) -> IntegrityReport:
    """Audit stored slots and history against the lifecycle invariants.

    Failing checks mean the stored data breaks an invariant. Warnings flag data that is
    legal but suspicious, such as year-old pending slots or eleven-hour sessions.
    """
    checked_at = now or datetime.now(timezone.utc)
    slots = repository.list_slots()
    entries = repository.list_history()
    history_by_slot: dict[str, list[SlotHistoryEntry]] = defaultdict(list)
    for entry in entries:
        history_by_slot[entry.slot_id].append(entry)

    checks = [
        _day_key_consistency(slots, normalizer),
        _valid_ranges(slots, normalizer),
        _known_states(slots),
        _overlapping_active(slots),
        _parent_cycles(slots),
        _orphaned_history(slots, entries),
        _history_replay(slots, history_by_slot),
        _stale_pending(slots, checked_at),
        _abnormal_durations(slots),
    ]
    report = IntegrityReport(
        is_valid=all(check.status != "fail" for check in checks),
        checked_at=checked_at,
        total_slots=len(slots),
        total_history_entries=len(entries),
        checks=checks,
    )
    logger.info(
        "Integrity check completed. valid=%s slots=%s",
        report.is_valid,
        report.total_slots,
        extra={
            "extra_fields": {
                "is_valid": report.is_valid,
                "failed_checks": [check.name for check in checks if check.status == "fail"],
                "warning_checks": [check.name for check in checks if check.status == "warning"],
            }
        },
    )
    return report


def _check(
    name: str,
    details: list[dict[str, Any]],
    *,
    severity: IntegrityStatus,
    ok_message: str,
    problem_message: str,
) -> IntegrityCheck:
    if not details:
        return IntegrityCheck(name=name, status="pass", count=0, message=ok_message)
    return IntegrityCheck(
        name=name,
        status=severity,
        count=len(details),
        message=f"{len(details)} {problem_message}",
        details=details,
    )


def _day_key_consistency(
    slots: list[TimeSlotRecord], normalizer: DateNormalizer
) -> IntegrityCheck:
    details = []
    for slot in slots:
        expected = normalizer.day_key_of(slot.start_at)
        if expected != slot.day_key:
            details.append({"slot_id": slot.slot_id, "day_key": slot.day_key, "expected": expected})
    return _check(
        "day_key_consistency",
        details,
        severity="fail",
        ok_message="Every day key matches its start instant",
        problem_message="slot(s) with a day key that does not match start_at",
    )


def _valid_ranges(slots: list[TimeSlotRecord], normalizer: DateNormalizer) -> IntegrityCheck:
    details = []
    for slot in slots:
        if not normalizer.validate_range(slot.start_at, slot.end_at):
            details.append({"slot_id": slot.slot_id, "problem": "end_at is not after start_at"})
        elif not normalizer.spans_single_day(slot.start_at, slot.end_at):
            details.append({"slot_id": slot.slot_id, "problem": "slot crosses a day boundary"})
    return _check(
        "valid_ranges",
        details,
        severity="fail",
        ok_message="Every slot has a valid single-day range",
        problem_message="slot(s) with an invalid range",
    )


def _known_states(slots: list[TimeSlotRecord]) -> IntegrityCheck:
    details = [
        {"slot_id": slot.slot_id, "state": slot.state}
        for slot in slots
        if slot.state not in ALL_STATES
    ]
    return _check(
        "known_states",
        details,
        severity="fail",
        ok_message="Every slot is in a known state",
        problem_message="slot(s) in an unknown state",
    )


def _overlapping_active(slots: list[TimeSlotRecord]) -> IntegrityCheck:
    pairs = find_overlapping_pairs(slot for slot in slots if slot.state in ACTIVE_STATES)
    details = [
        {
            "entity_id": first.entity_id,
            "day_key": first.day_key,
            "slot_ids": [first.slot_id, second.slot_id],
        }
        for first, second in pairs
    ]
    return _check(
        "overlapping_active_slots",
        details,
        severity="warning",
        ok_message="No active slots overlap",
        problem_message="overlapping active slot pair(s)",
    )


def _parent_cycles(slots: list[TimeSlotRecord]) -> IntegrityCheck:
    parents = {slot.slot_id: slot.parent_slot_id for slot in slots}
    details = []
    for slot_id in parents:
        seen = {slot_id}
        current = parents.get(slot_id)
        while current is not None:
            if current in seen:
                details.append({"slot_id": slot_id, "cycle_at": current})
                break
            seen.add(current)
            current = parents.get(current)
    return _check(
        "parent_chain_cycles",
        details,
        severity="fail",
        ok_message="Parent chains are acyclic",
        problem_message="slot(s) on a cyclic parent chain",
    )


def _orphaned_history(
    slots: list[TimeSlotRecord], entries: list[SlotHistoryEntry]
) -> IntegrityCheck:
    known = {slot.slot_id for slot in slots}
    details = [
        {"history_id": entry.history_id, "slot_id": entry.slot_id}
        for entry in entries
        if entry.slot_id not in known
    ]
    return _check(
        "orphaned_history",
        details,
        severity="warning",
        ok_message="Every history entry references a stored slot",
        problem_message="history entr(ies) referencing a missing slot",
    )


def _history_replay(
    slots: list[TimeSlotRecord], history_by_slot: dict[str, list[SlotHistoryEntry]]
) -> IntegrityCheck:
    details = []
    for slot in slots:
        replayed = replay_state(history_by_slot.get(slot.slot_id, []))
        if replayed != slot.state:
            details.append(
                {"slot_id": slot.slot_id, "state": slot.state, "replayed_state": replayed}
            )
    return _check(
        "history_replay",
        details,
        severity="fail",
        ok_message="Replaying history reproduces every stored state",
        problem_message="slot(s) whose history does not replay to the stored state",
    )


def _stale_pending(slots: list[TimeSlotRecord], now: datetime) -> IntegrityCheck:
    cutoff = now - STALE_PENDING_AFTER
    details = [
        {"slot_id": slot.slot_id, "state": slot.state, "created_at": slot.created_at.isoformat()}
        for slot in slots
        if slot.is_pending and slot.created_at < cutoff
    ]
    return _check(
        "stale_pending",
        details,
        severity="warning",
        ok_message="No pending slot is older than two years",
        problem_message="pending slot(s) older than two years",
    )


def _abnormal_durations(slots: list[TimeSlotRecord]) -> IntegrityCheck:
    details = []
    for slot in slots:
        duration = slot.end_at - slot.start_at
        if timedelta(0) < duration < MIN_SLOT_DURATION or duration > MAX_SLOT_DURATION:
            details.append(
                {"slot_id": slot.slot_id, "duration_minutes": int(duration.total_seconds() // 60)}
            )
    return _check(
        "abnormal_durations",
        details,
        severity="warning",
        ok_message="Every slot lasts between 30 minutes and 8 hours",
        problem_message="slot(s) shorter than 30 minutes or longer than 8 hours",
    )
