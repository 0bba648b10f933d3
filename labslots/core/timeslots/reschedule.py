import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from labslots.core.timeslots.errors import (
    InvalidDateError,
    SlotNotFoundError,
    SlotOwnershipError,
    SlotValidationError,
)
from labslots.core.timeslots.history import HistoryRecorder
from labslots.core.timeslots.models import (
    CreateSlotProposal,
    CurrentSlotView,
    DeleteSlotProposal,
    EntityScheduleRecord,
    EntityScheduleSnapshot,
    EntityStateChange,
    RescheduleCandidate,
    RescheduleResult,
    SlotAuditStamp,
    TimeSlotRecord,
    ValidationIssue,
)
from labslots.core.timeslots.ownership import is_owner
from labslots.core.timeslots.proposals import ProposalEngine
from labslots.core.timeslots.repository import SlotRepository, SlotStore

logger = logging.getLogger(__name__)

MESSAGE_APPLIED = "Reschedule applied immediately"
MESSAGE_PENDING = "Reschedule pending owner validation"
STATUS_VALIDATED = "VALIDATED"

_PROPOSAL_LABEL = re.compile(r"proposals\[(\d+)\]")

CandidateInput = Union[RescheduleCandidate, Mapping[str, Any]]


class RescheduleCoordinator:
    """Replaces an entity's active slots with a new candidate set.

    The owner's reschedule becomes the accepted view at once. Anyone else leaves the
    accepted view untouched until the owner approves or rejects the pending slots.
    """

    def __init__(
        self,
        *,
        repository: SlotRepository,
        proposals: ProposalEngine,
        recorder: Optional[HistoryRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._proposals = proposals
        self._clock = clock or _utc_now
        self._recorder = recorder or HistoryRecorder(clock=self._clock)

    def reschedule(
        self,
        *,
        entity_id: str,
        entity_owner_id: str,
        actor_id: str,
        candidates: Sequence[CandidateInput],
        reason: Optional[str] = None,
        actor_email: Optional[str] = None,
        entity_owner_email: Optional[str] = None,
    ) -> RescheduleResult:
        creates = self._compose_candidates(candidates)

        with self._repository.atomic(entity_id=entity_id) as scope:
            now = self._clock()
            active = scope.find_active_by(entity_id=entity_id)
            schedule = scope.get_schedule(entity_id=entity_id)
            if schedule is None:
                # Slots accepted through single-slot validation form the initial view.
                schedule = EntityScheduleRecord(
                    entity_id=entity_id,
                    entity_owner_id=entity_owner_id,
                    entity_owner_email=entity_owner_email,
                    current_slots=[_current_view(slot) for slot in _accepted(active)],
                    updated_at=now,
                )
            deletes = [
                DeleteSlotProposal(slot_id=slot.slot_id, reason=reason or "Rescheduled")
                for slot in active
            ]
            try:
                touched = self._proposals.apply_in_scope(
                    scope,
                    entity_id=entity_id,
                    entity_owner_id=schedule.entity_owner_id,
                    actor_id=actor_id,
                    proposals=[*deletes, *creates],
                    allow_past_dates=True,
                )
            except SlotValidationError as exc:
                raise SlotValidationError(
                    [_relabel(issue, offset=len(deletes)) for issue in exc.errors]
                ) from exc
            created = touched[len(deletes) :]

            owner = is_owner(
                actor_id,
                actor_email,
                schedule.entity_owner_id,
                schedule.entity_owner_email or entity_owner_email,
            )
            update: dict[str, Any] = {"updated_at": now}
            if owner:
                update["current_slots"] = [_current_view(slot) for slot in created]
                update["state_changes"] = [
                    *schedule.state_changes,
                    EntityStateChange(
                        from_status=schedule.status,
                        to_status=schedule.status,
                        actor_id=actor_id,
                        changed_at=now,
                        reason=reason or MESSAGE_APPLIED,
                    ),
                ]
            schedule = schedule.model_copy(update=update)
            scope.save_schedule(schedule)
            snapshot = _snapshot(scope, schedule)

        logger.info(
            "Reschedule completed. entity_id=%s owner=%s slots=%s",
            entity_id,
            owner,
            len(created),
            extra={
                "extra_fields": {
                    "entity_id": entity_id,
                    "actor_id": actor_id,
                    "is_owner": owner,
                    "deleted_count": len(deletes),
                    "created_count": len(created),
                }
            },
        )
        return RescheduleResult(
            event=snapshot,
            is_owner=owner,
            message=MESSAGE_APPLIED if owner else MESSAGE_PENDING,
            slots=touched,
        )

    def approve_pending(
        self,
        *,
        entity_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        actor_email: Optional[str] = None,
    ) -> RescheduleResult:
        with self._repository.atomic(entity_id=entity_id) as scope:
            schedule = self._owned_schedule(
                scope, entity_id=entity_id, actor_id=actor_id, actor_email=actor_email
            )
            now = self._clock()
            touched: list[TimeSlotRecord] = []
            for slot in scope.find_active_by(entity_id=entity_id):
                patch: dict[str, Any] = {
                    "updated_at": now,
                    "audit_stamps": [
                        *slot.audit_stamps,
                        SlotAuditStamp(
                            actor_id=actor_id, stamped_at=now, action="approved", note=reason
                        ),
                    ],
                }
                if slot.is_pending:
                    patch["state"] = "approved"
                updated = scope.update(slot.slot_id, patch)
                if slot.is_pending:
                    self._recorder.record(
                        scope,
                        slot_id=slot.slot_id,
                        action="approve",
                        actor_id=actor_id,
                        previous_state=slot.state,
                        reason=reason or "Slot approved",
                        recorded_at=now,
                    )
                touched.append(updated)

            schedule = self._validated(
                schedule,
                current_slots=[_current_view(slot) for slot in touched],
                actor_id=actor_id,
                reason=reason or "Pending slots approved by owner",
                now=now,
            )
            scope.save_schedule(schedule)
            snapshot = _snapshot(scope, schedule)

        logger.info(
            "Pending reschedule approved. entity_id=%s slots=%s",
            entity_id,
            len(touched),
            extra={"extra_fields": {"entity_id": entity_id, "actor_id": actor_id}},
        )
        return RescheduleResult(
            event=snapshot, is_owner=True, message="Pending slots approved", slots=touched
        )

    def reject_pending(
        self,
        *,
        entity_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        actor_email: Optional[str] = None,
    ) -> RescheduleResult:
        with self._repository.atomic(entity_id=entity_id) as scope:
            schedule = self._owned_schedule(
                scope, entity_id=entity_id, actor_id=actor_id, actor_email=actor_email
            )
            now = self._clock()
            accepted_ids = {view.slot_id for view in schedule.current_slots}
            touched: list[TimeSlotRecord] = []
            # Slots already decided one by one keep their state and join the view.
            kept: list[TimeSlotRecord] = []

            for slot in scope.find_active_by(entity_id=entity_id):
                if slot.slot_id in accepted_ids:
                    continue
                if not slot.is_pending:
                    kept.append(slot)
                    continue
                rejected = scope.update(
                    slot.slot_id,
                    {
                        "state": "rejected",
                        "updated_at": now,
                        "audit_stamps": [
                            *slot.audit_stamps,
                            SlotAuditStamp(
                                actor_id=actor_id, stamped_at=now, action="rejected", note=reason
                            ),
                        ],
                    },
                )
                self._recorder.record(
                    scope,
                    slot_id=slot.slot_id,
                    action="reject",
                    actor_id=actor_id,
                    previous_state=slot.state,
                    reason=reason or "Slot rejected",
                    recorded_at=now,
                )
                touched.append(rejected)

            current_slots: list[CurrentSlotView] = []
            for view in schedule.current_slots:
                original = scope.get(slot_id=view.slot_id)
                if original is not None and original.is_active:
                    current_slots.append(view)
                    continue
                restored = scope.insert(
                    TimeSlotRecord(
                        slot_id=f"ts_{uuid.uuid4().hex[:12]}",
                        entity_id=entity_id,
                        entity_owner_id=schedule.entity_owner_id,
                        proposed_by=actor_id,
                        parent_slot_id=view.slot_id,
                        state="restored",
                        start_at=view.start_at,
                        end_at=view.end_at,
                        day_key=view.day_key,
                        notes=view.notes,
                        created_at=now,
                        updated_at=now,
                        audit_stamps=[
                            SlotAuditStamp(
                                actor_id=actor_id, stamped_at=now, action="restored", note=reason
                            )
                        ],
                    )
                )
                self._recorder.record(
                    scope,
                    slot_id=restored.slot_id,
                    action="restore",
                    actor_id=actor_id,
                    reason=reason or "Accepted slot restored after rejection",
                    recorded_at=now,
                )
                touched.append(restored)
                current_slots.append(_current_view(restored))
            current_slots.extend(_current_view(slot) for slot in _accepted(kept))

            schedule = self._validated(
                schedule,
                current_slots=current_slots,
                actor_id=actor_id,
                reason=reason or "Pending slots rejected by owner",
                now=now,
            )
            scope.save_schedule(schedule)
            snapshot = _snapshot(scope, schedule)

        logger.info(
            "Pending reschedule rejected. entity_id=%s slots=%s",
            entity_id,
            len(touched),
            extra={"extra_fields": {"entity_id": entity_id, "actor_id": actor_id}},
        )
        return RescheduleResult(
            event=snapshot, is_owner=True, message="Pending slots rejected", slots=touched
        )

    def snapshot(self, *, entity_id: str) -> EntityScheduleSnapshot:
        schedule = self._repository.get_schedule(entity_id=entity_id)
        if schedule is None:
            raise SlotNotFoundError(f"NOT_FOUND: entity {entity_id} has no schedule")
        return _snapshot(self._repository, schedule)

    def _compose_candidates(self, candidates: Sequence[CandidateInput]) -> list[CreateSlotProposal]:
        issues: list[ValidationIssue] = []
        if not candidates:
            raise SlotValidationError(
                [
                    ValidationIssue(
                        code="MISSING_FIELD",
                        field="candidates",
                        message="at least one candidate slot is required",
                    )
                ]
            )

        normalizer = self._proposals.normalizer
        creates: list[CreateSlotProposal] = []
        for index, raw in enumerate(candidates):
            prefix = f"candidates[{index}]"
            try:
                candidate = RescheduleCandidate.model_validate(raw)
            except ValidationError as exc:
                issues.append(
                    ValidationIssue(
                        code="INVALID_FIELD", field=prefix, message=exc.errors()[0]["msg"]
                    )
                )
                continue
            missing = [
                name
                for name in ("date", "start_time", "end_time")
                if not (getattr(candidate, name) or "").strip()
            ]
            for name in missing:
                issues.append(
                    ValidationIssue(
                        code="MISSING_FIELD",
                        field=f"{prefix}.{name}",
                        message=f"{prefix}.{name} is required",
                    )
                )
            if missing:
                continue
            try:
                start_at = normalizer.compose(candidate.date, candidate.start_time)
                end_at = normalizer.compose(candidate.date, candidate.end_time)
            except InvalidDateError:
                issues.append(
                    ValidationIssue(
                        code="INVALID_DATE",
                        field=prefix,
                        message=(
                            f"{prefix} has an unparsable date or time: "
                            f"{candidate.date} {candidate.start_time}-{candidate.end_time}"
                        ),
                    )
                )
                continue
            creates.append(
                CreateSlotProposal(start_at=start_at, end_at=end_at, notes=candidate.notes)
            )

        if issues:
            raise SlotValidationError(issues)
        return creates

    def _owned_schedule(
        self,
        scope: SlotStore,
        *,
        entity_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> EntityScheduleRecord:
        schedule = scope.get_schedule(entity_id=entity_id)
        if schedule is None:
            raise SlotNotFoundError(f"NOT_FOUND: entity {entity_id} has no schedule")
        if not is_owner(
            actor_id, actor_email, schedule.entity_owner_id, schedule.entity_owner_email
        ):
            raise SlotOwnershipError(f"NOT_OWNER: {actor_id} does not own entity {entity_id}")
        return schedule

    def _validated(
        self,
        schedule: EntityScheduleRecord,
        *,
        current_slots: list[CurrentSlotView],
        actor_id: str,
        reason: str,
        now: datetime,
    ) -> EntityScheduleRecord:
        return schedule.model_copy(
            update={
                "status": STATUS_VALIDATED,
                "current_slots": current_slots,
                "state_changes": [
                    *schedule.state_changes,
                    EntityStateChange(
                        from_status=schedule.status,
                        to_status=STATUS_VALIDATED,
                        actor_id=actor_id,
                        changed_at=now,
                        reason=reason,
                    ),
                ],
                "updated_at": now,
            }
        )


def _accepted(slots: Sequence[TimeSlotRecord]) -> list[TimeSlotRecord]:
    return sorted(
        (slot for slot in slots if slot.is_active and not slot.is_pending),
        key=lambda slot: (slot.start_at, slot.slot_id),
    )


def _current_view(slot: TimeSlotRecord) -> CurrentSlotView:
    return CurrentSlotView(
        slot_id=slot.slot_id,
        start_at=slot.start_at,
        end_at=slot.end_at,
        day_key=slot.day_key,
        notes=slot.notes,
    )


def _snapshot(store: SlotStore, schedule: EntityScheduleRecord) -> EntityScheduleSnapshot:
    active = sorted(
        store.find_active_by(entity_id=schedule.entity_id),
        key=lambda slot: (slot.start_at, slot.slot_id),
    )
    return EntityScheduleSnapshot(
        entity_id=schedule.entity_id,
        entity_owner_id=schedule.entity_owner_id,
        status=schedule.status,
        current_slots=schedule.current_slots,
        active_slots=active,
        pending_count=sum(1 for slot in active if slot.is_pending),
        last_state_change=schedule.state_changes[-1] if schedule.state_changes else None,
    )


def _relabel(issue: ValidationIssue, *, offset: int) -> ValidationIssue:
    def _swap(match: re.Match) -> str:
        position = int(match.group(1))
        if position < offset:
            return match.group(0)
        return f"candidates[{position - offset}]"

    return issue.model_copy(
        update={
            "field": _PROPOSAL_LABEL.sub(_swap, issue.field),
            "message": _PROPOSAL_LABEL.sub(_swap, issue.message),
        }
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
