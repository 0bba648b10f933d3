import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import TypeAdapter, ValidationError

from labslots.core.timeslots.dates import DateNormalizer
from labslots.core.timeslots.errors import (
    SlotAlreadyProcessedError,
    SlotNotFoundError,
    SlotValidationError,
)
from labslots.core.timeslots.history import HistoryRecorder
from labslots.core.timeslots.models import (
    CreateSlotProposal,
    DeleteSlotProposal,
    ModifySlotProposal,
    SlotAuditAction,
    SlotAuditStamp,
    SlotProposal,
    TimeSlotRecord,
    ValidationIssue,
)
from labslots.core.timeslots.overlap import OverlapDetector, SlotInterval
from labslots.core.timeslots.repository import SlotRepository, SlotStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_SLOTS_PER_ENTITY = 50

_PROPOSAL_ADAPTER: TypeAdapter = TypeAdapter(SlotProposal)

ProposalInput = Union[CreateSlotProposal, ModifySlotProposal, DeleteSlotProposal, Mapping[str, Any]]


@dataclass
class _PlannedProposal:
    index: int
    proposal: Union[CreateSlotProposal, ModifySlotProposal, DeleteSlotProposal]
    target: Optional[TimeSlotRecord] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    day_key: Optional[str] = None
    valid_interval: bool = False
    changes: dict[str, Any] = field(default_factory=dict)


class ProposalEngine:
    def __init__(
        self,
        *,
        repository: SlotRepository,
        normalizer: Optional[DateNormalizer] = None,
        recorder: Optional[HistoryRecorder] = None,
        detector: Optional[OverlapDetector] = None,
        max_slots_per_entity: int = DEFAULT_MAX_SLOTS_PER_ENTITY,
        allow_past_dates: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._normalizer = normalizer or DateNormalizer()
        self._clock = clock or _utc_now
        self._recorder = recorder or HistoryRecorder(clock=self._clock)
        self._detector = detector or OverlapDetector()
        self._max_slots_per_entity = max_slots_per_entity
        self._allow_past_dates = allow_past_dates

    @property
    def normalizer(self) -> DateNormalizer:
        return self._normalizer

    def apply(
        self,
        *,
        entity_id: str,
        entity_owner_id: str,
        actor_id: str,
        proposals: Sequence[ProposalInput],
        allow_past_dates: Optional[bool] = None,
    ) -> list[TimeSlotRecord]:
        with self._repository.atomic(entity_id=entity_id) as scope:
            return self.apply_in_scope(
                scope,
                entity_id=entity_id,
                entity_owner_id=entity_owner_id,
                actor_id=actor_id,
                proposals=proposals,
                allow_past_dates=allow_past_dates,
            )

    def apply_in_scope(
        self,
        scope: SlotStore,
        *,
        entity_id: str,
        entity_owner_id: str,
        actor_id: str,
        proposals: Sequence[ProposalInput],
        allow_past_dates: Optional[bool] = None,
    ) -> list[TimeSlotRecord]:
        past_allowed = self._allow_past_dates if allow_past_dates is None else allow_past_dates
        now = self._clock()

        issues: list[ValidationIssue] = []
        if not entity_id:
            issues.append(_issue("MISSING_FIELD", "entity_id", "entity_id is required"))
        if not actor_id:
            issues.append(_issue("MISSING_FIELD", "actor_id", "actor_id is required"))
        if not proposals:
            issues.append(_issue("MISSING_FIELD", "proposals", "at least one proposal is required"))
        if issues:
            raise SlotValidationError(issues)

        plans = self._parse(proposals, issues)
        self._resolve(scope, plans, issues, entity_id=entity_id, now=now, past_allowed=past_allowed)

        active = scope.find_active_by(entity_id=entity_id)
        self._check_capacity(plans, active, issues)
        self._check_overlaps(plans, active, issues)

        if issues:
            logger.warning(
                "timeslot.proposals.rejected",
                extra={
                    "extra_fields": {
                        "entity_id": entity_id,
                        "actor_id": actor_id,
                        "issue_codes": sorted({issue.code for issue in issues}),
                        "issue_count": len(issues),
                    }
                },
            )
            raise SlotValidationError(issues)

        touched = [
            self._apply_plan(
                scope,
                plan,
                entity_id=entity_id,
                entity_owner_id=entity_owner_id,
                actor_id=actor_id,
                now=now,
            )
            for plan in plans
        ]
        logger.info(
            "timeslot.proposals.applied",
            extra={
                "extra_fields": {
                    "entity_id": entity_id,
                    "actor_id": actor_id,
                    "proposal_count": len(touched),
                }
            },
        )
        return touched

    def restore(
        self,
        *,
        slot_id: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> TimeSlotRecord:
        slot = self._repository.get(slot_id=slot_id)
        if slot is None:
            raise SlotNotFoundError("SLOT_NOT_FOUND")

        with self._repository.atomic(entity_id=slot.entity_id) as scope:
            current = scope.get(slot_id=slot_id)
            if current is None:
                raise SlotNotFoundError("SLOT_NOT_FOUND")
            if current.state != "deleted":
                raise SlotAlreadyProcessedError(
                    f"ALREADY_PROCESSED: slot {slot_id} is {current.state}, not deleted"
                )

            active = scope.find_active_by(entity_id=current.entity_id)
            issues: list[ValidationIssue] = []
            if len(active) + 1 > self._max_slots_per_entity:
                issues.append(self._capacity_issue("slot_id"))
            for conflict in self._detector.find_conflicts(
                SlotInterval.from_slot(current),
                existing=[SlotInterval.from_slot(other) for other in active],
            ):
                issues.append(_issue("OVERLAP", "slot_id", conflict.message))
            if issues:
                raise SlotValidationError(issues)

            now = self._clock()
            restored = scope.update(
                slot_id,
                {
                    "state": "restored",
                    "proposed_by": actor_id,
                    "updated_at": now,
                    "audit_stamps": _stamped(current, actor_id, now, "restored", reason),
                },
            )
            self._recorder.record(
                scope,
                slot_id=slot_id,
                action="restore",
                actor_id=actor_id,
                previous_state=current.state,
                reason=reason or "Slot restored",
                recorded_at=now,
            )
        return restored

    def _parse(
        self, proposals: Sequence[ProposalInput], issues: list[ValidationIssue]
    ) -> list[_PlannedProposal]:
        plans: list[_PlannedProposal] = []
        for index, raw in enumerate(proposals):
            if isinstance(raw, (CreateSlotProposal, ModifySlotProposal, DeleteSlotProposal)):
                plans.append(_PlannedProposal(index=index, proposal=raw))
                continue
            try:
                parsed = _PROPOSAL_ADAPTER.validate_python(raw)
            except ValidationError as exc:
                issues.extend(_issues_from_validation_error(index, exc))
                continue
            plans.append(_PlannedProposal(index=index, proposal=parsed))
        return plans

    def _resolve(
        self,
        scope: SlotStore,
        plans: list[_PlannedProposal],
        issues: list[ValidationIssue],
        *,
        entity_id: str,
        now: datetime,
        past_allowed: bool,
    ) -> None:
        targeted: set[str] = set()
        for plan in plans:
            proposal = plan.proposal
            prefix = f"proposals[{plan.index}]"

            if isinstance(proposal, CreateSlotProposal):
                if proposal.entity_id is not None and proposal.entity_id != entity_id:
                    issues.append(
                        _issue(
                            "INVALID_FIELD",
                            f"{prefix}.entity_id",
                            f"entity_id {proposal.entity_id} does not match {entity_id}",
                        )
                    )
                if proposal.parent_slot_id is not None and (
                    scope.get(slot_id=proposal.parent_slot_id) is None
                ):
                    issues.append(
                        _issue(
                            "NOT_FOUND",
                            f"{prefix}.parent_slot_id",
                            f"parent slot {proposal.parent_slot_id} does not exist",
                        )
                    )
                self._resolve_interval(
                    plan,
                    issues,
                    start_at=proposal.start_at,
                    end_at=proposal.end_at,
                    now=now,
                    past_allowed=past_allowed,
                )
                continue

            target = scope.get(slot_id=proposal.slot_id)
            if target is None or target.entity_id != entity_id:
                issues.append(
                    _issue(
                        "NOT_FOUND",
                        f"{prefix}.slot_id",
                        f"slot {proposal.slot_id} not found for entity {entity_id}",
                    )
                )
                continue
            if proposal.slot_id in targeted:
                issues.append(
                    _issue(
                        "INVALID_FIELD",
                        f"{prefix}.slot_id",
                        f"slot {proposal.slot_id} is targeted more than once in the batch",
                    )
                )
                continue
            targeted.add(proposal.slot_id)
            if not target.is_active:
                issues.append(
                    _issue(
                        "ALREADY_PROCESSED",
                        f"{prefix}.slot_id",
                        f"slot {proposal.slot_id} is {target.state} and cannot be changed",
                    )
                )
                continue
            plan.target = target

            if isinstance(proposal, ModifySlotProposal):
                if proposal.start_at is None and proposal.end_at is None and proposal.notes is None:
                    issues.append(
                        _issue(
                            "MISSING_FIELD",
                            prefix,
                            "modify requires at least one of start_at, end_at, notes",
                        )
                    )
                    continue
                moves = proposal.start_at is not None or proposal.end_at is not None
                self._resolve_interval(
                    plan,
                    issues,
                    start_at=(
                        proposal.start_at if proposal.start_at is not None else target.start_at
                    ),
                    end_at=proposal.end_at if proposal.end_at is not None else target.end_at,
                    now=now,
                    past_allowed=past_allowed or not moves,
                )

    def _resolve_interval(
        self,
        plan: _PlannedProposal,
        issues: list[ValidationIssue],
        *,
        start_at: datetime,
        end_at: datetime,
        now: datetime,
        past_allowed: bool,
    ) -> None:
        prefix = f"proposals[{plan.index}]"
        start = self._normalizer.to_storage_instant(start_at)
        end = self._normalizer.to_storage_instant(end_at)
        plan.start_at = start
        plan.end_at = end
        plan.day_key = self._normalizer.day_key_of(start)

        if not self._normalizer.validate_range(start, end):
            issues.append(
                _issue("INVALID_RANGE", f"{prefix}.end_at", "end_at must be after start_at")
            )
            return
        if not self._normalizer.spans_single_day(start, end):
            issues.append(
                _issue("INVALID_RANGE", f"{prefix}.end_at", "a slot must not cross a day boundary")
            )
            return
        if not past_allowed and self._normalizer.is_before_today(plan.day_key, now=now):
            issues.append(
                _issue(
                    "PAST_DATE",
                    f"{prefix}.start_at",
                    f"slot day {plan.day_key} is in the past",
                )
            )
            return
        plan.valid_interval = True

    def _check_capacity(
        self,
        plans: list[_PlannedProposal],
        active: list[TimeSlotRecord],
        issues: list[ValidationIssue],
    ) -> None:
        creates = sum(1 for plan in plans if isinstance(plan.proposal, CreateSlotProposal))
        deletes = sum(
            1
            for plan in plans
            if isinstance(plan.proposal, DeleteSlotProposal) and plan.target is not None
        )
        if len(active) - deletes + creates > self._max_slots_per_entity:
            issues.append(self._capacity_issue("proposals"))

    def _check_overlaps(
        self,
        plans: list[_PlannedProposal],
        active: list[TimeSlotRecord],
        issues: list[ValidationIssue],
    ) -> None:
        touched_ids = {plan.target.slot_id for plan in plans if plan.target is not None}
        existing = [
            SlotInterval.from_slot(slot) for slot in active if slot.slot_id not in touched_ids
        ]
        candidates = [
            SlotInterval(
                day_key=plan.day_key,
                start_at=plan.start_at,
                end_at=plan.end_at,
                slot_id=plan.target.slot_id if plan.target is not None else None,
                index=plan.index,
            )
            for plan in plans
            if plan.valid_interval and not isinstance(plan.proposal, DeleteSlotProposal)
        ]
        for conflict in self._detector.find_batch_conflicts(candidates, existing=existing):
            issues.append(_issue("OVERLAP", conflict.field, conflict.message))

    def _capacity_issue(self, field_name: str) -> ValidationIssue:
        return _issue(
            "CAPACITY_EXCEEDED",
            field_name,
            f"an entity may hold at most {self._max_slots_per_entity} active slots",
        )

    def _apply_plan(
        self,
        scope: SlotStore,
        plan: _PlannedProposal,
        *,
        entity_id: str,
        entity_owner_id: str,
        actor_id: str,
        now: datetime,
    ) -> TimeSlotRecord:
        proposal = plan.proposal

        if isinstance(proposal, CreateSlotProposal):
            slot = TimeSlotRecord(
                slot_id=f"ts_{uuid.uuid4().hex[:12]}",
                entity_id=entity_id,
                entity_owner_id=entity_owner_id,
                proposed_by=actor_id,
                parent_slot_id=proposal.parent_slot_id,
                state="created",
                start_at=plan.start_at,
                end_at=plan.end_at,
                day_key=plan.day_key,
                notes=proposal.notes,
                created_at=now,
                updated_at=now,
                audit_stamps=[
                    SlotAuditStamp(actor_id=actor_id, stamped_at=now, action="created")
                ],
            )
            created = scope.insert(slot)
            self._recorder.record(
                scope,
                slot_id=created.slot_id,
                action="create",
                actor_id=actor_id,
                recorded_at=now,
            )
            return created

        target = plan.target
        if isinstance(proposal, ModifySlotProposal):
            data_changes = self._diff(target, plan, proposal)
            updated = scope.update(
                target.slot_id,
                {
                    "start_at": plan.start_at,
                    "end_at": plan.end_at,
                    "day_key": plan.day_key,
                    "notes": proposal.notes if proposal.notes is not None else target.notes,
                    "state": "modified",
                    "proposed_by": actor_id,
                    "updated_at": now,
                    "audit_stamps": _stamped(target, actor_id, now, "modified", None),
                },
            )
            self._recorder.record(
                scope,
                slot_id=target.slot_id,
                action="modify",
                actor_id=actor_id,
                previous_state=target.state,
                data_changes=data_changes,
                recorded_at=now,
            )
            return updated

        reason = proposal.reason or "Slot deleted via proposal"
        deleted = scope.update(
            target.slot_id,
            {
                "state": "deleted",
                "proposed_by": actor_id,
                "updated_at": now,
                "audit_stamps": _stamped(target, actor_id, now, "deleted", proposal.reason),
            },
        )
        self._recorder.record(
            scope,
            slot_id=target.slot_id,
            action="delete",
            actor_id=actor_id,
            previous_state=target.state,
            reason=reason,
            recorded_at=now,
        )
        return deleted

    def _diff(
        self,
        target: TimeSlotRecord,
        plan: _PlannedProposal,
        proposal: ModifySlotProposal,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if plan.start_at != target.start_at:
            changes["start_at"] = {
                "from": self._normalizer.to_wire(target.start_at),
                "to": self._normalizer.to_wire(plan.start_at),
            }
        if plan.end_at != target.end_at:
            changes["end_at"] = {
                "from": self._normalizer.to_wire(target.end_at),
                "to": self._normalizer.to_wire(plan.end_at),
            }
        if proposal.notes is not None and proposal.notes != target.notes:
            changes["notes"] = {"from": target.notes, "to": proposal.notes}
        return changes


def _stamped(
    slot: TimeSlotRecord,
    actor_id: str,
    now: datetime,
    action: SlotAuditAction,
    note: Optional[str],
) -> list[SlotAuditStamp]:
    return [
        *slot.audit_stamps,
        SlotAuditStamp(actor_id=actor_id, stamped_at=now, action=action, note=note),
    ]


def _issue(code: str, field_name: str, message: str) -> ValidationIssue:
    return ValidationIssue(code=code, field=field_name, message=message)


def _issues_from_validation_error(index: int, exc: ValidationError) -> list[ValidationIssue]:
    prefix = f"proposals[{index}]"
    issues: list[ValidationIssue] = []
    for error in exc.errors():
        error_type = error["type"]
        names = [str(part) for part in error["loc"] if part not in ("create", "modify", "delete")]
        path = f"{prefix}.{'.'.join(names)}" if names else prefix
        if error_type == "missing":
            issues.append(_issue("MISSING_FIELD", path, f"{path} is required"))
        elif error_type == "union_tag_not_found":
            issues.append(
                _issue(
                    "MISSING_FIELD", f"{prefix}.action", "action must be create, modify or delete"
                )
            )
        elif error_type.startswith(("datetime", "date", "time")):
            issues.append(_issue("INVALID_DATE", path, f"{path} is not a valid date-time"))
        else:
            issues.append(_issue("INVALID_FIELD", path, error["msg"]))
    return issues


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
