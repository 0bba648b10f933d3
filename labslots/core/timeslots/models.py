from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

TimeslotState = Literal["created", "modified", "approved", "rejected", "deleted", "restored"]

TimeslotAction = Literal["create", "modify", "delete", "approve", "reject", "restore"]

SlotAuditAction = Literal["created", "modified", "deleted", "approved", "rejected", "restored"]

ScheduleView = Literal["all", "active", "pending", "summary"]

ValidationIssueCode = Literal[
    "MISSING_FIELD",
    "INVALID_FIELD",
    "INVALID_RANGE",
    "INVALID_DATE",
    "PAST_DATE",
    "CAPACITY_EXCEEDED",
    "OVERLAP",
    "NOT_FOUND",
    "ALREADY_PROCESSED",
]

ACTIVE_STATES: frozenset[str] = frozenset({"created", "modified", "approved", "restored"})
PENDING_STATES: frozenset[str] = frozenset({"created", "modified"})
ALL_STATES: frozenset[str] = frozenset(
    {"created", "modified", "approved", "rejected", "deleted", "restored"}
)

STATE_FOR_ACTION: dict[str, TimeslotState] = {
    "create": "created",
    "modify": "modified",
    "delete": "deleted",
    "approve": "approved",
    "reject": "rejected",
    "restore": "restored",
}


class SlotAuditStamp(BaseModel):
    actor_id: str = Field(description="Actor that produced the stamp.", examples=["user_42"])
    stamped_at: datetime = Field(
        description="Stamp timestamp (UTC).", examples=["2026-03-02T08:15:00+00:00"]
    )
    action: SlotAuditAction = Field(description="Audited action.", examples=["created"])
    note: Optional[str] = Field(
        default=None,
        description="Optional human readable note attached to the stamp.",
        examples=["Rescheduled by owner"],
    )


class TimeSlotRecord(BaseModel):
    slot_id: str = Field(description="Time slot identifier.", examples=["ts_4f1c2a9b0d3e"])
    entity_id: str = Field(
        description="Booking or event the slot belongs to.", examples=["evt_chem_101"]
    )
    entity_owner_id: str = Field(
        description="Party owning the booking.", examples=["owner_7"]
    )
    proposed_by: str = Field(
        description="Actor that created or last modified this slot record.",
        examples=["lab_tech_3"],
    )
    parent_slot_id: Optional[str] = Field(
        default=None,
        description="Earlier slot superseded by this one, lookup only.",
        examples=["ts_0a1b2c3d4e5f"],
    )
    state: TimeslotState = Field(description="Lifecycle state.", examples=["created"])
    start_at: datetime = Field(
        description="Slot start instant (UTC).", examples=["2026-03-02T09:00:00+00:00"]
    )
    end_at: datetime = Field(
        description="Slot end instant (UTC), exclusive.",
        examples=["2026-03-02T10:00:00+00:00"],
    )
    day_key: str = Field(
        description="Calendar day of start_at in the reference time zone.",
        examples=["2026-03-02"],
    )
    notes: Optional[str] = Field(default=None, description="Optional free text.")
    created_at: datetime = Field(description="Row creation timestamp (UTC).")
    updated_at: datetime = Field(description="Row last update timestamp (UTC).")
    audit_stamps: List[SlotAuditStamp] = Field(
        default_factory=list,
        description="Ordered per-slot audit trail written by schedule coordination flows.",
    )

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES


class SlotHistoryEntry(BaseModel):
    history_id: str = Field(description="History entry identifier.", examples=["tsh_9e8d7c6b5a4f"])
    slot_id: str = Field(description="Slot the entry belongs to.", examples=["ts_4f1c2a9b0d3e"])
    action: TimeslotAction = Field(description="Recorded transition action.", examples=["approve"])
    previous_state: Optional[TimeslotState] = Field(
        default=None,
        description="Slot state before the transition; absent for creation.",
        examples=["created"],
    )
    new_state: TimeslotState = Field(
        description="Slot state after the transition.", examples=["approved"]
    )
    actor_id: str = Field(
        description="Actor that performed the transition.", examples=["owner_7"]
    )
    reason: Optional[str] = Field(
        default=None, description="Optional reason supplied with the transition."
    )
    data_changes: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional field diff keyed by field name with from/to values.",
        examples=[{"start_at": {"from": "2026-03-02T09:00:00Z", "to": "2026-03-02T10:00:00Z"}}],
    )
    created_at: datetime = Field(description="Entry timestamp (UTC).")


class CreateSlotProposal(BaseModel):
    action: Literal["create"] = "create"
    entity_id: Optional[str] = Field(
        default=None,
        description="Optional entity id; must match the batch entity when supplied.",
    )
    start_at: datetime = Field(
        description="Proposed start; naive values use the reference zone.",
        examples=["2026-03-02T09:00:00"],
    )
    end_at: datetime = Field(
        description="Proposed end; naive values use the reference zone.",
        examples=["2026-03-02T10:00:00"],
    )
    notes: Optional[str] = Field(default=None, description="Optional free text.")
    parent_slot_id: Optional[str] = Field(
        default=None, description="Optional earlier slot superseded by the new one."
    )


class ModifySlotProposal(BaseModel):
    action: Literal["modify"] = "modify"
    slot_id: str = Field(description="Slot to modify.", examples=["ts_4f1c2a9b0d3e"])
    start_at: Optional[datetime] = Field(default=None, description="New start, if changing.")
    end_at: Optional[datetime] = Field(default=None, description="New end, if changing.")
    notes: Optional[str] = Field(default=None, description="New notes, if changing.")


class DeleteSlotProposal(BaseModel):
    action: Literal["delete"] = "delete"
    slot_id: str = Field(description="Slot to delete.", examples=["ts_4f1c2a9b0d3e"])
    reason: Optional[str] = Field(default=None, description="Optional deletion reason.")


SlotProposal = Annotated[
    Union[CreateSlotProposal, ModifySlotProposal, DeleteSlotProposal],
    Field(discriminator="action"),
]


class ValidationIssue(BaseModel):
    code: ValidationIssueCode = Field(
        description="Machine readable issue code.", examples=["OVERLAP"]
    )
    field: str = Field(description="Path of the offending field.", examples=["proposals[1]"])
    message: str = Field(
        description="Human readable description.",
        examples=["proposals[1] overlaps proposals[0] on 2026-03-02"],
    )


class SlotValidationRequest(BaseModel):
    slot_id: str = Field(description="Slot to validate.", examples=["ts_4f1c2a9b0d3e"])
    action: Literal["approve", "reject"] = Field(
        default="approve", description="Validation decision.", examples=["reject"]
    )
    actor_id: str = Field(description="Validator actor id.", examples=["owner_7"])
    reason: Optional[str] = Field(default=None, description="Optional decision reason.")


class ValidationFailure(BaseModel):
    slot_id: str = Field(description="Slot whose validation failed.")
    code: str = Field(description="Failure code.", examples=["ALREADY_PROCESSED"])
    message: str = Field(description="Failure description.")


class ValidationBatchResult(BaseModel):
    succeeded: List[TimeSlotRecord] = Field(
        default_factory=list, description="Slots transitioned successfully, in input order."
    )
    failures: List[ValidationFailure] = Field(
        default_factory=list, description="Per-item failures, in input order."
    )


class RescheduleCandidate(BaseModel):
    date: Optional[str] = Field(default=None, description="Calendar day.", examples=["2026-03-04"])
    start_time: Optional[str] = Field(default=None, description="Start time.", examples=["09:00"])
    end_time: Optional[str] = Field(default=None, description="End time.", examples=["11:00"])
    notes: Optional[str] = Field(default=None, description="Optional free text.")


class CurrentSlotView(BaseModel):
    slot_id: str = Field(description="Slot backing this accepted interval.")
    start_at: datetime = Field(description="Accepted start (UTC).")
    end_at: datetime = Field(description="Accepted end (UTC).")
    day_key: str = Field(description="Calendar day of start_at.")
    notes: Optional[str] = Field(default=None, description="Notes carried from the slot.")


class EntityStateChange(BaseModel):
    from_status: Optional[str] = Field(default=None, description="Status before the change.")
    to_status: Optional[str] = Field(default=None, description="Status after the change.")
    actor_id: str = Field(description="Actor responsible for the change.")
    changed_at: datetime = Field(description="Change timestamp (UTC).")
    reason: Optional[str] = Field(default=None, description="Optional reason.")


class EntityScheduleRecord(BaseModel):
    entity_id: str = Field(description="Booking or event identifier.", examples=["evt_chem_101"])
    entity_owner_id: str = Field(description="Owner id of the booking.", examples=["owner_7"])
    entity_owner_email: Optional[str] = Field(
        default=None, description="Owner email, when known.", examples=["owner@school.test"]
    )
    status: Optional[str] = Field(
        default="PENDING", description="Entity status field.", examples=["VALIDATED"]
    )
    current_slots: List[CurrentSlotView] = Field(
        default_factory=list, description="Accepted, authoritative slot view."
    )
    state_changes: List[EntityStateChange] = Field(
        default_factory=list, description="Append-only entity status change log."
    )
    updated_at: datetime = Field(description="Last update timestamp (UTC).")


class EntityScheduleSnapshot(BaseModel):
    entity_id: str
    entity_owner_id: str
    status: Optional[str] = None
    current_slots: List[CurrentSlotView] = Field(default_factory=list)
    active_slots: List[TimeSlotRecord] = Field(default_factory=list)
    pending_count: int = 0
    last_state_change: Optional[EntityStateChange] = None


class RescheduleResult(BaseModel):
    event: EntityScheduleSnapshot = Field(description="Entity schedule after the operation.")
    is_owner: bool = Field(description="Whether the acting party owns the entity.")
    message: str = Field(
        description="Outcome message for the caller.",
        examples=["Reschedule pending owner validation"],
    )
    slots: List[TimeSlotRecord] = Field(
        default_factory=list, description="Slots touched by the operation, in order."
    )


class ScheduleSummary(BaseModel):
    total: int = 0
    active: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    deleted: int = 0
    restored: int = 0


class ScheduleListing(BaseModel):
    entity_id: str
    view: ScheduleView
    timeslots: List[TimeSlotRecord] = Field(default_factory=list)
    by_day: Dict[str, List[str]] = Field(
        default_factory=dict, description="Slot ids grouped by day key, in listing order."
    )
    summary: ScheduleSummary = Field(default_factory=ScheduleSummary)


IntegrityStatus = Literal["pass", "warning", "fail"]


class IntegrityCheck(BaseModel):
    name: str = Field(description="Check name.", examples=["day_key_consistency"])
    status: IntegrityStatus
    count: int = 0
    message: str
    details: List[Dict[str, Any]] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    is_valid: bool
    checked_at: datetime
    total_slots: int = 0
    total_history_entries: int = 0
    checks: List[IntegrityCheck] = Field(default_factory=list)
