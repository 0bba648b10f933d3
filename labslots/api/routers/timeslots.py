from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from labslots.api.request_models import (
    PendingDecisionRequest,
    ProposalBatchRequest,
    RescheduleRequest,
    SlotDecisionRequest,
    ValidationBatchRequest,
)
from labslots.api.routers.timeslot_http_errors import raise_timeslot_http_exception
from labslots.api.routers.timeslots_config import (
    TimeslotServices,
    build_repository,
    build_timeslot_services,
    timeslot_lifecycle_enabled,
)
from labslots.core.timeslots import (
    IntegrityReport,
    RescheduleResult,
    ScheduleListing,
    SlotHistoryEntry,
    SlotLifecycleError,
    TimeSlotRecord,
    ValidationBatchResult,
    check_integrity,
)
from labslots.core.timeslots.models import EntityScheduleSnapshot, ScheduleView

router = APIRouter(tags=["Lab Timeslots"])

_SERVICES: Optional[TimeslotServices] = None

EntityIdPath = Annotated[
    str, Path(description="Booking or event identifier.", examples=["evt_chem_101"])
]
SlotIdPath = Annotated[str, Path(description="Time slot identifier.", examples=["ts_4f1c2a9b0d3e"])]


def get_timeslot_services() -> TimeslotServices:
    global _SERVICES
    if _SERVICES is None:
        try:
            repository = build_repository()
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
            ) from exc
        _SERVICES = build_timeslot_services(repository)
    return _SERVICES


def reset_timeslot_services_for_tests() -> None:
    global _SERVICES
    _SERVICES = None


def _assert_lifecycle_enabled() -> None:
    if not timeslot_lifecycle_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="TIMESLOT_LIFECYCLE_DISABLED",
        )


@router.get(
    "/entities/{entity_id}/timeslots",
    response_model=ScheduleListing,
    status_code=status.HTTP_200_OK,
    summary="List Entity Timeslots",
    description="Lists an entity's slots for the requested view, grouped by day with counts.",
)
def list_entity_timeslots(
    entity_id: EntityIdPath,
    view: Annotated[
        ScheduleView,
        Query(description="Listing view.", examples=["pending"]),
    ] = "active",
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> ScheduleListing:
    _assert_lifecycle_enabled()
    try:
        return services.queries.list_slots(entity_id=entity_id, view=view)
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/entities/{entity_id}/timeslots",
    response_model=List[TimeSlotRecord],
    status_code=status.HTTP_201_CREATED,
    summary="Apply Timeslot Proposals",
    description=(
        "Validates a create/modify/delete proposal batch and applies it atomically. "
        "Any validation issue rejects the whole batch with every issue listed."
    ),
)
def apply_timeslot_proposals(
    entity_id: EntityIdPath,
    payload: ProposalBatchRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> List[TimeSlotRecord]:
    _assert_lifecycle_enabled()
    try:
        return services.proposals.apply(
            entity_id=entity_id,
            entity_owner_id=payload.entity_owner_id,
            actor_id=payload.actor_id,
            proposals=payload.proposals,
            allow_past_dates=payload.allow_past_dates,
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/timeslots/validations",
    response_model=ValidationBatchResult,
    status_code=status.HTTP_200_OK,
    summary="Validate Timeslots in Batch",
    description="Applies independent approve/reject decisions and reports per-item failures.",
)
def validate_timeslots(
    payload: ValidationBatchRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> ValidationBatchResult:
    _assert_lifecycle_enabled()
    return services.validation.validate_batch(payload.validations)


@router.get(
    "/timeslots/integrity",
    response_model=IntegrityReport,
    status_code=status.HTTP_200_OK,
    summary="Check Timeslot Integrity",
    description="Audits stored slots and history against the lifecycle invariants.",
)
def get_timeslot_integrity(
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> IntegrityReport:
    _assert_lifecycle_enabled()
    try:
        return check_integrity(services.repository, services.normalizer)
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/timeslots/{slot_id}/approve",
    response_model=TimeSlotRecord,
    status_code=status.HTTP_200_OK,
    summary="Approve Timeslot",
    description="Moves a pending slot to approved. Re-approval returns 409.",
)
def approve_timeslot(
    slot_id: SlotIdPath,
    payload: SlotDecisionRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> TimeSlotRecord:
    _assert_lifecycle_enabled()
    try:
        return services.validation.approve_one(
            slot_id=slot_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/timeslots/{slot_id}/reject",
    response_model=TimeSlotRecord,
    status_code=status.HTTP_200_OK,
    summary="Reject Timeslot",
    description="Moves a pending slot to rejected.",
)
def reject_timeslot(
    slot_id: SlotIdPath,
    payload: SlotDecisionRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> TimeSlotRecord:
    _assert_lifecycle_enabled()
    try:
        return services.validation.reject_one(
            slot_id=slot_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/timeslots/{slot_id}/restore",
    response_model=TimeSlotRecord,
    status_code=status.HTTP_200_OK,
    summary="Restore Deleted Timeslot",
    description="Brings a deleted slot back as restored, subject to capacity and overlap checks.",
)
def restore_timeslot(
    slot_id: SlotIdPath,
    payload: SlotDecisionRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> TimeSlotRecord:
    _assert_lifecycle_enabled()
    try:
        return services.proposals.restore(
            slot_id=slot_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.get(
    "/timeslots/{slot_id}/history",
    response_model=List[SlotHistoryEntry],
    status_code=status.HTTP_200_OK,
    summary="Get Timeslot History",
    description="Returns the slot's append-only history, oldest first.",
)
def get_timeslot_history(
    slot_id: SlotIdPath,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> List[SlotHistoryEntry]:
    _assert_lifecycle_enabled()
    try:
        return services.queries.history(slot_id=slot_id)
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.get(
    "/entities/{entity_id}/schedule",
    response_model=EntityScheduleSnapshot,
    status_code=status.HTTP_200_OK,
    summary="Get Entity Schedule",
    description="Returns the accepted slot view, active slots and last status change.",
)
def get_entity_schedule(
    entity_id: EntityIdPath,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> EntityScheduleSnapshot:
    _assert_lifecycle_enabled()
    try:
        return services.reschedule.snapshot(entity_id=entity_id)
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/entities/{entity_id}/reschedule",
    response_model=RescheduleResult,
    status_code=status.HTTP_200_OK,
    summary="Reschedule Entity",
    description=(
        "Replaces every active slot with the candidate set. The owner's reschedule is "
        "accepted at once; anyone else's waits for owner validation."
    ),
)
def reschedule_entity(
    entity_id: EntityIdPath,
    payload: RescheduleRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> RescheduleResult:
    _assert_lifecycle_enabled()
    try:
        return services.reschedule.reschedule(
            entity_id=entity_id,
            entity_owner_id=payload.entity_owner_id,
            actor_id=payload.actor_id,
            candidates=payload.candidates,
            reason=payload.reason,
            actor_email=payload.actor_email,
            entity_owner_email=payload.entity_owner_email,
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/entities/{entity_id}/reschedule/approve",
    response_model=RescheduleResult,
    status_code=status.HTTP_200_OK,
    summary="Approve Pending Reschedule",
    description="Owner accepts every pending slot and makes the active set the accepted view.",
)
def approve_pending_reschedule(
    entity_id: EntityIdPath,
    payload: PendingDecisionRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> RescheduleResult:
    _assert_lifecycle_enabled()
    try:
        return services.reschedule.approve_pending(
            entity_id=entity_id,
            actor_id=payload.actor_id,
            reason=payload.reason,
            actor_email=payload.actor_email,
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)


@router.post(
    "/entities/{entity_id}/reschedule/reject",
    response_model=RescheduleResult,
    status_code=status.HTTP_200_OK,
    summary="Reject Pending Reschedule",
    description="Owner rejects pending slots and restores the previously accepted view.",
)
def reject_pending_reschedule(
    entity_id: EntityIdPath,
    payload: PendingDecisionRequest,
    services: Annotated[TimeslotServices, Depends(get_timeslot_services)] = None,
) -> RescheduleResult:
    _assert_lifecycle_enabled()
    try:
        return services.reschedule.reject_pending(
            entity_id=entity_id,
            actor_id=payload.actor_id,
            reason=payload.reason,
            actor_email=payload.actor_email,
        )
    except SlotLifecycleError as exc:
        raise_timeslot_http_exception(exc)
