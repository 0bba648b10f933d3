import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Literal, Optional

from labslots.core.timeslots.errors import (
    SlotAlreadyProcessedError,
    SlotLifecycleError,
    SlotNotFoundError,
)
from labslots.core.timeslots.history import HistoryRecorder, _utc_now
from labslots.core.timeslots.models import (
    SlotAuditStamp,
    SlotValidationRequest,
    TimeSlotRecord,
    ValidationBatchResult,
    ValidationFailure,
)
from labslots.core.timeslots.repository import SlotRepository

logger = logging.getLogger(__name__)

DEFAULT_APPROVE_REASON = "Slot approved"
DEFAULT_REJECT_REASON = "Slot rejected"

_DECISIONS = {
    "approve": ("approved", DEFAULT_APPROVE_REASON),
    "reject": ("rejected", DEFAULT_REJECT_REASON),
}


class ValidationEngine:
    def __init__(
        self,
        *,
        repository: SlotRepository,
        recorder: Optional[HistoryRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now
        self._recorder = recorder or HistoryRecorder(clock=self._clock)

    def approve_one(
        self, *, slot_id: str, actor_id: str, reason: Optional[str] = None
    ) -> TimeSlotRecord:
        return self._decide(slot_id=slot_id, actor_id=actor_id, reason=reason, action="approve")

    def reject_one(
        self, *, slot_id: str, actor_id: str, reason: Optional[str] = None
    ) -> TimeSlotRecord:
        return self._decide(slot_id=slot_id, actor_id=actor_id, reason=reason, action="reject")

    def approve_batch(self, validations: Iterable[SlotValidationRequest]) -> ValidationBatchResult:
        return self._run_batch(
            [item.model_copy(update={"action": "approve"}) for item in validations]
        )

    def reject_batch(self, validations: Iterable[SlotValidationRequest]) -> ValidationBatchResult:
        return self._run_batch(
            [item.model_copy(update={"action": "reject"}) for item in validations]
        )

    def validate_batch(self, validations: Iterable[SlotValidationRequest]) -> ValidationBatchResult:
        return self._run_batch(list(validations))

    def _run_batch(self, validations: list[SlotValidationRequest]) -> ValidationBatchResult:
        result = ValidationBatchResult()
        for item in validations:
            try:
                slot = self._decide(
                    slot_id=item.slot_id,
                    actor_id=item.actor_id,
                    reason=item.reason,
                    action=item.action,
                )
            except SlotLifecycleError as exc:
                failure = ValidationFailure(slot_id=item.slot_id, code=exc.code, message=str(exc))
                result.failures.append(failure)
                logger.warning(
                    "Slot validation failed. slot_id=%s action=%s code=%s",
                    item.slot_id,
                    item.action,
                    exc.code,
                    extra={
                        "extra_fields": {
                            "slot_id": item.slot_id,
                            "action": item.action,
                            "failure_code": exc.code,
                        }
                    },
                )
                continue
            result.succeeded.append(slot)
        return result

    def _decide(
        self,
        *,
        slot_id: str,
        actor_id: str,
        reason: Optional[str],
        action: Literal["approve", "reject"],
    ) -> TimeSlotRecord:
        target_state, default_reason = _DECISIONS[action]
        slot = self._repository.get(slot_id=slot_id)
        if slot is None:
            raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")

        with self._repository.atomic(entity_id=slot.entity_id) as scope:
            current = scope.get(slot_id=slot_id)
            if current is None:
                raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")
            if not current.is_pending:
                raise SlotAlreadyProcessedError(
                    f"ALREADY_PROCESSED: slot {slot_id} not found or already processed "
                    f"(state {current.state})"
                )
            now = self._clock()
            updated = scope.update(
                slot_id,
                {
                    "state": target_state,
                    "updated_at": now,
                    "audit_stamps": [
                        *current.audit_stamps,
                        SlotAuditStamp(
                            actor_id=actor_id, stamped_at=now, action=target_state, note=reason
                        ),
                    ],
                },
            )
            self._recorder.record(
                scope,
                slot_id=slot_id,
                action=action,
                actor_id=actor_id,
                previous_state=current.state,
                reason=reason or default_reason,
                recorded_at=now,
            )

        logger.info(
            "Slot %s. slot_id=%s entity_id=%s",
            target_state,
            slot_id,
            current.entity_id,
            extra={
                "extra_fields": {
                    "slot_id": slot_id,
                    "entity_id": current.entity_id,
                    "actor_id": actor_id,
                    "new_state": target_state,
                }
            },
        )
        return updated
