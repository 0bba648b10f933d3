from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from labslots.core.timeslots.models import SlotValidationRequest


class ProposalBatchRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "entity_owner_id": "owner_7",
                "actor_id": "owner_7",
                "proposals": [
                    {
                        "action": "create",
                        "start_at": "2026-03-02T09:00:00",
                        "end_at": "2026-03-02T10:00:00",
                        "notes": "Titration practical",
                    },
                    {"action": "delete", "slot_id": "ts_4f1c2a9b0d3e"},
                ],
            }
        }
    }

    entity_owner_id: str = Field(description="Owner of the booking.", examples=["owner_7"])
    actor_id: str = Field(description="Actor submitting the batch.", examples=["lab_tech_3"])
    proposals: List[Dict[str, Any]] = Field(
        description=(
            "Ordered create/modify/delete proposals. Items are validated together and the "
            "batch is applied all-or-nothing."
        )
    )
    allow_past_dates: Optional[bool] = Field(
        default=None,
        description="Accept slots on days before today. Defaults to the service setting.",
        examples=[False],
    )


class SlotDecisionRequest(BaseModel):
    actor_id: str = Field(description="Actor making the decision.", examples=["owner_7"])
    reason: Optional[str] = Field(
        default=None, description="Optional reason recorded in history.", examples=["Room free"]
    )


class ValidationBatchRequest(BaseModel):
    validations: List[SlotValidationRequest] = Field(
        description="Independent approve/reject decisions, processed in order."
    )


class RescheduleRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "entity_owner_id": "owner_7",
                "actor_id": "lab_tech_3",
                "candidates": [
                    {"date": "2026-03-04", "start_time": "09:00", "end_time": "11:00"},
                    {"date": "2026-03-05", "start_time": "14:00", "end_time": "15:30"},
                ],
                "reason": "Room maintenance",
            }
        }
    }

    entity_owner_id: str = Field(description="Owner of the booking.", examples=["owner_7"])
    entity_owner_email: Optional[str] = Field(
        default=None, description="Owner email, when known.", examples=["owner@school.test"]
    )
    actor_id: str = Field(description="Actor requesting the reschedule.", examples=["lab_tech_3"])
    actor_email: Optional[str] = Field(
        default=None, description="Actor email used for ownership matching."
    )
    candidates: List[Dict[str, Any]] = Field(
        description="Replacement slots as date/start_time/end_time triples."
    )
    reason: Optional[str] = Field(default=None, description="Optional reschedule reason.")


class PendingDecisionRequest(BaseModel):
    actor_id: str = Field(description="Owner deciding on pending slots.", examples=["owner_7"])
    actor_email: Optional[str] = Field(
        default=None, description="Actor email used for ownership matching."
    )
    reason: Optional[str] = Field(default=None, description="Optional decision reason.")
