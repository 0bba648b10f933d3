from labslots.core.timeslots.dates import DateNormalizer
from labslots.core.timeslots.errors import (
    InvalidDateError,
    SlotAlreadyProcessedError,
    SlotLifecycleError,
    SlotNotFoundError,
    SlotOwnershipError,
    SlotRepositoryError,
    SlotValidationError,
)
from labslots.core.timeslots.history import HistoryRecorder, replay_state
from labslots.core.timeslots.integrity import check_integrity
from labslots.core.timeslots.models import (
    CreateSlotProposal,
    DeleteSlotProposal,
    EntityScheduleRecord,
    IntegrityReport,
    ModifySlotProposal,
    RescheduleCandidate,
    RescheduleResult,
    ScheduleListing,
    ScheduleSummary,
    SlotHistoryEntry,
    SlotValidationRequest,
    TimeSlotRecord,
    ValidationBatchResult,
    ValidationIssue,
)
from labslots.core.timeslots.overlap import OverlapDetector
from labslots.core.timeslots.ownership import is_owner
from labslots.core.timeslots.proposals import ProposalEngine
from labslots.core.timeslots.queries import ScheduleQueries, group_by_day
from labslots.core.timeslots.repository import SlotRepository, SlotStore
from labslots.core.timeslots.reschedule import RescheduleCoordinator
from labslots.core.timeslots.validation import ValidationEngine

__all__ = [
    "CreateSlotProposal",
    "DateNormalizer",
    "DeleteSlotProposal",
    "EntityScheduleRecord",
    "HistoryRecorder",
    "IntegrityReport",
    "InvalidDateError",
    "ModifySlotProposal",
    "OverlapDetector",
    "ProposalEngine",
    "RescheduleCandidate",
    "RescheduleCoordinator",
    "RescheduleResult",
    "ScheduleListing",
    "ScheduleQueries",
    "ScheduleSummary",
    "SlotAlreadyProcessedError",
    "SlotHistoryEntry",
    "SlotLifecycleError",
    "SlotNotFoundError",
    "SlotOwnershipError",
    "SlotRepository",
    "SlotRepositoryError",
    "SlotStore",
    "SlotValidationError",
    "SlotValidationRequest",
    "TimeSlotRecord",
    "ValidationBatchResult",
    "ValidationEngine",
    "ValidationIssue",
    "check_integrity",
    "group_by_day",
    "is_owner",
    "replay_state",
]
