from typing import Iterable

from labslots.core.timeslots.models import ValidationIssue


class SlotLifecycleError(Exception):
    code = "SLOT_LIFECYCLE_ERROR"


class SlotValidationError(SlotLifecycleError):
    code = "VALIDATION_ERROR"

    def __init__(self, errors: Iterable[ValidationIssue]) -> None:
        self.errors: list[ValidationIssue] = list(errors)
        super().__init__(f"VALIDATION_ERROR: {len(self.errors)} issue(s)")

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "errors": [issue.model_dump(mode="json") for issue in self.errors],
        }


class InvalidDateError(SlotLifecycleError):
    code = "INVALID_DATE"


class SlotNotFoundError(SlotLifecycleError):
    code = "NOT_FOUND"


class SlotAlreadyProcessedError(SlotLifecycleError):
    code = "ALREADY_PROCESSED"


class SlotOwnershipError(SlotLifecycleError):
    code = "NOT_OWNER"


class SlotRepositoryError(SlotLifecycleError):
    code = "REPOSITORY_FAILURE"
