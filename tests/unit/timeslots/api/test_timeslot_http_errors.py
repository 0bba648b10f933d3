import pytest
from fastapi import HTTPException

from labslots.api.routers.timeslot_http_errors import (
    HTTP_422_UNPROCESSABLE,
    raise_timeslot_http_exception,
)
from labslots.core.timeslots import (
    InvalidDateError,
    SlotAlreadyProcessedError,
    SlotNotFoundError,
    SlotOwnershipError,
    SlotRepositoryError,
    SlotValidationError,
    ValidationIssue,
)


@pytest.mark.parametrize(
    "error, expected_status",
    [
        (InvalidDateError("INVALID_DATE: 'tomorrow'"), HTTP_422_UNPROCESSABLE),
        (SlotNotFoundError("NOT_FOUND: slot ts_1 not found"), 404),
        (SlotAlreadyProcessedError("ALREADY_PROCESSED: slot ts_1"), 409),
        (SlotOwnershipError("NOT_OWNER: tech_1 does not own entity evt_1"), 403),
    ],
)
def test_lifecycle_errors_map_to_status_codes(error, expected_status):
    with pytest.raises(HTTPException) as exc:
        raise_timeslot_http_exception(error)

    assert exc.value.status_code == expected_status
    assert exc.value.detail == str(error)


def test_validation_errors_carry_structured_issues():
    error = SlotValidationError(
        [ValidationIssue(code="OVERLAP", field="proposals[1]", message="overlap")]
    )

    with pytest.raises(HTTPException) as exc:
        raise_timeslot_http_exception(error)

    assert exc.value.status_code == HTTP_422_UNPROCESSABLE
    assert exc.value.detail == {
        "code": "VALIDATION_ERROR",
        "errors": [{"code": "OVERLAP", "field": "proposals[1]", "message": "overlap"}],
    }


def test_repository_failures_hide_driver_detail():
    with pytest.raises(HTTPException) as exc:
        raise_timeslot_http_exception(SlotRepositoryError("REPOSITORY_FAILURE:atomic"))

    assert exc.value.status_code == 503
    assert exc.value.detail == "REPOSITORY_FAILURE"


def test_unknown_errors_are_reraised():
    with pytest.raises(ValueError):
        raise_timeslot_http_exception(ValueError("boom"))
