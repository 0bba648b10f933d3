import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from labslots.api.observability import setup_observability
from labslots.api.routers.timeslots import router as timeslot_router
from labslots.api.routers.timeslots_config import (
    timeslot_store_backend_name,
    validate_persistence_profile_guardrails,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    yield


app = FastAPI(
    title="Lab Timeslot Scheduling API",
    version="0.1.0",
    description=(
        "Proposal, validation and rescheduling workflow for laboratory booking time slots.\n\n"
        "Slots move through `created`, `modified`, `approved`, `rejected`, `deleted` and "
        "`restored` with an append-only history per slot."
    ),
    openapi_tags=[
        {
            "name": "Lab Timeslots",
            "description": "Timeslot proposals, validations, reschedules and audits.",
        },
        {
            "name": "Health",
            "description": "Service liveness.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
app.include_router(timeslot_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"], summary="Liveness Probe")
def health() -> dict:
    return {"status": "ok", "store_backend": timeslot_store_backend_name()}
