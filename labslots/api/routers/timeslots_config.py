import os
import warnings
from dataclasses import dataclass
from typing import cast

from labslots.core.timeslots import (
    DateNormalizer,
    HistoryRecorder,
    ProposalEngine,
    RescheduleCoordinator,
    ScheduleQueries,
    SlotRepository,
    ValidationEngine,
)
from labslots.infrastructure.timeslots import InMemorySlotRepository, PostgresSlotRepository

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5
DEFAULT_STATEMENT_TIMEOUT_MS = 5000
DEFAULT_MAX_PER_ENTITY = 50

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


@dataclass(frozen=True)
class TimeslotServices:
    repository: SlotRepository
    normalizer: DateNormalizer
    proposals: ProposalEngine
    validation: ValidationEngine
    reschedule: RescheduleCoordinator
    queries: ScheduleQueries


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def timeslot_store_backend_name() -> str:
    backend = os.getenv("TIMESLOT_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        "TIMESLOT_STORE_BACKEND=IN_MEMORY keeps slots in process memory only; use POSTGRES.",
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def timeslot_postgres_dsn() -> str:
    return os.getenv("TIMESLOT_POSTGRES_DSN", "").strip()


def timeslot_connect_timeout_seconds() -> int:
    return _env_int("TIMESLOT_POSTGRES_CONNECT_TIMEOUT_SECONDS", DEFAULT_CONNECT_TIMEOUT_SECONDS)


def timeslot_statement_timeout_ms() -> int:
    return _env_int("TIMESLOT_POSTGRES_STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS)


def timeslot_max_per_entity() -> int:
    return _env_int("TIMESLOT_MAX_PER_ENTITY", DEFAULT_MAX_PER_ENTITY)


def timeslot_reference_timezone() -> str:
    return os.getenv("TIMESLOT_REFERENCE_TIMEZONE", "UTC").strip() or "UTC"


def timeslot_allow_past_dates() -> bool:
    return _env_flag("TIMESLOT_ALLOW_PAST_DATES", False)


def timeslot_lifecycle_enabled() -> bool:
    return _env_flag("TIMESLOT_LIFECYCLE_ENABLED", True)


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if timeslot_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_TIMESLOT_POSTGRES")
    if not timeslot_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_TIMESLOT_POSTGRES_DSN")


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [ConnectionError, OSError, TimeoutError, ValueError]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> SlotRepository:
    if timeslot_store_backend_name() == "POSTGRES":
        dsn = timeslot_postgres_dsn()
        if not dsn:
            raise RuntimeError("TIMESLOT_POSTGRES_DSN_REQUIRED")
        try:
            return cast(
                SlotRepository,
                PostgresSlotRepository(
                    dsn=dsn,
                    connect_timeout_seconds=timeslot_connect_timeout_seconds(),
                    statement_timeout_ms=timeslot_statement_timeout_ms(),
                ),
            )
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("TIMESLOT_POSTGRES_CONNECTION_FAILED") from exc
    return cast(SlotRepository, InMemorySlotRepository())


def build_timeslot_services(repository: SlotRepository) -> TimeslotServices:
    normalizer = DateNormalizer(timezone_name=timeslot_reference_timezone())
    recorder = HistoryRecorder()
    proposals = ProposalEngine(
        repository=repository,
        normalizer=normalizer,
        recorder=recorder,
        max_slots_per_entity=timeslot_max_per_entity(),
        allow_past_dates=timeslot_allow_past_dates(),
    )
    return TimeslotServices(
        repository=repository,
        normalizer=normalizer,
        proposals=proposals,
        validation=ValidationEngine(repository=repository, recorder=recorder),
        reschedule=RescheduleCoordinator(
            repository=repository, proposals=proposals, recorder=recorder
        ),
        queries=ScheduleQueries(repository=repository),
    )
