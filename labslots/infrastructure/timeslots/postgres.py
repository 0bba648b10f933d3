import json
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from importlib.util import find_spec
from typing import Any, Iterable, Mapping, Optional

from labslots.core.timeslots.errors import SlotNotFoundError, SlotRepositoryError
from labslots.core.timeslots.models import (
    ACTIVE_STATES,
    CurrentSlotView,
    EntityScheduleRecord,
    EntityStateChange,
    SlotAuditStamp,
    SlotHistoryEntry,
    TimeSlotRecord,
)
from labslots.core.timeslots.repository import SlotRepository, SlotStore
from labslots.infrastructure.postgres_migrations import apply_postgres_migrations

_SLOT_COLUMNS = """
    slot_id,
    entity_id,
    entity_owner_id,
    proposed_by,
    parent_slot_id,
    state,
    start_at,
    end_at,
    day_key,
    notes,
    created_at,
    updated_at,
    audit_stamps_json
"""

_HISTORY_COLUMNS = """
    history_id,
    slot_id,
    action,
    previous_state,
    new_state,
    actor_id,
    reason,
    data_changes_json,
    created_at
"""


class PostgresSlotRepository(SlotRepository):
    def __init__(
        self,
        *,
        dsn: str,
        connect_timeout_seconds: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        if not dsn:
            raise RuntimeError("TIMESLOT_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("TIMESLOT_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._connect_timeout_seconds = connect_timeout_seconds
        self._statement_timeout_ms = statement_timeout_ms
        self._init_db()

    @contextmanager
    def atomic(self, *, entity_id: str) -> Iterator[SlotStore]:
        with self._session(operation="atomic") as session:
            session.lock_entity(entity_id)
            yield session

    def insert(self, slot: TimeSlotRecord) -> TimeSlotRecord:
        with self._session(operation="insert") as session:
            return session.insert(slot)

    def update(self, slot_id: str, patch: Mapping[str, Any]) -> TimeSlotRecord:
        with self._session(operation="update") as session:
            return session.update(slot_id, patch)

    def get(self, *, slot_id: str) -> Optional[TimeSlotRecord]:
        with self._session(operation="get") as session:
            return session.get(slot_id=slot_id)

    def find_active_by(self, *, entity_id: str) -> list[TimeSlotRecord]:
        with self._session(operation="find_active_by") as session:
            return session.find_active_by(entity_id=entity_id)

    def find_all_by(
        self, *, entity_id: str, states: Optional[Iterable[str]] = None
    ) -> list[TimeSlotRecord]:
        with self._session(operation="find_all_by") as session:
            return session.find_all_by(entity_id=entity_id, states=states)

    def append_history(self, entry: SlotHistoryEntry) -> None:
        with self._session(operation="append_history") as session:
            session.append_history(entry)

    def find_history(self, *, slot_id: str) -> list[SlotHistoryEntry]:
        with self._session(operation="find_history") as session:
            return session.find_history(slot_id=slot_id)

    def get_schedule(self, *, entity_id: str) -> Optional[EntityScheduleRecord]:
        with self._session(operation="get_schedule") as session:
            return session.get_schedule(entity_id=entity_id)

    def save_schedule(self, schedule: EntityScheduleRecord) -> None:
        with self._session(operation="save_schedule") as session:
            session.save_schedule(schedule)

    def list_slots(self) -> list[TimeSlotRecord]:
        query = f"""
            SELECT {_SLOT_COLUMNS}
            FROM timeslots
            ORDER BY entity_id ASC, start_at ASC, slot_id ASC
        """
        with self._session(operation="list_slots") as session:
            rows = session.fetch_all(query)
        return [_to_slot(row) for row in rows]

    def list_history(self) -> list[SlotHistoryEntry]:
        query = f"""
            SELECT {_HISTORY_COLUMNS}
            FROM timeslot_history
            ORDER BY seq ASC
        """
        with self._session(operation="list_history") as session:
            rows = session.fetch_all(query)
        return [_to_history(row) for row in rows]

    @contextmanager
    def _session(self, *, operation: str) -> Iterator["_PostgresSession"]:
        driver_error = _driver_error()
        try:
            connection = self._connect()
        except driver_error as exc:
            raise SlotRepositoryError(f"REPOSITORY_FAILURE:{operation}:connect") from exc
        with closing(connection):
            try:
                yield _PostgresSession(connection)
                connection.commit()
            except driver_error as exc:
                connection.rollback()
                raise SlotRepositoryError(f"REPOSITORY_FAILURE:{operation}") from exc
            except Exception:
                connection.rollback()
                raise

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(
            self._dsn,
            row_factory=dict_row,
            connect_timeout=self._connect_timeout_seconds,
            options=f"-c statement_timeout={self._statement_timeout_ms}",
        )

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="timeslots")


class _PostgresSession(SlotStore):
    """Slot store bound to one open connection and its transaction."""

    def __init__(self, connection) -> None:
        self._connection = connection

    def lock_entity(self, entity_id: str) -> None:
        self._connection.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (entity_id,))

    def fetch_all(self, query: str, args: tuple = ()) -> list[dict]:
        return list(self._connection.execute(query, args).fetchall())

    def insert(self, slot: TimeSlotRecord) -> TimeSlotRecord:
        query = f"""
            INSERT INTO timeslots ({_SLOT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(query, _slot_args(slot))
        return slot

    def update(self, slot_id: str, patch: Mapping[str, Any]) -> TimeSlotRecord:
        current = self.get(slot_id=slot_id)
        if current is None:
            raise SlotNotFoundError(f"NOT_FOUND: slot {slot_id} not found")
        updated = current.model_copy(update=dict(patch))
        query = """
            UPDATE timeslots SET
                entity_owner_id = %s,
                proposed_by = %s,
                parent_slot_id = %s,
                state = %s,
                start_at = %s,
                end_at = %s,
                day_key = %s,
                notes = %s,
                updated_at = %s,
                audit_stamps_json = %s
            WHERE slot_id = %s
        """
        self._connection.execute(
            query,
            (
                updated.entity_owner_id,
                updated.proposed_by,
                updated.parent_slot_id,
                updated.state,
                updated.start_at.isoformat(),
                updated.end_at.isoformat(),
                updated.day_key,
                updated.notes,
                updated.updated_at.isoformat(),
                _json_dump([stamp.model_dump(mode="json") for stamp in updated.audit_stamps]),
                slot_id,
            ),
        )
        return updated

    def get(self, *, slot_id: str) -> Optional[TimeSlotRecord]:
        query = f"""
            SELECT {_SLOT_COLUMNS}
            FROM timeslots
            WHERE slot_id = %s
        """
        row = self._connection.execute(query, (slot_id,)).fetchone()
        return _to_slot(row) if row is not None else None

    def find_active_by(self, *, entity_id: str) -> list[TimeSlotRecord]:
        return self.find_all_by(entity_id=entity_id, states=ACTIVE_STATES)

    def find_all_by(
        self, *, entity_id: str, states: Optional[Iterable[str]] = None
    ) -> list[TimeSlotRecord]:
        query = f"""
            SELECT {_SLOT_COLUMNS}
            FROM timeslots
            WHERE entity_id = %s
        """
        args: list[Any] = [entity_id]
        if states is not None:
            query += " AND state = ANY(%s)"
            args.append(sorted(states))
        query += " ORDER BY start_at ASC, slot_id ASC"
        rows = self.fetch_all(query, tuple(args))
        return sorted((_to_slot(row) for row in rows), key=lambda x: (x.start_at, x.slot_id))

    def append_history(self, entry: SlotHistoryEntry) -> None:
        query = f"""
            INSERT INTO timeslot_history ({_HISTORY_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(
            query,
            (
                entry.history_id,
                entry.slot_id,
                entry.action,
                entry.previous_state,
                entry.new_state,
                entry.actor_id,
                entry.reason,
                _json_dump(entry.data_changes) if entry.data_changes is not None else None,
                entry.created_at.isoformat(),
            ),
        )

    def find_history(self, *, slot_id: str) -> list[SlotHistoryEntry]:
        query = f"""
            SELECT {_HISTORY_COLUMNS}
            FROM timeslot_history
            WHERE slot_id = %s
            ORDER BY seq ASC
        """
        return [_to_history(row) for row in self.fetch_all(query, (slot_id,))]

    def get_schedule(self, *, entity_id: str) -> Optional[EntityScheduleRecord]:
        query = """
            SELECT
                entity_id,
                entity_owner_id,
                entity_owner_email,
                status,
                current_slots_json,
                state_changes_json,
                updated_at
            FROM timeslot_entity_schedules
            WHERE entity_id = %s
        """
        row = self._connection.execute(query, (entity_id,)).fetchone()
        return _to_schedule(row) if row is not None else None

    def save_schedule(self, schedule: EntityScheduleRecord) -> None:
        query = """
            INSERT INTO timeslot_entity_schedules (
                entity_id,
                entity_owner_id,
                entity_owner_email,
                status,
                current_slots_json,
                state_changes_json,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (entity_id) DO UPDATE SET
                entity_owner_id=excluded.entity_owner_id,
                entity_owner_email=excluded.entity_owner_email,
                status=excluded.status,
                current_slots_json=excluded.current_slots_json,
                state_changes_json=excluded.state_changes_json,
                updated_at=excluded.updated_at
        """
        self._connection.execute(
            query,
            (
                schedule.entity_id,
                schedule.entity_owner_id,
                schedule.entity_owner_email,
                schedule.status,
                _json_dump([view.model_dump(mode="json") for view in schedule.current_slots]),
                _json_dump([change.model_dump(mode="json") for change in schedule.state_changes]),
                schedule.updated_at.isoformat(),
            ),
        )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _driver_error() -> type[Exception]:
    psycopg, _ = _import_psycopg()
    return psycopg.Error


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _slot_args(slot: TimeSlotRecord) -> tuple:
    return (
        slot.slot_id,
        slot.entity_id,
        slot.entity_owner_id,
        slot.proposed_by,
        slot.parent_slot_id,
        slot.state,
        slot.start_at.isoformat(),
        slot.end_at.isoformat(),
        slot.day_key,
        slot.notes,
        slot.created_at.isoformat(),
        slot.updated_at.isoformat(),
        _json_dump([stamp.model_dump(mode="json") for stamp in slot.audit_stamps]),
    )


def _to_slot(row) -> TimeSlotRecord:
    return TimeSlotRecord(
        slot_id=row["slot_id"],
        entity_id=row["entity_id"],
        entity_owner_id=row["entity_owner_id"],
        proposed_by=row["proposed_by"],
        parent_slot_id=row["parent_slot_id"],
        state=row["state"],
        start_at=datetime.fromisoformat(row["start_at"]),
        end_at=datetime.fromisoformat(row["end_at"]),
        day_key=row["day_key"],
        notes=row["notes"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        audit_stamps=[
            SlotAuditStamp.model_validate(stamp) for stamp in json.loads(row["audit_stamps_json"])
        ],
    )


def _to_history(row) -> SlotHistoryEntry:
    return SlotHistoryEntry(
        history_id=row["history_id"],
        slot_id=row["slot_id"],
        action=row["action"],
        previous_state=row["previous_state"],
        new_state=row["new_state"],
        actor_id=row["actor_id"],
        reason=row["reason"],
        data_changes=(
            json.loads(row["data_changes_json"]) if row["data_changes_json"] is not None else None
        ),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _to_schedule(row) -> EntityScheduleRecord:
    return EntityScheduleRecord(
        entity_id=row["entity_id"],
        entity_owner_id=row["entity_owner_id"],
        entity_owner_email=row["entity_owner_email"],
        status=row["status"],
        current_slots=[
            CurrentSlotView.model_validate(view) for view in json.loads(row["current_slots_json"])
        ],
        state_changes=[
            EntityStateChange.model_validate(change)
            for change in json.loads(row["state_changes_json"])
        ],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
