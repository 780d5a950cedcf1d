"""SQLite-backed tenant-scoped store for loads, drivers, assignments, and conversations."""
from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional

from dipsy.core.config import get_settings
from dipsy.core.errors import (
    ConflictingState,
    CreateFailed,
    DriverAlreadyAssigned,
    DriverNotFound,
    LoadAlreadyAssigned,
    LoadNotFound,
)
from dipsy.core.logging import logger
from dipsy.models.dispatch import (
    DriverRecord,
    DriverStatus,
    LoadRecord,
    ReleaseReason,
)
from dipsy.services.state_rules import ASSIGNABLE_LOAD_STATUSES


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _iso(value: datetime | str | None) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _like_fragment(fragment: str) -> str:
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


LOAD_COLUMNS = [
    "id",
    "reference",
    "origin",
    "destination",
    "rate",
    "pickup_date",
    "delivery_date",
    "shipper",
    "equipment_type",
    "customer_reference",
    "commodity",
    "weight",
    "miles",
    "status",
    "pod_status",
    "assigned_driver_id",
    "driver_name",
    "problem_flag",
    "problem_note",
    "problem_flagged_at",
    "status_before_problem",
    "source",
    "created_by",
    "status_changed_at",
    "delivered_at",
    "pod_uploaded_at",
    "created_at",
    "updated_at",
]

# Assignment columns are absent: only open_assignment/release_assignment write them.
LOAD_MUTABLE_COLUMNS = {
    "origin",
    "destination",
    "rate",
    "pickup_date",
    "delivery_date",
    "shipper",
    "equipment_type",
    "customer_reference",
    "commodity",
    "weight",
    "miles",
    "status",
    "pod_status",
    "problem_flag",
    "problem_note",
    "problem_flagged_at",
    "status_before_problem",
    "status_changed_at",
    "delivered_at",
    "pod_uploaded_at",
}

DRIVER_COLUMNS = [
    "id",
    "first_name",
    "last_name",
    "full_name",
    "phone",
    "status",
    "notes",
    "truck_id",
    "license_expiry",
    "med_card_expiry",
    "hos_status",
    "hos_drive_remaining_min",
    "hos_shift_remaining_min",
    "hos_cycle_remaining_min",
]


class TmsStore:
    """Durable state for one or more tenants; every query carries a tenant id."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.dipsy_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS memberships (
                    user_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, tenant_id)
                );

                CREATE TABLE IF NOT EXISTS loads (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    reference TEXT NOT NULL,
                    origin TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    rate REAL NOT NULL DEFAULT 0,
                    pickup_date TEXT,
                    delivery_date TEXT,
                    shipper TEXT,
                    equipment_type TEXT,
                    customer_reference TEXT,
                    commodity TEXT,
                    weight REAL,
                    miles REAL,
                    status TEXT NOT NULL,
                    pod_status TEXT NOT NULL,
                    assigned_driver_id TEXT,
                    driver_name TEXT,
                    problem_flag INTEGER NOT NULL DEFAULT 0,
                    problem_note TEXT,
                    problem_flagged_at TEXT,
                    status_before_problem TEXT,
                    source TEXT,
                    created_by TEXT,
                    status_changed_at TEXT,
                    delivered_at TEXT,
                    pod_uploaded_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_loads_tenant_reference ON loads (tenant_id, reference);
                CREATE INDEX IF NOT EXISTS idx_loads_tenant_status ON loads (tenant_id, status);
                CREATE INDEX IF NOT EXISTS idx_loads_tenant_created ON loads (tenant_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS drivers (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL DEFAULT '',
                    full_name TEXT NOT NULL,
                    phone TEXT,
                    status TEXT NOT NULL,
                    notes TEXT,
                    truck_id TEXT,
                    license_expiry TEXT,
                    med_card_expiry TEXT,
                    hos_status TEXT,
                    hos_drive_remaining_min INTEGER NOT NULL DEFAULT 0,
                    hos_shift_remaining_min INTEGER NOT NULL DEFAULT 0,
                    hos_cycle_remaining_min INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, id)
                );

                CREATE INDEX IF NOT EXISTS idx_drivers_tenant_status ON drivers (tenant_id, status);

                CREATE TABLE IF NOT EXISTS load_driver_assignments (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    unassigned_at TEXT,
                    release_reason TEXT,
                    PRIMARY KEY (tenant_id, id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_open_assignment_driver
                    ON load_driver_assignments (tenant_id, driver_id) WHERE unassigned_at IS NULL;
                CREATE UNIQUE INDEX IF NOT EXISTS ux_open_assignment_load
                    ON load_driver_assignments (tenant_id, load_id) WHERE unassigned_at IS NULL;
                CREATE INDEX IF NOT EXISTS idx_assignments_tenant_load
                    ON load_driver_assignments (tenant_id, load_id, assigned_at DESC);

                CREATE TABLE IF NOT EXISTS conversation_state (
                    tenant_id TEXT NOT NULL,
                    channel_identity TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, channel_identity)
                );

                CREATE TABLE IF NOT EXISTS channel_contacts (
                    channel TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL,
                    display_name TEXT,
                    driver_id TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (channel, external_id)
                );

                CREATE TABLE IF NOT EXISTS channel_messages (
                    tenant_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    contact_id TEXT,
                    direction TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, message_id)
                );

                CREATE INDEX IF NOT EXISTS idx_channel_messages_tenant_time
                    ON channel_messages (tenant_id, channel, created_at DESC);

                CREATE TABLE IF NOT EXISTS interaction_log (
                    tenant_id TEXT NOT NULL,
                    interaction_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    channel_identity TEXT NOT NULL,
                    route TEXT NOT NULL,
                    question TEXT NOT NULL,
                    answer TEXT NOT NULL,
                    tool_calls_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, interaction_id)
                );

                CREATE TABLE IF NOT EXISTS timeline (
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_tenant_load ON timeline (tenant_id, load_id, timestamp);

                CREATE TABLE IF NOT EXISTS idempotency (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );
                """
            )

    # ------------------------------------------------------------------ rows

    @staticmethod
    def _load_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = {column: row[column] for column in LOAD_COLUMNS}
        data["problem_flag"] = bool(data["problem_flag"])
        return data

    @staticmethod
    def _driver_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {column: row[column] for column in DRIVER_COLUMNS}

    # ------------------------------------------------------------- sequences

    def next_sequence(self, tenant_id: str, key: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
            if row is None:
                current = 1
                conn.execute(
                    "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                    (tenant_id, key, current + 1),
                )
            else:
                current = int(row["next_value"])
                conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                    (current + 1, tenant_id, key),
                )
            return current

    def generate_load_reference(self, tenant_id: str, year: int) -> str:
        while True:
            reference = f"LD-{year}-{self.next_sequence(tenant_id, f'load_ref:{year}'):04d}"
            if self.get_load_by_reference(tenant_id, reference) is None:
                return reference

    # ----------------------------------------------------------- memberships

    def add_membership(
        self,
        user_id: str,
        tenant_id: str,
        *,
        role: str = "dispatcher",
        status: str = "active",
        is_default: bool = False,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO memberships (user_id, tenant_id, role, status, is_default, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, tenant_id)
                DO UPDATE SET role = excluded.role, status = excluded.status, is_default = excluded.is_default
                """,
                (user_id, tenant_id, role, status, int(is_default), _utc_now_iso()),
            )

    def active_membership(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT user_id, tenant_id, role FROM memberships
                WHERE user_id = ? AND status = 'active'
                ORDER BY is_default DESC, created_at ASC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    # ----------------------------------------------------------------- loads

    def insert_load(self, tenant_id: str, load: LoadRecord) -> Dict[str, Any]:
        row = load.model_dump(mode="json")
        values = [row.get(column) for column in LOAD_COLUMNS]
        values[LOAD_COLUMNS.index("problem_flag")] = int(bool(row.get("problem_flag")))
        placeholders = ", ".join("?" for _ in LOAD_COLUMNS)
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO loads (tenant_id, {', '.join(LOAD_COLUMNS)}) VALUES (?, {placeholders})",
                    (tenant_id, *values),
                )
        except sqlite3.IntegrityError as exc:
            logger.warning("Load insert rejected", tenant_id=tenant_id, reference=load.reference, error=str(exc))
            raise CreateFailed(f"Could not create load {load.reference}: constraint violation") from exc
        return self.get_load(tenant_id, load.id) or row

    def get_load(self, tenant_id: str, load_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM loads WHERE tenant_id = ? AND id = ?",
                (tenant_id, load_id),
            ).fetchone()
        return self._load_from_row(row) if row else None

    def get_load_by_reference(self, tenant_id: str, reference: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM loads WHERE tenant_id = ? AND reference = ? COLLATE NOCASE",
                (tenant_id, reference.strip()),
            ).fetchone()
        return self._load_from_row(row) if row else None

    def search_load_references(self, tenant_id: str, fragment: str, limit: int = 25) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on reference, newest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM loads
                WHERE tenant_id = ? AND reference LIKE ? ESCAPE '\\'
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (tenant_id, _like_fragment(fragment), limit),
            ).fetchall()
        return [self._load_from_row(row) for row in rows]

    def list_loads(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if origin:
            clauses.append("origin LIKE ? ESCAPE '\\'")
            params.append(_like_fragment(origin))
        if destination:
            clauses.append("destination LIKE ? ESCAPE '\\'")
            params.append(_like_fragment(destination))
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM loads WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._load_from_row(row) for row in rows]

    def update_load(
        self,
        tenant_id: str,
        load_id: str,
        fields: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Patch mutable load columns; returns None when the guard did not match."""
        unknown = set(fields) - LOAD_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable through update_load: {sorted(unknown)}")

        assignments = dict(fields)
        assignments["updated_at"] = _utc_now_iso()
        if "problem_flag" in assignments:
            assignments["problem_flag"] = int(bool(assignments["problem_flag"]))
        for key, value in list(assignments.items()):
            if isinstance(value, datetime):
                assignments[key] = _iso(value)
            elif hasattr(value, "value"):
                assignments[key] = value.value

        set_clause = ", ".join(f"{column} = ?" for column in assignments)
        sql = f"UPDATE loads SET {set_clause} WHERE tenant_id = ? AND id = ?"
        params: List[Any] = [*assignments.values(), tenant_id, load_id]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)

        with self._transaction() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                return None
        return self.get_load(tenant_id, load_id)

    # --------------------------------------------------------------- drivers

    def insert_driver(self, tenant_id: str, driver: DriverRecord) -> Dict[str, Any]:
        row = driver.model_dump(mode="json")
        row["full_name"] = driver.full_name
        values = [row.get(column) for column in DRIVER_COLUMNS]
        placeholders = ", ".join("?" for _ in DRIVER_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO drivers (tenant_id, {', '.join(DRIVER_COLUMNS)}, updated_at)
                VALUES (?, {placeholders}, ?)
                """,
                (tenant_id, *values, _utc_now_iso()),
            )
        return self.get_driver(tenant_id, driver.id) or row

    def get_driver(self, tenant_id: str, driver_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM drivers WHERE tenant_id = ? AND id = ?",
                (tenant_id, driver_id),
            ).fetchone()
        return self._driver_from_row(row) if row else None

    def list_drivers(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        location: Optional[str] = None,
        min_drive_remaining_min: Optional[int] = None,
        order_by_hos: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if location:
            clauses.append("notes LIKE ? ESCAPE '\\'")
            params.append(_like_fragment(location))
        if min_drive_remaining_min is not None:
            clauses.append("hos_drive_remaining_min >= ?")
            params.append(int(min_drive_remaining_min))
        order = "hos_drive_remaining_min DESC, last_name, first_name" if order_by_hos else "last_name, first_name"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM drivers WHERE {' AND '.join(clauses)} ORDER BY {order} LIMIT ?",
                params,
            ).fetchall()
        return [self._driver_from_row(row) for row in rows]

    def search_drivers_by_full_name(self, tenant_id: str, fragment: str, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM drivers
                WHERE tenant_id = ? AND full_name LIKE ? ESCAPE '\\'
                ORDER BY last_name, first_name
                LIMIT ?
                """,
                (tenant_id, _like_fragment(fragment), limit),
            ).fetchall()
        return [self._driver_from_row(row) for row in rows]

    def search_drivers_by_name_parts(
        self,
        tenant_id: str,
        first: str,
        last: str,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """First-name prefix plus last-name substring match."""
        escaped_first = first.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM drivers
                WHERE tenant_id = ?
                  AND first_name LIKE ? ESCAPE '\\'
                  AND last_name LIKE ? ESCAPE '\\'
                ORDER BY last_name, first_name
                LIMIT ?
                """,
                (tenant_id, f"{escaped_first}%", _like_fragment(last) if last else "%", limit),
            ).fetchall()
        return [self._driver_from_row(row) for row in rows]

    # ----------------------------------------------------------- assignments

    def _open_assignment_row(self, tenant_id: str, *, load_id: str | None = None, driver_id: str | None = None):
        column, value = ("load_id", load_id) if load_id else ("driver_id", driver_id)
        return self._conn.execute(
            f"""
            SELECT * FROM load_driver_assignments
            WHERE tenant_id = ? AND {column} = ? AND unassigned_at IS NULL
            """,
            (tenant_id, value),
        ).fetchone()

    def open_assignment(self, tenant_id: str, load_id: str, driver_id: str) -> Dict[str, Any]:
        """
        Atomically link a driver to a load.

        Both the driver and the load are claimed with conditional updates inside
        one IMMEDIATE transaction; the partial unique indexes reject any second
        open row even across processes.
        """
        now = _utc_now_iso()
        assignable = tuple(status.value for status in ASSIGNABLE_LOAD_STATUSES)
        with self._transaction() as conn:
            driver_row = conn.execute(
                "SELECT * FROM drivers WHERE tenant_id = ? AND id = ?",
                (tenant_id, driver_id),
            ).fetchone()
            if driver_row is None:
                raise DriverNotFound(f"Driver {driver_id} not found")
            load_row = conn.execute(
                "SELECT * FROM loads WHERE tenant_id = ? AND id = ?",
                (tenant_id, load_id),
            ).fetchone()
            if load_row is None:
                raise LoadNotFound(f"Load {load_id} not found")

            driver = self._driver_from_row(driver_row)
            load = self._load_from_row(load_row)
            existing = self._open_assignment_row(tenant_id, load_id=load_id)
            if existing is not None and existing["driver_id"] == driver_id:
                return {"already": True, "assignment": dict(existing), "load": load, "driver": driver}

            if driver["status"] == DriverStatus.INACTIVE.value:
                raise ConflictingState(f"{driver['full_name']} is inactive and cannot be assigned.")

            claimed_driver = conn.execute(
                """
                UPDATE drivers SET status = ?, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND status = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM load_driver_assignments
                    WHERE tenant_id = ? AND driver_id = ? AND unassigned_at IS NULL
                  )
                """,
                (
                    DriverStatus.ASSIGNED.value,
                    now,
                    tenant_id,
                    driver_id,
                    DriverStatus.AVAILABLE.value,
                    tenant_id,
                    driver_id,
                ),
            )
            if claimed_driver.rowcount == 0:
                other = self._open_assignment_row(tenant_id, driver_id=driver_id)
                other_reference = None
                if other is not None:
                    other_load = self.get_load(tenant_id, other["load_id"])
                    other_reference = other_load["reference"] if other_load else None
                raise DriverAlreadyAssigned(
                    f"{driver['full_name']} is already assigned"
                    + (f" to {other_reference}" if other_reference else "")
                    + ". Release them first.",
                    driver=driver["full_name"],
                    current_load_reference=other_reference,
                )

            claimed_load = conn.execute(
                f"""
                UPDATE loads
                SET assigned_driver_id = ?,
                    driver_name = ?,
                    status = CASE WHEN status = 'AVAILABLE' THEN 'DISPATCHED' ELSE status END,
                    status_changed_at = CASE WHEN status = 'AVAILABLE' THEN ? ELSE status_changed_at END,
                    updated_at = ?
                WHERE tenant_id = ? AND id = ?
                  AND assigned_driver_id IS NULL
                  AND status IN ({', '.join('?' for _ in assignable)})
                  AND NOT EXISTS (
                    SELECT 1 FROM load_driver_assignments
                    WHERE tenant_id = ? AND load_id = ? AND unassigned_at IS NULL
                  )
                """,
                (driver_id, driver["full_name"], now, now, tenant_id, load_id, *assignable, tenant_id, load_id),
            )
            if claimed_load.rowcount == 0:
                if load["status"] not in assignable:
                    raise LoadAlreadyAssigned(
                        f"Load {load['reference']} is {load['status']} and cannot take a driver.",
                        load_reference=load["reference"],
                    )
                raise LoadAlreadyAssigned(
                    f"Load {load['reference']} already has {load.get('driver_name') or 'a driver'} assigned.",
                    load_reference=load["reference"],
                    current_driver=load.get("driver_name"),
                )

            assignment = {
                "id": uuid.uuid4().hex,
                "load_id": load_id,
                "driver_id": driver_id,
                "assigned_at": now,
                "unassigned_at": None,
                "release_reason": None,
            }
            try:
                conn.execute(
                    """
                    INSERT INTO load_driver_assignments
                        (tenant_id, id, load_id, driver_id, assigned_at, unassigned_at, release_reason)
                    VALUES (?, ?, ?, ?, ?, NULL, NULL)
                    """,
                    (tenant_id, assignment["id"], load_id, driver_id, now),
                )
            except sqlite3.IntegrityError as exc:
                raise DriverAlreadyAssigned(
                    f"{driver['full_name']} already has an open assignment.",
                    driver=driver["full_name"],
                ) from exc

        return {
            "already": False,
            "assignment": assignment,
            "load": self.get_load(tenant_id, load_id),
            "driver": self.get_driver(tenant_id, driver_id),
        }

    def release_assignment(
        self,
        tenant_id: str,
        load_id: str,
        *,
        reason: ReleaseReason,
        load_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Close every open assignment row for a load, free the driver(s), clear the
        load's denormalized assignment, and apply `load_fields` in the same
        transaction. This is the only code path that clears assignment fields.
        """
        now = _utc_now_iso()
        extra = dict(load_fields or {})
        unknown = set(extra) - LOAD_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable through release_assignment: {sorted(unknown)}")

        released: List[Dict[str, Any]] = []
        with self._transaction() as conn:
            load_row = conn.execute(
                "SELECT * FROM loads WHERE tenant_id = ? AND id = ?",
                (tenant_id, load_id),
            ).fetchone()
            if load_row is None:
                raise LoadNotFound(f"Load {load_id} not found")
            load = self._load_from_row(load_row)

            open_rows = conn.execute(
                """
                SELECT * FROM load_driver_assignments
                WHERE tenant_id = ? AND load_id = ? AND unassigned_at IS NULL
                """,
                (tenant_id, load_id),
            ).fetchall()
            driver_ids = {row["driver_id"] for row in open_rows}
            if load.get("assigned_driver_id"):
                driver_ids.add(load["assigned_driver_id"])

            conn.execute(
                """
                UPDATE load_driver_assignments SET unassigned_at = ?, release_reason = ?
                WHERE tenant_id = ? AND load_id = ? AND unassigned_at IS NULL
                """,
                (now, reason.value, tenant_id, load_id),
            )
            for driver_id in sorted(driver_ids):
                freed = conn.execute(
                    """
                    UPDATE drivers SET status = ?, updated_at = ?
                    WHERE tenant_id = ? AND id = ? AND status = ?
                      AND NOT EXISTS (
                        SELECT 1 FROM load_driver_assignments
                        WHERE tenant_id = ? AND driver_id = ? AND unassigned_at IS NULL
                      )
                    """,
                    (
                        DriverStatus.AVAILABLE.value,
                        now,
                        tenant_id,
                        driver_id,
                        DriverStatus.ASSIGNED.value,
                        tenant_id,
                        driver_id,
                    ),
                )
                driver_row = conn.execute(
                    "SELECT * FROM drivers WHERE tenant_id = ? AND id = ?",
                    (tenant_id, driver_id),
                ).fetchone()
                if driver_row is not None:
                    released.append({**self._driver_from_row(driver_row), "status_changed": freed.rowcount > 0})

            updates: Dict[str, Any] = {
                "assigned_driver_id": None,
                "driver_name": None,
                "updated_at": now,
            }
            for key, value in extra.items():
                if isinstance(value, datetime):
                    value = _iso(value)
                elif hasattr(value, "value"):
                    value = value.value
                updates[key] = value
            set_clause = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(
                f"UPDATE loads SET {set_clause} WHERE tenant_id = ? AND id = ?",
                (*updates.values(), tenant_id, load_id),
            )

        return {
            "closed_assignments": len(open_rows),
            "released_drivers": released,
            "load": self.get_load(tenant_id, load_id),
        }

    def current_assignment(self, tenant_id: str, load_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._open_assignment_row(tenant_id, load_id=load_id)
        return dict(row) if row else None

    def current_load_for_driver(self, tenant_id: str, driver_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._open_assignment_row(tenant_id, driver_id=driver_id)
        if row is None:
            return None
        return self.get_load(tenant_id, row["load_id"])

    def open_assignments_for_driver(self, tenant_id: str, driver_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM load_driver_assignments
                WHERE tenant_id = ? AND driver_id = ? AND unassigned_at IS NULL
                """,
                (tenant_id, driver_id),
            ).fetchall()
        return [dict(row) for row in rows]

    def assignment_history(self, tenant_id: str, load_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT a.*, d.full_name AS driver_name
                FROM load_driver_assignments a
                LEFT JOIN drivers d ON d.tenant_id = a.tenant_id AND d.id = a.driver_id
                WHERE a.tenant_id = ? AND a.load_id = ?
                ORDER BY a.assigned_at DESC
                """,
                (tenant_id, load_id),
            ).fetchall()
        return [{key: row[key] for key in row.keys() if key != "tenant_id"} for row in rows]

    # ----------------------------------------------------------------- board

    def board_rows(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        assigned_only: bool = False,
        unassigned_only: bool = False,
        driver_name: Optional[str] = None,
        reference_fragment: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Loads joined with their open assignment row and driver, both views side by side."""
        clauses = ["l.tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if status:
            clauses.append("l.status = ?")
            params.append(status)
        if assigned_only:
            clauses.append("(l.assigned_driver_id IS NOT NULL OR a.id IS NOT NULL)")
        if unassigned_only:
            clauses.append("(l.assigned_driver_id IS NULL AND a.id IS NULL)")
        if driver_name:
            clauses.append("(d.full_name LIKE ? ESCAPE '\\' OR l.driver_name LIKE ? ESCAPE '\\')")
            params.extend([_like_fragment(driver_name), _like_fragment(driver_name)])
        if reference_fragment:
            clauses.append("l.reference LIKE ? ESCAPE '\\'")
            params.append(_like_fragment(reference_fragment))
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT
                    l.id AS load_id,
                    l.reference AS load_reference,
                    l.status AS load_status,
                    l.pod_status,
                    l.origin,
                    l.destination,
                    l.pickup_date,
                    l.delivery_date,
                    l.rate,
                    l.assigned_driver_id,
                    l.driver_name,
                    a.id AS assignment_id,
                    a.driver_id AS assignment_driver_id,
                    a.assigned_at,
                    d.full_name AS driver_full_name,
                    d.status AS driver_status,
                    d.hos_status,
                    d.hos_drive_remaining_min
                FROM loads l
                LEFT JOIN load_driver_assignments a
                    ON a.tenant_id = l.tenant_id AND a.load_id = l.id AND a.unassigned_at IS NULL
                LEFT JOIN drivers d
                    ON d.tenant_id = l.tenant_id AND d.id = COALESCE(l.assigned_driver_id, a.driver_id)
                WHERE {' AND '.join(clauses)}
                ORDER BY l.reference ASC
                LIMIT ?
                """,
                params,
            ).fetchall()
        results = []
        for row in rows:
            item = dict(row)
            item["has_assigned_driver"] = item["assigned_driver_id"] is not None
            item["has_active_assignment_row"] = item["assignment_id"] is not None
            item["assignment_consistent"] = (
                item["has_assigned_driver"] == item["has_active_assignment_row"]
                and item["assigned_driver_id"] == item["assignment_driver_id"]
            )
            results.append(item)
        return results

    def assignment_integrity_issues(self, tenant_id: str) -> List[Dict[str, Any]]:
        rows = self.board_rows(tenant_id, limit=100000)
        return [
            {
                "load_id": row["load_id"],
                "load_reference": row["load_reference"],
                "denormalized_driver_id": row["assigned_driver_id"],
                "open_row_driver_id": row["assignment_driver_id"],
            }
            for row in rows
            if not row["assignment_consistent"]
        ]

    # ---------------------------------------------------------- conversation

    def get_conversation_state(self, tenant_id: str, channel_identity: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT state_json FROM conversation_state WHERE tenant_id = ? AND channel_identity = ?",
                (tenant_id, channel_identity),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["state_json"])

    def save_conversation_state(self, tenant_id: str, channel_identity: str, state: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversation_state (tenant_id, channel_identity, state_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, channel_identity)
                DO UPDATE SET state_json = excluded.state_json, updated_at = excluded.updated_at
                """,
                (tenant_id, channel_identity, _json_dumps(state), _utc_now_iso()),
            )

    # -------------------------------------------------------------- contacts

    def upsert_contact(
        self,
        tenant_id: str,
        *,
        channel: str,
        external_id: str,
        display_name: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        existing = self.find_contact(channel, external_id)
        if existing and existing["tenant_id"] != tenant_id:
            raise ConflictingState(f"{channel} identity is already linked to another organization.")
        contact_id = existing["contact_id"] if existing else f"CT-{uuid.uuid4().hex[:12]}"
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO channel_contacts
                    (channel, external_id, tenant_id, contact_id, display_name, driver_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel, external_id)
                DO UPDATE SET display_name = excluded.display_name, driver_id = excluded.driver_id
                """,
                (channel, external_id, tenant_id, contact_id, display_name, driver_id, _utc_now_iso()),
            )
        return self.find_contact(channel, external_id) or {}

    def find_contact(self, channel: str, external_id: str) -> Optional[Dict[str, Any]]:
        """Resolve a messaging identity to its tenant; the lookup that precedes any tenant scope."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM channel_contacts WHERE channel = ? AND external_id = ?",
                (channel, external_id),
            ).fetchone()
        return dict(row) if row else None

    # ----------------------------------------------------------------- audit

    def log_channel_message(
        self,
        tenant_id: str,
        *,
        channel: str,
        contact_id: Optional[str],
        direction: str,
        body: str,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO channel_messages (tenant_id, message_id, channel, contact_id, direction, body, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, uuid.uuid4().hex, channel, contact_id, direction, body, _utc_now_iso()),
            )

    def list_channel_messages(self, tenant_id: str, channel: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if channel:
            clauses.append("channel = ?")
            params.append(channel)
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT channel, contact_id, direction, body, created_at FROM channel_messages
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [dict(row) for row in rows]

    def log_interaction(
        self,
        tenant_id: str,
        *,
        channel: str,
        channel_identity: str,
        route: str,
        question: str,
        answer: str,
        tool_calls: List[Dict[str, Any]],
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO interaction_log
                    (tenant_id, interaction_id, channel, channel_identity, route, question, answer, tool_calls_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    uuid.uuid4().hex,
                    channel,
                    channel_identity,
                    route,
                    question,
                    answer,
                    _json_dumps(tool_calls),
                    _utc_now_iso(),
                ),
            )

    def record_timeline_event(
        self,
        tenant_id: str,
        load_id: str,
        *,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = {
            "event_id": f"EVT-{uuid.uuid4().hex[:12]}",
            "load_id": load_id,
            "event_type": event_type,
            "actor": actor,
            "timestamp": _utc_now_iso(),
            "details": details or {},
        }
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO timeline (tenant_id, event_id, load_id, event_type, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    event["event_id"],
                    load_id,
                    event_type,
                    actor,
                    event["timestamp"],
                    _json_dumps(event["details"]),
                ),
            )
        return event

    def list_timeline(self, tenant_id: str, load_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, load_id, event_type, actor, timestamp, details_json FROM timeline
                WHERE tenant_id = ? AND load_id = ?
                ORDER BY timestamp ASC, rowid ASC
                """,
                (tenant_id, load_id),
            ).fetchall()
        events = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            events.append(item)
        return events

    def get_idempotent(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, tenant_id: str, key: str, response: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO idempotency (tenant_id, key_name, stored_at, response_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (tenant_id, key, _utc_now_iso(), _json_dumps(response)),
            )
            conn.execute(
                """
                DELETE FROM idempotency
                WHERE tenant_id = ?
                  AND key_name NOT IN (
                    SELECT key_name FROM idempotency
                    WHERE tenant_id = ?
                    ORDER BY stored_at DESC
                    LIMIT 10000
                  )
                """,
                (tenant_id, tenant_id),
            )


tms_store = TmsStore()
