"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import random
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from plazas.domain.models import (
    AllocationRequest,
    Assignment,
    Facility,
    HistoryRecord,
    OutcomeKind,
    request_fingerprint,
)
from plazas.utils.config import Settings, get_settings
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


class StoreUnavailableError(RuntimeError):
    """Raised when the database cannot be reached or is structurally broken."""


class ConcurrentModificationError(RuntimeError):
    """Raised when a commit detects that another writer got there first."""


@dataclass(frozen=True)
class Tombstone:
    """Fingerprint of a deliberately deleted request.

    `keeper_request_id` is the one record still allowed to carry the
    fingerprint; None means no record may.
    """

    fingerprint: str
    keeper_request_id: Optional[int]
    created_at: str


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_lock_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    )


def _facility_from_row(row: sqlite3.Row) -> Facility:
    return Facility(
        facility_id=str(row["id"]),
        name=str(row["name"]),
        capacity=int(row["capacity"]),
        occupied=int(row["occupied"]),
        locality=str(row["locality"] or ""),
        municipality=str(row["municipality"] or ""),
        version=int(row["version"]),
    )


def _request_from_row(row: sqlite3.Row) -> AllocationRequest:
    return AllocationRequest(
        priority_key=int(row["priority_key"]),
        preferences=tuple(json.loads(row["preferences"])),
        submitted_at=str(row["submitted_at"]),
        submitter=row["submitter"],
        displaced_from=row["displaced_from"],
        request_id=int(row["id"]),
    )


def _assignment_from_row(row: sqlite3.Row) -> Assignment:
    return Assignment(
        priority_key=int(row["priority_key"]),
        facility_id=str(row["facility_id"]),
        created_at=str(row["created_at"]),
        displaced_from=row["displaced_from"],
    )


class StoreTransaction:
    """Reads and writes bound to one open `BEGIN IMMEDIATE` transaction."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def get_facility(self, facility_id: str) -> Optional[Facility]:
        row = self._conn.execute(
            """
            SELECT id, name, capacity, occupied, locality, municipality, version
            FROM Facilities
            WHERE id = ?;
            """,
            (facility_id,),
        ).fetchone()
        return _facility_from_row(row) if row is not None else None

    def list_facilities(self) -> list[Facility]:
        rows = self._conn.execute(
            """
            SELECT id, name, capacity, occupied, locality, municipality, version
            FROM Facilities
            ORDER BY id ASC;
            """
        ).fetchall()
        return [_facility_from_row(row) for row in rows]

    def write_occupancy(self, facility_id: str, occupied: int, expected_version: int) -> None:
        """Compare-and-set the occupied counter, bumping the facility version."""
        cursor = self._conn.execute(
            """
            UPDATE Facilities
            SET occupied = ?, version = version + 1
            WHERE id = ? AND version = ?;
            """,
            (occupied, facility_id, expected_version),
        )
        if cursor.rowcount != 1:
            raise ConcurrentModificationError(
                f"Facility {facility_id} changed since version {expected_version}"
            )

    def get_assignment(self, priority_key: int) -> Optional[Assignment]:
        row = self._conn.execute(
            """
            SELECT priority_key, facility_id, created_at, displaced_from
            FROM Assignments
            WHERE priority_key = ?;
            """,
            (priority_key,),
        ).fetchone()
        return _assignment_from_row(row) if row is not None else None

    def list_assignments(self) -> list[Assignment]:
        rows = self._conn.execute(
            """
            SELECT priority_key, facility_id, created_at, displaced_from
            FROM Assignments
            ORDER BY priority_key ASC;
            """
        ).fetchall()
        return [_assignment_from_row(row) for row in rows]

    def list_assignments_for_facility(self, facility_id: str) -> list[Assignment]:
        rows = self._conn.execute(
            """
            SELECT priority_key, facility_id, created_at, displaced_from
            FROM Assignments
            WHERE facility_id = ?
            ORDER BY priority_key ASC;
            """,
            (facility_id,),
        ).fetchall()
        return [_assignment_from_row(row) for row in rows]

    def lowest_priority_holder(self, facility_id: str) -> Optional[Assignment]:
        row = self._conn.execute(
            """
            SELECT priority_key, facility_id, created_at, displaced_from
            FROM Assignments
            WHERE facility_id = ?
            ORDER BY priority_key DESC
            LIMIT 1;
            """,
            (facility_id,),
        ).fetchone()
        return _assignment_from_row(row) if row is not None else None

    def insert_assignment(self, assignment: Assignment) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO Assignments (priority_key, facility_id, created_at, displaced_from)
                VALUES (?, ?, ?, ?);
                """,
                (
                    assignment.priority_key,
                    assignment.facility_id,
                    assignment.created_at,
                    assignment.displaced_from,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConcurrentModificationError(
                f"Assignment for priority key {assignment.priority_key} already exists"
            ) from exc

    def delete_assignment(self, priority_key: int) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM Assignments WHERE priority_key = ?;",
            (priority_key,),
        )
        return cursor.rowcount > 0

    def delete_all_assignments(self) -> int:
        cursor = self._conn.execute("DELETE FROM Assignments;")
        return int(cursor.rowcount)

    def request_exists(self, request_id: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM Requests WHERE id = ?;",
            (request_id,),
        ).fetchone()
        return row is not None

    def insert_request(self, request: AllocationRequest) -> AllocationRequest:
        cursor = self._conn.execute(
            """
            INSERT INTO Requests (
                priority_key,
                preferences,
                submitted_at,
                submitter,
                displaced_from,
                fingerprint
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                request.priority_key,
                json.dumps(list(request.preferences)),
                request.submitted_at,
                request.submitter,
                request.displaced_from,
                request_fingerprint(request),
            ),
        )
        return AllocationRequest(
            priority_key=request.priority_key,
            preferences=tuple(request.preferences),
            submitted_at=request.submitted_at,
            submitter=request.submitter,
            displaced_from=request.displaced_from,
            request_id=int(cursor.lastrowid),
        )

    def delete_request(self, request_id: int) -> bool:
        cursor = self._conn.execute("DELETE FROM Requests WHERE id = ?;", (request_id,))
        return cursor.rowcount > 0

    def get_tombstone(self, fingerprint: str) -> Optional[Tombstone]:
        row = self._conn.execute(
            """
            SELECT fingerprint, keeper_request_id, created_at
            FROM Tombstones
            WHERE fingerprint = ?;
            """,
            (fingerprint,),
        ).fetchone()
        if row is None:
            return None
        keeper = row["keeper_request_id"]
        return Tombstone(
            fingerprint=str(row["fingerprint"]),
            keeper_request_id=int(keeper) if keeper is not None else None,
            created_at=str(row["created_at"]),
        )

    def upsert_tombstone(self, fingerprint: str, keeper_request_id: Optional[int]) -> None:
        self._conn.execute(
            """
            INSERT INTO Tombstones (fingerprint, keeper_request_id, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(fingerprint) DO UPDATE SET keeper_request_id = excluded.keeper_request_id;
            """,
            (fingerprint, keeper_request_id, utc_now()),
        )


class DataRepository:
    """Encapsulates SQLite access so allocation logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        return connection

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for single-statement reads and point writes."""
        try:
            connection = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open database {self._db_path}: {exc}") from exc
        try:
            yield connection
        except sqlite3.Error as exc:
            if _is_lock_error(exc):
                raise ConcurrentModificationError(str(exc)) from exc
            raise StoreUnavailableError(f"Database operation failed: {exc}") from exc
        finally:
            connection.close()

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open a write transaction; commit on success, roll back on any error."""
        with self._connection() as connection:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield StoreTransaction(connection)
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            connection.execute("COMMIT;")

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS Facilities (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    capacity INTEGER NOT NULL CHECK (capacity >= 0),
                    occupied INTEGER NOT NULL DEFAULT 0 CHECK (occupied >= 0),
                    locality TEXT,
                    municipality TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS Requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    priority_key INTEGER NOT NULL,
                    preferences TEXT NOT NULL,
                    submitted_at TEXT NOT NULL,
                    submitter TEXT,
                    displaced_from TEXT,
                    fingerprint TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS Assignments (
                    priority_key INTEGER PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    displaced_from TEXT
                );

                CREATE TABLE IF NOT EXISTS History (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    priority_key INTEGER NOT NULL,
                    outcome TEXT NOT NULL,
                    message TEXT NOT NULL,
                    facility_id TEXT,
                    recorded_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS Tombstones (
                    fingerprint TEXT PRIMARY KEY,
                    keeper_request_id INTEGER,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_requests_priority
                ON Requests(priority_key, id);

                CREATE INDEX IF NOT EXISTS idx_requests_fingerprint
                ON Requests(fingerprint);

                CREATE INDEX IF NOT EXISTS idx_assignments_facility
                ON Assignments(facility_id, priority_key);

                CREATE INDEX IF NOT EXISTS idx_history_priority
                ON History(priority_key, id);
                """
            )
        logger.info("Database initialized at %s", self._db_path)

    def seed_demo_data_if_empty(self) -> None:
        """Seed a deterministic demo dataset only when no facility exists."""
        rng = random.Random(self._settings.synthetic_random_seed)
        if self.list_facilities():
            logger.info("Demo data already present; skipping seed")
            return

        facilities = [
            ("C001", "CEIP Miguel Hernández", 3, "Elche", "Elche"),
            ("C002", "IES Las Lomas", 2, "Alicante", "Alicante"),
            ("C003", "CEIP Azorín", 4, "Monóvar", "Monóvar"),
            ("C004", "IES Sixto Marco", 2, "Elche", "Elche"),
            ("C005", "CEIP La Paz", 1, "Torrevieja", "Torrevieja"),
            ("C006", "IES Mare Nostrum", 3, "Alicante", "Alicante"),
        ]
        for facility_id, name, capacity, locality, municipality in facilities:
            self.upsert_facility(
                facility_id=facility_id,
                name=name,
                capacity=capacity,
                locality=locality,
                municipality=municipality,
            )

        facility_ids = [item[0] for item in facilities]
        submitted_at = utc_now()
        with self.transaction() as tx:
            for priority_key in range(1, self._settings.demo_request_count + 1):
                preferences = tuple(rng.sample(facility_ids, rng.randint(1, 3)))
                submitter = f"demo-{priority_key:03d}"
                tx.insert_request(
                    AllocationRequest(
                        priority_key=priority_key,
                        preferences=preferences,
                        submitted_at=submitted_at,
                        submitter=submitter,
                    )
                )
        logger.info(
            "Demo seed completed | facilities=%s | requests=%s",
            len(facilities),
            self._settings.demo_request_count,
        )

    def upsert_facility(
        self,
        *,
        facility_id: str,
        name: str,
        capacity: int,
        locality: str = "",
        municipality: str = "",
    ) -> Facility:
        """Create or update facility metadata; the occupied counter is left alone."""
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO Facilities (id, name, capacity, locality, municipality, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    capacity = excluded.capacity,
                    locality = excluded.locality,
                    municipality = excluded.municipality,
                    updated_at = excluded.updated_at,
                    version = Facilities.version + 1;
                """,
                (facility_id, name, capacity, locality, municipality, utc_now()),
            )
        facility = self.get_facility(facility_id)
        if facility is None:
            raise StoreUnavailableError(f"Facility {facility_id} vanished right after upsert")
        return facility

    def get_facility(self, facility_id: str) -> Optional[Facility]:
        with self._connection() as conn:
            return StoreTransaction(conn).get_facility(facility_id)

    def list_facilities(self) -> list[Facility]:
        with self._connection() as conn:
            return StoreTransaction(conn).list_facilities()

    def list_pending_requests(self) -> list[AllocationRequest]:
        """Return every pending request in ascending priority order."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, priority_key, preferences, submitted_at, submitter, displaced_from
                FROM Requests
                ORDER BY priority_key ASC, id ASC;
                """
            ).fetchall()
            return [_request_from_row(row) for row in rows]

    def find_pending_request(self, priority_key: int) -> Optional[AllocationRequest]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT id, priority_key, preferences, submitted_at, submitter, displaced_from
                FROM Requests
                WHERE priority_key = ?
                ORDER BY id ASC
                LIMIT 1;
                """,
                (priority_key,),
            ).fetchone()
            return _request_from_row(row) if row is not None else None

    def list_requests_with_fingerprint(self, fingerprint: str) -> list[AllocationRequest]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, priority_key, preferences, submitted_at, submitter, displaced_from
                FROM Requests
                WHERE fingerprint = ?
                ORDER BY id ASC;
                """,
                (fingerprint,),
            ).fetchall()
            return [_request_from_row(row) for row in rows]

    def create_request(self, request: AllocationRequest) -> AllocationRequest:
        """Insert a pending request outside any allocation transaction."""
        with self._connection() as conn:
            return StoreTransaction(conn).insert_request(request)

    def get_tombstone(self, fingerprint: str) -> Optional[Tombstone]:
        with self._connection() as conn:
            return StoreTransaction(conn).get_tombstone(fingerprint)

    def list_tombstones(self) -> dict[str, Tombstone]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT fingerprint, keeper_request_id, created_at FROM Tombstones;"
            ).fetchall()
        return {
            str(row["fingerprint"]): Tombstone(
                fingerprint=str(row["fingerprint"]),
                keeper_request_id=(
                    int(row["keeper_request_id"]) if row["keeper_request_id"] is not None else None
                ),
                created_at=str(row["created_at"]),
            )
            for row in rows
        }

    def list_assignments(self) -> list[Assignment]:
        with self._connection() as conn:
            return StoreTransaction(conn).list_assignments()

    def get_assignment(self, priority_key: int) -> Optional[Assignment]:
        with self._connection() as conn:
            return StoreTransaction(conn).get_assignment(priority_key)

    def find_lowest_priority_holder(self, facility_id: str) -> Optional[Assignment]:
        with self._connection() as conn:
            return StoreTransaction(conn).lowest_priority_holder(facility_id)

    def append_history(
        self,
        *,
        priority_key: int,
        outcome: OutcomeKind,
        message: str,
        facility_id: Optional[str] = None,
    ) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO History (priority_key, outcome, message, facility_id, recorded_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (priority_key, outcome.value, message, facility_id, utc_now()),
            )
            return int(cursor.lastrowid)

    def list_history(self, priority_key: Optional[int] = None) -> list[HistoryRecord]:
        query = """
            SELECT id, priority_key, outcome, message, facility_id, recorded_at
            FROM History
        """
        params: tuple[int, ...] = ()
        if priority_key is not None:
            query += " WHERE priority_key = ?"
            params = (priority_key,)
        query += " ORDER BY id ASC;"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            HistoryRecord(
                priority_key=int(row["priority_key"]),
                outcome=OutcomeKind(str(row["outcome"])),
                message=str(row["message"]),
                recorded_at=str(row["recorded_at"]),
                facility_id=row["facility_id"],
                record_id=int(row["id"]),
            )
            for row in rows
        ]
