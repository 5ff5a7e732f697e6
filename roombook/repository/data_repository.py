"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional, Sequence

from roombook.domain.models import (
    Booking,
    BookingOutcome,
    NormalizedWindow,
    RequesterProfile,
    Room,
    RoomFilters,
    UsageStats,
)
from roombook.utils.config import Settings, get_settings
from roombook.utils.logger import get_logger

if TYPE_CHECKING:
    from roombook.services.conflict_service import ConflictEvaluator


logger = get_logger(__name__)

_INSTANT_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_instant(value: datetime) -> str:
    """Fixed-width UTC text so lexical order matches chronological order."""
    if value.tzinfo is None:
        raise ValueError("instants must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(_INSTANT_FORMAT)


def from_db_instant(value: str) -> datetime:
    return datetime.strptime(value, _INSTANT_FORMAT).replace(tzinfo=timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DataRepository:
    """Encapsulates SQLite access so booking logic stays storage-agnostic.

    Implements the room, stats, requester and booking-writer contracts from
    `roombook.repository.interfaces`.
    """

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
            timeout=self._settings.sqlite_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the database write lock from the re-check through the insert."""
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_timeout_seconds,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON;")
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException:
                if connection.in_transaction:
                    connection.execute("ROLLBACK;")
                raise
            if connection.in_transaction:
                connection.execute("COMMIT;")
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Rooms (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        label TEXT NOT NULL,
                        room_type TEXT NOT NULL DEFAULT '',
                        specialty_id INTEGER,
                        block TEXT NOT NULL DEFAULT '',
                        active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0,1)),
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Requesters (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        specialty_id INTEGER,
                        active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0,1))
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id INTEGER NOT NULL,
                        requester_id INTEGER,
                        start_utc TEXT NOT NULL,
                        end_utc TEXT NOT NULL,
                        is_recurring INTEGER NOT NULL DEFAULT 0 CHECK (is_recurring IN (0,1)),
                        recurrence_end_utc TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        CHECK (start_utc < end_utc),
                        FOREIGN KEY (room_id) REFERENCES Rooms(id),
                        FOREIGN KEY (requester_id) REFERENCES Requesters(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS CancelledBookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id INTEGER NOT NULL,
                        room_id INTEGER NOT NULL,
                        requester_id INTEGER,
                        original_start_utc TEXT NOT NULL,
                        original_end_utc TEXT NOT NULL,
                        was_recurring INTEGER NOT NULL,
                        original_recurrence_end_utc TEXT,
                        reason TEXT NOT NULL,
                        cancelled_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS RoomUsageStats (
                        room_id INTEGER PRIMARY KEY,
                        usage_rate REAL,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_room_active
                    ON Bookings(room_id, is_recurring, end_utc, recurrence_end_utc);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_requester_start
                    ON Bookings(requester_id, start_utc);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_cancelled_room
                    ON CancelledBookings(room_id);
                    """
                )

                cursor.execute("PRAGMA table_info(CancelledBookings);")
                cancelled_columns = {
                    str(row["name"]) for row in cursor.fetchall()
                }
                if "original_recurrence_end_utc" not in cancelled_columns:
                    cursor.execute(
                        """
                        ALTER TABLE CancelledBookings
                        ADD COLUMN original_recurrence_end_utc TEXT;
                        """
                    )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # --- rooms -----------------------------------------------------------

    def create_room(
        self,
        label: str,
        room_type: str = "",
        specialty_id: Optional[int] = None,
        block: str = "",
        active: bool = True,
    ) -> int:
        """Insert room row and return the created id."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Rooms (label, room_type, specialty_id, block, active)
                VALUES (?, ?, ?, ?, ?);
                """,
                (label, room_type, specialty_id, block, int(active)),
            )
            conn.commit()
            return int(cursor.lastrowid)

    @staticmethod
    def _row_to_room(row: sqlite3.Row) -> Room:
        return Room(
            room_id=int(row["id"]),
            label=str(row["label"]),
            room_type=str(row["room_type"]),
            specialty_id=(
                int(row["specialty_id"]) if row["specialty_id"] is not None else None
            ),
            block=str(row["block"]),
            active=bool(row["active"]),
        )

    def get_room(self, room_id: int) -> Optional[Room]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, label, room_type, specialty_id, block, active
                FROM Rooms
                WHERE id = ?;
                """,
                (room_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_room(row)

    def list_rooms_by_ids(self, room_ids: Sequence[int]) -> list[Room]:
        """Return rooms in the order of `room_ids`, skipping unknown ids."""
        if not room_ids:
            return []
        placeholders = ",".join("?" for _ in room_ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, label, room_type, specialty_id, block, active
                FROM Rooms
                WHERE id IN ({placeholders});
                """,
                tuple(room_ids),
            )
            by_id = {int(row["id"]): self._row_to_room(row) for row in cursor.fetchall()}
        return [by_id[room_id] for room_id in room_ids if room_id in by_id]

    def list_candidates(
        self,
        filters: RoomFilters,
        after_cursor: Optional[int],
        limit: int,
    ) -> list[Room]:
        """Return active rooms matching `filters` strictly after the cursor."""
        clauses = ["active = 1"]
        params: list[object] = []
        if after_cursor is not None:
            clauses.append("id > ?")
            params.append(after_cursor)
        if filters.query:
            clauses.append("label LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.query)}%")
        if filters.block:
            clauses.append("block LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.block)}%")
        if filters.room_type:
            clauses.append("room_type LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.room_type)}%")
        if filters.specialty_id is not None:
            clauses.append("specialty_id = ?")
            params.append(filters.specialty_id)
        params.append(limit)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, label, room_type, specialty_id, block, active
                FROM Rooms
                WHERE {" AND ".join(clauses)}
                ORDER BY id ASC
                LIMIT ?;
                """,
                tuple(params),
            )
            return [self._row_to_room(row) for row in cursor.fetchall()]

    # --- requesters ------------------------------------------------------

    def create_requester(self, specialty_id: Optional[int] = None, active: bool = True) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO Requesters (specialty_id, active) VALUES (?, ?);",
                (specialty_id, int(active)),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def get_requester_profile(self, requester_id: int) -> Optional[RequesterProfile]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, specialty_id, active FROM Requesters WHERE id = ?;",
                (requester_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return RequesterProfile(
                requester_id=int(row["id"]),
                specialty_id=(
                    int(row["specialty_id"]) if row["specialty_id"] is not None else None
                ),
                is_active=bool(row["active"]),
            )

    # --- bookings --------------------------------------------------------

    @staticmethod
    def _row_to_booking(row: sqlite3.Row) -> Booking:
        return Booking(
            booking_id=int(row["id"]),
            room_id=int(row["room_id"]),
            requester_id=(
                int(row["requester_id"]) if row["requester_id"] is not None else None
            ),
            start=from_db_instant(str(row["start_utc"])),
            end=from_db_instant(str(row["end_utc"])),
            is_recurring=bool(row["is_recurring"]),
            recurrence_end=(
                from_db_instant(str(row["recurrence_end_utc"]))
                if row["recurrence_end_utc"] is not None
                else None
            ),
        )

    @staticmethod
    def _insert_booking_row(
        conn: sqlite3.Connection,
        room_id: int,
        requester_id: Optional[int],
        start: datetime,
        end: datetime,
        is_recurring: bool,
        recurrence_end: Optional[datetime],
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Bookings (
                room_id,
                requester_id,
                start_utc,
                end_utc,
                is_recurring,
                recurrence_end_utc
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                room_id,
                requester_id,
                to_db_instant(start),
                to_db_instant(end),
                int(is_recurring),
                to_db_instant(recurrence_end) if is_recurring and recurrence_end else None,
            ),
        )
        return int(cursor.lastrowid)

    def insert_booking(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        is_recurring: bool = False,
        recurrence_end: Optional[datetime] = None,
        requester_id: Optional[int] = None,
    ) -> int:
        """Insert a booking row without any conflict check."""
        with self._connect() as conn:
            booking_id = self._insert_booking_row(
                conn,
                room_id,
                requester_id,
                start,
                end,
                is_recurring,
                recurrence_end,
            )
            conn.commit()
            return booking_id

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, room_id, requester_id, start_utc, end_utc,
                       is_recurring, recurrence_end_utc
                FROM Bookings
                WHERE id = ?;
                """,
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_booking(row)

    def _fetch_active_bookings(
        self,
        conn: sqlite3.Connection,
        room_id: int,
        as_of: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[Booking]:
        as_of_text = to_db_instant(as_of)
        cursor = conn.execute(
            """
            SELECT id, room_id, requester_id, start_utc, end_utc,
                   is_recurring, recurrence_end_utc
            FROM Bookings
            WHERE room_id = ?
              AND id != ?
              AND (
                    (is_recurring = 0 AND end_utc > ?)
                 OR (is_recurring = 1 AND (recurrence_end_utc IS NULL OR recurrence_end_utc > ?))
              )
            ORDER BY start_utc ASC, id ASC;
            """,
            (
                room_id,
                exclude_booking_id if exclude_booking_id is not None else -1,
                as_of_text,
                as_of_text,
            ),
        )
        return [self._row_to_booking(row) for row in cursor.fetchall()]

    def get_active_bookings(
        self,
        room_id: int,
        as_of: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[Booking]:
        """Future one-off bookings plus recurring bookings not yet cut off."""
        with self._connect() as conn:
            return self._fetch_active_bookings(conn, room_id, as_of, exclude_booking_id)

    def insert_if_no_conflict(
        self,
        room_id: int,
        requester_id: Optional[int],
        windows: Sequence[NormalizedWindow],
        evaluator: "ConflictEvaluator",
        as_of: datetime,
    ) -> BookingOutcome:
        """Re-check and insert under one write transaction (first writer wins)."""
        with self._immediate_transaction() as conn:
            active = self._fetch_active_bookings(conn, room_id, as_of)
            result = evaluator.find_conflict(windows, active)
            if result.conflict:
                conn.execute("ROLLBACK;")
                logger.info(
                    "Booking insert rejected by re-check | room_id=%s | booking_id=%s",
                    room_id,
                    result.booking_id,
                )
                return BookingOutcome(booked=False, conflict=result)

            booking_ids = [
                self._insert_booking_row(
                    conn,
                    room_id,
                    requester_id,
                    window.start,
                    window.end,
                    window.recurring,
                    window.recurrence_end,
                )
                for window in windows
            ]
        logger.info(
            "Bookings inserted | room_id=%s | booking_ids=%s",
            room_id,
            booking_ids,
        )
        return BookingOutcome(booked=True, booking_ids=booking_ids)

    def reschedule_if_no_conflict(
        self,
        booking_id: int,
        window: NormalizedWindow,
        evaluator: "ConflictEvaluator",
        as_of: datetime,
    ) -> Optional[BookingOutcome]:
        """Move a booking, re-checking against every other active booking.

        Returns None when the booking does not exist.
        """
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT room_id FROM Bookings WHERE id = ?;",
                (booking_id,),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK;")
                return None
            room_id = int(row["room_id"])
            active = self._fetch_active_bookings(
                conn,
                room_id,
                as_of,
                exclude_booking_id=booking_id,
            )
            result = evaluator.find_conflict([window], active)
            if result.conflict:
                conn.execute("ROLLBACK;")
                return BookingOutcome(booked=False, conflict=result)
            conn.execute(
                """
                UPDATE Bookings
                SET start_utc = ?,
                    end_utc = ?,
                    is_recurring = ?,
                    recurrence_end_utc = ?
                WHERE id = ?;
                """,
                (
                    to_db_instant(window.start),
                    to_db_instant(window.end),
                    int(window.recurring),
                    (
                        to_db_instant(window.recurrence_end)
                        if window.recurring and window.recurrence_end
                        else None
                    ),
                    booking_id,
                ),
            )
        logger.info("Booking rescheduled | booking_id=%s | room_id=%s", booking_id, room_id)
        return BookingOutcome(booked=True, booking_ids=[booking_id])

    def cancel_booking(self, booking_id: int, reason: str) -> bool:
        """Archive a booking into CancelledBookings and delete it."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, room_id, requester_id, start_utc, end_utc,
                       is_recurring, recurrence_end_utc
                FROM Bookings
                WHERE id = ?;
                """,
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return False
            cursor.execute(
                """
                INSERT INTO CancelledBookings (
                    booking_id,
                    room_id,
                    requester_id,
                    original_start_utc,
                    original_end_utc,
                    was_recurring,
                    original_recurrence_end_utc,
                    reason
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    int(row["id"]),
                    int(row["room_id"]),
                    row["requester_id"],
                    str(row["start_utc"]),
                    str(row["end_utc"]),
                    int(row["is_recurring"]),
                    row["recurrence_end_utc"],
                    reason,
                ),
            )
            cursor.execute("DELETE FROM Bookings WHERE id = ?;", (booking_id,))
            conn.commit()
        logger.info("Booking cancelled | booking_id=%s | reason=%s", booking_id, reason)
        return True

    def count_bookings(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Bookings;")
            return int(cursor.fetchone()["count"])

    def count_recent_bookings_by_room(
        self,
        requester_id: int,
        since: datetime,
        until: datetime,
    ) -> dict[int, int]:
        """Count the requester's bookings per room that started in `[since, until)`."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT room_id, COUNT(*) AS count
                FROM Bookings
                WHERE requester_id = ?
                  AND start_utc >= ?
                  AND start_utc < ?
                GROUP BY room_id
                ORDER BY room_id ASC;
                """,
                (requester_id, to_db_instant(since), to_db_instant(until)),
            )
            return {int(row["room_id"]): int(row["count"]) for row in cursor.fetchall()}

    # --- stats -----------------------------------------------------------

    def save_usage_rate(self, room_id: int, usage_rate: Optional[float]) -> None:
        """Upsert the externally computed utilization ratio for a room."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO RoomUsageStats (room_id, usage_rate)
                VALUES (?, ?)
                ON CONFLICT(room_id) DO UPDATE SET
                    usage_rate = excluded.usage_rate,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                (room_id, usage_rate),
            )
            conn.commit()

    def get_usage_stats(self, room_id: int) -> Optional[UsageStats]:
        """Return usage rate and cancellation count, or None with no history."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    (SELECT usage_rate FROM RoomUsageStats WHERE room_id = ?) AS usage_rate,
                    (SELECT COUNT(*) FROM RoomUsageStats WHERE room_id = ?) AS has_stats,
                    (SELECT COUNT(*) FROM CancelledBookings WHERE room_id = ?) AS cancellations;
                """,
                (room_id, room_id, room_id),
            )
            row = cursor.fetchone()
        has_stats = int(row["has_stats"]) > 0
        cancellations = int(row["cancellations"])
        if not has_stats and cancellations == 0:
            return None
        return UsageStats(
            usage_rate=float(row["usage_rate"]) if row["usage_rate"] is not None else None,
            cancellation_count=cancellations,
        )