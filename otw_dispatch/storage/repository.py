"""
Repository pattern for data access.

Persists delivery requests and their append-only event log in SQLite. Every
status change is a conditional update paired with its audit event inside one
transaction, so either both are visible or neither is.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, List, Optional, Protocol

import structlog

from otw_dispatch.core.errors import ConflictError, NotFound, PersistenceError
from otw_dispatch.core.lifecycle import RequestStatus
from otw_dispatch.core.pricing import MembershipTier, ServiceType

from .db import DEFAULT_DB_PATH, get_connection
from .models import DeliveryRequest, EventType, RequestEvent

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS delivery_request (
    id TEXT PRIMARY KEY,
    requester_id TEXT NOT NULL,
    status TEXT NOT NULL,
    driver_id TEXT,
    pickup TEXT NOT NULL,
    dropoff TEXT NOT NULL,
    service_type TEXT NOT NULL,
    tier TEXT NOT NULL,
    quoted_price TEXT NOT NULL,
    miles REAL NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS request_event (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES delivery_request(id),
    seq INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (request_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_delivery_request_status ON delivery_request(status);

CREATE TRIGGER IF NOT EXISTS request_event_no_update
BEFORE UPDATE ON request_event
BEGIN
    SELECT RAISE(ABORT, 'request_event is append-only');
END;

CREATE TRIGGER IF NOT EXISTS request_event_no_delete
BEFORE DELETE ON request_event
BEGIN
    SELECT RAISE(ABORT, 'request_event is append-only');
END;
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the request and event tables if they don't exist.

    The event table is guarded by triggers that abort any UPDATE or DELETE.

    Args:
        db_path: Path to SQLite database file

    Raises:
        PersistenceError: If the schema cannot be created
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise PersistenceError(f"Could not open database {db_path}: {e}") from e
    try:
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise PersistenceError(f"Could not initialize schema: {e}") from e
    finally:
        conn.close()


class RequestStore(Protocol):
    """Persistence contract consumed by RequestService."""

    def get_request(self, request_id: str) -> Optional[DeliveryRequest]: ...

    def create_request(self, request: DeliveryRequest, event_type: EventType, message: str) -> DeliveryRequest: ...

    def transition(
        self,
        request_id: str,
        expected_status: RequestStatus,
        expected_version: int,
        new_status: RequestStatus,
        message: str,
        driver_id: Optional[str] = None,
    ) -> DeliveryRequest: ...

    def append_event(self, request_id: str, event_type: EventType, message: str) -> RequestEvent: ...

    def list_events(self, request_id: str) -> List[RequestEvent]: ...

    def list_requests(self, status: Optional[RequestStatus] = None, limit: int = 100) -> List[DeliveryRequest]: ...


class RequestRepository:
    """SQLite-backed store for delivery requests and their event history.

    A fresh connection is opened per operation, so one instance can be shared
    across threads. Writes take the database write lock up front
    (`BEGIN IMMEDIATE`); `timeout` bounds how long a writer waits for it.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a competing writer
            clock: Returns the current UTC time
        """
        self.db_path = db_path
        self.timeout = timeout
        self._clock = clock

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path, self.timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open database {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error("storage.read_failed", db_path=self.db_path, error=str(e))
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path, self.timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open database {self.db_path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("storage.write_failed", db_path=self.db_path, error=str(e))
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_request(self, request_id: str) -> Optional[DeliveryRequest]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_request WHERE id = ?", (request_id,)
            ).fetchone()
        return _row_to_request(row) if row else None

    def create_request(self, request: DeliveryRequest, event_type: EventType, message: str) -> DeliveryRequest:
        """Insert a new request together with its first event.

        Args:
            request: Request to store, already in its post-creation status
            event_type: Type of the first history event
            message: Free-text event message

        Returns:
            The stored request
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO delivery_request
                (id, requester_id, status, driver_id, pickup, dropoff, service_type,
                 tier, quoted_price, miles, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.requester_id,
                    request.status.value,
                    request.driver_id,
                    request.pickup,
                    request.dropoff,
                    request.service_type.value,
                    request.tier.value,
                    str(request.quoted_price),
                    request.miles,
                    request.version,
                    request.created_at.isoformat(),
                    request.updated_at.isoformat(),
                ),
            )
            self._insert_event(conn, request.id, event_type, message)
        return request

    def transition(
        self,
        request_id: str,
        expected_status: RequestStatus,
        expected_version: int,
        new_status: RequestStatus,
        message: str,
        driver_id: Optional[str] = None,
    ) -> DeliveryRequest:
        """Atomically move a request to a new status and append the matching event.

        The update only applies if the stored status and version still match
        what the caller observed.

        Args:
            request_id: Request to update
            expected_status: Status the caller validated against
            expected_version: Version the caller read
            new_status: Target status
            message: Event message
            driver_id: Driver to record; the existing driver is kept when None

        Returns:
            The updated request

        Raises:
            NotFound: If the request does not exist
            ConflictError: If another writer changed the request first
            PersistenceError: If the store fails
        """
        with self._transaction() as conn:
            now = self._clock()
            cursor = conn.execute(
                """
                UPDATE delivery_request
                SET status = ?, driver_id = COALESCE(?, driver_id),
                    version = version + 1, updated_at = ?
                WHERE id = ? AND status = ? AND version = ?
                """,
                (
                    new_status.value,
                    driver_id,
                    now.isoformat(),
                    request_id,
                    expected_status.value,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM delivery_request WHERE id = ?", (request_id,)
                ).fetchone()
                if exists is None:
                    raise NotFound(request_id)
                raise ConflictError(
                    f"Request {request_id} changed since it was read as "
                    f"{expected_status.value} (version {expected_version})"
                )
            self._insert_event(conn, request_id, EventType.for_status(new_status), message)
            row = conn.execute(
                "SELECT * FROM delivery_request WHERE id = ?", (request_id,)
            ).fetchone()
        return _row_to_request(row)

    def append_event(self, request_id: str, event_type: EventType, message: str) -> RequestEvent:
        """Append an event that does not change the request's status.

        Raises:
            NotFound: If the request does not exist
        """
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM delivery_request WHERE id = ?", (request_id,)
            ).fetchone()
            if exists is None:
                raise NotFound(request_id)
            return self._insert_event(conn, request_id, event_type, message)

    def list_events(self, request_id: str) -> List[RequestEvent]:
        """Return a request's history in the order it was written."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, request_id, seq, event_type, message, created_at
                FROM request_event WHERE request_id = ? ORDER BY seq ASC
                """,
                (request_id,),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_requests(self, status: Optional[RequestStatus] = None, limit: int = 100) -> List[DeliveryRequest]:
        """Return requests, newest first, optionally filtered by status."""
        query = "SELECT * FROM delivery_request"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_request(row) for row in rows]

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        event_type: EventType,
        message: str,
    ) -> RequestEvent:
        # Must run inside the caller's transaction so seq allocation is serialized.
        last = conn.execute(
            """
            SELECT seq, created_at FROM request_event
            WHERE request_id = ? ORDER BY seq DESC LIMIT 1
            """,
            (request_id,),
        ).fetchone()

        created_at = self._clock()
        seq = 1
        if last is not None:
            seq = last["seq"] + 1
            created_at = max(created_at, datetime.fromisoformat(last["created_at"]))

        event = RequestEvent(
            id=uuid.uuid4().hex,
            request_id=request_id,
            seq=seq,
            event_type=event_type,
            message=message,
            created_at=created_at,
        )
        conn.execute(
            """
            INSERT INTO request_event (id, request_id, seq, event_type, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.request_id,
                event.seq,
                event.event_type.value,
                event.message,
                event.created_at.isoformat(),
            ),
        )
        return event


def _row_to_request(row: sqlite3.Row) -> DeliveryRequest:
    return DeliveryRequest(
        id=row["id"],
        requester_id=row["requester_id"],
        status=RequestStatus(row["status"]),
        driver_id=row["driver_id"],
        pickup=row["pickup"],
        dropoff=row["dropoff"],
        service_type=ServiceType(row["service_type"]),
        tier=MembershipTier(row["tier"]),
        quoted_price=Decimal(row["quoted_price"]),
        miles=row["miles"],
        version=row["version"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> RequestEvent:
    return RequestEvent(
        id=row["id"],
        request_id=row["request_id"],
        seq=row["seq"],
        event_type=EventType(row["event_type"]),
        message=row["message"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
