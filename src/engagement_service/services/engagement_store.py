"""SQLite-backed storage for requests, providers, payments, and their trails."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from engagement_service.core.exceptions import DuplicatePaymentError
from engagement_service.models import (
    AssignmentMethod,
    AuditEntry,
    Distribution,
    EventKind,
    Firm,
    FirmMember,
    FirmRole,
    OutboxEvent,
    Payment,
    PaymentStatus,
    Provider,
    ProviderType,
    ReasonCode,
    RefundReason,
    RequestEvent,
    RequestStatus,
    ServiceRequest,
    SplitPolicy,
    Urgency,
    now_iso,
    to_iso,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class DuplicateRecordError(Exception):
    """Raised when inserting a row whose primary key already exists."""


class EngagementStore:
    """
    SQLite-backed storage for the engagement engine.

    Every mutation runs inside ``BEGIN IMMEDIATE``. Callers that need several
    writes to commit together wrap them in :meth:`transaction`; the individual
    write methods join an open transaction instead of starting their own.
    """

    _PROVIDER_COLUMNS: tuple[str, ...] = (
        "provider_id",
        "display_name",
        "provider_type",
        "specializations",
        "experience_years",
        "rating",
        "max_active",
        "firm_id",
        "firm_role",
        "base_fee",
        "active_count",
        "reputation",
        "abandonment_count",
        "available",
        "verified_at",
    )
    _PROVIDER_PROFILE_COLUMNS: tuple[str, ...] = (
        "display_name",
        "provider_type",
        "specializations",
        "experience_years",
        "rating",
        "max_active",
        "firm_id",
        "firm_role",
        "base_fee",
        "available",
        "verified_at",
    )
    _FIRM_COLUMNS: tuple[str, ...] = (
        "firm_id",
        "name",
        "split_policy",
        "commission_pct",
        "auto_assignment_enabled",
        "active",
    )
    _MEMBER_COLUMNS: tuple[str, ...] = (
        "firm_id",
        "provider_id",
        "split_pct",
        "joined_at",
        "active",
    )
    _REQUEST_COLUMNS: tuple[str, ...] = (
        "request_id",
        "client_id",
        "category",
        "urgency",
        "description",
        "status",
        "created_at",
        "updated_at",
        "provider_id",
        "firm_id",
        "requested_provider_id",
        "budget_hint",
        "deadline",
        "estimated_hours",
        "actual_hours",
        "reopened_count",
        "assignment_method",
        "assignment_score",
        "cancelled_from",
        "cancelled_by",
        "cancellation_reason",
        "accepted_at",
        "started_at",
        "completed_at",
        "cancelled_at",
    )
    _EVENT_COLUMNS: tuple[str, ...] = (
        "event_id",
        "request_id",
        "sequence",
        "kind",
        "actor_id",
        "reason_code",
        "from_status",
        "occurred_at",
        "note",
        "provider_id",
        "assignment_method",
    )
    _PAYMENT_COLUMNS: tuple[str, ...] = (
        "payment_id",
        "request_id",
        "client_id",
        "payee_provider_id",
        "provider_type",
        "gross",
        "fee_pct",
        "platform_fee",
        "net_to_provider",
        "status",
        "created_at",
        "firm_id",
        "gateway_order_id",
        "gateway_payment_id",
        "verified_at",
        "completed_at",
        "released_to_provider",
        "released_at",
        "release_due_at",
        "on_hold",
        "hold_reason",
        "distributed",
        "refund_reason_code",
        "refund_pct",
        "refund_amount",
        "refund_processed_by",
        "refunded_at",
        "gateway_refund_id",
    )
    _DISTRIBUTION_COLUMNS: tuple[str, ...] = (
        "distribution_id",
        "payment_id",
        "payee_id",
        "gross_share",
        "withheld",
        "net",
        "remainder_holder",
        "created_at",
    )
    _PAYMENT_BOOL_COLUMNS = frozenset({"released_to_provider", "on_hold", "distributed"})

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self._lock = RLock()
        self._depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS firms (
                    firm_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    split_policy TEXT NOT NULL,
                    commission_pct REAL,
                    auto_assignment_enabled INTEGER NOT NULL DEFAULT 1,
                    active INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS providers (
                    provider_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    provider_type TEXT NOT NULL,
                    specializations TEXT NOT NULL,
                    experience_years INTEGER NOT NULL,
                    rating REAL NOT NULL,
                    max_active INTEGER NOT NULL CHECK (max_active > 0),
                    firm_id TEXT REFERENCES firms(firm_id),
                    firm_role TEXT,
                    base_fee INTEGER,
                    active_count INTEGER NOT NULL DEFAULT 0,
                    reputation REAL NOT NULL DEFAULT 5.0,
                    abandonment_count INTEGER NOT NULL DEFAULT 0,
                    available INTEGER NOT NULL DEFAULT 1,
                    verified_at TEXT,
                    CHECK (active_count >= 0 AND active_count <= max_active),
                    CHECK (reputation >= 0 AND reputation <= 5)
                );

                CREATE TABLE IF NOT EXISTS firm_members (
                    firm_id TEXT NOT NULL REFERENCES firms(firm_id),
                    provider_id TEXT NOT NULL REFERENCES providers(provider_id),
                    split_pct REAL,
                    joined_at TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (firm_id, provider_id)
                );

                CREATE TABLE IF NOT EXISTS requests (
                    request_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    urgency TEXT NOT NULL,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    provider_id TEXT,
                    firm_id TEXT,
                    requested_provider_id TEXT,
                    budget_hint INTEGER,
                    deadline TEXT,
                    estimated_hours REAL,
                    actual_hours REAL,
                    reopened_count INTEGER NOT NULL DEFAULT 0,
                    assignment_method TEXT,
                    assignment_score REAL,
                    cancelled_from TEXT,
                    cancelled_by TEXT,
                    cancellation_reason TEXT,
                    accepted_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_requests_client_status
                    ON requests(client_id, status);
                CREATE INDEX IF NOT EXISTS idx_requests_provider_status
                    ON requests(provider_id, status);

                CREATE TABLE IF NOT EXISTS request_events (
                    event_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES requests(request_id),
                    sequence INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    reason_code TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    note TEXT,
                    provider_id TEXT,
                    assignment_method TEXT,
                    UNIQUE (request_id, sequence)
                );

                CREATE TRIGGER IF NOT EXISTS request_events_no_update
                BEFORE UPDATE ON request_events
                BEGIN
                    SELECT RAISE(ABORT, 'request events are immutable');
                END;

                CREATE TRIGGER IF NOT EXISTS request_events_no_delete
                BEFORE DELETE ON request_events
                BEGIN
                    SELECT RAISE(ABORT, 'request events are immutable');
                END;

                CREATE TABLE IF NOT EXISTS custom_splits (
                    request_id TEXT NOT NULL REFERENCES requests(request_id),
                    provider_id TEXT NOT NULL,
                    split_pct REAL NOT NULL CHECK (split_pct > 0 AND split_pct <= 100),
                    PRIMARY KEY (request_id, provider_id)
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES requests(request_id),
                    client_id TEXT NOT NULL,
                    payee_provider_id TEXT NOT NULL,
                    provider_type TEXT NOT NULL,
                    gross INTEGER NOT NULL CHECK (gross > 0),
                    fee_pct REAL NOT NULL,
                    platform_fee INTEGER NOT NULL CHECK (platform_fee >= 0),
                    net_to_provider INTEGER NOT NULL CHECK (net_to_provider >= 0),
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    firm_id TEXT,
                    gateway_order_id TEXT,
                    gateway_payment_id TEXT,
                    verified_at TEXT,
                    completed_at TEXT,
                    released_to_provider INTEGER NOT NULL DEFAULT 0,
                    released_at TEXT,
                    release_due_at TEXT,
                    on_hold INTEGER NOT NULL DEFAULT 0,
                    hold_reason TEXT,
                    distributed INTEGER NOT NULL DEFAULT 0,
                    refund_reason_code TEXT,
                    refund_pct REAL CHECK (refund_pct IS NULL OR refund_pct BETWEEN 0 AND 100),
                    refund_amount INTEGER,
                    refund_processed_by TEXT,
                    refunded_at TEXT,
                    gateway_refund_id TEXT,
                    CHECK (platform_fee + net_to_provider = gross)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_one_live_per_request
                    ON payments(request_id) WHERE status != 'failed';
                CREATE INDEX IF NOT EXISTS idx_payments_release_due
                    ON payments(status, release_due_at);

                CREATE TRIGGER IF NOT EXISTS payments_refund_pct_frozen
                BEFORE UPDATE OF refund_pct ON payments
                WHEN OLD.refund_pct IS NOT NULL
                BEGIN
                    SELECT RAISE(ABORT, 'refund percentage is immutable once recorded');
                END;

                CREATE TABLE IF NOT EXISTS distributions (
                    distribution_id TEXT PRIMARY KEY,
                    payment_id TEXT NOT NULL REFERENCES payments(payment_id),
                    payee_id TEXT NOT NULL,
                    gross_share INTEGER NOT NULL CHECK (gross_share >= 0),
                    withheld INTEGER NOT NULL CHECK (withheld >= 0),
                    net INTEGER NOT NULL CHECK (net >= 0),
                    remainder_holder INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE (payment_id, payee_id)
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    audit_id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    details TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id);

                CREATE TRIGGER IF NOT EXISTS audit_log_no_update
                BEFORE UPDATE ON audit_log
                BEGIN
                    SELECT RAISE(ABORT, 'audit entries are immutable');
                END;

                CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
                BEFORE DELETE ON audit_log
                BEGIN
                    SELECT RAISE(ABORT, 'audit entries are immutable');
                END;

                CREATE TABLE IF NOT EXISTS outbox (
                    event_id TEXT PRIMARY KEY,
                    topic TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    dispatched_at TEXT,
                    last_error TEXT,
                    leased_until TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_outbox_pending
                    ON outbox(dispatched_at, created_at);
                """
            )
            self._db.commit()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Hold the write lock and an immediate transaction for the block.

        Nested use joins the outer transaction. Any exception rolls back
        everything written since the outermost ``transaction()`` began.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
                self._db.commit()
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._db.close()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_provider(row: sqlite3.Row) -> Provider:
        return Provider(
            provider_id=row["provider_id"],
            display_name=row["display_name"],
            provider_type=ProviderType(row["provider_type"]),
            specializations=tuple(json.loads(row["specializations"])),
            experience_years=row["experience_years"],
            rating=row["rating"],
            max_active=row["max_active"],
            firm_id=row["firm_id"],
            firm_role=FirmRole(row["firm_role"]) if row["firm_role"] else None,
            base_fee=row["base_fee"],
            active_count=row["active_count"],
            reputation=row["reputation"],
            abandonment_count=row["abandonment_count"],
            available=bool(row["available"]),
            verified_at=row["verified_at"],
        )

    @staticmethod
    def _row_to_firm(row: sqlite3.Row) -> Firm:
        return Firm(
            firm_id=row["firm_id"],
            name=row["name"],
            split_policy=SplitPolicy(row["split_policy"]),
            commission_pct=row["commission_pct"],
            auto_assignment_enabled=bool(row["auto_assignment_enabled"]),
            active=bool(row["active"]),
        )

    @staticmethod
    def _row_to_member(row: sqlite3.Row) -> FirmMember:
        return FirmMember(
            firm_id=row["firm_id"],
            provider_id=row["provider_id"],
            split_pct=row["split_pct"],
            joined_at=row["joined_at"],
            active=bool(row["active"]),
        )

    def _row_to_request(self, row: sqlite3.Row) -> ServiceRequest:
        values: dict[str, Any] = {column: row[column] for column in self._REQUEST_COLUMNS}
        values["urgency"] = Urgency(values["urgency"])
        values["status"] = RequestStatus(values["status"])
        if values["assignment_method"] is not None:
            values["assignment_method"] = AssignmentMethod(values["assignment_method"])
        if values["cancelled_from"] is not None:
            values["cancelled_from"] = RequestStatus(values["cancelled_from"])
        return ServiceRequest(**values)

    def _row_to_event(self, row: sqlite3.Row) -> RequestEvent:
        values: dict[str, Any] = {column: row[column] for column in self._EVENT_COLUMNS}
        values["kind"] = EventKind(values["kind"])
        values["reason_code"] = ReasonCode(values["reason_code"])
        values["from_status"] = RequestStatus(values["from_status"])
        if values["assignment_method"] is not None:
            values["assignment_method"] = AssignmentMethod(values["assignment_method"])
        return RequestEvent(**values)

    def _row_to_payment(self, row: sqlite3.Row) -> Payment:
        values: dict[str, Any] = {column: row[column] for column in self._PAYMENT_COLUMNS}
        values["provider_type"] = ProviderType(values["provider_type"])
        values["status"] = PaymentStatus(values["status"])
        for column in self._PAYMENT_BOOL_COLUMNS:
            values[column] = bool(values[column])
        if values["refund_reason_code"] is not None:
            values["refund_reason_code"] = RefundReason(values["refund_reason_code"])
        return Payment(**values)

    def _row_to_distribution(self, row: sqlite3.Row) -> Distribution:
        values: dict[str, Any] = {column: row[column] for column in self._DISTRIBUTION_COLUMNS}
        values["remainder_holder"] = bool(values["remainder_holder"])
        return Distribution(**values)

    @staticmethod
    def _to_db(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        return value

    def _update_row(
        self,
        table: str,
        key_column: str,
        key: str,
        allowed: Sequence[str],
        updates: dict[str, Any],
        guards: dict[str, Any],
    ) -> int:
        """Apply ``updates`` only while every guard column still holds its expected value."""
        if len(updates) == 0:
            return 0
        if any(column not in allowed or column == key_column for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)
        if any(column not in allowed for column in guards):
            msg = f"Attempted to guard on unknown {table} column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [self._to_db(value) for value in updates.values()]
        where_clause = f"{key_column} = ?"
        params.append(key)
        for column, expected in guards.items():
            where_clause += f" AND {column} IS ?"
            params.append(self._to_db(expected))

        with self.transaction():
            cursor = self._db.execute(
                f"UPDATE {table} SET {set_clause} WHERE {where_clause}",  # nosec B608
                tuple(params),
            )
            return cursor.rowcount

    def _insert_row(self, table: str, columns: Sequence[str], values: Sequence[Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        self._db.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",  # nosec B608
            tuple(self._to_db(value) for value in values),
        )

    # ------------------------------------------------------------------
    # Providers and firms
    # ------------------------------------------------------------------

    def _upsert_row(
        self,
        table: str,
        key_columns: Sequence[str],
        columns: Sequence[str],
        values: Sequence[Any],
        refreshed: Sequence[str],
    ) -> bool:
        """Insert a row, or overwrite only ``refreshed`` on an existing one; True if new."""
        keys = dict(zip(columns, values, strict=True))
        where_clause = " AND ".join(f"{column} = ?" for column in key_columns)
        set_clause = ", ".join(f"{column} = excluded.{column}" for column in refreshed)
        placeholders = ", ".join("?" for _ in columns)
        with self.transaction():
            existing = self._db.execute(
                f"SELECT 1 FROM {table} WHERE {where_clause}",  # nosec B608
                tuple(keys[column] for column in key_columns),
            ).fetchone()
            self._db.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "  # nosec B608
                f"ON CONFLICT({', '.join(key_columns)}) DO UPDATE SET {set_clause}",
                tuple(self._to_db(value) for value in values),
            )
        return existing is None

    def save_provider(self, provider: Provider) -> bool:
        """
        Register or refresh a provider profile supplied by the directory.

        Returns True when the provider is new. A refresh rewrites the profile
        columns only; ``active_count``, ``reputation`` and ``abandonment_count``
        stay as the engine left them.
        """
        values = [getattr(provider, column) for column in self._PROVIDER_COLUMNS]
        values[self._PROVIDER_COLUMNS.index("specializations")] = json.dumps(
            list(provider.specializations)
        )
        return self._upsert_row(
            "providers",
            ("provider_id",),
            self._PROVIDER_COLUMNS,
            values,
            self._PROVIDER_PROFILE_COLUMNS,
        )

    def get_provider(self, provider_id: str) -> Provider | None:
        """Fetch a provider by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM providers WHERE provider_id = ?", (provider_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_provider(row)

    def list_individual_providers(self) -> list[Provider]:
        """All individual providers, verified or not."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM providers WHERE provider_type = ? ORDER BY provider_id",
                (ProviderType.INDIVIDUAL.value,),
            ).fetchall()
        return [self._row_to_provider(row) for row in rows]

    def list_firm_providers(self, firm_id: str) -> list[Provider]:
        """Providers holding an active membership in the firm."""
        with self._lock:
            rows = self._db.execute(
                "SELECT p.* FROM providers p "
                "JOIN firm_members m ON m.provider_id = p.provider_id "
                "WHERE m.firm_id = ? AND m.active = 1 ORDER BY p.provider_id",
                (firm_id,),
            ).fetchall()
        return [self._row_to_provider(row) for row in rows]

    def increment_active_count(self, provider_id: str) -> bool:
        """Take one active slot; False when the provider is already at its limit."""
        with self.transaction():
            cursor = self._db.execute(
                "UPDATE providers SET active_count = active_count + 1 "
                "WHERE provider_id = ? AND active_count < max_active",
                (provider_id,),
            )
            return cursor.rowcount == 1

    def decrement_active_count(self, provider_id: str) -> bool:
        """Release one active slot; False when the count is already zero."""
        with self.transaction():
            cursor = self._db.execute(
                "UPDATE providers SET active_count = active_count - 1 "
                "WHERE provider_id = ? AND active_count > 0",
                (provider_id,),
            )
            return cursor.rowcount == 1

    def record_abandonment(self, provider_id: str, penalty: float) -> float | None:
        """Apply a floored reputation penalty and count the abandonment."""
        with self.transaction():
            self._db.execute(
                "UPDATE providers SET "
                "reputation = MAX(0.0, ROUND(reputation - ?, 6)), "
                "abandonment_count = abandonment_count + 1 "
                "WHERE provider_id = ?",
                (penalty, provider_id),
            )
            row = self._db.execute(
                "SELECT reputation FROM providers WHERE provider_id = ?", (provider_id,)
            ).fetchone()
        return None if row is None else float(row["reputation"])

    def save_firm(self, firm: Firm) -> bool:
        """Register or refresh a firm; True when the firm is new."""
        return self._upsert_row(
            "firms",
            ("firm_id",),
            self._FIRM_COLUMNS,
            [getattr(firm, column) for column in self._FIRM_COLUMNS],
            self._FIRM_COLUMNS[1:],
        )

    def get_firm(self, firm_id: str) -> Firm | None:
        """Fetch a firm by ID."""
        with self._lock:
            row = self._db.execute("SELECT * FROM firms WHERE firm_id = ?", (firm_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_firm(row)

    def save_firm_member(self, member: FirmMember) -> bool:
        """Attach a provider to a firm, or refresh the membership keeping ``joined_at``."""
        return self._upsert_row(
            "firm_members",
            ("firm_id", "provider_id"),
            self._MEMBER_COLUMNS,
            [getattr(member, column) for column in self._MEMBER_COLUMNS],
            ("split_pct", "active"),
        )

    def get_firm_member(self, firm_id: str, provider_id: str) -> FirmMember | None:
        """Fetch one membership, active or not."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM firm_members WHERE firm_id = ? AND provider_id = ?",
                (firm_id, provider_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_member(row)

    def list_firm_members(self, firm_id: str, *, active_only: bool = True) -> list[FirmMember]:
        """Members of a firm ordered for remainder assignment."""
        query = "SELECT * FROM firm_members WHERE firm_id = ?"
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY COALESCE(split_pct, 0) DESC, joined_at ASC, provider_id ASC"
        with self._lock:
            rows = self._db.execute(query, (firm_id,)).fetchall()
        return [self._row_to_member(row) for row in rows]

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def insert_request(self, request: ServiceRequest) -> None:
        """Insert a new request row."""
        values = [getattr(request, column) for column in self._REQUEST_COLUMNS]
        try:
            with self.transaction():
                self._insert_row("requests", self._REQUEST_COLUMNS, values)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateRecordError(
                    f"A request with request_id={request.request_id} already exists"
                ) from exc
            raise

    def get_request(self, request_id: str) -> ServiceRequest | None:
        """Fetch a request by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_request(row)

    def update_request(
        self,
        request_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
        expected: dict[str, Any] | None = None,
    ) -> int:
        """
        Update request columns and return the number of affected rows.

        ``expected`` adds column guards on top of the status guard; a guard
        value of None requires the column to be NULL.
        """
        guards = dict(expected or {})
        if expected_status is not None:
            guards["status"] = expected_status
        return self._update_row(
            "requests",
            "request_id",
            request_id,
            self._REQUEST_COLUMNS,
            updates,
            guards,
        )

    def list_requests(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ServiceRequest]:
        """List requests, newest first, with optional filters."""
        conditions: list[str] = []
        params: list[object] = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if provider_id is not None:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status)

        query = "SELECT * FROM requests"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, request_id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        with self._lock:
            rows = self._db.execute(query, tuple(params)).fetchall()
        return [self._row_to_request(row) for row in rows]

    def count_pending_for_client(self, client_id: str) -> int:
        """Count the client's requests still awaiting acceptance."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) AS cnt FROM requests WHERE client_id = ? AND status = ?",
                (client_id, RequestStatus.PENDING.value),
            ).fetchone()
        return int(row["cnt"])

    def count_requests_by_status(self) -> dict[str, int]:
        """Request counts keyed by status."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) AS cnt FROM requests GROUP BY status"
            ).fetchall()
        return {str(row["status"]): int(row["cnt"]) for row in rows}

    # ------------------------------------------------------------------
    # Request events
    # ------------------------------------------------------------------

    def append_event(
        self,
        *,
        request_id: str,
        kind: EventKind,
        actor_id: str,
        reason_code: ReasonCode,
        from_status: RequestStatus,
        note: str | None = None,
        provider_id: str | None = None,
        assignment_method: AssignmentMethod | None = None,
    ) -> RequestEvent:
        """Append the next event in the request's sequence."""
        with self.transaction():
            row = self._db.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 AS next_seq "
                "FROM request_events WHERE request_id = ?",
                (request_id,),
            ).fetchone()
            event = RequestEvent(
                event_id=f"ev-{uuid4()}",
                request_id=request_id,
                sequence=int(row["next_seq"]),
                kind=kind,
                actor_id=actor_id,
                reason_code=reason_code,
                from_status=from_status,
                occurred_at=now_iso(),
                note=note,
                provider_id=provider_id,
                assignment_method=assignment_method,
            )
            self._insert_row(
                "request_events",
                self._EVENT_COLUMNS,
                [getattr(event, column) for column in self._EVENT_COLUMNS],
            )
        return event

    def list_events(self, request_id: str) -> list[RequestEvent]:
        """Events for a request in sequence order."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM request_events WHERE request_id = ? ORDER BY sequence ASC",
                (request_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Custom splits
    # ------------------------------------------------------------------

    def replace_custom_split(self, request_id: str, shares: dict[str, float]) -> None:
        """Replace the per-request split shares."""
        with self.transaction():
            self._db.execute("DELETE FROM custom_splits WHERE request_id = ?", (request_id,))
            self._db.executemany(
                "INSERT INTO custom_splits (request_id, provider_id, split_pct) VALUES (?, ?, ?)",
                [(request_id, provider_id, pct) for provider_id, pct in shares.items()],
            )

    def get_custom_split(self, request_id: str) -> dict[str, float]:
        """Per-request split shares keyed by provider."""
        with self._lock:
            rows = self._db.execute(
                "SELECT provider_id, split_pct FROM custom_splits WHERE request_id = ? "
                "ORDER BY provider_id",
                (request_id,),
            ).fetchall()
        return {str(row["provider_id"]): float(row["split_pct"]) for row in rows}

    # ------------------------------------------------------------------
    # Payments and distributions
    # ------------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> None:
        """
        Insert a payment row.

        Raises DuplicatePaymentError when a non-failed payment already exists
        for the request.
        """
        values = [getattr(payment, column) for column in self._PAYMENT_COLUMNS]
        try:
            with self.transaction():
                self._insert_row("payments", self._PAYMENT_COLUMNS, values)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicatePaymentError(payment.request_id) from exc
            raise

    def get_payment(self, payment_id: str) -> Payment | None:
        """Fetch a payment by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM payments WHERE payment_id = ?", (payment_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_payment(row)

    def get_live_payment_for_request(self, request_id: str) -> Payment | None:
        """The single non-failed payment of a request, if any."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM payments WHERE request_id = ? AND status != ?",
                (request_id, PaymentStatus.FAILED.value),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_payment(row)

    def update_payment(
        self,
        payment_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update payment columns and return the number of affected rows."""
        return self._update_row(
            "payments",
            "payment_id",
            payment_id,
            self._PAYMENT_COLUMNS,
            updates,
            {} if expected_status is None else {"status": expected_status},
        )

    def schedule_release(self, request_id: str, release_due_at: str) -> int:
        """Set the auto-release time on the request's completed payment."""
        with self.transaction():
            cursor = self._db.execute(
                "UPDATE payments SET release_due_at = ? "
                "WHERE request_id = ? AND status = ? AND release_due_at IS NULL",
                (release_due_at, request_id, PaymentStatus.COMPLETED.value),
            )
            return cursor.rowcount

    def list_due_releases(self, now: str) -> list[Payment]:
        """Completed, unheld, undistributed payments whose release time has passed."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM payments WHERE status = ? AND on_hold = 0 AND distributed = 0 "
                "AND release_due_at IS NOT NULL AND release_due_at <= ? "
                "ORDER BY release_due_at ASC, payment_id ASC",
                (PaymentStatus.COMPLETED.value, now),
            ).fetchall()
        return [self._row_to_payment(row) for row in rows]

    def insert_distributions(self, distributions: Sequence[Distribution]) -> None:
        """Insert every payee row of one distribution."""
        with self.transaction():
            for distribution in distributions:
                self._insert_row(
                    "distributions",
                    self._DISTRIBUTION_COLUMNS,
                    [getattr(distribution, column) for column in self._DISTRIBUTION_COLUMNS],
                )

    def list_distributions(self, payment_id: str) -> list[Distribution]:
        """Distribution rows for a payment, remainder holder first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM distributions WHERE payment_id = ? "
                "ORDER BY remainder_holder DESC, payee_id ASC",
                (payment_id,),
            ).fetchall()
        return [self._row_to_distribution(row) for row in rows]

    def count_payments_by_status(self) -> dict[str, int]:
        """Payment counts keyed by status."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) AS cnt FROM payments GROUP BY status"
            ).fetchall()
        return {str(row["status"]): int(row["cnt"]) for row in rows}

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_audit(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: str,
        outcome: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Append an immutable audit entry."""
        entry = AuditEntry(
            audit_id=f"aud-{uuid4()}",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            outcome=outcome,
            recorded_at=now_iso(),
            details=dict(details or {}),
        )
        with self.transaction():
            self._db.execute(
                "INSERT INTO audit_log "
                "(audit_id, entity_type, entity_id, action, actor_id, outcome, details, "
                "recorded_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.audit_id,
                    entry.entity_type,
                    entry.entity_id,
                    entry.action,
                    entry.actor_id,
                    entry.outcome,
                    json.dumps(entry.details, sort_keys=True, default=str),
                    entry.recorded_at,
                ),
            )
        return entry

    def list_audit(self, entity_id: str) -> list[AuditEntry]:
        """Audit entries for an entity in recording order."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY recorded_at ASC, rowid ASC",
                (entity_id,),
            ).fetchall()
        return [
            AuditEntry(
                audit_id=row["audit_id"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                action=row["action"],
                actor_id=row["actor_id"],
                outcome=row["outcome"],
                recorded_at=row["recorded_at"],
                details=json.loads(row["details"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def enqueue_outbox(self, *, topic: str, recipient_id: str, payload: dict[str, Any]) -> str:
        """Record a side effect to deliver once the surrounding transaction commits."""
        event_id = f"ob-{uuid4()}"
        with self.transaction():
            self._db.execute(
                "INSERT INTO outbox (event_id, topic, recipient_id, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    event_id,
                    topic,
                    recipient_id,
                    json.dumps(payload, sort_keys=True, default=str),
                    now_iso(),
                ),
            )
        return event_id

    @staticmethod
    def _row_to_outbox(row: sqlite3.Row) -> OutboxEvent:
        return OutboxEvent(
            event_id=row["event_id"],
            topic=row["topic"],
            recipient_id=row["recipient_id"],
            payload=json.loads(row["payload"]),
            created_at=row["created_at"],
            attempts=row["attempts"],
            dispatched_at=row["dispatched_at"],
            last_error=row["last_error"],
            leased_until=row["leased_until"],
        )

    def fetch_pending_outbox(
        self, limit: int, max_attempts: int, *, now: str | None = None
    ) -> list[OutboxEvent]:
        """
        Undelivered outbox events that still have attempts left, oldest first.

        With ``now`` given, events leased to a dispatcher until after ``now``
        are left out.
        """
        query = "SELECT * FROM outbox WHERE dispatched_at IS NULL AND attempts < ?"
        params: list[object] = [max_attempts]
        if now is not None:
            query += " AND (leased_until IS NULL OR leased_until <= ?)"
            params.append(now)
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._db.execute(query, tuple(params)).fetchall()
        return [self._row_to_outbox(row) for row in rows]

    def claim_outbox(
        self, limit: int, max_attempts: int, lease_seconds: float
    ) -> list[OutboxEvent]:
        """
        Lease a batch of deliverable events to the caller.

        A leased event is invisible to other claims until it is marked or
        its lease runs out, so overlapping dispatchers never push it twice.
        """
        moment = datetime.now(UTC)
        leased_until = to_iso(moment + timedelta(seconds=lease_seconds))
        with self.transaction():
            events = self.fetch_pending_outbox(limit, max_attempts, now=to_iso(moment))
            self._db.executemany(
                "UPDATE outbox SET leased_until = ? WHERE event_id = ?",
                [(leased_until, event.event_id) for event in events],
            )
        return events

    def mark_outbox_dispatched(self, event_id: str) -> None:
        """Mark an outbox event delivered."""
        with self.transaction():
            self._db.execute(
                "UPDATE outbox SET dispatched_at = ?, attempts = attempts + 1, "
                "last_error = NULL, leased_until = NULL WHERE event_id = ?",
                (now_iso(), event_id),
            )

    def mark_outbox_failed(self, event_id: str, error: str) -> None:
        """Count a failed delivery attempt and release the lease."""
        with self.transaction():
            self._db.execute(
                "UPDATE outbox SET attempts = attempts + 1, last_error = ?, leased_until = NULL "
                "WHERE event_id = ?",
                (error[:500], event_id),
            )

    def count_pending_outbox(self) -> int:
        """Number of undelivered outbox events."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) AS cnt FROM outbox WHERE dispatched_at IS NULL"
            ).fetchone()
        return int(row["cnt"])
