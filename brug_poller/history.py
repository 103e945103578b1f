"""Persist bridge status transitions as open/close sessions in PostgreSQL."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo

import psycopg2
from psycopg2.extensions import connection as PgConnection

from .situations import BridgeStatus, parse_timestamp

LOGGER = logging.getLogger(__name__)
AMSTERDAM_TZ = ZoneInfo("Europe/Amsterdam")

DEFAULT_HISTORY_TABLE = "bridge_status_history"
LOCAL_FORMAT = "%Y-%m-%d %H:%M:%S"
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

SESSION_COLUMNS: dict[str, str] = {
    "opened_at": "TIMESTAMPTZ",
    "closed_at": "TIMESTAMPTZ",
    "opened_at_raw": "TEXT",
    "closed_at_raw": "TEXT",
    "seconds_since_previous_open": "INTEGER",
}


class TransitionOutcome(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


def sanitize_table_name(name: str) -> str:
    if not TABLE_NAME_PATTERN.match(name or ""):
        raise SystemExit(f"Invalid history table name: {name!r}")
    return name


def connect(database_url: str) -> PgConnection:
    conn = psycopg2.connect(database_url)
    conn.autocommit = False
    return conn


def ensure_schema(conn: PgConnection, table: str) -> None:
    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id BIGSERIAL PRIMARY KEY,
            bridge_id TEXT NOT NULL,
            status TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            opened_at TIMESTAMPTZ,
            closed_at TIMESTAMPTZ,
            opened_at_raw TEXT,
            closed_at_raw TEXT,
            seconds_since_previous_open INTEGER
        );
        """,
    ]
    statements.extend(
        f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {definition};"
        for column, definition in SESSION_COLUMNS.items()
    )
    # Tables created before the session columns carried an offset stored
    # naive Europe/Amsterdam wall-clock values.
    statements.extend(
        f"""
        DO $$
        BEGIN
            IF EXISTS (
                SELECT 1 FROM information_schema.columns
                WHERE table_name = '{table}' AND column_name = '{column}'
                  AND data_type = 'timestamp without time zone'
            ) THEN
                ALTER TABLE {table} ALTER COLUMN {column} TYPE TIMESTAMPTZ
                    USING {column} AT TIME ZONE 'Europe/Amsterdam';
            END IF;
        END $$;
        """
        for column in ("opened_at", "closed_at")
    )
    statements.extend(
        [
            f"""
            CREATE INDEX IF NOT EXISTS {table}_bridge_idx
                ON {table} (bridge_id, id DESC);
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {table}_open_session_idx
                ON {table} (bridge_id)
                WHERE opened_at IS NOT NULL AND closed_at IS NULL;
            """,
        ]
    )

    with conn.cursor() as cur:
        for statement in statements:
            cur.execute(statement)
    conn.commit()


def _as_local(value: object) -> datetime | None:
    """Interpret a stored timestamp as Europe/Amsterdam local time."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=AMSTERDAM_TZ)
        return value.astimezone(AMSTERDAM_TZ)
    text = str(value).strip()
    try:
        parsed = datetime.strptime(text, LOCAL_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    return _as_local(parsed)


def _seconds_between(start: datetime, end: datetime) -> int:
    # Same-tzinfo subtraction is wall-clock; compare instants across DST.
    elapsed = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return max(0, int(elapsed.total_seconds()))


class TransitionLogger:
    """Per-bridge session state machine over the history table.

    A bridge is either idle or has exactly one open session (a row with
    ``opened_at`` set and ``closed_at`` empty). An ``open`` reading opens a
    session when idle; any other reading closes the open session or, when
    idle, records a plain row if the status changed.
    """

    def __init__(self, conn: PgConnection | None, table: str = DEFAULT_HISTORY_TABLE) -> None:
        self.conn = conn
        self.table = sanitize_table_name(table)

    @property
    def enabled(self) -> bool:
        return self.conn is not None

    def record(
        self,
        bridge_id: str,
        status: BridgeStatus | str,
        timestamp: str | None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        if self.conn is None:
            return TransitionOutcome.SKIPPED

        status = BridgeStatus(status)
        now = now or datetime.now(timezone.utc)
        moment = parse_timestamp(timestamp) or now
        local = moment.astimezone(AMSTERDAM_TZ).replace(microsecond=0)
        recorded_at = local.strftime(LOCAL_FORMAT)

        with self.conn:
            with self.conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (bridge_id,))
                cur.execute(
                    f"""
                    SELECT id, opened_at FROM {self.table}
                    WHERE bridge_id = %s AND opened_at IS NOT NULL AND closed_at IS NULL
                    ORDER BY id DESC LIMIT 1
                    """,
                    (bridge_id,),
                )
                open_row = cur.fetchone()

                if status is BridgeStatus.OPEN:
                    if open_row:
                        return TransitionOutcome.UNCHANGED
                    cur.execute(
                        f"""
                        INSERT INTO {self.table} (
                            bridge_id, status, recorded_at, opened_at, opened_at_raw,
                            seconds_since_previous_open
                        ) VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (bridge_id, status.value, recorded_at, local, timestamp, 0),
                    )
                    return TransitionOutcome.OPENED

                if open_row:
                    row_id, opened_raw = open_row
                    opened_at = _as_local(opened_raw)
                    closed_at = local
                    seconds_open = None
                    if opened_at is not None:
                        # A session never closes before it opened.
                        if closed_at.astimezone(timezone.utc) < opened_at.astimezone(timezone.utc):
                            closed_at = opened_at
                        seconds_open = _seconds_between(opened_at, closed_at)
                    cur.execute(
                        f"""
                        UPDATE {self.table}
                        SET status = %s, recorded_at = %s, closed_at = %s, closed_at_raw = %s,
                            seconds_since_previous_open = %s
                        WHERE id = %s
                        """,
                        (status.value, recorded_at, closed_at, timestamp, seconds_open, row_id),
                    )
                    return TransitionOutcome.CLOSED

                cur.execute(
                    f"SELECT status FROM {self.table} WHERE bridge_id = %s ORDER BY id DESC LIMIT 1",
                    (bridge_id,),
                )
                last = cur.fetchone()
                if last and last[0] == status.value:
                    return TransitionOutcome.UNCHANGED
                cur.execute(
                    f"INSERT INTO {self.table} (bridge_id, status, recorded_at) VALUES (%s, %s, %s)",
                    (bridge_id, status.value, recorded_at),
                )
                return TransitionOutcome.CHANGED


def _isoformat(value: object) -> str | None:
    local = _as_local(value)
    if local is not None:
        return local.isoformat()
    if value in (None, ""):
        return None
    return str(value)


def fetch_history(
    conn: PgConnection,
    bridge_id: str,
    table: str = DEFAULT_HISTORY_TABLE,
    limit: int = 10,
    hours: int = 24,
    now: datetime | None = None,
) -> list[dict[str, object]]:
    """Return the most recent transitions of a bridge, newest first."""
    table = sanitize_table_name(table)
    now = (now or datetime.now(timezone.utc)).astimezone(AMSTERDAM_TZ)
    cutoff = (now - timedelta(hours=hours)).strftime(LOCAL_FORMAT)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT status, recorded_at, opened_at, closed_at, seconds_since_previous_open
            FROM {table}
            WHERE bridge_id = %s AND recorded_at >= %s
            ORDER BY id DESC
            LIMIT %s
            """,
            (bridge_id, cutoff, limit),
        )
        rows = cur.fetchall()

    history: list[dict[str, object]] = []
    for status, recorded_at, opened_raw, closed_raw, seconds in rows:
        opened_at = _as_local(opened_raw)
        closed_at = _as_local(closed_raw)
        if opened_at is not None:
            seconds = _seconds_between(opened_at, closed_at or now)
        history.append(
            {
                "status": status,
                "recorded_at": _isoformat(recorded_at),
                "opened_at": _isoformat(opened_raw),
                "closed_at": _isoformat(closed_raw),
                "seconds_since_previous_open": seconds,
            }
        )
    return history
