"""SQLite storage for the dead-letter queue (table event_dead_letter_queue)."""

import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from eventrelay.events.models import DeadLetterEntry, DeadLetterStatus, utc_now_iso

logger = logging.getLogger(__name__)

TABLE_NAME = "event_dead_letter_queue"

_COLUMNS = (
    "id, event_id, event_name, event_data, handler_id, error_message, error_stack, "
    "retry_count, status, correlation_id, source_id, created_at, last_retry_at"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS event_dead_letter_queue (
    id              TEXT    PRIMARY KEY,
    event_id        TEXT    NOT NULL,
    event_name      TEXT    NOT NULL,
    event_data      TEXT    NOT NULL DEFAULT '{}',
    handler_id      TEXT    NOT NULL,
    error_message   TEXT    NOT NULL,
    error_stack     TEXT,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    status          TEXT    NOT NULL DEFAULT 'pending',
    correlation_id  TEXT,
    source_id       TEXT,
    created_at      TEXT    NOT NULL,
    last_retry_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_dlq_status_created ON event_dead_letter_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_dlq_event_name ON event_dead_letter_queue(event_name);
CREATE INDEX IF NOT EXISTS idx_dlq_event_id ON event_dead_letter_queue(event_id);
"""

# Statuses from which an entry may be claimed for another delivery attempt.
_RETRYABLE_STATUSES = (DeadLetterStatus.PENDING.value, DeadLetterStatus.FAILED.value)


def _row_to_entry(row: tuple) -> DeadLetterEntry:
    """Convert a table row (in _COLUMNS order) to a DeadLetterEntry."""
    data = json.loads(row[3]) if isinstance(row[3], str) else (row[3] or {})
    return DeadLetterEntry(
        id=row[0],
        event_id=row[1],
        event_name=row[2],
        event_data=data,
        handler_id=row[4],
        error_message=row[5],
        error_stack=row[6],
        retry_count=row[7],
        status=DeadLetterStatus(row[8]),
        correlation_id=row[9],
        source_id=row[10],
        created_at=row[11],
        last_retry_at=row[12],
    )


class DeadLetterStore:
    """SQLite-backed dead-letter table. One connection per instance."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("Dead-letter store opened at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def insert(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Insert entry and return it as stored."""
        conn = await self._ensure_conn()
        await conn.execute(
            f"INSERT INTO {TABLE_NAME} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.event_id,
                entry.event_name,
                json.dumps(entry.event_data, ensure_ascii=False, default=str),
                entry.handler_id,
                entry.error_message,
                entry.error_stack,
                entry.retry_count,
                entry.status.value,
                entry.correlation_id,
                entry.source_id,
                entry.created_at,
                entry.last_retry_at,
            ),
        )
        await conn.commit()
        stored = await self.get(entry.id)
        return stored or entry

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE id = ?", (entry_id,)
        )
        row = await cursor.fetchone()
        return _row_to_entry(row) if row else None

    async def query(
        self,
        status: str | None = None,
        event_name: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[DeadLetterEntry]:
        """Filtered entries, newest first."""
        conn = await self._ensure_conn()
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if event_name:
            clauses.append("event_name = ?")
            params.append(event_name)
        sql = f"SELECT {_COLUMNS} FROM {TABLE_NAME}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None or offset:
            # SQLite requires LIMIT before OFFSET; -1 means no limit.
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, offset or 0])
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def claim_for_retry(self, entry_id: str) -> DeadLetterEntry | None:
        """Atomically move pending/failed -> retrying, bump retry_count and last_retry_at.

        Returns the claimed entry, or None when the entry is absent or not claimable
        (already retrying or resolved).
        """
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            UPDATE {TABLE_NAME}
            SET status = 'retrying', retry_count = retry_count + 1, last_retry_at = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (utc_now_iso(), entry_id, *_RETRYABLE_STATUSES),
        )
        await conn.commit()
        if not cursor.rowcount:
            return None
        return await self.get(entry_id)

    async def complete_retry(self, entry_id: str) -> bool:
        """retrying -> resolved."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"UPDATE {TABLE_NAME} SET status = 'resolved' WHERE id = ? AND status = 'retrying'",
            (entry_id,),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def fail_retry(self, entry_id: str, error_message: str, error_stack: str | None) -> bool:
        """retrying -> failed, recording the new error."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"""
            UPDATE {TABLE_NAME}
            SET status = 'failed', error_message = ?, error_stack = ?
            WHERE id = ? AND status = 'retrying'
            """,
            (error_message, error_stack, entry_id),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def release_claim(self, entry_id: str) -> bool:
        """retrying -> failed, keeping the recorded error. Used when a retry is interrupted."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"UPDATE {TABLE_NAME} SET status = 'failed' WHERE id = ? AND status = 'retrying'",
            (entry_id,),
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def reset_retrying(self, claimed_before: str | None = None) -> int:
        """Move entries stuck in 'retrying' back to 'failed'. Return count.

        With claimed_before (ISO timestamp) only entries whose last_retry_at is
        older are reset; without it every 'retrying' entry is, as at startup.
        """
        conn = await self._ensure_conn()
        sql = f"UPDATE {TABLE_NAME} SET status = 'failed' WHERE status = 'retrying'"
        params: list[Any] = []
        if claimed_before is not None:
            sql += " AND (last_retry_at IS NULL OR last_retry_at < ?)"
            params.append(claimed_before)
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor.rowcount or 0

    async def mark_resolved(self, entry_id: str) -> bool:
        """Force status to resolved. Returns False if the entry does not exist."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"UPDATE {TABLE_NAME} SET status = 'resolved' WHERE id = ?", (entry_id,)
        )
        await conn.commit()
        return bool(cursor.rowcount)

    async def delete(self, entry_id: str) -> bool:
        conn = await self._ensure_conn()
        cursor = await conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (entry_id,))
        await conn.commit()
        return bool(cursor.rowcount)

    async def purge_resolved(self, created_before: str) -> int:
        """Delete resolved entries created before the given ISO timestamp. Return count."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"DELETE FROM {TABLE_NAME} WHERE status = 'resolved' AND created_at < ?",
            (created_before,),
        )
        await conn.commit()
        return cursor.rowcount or 0
