"""SQLite backed persistence used by the notification dispatcher."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import MessageStatus


class Persistence:
    """Helper class responsible for reading and writing service state.

    Besides the durable queue it stores the records owned by neighbouring
    collaborators: mail templates, notification records and the user
    directory used to look up contact addresses.
    """

    def __init__(self, db_path: str = "/data/notify_service.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_messages (
                    id TEXT PRIMARY KEY,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    template_id TEXT,
                    template_data TEXT,
                    priority INTEGER NOT NULL DEFAULT 2,
                    scheduled_at INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    last_error TEXT,
                    sent_at INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_due ON queued_messages(status, priority, scheduled_at)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_templates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    priority TEXT,
                    sender_id TEXT,
                    sender_name TEXT,
                    data TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT,
                    email TEXT
                )
                """
            )
            await db.commit()

    # Queue --------------------------------------------------------------------
    @staticmethod
    def _rows_to_dicts(rows: Sequence[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        return [dict(zip(columns, row)) for row in rows]

    async def insert_message(self, entry: Dict[str, Any]) -> str:
        """Store a new ``pending`` message and return its id."""
        template_data = entry.get("template_data")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO queued_messages
                (id, recipient, subject, content, template_id, template_data, priority,
                 scheduled_at, status, retry_count, max_retries)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    entry["id"],
                    entry["to"],
                    entry["subject"],
                    entry.get("content") or "",
                    entry.get("template_id"),
                    json.dumps(template_data) if template_data else None,
                    int(entry["priority"]),
                    int(entry["scheduled_at"]),
                    MessageStatus.PENDING.value,
                    int(entry["max_retries"]),
                ),
            )
            await db.commit()
        return entry["id"]

    async def get_message(self, msg_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single message row, or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM queued_messages WHERE id=?", (msg_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def fetch_due_messages(self, *, limit: int, now_ts: int) -> List[Dict[str, Any]]:
        """Return pending messages whose schedule time has come, most urgent first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT *
                FROM queued_messages
                WHERE status = ?
                  AND scheduled_at <= ?
                ORDER BY priority ASC, scheduled_at ASC, created_at ASC, id ASC
                LIMIT ?
                """,
                (MessageStatus.PENDING.value, now_ts, limit),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def mark_processing(self, msg_id: str) -> bool:
        """Claim a pending message for the current attempt."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queued_messages
                SET status=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=?
                """,
                (MessageStatus.PROCESSING.value, msg_id, MessageStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_sent(self, msg_id: str, sent_ts: int) -> bool:
        """Mark a processing message as sent; ``sent_at`` is written only once."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queued_messages
                SET status=?, sent_at=?, last_error=NULL, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=? AND sent_at IS NULL
                """,
                (MessageStatus.SENT.value, sent_ts, msg_id, MessageStatus.PROCESSING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def schedule_retry(self, msg_id: str, *, retry_count: int, scheduled_at: int, error: str) -> None:
        """Put a failed message back to ``pending`` with a later schedule time."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE queued_messages
                SET status=?, retry_count=?, scheduled_at=?, last_error=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=?
                """,
                (
                    MessageStatus.PENDING.value,
                    retry_count,
                    scheduled_at,
                    error,
                    msg_id,
                    MessageStatus.PROCESSING.value,
                ),
            )
            await db.commit()

    async def mark_failed(self, msg_id: str, *, retry_count: int, error: str) -> None:
        """Move a message into the terminal ``failed`` state."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE queued_messages
                SET status=?, retry_count=?, last_error=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=?
                """,
                (MessageStatus.FAILED.value, retry_count, error, msg_id, MessageStatus.PROCESSING.value),
            )
            await db.commit()

    async def count_by_status(self) -> Dict[str, int]:
        """Return message counts grouped by status."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM queued_messages GROUP BY status"
            ) as cur:
                rows = await cur.fetchall()
        return {status: int(count) for status, count in rows}

    async def reset_failed(self, ids: Optional[Iterable[str]], now_ts: int) -> int:
        """Move ``failed`` messages back to ``pending`` (all of them when ``ids`` is None)."""
        query = """
            UPDATE queued_messages
            SET status=?, scheduled_at=?, last_error=NULL, retry_count=0, updated_at=CURRENT_TIMESTAMP
            WHERE status=?
        """
        params: List[Any] = [MessageStatus.PENDING.value, now_ts, MessageStatus.FAILED.value]
        if ids is not None:
            id_list = [mid for mid in ids if mid]
            if not id_list:
                return 0
            placeholders = ",".join("?" for _ in id_list)
            query += f" AND id IN ({placeholders})"
            params.extend(id_list)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def requeue_stale_processing(self, now_ts: int) -> int:
        """Return messages stuck in ``processing`` to ``pending``, due at ``now_ts``.

        Only safe while no dispatcher is attempting deliveries on this database.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queued_messages
                SET status=?, scheduled_at=MIN(scheduled_at, ?), updated_at=CURRENT_TIMESTAMP
                WHERE status=?
                """,
                (MessageStatus.PENDING.value, now_ts, MessageStatus.PROCESSING.value),
            )
            await db.commit()
            return cursor.rowcount

    async def delete_sent_before(self, threshold_ts: int) -> int:
        """Delete ``sent`` messages whose ``sent_at`` is older than ``threshold_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                DELETE FROM queued_messages
                WHERE status=? AND sent_at IS NOT NULL AND sent_at < ?
                """,
                (MessageStatus.SENT.value, threshold_ts),
            )
            await db.commit()
            return cursor.rowcount

    async def list_messages(self, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return messages for inspection purposes."""
        query = "SELECT * FROM queued_messages"
        params: Tuple[Any, ...] = ()
        if status:
            query += " WHERE status=?"
            params = (status,)
        query += " ORDER BY priority ASC, scheduled_at ASC, id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def count_pending_messages(self) -> int:
        """Return how many messages are still waiting for delivery."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM queued_messages WHERE status IN (?, ?)",
                (MessageStatus.PENDING.value, MessageStatus.PROCESSING.value),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    # Templates ----------------------------------------------------------------
    async def add_template(self, template: Dict[str, Any]) -> None:
        """Insert or overwrite a mail template."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO email_templates (id, name, subject, body, is_active)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    template["id"],
                    template["name"],
                    template["subject"],
                    template["body"],
                    1 if template.get("is_active", True) else 0,
                ),
            )
            await db.commit()

    async def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, name, subject, body, is_active FROM email_templates WHERE id=?",
                (template_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        template = dict(zip(cols, row))
        template["is_active"] = bool(template["is_active"])
        return template

    async def find_active_template(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the most recent active template with the given name."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, name, subject, body, is_active
                FROM email_templates
                WHERE name=? AND is_active=1
                ORDER BY created_at DESC, id ASC
                LIMIT 1
                """,
                (name,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        template = dict(zip(cols, row))
        template["is_active"] = bool(template["is_active"])
        return template

    # Notifications ------------------------------------------------------------
    async def insert_notification(self, record: Dict[str, Any]) -> None:
        """Persist a notification record."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO notifications
                (id, user_id, type, title, content, priority, sender_id, sender_name, data, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record.get("user_id"),
                    record["type"],
                    record["title"],
                    record["content"],
                    record.get("priority"),
                    record.get("sender_id"),
                    record.get("sender_name"),
                    record.get("data"),
                    1 if record.get("is_read") else 0,
                    int(record["created_at"]),
                ),
            )
            await db.commit()

    async def list_notifications(self, user_id: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM notifications WHERE user_id=? ORDER BY created_at DESC, id ASC",
                (user_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = self._rows_to_dicts(rows, cols)
        for item in result:
            item["is_read"] = bool(item["is_read"])
        return result

    # Users --------------------------------------------------------------------
    async def upsert_user(self, user: Dict[str, Any]) -> None:
        """Insert or overwrite a user directory entry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO users (id, username, email) VALUES (?, ?, ?)",
                (user["id"], user.get("username"), user.get("email")),
            )
            await db.commit()

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{id, username, email}`` for a user, or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, username, email FROM users WHERE id=?", (user_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))
