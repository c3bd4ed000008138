"""
SQLite-backed instance store.

Several engine processes may share one database file. The optimistic commit is
a single ``UPDATE ... WHERE version = ?`` so the database decides the winner.
Blocking sqlite calls run in a worker thread.
"""

import asyncio
import json
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..core.errors import InstanceNotFound, VersionConflict
from ..core.messages import MessageDraft, MessageKind, OutboundMessage
from ..observability.logging import get_logger
from .instances import (
    CommitResult,
    InstanceChanges,
    InstanceRecord,
    InstanceStore,
    LockToken,
    apply_changes,
    new_instance_id,
)

log = get_logger("flowstate.storage")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS instances (
    instance_id TEXT PRIMARY KEY,
    capability_id TEXT NOT NULL,
    current_state TEXT NOT NULL,
    entities TEXT NOT NULL DEFAULT '{}',
    context TEXT NOT NULL DEFAULT '{}',
    render_data TEXT NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL,
    parent_instance_id TEXT,
    dismissed INTEGER NOT NULL DEFAULT 0,
    dismiss_reason TEXT,
    last_message_seq INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    instance_id TEXT NOT NULL,
    message_seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    version INTEGER NOT NULL,
    payload TEXT NOT NULL,
    emitted_at REAL NOT NULL,
    PRIMARY KEY (instance_id, message_seq)
);

CREATE INDEX IF NOT EXISTS idx_instances_parent ON instances(parent_instance_id);
CREATE INDEX IF NOT EXISTS idx_instances_idle ON instances(dismissed, updated_at);
"""


class SQLiteInstanceStore(InstanceStore):
    """Instance store persisted to a single SQLite file."""

    def __init__(
        self,
        db_path: str | Path = "flowstate.db",
        message_retention: int = 200,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(message_retention, clock)
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.executescript(_SCHEMA)
        self.conn.commit()
        self._lock = threading.Lock()
        log.info("SQLite instance store initialized", path=self.db_path)

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn, *args):
        with self._lock:
            return fn(*args)

    # Row mapping

    def _row_to_record(self, row: sqlite3.Row) -> InstanceRecord:
        return InstanceRecord(
            instance_id=row["instance_id"],
            capability_id=row["capability_id"],
            current_state=row["current_state"],
            entities=json.loads(row["entities"]),
            context=json.loads(row["context"]),
            render_data=json.loads(row["render_data"]),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            parent_instance_id=row["parent_instance_id"],
            dismissed=bool(row["dismissed"]),
            dismiss_reason=row["dismiss_reason"],
            last_message_seq=row["last_message_seq"],
        )

    def _insert_messages(self, messages: list[OutboundMessage]) -> None:
        self.conn.executemany(
            """
            INSERT INTO messages (instance_id, message_seq, kind, version, payload, emitted_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    m.instance_id,
                    m.message_seq,
                    m.kind.value,
                    m.version,
                    json.dumps(m.payload),
                    m.emitted_at,
                )
                for m in messages
            ],
        )

    def _prune_messages(self, instance_id: str, last_seq: int) -> None:
        self.conn.execute(
            "DELETE FROM messages WHERE instance_id = ? AND message_seq <= ?",
            (instance_id, last_seq - self.message_retention),
        )

    # Synchronous implementations

    def _create_sync(self, record: InstanceRecord, draft: MessageDraft) -> CommitResult:
        messages = self._stamp(record, [draft], record.created_at)
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO instances
                (instance_id, capability_id, current_state, entities, context, render_data,
                 version, parent_instance_id, dismissed, dismiss_reason, last_message_seq,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?, ?)
                """,
                (
                    record.instance_id,
                    record.capability_id,
                    record.current_state,
                    json.dumps(record.entities),
                    json.dumps(record.context),
                    json.dumps(record.render_data),
                    record.version,
                    record.parent_instance_id,
                    record.last_message_seq,
                    record.created_at,
                    record.updated_at,
                ),
            )
            self._insert_messages(messages)
        return CommitResult(record, messages)

    def _load_sync(self, instance_id: str) -> InstanceRecord | None:
        row = self.conn.execute(
            "SELECT * FROM instances WHERE instance_id = ?", (instance_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def _commit_sync(
        self, token: LockToken, changes: InstanceChanges, drafts: list[MessageDraft]
    ) -> CommitResult:
        with self.conn:
            record = self._load_sync(token.instance_id)
            if record is None:
                raise InstanceNotFound(token.instance_id)
            if record.version != token.expected_version:
                raise VersionConflict(token.instance_id, token.expected_version, record.version)

            now = self.clock()
            apply_changes(record, changes, now)
            messages = self._stamp(record, drafts, now)

            cursor = self.conn.execute(
                """
                UPDATE instances SET
                    current_state = ?, context = ?, render_data = ?, version = ?,
                    dismissed = ?, dismiss_reason = ?, last_message_seq = ?, updated_at = ?
                WHERE instance_id = ? AND version = ?
                """,
                (
                    record.current_state,
                    json.dumps(record.context),
                    json.dumps(record.render_data),
                    record.version,
                    int(record.dismissed),
                    record.dismiss_reason,
                    record.last_message_seq,
                    record.updated_at,
                    token.instance_id,
                    token.expected_version,
                ),
            )
            if cursor.rowcount != 1:
                # Another process won between our read and write
                current = self._load_sync(token.instance_id)
                raise VersionConflict(
                    token.instance_id,
                    token.expected_version,
                    current.version if current else token.expected_version,
                )

            self._insert_messages(messages)
            self._prune_messages(record.instance_id, record.last_message_seq)
        return CommitResult(record, messages)

    def _messages_since_sync(self, instance_id: str, after_seq: int) -> list[OutboundMessage]:
        record = self._load_sync(instance_id)
        if record is None:
            return []
        rows = self.conn.execute(
            """
            SELECT * FROM messages WHERE instance_id = ? AND message_seq > ?
            ORDER BY message_seq
            """,
            (instance_id, after_seq),
        ).fetchall()
        return [
            OutboundMessage(
                instance_id=row["instance_id"],
                capability_id=record.capability_id,
                kind=MessageKind(row["kind"]),
                version=row["version"],
                message_seq=row["message_seq"],
                payload=json.loads(row["payload"]),
                parent_instance_id=record.parent_instance_id,
                emitted_at=row["emitted_at"],
            )
            for row in rows
        ]

    def _list_children_sync(self, parent_instance_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT instance_id FROM instances WHERE parent_instance_id = ? ORDER BY created_at",
            (parent_instance_id,),
        ).fetchall()
        return [row["instance_id"] for row in rows]

    def _list_idle_sync(self, updated_before: float) -> list[str]:
        rows = self.conn.execute(
            "SELECT instance_id FROM instances WHERE dismissed = 0 AND updated_at < ?",
            (updated_before,),
        ).fetchall()
        return [row["instance_id"] for row in rows]

    # Async interface

    async def create(
        self,
        capability_id: str,
        seed_entities: dict[str, Any],
        initial_state: str,
        render_data: dict[str, Any],
        created_message: MessageDraft,
        parent_instance_id: str | None = None,
        context: dict[str, Any] | None = None,
        instance_id: str | None = None,
    ) -> CommitResult:
        now = self.clock()
        record = InstanceRecord(
            instance_id=instance_id or new_instance_id(),
            capability_id=capability_id,
            current_state=initial_state,
            entities=dict(seed_entities),
            context=dict(context or {}),
            render_data=dict(render_data),
            version=1,
            created_at=now,
            updated_at=now,
            parent_instance_id=parent_instance_id,
        )
        return await self._run(self._create_sync, record, created_message)

    async def load(self, instance_id: str) -> InstanceRecord | None:
        return await self._run(self._load_sync, instance_id)

    async def commit(
        self,
        token: LockToken,
        changes: InstanceChanges,
        messages: list[MessageDraft],
    ) -> CommitResult:
        return await self._run(self._commit_sync, token, changes, messages)

    async def messages_since(self, instance_id: str, after_seq: int) -> list[OutboundMessage]:
        return await self._run(self._messages_since_sync, instance_id, after_seq)

    async def list_children(self, parent_instance_id: str) -> list[str]:
        return await self._run(self._list_children_sync, parent_instance_id)

    async def list_idle(self, updated_before: float) -> list[str]:
        return await self._run(self._list_idle_sync, updated_before)

    async def health_check(self) -> bool:
        row = await self._run(lambda: self.conn.execute("SELECT 1").fetchone())
        return row is not None

    async def close(self) -> None:
        await self._run(self.conn.close)
        log.info("SQLite instance store closed", path=self.db_path)
