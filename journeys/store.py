"""
Casework - Case Store

SQLite-backed persistence for cases and the rows hanging off them:
pendencies, tasks and outbound messages. Every query is scoped by
tenant_id. Cases are never deleted; ``archive_case`` sets a soft marker.

The only way a case's state changes is ``compare_and_set_state``,
which re-validates the prior state inside the UPDATE itself so two
handler processes racing on one case cannot both win.
"""

from __future__ import annotations

import json
import time
from typing import Any

from core.db import SQLiteBackend
from journeys.types import (
    Case,
    CaseStatus,
    MessageStatus,
    OutboundMessage,
    Pendency,
    PendencyStatus,
    Task,
    TaskStatus,
    new_id,
)


class CaseStore:
    """Cases, pendencies, tasks and messages for every tenant."""

    def __init__(self, db: SQLiteBackend):
        self.db = db
        self._create_tables()

    def transaction(self):
        return self.db.transaction()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS cases (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                journey_key TEXT NOT NULL,
                state TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                owner_ref TEXT,
                subject_ref TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                case_date TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                archived_at REAL
            );

            CREATE TABLE IF NOT EXISTS pendencies (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                type TEXT NOT NULL,
                assigned_role TEXT NOT NULL DEFAULT 'admin',
                question TEXT NOT NULL,
                required INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'open',
                answer TEXT,
                meta TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL,
                resolved_at REAL,
                resolved_by TEXT
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                title TEXT NOT NULL,
                assigned_role TEXT,
                due_at REAL,
                status TEXT NOT NULL DEFAULT 'open',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outbound_messages (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                case_id TEXT,
                channel TEXT NOT NULL,
                template TEXT,
                body TEXT NOT NULL,
                recipient_ref TEXT,
                status TEXT NOT NULL DEFAULT 'prepared',
                prepared_by TEXT NOT NULL,
                decided_by TEXT,
                created_at REAL NOT NULL,
                decided_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_cases_tenant_journey
                ON cases(tenant_id, journey_key);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_cases_day
                ON cases(tenant_id, journey_key, subject_ref, case_date)
                WHERE case_date IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_pendencies_case
                ON pendencies(tenant_id, case_id);
            CREATE INDEX IF NOT EXISTS idx_tasks_case ON tasks(tenant_id, case_id);
            CREATE INDEX IF NOT EXISTS idx_messages_status
                ON outbound_messages(tenant_id, status);
        """)

    # ─── Cases ───────────────────────────────────────────────────────

    def create_case(
        self,
        tenant_id: str,
        journey_key: str,
        state: str,
        status: CaseStatus = CaseStatus.OPEN,
        owner_ref: str | None = None,
        subject_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        case_date: str | None = None,
    ) -> Case:
        now = time.time()
        case = Case(
            id=new_id("case"),
            tenant_id=tenant_id,
            journey_key=journey_key,
            state=state,
            status=status,
            owner_ref=owner_ref,
            subject_ref=subject_ref,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
            case_date=case_date,
        )
        self.db.execute("""
            INSERT INTO cases
            (id, tenant_id, journey_key, state, status, owner_ref, subject_ref,
             metadata, case_date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            case.id, tenant_id, journey_key, state, status.value,
            owner_ref, subject_ref, json.dumps(case.metadata, default=str),
            case_date, now, now,
        ))
        return case

    def get_case(self, tenant_id: str, case_id: str) -> Case | None:
        row = self.db.fetchone(
            "SELECT * FROM cases WHERE tenant_id = ? AND id = ?",
            (tenant_id, case_id),
        )
        return self._row_to_case(row) if row else None

    def find_day_case(
        self, tenant_id: str, journey_key: str, subject_ref: str, case_date: str,
    ) -> Case | None:
        row = self.db.fetchone("""
            SELECT * FROM cases
            WHERE tenant_id = ? AND journey_key = ? AND subject_ref = ? AND case_date = ?
        """, (tenant_id, journey_key, subject_ref, case_date))
        return self._row_to_case(row) if row else None

    def list_cases(
        self,
        tenant_id: str,
        journey_key: str | None = None,
        status: CaseStatus | None = None,
        include_archived: bool = False,
        limit: int = 500,
    ) -> list[Case]:
        query = "SELECT * FROM cases WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if journey_key:
            query += " AND journey_key = ?"
            params.append(journey_key)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_case(r) for r in self.db.fetchall(query, tuple(params))]

    def compare_and_set_state(
        self,
        tenant_id: str,
        case_id: str,
        expected_state: str,
        new_state: str,
        status: CaseStatus,
    ) -> bool:
        """Atomic state write. False when the stored state is not ``expected_state``."""
        cursor = self.db.execute("""
            UPDATE cases SET state = ?, status = ?, updated_at = ?
            WHERE tenant_id = ? AND id = ? AND state = ? AND archived_at IS NULL
        """, (new_state, status.value, time.time(), tenant_id, case_id, expected_state))
        return cursor.rowcount == 1

    def update_metadata(self, tenant_id: str, case_id: str, patch: dict[str, Any]) -> Case | None:
        with self.db.transaction():
            case = self.get_case(tenant_id, case_id)
            if case is None:
                return None
            case.metadata.update(patch)
            self.db.execute(
                "UPDATE cases SET metadata = ?, updated_at = ? WHERE tenant_id = ? AND id = ?",
                (json.dumps(case.metadata, default=str), time.time(), tenant_id, case_id),
            )
        return case

    def archive_case(self, tenant_id: str, case_id: str) -> bool:
        cursor = self.db.execute(
            "UPDATE cases SET archived_at = ? WHERE tenant_id = ? AND id = ? AND archived_at IS NULL",
            (time.time(), tenant_id, case_id),
        )
        return cursor.rowcount == 1

    def _row_to_case(self, row: dict[str, Any]) -> Case:
        return Case(
            id=row["id"],
            tenant_id=row["tenant_id"],
            journey_key=row["journey_key"],
            state=row["state"],
            status=CaseStatus(row["status"]),
            owner_ref=row["owner_ref"],
            subject_ref=row["subject_ref"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            case_date=row["case_date"],
            archived_at=row["archived_at"],
        )

    # ─── Pendencies ──────────────────────────────────────────────────

    def insert_pendency(self, p: Pendency):
        self.db.execute("""
            INSERT INTO pendencies
            (id, tenant_id, case_id, type, assigned_role, question, required,
             status, answer, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            p.id, p.tenant_id, p.case_id, p.type, p.assigned_role, p.question,
            1 if p.required else 0, p.status.value, p.answer,
            json.dumps(p.meta, default=str), p.created_at,
        ))

    def get_pendency(self, tenant_id: str, pendency_id: str) -> Pendency | None:
        row = self.db.fetchone(
            "SELECT * FROM pendencies WHERE tenant_id = ? AND id = ?",
            (tenant_id, pendency_id),
        )
        return self._row_to_pendency(row) if row else None

    def update_pendency_status(
        self,
        tenant_id: str,
        pendency_id: str,
        from_statuses: tuple[PendencyStatus, ...],
        new_status: PendencyStatus,
        answer: str | None = None,
        resolved_by: str | None = None,
    ) -> bool:
        """Status change guarded by the allowed prior statuses."""
        placeholders = ", ".join("?" for _ in from_statuses)
        resolved_at = time.time() if new_status in (
            PendencyStatus.APPROVED, PendencyStatus.DISMISSED
        ) else None
        cursor = self.db.execute(f"""
            UPDATE pendencies
            SET status = ?,
                answer = COALESCE(?, answer),
                resolved_at = COALESCE(?, resolved_at),
                resolved_by = COALESCE(?, resolved_by)
            WHERE tenant_id = ? AND id = ? AND status IN ({placeholders})
        """, (
            new_status.value, answer, resolved_at, resolved_by,
            tenant_id, pendency_id, *[s.value for s in from_statuses],
        ))
        return cursor.rowcount == 1

    def list_pendencies(
        self,
        tenant_id: str,
        case_id: str,
        statuses: tuple[PendencyStatus, ...] | None = None,
        required: bool | None = None,
    ) -> list[Pendency]:
        query = "SELECT * FROM pendencies WHERE tenant_id = ? AND case_id = ?"
        params: list[Any] = [tenant_id, case_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        if required is not None:
            query += " AND required = ?"
            params.append(1 if required else 0)
        query += " ORDER BY created_at, rowid"
        return [self._row_to_pendency(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_pendency(self, row: dict[str, Any]) -> Pendency:
        return Pendency(
            id=row["id"],
            tenant_id=row["tenant_id"],
            case_id=row["case_id"],
            type=row["type"],
            question=row["question"],
            required=bool(row["required"]),
            assigned_role=row["assigned_role"],
            status=PendencyStatus(row["status"]),
            answer=row["answer"],
            meta=json.loads(row["meta"] or "{}"),
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    # ─── Tasks ───────────────────────────────────────────────────────

    def insert_task(self, t: Task):
        self.db.execute("""
            INSERT INTO tasks
            (id, tenant_id, case_id, title, assigned_role, due_at, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            t.id, t.tenant_id, t.case_id, t.title, t.assigned_role,
            t.due_at, t.status.value, t.created_at,
        ))

    def list_tasks(self, tenant_id: str, case_id: str) -> list[Task]:
        rows = self.db.fetchall(
            "SELECT * FROM tasks WHERE tenant_id = ? AND case_id = ? ORDER BY created_at, rowid",
            (tenant_id, case_id),
        )
        return [
            Task(
                id=r["id"], tenant_id=r["tenant_id"], case_id=r["case_id"],
                title=r["title"], assigned_role=r["assigned_role"],
                due_at=r["due_at"], status=TaskStatus(r["status"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ─── Outbound messages ───────────────────────────────────────────

    def insert_message(self, m: OutboundMessage):
        self.db.execute("""
            INSERT INTO outbound_messages
            (id, tenant_id, case_id, channel, template, body, recipient_ref,
             status, prepared_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            m.id, m.tenant_id, m.case_id, m.channel, m.template, m.body,
            m.recipient_ref, m.status.value, m.prepared_by, m.created_at,
        ))

    def get_message(self, tenant_id: str, message_id: str) -> OutboundMessage | None:
        row = self.db.fetchone(
            "SELECT * FROM outbound_messages WHERE tenant_id = ? AND id = ?",
            (tenant_id, message_id),
        )
        return self._row_to_message(row) if row else None

    def decide_message(
        self, tenant_id: str, message_id: str, new_status: MessageStatus, decided_by: str | None,
    ) -> bool:
        """Move a prepared message to queued or rejected. False if already decided."""
        cursor = self.db.execute("""
            UPDATE outbound_messages SET status = ?, decided_by = ?, decided_at = ?
            WHERE tenant_id = ? AND id = ? AND status = ?
        """, (
            new_status.value, decided_by, time.time(),
            tenant_id, message_id, MessageStatus.PREPARED.value,
        ))
        return cursor.rowcount == 1

    def list_messages(
        self,
        tenant_id: str,
        status: MessageStatus | None = None,
        case_id: str | None = None,
        limit: int = 200,
    ) -> list[OutboundMessage]:
        query = "SELECT * FROM outbound_messages WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if case_id:
            query += " AND case_id = ?"
            params.append(case_id)
        query += " ORDER BY created_at, rowid LIMIT ?"
        params.append(limit)
        return [self._row_to_message(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_message(self, row: dict[str, Any]) -> OutboundMessage:
        return OutboundMessage(
            id=row["id"],
            tenant_id=row["tenant_id"],
            case_id=row["case_id"],
            channel=row["channel"],
            body=row["body"],
            template=row["template"],
            recipient_ref=row["recipient_ref"],
            status=MessageStatus(row["status"]),
            prepared_by=row["prepared_by"],
            decided_by=row["decided_by"],
            created_at=row["created_at"],
            decided_at=row["decided_at"],
        )

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self, tenant_id: str) -> dict[str, Any]:
        by_status = self.db.fetchall(
            "SELECT status, COUNT(*) AS n FROM cases WHERE tenant_id = ? GROUP BY status",
            (tenant_id,),
        )
        open_pendencies = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM pendencies WHERE tenant_id = ? AND status = 'open'",
            (tenant_id,),
        )
        return {
            "cases": {r["status"]: r["n"] for r in by_status},
            "open_pendencies": open_pendencies["n"] if open_pendencies else 0,
        }
