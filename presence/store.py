"""
Casework - Presence Store

Punches, punch adjustments and the bank-hour ledger. All three tables
are append-only: a correction to a punch is a new adjustment row and a
correction to the balance is a new ledger row.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.db import SQLiteBackend
from journeys.types import new_id
from presence.punch import PunchSource, PunchStatus, PunchType


def to_utc_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass
class PunchRecord:
    id: str
    tenant_id: str
    case_id: str
    employee_ref: str
    type: PunchType
    timestamp: datetime
    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    distance_meters: float | None = None
    within_radius: bool = True
    status: PunchStatus = PunchStatus.VALID
    source: PunchSource = PunchSource.APP
    meta: dict[str, Any] = field(default_factory=dict)
    adjusted_timestamp: datetime | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def effective_timestamp(self) -> datetime:
        return self.adjusted_timestamp or self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "employee_ref": self.employee_ref,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "effective_timestamp": self.effective_timestamp.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_meters": self.accuracy_meters,
            "distance_meters": self.distance_meters,
            "within_radius": self.within_radius,
            "status": self.status.value,
            "source": self.source.value,
        }


class PresenceStore:

    def __init__(self, db: SQLiteBackend):
        self.db = db
        self._create_tables()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS time_punches (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                employee_ref TEXT NOT NULL,
                type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                accuracy_meters REAL,
                distance_meters REAL,
                within_radius INTEGER NOT NULL,
                status TEXT NOT NULL,
                source TEXT NOT NULL,
                meta TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS punch_adjustments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                punch_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                previous_timestamp TEXT NOT NULL,
                new_timestamp TEXT NOT NULL,
                note TEXT NOT NULL,
                actor_ref TEXT,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS bank_hour_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                employee_ref TEXT NOT NULL,
                case_id TEXT NOT NULL,
                worked_minutes INTEGER NOT NULL,
                minutes_delta INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                source TEXT NOT NULL,
                note TEXT,
                created_at REAL NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_punches_case_type
                ON time_punches(tenant_id, case_id, type);
            CREATE INDEX IF NOT EXISTS idx_adjustments_punch
                ON punch_adjustments(tenant_id, punch_id);
            CREATE INDEX IF NOT EXISTS idx_ledger_employee
                ON bank_hour_ledger(tenant_id, employee_ref);
        """)

    # ─── Punches ─────────────────────────────────────────────────────

    def insert_punch(self, p: PunchRecord):
        self.db.execute("""
            INSERT INTO time_punches
            (id, tenant_id, case_id, employee_ref, type, timestamp, latitude,
             longitude, accuracy_meters, distance_meters, within_radius,
             status, source, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            p.id, p.tenant_id, p.case_id, p.employee_ref, p.type.value,
            to_utc_iso(p.timestamp), p.latitude, p.longitude, p.accuracy_meters,
            p.distance_meters, 1 if p.within_radius else 0, p.status.value,
            p.source.value, json.dumps(p.meta, default=str), p.created_at,
        ))

    def list_punches(self, tenant_id: str, case_id: str) -> list[PunchRecord]:
        rows = self.db.fetchall("""
            SELECT p.*,
                   (SELECT a.new_timestamp FROM punch_adjustments a
                    WHERE a.tenant_id = p.tenant_id AND a.punch_id = p.id
                    ORDER BY a.id DESC LIMIT 1) AS adjusted_timestamp
            FROM time_punches p
            WHERE p.tenant_id = ? AND p.case_id = ?
            ORDER BY p.rowid
        """, (tenant_id, case_id))
        return [self._row_to_punch(r) for r in rows]

    def get_punch(self, tenant_id: str, punch_id: str) -> PunchRecord | None:
        row = self.db.fetchone("""
            SELECT p.*,
                   (SELECT a.new_timestamp FROM punch_adjustments a
                    WHERE a.tenant_id = p.tenant_id AND a.punch_id = p.id
                    ORDER BY a.id DESC LIMIT 1) AS adjusted_timestamp
            FROM time_punches p
            WHERE p.tenant_id = ? AND p.id = ?
        """, (tenant_id, punch_id))
        return self._row_to_punch(row) if row else None

    def _row_to_punch(self, r: dict[str, Any]) -> PunchRecord:
        return PunchRecord(
            id=r["id"],
            tenant_id=r["tenant_id"],
            case_id=r["case_id"],
            employee_ref=r["employee_ref"],
            type=PunchType(r["type"]),
            timestamp=from_iso(r["timestamp"]),
            latitude=r["latitude"],
            longitude=r["longitude"],
            accuracy_meters=r["accuracy_meters"],
            distance_meters=r["distance_meters"],
            within_radius=bool(r["within_radius"]),
            status=PunchStatus(r["status"]),
            source=PunchSource(r["source"]),
            meta=json.loads(r["meta"] or "{}"),
            adjusted_timestamp=from_iso(r["adjusted_timestamp"]) if r["adjusted_timestamp"] else None,
            created_at=r["created_at"],
        )

    # ─── Adjustments ─────────────────────────────────────────────────

    def insert_adjustment(
        self,
        tenant_id: str,
        punch: PunchRecord,
        new_timestamp: datetime,
        note: str,
        actor_ref: str | None,
    ) -> int:
        cursor = self.db.execute("""
            INSERT INTO punch_adjustments
            (tenant_id, punch_id, case_id, previous_timestamp, new_timestamp,
             note, actor_ref, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            tenant_id, punch.id, punch.case_id,
            to_utc_iso(punch.effective_timestamp), to_utc_iso(new_timestamp),
            note, actor_ref, time.time(),
        ))
        return cursor.lastrowid

    def count_adjustments(self, tenant_id: str, case_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM punch_adjustments WHERE tenant_id = ? AND case_id = ?",
            (tenant_id, case_id),
        )
        return row["n"] if row else 0

    # ─── Bank-hour ledger ────────────────────────────────────────────

    def current_balance(self, tenant_id: str, employee_ref: str) -> int:
        row = self.db.fetchone("""
            SELECT balance_after FROM bank_hour_ledger
            WHERE tenant_id = ? AND employee_ref = ?
            ORDER BY id DESC LIMIT 1
        """, (tenant_id, employee_ref))
        return int(row["balance_after"]) if row else 0

    def posted_delta(self, tenant_id: str, case_id: str) -> int | None:
        """Sum of deltas already posted for a day, None if nothing posted."""
        row = self.db.fetchone("""
            SELECT COUNT(*) AS n, COALESCE(SUM(minutes_delta), 0) AS total
            FROM bank_hour_ledger WHERE tenant_id = ? AND case_id = ?
        """, (tenant_id, case_id))
        if not row or not row["n"]:
            return None
        return int(row["total"])

    def append_ledger(
        self,
        tenant_id: str,
        employee_ref: str,
        case_id: str,
        worked_minutes: int,
        minutes_delta: int,
        source: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        with self.db.transaction():
            balance_after = self.current_balance(tenant_id, employee_ref) + minutes_delta
            cursor = self.db.execute("""
                INSERT INTO bank_hour_ledger
                (tenant_id, employee_ref, case_id, worked_minutes, minutes_delta,
                 balance_after, source, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                tenant_id, employee_ref, case_id, worked_minutes, minutes_delta,
                balance_after, source, note, time.time(),
            ))
        return {
            "id": cursor.lastrowid,
            "employee_ref": employee_ref,
            "case_id": case_id,
            "worked_minutes": worked_minutes,
            "minutes_delta": minutes_delta,
            "balance_after": balance_after,
            "source": source,
        }

    def ledger(self, tenant_id: str, employee_ref: str) -> list[dict[str, Any]]:
        return self.db.fetchall("""
            SELECT * FROM bank_hour_ledger
            WHERE tenant_id = ? AND employee_ref = ? ORDER BY id
        """, (tenant_id, employee_ref))


def new_punch_id() -> str:
    return new_id("punch")
