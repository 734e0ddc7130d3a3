"""
Neuro Assessment Service - Assessment Persistence Backends

Provides repository implementations for finished assessments:
- SqliteAssessmentRepository (runtime default)
- InMemoryAssessmentRepository (tests / ephemeral runs)
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, List

from models import AggregatedAssessment, AssessmentHistoryItem


def _history_item(record: AggregatedAssessment) -> AssessmentHistoryItem:
    return AssessmentHistoryItem(
        assessment_id=record.assessment_id,
        created_at=record.created_at,
        risk_level=record.medical_assessment.risk_level if record.medical_assessment else None,
        urgency_level=record.urgency_level,
        overall_confidence=record.overall_confidence,
        degraded=record.degraded,
        assessment_source=record.assessment_source,
    )


def _stats(items: List[AssessmentHistoryItem]) -> Dict[str, object]:
    by_risk: Dict[str, int] = {}
    by_urgency: Dict[str, int] = {}
    for item in items:
        risk_key = item.risk_level.value if item.risk_level else "unknown"
        by_risk[risk_key] = by_risk.get(risk_key, 0) + 1
        by_urgency[item.urgency_level.value] = by_urgency.get(item.urgency_level.value, 0) + 1
    average = sum(item.overall_confidence for item in items) / len(items) if items else 0.0
    return {
        "total": len(items),
        "degraded": sum(1 for item in items if item.degraded),
        "by_risk_level": by_risk,
        "by_urgency": by_urgency,
        "average_confidence": round(average, 2),
    }


class AssessmentRepository:
    backend = "none"

    def save(self, record: AggregatedAssessment) -> bool:
        raise NotImplementedError

    def get(self, assessment_id: str) -> AggregatedAssessment:
        raise NotImplementedError

    def list_recent(self, limit: int = 20) -> List[AssessmentHistoryItem]:
        raise NotImplementedError

    def stats(self) -> Dict[str, object]:
        raise NotImplementedError


class InMemoryAssessmentRepository(AssessmentRepository):
    backend = "memory"

    def __init__(self) -> None:
        self._store: Dict[str, AggregatedAssessment] = {}
        self._lock = Lock()

    def save(self, record: AggregatedAssessment) -> bool:
        with self._lock:
            self._store[record.assessment_id] = record
        return True

    def get(self, assessment_id: str) -> AggregatedAssessment:
        record = self._store.get(assessment_id)
        if not record:
            raise KeyError(f"Assessment not found: {assessment_id}.")
        return record

    def list_recent(self, limit: int = 20) -> List[AssessmentHistoryItem]:
        with self._lock:
            rows = sorted(self._store.values(), key=lambda x: x.created_at, reverse=True)
        return [_history_item(row) for row in rows[: max(1, limit)]]

    def stats(self) -> Dict[str, object]:
        with self._lock:
            items = [_history_item(row) for row in self._store.values()]
        return _stats(items)


class SqliteAssessmentRepository(AssessmentRepository):
    backend = "sqlite"

    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assessments (
                    assessment_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    risk_level TEXT,
                    urgency_level TEXT NOT NULL,
                    overall_confidence REAL NOT NULL,
                    degraded INTEGER NOT NULL,
                    assessment_source TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_assessments_created
                ON assessments(created_at DESC)
                """
            )
            conn.commit()

    def save(self, record: AggregatedAssessment) -> bool:
        item = _history_item(record)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO assessments (
                    assessment_id,
                    created_at,
                    risk_level,
                    urgency_level,
                    overall_confidence,
                    degraded,
                    assessment_source,
                    payload_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(assessment_id) DO UPDATE SET payload_json = excluded.payload_json
                """,
                (
                    item.assessment_id,
                    item.created_at.isoformat(),
                    item.risk_level.value if item.risk_level else None,
                    item.urgency_level.value,
                    item.overall_confidence,
                    1 if item.degraded else 0,
                    item.assessment_source.value,
                    record.model_dump_json(),
                ),
            )
            conn.commit()
        return True

    def get(self, assessment_id: str) -> AggregatedAssessment:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM assessments WHERE assessment_id = ?",
                (assessment_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"Assessment not found: {assessment_id}.")
        return AggregatedAssessment.model_validate_json(row["payload_json"])

    def list_recent(self, limit: int = 20) -> List[AssessmentHistoryItem]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT assessment_id, created_at, risk_level, urgency_level,
                       overall_confidence, degraded, assessment_source
                FROM assessments
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        return [
            AssessmentHistoryItem(
                assessment_id=row["assessment_id"],
                created_at=row["created_at"],
                risk_level=row["risk_level"],
                urgency_level=row["urgency_level"],
                overall_confidence=row["overall_confidence"],
                degraded=bool(row["degraded"]),
                assessment_source=row["assessment_source"],
            )
            for row in rows
        ]

    def stats(self) -> Dict[str, object]:
        with self._lock, self._connect() as conn:
            total_row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(degraded), 0) AS degraded,
                       COALESCE(AVG(overall_confidence), 0) AS average_confidence
                FROM assessments
                """
            ).fetchone()
            risk_rows = conn.execute(
                "SELECT COALESCE(risk_level, 'unknown') AS level, COUNT(*) AS n FROM assessments GROUP BY level"
            ).fetchall()
            urgency_rows = conn.execute(
                "SELECT urgency_level AS level, COUNT(*) AS n FROM assessments GROUP BY urgency_level"
            ).fetchall()
        return {
            "total": int(total_row["total"]),
            "degraded": int(total_row["degraded"]),
            "by_risk_level": {row["level"]: int(row["n"]) for row in risk_rows},
            "by_urgency": {row["level"]: int(row["n"]) for row in urgency_rows},
            "average_confidence": round(float(total_row["average_confidence"]), 2),
        }


def build_assessment_repository(backend: str, sqlite_db_path: str) -> AssessmentRepository:
    normalized = (backend or "sqlite").strip().lower()
    if normalized == "sqlite":
        return SqliteAssessmentRepository(db_path=sqlite_db_path)
    if normalized == "memory":
        return InMemoryAssessmentRepository()
    raise ValueError(
        f"Unsupported NEURO_STORE_BACKEND='{backend}'. Allowed values: sqlite, memory, off."
    )
